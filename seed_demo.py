# seed_demo.py
import os

import requests

LENDING_BASE_URL = os.getenv("LENDING_BASE_URL", "http://localhost:5001")
SERVICE_API_KEY = os.getenv("SERVICE_API_KEY", "dev-service-key")

BOOKS = [
    {"id": 1, "title": "The Great Gatsby", "author": "F. Scott Fitzgerald", "category": "Fiction", "copies": 3},
    {"id": 2, "title": "1984", "author": "George Orwell", "category": "Sci-Fi", "copies": 4},
    {"id": 3, "title": "To Kill a Mockingbird", "author": "Harper Lee", "category": "Fiction", "copies": 2},
    {"id": 4, "title": "A Brief History of Time", "author": "Stephen Hawking", "category": "Non-Fiction", "copies": 2},
    {"id": 5, "title": "Dune", "author": "Frank Herbert", "category": "Sci-Fi", "copies": 3},
    {"id": 6, "title": "The Hobbit", "author": "J.R.R. Tolkien", "category": "Fantasy", "copies": 5},
    {"id": 7, "title": "Pride and Prejudice", "author": "Jane Austen", "category": "Fiction", "copies": 3},
    {"id": 8, "title": "The Catcher in the Rye", "author": "J.D. Salinger", "category": "Fiction", "copies": 1},
    {"id": 9, "title": "Sapiens", "author": "Yuval Noah Harari", "category": "Non-Fiction", "copies": 4},
    {"id": 10, "title": "The Martian", "author": "Andy Weir", "category": "Sci-Fi", "copies": 3},
]

# (user_id, book_id) loans and reservations to make the queue interesting
LOANS = [(1, 8), (2, 3), (3, 3), (1, 5)]
RESERVATIONS = [(2, 8), (3, 8), (1, 3)]


def check_service(url):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except requests.RequestException as e:
        print(f"[ERROR] not reachable at {health_url}: {e}")
        return False


def seed_books():
    print(f"\n== Seeding books into {LENDING_BASE_URL} ==")
    for book in BOOKS:
        try:
            resp = requests.post(
                f"{LENDING_BASE_URL}/api/books",
                headers={"X-API-Key": SERVICE_API_KEY},
                json=book,
                timeout=5,
            )
            print(f"  [{book['id']:02}] {book['title']} -> {resp.status_code}")
            if not resp.ok:
                print(f"      Body: {resp.text.strip()}")
        except requests.RequestException as e:
            print(f"  [{book['id']:02}] {book['title']} -> FAILED: {e}")


def seed_activity():
    print("\n== Borrowing ==")
    for user_id, book_id in LOANS:
        resp = requests.post(
            f"{LENDING_BASE_URL}/api/loans",
            json={"book_id": book_id, "user_id": user_id},
            timeout=5,
        )
        print(f"  user {user_id} borrows book {book_id} -> {resp.status_code} {resp.json().get('message')}")

    print("\n== Reserving ==")
    for user_id, book_id in RESERVATIONS:
        resp = requests.post(
            f"{LENDING_BASE_URL}/api/reservations",
            json={"book_id": book_id, "user_id": user_id},
            timeout=5,
        )
        print(f"  user {user_id} reserves book {book_id} -> {resp.status_code} {resp.json()}")


def main():
    print("Checking lending service...")
    if not check_service(LENDING_BASE_URL):
        print("\nLending service is not reachable. Make sure it is running on 5001.")
        return

    seed_books()
    seed_activity()

    print("\nDone.")
    print("Try hitting:")
    print(f"  {LENDING_BASE_URL}/api/books/8/queue")
    print(f"  {LENDING_BASE_URL}/api/loans?user_id=1")


if __name__ == "__main__":
    main()
