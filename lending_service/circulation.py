"""
Loan ledger and availability rules.

Every function here works on a LibraryState snapshot and returns a Result;
nothing in this module touches the database.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date, timedelta
from functools import wraps
from typing import Any, Dict, List, Optional

from .state import (
    READY,
    WAITING,
    ErrorKind,
    Event,
    HistoryEntry,
    LendingPolicy,
    LibraryState,
    Loan,
    Reservation,
    Result,
)

logger = logging.getLogger(__name__)

DEFAULT_POLICY = LendingPolicy()


# ----------------- inventory -----------------

@dataclass(frozen=True)
class Inventory:
    copies: int
    in_use: int
    free: int


def _copies_of(book) -> int:
    try:
        copies = int(book.copies)
    except (TypeError, ValueError):
        return 1
    return copies if copies >= 1 else 1


def resolve_inventory(state: LibraryState, book_id: int) -> Optional[Inventory]:
    """
    Count copies, copies on loan and free copies for a book.
    Returns None when the book is not in the catalog.
    """
    book = state.get_book(book_id)
    if book is None:
        return None

    copies = _copies_of(book)
    in_use = sum(1 for l in state.loans if l.book_id == book_id)
    return Inventory(copies=copies, in_use=in_use, free=max(0, copies - in_use))


# ----------------- availability -----------------

def refresh_availability(state: LibraryState, book_id: int) -> None:
    """
    A book is open to walk-up borrowers only when a copy is free and nobody
    is queued or waiting to collect it.
    """
    inv = resolve_inventory(state, book_id)
    if inv is None:
        return

    waiting = len(state.reservations_for_book(book_id, WAITING))
    ready = len(state.reservations_for_book(book_id, READY))
    book = state.get_book(book_id)
    book.available = 1 if (inv.free > 0 and waiting == 0 and ready == 0) else 0


def settle(state: LibraryState) -> None:
    while state.touched:
        refresh_availability(state, state.touched.pop())


def settles_availability(func):
    """Recompute availability of every book the wrapped operation touched."""

    @wraps(func)
    def wrapper(state, *args, **kwargs):
        try:
            return func(state, *args, **kwargs)
        finally:
            settle(state)

    return wrapper


# ----------------- loan ledger -----------------

@settles_availability
def borrow_book(
    state: LibraryState,
    book_id: int,
    user_id: int,
    today: date,
    policy: LendingPolicy = DEFAULT_POLICY,
    claiming: Optional[Reservation] = None,
) -> Result:
    """
    Lend a copy of book_id to user_id.

    `claiming` is the ready reservation being picked up, if any. A walk-up
    borrow is refused as soon as another user has a ready reservation; a
    claim only needs a copy left over after the other ready holders.
    """
    user_loans = [l for l in state.loans if l.user_id == user_id]

    if any(l.is_overdue(today) for l in user_loans):
        return Result.fail(ErrorKind.LIMIT_EXCEEDED, "Cannot borrow: You have overdue books")

    if len(user_loans) >= policy.max_borrowed:
        return Result.fail(ErrorKind.LIMIT_EXCEEDED, "Cannot borrow: Maximum limit reached")

    if state.get_loan(book_id, user_id) is not None:
        return Result.fail(ErrorKind.CONFLICT, "You already have this book borrowed")

    inv = resolve_inventory(state, book_id)
    if inv is None:
        return Result.fail(ErrorKind.NOT_FOUND, "Book not found")

    ready_for_others = [
        r for r in state.reservations_for_book(book_id, READY) if r.user_id != user_id
    ]
    if claiming is None:
        if ready_for_others:
            return Result.fail(ErrorKind.CONFLICT, "This book is reserved for another user")
    elif inv.free > 0 and inv.free <= len(ready_for_others):
        return Result.fail(ErrorKind.CONFLICT, "This book is reserved for another user")

    if inv.free <= 0:
        return Result.fail(ErrorKind.STATE_PRECONDITION, "No copies available")

    loan = Loan(
        id=state.next_id(state.loans),
        book_id=book_id,
        user_id=user_id,
        borrow_date=today,
        due_date=today + timedelta(days=policy.loan_days),
        renewals_left=policy.max_renewals,
    )
    state.loans.append(loan)
    state.touch(book_id)
    logger.info("User %s borrowed book %s, due %s", user_id, book_id, loan.due_date)

    return Result.ok(
        "Book borrowed successfully",
        {"due_date": loan.due_date.isoformat(), "renewals_left": loan.renewals_left},
    )


def next_in_queue(state: LibraryState, book_id: int) -> Optional[Reservation]:
    waiting = state.reservations_for_book(book_id, WAITING)
    if not waiting:
        return None
    return min(waiting, key=lambda r: (r.created_at, r.id))


@settles_availability
def return_book(state: LibraryState, book_id: int, user_id: int, today: date) -> Result:
    loan = state.get_loan(book_id, user_id)
    if loan is None:
        return Result.fail(ErrorKind.NOT_FOUND, "Borrow record not found")

    overdue = loan.is_overdue(today)
    state.history.append(
        HistoryEntry(
            id=state.next_id(state.history),
            book_id=book_id,
            user_id=user_id,
            borrow_date=loan.borrow_date,
            return_date=today,
            overdue=overdue,
        )
    )
    state.loans.remove(loan)
    state.touch(book_id)

    events = []
    head = next_in_queue(state, book_id)
    if head is not None:
        # the reserver still has to come and pick it up
        head.status = READY
        events.append(Event("reservation_ready", head))
        logger.info("Reservation %s for book %s is ready", head.id, book_id)

    logger.info("User %s returned book %s (overdue=%s)", user_id, book_id, overdue)
    message = "Book returned" + (" (Overdue)" if overdue else "")
    return Result.ok(message, {"overdue": overdue}, events=events)


def renew_book(
    state: LibraryState,
    book_id: int,
    user_id: int,
    today: date,
    policy: LendingPolicy = DEFAULT_POLICY,
) -> Result:
    loan = state.get_loan(book_id, user_id)
    if loan is None:
        return Result.fail(ErrorKind.NOT_FOUND, "Borrow record not found")

    if loan.renewals_left <= 0:
        return Result.fail(ErrorKind.STATE_PRECONDITION, "No renewals left")

    queued = [
        r
        for r in state.reservations_for_book(book_id, WAITING, READY)
        if r.user_id != user_id
    ]
    if queued:
        return Result.fail(ErrorKind.CONFLICT, "Cannot renew: Reserved by another user")

    loan.due_date = loan.due_date + timedelta(days=policy.renew_days)
    loan.renewals_left -= 1
    logger.info("User %s renewed book %s until %s", user_id, book_id, loan.due_date)

    return Result.ok(
        "Book renewed",
        {"new_due_date": loan.due_date.isoformat(), "renewals_left": loan.renewals_left},
    )


# ----------------- read side -----------------

def _loan_view(loan: Loan, today: date) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "book_id": loan.book_id,
        "user_id": loan.user_id,
        "borrow_date": loan.borrow_date.isoformat(),
        "due_date": loan.due_date.isoformat(),
        "renewals_left": loan.renewals_left,
        "overdue": loan.is_overdue(today),
    }


def list_user_loans(state: LibraryState, user_id: int, today: date) -> List[Dict[str, Any]]:
    result = []
    for loan in sorted(state.loans, key=lambda l: l.id):
        if loan.user_id != user_id:
            continue
        item = _loan_view(loan, today)
        book = state.get_book(loan.book_id)
        item["book"] = book.projection() if book else None
        result.append(item)
    return result


def list_book_borrowers(state: LibraryState, book_id: int, today: date) -> List[Dict[str, Any]]:
    return [
        _loan_view(loan, today)
        for loan in sorted(state.loans, key=lambda l: l.id)
        if loan.book_id == book_id
    ]


def list_overdue_loans(state: LibraryState, today: date) -> List[Dict[str, Any]]:
    overdue = [l for l in state.loans if l.is_overdue(today)]
    return [_loan_view(l, today) for l in sorted(overdue, key=lambda l: (l.due_date, l.id))]


def list_user_history(state: LibraryState, user_id: int) -> List[Dict[str, Any]]:
    entries = [h for h in state.history if h.user_id == user_id]
    entries.sort(key=lambda h: (h.return_date, h.id), reverse=True)

    result = []
    for h in entries:
        book = state.get_book(h.book_id)
        result.append(
            {
                "id": h.id,
                "book_id": h.book_id,
                "user_id": h.user_id,
                "borrow_date": h.borrow_date.isoformat(),
                "return_date": h.return_date.isoformat(),
                "overdue": h.overdue,
                "book": book.projection() if book else None,
            }
        )
    return result


def summarize_history(state: LibraryState, user_id: int) -> Dict[str, Any]:
    entries = [h for h in state.history if h.user_id == user_id]
    categories = Counter()
    for h in entries:
        book = state.get_book(h.book_id)
        if book is not None and book.category:
            categories[book.category] += 1

    most_read = categories.most_common(1)
    return {
        "total_books": len(entries),
        "overdue_count": sum(1 for h in entries if h.overdue),
        "most_read_category": most_read[0][0] if most_read else "-",
        "categories": dict(categories),
    }
