import os
import logging
from datetime import date, datetime

from flask import Flask, jsonify, request, abort
from flask_cors import CORS
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .config import Config
from .models import Base, Book
from .state import Book as BookRecord, ErrorKind, LendingPolicy, Result
from .storage import lending_transaction
from .circulation import (
    borrow_book,
    list_book_borrowers,
    list_overdue_loans,
    list_user_history,
    list_user_loans,
    renew_book,
    resolve_inventory,
    return_book,
    settle,
    summarize_history,
)
from .reservations import (
    cancel_reservation,
    cleanup_expired,
    list_book_queue,
    list_user_expired_reservations,
    list_user_reservations,
    pickup_reservation,
    reserve_book,
)
from .notifications import dispatch_events, retry_pending_notifications

# ---------------------------------------------------------
# Logging
# ---------------------------------------------------------
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------
# Flask + DB setup
# ---------------------------------------------------------

app = Flask(__name__)
app.config.from_object(Config)
CORS(app)

engine = create_engine(
    app.config["SQLALCHEMY_DATABASE_URI"],
    echo=app.config["SQLALCHEMY_ECHO"],
    future=True,
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

# Create tables
Base.metadata.create_all(engine)

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.LIMIT_EXCEEDED: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.STATE_PRECONDITION: 422,
    ErrorKind.INPUT_VALIDATION: 400,
}


class InputValidationError(ValueError):
    """Malformed request input, rejected before the lending rules run."""


# ----------------- helpers -----------------

def require_api_key(func):
    from functools import wraps

    @wraps(func)
    def wrapper(*args, **kwargs):
        sent_key = request.headers.get("X-API-Key")
        expected = app.config.get("SERVICE_API_KEY")
        if not expected or sent_key != expected:
            logger.warning("Invalid API key on %s", request.path)
            abort(401, description="Invalid or missing service API key")
        return func(*args, **kwargs)

    return wrapper


@app.errorhandler(InputValidationError)
def handle_input_error(e):
    return _respond(Result.fail(ErrorKind.INPUT_VALIDATION, str(e)))


def _today() -> date:
    return datetime.utcnow().date()


def _policy() -> LendingPolicy:
    return LendingPolicy.from_config(app.config)


def _params():
    """Ids may come in the JSON body or the query string."""
    body = request.get_json(silent=True)
    params = dict(request.args)
    if isinstance(body, dict):
        params.update(body)
    return params


def _require_int(params, name):
    value = params.get(name)
    if value is None or value == "":
        raise InputValidationError(f"{name} is required")
    # JSON true/1.9 are not ids
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InputValidationError(f"Invalid {name}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InputValidationError(f"Invalid {name}")


def _optional_date(params, name):
    value = params.get(name)
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise InputValidationError(f"Invalid {name}, expected YYYY-MM-DD")


def _respond(result: Result, created: bool = False):
    if result.success:
        status = 201 if created else 200
    else:
        status = STATUS_BY_KIND[result.kind]
    return jsonify(result.envelope()), status


def _dispatch(events):
    if not events:
        return
    session = SessionLocal()
    try:
        dispatch_events(events, session, app.config)
    finally:
        session.close()


# ----------------- health -----------------

@app.get("/api/health")
def health():
    return jsonify({"status": "ok", "service": "lending_service"})


# ----------------- book endpoints -----------------

@app.post("/api/books")
@require_api_key
def create_or_update_book():
    """
    Librarian endpoint – upsert book by id.
    """
    params = request.get_json(force=True, silent=True)
    if not isinstance(params, dict):
        raise InputValidationError("Expected a JSON object")
    book_id = _require_int(params, "id")
    title = params.get("title")
    if not title:
        raise InputValidationError("title is required")
    copies = _require_int(params, "copies") if "copies" in params else None
    if copies is not None and copies < 1:
        raise InputValidationError("copies must be at least 1")

    with lending_transaction(SessionLocal) as (state, session):
        row = session.get(Book, book_id)
        book = state.get_book(book_id)
        created = row is None

        if created:
            row = Book(id=book_id, title=title, copies=copies or 1)
            session.add(row)
            book = BookRecord(id=book_id, copies=row.copies)
            state.books.append(book)
        elif copies is not None:
            in_use = resolve_inventory(state, book_id).in_use
            if copies < in_use:
                return _respond(
                    Result.fail(
                        ErrorKind.CONFLICT,
                        f"Cannot set copies to {copies}: {in_use} on loan",
                    )
                )
            row.copies = copies
            book.copies = copies

        row.title = book.title = title
        row.author = book.author = params.get("author")
        row.category = book.category = params.get("category")

        state.touch(book_id)
        settle(state)
        # a pending row is not in the identity map yet, save_state would miss it
        row.available = book.available
        available = book.available

    logger.info("%s book %s", "Created" if created else "Updated", book_id)
    return _respond(
        Result.ok("Book saved", {"id": book_id, "available": available}),
        created=created,
    )


@app.get("/api/books/<int:book_id>")
def get_book(book_id):
    with lending_transaction(SessionLocal) as (state, _):
        book = state.get_book(book_id)
        if book is None:
            return _respond(Result.fail(ErrorKind.NOT_FOUND, "Book not found"))
        inv = resolve_inventory(state, book_id)
        data = book.projection()
        data.update(
            {
                "copies": inv.copies,
                "in_use": inv.in_use,
                "free": inv.free,
                "available": book.available,
            }
        )
    return _respond(Result.ok(data=data))


@app.get("/api/books/<int:book_id>/borrowers")
def book_borrowers(book_id):
    with lending_transaction(SessionLocal) as (state, _):
        data = list_book_borrowers(state, book_id, _today())
    return _respond(Result.ok(data=data))


@app.get("/api/books/<int:book_id>/queue")
def book_queue(book_id):
    with lending_transaction(SessionLocal) as (state, _):
        events = cleanup_expired(state, _today())
        data = list_book_queue(state, book_id)
    _dispatch(events)
    return _respond(Result.ok(data=data))


# ----------------- loan endpoints -----------------

@app.post("/api/loans")
def borrow():
    params = _params()
    book_id = _require_int(params, "book_id")
    user_id = _require_int(params, "user_id")

    with lending_transaction(SessionLocal) as (state, _):
        result = borrow_book(state, book_id, user_id, _today(), _policy())
    return _respond(result, created=True)


@app.post("/api/loans/return")
def return_loan():
    params = _params()
    book_id = _require_int(params, "book_id")
    user_id = _require_int(params, "user_id")

    with lending_transaction(SessionLocal) as (state, _):
        result = return_book(state, book_id, user_id, _today())
    _dispatch(result.events)
    return _respond(result)


@app.post("/api/loans/renew")
def renew_loan():
    params = _params()
    book_id = _require_int(params, "book_id")
    user_id = _require_int(params, "user_id")

    with lending_transaction(SessionLocal) as (state, _):
        result = renew_book(state, book_id, user_id, _today(), _policy())
    return _respond(result)


@app.get("/api/loans")
def list_loans():
    """
    List the active loans of ?user_id=...
    """
    user_id = _require_int(request.args, "user_id")
    with lending_transaction(SessionLocal) as (state, _):
        data = list_user_loans(state, user_id, _today())
    return _respond(Result.ok(data=data))


@app.get("/api/loans/overdue")
@require_api_key
def overdue_loans():
    """
    Everything past its due date, for the notifier's overdue reminders.
    """
    with lending_transaction(SessionLocal) as (state, _):
        data = list_overdue_loans(state, _today())
    return _respond(Result.ok(data=data))


@app.get("/api/history")
def history():
    user_id = _require_int(request.args, "user_id")
    with lending_transaction(SessionLocal) as (state, _):
        data = {
            "entries": list_user_history(state, user_id),
            "summary": summarize_history(state, user_id),
        }
    return _respond(Result.ok(data=data))


# ----------------- reservation endpoints -----------------

@app.post("/api/reservations")
def reserve():
    params = _params()
    book_id = _require_int(params, "book_id")
    user_id = _require_int(params, "user_id")
    pickup_date = _optional_date(params, "pickup_date")

    today = _today()
    with lending_transaction(SessionLocal) as (state, _):
        events = cleanup_expired(state, today)
        result = reserve_book(
            state, book_id, user_id, today, _policy(), pickup_date=pickup_date
        )
    _dispatch(events + result.events)
    return _respond(result, created=True)


@app.post("/api/reservations/<int:reservation_id>/cancel")
def cancel(reservation_id):
    user_id = _require_int(_params(), "user_id")

    with lending_transaction(SessionLocal) as (state, _):
        events = cleanup_expired(state, _today())
        result = cancel_reservation(state, reservation_id, user_id)
    _dispatch(events + result.events)
    return _respond(result)


@app.post("/api/reservations/<int:reservation_id>/pickup")
def pickup(reservation_id):
    user_id = _require_int(_params(), "user_id")

    today = _today()
    with lending_transaction(SessionLocal) as (state, _):
        events = cleanup_expired(state, today)
        result = pickup_reservation(state, reservation_id, user_id, today, _policy())
    _dispatch(events + result.events)
    return _respond(result)


@app.get("/api/reservations")
def list_reservations():
    """
    ?user_id=...            active (waiting / ready) reservations
    ?user_id=...&status=expired   expired ones, newest first
    """
    user_id = _require_int(request.args, "user_id")
    status = request.args.get("status", "active")
    if status not in ("active", "expired"):
        raise InputValidationError("status must be 'active' or 'expired'")

    with lending_transaction(SessionLocal) as (state, _):
        events = cleanup_expired(state, _today())
        if status == "expired":
            data = list_user_expired_reservations(state, user_id)
        else:
            data = list_user_reservations(state, user_id)
    _dispatch(events)
    return _respond(Result.ok(data=data))


# ----------------- notifier outbox -----------------

@app.post("/api/notifications/retry")
@require_api_key
def retry_notifications():
    session = SessionLocal()
    try:
        sent = retry_pending_notifications(session, app.config)
    finally:
        session.close()
    return _respond(Result.ok("Retry triggered", {"sent": sent}))


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5001"))
    app.run(host="0.0.0.0", port=port, debug=True)
