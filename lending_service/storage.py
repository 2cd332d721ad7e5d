"""
Loads the whole lending snapshot from the database and writes it back.

Every request goes through lending_transaction(), which holds a process-wide
lock for the full read-modify-write cycle so two requests never interleave.
"""
import logging
import threading
from contextlib import contextmanager

from sqlalchemy import select

from . import models
from .state import Book, HistoryEntry, LibraryState, Loan, Reservation

logger = logging.getLogger(__name__)

_state_lock = threading.RLock()


def load_state(session) -> LibraryState:
    books = session.execute(
        select(models.Book).order_by(models.Book.id).with_for_update()
    ).scalars().all()
    loans = session.execute(select(models.Borrowed).order_by(models.Borrowed.id)).scalars().all()
    reservations = session.execute(
        select(models.Reservation).order_by(models.Reservation.id)
    ).scalars().all()
    history = session.execute(select(models.History).order_by(models.History.id)).scalars().all()

    return LibraryState(
        books=[
            Book(
                id=b.id,
                copies=b.copies,
                available=b.available,
                title=b.title,
                author=b.author,
                category=b.category,
            )
            for b in books
        ],
        loans=[
            Loan(
                id=l.id,
                book_id=l.book_id,
                user_id=l.user_id,
                borrow_date=l.borrow_date,
                due_date=l.due_date,
                renewals_left=l.renewals_left,
            )
            for l in loans
        ],
        reservations=[
            Reservation(
                id=r.id,
                book_id=r.book_id,
                user_id=r.user_id,
                pickup_date=r.pickup_date,
                queue_position=r.queue_position,
                status=r.status,
                created_at=r.created_at,
            )
            for r in reservations
        ],
        history=[
            HistoryEntry(
                id=h.id,
                book_id=h.book_id,
                user_id=h.user_id,
                borrow_date=h.borrow_date,
                return_date=h.return_date,
                overdue=h.overdue,
            )
            for h in history
        ],
    )


def save_state(session, state: LibraryState) -> None:
    """
    Write the snapshot back. Only `available` is written on books; the rest
    of the catalog belongs to whoever manages it.
    """
    for book in state.books:
        row = session.get(models.Book, book.id)
        if row is not None:
            row.available = book.available

    # returned loans disappear from the snapshot
    kept = {l.id for l in state.loans}
    for row in session.execute(select(models.Borrowed)).scalars().all():
        if row.id not in kept:
            session.delete(row)
    session.flush()

    for l in state.loans:
        session.merge(
            models.Borrowed(
                id=l.id,
                book_id=l.book_id,
                user_id=l.user_id,
                borrow_date=l.borrow_date,
                due_date=l.due_date,
                renewals_left=l.renewals_left,
            )
        )

    for r in state.reservations:
        session.merge(
            models.Reservation(
                id=r.id,
                book_id=r.book_id,
                user_id=r.user_id,
                pickup_date=r.pickup_date,
                queue_position=r.queue_position,
                status=r.status,
                created_at=r.created_at,
            )
        )

    # history is append-only
    for h in state.history:
        if session.get(models.History, h.id) is None:
            session.add(
                models.History(
                    id=h.id,
                    book_id=h.book_id,
                    user_id=h.user_id,
                    borrow_date=h.borrow_date,
                    return_date=h.return_date,
                    overdue=h.overdue,
                )
            )


@contextmanager
def lending_transaction(session_factory):
    """
    Yield (state, session) under the state lock and persist the state on a
    clean exit. Anything raised rolls the whole cycle back.
    """
    with _state_lock:
        session = session_factory()
        try:
            state = load_state(session)
            yield state, session
            save_state(session, state)
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("Lending transaction rolled back")
            raise
        finally:
            session.close()
