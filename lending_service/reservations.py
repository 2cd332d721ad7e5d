"""
Reservation queue: joining, leaving, lazy expiry and pickup.

Queue positions are handed out once, when the reservation is created, and
are never renumbered. After someone ahead leaves, a position no longer
equals the number of people in front.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from .circulation import DEFAULT_POLICY, borrow_book, settles_availability
from .state import (
    ACTIVE_STATUSES,
    CANCELLED,
    COMPLETED,
    EXPIRED,
    READY,
    ErrorKind,
    Event,
    LendingPolicy,
    LibraryState,
    Reservation,
    Result,
)

logger = logging.getLogger(__name__)


@settles_availability
def cleanup_expired(state: LibraryState, today: date) -> List[Event]:
    """
    Expire every ready reservation whose pickup date has passed.
    Runs lazily at the start of reservation requests; calling it twice in a
    row changes nothing the second time.
    """
    events = []
    for r in state.reservations:
        if r.status == READY and r.pickup_date < today:
            r.status = EXPIRED
            state.touch(r.book_id)
            events.append(Event("reservation_expired", r))
            logger.info("Reservation %s for book %s expired", r.id, r.book_id)
    return events


@settles_availability
def reserve_book(
    state: LibraryState,
    book_id: int,
    user_id: int,
    today: date,
    policy: LendingPolicy = DEFAULT_POLICY,
    pickup_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Result:
    # current availability is not checked; an available book can be reserved
    active = [r for r in state.reservations if r.user_id == user_id and r.is_active]
    if len(active) >= policy.max_reservations:
        return Result.fail(ErrorKind.LIMIT_EXCEEDED, "Max reservations reached")

    if any(r.book_id == book_id for r in active):
        return Result.fail(ErrorKind.CONFLICT, "Already reserved")

    if state.get_book(book_id) is None:
        return Result.fail(ErrorKind.NOT_FOUND, "Book not found")

    queue_position = len(state.reservations_for_book(book_id, *ACTIVE_STATUSES)) + 1
    reservation = Reservation(
        id=state.next_id(state.reservations),
        book_id=book_id,
        user_id=user_id,
        pickup_date=pickup_date or today + timedelta(days=policy.pickup_days),
        queue_position=queue_position,
        created_at=now or datetime.utcnow(),
    )
    state.reservations.append(reservation)
    state.touch(book_id)
    logger.info(
        "User %s reserved book %s at position %s", user_id, book_id, queue_position
    )

    return Result.ok(
        "Reserved successfully",
        {
            "reservation_id": reservation.id,
            "queue_position": queue_position,
            "pickup_date": reservation.pickup_date.isoformat(),
        },
    )


@settles_availability
def cancel_reservation(state: LibraryState, reservation_id: int, user_id: int) -> Result:
    r = state.get_reservation(reservation_id)
    if r is None or r.user_id != user_id or not r.is_active:
        return Result.fail(ErrorKind.NOT_FOUND, "Reservation not found")

    r.status = CANCELLED
    state.touch(r.book_id)
    logger.info("User %s cancelled reservation %s", user_id, reservation_id)
    return Result.ok("Cancelled")


@settles_availability
def pickup_reservation(
    state: LibraryState,
    reservation_id: int,
    user_id: int,
    today: date,
    policy: LendingPolicy = DEFAULT_POLICY,
) -> Result:
    r = state.get_reservation(reservation_id)
    if r is None or r.user_id != user_id:
        return Result.fail(ErrorKind.NOT_FOUND, "Reservation not found")

    if r.status != READY:
        return Result.fail(ErrorKind.STATE_PRECONDITION, "Reservation is not ready for pickup")

    if r.pickup_date < today:
        r.status = EXPIRED
        state.touch(r.book_id)
        logger.info("Reservation %s expired at pickup", r.id)
        return Result.fail(
            ErrorKind.STATE_PRECONDITION,
            "Reservation has expired",
            events=[Event("reservation_expired", r)],
        )

    borrowed = borrow_book(state, r.book_id, user_id, today, policy, claiming=r)
    if not borrowed.success:
        return borrowed

    r.status = COMPLETED
    state.touch(r.book_id)
    return Result.ok("Book picked up successfully", borrowed.data)


# ----------------- read side -----------------

def _reservation_view(state: LibraryState, r: Reservation) -> Dict[str, Any]:
    book = state.get_book(r.book_id)
    return {
        "id": r.id,
        "book_id": r.book_id,
        "user_id": r.user_id,
        "pickup_date": r.pickup_date.isoformat(),
        "queue_position": r.queue_position,
        "status": r.status,
        "book": book.projection() if book else None,
    }


def list_user_reservations(state: LibraryState, user_id: int) -> List[Dict[str, Any]]:
    items = [r for r in state.reservations if r.user_id == user_id and r.is_active]
    items.sort(key=lambda r: (r.created_at, r.id))
    return [_reservation_view(state, r) for r in items]


def list_user_expired_reservations(state: LibraryState, user_id: int) -> List[Dict[str, Any]]:
    items = [r for r in state.reservations if r.user_id == user_id and r.status == EXPIRED]
    items.sort(key=lambda r: (r.pickup_date, r.id), reverse=True)
    return [_reservation_view(state, r) for r in items]


def list_book_queue(state: LibraryState, book_id: int) -> List[Dict[str, Any]]:
    items = state.reservations_for_book(book_id, *ACTIVE_STATUSES)
    items.sort(key=lambda r: (r.created_at, r.id))
    return [_reservation_view(state, r) for r in items]
