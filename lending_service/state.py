"""
In-memory snapshot of the lending collections.

The circulation and reservation modules only ever see a LibraryState; how it
is loaded and saved is the storage module's business.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set


WAITING = "waiting"
READY = "ready"
COMPLETED = "completed"
CANCELLED = "cancelled"
EXPIRED = "expired"

ACTIVE_STATUSES = (WAITING, READY)


@dataclass
class Book:
    id: int
    copies: Any = 1
    available: int = 1
    title: str = ""
    author: Optional[str] = None
    category: Optional[str] = None

    def projection(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
        }


@dataclass
class Loan:
    id: int
    book_id: int
    user_id: int
    borrow_date: date
    due_date: date
    renewals_left: int

    def is_overdue(self, today: date) -> bool:
        return self.due_date < today


@dataclass
class Reservation:
    id: int
    book_id: int
    user_id: int
    pickup_date: date
    queue_position: int
    status: str = WAITING
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass(frozen=True)
class HistoryEntry:
    id: int
    book_id: int
    user_id: int
    borrow_date: date
    return_date: date
    overdue: bool


@dataclass
class LibraryState:
    books: List[Book] = field(default_factory=list)
    loans: List[Loan] = field(default_factory=list)
    reservations: List[Reservation] = field(default_factory=list)
    history: List[HistoryEntry] = field(default_factory=list)

    # book ids whose availability must be recomputed
    touched: Set[int] = field(default_factory=set)

    def get_book(self, book_id: int) -> Optional[Book]:
        return next((b for b in self.books if b.id == book_id), None)

    def get_loan(self, book_id: int, user_id: int) -> Optional[Loan]:
        return next(
            (l for l in self.loans if l.book_id == book_id and l.user_id == user_id),
            None,
        )

    def get_reservation(self, reservation_id: int) -> Optional[Reservation]:
        return next((r for r in self.reservations if r.id == reservation_id), None)

    def reservations_for_book(self, book_id: int, *statuses: str) -> List[Reservation]:
        return [
            r
            for r in self.reservations
            if r.book_id == book_id and (not statuses or r.status in statuses)
        ]

    def touch(self, book_id: int) -> None:
        self.touched.add(book_id)

    def next_id(self, records) -> int:
        return max((r.id for r in records), default=0) + 1


class ErrorKind(Enum):
    NOT_FOUND = "not_found"
    LIMIT_EXCEEDED = "limit_exceeded"
    CONFLICT = "conflict"
    STATE_PRECONDITION = "state_precondition"
    INPUT_VALIDATION = "input_validation"


@dataclass
class Event:
    """Something the external notifier may want to hear about."""
    type: str
    reservation: Reservation


@dataclass
class Result:
    success: bool
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    kind: Optional[ErrorKind] = None
    events: List[Event] = field(default_factory=list)

    @classmethod
    def ok(cls, message: Optional[str] = None, data: Optional[Dict[str, Any]] = None,
           events: Optional[List[Event]] = None) -> "Result":
        return cls(success=True, message=message, data=data, events=list(events or []))

    @classmethod
    def fail(cls, kind: ErrorKind, message: str,
             events: Optional[List[Event]] = None) -> "Result":
        return cls(success=False, message=message, kind=kind, events=list(events or []))

    def envelope(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success}
        if self.message is not None:
            body["message"] = self.message
        if self.data is not None:
            body["data"] = self.data
        return body


@dataclass(frozen=True)
class LendingPolicy:
    loan_days: int = 14
    renew_days: int = 7
    max_renewals: int = 2
    max_borrowed: int = 5
    max_reservations: int = 3
    pickup_days: int = 7

    @classmethod
    def from_config(cls, config) -> "LendingPolicy":
        return cls(
            loan_days=config["LOAN_DAYS"],
            renew_days=config["RENEW_DAYS"],
            max_renewals=config["MAX_RENEWALS"],
            max_borrowed=config["MAX_BORROWED"],
            max_reservations=config["MAX_RESERVATIONS"],
            pickup_days=config["PICKUP_DAYS"],
        )
