from datetime import datetime

from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Boolean,
    Enum,
    Text,
)

Base = declarative_base()


class Book(Base):
    __tablename__ = "book"

    # Ids come from the catalog, not from autoincrement
    id = Column(Integer, primary_key=True, autoincrement=False)
    title = Column(String(255), nullable=False)
    author = Column(String(255))
    category = Column(String(100))
    copies = Column(Integer, nullable=False, default=1)
    available = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Borrowed(Base):
    """
    An active loan. Returned loans are deleted and live on in History.
    """
    __tablename__ = "borrowed"

    id = Column(Integer, primary_key=True, autoincrement=False)
    book_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    borrow_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    renewals_left = Column(Integer, nullable=False, default=0)


class Reservation(Base):
    __tablename__ = "reservation"

    id = Column(Integer, primary_key=True, autoincrement=False)
    book_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    pickup_date = Column(Date, nullable=False)
    queue_position = Column(Integer, nullable=False)
    status = Column(
        Enum(
            "waiting",
            "ready",
            "completed",
            "cancelled",
            "expired",
            name="reservation_status",
        ),
        nullable=False,
        default="waiting",
    )
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class History(Base):
    __tablename__ = "history"

    id = Column(Integer, primary_key=True, autoincrement=False)
    book_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    borrow_date = Column(Date, nullable=False)
    return_date = Column(Date, nullable=False)
    overdue = Column(Boolean, nullable=False, default=False)


class PendingNotification(Base):
    """
    Outgoing reservation events that couldn't reach the notifier.
    """
    __tablename__ = "pending_notification"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False)
    reservation_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    payload = Column(Text)  # JSON blob
