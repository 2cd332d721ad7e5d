import os
import tempfile
from datetime import date, datetime

import pytest

# The app binds its engine at import time, so point it at a scratch database first.
_db_dir = tempfile.mkdtemp(prefix="lending-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_db_dir, "lending.db")
os.environ["NOTIFY_BASE_URL"] = ""

from lending_service.state import Book, LibraryState, Loan, Reservation  # noqa: E402

TODAY = date(2024, 5, 1)


def make_state(*books, loans=(), reservations=()):
    return LibraryState(
        books=[Book(id=b[0], copies=b[1], title=f"Book {b[0]}", category=b[2] if len(b) > 2 else None)
               for b in books],
        loans=list(loans),
        reservations=list(reservations),
    )


def loan(id, book_id, user_id, due_date, renewals_left=2, borrow_date=None):
    return Loan(
        id=id,
        book_id=book_id,
        user_id=user_id,
        borrow_date=borrow_date or date(2024, 4, 17),
        due_date=due_date,
        renewals_left=renewals_left,
    )


def reservation(id, book_id, user_id, status="waiting", pickup_date=None,
                queue_position=1, created_at=None):
    return Reservation(
        id=id,
        book_id=book_id,
        user_id=user_id,
        pickup_date=pickup_date or date(2024, 5, 8),
        queue_position=queue_position,
        status=status,
        created_at=created_at or datetime(2024, 4, 20, 9, 0, id),
    )


@pytest.fixture
def client(monkeypatch):
    from lending_service import app as app_module
    from lending_service.models import Base

    Base.metadata.drop_all(app_module.engine)
    Base.metadata.create_all(app_module.engine)
    monkeypatch.setattr(app_module, "_today", lambda: TODAY)
    app_module.app.config["TESTING"] = True

    with app_module.app.test_client() as c:
        yield c


@pytest.fixture
def api_key():
    from lending_service.app import app

    return {"X-API-Key": app.config["SERVICE_API_KEY"]}
