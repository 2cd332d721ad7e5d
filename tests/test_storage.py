from datetime import timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from conftest import TODAY

from lending_service import models
from lending_service.circulation import borrow_book, return_book
from lending_service.reservations import reserve_book
from lending_service.storage import lending_transaction, load_state


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'storage.db'}", future=True)
    models.Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    session = factory()
    session.add_all(
        [
            models.Book(id=1, title="Dune", category="Sci-Fi", copies=1, available=1),
            models.Book(id=2, title="Emma", category="Fiction", copies=2, available=1),
        ]
    )
    session.commit()
    session.close()
    return factory


def test_load_state_reads_catalog(session_factory):
    session = session_factory()
    try:
        state = load_state(session)
    finally:
        session.close()

    assert [(b.id, b.copies, b.title) for b in state.books] == [(1, 1, "Dune"), (2, 2, "Emma")]
    assert state.loans == [] and state.reservations == [] and state.history == []


def test_transaction_persists_each_collection(session_factory):
    with lending_transaction(session_factory) as (state, _):
        assert borrow_book(state, 1, 10, TODAY).success
        assert reserve_book(state, 1, 11, TODAY).success

    with lending_transaction(session_factory) as (state, _):
        assert state.get_loan(1, 10).due_date == TODAY + timedelta(days=14)
        assert state.get_book(1).available == 0
        assert state.reservations[0].status == "waiting"
        assert return_book(state, 1, 10, TODAY).success

    session = session_factory()
    try:
        assert session.execute(select(models.Borrowed)).scalars().all() == []
        history = session.execute(select(models.History)).scalars().one()
        assert (history.book_id, history.user_id, history.overdue) == (1, 10, False)
        reservation = session.execute(select(models.Reservation)).scalars().one()
        assert reservation.status == "ready"
        assert session.get(models.Book, 1).available == 0
    finally:
        session.close()


def test_history_is_appended_not_rewritten(session_factory):
    for _ in range(2):
        with lending_transaction(session_factory) as (state, _):
            borrow_book(state, 2, 10, TODAY)
        with lending_transaction(session_factory) as (state, _):
            return_book(state, 2, 10, TODAY)

    session = session_factory()
    try:
        ids = [h.id for h in session.execute(select(models.History)).scalars().all()]
    finally:
        session.close()
    assert ids == [1, 2]


def test_failure_rolls_back_whole_cycle(session_factory):
    with pytest.raises(RuntimeError):
        with lending_transaction(session_factory) as (state, _):
            borrow_book(state, 1, 10, TODAY)
            raise RuntimeError("boom")

    with lending_transaction(session_factory) as (state, _):
        assert state.loans == []
        assert state.get_book(1).available == 1


def test_rejection_side_effects_are_persisted(session_factory):
    session = session_factory()
    session.add(
        models.Reservation(
            id=1,
            book_id=1,
            user_id=11,
            pickup_date=TODAY - timedelta(days=1),
            queue_position=1,
            status="ready",
        )
    )
    session.get(models.Book, 1).available = 0
    session.commit()
    session.close()

    from lending_service.reservations import pickup_reservation

    with lending_transaction(session_factory) as (state, _):
        result = pickup_reservation(state, 1, 11, TODAY)
        assert not result.success

    session = session_factory()
    try:
        assert session.get(models.Reservation, 1).status == "expired"
        assert session.get(models.Book, 1).available == 1
    finally:
        session.close()
