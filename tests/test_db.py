from datetime import datetime, timedelta

import pytest

from splgiver.db import Database, DatabaseError
from splgiver.models import Buyer, Group, Schedule, Status, Transaction

WALLET_A = "1" * 32
WALLET_B = "1" * 31 + "2"
WALLET_C = "1" * 31 + "3"


@pytest.fixture
def db():
    database = Database("sqlite::memory:")
    yield database
    database.close()


def make_group(group_id=1, spl_total=0.0):
    return Group(
        id=group_id,
        spl_share_percent=0.25,
        spl_price=0.01,
        initial_unlock_percent=0.1,
        unlock_interval_seconds=60,
        unlock_percent_per_interval=0.2,
        spl_total=spl_total,
    )


def make_schedule(when, wallet=WALLET_A, group_id=1, percent=0.1):
    return Schedule(group_id=group_id, buyer_wallet=wallet, scheduled_at=when, amount=5.5, percent=percent)


def test_save_group_returns_stored_group(db):
    group = make_group(spl_total=250.7)
    saved = db.save_group(group)
    assert saved is not None
    assert saved.id == group.id
    assert saved.spl_price == group.spl_price
    assert saved.unlock_interval_seconds == group.unlock_interval_seconds
    assert saved.spl_total == 250
    assert isinstance(saved.created_at, datetime)


def test_save_group_twice_is_ignored(db):
    db.save_group(make_group())
    assert db.save_group(make_group()) is None
    assert len(db.get_groups()) == 1


def test_get_groups_and_group(db):
    db.save_group(make_group(1))
    db.save_group(make_group(2))
    assert sorted(g.id for g in db.get_groups()) == [1, 2]
    assert db.get_group(2).id == 2


def test_get_group_missing_raises(db):
    with pytest.raises(DatabaseError, match="group with id 9"):
        db.get_group(9)


def test_save_and_get_buyer(db):
    buyer = Buyer(wallet=WALLET_A, paid_sol=123.5, group_id=1, error="note")
    saved = db.save_buyer(buyer)
    assert saved.wallet == WALLET_A
    assert saved.paid_sol == buyer.paid_sol
    assert saved.error == "note"
    fetched = db.get_buyer_by_wallet(WALLET_A)
    assert fetched.paid_sol == buyer.paid_sol
    assert fetched.group_id == buyer.group_id


def test_save_buyer_duplicate_returns_none(db):
    db.save_buyer(Buyer(wallet=WALLET_A, paid_sol=1.0, group_id=1))
    assert db.save_buyer(Buyer(wallet=WALLET_A, paid_sol=2.0, group_id=1)) is None
    assert db.get_buyer_by_wallet(WALLET_A).paid_sol == 1.0


def test_get_buyers_by_group_filters(db):
    db.save_buyer(Buyer(wallet=WALLET_A, paid_sol=1.0, group_id=1))
    db.save_buyer(Buyer(wallet=WALLET_B, paid_sol=2.0, group_id=2))
    db.save_buyer(Buyer(wallet=WALLET_C, paid_sol=3.0, group_id=1))
    assert sorted(b.wallet for b in db.get_buyers_by_group(1)) == sorted([WALLET_A, WALLET_C])
    assert db.get_buyers_by_group(3) == []


def test_update_buyer(db):
    db.save_buyer(Buyer(wallet=WALLET_A, paid_sol=10.0, group_id=1))
    updated = db.update_buyer(WALLET_A, 4.0, 0.4, 6.0)
    assert (updated.received_spl, updated.received_percent, updated.pending_spl) == (4.0, 0.4, 6.0)
    assert db.get_buyer_by_wallet(WALLET_A).received_percent == 0.4


def test_update_missing_buyer_raises(db):
    with pytest.raises(DatabaseError):
        db.update_buyer(WALLET_B, 1.0, 0.1, 0.0)


def test_get_missing_buyer_raises(db):
    with pytest.raises(DatabaseError, match=WALLET_C):
        db.get_buyer_by_wallet(WALLET_C)


def test_transactions_round_trip_and_failed_filter(db):
    sent = datetime(2031, 2, 3, 4, 5, 6, 789000)
    ok = db.save_transaction(
        Transaction(buyer_wallet=WALLET_A, group_id=1, amount=2.0, percent=0.1, status=Status.SUCCESS, sent_at=sent)
    )
    bad = db.save_transaction(
        Transaction(
            buyer_wallet=WALLET_B,
            group_id=1,
            amount=3.0,
            percent=0.2,
            status=Status.FAILED,
            error_message="boom",
        )
    )
    assert ok.id > 0 and bad.id > ok.id
    assert ok.sent_at == sent
    failed = db.get_failed_transactions()
    assert [t.id for t in failed] == [bad.id]
    assert failed[0].error_message == "boom"
    assert [t.id for t in db.get_all_transactions()] == [ok.id, bad.id]


def test_add_schedule_round_trip(db):
    when = datetime(2030, 1, 1, 12, 0, 0, 123456)
    saved = db.add_schedule(make_schedule(when))
    assert saved.id > 0
    assert saved.scheduled_at == when
    assert saved.status is Status.PENDING
    assert db.get_all_schedules() == [saved]


def test_schedules_due_and_status_update(db):
    now = datetime(2030, 1, 1, 12, 0, 0)
    past = db.add_schedule(make_schedule(now - timedelta(minutes=1)))
    exact = db.add_schedule(make_schedule(now, percent=0.2))
    db.add_schedule(make_schedule(now + timedelta(minutes=1), percent=0.3))
    assert [s.id for s in db.get_schedules_due(now)] == [past.id, exact.id]

    db.update_schedule_status(past.id, Status.SUCCESS, None)
    db.update_schedule_status(exact.id, "failed", "transfer failed")
    assert db.get_schedules_due(now) == []
    assert [s.id for s in db.get_schedules_by_status(Status.SUCCESS)] == [past.id]
    failed = db.get_schedules_by_status("failed")
    assert [s.error_message for s in failed] == ["transfer failed"]
    assert len(db.get_schedules_by_status(Status.PENDING)) == 1


def test_schedules_by_buyer_and_group(db):
    when = datetime(2030, 6, 1)
    a1 = db.add_schedule(make_schedule(when, WALLET_A, 1))
    db.add_schedule(make_schedule(when, WALLET_A, 2))
    db.add_schedule(make_schedule(when, WALLET_B, 1))
    assert [s.id for s in db.get_schedules_by_buyer_and_group(WALLET_A, 1)] == [a1.id]


def test_delete_schedule(db):
    saved = db.add_schedule(make_schedule(datetime(2030, 1, 1)))
    db.delete_schedule(saved.id)
    assert db.get_all_schedules() == []


def test_file_database_persists(tmp_path):
    url = "sqlite://" + str(tmp_path / "store.db")
    with Database(url) as first:
        first.save_group(make_group(7))
    with Database(url) as second:
        assert [g.id for g in second.get_groups()] == [7]


def test_closed_database_raises(tmp_path):
    with Database("sqlite::memory:") as database:
        pass
    with pytest.raises(DatabaseError):
        database.get_groups()