"""Tests for the reservation store and its no-overlap guarantee."""

import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import event

from conftest import MONDAY, RESOURCE_ID, at
from database_manager import overlaps
from errors import ErrorKind
from models import Reservation, ReservationStatus, CancelReason


def insert(db, reservation, now):
    return db.try_insert(reservation, lambda: now)


def candidate(start, end, resource_id=RESOURCE_ID, requester="alice", now=None, status=ReservationStatus.ONHOLD):
    now = now or at(MONDAY, 7)
    return Reservation(
        resource_id=resource_id,
        requester_id=requester,
        start_instant=start,
        end_instant=end,
        status=status,
        created_at=now,
        hold_expires_at=now + timedelta(minutes=10) if status == ReservationStatus.ONHOLD else None,
    )


class TestOverlapPredicate:

    def test_overlapping_intervals(self):
        assert overlaps(at(MONDAY, 9), at(MONDAY, 11), at(MONDAY, 10), at(MONDAY, 12))

    def test_contained_interval(self):
        assert overlaps(at(MONDAY, 9), at(MONDAY, 12), at(MONDAY, 10), at(MONDAY, 11))

    def test_abutting_intervals_do_not_overlap(self):
        assert not overlaps(at(MONDAY, 9), at(MONDAY, 10), at(MONDAY, 10), at(MONDAY, 11))
        assert not overlaps(at(MONDAY, 10), at(MONDAY, 11), at(MONDAY, 9), at(MONDAY, 10))


class TestTryInsert:

    def test_insert_into_empty_resource(self, db):
        ok, reservation = insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10)), at(MONDAY, 7))
        assert ok
        assert reservation.id is not None
        assert db.get_reservation(reservation.id).status == ReservationStatus.ONHOLD

    def test_conflict_lists_every_overlapping_id(self, db):
        now = at(MONDAY, 7)
        _, first = insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10)), now)
        _, second = insert(db, candidate(at(MONDAY, 10), at(MONDAY, 11)), now)

        ok, result = insert(db, candidate(at(MONDAY, 9, 30), at(MONDAY, 10, 30), requester="bob"), now)

        assert not ok
        assert result["error"] == ErrorKind.CONFLICT.value
        assert result["conflicting_ids"] == [first.id, second.id]
        items, total = db.list_reservations(resource_id=RESOURCE_ID)
        assert total == 2

    def test_abutting_reservations_are_accepted(self, db):
        now = at(MONDAY, 7)
        assert insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10)), now)[0]
        assert insert(db, candidate(at(MONDAY, 10), at(MONDAY, 11)), now)[0]

    def test_other_resources_do_not_conflict(self, db):
        db.initialize_resource(2)
        now = at(MONDAY, 7)
        assert insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10)), now)[0]
        assert insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10), resource_id=2), now)[0]

    def test_expired_hold_does_not_block(self, db):
        created = at(MONDAY, 7)
        insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10), now=created), created)

        later = created + timedelta(minutes=10)
        ok, _ = insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10), requester="bob", now=later), later)
        assert ok

    @pytest.mark.parametrize("status", [ReservationStatus.CONFIRMED, ReservationStatus.COMPLETED])
    def test_confirmed_and_completed_block(self, db, status):
        now = at(MONDAY, 7)
        insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10), status=status), now)
        ok, result = insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10), requester="bob"), now)
        assert not ok
        assert result["error"] == ErrorKind.CONFLICT.value

    @pytest.mark.parametrize("status", [ReservationStatus.CANCELLED, ReservationStatus.NO_SHOW])
    def test_cancelled_and_no_show_do_not_block(self, db, status):
        now = at(MONDAY, 7)
        insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10), status=status), now)
        assert insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10), requester="bob"), now)[0]

    def test_invalid_interval_rejected(self, db):
        ok, result = insert(db, candidate(at(MONDAY, 10), at(MONDAY, 10)), at(MONDAY, 7))
        assert not ok
        assert result["error"] == ErrorKind.VALIDATION_ERROR.value

    def test_unknown_resource(self, db):
        ok, result = insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10), resource_id=404), at(MONDAY, 7))
        assert not ok
        assert result["error"] == ErrorKind.NOT_FOUND.value

    def test_inactive_resource(self, db):
        db.set_resource_active(RESOURCE_ID, False)
        ok, result = insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10)), at(MONDAY, 7))
        assert not ok
        assert result["error"] == ErrorKind.INACTIVE.value

    def test_lock_timeout_reports_busy(self, settings):
        from database_manager import DatabaseManager

        db = DatabaseManager(settings.database_url, lock_timeout=0.05)
        db.initialize_resource(RESOURCE_ID)
        outcome = {}

        def attempt():
            outcome["result"] = insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10)), at(MONDAY, 7))

        with db.locks.acquire(RESOURCE_ID):
            worker = threading.Thread(target=attempt)
            worker.start()
            worker.join()

        ok, result = outcome["result"]
        assert not ok
        assert result["error"] == ErrorKind.BUSY.value
        db.engine.dispose()


class TestConcurrentInserts:

    def test_racing_identical_holds_have_one_winner(self, db):
        now = at(MONDAY, 7)

        def attempt(i):
            return insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10), requester=f"user-{i}"), now)

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(attempt, range(16)))

        winners = [r for ok, r in results if ok]
        losers = [r for ok, r in results if not ok]
        assert len(winners) == 1
        assert all(r["error"] == ErrorKind.CONFLICT.value for r in losers)

    def test_accepted_set_is_pairwise_disjoint(self, db):
        rng = random.Random(42)
        now = at(MONDAY, 7)
        intervals = []
        for _ in range(60):
            start = at(MONDAY, 8) + timedelta(minutes=15 * rng.randrange(0, 36))
            intervals.append((start, start + timedelta(minutes=15 * rng.randint(1, 8))))

        def attempt(interval):
            return insert(db, candidate(*interval), now)

        with ThreadPoolExecutor(max_workers=12) as executor:
            results = list(executor.map(attempt, intervals))

        accepted = [r for ok, r in results if ok]
        assert accepted
        for i, a in enumerate(accepted):
            for b in accepted[i + 1:]:
                assert not overlaps(a.start_instant, a.end_instant, b.start_instant, b.end_instant)

        stored, total = db.list_reservations(resource_id=RESOURCE_ID, limit=100)
        assert total == len(accepted)


class TestExpireHolds:

    def test_sweep_is_idempotent(self, db):
        created = at(MONDAY, 7)
        _, expired_a = insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10)), created)
        _, expired_b = insert(db, candidate(at(MONDAY, 11), at(MONDAY, 12)), created)
        _, confirmed = insert(db, 
            candidate(at(MONDAY, 13), at(MONDAY, 14), status=ReservationStatus.CONFIRMED), created)

        later = created + timedelta(minutes=11)
        assert db.expire_holds(later) == 2
        assert db.expire_holds(later) == 0

        for reservation_id in (expired_a.id, expired_b.id):
            reservation = db.get_reservation(reservation_id)
            assert reservation.status == ReservationStatus.CANCELLED
            assert reservation.cancel_reason == CancelReason.EXPIRED
            assert reservation.hold_expires_at is None
        assert db.get_reservation(confirmed.id).status == ReservationStatus.CONFIRMED

    def test_unexpired_holds_survive(self, db):
        created = at(MONDAY, 7)
        _, hold = insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10)), created)
        assert db.expire_holds(created + timedelta(minutes=9)) == 0
        assert db.get_reservation(hold.id).status == ReservationStatus.ONHOLD


class TestOperatingWindows:

    def test_window_requires_start_before_end(self, db):
        from datetime import time

        ok, result = db.add_operating_window(RESOURCE_ID, MONDAY, time(12), time(9))
        assert not ok
        assert result["error"] == ErrorKind.VALIDATION_ERROR.value

    def test_windows_listed_in_order(self, db):
        from datetime import time

        db.add_operating_window(RESOURCE_ID, MONDAY, time(13), time(17))
        db.add_operating_window(RESOURCE_ID, MONDAY, time(8), time(12))
        windows = db.get_operating_windows(RESOURCE_ID, MONDAY)
        assert [w.start_time for w in windows] == [time(8), time(13)]

    def test_health_check(self, db):
        assert db.health_check() == {"status": "healthy", "database": "connected", "resources": 1}


class TestCriticalSectionTiming:

    def test_clock_is_read_while_the_resource_is_locked(self, db):
        lock = db.locks._lock_for(RESOURCE_ID)
        readings = []

        def clock():
            readings.append(lock.locked())
            return at(MONDAY, 7, 5)

        ok, reservation = db.try_insert(candidate(at(MONDAY, 9), at(MONDAY, 10)), clock, timedelta(minutes=10))

        assert ok
        assert readings == [True]
        assert reservation.created_at == at(MONDAY, 7, 5)
        assert reservation.updated_at == at(MONDAY, 7, 5)
        assert reservation.hold_expires_at == at(MONDAY, 7, 15)

    def test_postgresql_sessions_set_a_lock_timeout(self, db, monkeypatch):
        statements = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(db.engine, "before_cursor_execute", capture)
        monkeypatch.setattr(db.engine.dialect, "name", "postgresql")
        try:
            # SQLite rejects SET LOCAL, which exercises the same path as a lock timeout
            ok, result = insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10)), at(MONDAY, 7))
        finally:
            event.remove(db.engine, "before_cursor_execute", capture)

        assert statements[0] == "SET LOCAL lock_timeout = '2000ms'"
        assert not ok
        assert result["error"] == ErrorKind.BUSY.value

    def test_sqlite_sessions_skip_the_lock_timeout(self, db):
        statements = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(db.engine, "before_cursor_execute", capture)
        try:
            assert insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10)), at(MONDAY, 7))[0]
        finally:
            event.remove(db.engine, "before_cursor_execute", capture)

        assert not any("lock_timeout" in s for s in statements)


class TestStatusFilters:

    def test_expired_hold_is_filtered_as_cancelled(self, db):
        created = at(MONDAY, 7)
        insert(db, candidate(at(MONDAY, 9), at(MONDAY, 10)), created)
        later = created + timedelta(minutes=11)

        assert db.list_reservations(statuses=[ReservationStatus.ONHOLD], now=created)[1] == 1
        assert db.list_reservations(statuses=[ReservationStatus.ONHOLD], now=later)[1] == 0
        assert db.list_reservations(statuses=[ReservationStatus.CANCELLED], now=later)[1] == 1
        assert db.list_reservations(
            statuses=[ReservationStatus.ONHOLD, ReservationStatus.CONFIRMED], now=later)[1] == 0
