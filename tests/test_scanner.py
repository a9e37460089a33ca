import logging
import threading

import pytest
from janitor.db import models
from janitor.db.session import SessionLocal
from janitor.services.scanner import (
    ScanCancelled,
    ScanError,
    count_rows_by_room,
    stream_state_groups_state,
)
from sqlalchemy.exc import OperationalError


def seed_rows(rows_by_room: dict[str, int]) -> None:
    with SessionLocal() as session:
        state_group = 1
        for room_id, rows in rows_by_room.items():
            for index in range(rows):
                session.add(
                    models.StateGroupsState(
                        state_group=state_group,
                        room_id=room_id,
                        type="m.room.member",
                        state_key=f"@user{index}:hs",
                    )
                )
            state_group += 1
        session.commit()


class StepClock:
    def __init__(self, step: float) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def test_counts_rows_per_room():
    seed_rows({"!a:hs": 5, "!b:hs": 3, "!c:hs": 1})
    stream = stream_state_groups_state(SessionLocal, queue_size=2)
    assert stream.estimated_count == 9

    counts, scanned = count_rows_by_room(stream)
    assert counts == {"!a:hs": 5, "!b:hs": 3, "!c:hs": 1}
    assert scanned == 9


def test_empty_table():
    stream = stream_state_groups_state(SessionLocal)
    assert stream.estimated_count == 0
    assert count_rows_by_room(stream) == ({}, 0)


def test_progress_is_throttled(caplog):
    caplog.set_level(logging.INFO, logger="janitor.scanner")
    seed_rows({"!a:hs": 25})
    stream = stream_state_groups_state(SessionLocal)

    count_rows_by_room(stream, progress_rows=4, progress_interval=1.0, clock=StepClock(1.0))

    progress = [record for record in caplog.records if record.getMessage() == "scan.progress"]
    # A check happens after every fifth row.
    assert [record.rows for record in progress] == [5, 10, 15, 20, 25]
    assert progress[-1].percent == 100


def test_progress_waits_for_interval(caplog):
    caplog.set_level(logging.INFO, logger="janitor.scanner")
    seed_rows({"!a:hs": 25})
    stream = stream_state_groups_state(SessionLocal)

    count_rows_by_room(stream, progress_rows=4, progress_interval=10.0, clock=StepClock(1.0))

    assert not [record for record in caplog.records if record.getMessage() == "scan.progress"]


def test_cancelled_scan_raises():
    seed_rows({"!a:hs": 10})
    cancel = threading.Event()
    stream = stream_state_groups_state(SessionLocal, queue_size=1, cancel=cancel)
    cancel.set()
    with pytest.raises(ScanCancelled):
        count_rows_by_room(stream)


def test_query_error_is_raised_to_caller():
    def fail(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("db gone"))

    def broken_session():
        session = SessionLocal()
        session.execute = fail
        return session

    with pytest.raises(ScanError):
        stream_state_groups_state(broken_session)
