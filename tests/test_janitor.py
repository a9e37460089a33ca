from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from janitor.core.config import get_settings
from janitor.core.constants import (
    LAST_SCHEDULED_TASK_KEY,
    PURGE_PROGRESS_KEY,
    ROW_COUNT_BY_ROOM_KEY,
    TASK_PURGE,
    TASK_SCAN,
)
from janitor.db import models
from janitor.db.session import SessionLocal
from janitor.schemas.purge import PurgeProgress, PurgeRoomRequest, RoomPurgeEntry
from janitor.schemas.rooms import RoomRowCounts, ScheduledTaskRecord
from janitor.services.checkpoint import CheckpointStore, MemoryDocumentStore
from janitor.services.deletion_status import ShardStatus
from janitor.services.janitor import Janitor
from janitor.services.purge import PurgeAlreadyPending

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class CompletingAdmin:
    def __init__(self):
        self.deleted: list[str] = []

    def delete_room(self, room_id, block, purge=True, force_purge=True, message=""):
        self.deleted.append(room_id)
        return f"del-{room_id}"

    def get_delete_status(self, room_id):
        return [ShardStatus(delete_id=f"del-{room_id}", status="complete")]

    def get_room_name(self, room_id):
        return f"name of {room_id}"


class StuckAdmin(CompletingAdmin):
    def get_delete_status(self, room_id):
        return [ShardStatus(delete_id=f"del-{room_id}", status="shutting_down")]


def make_janitor(admin=None, **overrides) -> Janitor:
    settings = replace(get_settings(), purge_poll_interval=0.01, **overrides)
    return Janitor(
        CheckpointStore(MemoryDocumentStore()),
        admin or CompletingAdmin(),
        SessionLocal,
        settings=settings,
    )


def seed_state_rows(room_id: str, state_group: int, rows: int) -> None:
    with SessionLocal() as session:
        event_id = f"$ev{state_group}"
        session.add(models.StateGroup(id=state_group, room_id=room_id, event_id=event_id))
        for index in range(rows):
            session.add(
                models.StateGroupsState(
                    state_group=state_group,
                    room_id=room_id,
                    type="m.room.member",
                    state_key=f"@user{index}:hs",
                )
            )
        session.commit()


def test_start_purge_runs_to_completion():
    seed_state_rows("!a:hs", 1, 3)
    janitor = make_janitor()

    progress = janitor.start_purge([PurgeRoomRequest(room_id="!a:hs", ban=True)])
    assert [room.room_id for room in progress.rooms] == ["!a:hs"]
    assert janitor.registry.join(timeout=10) is True

    assert janitor.admin.deleted == ["!a:hs"]
    assert janitor.store.exists(PURGE_PROGRESS_KEY) is False
    status = janitor.purge_status()
    assert status.running is False
    assert status.progress is None


def test_start_purge_validates_rooms():
    janitor = make_janitor()
    with pytest.raises(ValueError):
        janitor.start_purge([])
    with pytest.raises(ValueError):
        janitor.start_purge([PurgeRoomRequest(room_id="   ")])
    with pytest.raises(ValueError):
        janitor.start_purge(
            [PurgeRoomRequest(room_id="!a:hs"), PurgeRoomRequest(room_id="!a:hs")]
        )


def test_start_purge_refuses_when_one_is_pending():
    janitor = make_janitor()
    janitor.store.save(PURGE_PROGRESS_KEY, PurgeProgress(rooms=[RoomPurgeEntry(room_id="!a:hs")]))
    with pytest.raises(PurgeAlreadyPending):
        janitor.start_purge([PurgeRoomRequest(room_id="!b:hs")])
    assert janitor.registry.is_running() is False


def test_tick_resumes_pending_purge_first():
    janitor = make_janitor()
    janitor.store.save(PURGE_PROGRESS_KEY, PurgeProgress(rooms=[RoomPurgeEntry(room_id="!a:hs")]))

    assert janitor.tick(NOW) == TASK_PURGE
    assert janitor.registry.join(timeout=10) is True
    assert janitor.store.exists(PURGE_PROGRESS_KEY) is False
    assert janitor.admin.deleted == ["!a:hs"]


def test_cancelled_purge_stays_paused_until_forced():
    janitor = make_janitor(admin=StuckAdmin())
    janitor.start_purge([PurgeRoomRequest(room_id="!a:hs")])
    assert janitor.cancel_active(TASK_PURGE) is True
    assert janitor.registry.join(timeout=10) is True

    progress, found = janitor.store.load(PURGE_PROGRESS_KEY, PurgeProgress)
    assert found is True
    assert progress.paused_at is not None
    assert janitor.purge_paused() is True

    assert janitor.tick(NOW) is None
    assert janitor.resume_purge_if_pending() is False
    assert janitor.registry.is_running() is False

    assert janitor.resume_purge_if_pending(force=True) is True
    assert janitor.cancel_active(pause=False) is True
    assert janitor.registry.join(timeout=10) is True

    progress, _ = janitor.store.load(PURGE_PROGRESS_KEY, PurgeProgress)
    assert progress.paused_at is None
    assert janitor.tick(NOW) == TASK_PURGE
    janitor.cancel_active()
    assert janitor.registry.join(timeout=10) is True


def test_tick_starts_scan_when_due():
    seed_state_rows("!a:hs", 1, 3)
    seed_state_rows("!b:hs", 2, 1)
    janitor = make_janitor()

    assert janitor.tick(NOW) == TASK_SCAN
    assert janitor.registry.join(timeout=10) is True

    snapshot, found = janitor.store.load(ROW_COUNT_BY_ROOM_KEY, RoomRowCounts)
    assert found is True
    assert snapshot.rows_by_room == {"!a:hs": 3, "!b:hs": 1}
    assert snapshot.scanned_rows == 4
    record, found = janitor.store.load(LAST_SCHEDULED_TASK_KEY, ScheduledTaskRecord)
    assert found is True
    assert record.last_run_at is not None


def test_scan_due_follows_interval():
    janitor = make_janitor(scheduled_scan_interval_hours=24.0)
    assert janitor.scan_due(NOW) is True

    janitor.store.save(
        LAST_SCHEDULED_TASK_KEY, ScheduledTaskRecord(last_run_at=NOW - timedelta(hours=1))
    )
    assert janitor.scan_due(NOW) is False
    assert janitor.tick(NOW) is None

    janitor.store.save(
        LAST_SCHEDULED_TASK_KEY, ScheduledTaskRecord(last_run_at=NOW - timedelta(hours=25))
    )
    assert janitor.scan_due(NOW) is True


def test_resume_without_document_does_nothing():
    janitor = make_janitor()
    assert janitor.resume_purge_if_pending() is False
    assert janitor.registry.is_running() is False


def test_biggest_rooms_uses_snapshot_and_names():
    janitor = make_janitor(big_room_min_rows=100)
    janitor.store.save(
        ROW_COUNT_BY_ROOM_KEY,
        RoomRowCounts(rows_by_room={"!big:hs": 5000, "!small:hs": 50}),
    )

    summary = janitor.biggest_rooms(limit=5)
    assert [(room.name, room.rows) for room in summary.rooms] == [
        ("name of !big:hs", 5000),
        ("Others", 50),
    ]
    assert janitor.biggest_rooms(min_rows=10).rooms[1].name == "name of !small:hs"
