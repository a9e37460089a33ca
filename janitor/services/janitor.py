from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

from janitor.core.config import Settings, get_settings
from janitor.core.constants import (
    LAST_SCHEDULED_TASK_KEY,
    PURGE_PROGRESS_KEY,
    ROW_COUNT_BY_ROOM_KEY,
    TASK_PURGE,
    TASK_SCAN,
)
from janitor.core.logging import get_logger
from janitor.db.session import SessionFactory, SessionLocal
from janitor.schemas.purge import (
    PurgeProgress,
    PurgeRoomRequest,
    PurgeStatusResponse,
    RoomPurgeEntry,
)
from janitor.schemas.rooms import BigRoomsResponse, RoomRowCounts, ScheduledTaskRecord
from janitor.services.checkpoint import CheckpointStore, JsonFileStore
from janitor.services.purge import (
    PurgeAlreadyPending,
    PurgeCancelled,
    PurgeRunResult,
    RoomDeletionAPI,
    RoomPurgeOrchestrator,
)
from janitor.services.rooms import summarize_biggest_rooms
from janitor.services.scanner import (
    StateGroupsStateStream,
    count_rows_by_room,
    stream_state_groups_state,
)
from janitor.services.synapse_admin import SynapseAdminClient
from janitor.services.tasks import TaskAlreadyRunning, TaskRegistry

logger = get_logger("janitor.janitor")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Janitor:
    """Entry point for scans and purges, shared by the API and the scheduler."""

    def __init__(
        self,
        store: CheckpointStore,
        admin: RoomDeletionAPI,
        session_factory: SessionFactory,
        settings: Optional[Settings] = None,
        registry: Optional[TaskRegistry] = None,
    ) -> None:
        self.store = store
        self.admin = admin
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.registry = registry or TaskRegistry()
        self._pause_on_cancel = True

    def build_orchestrator(self) -> RoomPurgeOrchestrator:
        return RoomPurgeOrchestrator(
            self.store,
            self.admin,
            self.session_factory,
            poll_interval=self.settings.purge_poll_interval,
            checkpoint_interval=self.settings.purge_checkpoint_interval,
            message=self.settings.purge_message,
        )

    def start_scan(self, cancel: Optional[threading.Event] = None) -> StateGroupsStateStream:
        return stream_state_groups_state(
            self.session_factory,
            queue_size=self.settings.scan_queue_size,
            cancel=cancel,
        )

    def run_scheduled_scan(self, cancel: Optional[threading.Event] = None) -> RoomRowCounts:
        started_at = _now()
        self.store.save(LAST_SCHEDULED_TASK_KEY, ScheduledTaskRecord(last_run_at=started_at))

        stream = self.start_scan(cancel)
        logger.info(
            "scan.start",
            extra={"event": "scan.start", "estimated_count": stream.estimated_count},
        )
        rows_by_room, scanned_rows = count_rows_by_room(
            stream,
            progress_rows=self.settings.scan_progress_rows,
            progress_interval=self.settings.scan_progress_interval,
        )
        snapshot = RoomRowCounts(
            rows_by_room=rows_by_room,
            estimated_total=stream.estimated_count,
            scanned_rows=scanned_rows,
            scanned_at=_now(),
        )
        self.store.save(ROW_COUNT_BY_ROOM_KEY, snapshot)
        logger.info(
            "scan.complete",
            extra={"event": "scan.complete", "rooms": len(rows_by_room), "rows": scanned_rows},
        )
        return snapshot

    def _purge_task(
        self,
        cancel: threading.Event,
        progress: Optional[PurgeProgress] = None,
    ) -> Optional[PurgeRunResult]:
        if progress is not None:
            self.store.save(PURGE_PROGRESS_KEY, progress)
        try:
            return self.build_orchestrator().run(cancel)
        except PurgeCancelled as exc:
            paused = self._pause_on_cancel and self._mark_paused()
            logger.info(
                "purge.cancelled",
                extra={"event": "purge.cancelled", "error_message": str(exc), "paused": paused},
            )
            return None

    def _mark_paused(self) -> bool:
        progress, found = self.store.load(PURGE_PROGRESS_KEY, PurgeProgress)
        if not found:
            return False
        progress.paused_at = _now()
        self.store.save(PURGE_PROGRESS_KEY, progress)
        return True

    def start_purge(self, rooms: list[PurgeRoomRequest]) -> PurgeProgress:
        if not rooms:
            raise ValueError("At least one room is required.")
        room_ids = [room.room_id.strip() for room in rooms]
        if any(not room_id for room_id in room_ids):
            raise ValueError("Room IDs must not be empty.")
        if len(set(room_ids)) != len(room_ids):
            raise ValueError("Each room may only be listed once.")
        if self.store.exists(PURGE_PROGRESS_KEY):
            raise PurgeAlreadyPending("A purge is already pending; resume or finish it first.")

        now = _now()
        progress = PurgeProgress(
            rooms=[
                RoomPurgeEntry(room_id=room_id, name=room.name, ban=room.ban)
                for room_id, room in zip(room_ids, rooms)
            ],
            created_at=now,
            updated_at=now,
        )
        self.registry.start(TASK_PURGE, self._purge_task, progress)
        logger.info(
            "purge.submitted",
            extra={"event": "purge.submitted", "rooms": room_ids},
        )
        return progress

    def resume_purge_if_pending(self, force: bool = False) -> bool:
        """Restart the saved purge, if any.

        A purge paused by an operator cancel is only picked up again with
        ``force``; the marker is cleared before the run starts.
        """
        if self.registry.is_running():
            return False
        progress, found = self.store.load(PURGE_PROGRESS_KEY, PurgeProgress)
        if not found or not progress.rooms:
            return False
        if progress.paused_at is not None and not force:
            logger.info(
                "purge.paused",
                extra={"event": "purge.paused", "paused_at": progress.paused_at},
            )
            return False
        progress.paused_at = None
        try:
            self.registry.start(TASK_PURGE, self._purge_task, progress)
        except TaskAlreadyRunning:
            return False
        logger.info(
            "purge.resumed",
            extra={
                "event": "purge.resumed",
                "rooms": len(progress.rooms),
                "resume_index": progress.state_groups_resume_index,
            },
        )
        return True

    def purge_paused(self) -> bool:
        progress, found = self.store.load(PURGE_PROGRESS_KEY, PurgeProgress)
        return found and progress.paused_at is not None

    def scan_due(self, now: Optional[datetime] = None) -> bool:
        record, _ = self.store.load(LAST_SCHEDULED_TASK_KEY, ScheduledTaskRecord)
        if record.last_run_at is None:
            return True
        now = now or _now()
        interval = timedelta(hours=self.settings.scheduled_scan_interval_hours)
        return now - record.last_run_at >= interval

    def start_scheduled_scan(self) -> bool:
        try:
            self.registry.start(TASK_SCAN, self.run_scheduled_scan)
        except TaskAlreadyRunning:
            return False
        return True

    def tick(self, now: Optional[datetime] = None) -> Optional[str]:
        """One scheduler step: resume a pending purge, else start a due scan.

        Nothing starts while a paused purge waits for an operator.
        """
        if self.registry.is_running():
            return None
        if self.resume_purge_if_pending():
            return TASK_PURGE
        if self.purge_paused():
            return None
        if self.scan_due(now) and self.start_scheduled_scan():
            return TASK_SCAN
        return None

    def cancel_active(self, name: Optional[str] = None, pause: bool = True) -> bool:
        """Cancel the running task. A cancelled purge stays paused unless ``pause`` is off."""
        self._pause_on_cancel = pause
        return self.registry.cancel(name)

    def purge_status(self) -> PurgeStatusResponse:
        progress, found = self.store.load(PURGE_PROGRESS_KEY, PurgeProgress)
        active = self.registry.active()
        return PurgeStatusResponse(
            running=self.registry.is_running(TASK_PURGE),
            active_task=active.name if active else None,
            progress=progress if found else None,
        )

    def biggest_rooms(self, limit: int = 10, min_rows: Optional[int] = None) -> BigRoomsResponse:
        snapshot, _ = self.store.load(ROW_COUNT_BY_ROOM_KEY, RoomRowCounts)
        name_lookup = getattr(self.admin, "get_room_name", None)
        return summarize_biggest_rooms(
            snapshot,
            limit=limit,
            min_rows=self.settings.big_room_min_rows if min_rows is None else min_rows,
            name_lookup=name_lookup,
        )


def build_janitor(settings: Optional[Settings] = None) -> Janitor:
    settings = settings or get_settings()
    store = CheckpointStore(JsonFileStore(settings.data_dir))
    admin = SynapseAdminClient(
        base_url=settings.matrix_url,
        token=settings.matrix_admin_token,
        timeout=settings.admin_http_timeout,
    )
    return Janitor(store, admin, SessionLocal, settings=settings)


@lru_cache(maxsize=1)
def get_janitor() -> Janitor:
    return build_janitor()
