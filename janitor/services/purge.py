"""Resumable room purge.

A run works through the rooms listed in the ``purge_progress`` document:

1. ask Synapse to delete every room not yet submitted,
2. poll the deletion status of every unfinished room until all are
   ``complete``, saving the document after each pass,
3. delete the ``state_groups_state`` rows of every state group of those rooms,
   in ascending state group order, saving the resume index every few seconds,
4. delete the rooms' state groups and edges, then the document itself.

The document is only removed once everything above succeeded, so a run
interrupted at any point picks up where the last save left off.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from janitor.core.constants import PURGE_PROGRESS_KEY, ROW_COUNT_BY_ROOM_KEY
from janitor.core.logging import get_logger
from janitor.db.session import SessionFactory
from janitor.schemas.purge import DeletionStatus, PurgeProgress, RoomPurgeEntry
from janitor.schemas.rooms import RoomRowCounts
from janitor.services.checkpoint import CheckpointError, CheckpointStore
from janitor.services.deletion_status import (
    RoomDeletionFailed,
    ShardStatus,
    advance,
    reconcile_statuses,
)
from janitor.services.state_groups import (
    delete_state_groups_for_room,
    delete_state_groups_state,
    get_state_groups_for_room,
)
from janitor.services.synapse_admin import DEFAULT_PURGE_MESSAGE, SynapseAdminError

logger = get_logger("janitor.purge")

OUTCOME_DONE = "done"
OUTCOME_NOTHING = "nothing"


class PurgeAborted(RuntimeError):
    pass


class PurgeCancelled(PurgeAborted):
    pass


class PurgeAlreadyPending(RuntimeError):
    pass


class RoomDeletionAPI(Protocol):
    def delete_room(
        self,
        room_id: str,
        block: bool,
        purge: bool = True,
        force_purge: bool = True,
        message: str = DEFAULT_PURGE_MESSAGE,
    ) -> str: ...

    def get_delete_status(self, room_id: str) -> list[ShardStatus]: ...


@dataclass(frozen=True)
class PurgeRunResult:
    outcome: str
    rooms: int = 0
    state_groups: int = 0
    rows_deleted: int = 0
    delete_errors: int = 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _percent(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, int(done / total * 100))


class RoomPurgeOrchestrator:
    def __init__(
        self,
        store: CheckpointStore,
        admin: RoomDeletionAPI,
        session_factory: SessionFactory,
        poll_interval: float = 5.0,
        checkpoint_interval: float = 5.0,
        message: str = DEFAULT_PURGE_MESSAGE,
        max_polls: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.admin = admin
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self.checkpoint_interval = checkpoint_interval
        self.message = message
        # None polls forever: a room stuck in shutting_down blocks the run.
        self.max_polls = max_polls
        self.clock = clock

    def run(self, cancel: Optional[threading.Event] = None) -> PurgeRunResult:
        cancel = cancel or threading.Event()
        progress, found = self.store.load(PURGE_PROGRESS_KEY, PurgeProgress)
        if not found or not progress.rooms:
            logger.info("purge.nothing_to_do", extra={"event": "purge.nothing_to_do"})
            return PurgeRunResult(outcome=OUTCOME_NOTHING)

        logger.info(
            "purge.start",
            extra={
                "event": "purge.start",
                "rooms": len(progress.rooms),
                "resume_index": progress.state_groups_resume_index,
            },
        )
        self._submit(progress)
        self._poll_until_complete(progress, cancel)

        state_group_ids = self._collect_state_groups(progress)
        self._delete_state_groups_state(progress, state_group_ids, cancel)
        self._delete_room_state_groups(progress)

        self.store.delete(PURGE_PROGRESS_KEY)
        self._forget_purged_rooms(progress)
        logger.info(
            "purge.complete",
            extra={
                "event": "purge.complete",
                "rooms": len(progress.rooms),
                "state_groups": len(state_group_ids),
                "rows_deleted": progress.rows_deleted,
                "delete_errors": progress.delete_errors,
            },
        )
        return PurgeRunResult(
            outcome=OUTCOME_DONE,
            rooms=len(progress.rooms),
            state_groups=len(state_group_ids),
            rows_deleted=progress.rows_deleted,
            delete_errors=progress.delete_errors,
        )

    def _save(self, progress: PurgeProgress) -> None:
        progress.updated_at = _now()
        self.store.save(PURGE_PROGRESS_KEY, progress)

    def _needs_submission(self, room: RoomPurgeEntry) -> bool:
        if room.status == DeletionStatus.COMPLETE:
            return False
        return room.delete_id is None or room.status == DeletionStatus.FAILED

    def _submit(self, progress: PurgeProgress) -> None:
        for room in progress.rooms:
            if not self._needs_submission(room):
                continue
            try:
                delete_id = self.admin.delete_room(
                    room.room_id,
                    block=room.ban,
                    purge=True,
                    force_purge=True,
                    message=self.message,
                )
            except SynapseAdminError as exc:
                logger.error(
                    "purge.submit_failed",
                    extra={
                        "event": "purge.submit_failed",
                        "room_id": room.room_id,
                        "error_message": str(exc),
                    },
                )
                raise PurgeAborted(f"could not submit deletion of {room.room_id}: {exc}") from exc

            room.delete_id = delete_id
            # A failed room is being retried, the only move back down the ranks.
            room.status = DeletionStatus.UNKNOWN
            room.error = None
            self._save(progress)

    def _poll_once(self, progress: PurgeProgress) -> None:
        for room in progress.rooms:
            if room.status == DeletionStatus.COMPLETE:
                continue
            try:
                shards = self.admin.get_delete_status(room.room_id)
            except SynapseAdminError as exc:
                self._save(progress)
                raise PurgeAborted(
                    f"could not get deletion status of {room.room_id}: {exc}"
                ) from exc

            try:
                reconciled = reconcile_statuses(shards)
            except RoomDeletionFailed as exc:
                room.status = DeletionStatus.FAILED
                room.error = str(exc)
                self._save(progress)
                logger.error(
                    "purge.room_failed",
                    extra={
                        "event": "purge.room_failed",
                        "room_id": room.room_id,
                        "errors": exc.errors,
                    },
                )
                raise PurgeAborted(f"deletion of {room.room_id} failed: {exc}") from exc

            room.status = advance(room.status, reconciled.status)
            room.affected_users = sorted(set(room.affected_users) | set(reconciled.users))

        self._save(progress)

    def _poll_until_complete(self, progress: PurgeProgress, cancel: threading.Event) -> None:
        polls = 0
        while True:
            self._poll_once(progress)
            polls += 1
            pending = [
                room.room_id for room in progress.rooms if room.status != DeletionStatus.COMPLETE
            ]
            logger.info(
                "purge.poll",
                extra={
                    "event": "purge.poll",
                    "poll": polls,
                    "pending": len(pending),
                    "statuses": {room.room_id: room.status.value for room in progress.rooms},
                },
            )
            if progress.all_complete:
                return
            if self.max_polls is not None and polls >= self.max_polls:
                raise PurgeAborted(f"rooms still not deleted after {polls} polls: {pending}")
            if cancel.wait(self.poll_interval):
                raise PurgeCancelled("purge cancelled while waiting for room deletion")

    def _collect_state_groups(self, progress: PurgeProgress) -> list[int]:
        state_group_ids: list[int] = []
        with self.session_factory() as db:
            for room in progress.rooms:
                room_groups = get_state_groups_for_room(db, room.room_id)
                logger.info(
                    "purge.state_groups_found",
                    extra={
                        "event": "purge.state_groups_found",
                        "room_id": room.room_id,
                        "state_groups": len(room_groups),
                    },
                )
                state_group_ids.extend(room_groups)
        # Sorted so the saved resume index always names the same prefix.
        return sorted(state_group_ids)

    def _delete_state_groups_state(
        self,
        progress: PurgeProgress,
        state_group_ids: list[int],
        cancel: threading.Event,
    ) -> None:
        start_at = min(progress.state_groups_resume_index, len(state_group_ids))
        rows_before = progress.rows_deleted
        errors_before = progress.delete_errors
        progress.state_groups_total = len(state_group_ids)
        progress.state_groups_state_progress = _percent(start_at, len(state_group_ids))
        self._save(progress)
        last_save = self.clock()

        for status in delete_state_groups_state(
            self.session_factory, state_group_ids, start_at=start_at, cancel=cancel
        ):
            progress.state_groups_resume_index = status.state_groups_deleted
            progress.rows_deleted = rows_before + status.rows_deleted
            progress.delete_errors = errors_before + status.errors
            progress.state_groups_state_progress = _percent(
                status.state_groups_deleted, len(state_group_ids)
            )
            if self.clock() - last_save >= self.checkpoint_interval:
                self._save(progress)
                last_save = self.clock()
                logger.info(
                    "purge.state_groups_state_progress",
                    extra={
                        "event": "purge.state_groups_state_progress",
                        "processed": status.state_groups_deleted,
                        "total": len(state_group_ids),
                        "rows_deleted": progress.rows_deleted,
                        "errors": progress.delete_errors,
                    },
                )

        self._save(progress)
        if cancel.is_set():
            raise PurgeCancelled(
                f"purge cancelled after {progress.state_groups_resume_index} of "
                f"{len(state_group_ids)} state groups"
            )
        if progress.state_groups_resume_index < len(state_group_ids):
            raise PurgeAborted(
                f"state group deletion stopped at {progress.state_groups_resume_index} of "
                f"{len(state_group_ids)}"
            )

    def _delete_room_state_groups(self, progress: PurgeProgress) -> None:
        with self.session_factory() as db:
            for room in progress.rooms:
                rows = delete_state_groups_for_room(db, room.room_id)
                logger.info(
                    "purge.room_state_groups_deleted",
                    extra={
                        "event": "purge.room_state_groups_deleted",
                        "room_id": room.room_id,
                        "rows": rows,
                    },
                )

    def _forget_purged_rooms(self, progress: PurgeProgress) -> None:
        try:
            snapshot, found = self.store.load(ROW_COUNT_BY_ROOM_KEY, RoomRowCounts)
            if not found:
                return
            for room in progress.rooms:
                snapshot.rows_by_room.pop(room.room_id, None)
            self.store.save(ROW_COUNT_BY_ROOM_KEY, snapshot)
        except CheckpointError as exc:
            logger.warning(
                "purge.snapshot_update_failed",
                extra={"event": "purge.snapshot_update_failed", "error_message": str(exc)},
            )
