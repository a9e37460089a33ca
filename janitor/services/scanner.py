from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from janitor.core.logging import get_logger
from janitor.db import models
from janitor.db.session import SessionFactory
from janitor.services.channel import Channel
from janitor.services.state_groups import StateGroupStoreError, estimate_state_groups_state_rows

logger = get_logger("janitor.scanner")

DEFAULT_QUEUE_SIZE = 50000
SCAN_YIELD_PER = 5000


class ScanError(RuntimeError):
    pass


class ScanCancelled(ScanError):
    pass


@dataclass(frozen=True)
class StateGroupsStateRow:
    state_group: int
    type: str
    state_key: str
    room_id: str


@dataclass
class StateGroupsStateStream:
    estimated_count: int
    channel: Channel[StateGroupsStateRow]

    @property
    def cancel(self) -> threading.Event:
        return self.channel.cancel

    def __iter__(self) -> Iterator[StateGroupsStateRow]:
        return iter(self.channel)


def _to_row(raw) -> StateGroupsStateRow:
    state_group, type_, state_key, room_id = raw
    if state_group is None or not room_id:
        raise ValueError(f"incomplete row: {tuple(raw)!r}")
    return StateGroupsStateRow(
        state_group=int(state_group),
        type=str(type_),
        state_key=str(state_key),
        room_id=str(room_id),
    )


def stream_state_groups_state(
    session_factory: SessionFactory,
    queue_size: int = DEFAULT_QUEUE_SIZE,
    cancel: Optional[threading.Event] = None,
) -> StateGroupsStateStream:
    """Open a streaming scan over every ``state_groups_state`` row.

    The estimate and the query are issued before returning so their errors
    reach the caller. Rows are then pushed by a producer thread through a
    bounded channel; the caller must drain the stream or cancel it.
    """
    db = session_factory()
    try:
        estimated_count = estimate_state_groups_state_rows(db)
        result = db.execute(
            select(
                models.StateGroupsState.state_group,
                models.StateGroupsState.type,
                models.StateGroupsState.state_key,
                models.StateGroupsState.room_id,
            ),
            execution_options={"yield_per": SCAN_YIELD_PER},
        )
    except StateGroupStoreError as exc:
        db.close()
        raise ScanError(str(exc)) from exc
    except SQLAlchemyError as exc:
        db.close()
        raise ScanError(f"could not select from state_groups_state: {exc}") from exc

    channel: Channel[StateGroupsStateRow] = Channel(maxsize=queue_size, cancel=cancel)

    def produce() -> None:
        skipped = 0
        try:
            for raw in result:
                try:
                    row = _to_row(raw)
                except (TypeError, ValueError) as exc:
                    skipped += 1
                    logger.warning(
                        "scan.row_skipped",
                        extra={"event": "scan.row_skipped", "error_message": str(exc)},
                    )
                    continue
                if not channel.send(row):
                    logger.info(
                        "scan.producer_cancelled", extra={"event": "scan.producer_cancelled"}
                    )
                    return
        except SQLAlchemyError as exc:
            logger.error(
                "scan.read_failed",
                extra={"event": "scan.read_failed", "error_message": str(exc)},
            )
            channel.close(ScanError(f"error reading state_groups_state: {exc}"))
            return
        finally:
            result.close()
            db.close()
        if skipped:
            logger.info(
                "scan.rows_skipped", extra={"event": "scan.rows_skipped", "skipped": skipped}
            )
        channel.close()

    thread = threading.Thread(target=produce, name="state-groups-state-scan", daemon=True)
    thread.start()
    return StateGroupsStateStream(estimated_count=estimated_count, channel=channel)


def count_rows_by_room(
    stream: StateGroupsStateStream,
    progress_rows: int = 10000,
    progress_interval: float = 1.0,
    clock: Callable[[], float] = time.monotonic,
) -> tuple[dict[str, int], int]:
    """Drain ``stream`` into a room -> row count map.

    Returns the map and the number of rows seen. Progress is logged only once
    more than ``progress_rows`` rows have passed since the last check and
    ``progress_interval`` seconds have elapsed since the last log line. The
    percentage is against the planner estimate and may exceed 100.
    """
    row_count_by_room: dict[str, int] = {}
    last_update = clock()
    update_counter = 0
    row_counter = 0

    for row in stream:
        row_count_by_room[row.room_id] = row_count_by_room.get(row.room_id, 0) + 1
        update_counter += 1
        row_counter += 1
        if update_counter > progress_rows:
            if stream.cancel.is_set():
                break
            now = clock()
            if now - last_update >= progress_interval:
                last_update = now
                percent = (
                    int(row_counter / stream.estimated_count * 100) if stream.estimated_count else 0
                )
                logger.info(
                    "scan.progress",
                    extra={
                        "event": "scan.progress",
                        "rows": row_counter,
                        "estimated_count": stream.estimated_count,
                        "percent": percent,
                    },
                )
            update_counter = 0

    if stream.cancel.is_set():
        raise ScanCancelled(f"scan cancelled after {row_counter} rows")
    return row_count_by_room, row_counter
