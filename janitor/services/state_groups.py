from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from janitor.core.logging import get_logger
from janitor.db import models
from janitor.db.session import SessionFactory
from janitor.services.channel import Channel

logger = get_logger("janitor.state_groups")


class StateGroupStoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class DeleteStateGroupsStateStatus:
    state_groups_deleted: int
    rows_deleted: int
    errors: int


def estimate_state_groups_state_rows(db: Session) -> int:
    """Planner estimate on PostgreSQL, exact count elsewhere."""
    try:
        if db.get_bind().dialect.name == "postgresql":
            estimate = db.execute(
                text(
                    "SELECT reltuples::bigint FROM pg_class "
                    "WHERE oid = 'public.state_groups_state'::regclass"
                )
            ).scalar()
        else:
            estimate = db.execute(
                select(func.count()).select_from(models.StateGroupsState)
            ).scalar()
    except SQLAlchemyError as exc:
        raise StateGroupStoreError(
            f"could not get estimated row count of state_groups_state: {exc}"
        ) from exc
    return max(int(estimate or 0), 0)


def get_state_groups_for_room(db: Session, room_id: str) -> list[int]:
    try:
        rows = db.execute(
            select(models.StateGroup.id).where(models.StateGroup.room_id == room_id)
        ).scalars()
        return [int(state_group_id) for state_group_id in rows]
    except SQLAlchemyError as exc:
        raise StateGroupStoreError(
            f"could not select state_groups for room {room_id}: {exc}"
        ) from exc


def delete_state_groups_for_room(db: Session, room_id: str) -> int:
    """Delete edges, event mappings and the state groups themselves.

    Edges and event mappings reference the groups, so they go first.
    Returns the number of rows deleted across the three tables.
    """
    room_groups = select(models.StateGroup.id).where(models.StateGroup.room_id == room_id)
    statements = [
        (
            "state_group_edges",
            delete(models.StateGroupEdge).where(models.StateGroupEdge.state_group.in_(room_groups)),
        ),
        (
            "event_to_state_groups",
            delete(models.EventToStateGroup).where(
                models.EventToStateGroup.state_group.in_(room_groups)
            ),
        ),
        (
            "state_groups",
            delete(models.StateGroup).where(models.StateGroup.room_id == room_id),
        ),
    ]

    rows_deleted = 0
    for table_name, statement in statements:
        try:
            result = db.execute(statement, execution_options={"synchronize_session": False})
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StateGroupStoreError(
                f"could not delete {table_name} for room {room_id}: {exc}"
            ) from exc
        rows_deleted += max(result.rowcount or 0, 0)
        logger.info(
            "state_groups.room_table_deleted",
            extra={
                "event": "state_groups.room_table_deleted",
                "room_id": room_id,
                "table": table_name,
                "rows": result.rowcount,
            },
        )
    return rows_deleted


def delete_state_group_rows(db: Session, state_group_id: int) -> int:
    statement = delete(models.StateGroupsState).where(
        models.StateGroupsState.state_group == state_group_id
    )
    result = db.execute(
        statement,
        execution_options={"synchronize_session": False},
    )
    db.commit()
    return max(result.rowcount or 0, 0)


def delete_state_groups_state(
    session_factory: SessionFactory,
    state_group_ids: Sequence[int],
    start_at: int = 0,
    cancel: Optional[threading.Event] = None,
) -> Iterator[DeleteStateGroupsStateStatus]:
    """Delete ``state_groups_state`` rows for ``state_group_ids[start_at:]`` in order.

    Runs in a background thread and yields a status after every ID.
    ``state_groups_deleted`` is the absolute index reached, so it can be
    persisted directly as the next ``start_at``. A failing ID is logged and
    counted, never fatal.
    """
    cancel = cancel or threading.Event()
    channel: Channel[DeleteStateGroupsStateStatus] = Channel(maxsize=0, cancel=cancel)
    ids = list(state_group_ids)
    start_at = max(0, min(start_at, len(ids)))

    def produce() -> None:
        rows_deleted = 0
        error_count = 0
        try:
            with session_factory() as db:
                for index in range(start_at, len(ids)):
                    if cancel.is_set():
                        logger.info(
                            "state_groups.delete_cancelled",
                            extra={"event": "state_groups.delete_cancelled", "index": index},
                        )
                        break
                    state_group_id = ids[index]
                    try:
                        rows_deleted += delete_state_group_rows(db, state_group_id)
                    except SQLAlchemyError as exc:
                        db.rollback()
                        error_count += 1
                        logger.warning(
                            "state_groups.delete_failed",
                            extra={
                                "event": "state_groups.delete_failed",
                                "state_group": state_group_id,
                                "error_message": str(exc),
                            },
                        )
                    channel.send(
                        DeleteStateGroupsStateStatus(
                            state_groups_deleted=index + 1,
                            rows_deleted=rows_deleted,
                            errors=error_count,
                        )
                    )
        except Exception as exc:
            logger.exception(
                "state_groups.delete_crashed",
                extra={"event": "state_groups.delete_crashed"},
            )
            channel.close(exc)
            return
        channel.close()

    thread = threading.Thread(target=produce, name="state-groups-delete", daemon=True)
    thread.start()
    return iter(channel)
