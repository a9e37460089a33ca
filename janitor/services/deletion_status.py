"""Merge per-shard room deletion reports into one verdict.

Synapse may report the same room deletion from several workers. The merged
status only ever moves forward through
``shutting_down < purging < failed < complete``, so the result does not depend
on the order the shards are listed in. A merged ``failed`` is raised as
``RoomDeletionFailed`` carrying every distinct error the shards reported.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from janitor.schemas.purge import STATUS_RANK, DeletionStatus


@dataclass(frozen=True)
class ShardStatus:
    delete_id: str
    status: str
    error: Optional[str] = None
    kicked_users: tuple[str, ...] = ()
    failed_to_kick_users: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReconciledStatus:
    status: DeletionStatus
    users: list[str] = field(default_factory=list)


class RoomDeletionFailed(RuntimeError):
    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = sorted(set(errors))
        super().__init__("room deletion failed: \n" + "\n".join(self.errors))


def parse_status(value: Optional[str]) -> Optional[DeletionStatus]:
    try:
        return DeletionStatus(value)
    except ValueError:
        return None


def advance(current: DeletionStatus, candidate: DeletionStatus) -> DeletionStatus:
    if candidate == DeletionStatus.UNKNOWN:
        return current
    if STATUS_RANK[candidate] >= STATUS_RANK[current]:
        return candidate
    return current


def reconcile_statuses(shards: Iterable[ShardStatus]) -> ReconciledStatus:
    users: set[str] = set()
    errors: set[str] = set()
    most_complete = DeletionStatus.UNKNOWN

    for shard in shards:
        users.update(shard.kicked_users)
        users.update(shard.failed_to_kick_users)
        if shard.error:
            errors.add(shard.error)
        status = parse_status(shard.status)
        if status is not None:
            most_complete = advance(most_complete, status)

    if most_complete == DeletionStatus.FAILED:
        raise RoomDeletionFailed(errors)

    return ReconciledStatus(status=most_complete, users=sorted(users))
