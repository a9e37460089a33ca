import itertools

import pytest
from janitor.schemas.purge import DeletionStatus
from janitor.services.deletion_status import (
    RoomDeletionFailed,
    ShardStatus,
    advance,
    reconcile_statuses,
)


def shard(status: str, error=None, kicked=(), failed=()) -> ShardStatus:
    return ShardStatus(
        delete_id=f"del-{status}",
        status=status,
        error=error,
        kicked_users=tuple(kicked),
        failed_to_kick_users=tuple(failed),
    )


def test_most_complete_status_wins_in_any_order():
    shards = [shard("shutting_down"), shard("complete"), shard("purging")]
    for ordering in itertools.permutations(shards):
        assert reconcile_statuses(ordering).status == DeletionStatus.COMPLETE


def test_purging_beats_shutting_down():
    result = reconcile_statuses([shard("purging"), shard("shutting_down")])
    assert result.status == DeletionStatus.PURGING


def test_complete_outranks_failed():
    result = reconcile_statuses([shard("failed", error="boom"), shard("complete")])
    assert result.status == DeletionStatus.COMPLETE


def test_failed_raises_with_every_error():
    shards = [
        shard("failed", error="disk full"),
        shard("shutting_down", error="worker lost"),
        shard("failed", error="disk full"),
    ]
    for ordering in itertools.permutations(shards):
        with pytest.raises(RoomDeletionFailed) as excinfo:
            reconcile_statuses(ordering)
        assert excinfo.value.errors == ["disk full", "worker lost"]
        assert str(excinfo.value) == "room deletion failed: \ndisk full\nworker lost"


def test_users_are_merged_without_duplicates():
    result = reconcile_statuses(
        [
            shard("purging", kicked=["@a:hs", "@b:hs"]),
            shard("shutting_down", kicked=["@b:hs"], failed=["@c:hs"]),
        ]
    )
    assert result.users == ["@a:hs", "@b:hs", "@c:hs"]


def test_unknown_statuses_are_ignored():
    result = reconcile_statuses([shard("bogus"), shard("")])
    assert result.status == DeletionStatus.UNKNOWN

    result = reconcile_statuses([shard("bogus"), shard("shutting_down")])
    assert result.status == DeletionStatus.SHUTTING_DOWN


def test_no_shards_is_unknown():
    result = reconcile_statuses([])
    assert result.status == DeletionStatus.UNKNOWN
    assert result.users == []


def test_advance_never_moves_back():
    assert advance(DeletionStatus.COMPLETE, DeletionStatus.PURGING) == DeletionStatus.COMPLETE
    assert advance(DeletionStatus.PURGING, DeletionStatus.UNKNOWN) == DeletionStatus.PURGING
    assert advance(DeletionStatus.SHUTTING_DOWN, DeletionStatus.PURGING) == DeletionStatus.PURGING
    assert advance(DeletionStatus.COMPLETE, DeletionStatus.FAILED) == DeletionStatus.COMPLETE
