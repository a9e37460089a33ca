from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class DeletionStatus(str, Enum):
    UNKNOWN = "unknown"
    SHUTTING_DOWN = "shutting_down"
    PURGING = "purging"
    FAILED = "failed"
    COMPLETE = "complete"


STATUS_RANK = {
    DeletionStatus.UNKNOWN: 0,
    DeletionStatus.SHUTTING_DOWN: 1,
    DeletionStatus.PURGING: 2,
    DeletionStatus.FAILED: 3,
    DeletionStatus.COMPLETE: 4,
}


class RoomPurgeEntry(BaseModel):
    room_id: str
    name: Optional[str] = None
    ban: bool = False
    status: DeletionStatus = DeletionStatus.UNKNOWN
    delete_id: Optional[str] = None
    affected_users: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class PurgeProgress(BaseModel):
    rooms: list[RoomPurgeEntry] = Field(default_factory=list)
    state_groups_state_progress: int = Field(default=0, ge=0, le=100)
    state_groups_resume_index: int = Field(default=0, ge=0)
    state_groups_total: int = Field(default=0, ge=0)
    rows_deleted: int = 0
    delete_errors: int = 0
    paused_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def all_complete(self) -> bool:
        return bool(self.rooms) and all(
            room.status == DeletionStatus.COMPLETE for room in self.rooms
        )


class PurgeRoomRequest(BaseModel):
    room_id: str = Field(min_length=1, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    ban: bool = False


class PurgeRequest(BaseModel):
    rooms: list[PurgeRoomRequest] = Field(min_length=1, max_length=100)


class PurgeStatusResponse(BaseModel):
    running: bool
    active_task: Optional[str] = None
    progress: Optional[PurgeProgress] = None


class TaskStartedResponse(BaseModel):
    status: str
    task: str
    progress: Optional[PurgeProgress] = None
