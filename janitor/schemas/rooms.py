from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class RoomRowCounts(BaseModel):
    rows_by_room: dict[str, int] = Field(default_factory=dict)
    estimated_total: int = 0
    scanned_rows: int = 0
    scanned_at: Optional[datetime] = None


class ScheduledTaskRecord(BaseModel):
    last_run_at: Optional[datetime] = None


class BigRoom(BaseModel):
    room_id: Optional[str] = None
    name: str
    rows: int


class BigRoomsResponse(BaseModel):
    rooms: list[BigRoom]
    total_rows: int
    scanned_at: Optional[datetime] = None
