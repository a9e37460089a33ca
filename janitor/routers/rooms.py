from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from janitor.core.constants import TASK_SCAN
from janitor.schemas.purge import TaskStartedResponse
from janitor.schemas.rooms import BigRoomsResponse
from janitor.services.checkpoint import CheckpointCorruptError
from janitor.services.janitor import Janitor, get_janitor

router = APIRouter(tags=["rooms"])


@router.get("/rooms/biggest", response_model=BigRoomsResponse)
def biggest_rooms(
    limit: int = Query(default=10, ge=1, le=100),
    min_rows: Optional[int] = Query(default=None, ge=0),
    janitor: Janitor = Depends(get_janitor),
) -> BigRoomsResponse:
    try:
        return janitor.biggest_rooms(limit=limit, min_rows=min_rows)
    except CheckpointCorruptError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.post("/scan", response_model=TaskStartedResponse, status_code=status.HTTP_202_ACCEPTED)
def start_scan(janitor: Janitor = Depends(get_janitor)) -> TaskStartedResponse:
    if not janitor.start_scheduled_scan():
        raise HTTPException(status_code=409, detail="Another task is already running.")
    return TaskStartedResponse(status="started", task=TASK_SCAN)
