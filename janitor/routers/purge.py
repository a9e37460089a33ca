from fastapi import APIRouter, Depends, HTTPException, status

from janitor.core.constants import TASK_PURGE
from janitor.schemas.purge import PurgeRequest, PurgeStatusResponse, TaskStartedResponse
from janitor.services.checkpoint import CheckpointCorruptError
from janitor.services.janitor import Janitor, get_janitor
from janitor.services.purge import PurgeAlreadyPending
from janitor.services.tasks import TaskAlreadyRunning

router = APIRouter(tags=["purge"])


@router.post("/purge", response_model=TaskStartedResponse, status_code=status.HTTP_202_ACCEPTED)
def start_purge(
    payload: PurgeRequest,
    janitor: Janitor = Depends(get_janitor),
) -> TaskStartedResponse:
    try:
        progress = janitor.start_purge(payload.rooms)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (PurgeAlreadyPending, TaskAlreadyRunning) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return TaskStartedResponse(status="started", task=TASK_PURGE, progress=progress)


@router.get("/purge", response_model=PurgeStatusResponse)
def purge_status(janitor: Janitor = Depends(get_janitor)) -> PurgeStatusResponse:
    try:
        return janitor.purge_status()
    except CheckpointCorruptError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.post("/purge/resume", response_model=TaskStartedResponse)
def resume_purge(janitor: Janitor = Depends(get_janitor)) -> TaskStartedResponse:
    if not janitor.resume_purge_if_pending(force=True):
        raise HTTPException(
            status_code=409, detail="No pending purge, or a task is already running."
        )
    return TaskStartedResponse(status="resumed", task=TASK_PURGE)


@router.post("/purge/cancel", response_model=TaskStartedResponse)
def cancel_purge(janitor: Janitor = Depends(get_janitor)) -> TaskStartedResponse:
    if not janitor.cancel_active(TASK_PURGE):
        raise HTTPException(status_code=404, detail="No purge is running.")
    return TaskStartedResponse(status="cancelling", task=TASK_PURGE)
