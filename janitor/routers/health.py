from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from janitor.core.logging import get_logger
from janitor.db.session import get_session
from janitor.schemas.health import HealthResponse
from janitor.services.janitor import Janitor, get_janitor

router = APIRouter(tags=["health"])
logger = get_logger("janitor.api.health")


@router.get("/health", response_model=HealthResponse)
def health(
    db: Session = Depends(get_session),
    janitor: Janitor = Depends(get_janitor),
) -> HealthResponse:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning(
            "health.database_unavailable",
            extra={"event": "health.database_unavailable", "error_message": str(exc)},
        )
        raise HTTPException(status_code=503, detail="Database unavailable.") from exc
    active = janitor.registry.active()
    return HealthResponse(status="ok", db="ok", active_task=active.name if active else None)
