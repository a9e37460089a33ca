from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    db: str
    active_task: Optional[str] = None
