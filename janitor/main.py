import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from janitor.core.config import get_settings
from janitor.core.logging import configure_logging, get_logger
from janitor.routers.health import router as health_router
from janitor.routers.purge import router as purge_router
from janitor.routers.rooms import router as rooms_router
from janitor.services.janitor import get_janitor
from janitor.workers.runner import start_scheduler_thread

settings = get_settings()
configure_logging(settings.log_level)
logger = get_logger("janitor.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    stop = threading.Event()
    if settings.scheduler_enabled:
        start_scheduler_thread(get_janitor(), settings.scheduler_tick_seconds, stop)
        logger.info(
            "api.scheduler_started",
            extra={"event": "api.scheduler_started", "interval": settings.scheduler_tick_seconds},
        )
    yield
    stop.set()
    if get_janitor().cancel_active(pause=False):
        logger.info("api.task_cancelled", extra={"event": "api.task_cancelled"})


app = FastAPI(title="Synapse Janitor API", version="0.1.0", lifespan=lifespan)

origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router, prefix="/api")
app.include_router(purge_router, prefix="/api")
app.include_router(rooms_router, prefix="/api")
