import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _resolve_data_dir(raw: str) -> Path:
    path = Path(raw)
    if path.is_absolute():
        return path
    return (Path.cwd() / path).resolve()


@dataclass(frozen=True)
class Settings:
    database_url: str
    matrix_url: str
    matrix_admin_token: str
    data_dir: Path
    admin_http_timeout: float
    purge_poll_interval: float
    purge_checkpoint_interval: float
    purge_message: str
    scan_queue_size: int
    scan_progress_rows: int
    scan_progress_interval: float
    scheduled_scan_interval_hours: float
    scheduler_tick_seconds: float
    scheduler_enabled: bool
    big_room_min_rows: int
    cors_origins: str
    log_level: str


def get_settings() -> Settings:
    return Settings(
        database_url=os.getenv(
            "DATABASE_URL", "postgresql://synapse_user@localhost:5432/synapse"
        ),
        matrix_url=os.getenv("MATRIX_URL", "http://localhost:8008").rstrip("/"),
        matrix_admin_token=os.getenv("MATRIX_ADMIN_TOKEN", ""),
        data_dir=_resolve_data_dir(os.getenv("DATA_DIR", "data")),
        admin_http_timeout=_get_float("ADMIN_HTTP_TIMEOUT", 10.0),
        purge_poll_interval=_get_float("PURGE_POLL_INTERVAL", 5.0),
        purge_checkpoint_interval=_get_float("PURGE_CHECKPOINT_INTERVAL", 5.0),
        purge_message=os.getenv("PURGE_MESSAGE", "This room is being cleaned, stand by..."),
        scan_queue_size=_get_int("SCAN_QUEUE_SIZE", 50000),
        scan_progress_rows=_get_int("SCAN_PROGRESS_ROWS", 10000),
        scan_progress_interval=_get_float("SCAN_PROGRESS_INTERVAL", 1.0),
        scheduled_scan_interval_hours=_get_float("SCHEDULED_SCAN_INTERVAL_HOURS", 24.0),
        scheduler_tick_seconds=_get_float("SCHEDULER_TICK_SECONDS", 60.0),
        scheduler_enabled=_get_bool("SCHEDULER_ENABLED", True),
        big_room_min_rows=_get_int("BIG_ROOM_MIN_ROWS", 10000),
        cors_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
