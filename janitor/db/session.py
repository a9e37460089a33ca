"""Engine and sessions for the homeserver database."""

from typing import Callable, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from janitor.core.config import get_settings

APPLICATION_NAME = "synapse-janitor"

SessionFactory = Callable[[], Session]


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    if database_url.startswith("postgresql"):
        # Names the janitor in pg_stat_activity.
        return {"application_name": APPLICATION_NAME}
    return {}


def build_engine(database_url: str) -> Engine:
    return create_engine(
        database_url,
        connect_args=_connect_args(database_url),
        pool_pre_ping=True,
        future=True,
    )


def get_engine(database_url: Optional[str] = None) -> Engine:
    return build_engine(database_url or get_settings().database_url)


engine = get_engine()
SessionLocal: SessionFactory = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_session() -> Generator[Session, None, None]:
    with SessionLocal() as db:
        yield db
