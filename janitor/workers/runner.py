from __future__ import annotations

import argparse
import sys
import threading
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from janitor.core.config import Settings, get_settings
from janitor.core.logging import configure_logging, get_logger
from janitor.db.session import SessionLocal
from janitor.schemas.purge import PurgeRoomRequest
from janitor.services.janitor import Janitor, build_janitor

logger = get_logger("janitor.worker")


def run_once(janitor: Janitor) -> Optional[str]:
    try:
        return janitor.tick()
    except Exception:
        logger.exception("scheduler.tick_failed", extra={"event": "scheduler.tick_failed"})
        return None


def run_loop(janitor: Janitor, interval: float, stop: Optional[threading.Event] = None) -> None:
    stop = stop or threading.Event()
    while not stop.is_set():
        started = run_once(janitor)
        if started:
            logger.info(
                "scheduler.task_started",
                extra={"event": "scheduler.task_started", "task": started},
            )
        stop.wait(interval)


def start_scheduler_thread(
    janitor: Janitor, interval: float, stop: threading.Event
) -> threading.Thread:
    thread = threading.Thread(
        target=run_loop,
        args=(janitor, interval, stop),
        name="janitor-scheduler",
        daemon=True,
    )
    thread.start()
    return thread


def check_startup(settings: Settings) -> None:
    """Exit the process when the data directory or the database is unusable."""
    try:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.critical(
            "worker.data_dir_unavailable",
            extra={
                "event": "worker.data_dir_unavailable",
                "path": str(settings.data_dir),
                "error_message": str(exc),
            },
        )
        sys.exit(1)

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.critical(
            "worker.database_unavailable",
            extra={"event": "worker.database_unavailable", "error_message": str(exc)},
        )
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(description="Synapse janitor background runner")
    parser.add_argument(
        "--once", action="store_true", help="Run a single scheduler step and wait for it"
    )
    parser.add_argument("--scan", action="store_true", help="Count state rows per room and exit")
    parser.add_argument(
        "--purge", nargs="+", metavar="ROOM_ID", help="Purge the given rooms and exit"
    )
    parser.add_argument(
        "--ban", action="store_true", help="Block the purged rooms from being rejoined"
    )
    parser.add_argument(
        "--interval", type=float, default=None, help="Sleep between scheduler steps (sec)"
    )
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_level)
    check_startup(settings)
    janitor = build_janitor(settings)

    if args.scan:
        mode = "scan"
    elif args.purge:
        mode = "purge"
    else:
        mode = "once" if args.once else "loop"
    logger.info("worker.start", extra={"event": "worker.start", "mode": mode})

    if args.scan:
        snapshot = janitor.run_scheduled_scan()
        logger.info(
            "worker.scan_saved",
            extra={"event": "worker.scan_saved", "rooms": len(snapshot.rows_by_room)},
        )
        return

    if args.purge:
        rooms = [PurgeRoomRequest(room_id=room_id, ban=args.ban) for room_id in args.purge]
        janitor.start_purge(rooms)
        janitor.registry.join()
        return

    if args.once:
        run_once(janitor)
        janitor.registry.join()
        return

    run_loop(janitor, args.interval or settings.scheduler_tick_seconds)


if __name__ == "__main__":
    main()
