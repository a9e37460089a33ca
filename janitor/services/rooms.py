from typing import Callable, Optional

from janitor.core.logging import get_logger
from janitor.schemas.rooms import BigRoom, BigRoomsResponse, RoomRowCounts
from janitor.services.synapse_admin import SynapseAdminError

logger = get_logger("janitor.rooms")

OTHERS_LABEL = "Others"


def summarize_biggest_rooms(
    snapshot: RoomRowCounts,
    limit: int = 10,
    min_rows: int = 10000,
    name_lookup: Optional[Callable[[str], str]] = None,
) -> BigRoomsResponse:
    """Largest rooms by state row count, plus an "Others" bucket for the rest."""
    total_rows = sum(snapshot.rows_by_room.values())
    candidates = sorted(
        ((room_id, rows) for room_id, rows in snapshot.rows_by_room.items() if rows > min_rows),
        key=lambda item: (-item[1], item[0]),
    )[:limit]

    rooms: list[BigRoom] = []
    big_rows = 0
    for room_id, rows in candidates:
        name = ""
        if name_lookup is not None:
            try:
                name = name_lookup(room_id)
            except SynapseAdminError as exc:
                logger.warning(
                    "rooms.name_lookup_failed",
                    extra={
                        "event": "rooms.name_lookup_failed",
                        "room_id": room_id,
                        "error_message": str(exc),
                    },
                )
        rooms.append(BigRoom(room_id=room_id, name=name, rows=rows))
        big_rows += rows

    rooms.append(BigRoom(room_id=None, name=OTHERS_LABEL, rows=total_rows - big_rows))
    return BigRoomsResponse(rooms=rooms, total_rows=total_rows, scanned_at=snapshot.scanned_at)
