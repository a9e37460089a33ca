from typing import Any, Optional
from urllib.parse import quote

import httpx

from janitor.core.config import get_settings
from janitor.core.constants import NO_ROOM_NAME
from janitor.core.logging import get_logger
from janitor.services.deletion_status import ShardStatus

logger = get_logger("janitor.synapse_admin")

DEFAULT_PURGE_MESSAGE = "This room is being cleaned, stand by..."


class SynapseAdminError(RuntimeError):
    pass


def _room_path(room_id: str) -> str:
    return quote(room_id, safe="")


def _parse_shard(result: dict[str, Any]) -> ShardStatus:
    shutdown = result.get("shutdown_room") or {}
    return ShardStatus(
        delete_id=str(result.get("delete_id") or ""),
        status=str(result.get("status") or ""),
        error=result.get("error") or None,
        kicked_users=tuple(shutdown.get("kicked_users") or ()),
        failed_to_kick_users=tuple(shutdown.get("failed_to_kick_users") or ()),
    )


class SynapseAdminClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.matrix_url).rstrip("/")
        self.token = token if token is not None else settings.matrix_admin_token
        self._client = client or httpx.Client(
            timeout=timeout if timeout is not None else settings.admin_http_timeout,
        )
        self._headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        }
        self._room_names: dict[str, str] = {}

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(
                method, f"{self.base_url}{path}", headers=self._headers, **kwargs
            )
        except httpx.HTTPError as exc:
            raise SynapseAdminError(f"HTTP {method} {path}: {exc}") from exc

    @staticmethod
    def _raise_for_status(method: str, path: str, response: httpx.Response) -> None:
        if response.status_code >= 300:
            raise SynapseAdminError(
                f"HTTP {method} {path}: HTTP {response.status_code}: {response.text}"
            )

    @staticmethod
    def _json(method: str, path: str, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise SynapseAdminError(f"HTTP {method} {path}: json parse error: {exc}") from exc
        if not isinstance(payload, dict):
            raise SynapseAdminError(f"HTTP {method} {path}: unexpected response payload")
        return payload

    def delete_room(
        self,
        room_id: str,
        block: bool,
        purge: bool = True,
        force_purge: bool = True,
        message: str = DEFAULT_PURGE_MESSAGE,
    ) -> str:
        path = f"/_synapse/admin/v2/rooms/{_room_path(room_id)}"
        body = {
            "block": block,
            "force_purge": force_purge,
            "purge": purge,
            "message": message,
        }
        response = self._request("DELETE", path, json=body)
        self._raise_for_status("DELETE", path, response)
        payload = self._json("DELETE", path, response)
        delete_id = payload.get("delete_id")
        if not delete_id:
            raise SynapseAdminError(f"HTTP DELETE {path}: response has no delete_id")
        logger.info(
            "synapse.delete_requested",
            extra={
                "event": "synapse.delete_requested",
                "room_id": room_id,
                "delete_id": delete_id,
            },
        )
        return str(delete_id)

    def get_delete_status(self, room_id: str) -> list[ShardStatus]:
        path = f"/_synapse/admin/v2/rooms/{_room_path(room_id)}/delete_status"
        response = self._request("GET", path)
        self._raise_for_status("GET", path, response)
        payload = self._json("GET", path, response)
        results = payload.get("results") or []
        if not isinstance(results, list):
            raise SynapseAdminError(f"HTTP GET {path}: unexpected results payload")
        return [_parse_shard(result) for result in results if isinstance(result, dict)]

    def get_room_name(self, room_id: str) -> str:
        cached = self._room_names.get(room_id)
        if cached is not None:
            return cached

        path = f"/_synapse/admin/v1/rooms/{_room_path(room_id)}"
        response = self._request("GET", path)
        if response.status_code == 404:
            name = NO_ROOM_NAME
        else:
            if response.status_code != 200:
                raise SynapseAdminError(
                    f"HTTP GET {path}: HTTP {response.status_code}: {response.text}"
                )
            payload = self._json("GET", path, response)
            name = payload.get("canonical_alias") or payload.get("name") or NO_ROOM_NAME

        self._room_names[room_id] = name
        return name
