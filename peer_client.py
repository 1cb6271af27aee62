#Filename: peer_client.py
"""
PEER CLIENT
HTTP/JSON client for the rdm daemon on the loopback interface.
Every endpoint answers with the full sync payload. Transport errors,
non-2xx statuses and undecodable bodies all surface as PeerUnreachableError.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from agent_common import PeerUnreachableError
from structures import PEER_BASE_URL, PEER_CONNECT_TIMEOUT, PEER_TIMEOUT, SYNC_PATH, SyncPayload

logger = logging.getLogger(__name__)


class PeerClient:
    """Thin wrapper around one long-lived httpx.AsyncClient."""

    def __init__(
        self,
        base_url: str = PEER_BASE_URL,
        timeout: float = PEER_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.base_url = base_url.rstrip('/')
        limits = httpx.Limits(max_keepalive_connections=4, max_connections=8)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, PEER_CONNECT_TIMEOUT)),
            limits=limits,
            transport=transport,
        )

    async def fetch_sync(self) -> SyncPayload:
        """Heartbeat: a bodyless GET of the sync endpoint."""
        return await self._request("GET", SYNC_PATH)

    async def post(self, path: str, data: Dict[str, Any]) -> SyncPayload:
        """Posts one event; the answer refreshes state like a heartbeat."""
        return await self._request("POST", path, data)

    async def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> SyncPayload:
        try:
            if data is None:
                response = await self._client.request(method, path)
            else:
                response = await self._client.request(method, path, json=data)
        except httpx.HTTPError as exc:
            raise PeerUnreachableError(f"{method} {path} failed: {exc!r}") from exc

        if not response.is_success:
            raise PeerUnreachableError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise PeerUnreachableError(f"{method} {path} returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise PeerUnreachableError(f"{method} {path} returned {type(body).__name__}, expected object")

        logger.debug("%s %s -> %s", method, path, response.status_code)
        return SyncPayload.from_dict(body)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "PeerClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
