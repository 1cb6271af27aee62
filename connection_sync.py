#Filename: connection_sync.py
"""
CONNECTION SYNC
Heartbeat scheduler and connectivity owner.

A family of redundant recurring timers, staggered from a fixed initial
delay, each triggers one GET /sync per period. The host may drop some
background timers while idle; the others keep the heartbeat alive. There is
no retry or backoff: a failure flips connectivity and waits for the next
timer. Event posts refresh connectivity with the same handling.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from agent_common import PeerUnreachableError
from peer_client import PeerClient
from structures import (
    HEARTBEAT_COUNT, HEARTBEAT_INITIAL_DELAY, HEARTBEAT_PERIOD, HEARTBEAT_STAGGER, SyncPayload
)

logger = logging.getLogger(__name__)


class ConnectionSync:
    """Owns the `connected` flag and feeds sync payloads to the Orchestrator."""

    def __init__(
        self,
        client: PeerClient,
        on_sync: Callable[[SyncPayload], None],
        on_disconnect: Callable[[PeerUnreachableError], None],
        timer_count: int = HEARTBEAT_COUNT,
        period: float = HEARTBEAT_PERIOD,
        initial_delay: float = HEARTBEAT_INITIAL_DELAY,
        stagger: float = HEARTBEAT_STAGGER
    ) -> None:
        self.client = client
        self._on_sync = on_sync
        self._on_disconnect = on_disconnect
        self.timer_count = timer_count
        self.period = period
        self.initial_delay = initial_delay
        self.stagger = stagger
        self.connected = False
        self.last_error: Optional[PeerUnreachableError] = None
        self._timers: List["asyncio.Task[None]"] = []

    def timer_delays(self) -> List[float]:
        """First-fire delay of each timer in the family."""
        return [self.initial_delay + (i + 1) * self.stagger for i in range(self.timer_count)]

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._timers)

    async def start(self) -> None:
        """Schedules the timer family, then runs one immediate heartbeat."""
        if not self._timers:
            for index, delay in enumerate(self.timer_delays()):
                self._timers.append(
                    asyncio.create_task(self._run_timer(index, delay), name=f"rdm-sync-{index}")
                )
            logger.info("Scheduled %d heartbeat timers (period %.0fs)", self.timer_count, self.period)
        await self.heartbeat()

    async def stop(self) -> None:
        for task in self._timers:
            task.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers.clear()

    async def _run_timer(self, index: int, delay: float) -> None:
        await asyncio.sleep(delay)
        while True:
            try:
                await self.heartbeat()
            except Exception as e: # pylint: disable=broad-exception-caught
                # A failing sync handler must not kill the timer
                logger.error("Heartbeat timer %d: sync handler failed: %s", index, e)
            await asyncio.sleep(self.period)

    async def heartbeat(self) -> bool:
        """One GET /sync. Returns the resulting connectivity."""
        try:
            payload = await self.client.fetch_sync()
        except PeerUnreachableError as e:
            self._mark_failed(e)
            return False
        self._mark_synced(payload)
        return True

    async def post_event(self, path: str, data: Dict[str, Any]) -> Optional[SyncPayload]:
        """Posts one event to the peer. Delivery is one-shot; None on failure."""
        try:
            payload = await self.client.post(path, data)
        except PeerUnreachableError as e:
            self._mark_failed(e)
            return None
        self._mark_synced(payload)
        return payload

    def _mark_synced(self, payload: SyncPayload) -> None:
        if not self.connected:
            logger.info("Peer reachable at %s", self.client.base_url)
        self.connected = True
        self.last_error = None
        self._on_sync(payload)

    def _mark_failed(self, error: PeerUnreachableError) -> None:
        if self.connected:
            logger.warning("Peer unreachable: %s", error)
        else:
            logger.debug("Peer still unreachable: %s", error)
        self.connected = False
        self.last_error = error
        self._on_disconnect(error)
