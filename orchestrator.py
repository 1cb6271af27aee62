#Filename: orchestrator.py
"""
ORCHESTRATOR
The single context object the host registrations are wired to.

Holds the current rule snapshots and flags, derives monitoring-enabled on
every read, routes matched media, download-created and tab events to the
peer, and pushes the visible state to the host after every state change.
Work already in flight is not cancelled by a configuration change or a
disablement; each continuation re-reads the state current at that point.
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Set, Tuple

from agent_common import LostTabContextError, PeerUnreachableError
from connection_sync import ConnectionSync
from correlator import RequestCorrelator, build_media_event
from download_gate import DownloadGate, decide, is_supported_url
from host import HostBridge, PreferenceStore
from peer_client import PeerClient
from rules import DownloadRules, RuleStore
from structures import (
    CLEAR_PATH, MEDIA_PATH, NO_TAB_ID, TAB_UPDATE_PATH, VID_PATH,
    AgentConfig, ConnectivityState, DownloadDecision, DownloadItem, DownloadRequest,
    HeaderList, MatchedRequest, MediaEvent, RequestId, SyncPayload, VideoItem, VisibleState
)

logger = logging.getLogger(__name__)


class Orchestrator:
    """Wires the Correlator, Download Gate and Connection Sync together."""

    def __init__(
        self,
        host: HostBridge,
        client: PeerClient,
        prefs: PreferenceStore,
        config: Optional[AgentConfig] = None
    ) -> None:
        self.host = host
        self.prefs = prefs
        self.config = config or AgentConfig()

        # -- State (each field replaced wholesale, never mutated in place) --
        self.rules = RuleStore()
        self.download_rules = DownloadRules()
        self.tabs_watcher: Tuple[str, ...] = ()
        self.video_list: Tuple[VideoItem, ...] = ()
        self.enabled = False
        self.user_disabled = False
        self.active_tab_id = NO_TAB_ID

        # -- Collaborators --
        self.sync = ConnectionSync(
            client, self.on_sync, self.on_disconnect,
            timer_count=self.config.heartbeat_count,
            period=self.config.heartbeat_period,
            initial_delay=self.config.heartbeat_initial_delay,
            stagger=self.config.heartbeat_stagger,
        )
        self.correlator = RequestCorrelator(lambda: self.rules, self.config.capacity)
        self.gate = DownloadGate(host, self.sync.post_event, self.config.user_agent)

        self._tasks: Set["asyncio.Task[Any]"] = set()

    # -- Lifecycle --

    async def start(self) -> None:
        """Restores the user toggle, then awaits the first sync."""
        self.user_disabled = self.prefs.load()
        self.refresh_visible_state()
        await self.sync.start()
        logger.info("Agent started (%s)", self.connectivity())

    async def stop(self) -> None:
        await self.sync.stop()
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Waits for every dispatched handler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        """Supervisor wrapper so a failing handler is logged, not lost."""
        async def wrapper() -> Any:
            try:
                return await coro
            except Exception as e: # pylint: disable=broad-exception-caught
                logger.error("Event handler failed: %s", e, exc_info=True)
                return None

        task = asyncio.create_task(wrapper())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- Derived state --

    def connectivity(self) -> ConnectivityState:
        return ConnectivityState(self.sync.connected, self.enabled, self.user_disabled)

    @property
    def monitoring_enabled(self) -> bool:
        return self.connectivity().monitoring_enabled

    @property
    def visible_state(self) -> VisibleState:
        return self.connectivity().visible_state

    def refresh_visible_state(self) -> None:
        state = self.visible_state
        try:
            self.host.set_visible_state(state, len(self.video_list))
        except Exception as e: # pylint: disable=broad-exception-caught
            logger.warning("Could not update visible state: %s", e)

    # -- Sync / connection callbacks --

    def on_sync(self, payload: SyncPayload) -> None:
        self.enabled = payload.enabled
        self.rules = RuleStore.from_sync(payload)
        self.download_rules = DownloadRules.from_sync(payload)
        self.tabs_watcher = payload.tabs_watcher
        self.video_list = payload.video_list
        self.refresh_visible_state()
        logger.debug("Sync received: enabled=%s videos=%d %r",
                     self.enabled, len(self.video_list), self.rules)

    def on_disconnect(self, error: PeerUnreachableError) -> None:
        logger.debug("Disconnected: %s", error)
        self.refresh_visible_state()

    # -- Network lifecycle --

    def on_request_sent(
        self, request_id: RequestId, url: str, method: str, tab_id: int,
        request_headers: Optional[HeaderList] = None
    ) -> None:
        match = self.correlator.on_request_sent(request_id, url, method, tab_id, request_headers)
        if match is not None:
            self._spawn(self.dispatch_media(match))

    def on_response_headers(
        self, request_id: RequestId, url: str,
        response_headers: Optional[HeaderList], tab_id: int
    ) -> None:
        match = self.correlator.on_response_headers(request_id, url, response_headers, tab_id)
        if match is not None:
            self._spawn(self.dispatch_media(match))

    def on_request_error(self, request_id: RequestId) -> None:
        self.correlator.on_error(request_id)

    async def dispatch_media(self, match: MatchedRequest) -> Optional[MediaEvent]:
        """Attaches tab context and posts the event if monitoring is on."""
        title, tab_url = "", ""
        if match.tab_id >= 0:
            try:
                tab = await self.host.get_tab(match.tab_id)
                title, tab_url = tab.title or "", tab.url or ""
            except LostTabContextError as e:
                logger.debug("Tab %s gone, sending without context: %s", match.tab_id, e)

        event = build_media_event(match, title, tab_url, self.config.user_agent)
        if not self.monitoring_enabled:
            logger.debug("Monitoring off, dropped %s", match.url)
            return None

        logger.info("Media [%s] %s %s", match.reason, event.method, event.url)
        await self.sync.post_event(MEDIA_PATH, event.to_dict())
        return event

    # -- Downloads --

    async def on_download_created(self, item: DownloadItem) -> DownloadDecision:
        decision = decide(item, self.monitoring_enabled, self.download_rules)
        if decision is DownloadDecision.TAKEOVER:
            await self.gate.takeover(item)
        return decision

    async def request_download(self, url: str, referrer: Optional[str] = None) -> Optional[DownloadRequest]:
        """Hands an arbitrary link to the peer, bypassing the extension rules."""
        if not is_supported_url(url):
            logger.warning("Refusing download of unsupported URL %s", url)
            return None
        return await self.gate.reissue(url, referrer)

    # -- Tabs --

    async def on_tab_updated(self, tab_id: int, title: Optional[str], url: Optional[str]) -> bool:
        """Reports a title change of a watched tab. Returns True when posted."""
        if not self.monitoring_enabled or not title or not url:
            return False
        if not any(pattern in url for pattern in self.tabs_watcher):
            return False
        logger.debug("Tab %s title -> %r", tab_id, title)
        await self.sync.post_event(TAB_UPDATE_PATH, {'tabUrl': url, 'tabTitle': title})
        return True

    def on_tab_activated(self, tab_id: int) -> None:
        self.active_tab_id = tab_id

    # -- UI messages --

    def set_user_disabled(self, disabled: bool) -> None:
        """Persists the toggle; only later decisions see it."""
        self.user_disabled = disabled
        self.prefs.save(disabled)
        self.refresh_visible_state()

    async def on_ui_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        msg_type = message.get('type')

        if msg_type == 'stat':
            return {
                'enabled': self.monitoring_enabled,
                'list': [v.to_dict() for v in self.video_list],
            }

        if msg_type == 'cmd':
            enabled = message.get('enabled')
            self.set_user_disabled(enabled is False)
            if enabled and not self.sync.connected:
                self._spawn(self.sync.heartbeat())
            return {'ok': True}

        if msg_type == 'vid':
            await self.sync.post_event(VID_PATH, {'vid': str(message.get('itemId'))})
            return {'ok': True}

        if msg_type == 'clear':
            await self.sync.post_event(CLEAR_PATH, {})
            self.video_list = ()
            self.refresh_visible_state()
            return {'ok': True}

        logger.warning("Unknown UI message type: %r", msg_type)
        return {'ok': False}

    def videos(self) -> List[VideoItem]:
        return list(self.video_list)
