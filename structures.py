#Filename: structures.py
"""
CORE DATA STRUCTURES
Single Source of Truth (SSOT) for the agent.
Shared by the Correlator, Classifier, Download Gate, Connection Sync and the
peer wire format.
"""

import enum
import time
from dataclasses import dataclass, field
from typing import Dict, List, Tuple, Optional, Any, FrozenSet, Union

# -- Constants --

PEER_BASE_URL: str = "http://127.0.0.1:8597"   # rdm daemon, loopback only
PEER_TIMEOUT: float = 10.0
PEER_CONNECT_TIMEOUT: float = 5.0

PENDING_CAPACITY: int = 2000                   # max unresolved phase-1 entries

# Heartbeat family: 12 timers staggered 5s apart, each with a 1-minute period
HEARTBEAT_COUNT: int = 12
HEARTBEAT_PERIOD: float = 60.0
HEARTBEAT_INITIAL_DELAY: float = 1.0
HEARTBEAT_STAGGER: float = 5.0

DEFAULT_USER_AGENT: str = "Mozilla/5.0 (X11; Linux x86_64) rdm-agent/1.0"
DEFAULT_PREFS_PATH: str = "~/.rdm-agent.json"
DEFAULT_PROXY_PORT: int = 8598
NO_TAB_ID: int = -1

SUPPORTED_SCHEMES: FrozenSet[str] = frozenset({'http', 'https', 'ftp'})

# Peer endpoints
SYNC_PATH: str = "/sync"
MEDIA_PATH: str = "/media"
DOWNLOAD_PATH: str = "/download"
TAB_UPDATE_PATH: str = "/tab-update"
VID_PATH: str = "/vid"
CLEAR_PATH: str = "/clear"

# -- Types --

RequestId = Union[int, str]
HeaderList = List[Tuple[str, str]]
HeaderDict = Dict[str, List[str]]


class DownloadDecision(enum.Enum):
    """Outcome of evaluating a download-created observation."""
    TAKEOVER = "takeover"
    IGNORE = "ignore"


class VisibleState(enum.Enum):
    """The three mutually exclusive modes shown by the host indicator."""
    DISCONNECTED = "disconnected"
    DISABLED = "disabled"
    ACTIVE = "active"


class PendingRequest:
    """
    A phase-1 observation waiting for its response headers.
    Optimized: __slots__ keeps thousands of live entries cheap.
    """
    __slots__ = ('id', 'url', 'method', 'tab_id', 'request_headers', 'timestamp')

    def __init__(
        self,
        request_id: RequestId,
        url: str,
        method: str,
        tab_id: int,
        request_headers: Optional[HeaderList] = None,
        timestamp: float = 0.0
    ) -> None:
        self.id: RequestId = request_id
        self.url: str = url
        self.method: str = method
        self.tab_id: int = tab_id
        self.request_headers: HeaderList = list(request_headers or [])
        self.timestamp: float = timestamp if timestamp > 0 else time.time()

    def __repr__(self) -> str:
        return f"<PendingRequest #{self.id} {self.method} {self.url}>"


class MatchedRequest:
    """A classified transaction handed from the Correlator to the Orchestrator."""
    __slots__ = ('request', 'url', 'response_headers', 'tab_id', 'reason')

    def __init__(
        self,
        request: PendingRequest,
        url: str,
        response_headers: HeaderList,
        tab_id: int,
        reason: str
    ) -> None:
        self.request = request
        self.url = url
        self.response_headers = response_headers
        self.tab_id = tab_id
        self.reason = reason

    def __repr__(self) -> str:
        return f"<MatchedRequest #{self.request.id} {self.url} ({self.reason})>"


@dataclass(frozen=True)
class MediaEvent:
    """
    A matched media transaction as delivered to the peer.
    Frozen: built once, posted at most once.
    """
    url: str
    display_name: str
    request_headers: HeaderDict
    response_headers: HeaderDict
    cookie: str
    method: str
    user_agent: str
    tab_url: str
    tab_id: int

    def to_dict(self) -> Dict[str, Any]:
        """Wire form of the /media body."""
        return {
            'url': self.url,
            'file': self.display_name,
            'requestHeaders': self.request_headers,
            'responseHeaders': self.response_headers,
            'cookie': self.cookie,
            'method': self.method,
            'userAgent': self.user_agent,
            'tabUrl': self.tab_url,
            'tabId': str(self.tab_id),
        }


class DownloadItem:
    """A native download-created observation reported by the host."""
    __slots__ = ('id', 'url', 'final_url', 'filename', 'referrer', 'file_size', 'mime')

    def __init__(
        self,
        download_id: RequestId,
        url: str,
        final_url: str = "",
        filename: str = "",
        referrer: str = "",
        file_size: int = 0,
        mime: str = ""
    ) -> None:
        self.id: RequestId = download_id
        self.url: str = url
        self.final_url: str = final_url
        self.filename: str = filename
        self.referrer: str = referrer
        self.file_size: int = file_size
        self.mime: str = mime

    @property
    def resolved_url(self) -> str:
        """The post-redirect URL when the host knows it."""
        return self.final_url or self.url

    def __repr__(self) -> str:
        return f"<DownloadItem #{self.id} {self.resolved_url}>"


@dataclass(frozen=True)
class DownloadRequest:
    """Reissue request for a taken-over download (the /download body)."""
    url: str
    cookie: str
    request_headers: HeaderDict
    response_headers: HeaderDict
    filename: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'cookie': self.cookie,
            'requestHeaders': self.request_headers,
            'responseHeaders': self.response_headers,
            'filename': self.filename,
            'fileSize': self.file_size,
            'mimeType': self.mime_type,
        }


class TabInfo:
    """Title and URL of a host tab."""
    __slots__ = ('title', 'url')

    def __init__(self, title: str = "", url: str = "") -> None:
        self.title = title
        self.url = url


class VideoItem:
    """One streaming entry tracked by the peer."""
    __slots__ = ('id', 'text', 'info')

    def __init__(self, item_id: str, text: str = "", info: str = "") -> None:
        self.id = item_id
        self.text = text
        self.info = info

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "VideoItem":
        return cls(str(raw.get('id', '')), str(raw.get('text') or ''), str(raw.get('info') or ''))

    def to_dict(self) -> Dict[str, str]:
        return {'id': self.id, 'text': self.text, 'info': self.info}

    def display_str(self) -> str:
        text = self.text or "(unknown)"
        return f"{text} {self.info}".rstrip()

    def __repr__(self) -> str:
        return f"<VideoItem {self.id} {self.text!r}>"


def _str_list(value: Any) -> List[str]:
    """Coerces a wire value to a list of strings; anything else becomes empty."""
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, (str, int, float))]


@dataclass(frozen=True)
class SyncPayload:
    """
    Parsed /sync response. Every peer endpoint answers with one.
    Missing or mistyped keys default to empty; `enabled` is only true
    when the peer sends a literal JSON true.
    """
    enabled: bool = False
    file_exts: Tuple[str, ...] = ()
    blocked_hosts: Tuple[str, ...] = ()
    matching_hosts: Tuple[str, ...] = ()
    media_types: Tuple[str, ...] = ()
    url_patterns: Tuple[str, ...] = ()
    request_file_exts: Tuple[str, ...] = ()
    tabs_watcher: Tuple[str, ...] = ()
    video_list: Tuple[VideoItem, ...] = field(default=())

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SyncPayload":
        videos = raw.get('videoList')
        return cls(
            enabled=raw.get('enabled') is True,
            file_exts=tuple(_str_list(raw.get('fileExts'))),
            blocked_hosts=tuple(_str_list(raw.get('blockedHosts'))),
            matching_hosts=tuple(_str_list(raw.get('matchingHosts'))),
            media_types=tuple(_str_list(raw.get('mediaTypes'))),
            url_patterns=tuple(_str_list(raw.get('urlPatterns'))),
            request_file_exts=tuple(_str_list(raw.get('requestFileExts'))),
            tabs_watcher=tuple(_str_list(raw.get('tabsWatcher'))),
            video_list=tuple(
                VideoItem.from_dict(v) for v in (videos if isinstance(videos, list) else [])
                if isinstance(v, dict)
            ),
        )


class ConnectivityState:
    """
    Snapshot of {connected, enabled, user_disabled}.
    Built fresh on every read by the Orchestrator; never stored.
    """
    __slots__ = ('connected', 'enabled', 'user_disabled')

    def __init__(self, connected: bool, enabled: bool, user_disabled: bool) -> None:
        self.connected = connected
        self.enabled = enabled
        self.user_disabled = user_disabled

    @property
    def monitoring_enabled(self) -> bool:
        return self.enabled and not self.user_disabled and self.connected

    @property
    def visible_state(self) -> VisibleState:
        if not self.connected:
            return VisibleState.DISCONNECTED
        if not self.monitoring_enabled:
            return VisibleState.DISABLED
        return VisibleState.ACTIVE

    def __repr__(self) -> str:
        return (f"<ConnectivityState connected={self.connected} enabled={self.enabled} "
                f"user_disabled={self.user_disabled}>")


@dataclass
class AgentConfig:
    """Runtime configuration, filled from the command line."""
    peer_url: str = PEER_BASE_URL
    peer_timeout: float = PEER_TIMEOUT
    capacity: int = PENDING_CAPACITY
    heartbeat_count: int = HEARTBEAT_COUNT
    heartbeat_period: float = HEARTBEAT_PERIOD
    heartbeat_initial_delay: float = HEARTBEAT_INITIAL_DELAY
    heartbeat_stagger: float = HEARTBEAT_STAGGER
    user_agent: str = DEFAULT_USER_AGENT
    prefs_path: str = DEFAULT_PREFS_PATH
    bind_address: str = "127.0.0.1"
    proxy_port: int = DEFAULT_PROXY_PORT
