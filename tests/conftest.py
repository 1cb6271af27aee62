# conftest.py
import asyncio
import sys
import os
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# pylint: disable=wrong-import-position
from agent_common import LostTabContextError
from host import PreferenceStore
from orchestrator import Orchestrator
from peer_client import PeerClient
from structures import AgentConfig, TabInfo, VisibleState


class FakeHost:
    """In-memory host recording every call in order."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Any]] = []
        self.cookies: Dict[str, List[Dict[str, str]]] = {}
        self.tabs: Dict[int, TabInfo] = {}
        self.states: List[Tuple[VisibleState, int]] = []
        self.cookie_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.erase_error: Optional[Exception] = None
        self.cancel_delay = 0.0
        self.tab_hook = None

    async def cancel_download(self, download_id):
        self.calls.append(('cancel', download_id))
        if self.cancel_delay:
            await asyncio.sleep(self.cancel_delay)
            self.calls.append(('cancel-settled', download_id))
        if self.cancel_error:
            raise self.cancel_error

    async def erase_download(self, download_id):
        self.calls.append(('erase', download_id))
        if self.erase_error:
            raise self.erase_error

    async def get_cookies(self, url):
        self.calls.append(('cookies', url))
        if self.cookie_error:
            raise self.cookie_error
        return self.cookies.get(url, [])

    async def get_tab(self, tab_id):
        self.calls.append(('tab', tab_id))
        if self.tab_hook:
            self.tab_hook()
        if tab_id not in self.tabs:
            raise LostTabContextError(f"tab {tab_id} closed")
        return self.tabs[tab_id]

    def set_visible_state(self, state, badge):
        self.states.append((state, badge))


class PeerStub:
    """Scripted rdm daemon behind httpx.MockTransport."""

    def __init__(self, payload: Dict[str, Any]) -> None:
        self.payload = payload
        self.requests: List[Tuple[str, str, Any]] = []
        self.fail = False
        self.status = 200
        self.transport = httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        if self.fail:
            raise httpx.ConnectError("Connection refused", request=request)
        return httpx.Response(self.status, json=self.payload)

    def client(self) -> PeerClient:
        return PeerClient("http://peer.test", transport=self.transport)

    def posted(self, path: str) -> List[Any]:
        return [body for method, p, body in self.requests if method == "POST" and p == path]


@pytest.fixture
def sync_payload():
    return {
        "enabled": True,
        "fileExts": ["ZIP", "EXE", "ISO"],
        "blockedHosts": ["blocked.example"],
        "matchingHosts": ["always.example"],
        "mediaTypes": ["video/", "audio/"],
        "urlPatterns": [r"/hls/.*\.ts\b"],
        "requestFileExts": ["MP4", "M3U8", "WEBM"],
        "tabsWatcher": ["youtube.com/watch"],
        "videoList": [
            {"id": "1", "text": "clip.mp4", "info": "720p"},
            {"id": "2", "text": "talk.webm", "info": "1080p"},
        ],
    }

@pytest.fixture
def fake_host():
    return FakeHost()

@pytest.fixture
def peer(sync_payload):
    return PeerStub(sync_payload)

@pytest.fixture
def agent_config():
    return AgentConfig(heartbeat_count=2, user_agent="TestAgent/1.0")

@pytest.fixture
def prefs(tmp_path):
    return PreferenceStore(str(tmp_path / "prefs.json"))

@pytest.fixture
def agent(fake_host, peer, prefs, agent_config):
    return Orchestrator(fake_host, peer.client(), prefs, agent_config)
