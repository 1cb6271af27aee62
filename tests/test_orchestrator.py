# tests/test_orchestrator.py
"""
Tests for orchestrator.py, wired to a FakeHost and a MockTransport peer.
Covers sync application, media dispatch, download takeover, tab reporting
and the UI message surface.
"""
import asyncio
import json

import pytest

from host import PreferenceStore
from orchestrator import Orchestrator
from rules import RuleStore
from structures import (
    CLEAR_PATH, DOWNLOAD_PATH, MEDIA_PATH, TAB_UPDATE_PATH, VID_PATH,
    DownloadDecision, DownloadItem, TabInfo, VisibleState
)


class TestSync:

    @pytest.mark.asyncio
    async def test_sync_applies_rules_and_state(self, agent, fake_host):
        assert await agent.sync.heartbeat()
        assert agent.enabled is True
        assert "M3U8" in agent.rules.media_extensions
        assert "ZIP" in agent.download_rules.file_extensions
        assert agent.monitoring_enabled
        assert fake_host.states[-1] == (VisibleState.ACTIVE, 2)

    @pytest.mark.asyncio
    async def test_failures_keep_last_rules(self, agent, peer, fake_host):
        await agent.sync.heartbeat()
        rules_before = agent.rules

        peer.fail = True
        assert not await agent.sync.heartbeat()
        assert agent.sync.connected is False
        assert agent.monitoring_enabled is False
        assert fake_host.states[-1][0] is VisibleState.DISCONNECTED

        assert not await agent.sync.heartbeat()
        assert agent.rules is rules_before

    @pytest.mark.asyncio
    async def test_repeated_payload_is_a_no_op(self, agent):
        await agent.sync.heartbeat()
        first = agent.rules
        await agent.sync.heartbeat()
        assert agent.rules == first
        assert agent.visible_state is VisibleState.ACTIVE

    @pytest.mark.asyncio
    async def test_peer_disabled_shows_disabled(self, agent, peer, fake_host):
        peer.payload = dict(peer.payload, enabled=False)
        await agent.sync.heartbeat()
        assert fake_host.states[-1][0] is VisibleState.DISABLED

    @pytest.mark.asyncio
    async def test_start_restores_user_toggle(self, fake_host, peer, tmp_path, agent_config):
        path = tmp_path / "prefs.json"
        path.write_text(json.dumps({"userDisabled": True}))
        agent = Orchestrator(fake_host, peer.client(), PreferenceStore(str(path)), agent_config)

        await agent.start()
        try:
            assert agent.user_disabled is True
            # The restored toggle is visible before the first sync answers
            assert fake_host.states[0] == (VisibleState.DISCONNECTED, 0)
            assert fake_host.states[-1][0] is VisibleState.DISABLED
            assert agent.sync.running
        finally:
            await agent.stop()
        assert not agent.sync.running


class TestMediaDispatch:

    @pytest.mark.asyncio
    async def test_fast_path_media_is_posted_with_tab_context(self, agent, peer, fake_host):
        await agent.sync.heartbeat()
        fake_host.tabs[7] = TabInfo("Lecture", "https://site.example/watch")

        agent.on_request_sent(1, "https://cdn.example/v/index.m3u8", "GET", 7,
                              [("Cookie", "sid=abc"), ("Referer", "https://site.example/")])
        await agent.wait_idle()

        posted = peer.posted(MEDIA_PATH)
        assert len(posted) == 1
        event = posted[0]
        assert event["url"] == "https://cdn.example/v/index.m3u8"
        assert event["file"] == "Lecture"
        assert event["tabUrl"] == "https://site.example/watch"
        assert event["tabId"] == "7"
        assert event["cookie"] == "sid=abc"
        assert event["userAgent"] == "TestAgent/1.0"

    @pytest.mark.asyncio
    async def test_phase_two_match_is_posted(self, agent, peer):
        await agent.sync.heartbeat()
        agent.on_request_sent(2, "https://h.example/stream", "GET", -1)
        await agent.wait_idle()
        assert not peer.posted(MEDIA_PATH)

        agent.on_response_headers(2, "https://h.example/stream", [("Content-Type", "video/mp4")], -1)
        await agent.wait_idle()
        posted = peer.posted(MEDIA_PATH)
        assert len(posted) == 1
        assert posted[0]["responseHeaders"] == {"Content-Type": ["video/mp4"]}
        assert posted[0]["tabId"] == "-1"

    @pytest.mark.asyncio
    async def test_no_tab_lookup_without_tab(self, agent, fake_host):
        await agent.sync.heartbeat()
        agent.on_request_sent(3, "https://cdn.example/a.mp4", "GET", -1)
        await agent.wait_idle()
        assert not [c for c in fake_host.calls if c[0] == "tab"]

    @pytest.mark.asyncio
    async def test_lost_tab_degrades(self, agent, peer):
        await agent.sync.heartbeat()
        agent.on_request_sent(4, "https://cdn.example/a.mp4", "GET", 99)
        await agent.wait_idle()
        posted = peer.posted(MEDIA_PATH)
        assert posted[0]["file"] == ""
        assert posted[0]["tabUrl"] == ""

    @pytest.mark.asyncio
    async def test_nothing_posted_when_user_disabled(self, agent, peer):
        await agent.sync.heartbeat()
        agent.set_user_disabled(True)
        agent.on_request_sent(5, "https://cdn.example/a.mp4", "GET", -1)
        await agent.wait_idle()
        assert not peer.posted(MEDIA_PATH)

    @pytest.mark.asyncio
    async def test_disable_during_tab_lookup_drops_event(self, agent, peer, fake_host):
        await agent.sync.heartbeat()
        fake_host.tabs[1] = TabInfo("t", "https://p/")
        fake_host.tab_hook = lambda: agent.set_user_disabled(True)
        agent.on_request_sent(6, "https://cdn.example/a.mp4", "GET", 1)
        await agent.wait_idle()
        assert not peer.posted(MEDIA_PATH)

    @pytest.mark.asyncio
    async def test_blocked_host_never_posted(self, agent, peer):
        await agent.sync.heartbeat()
        agent.on_request_sent(7, "https://blocked.example/a.mp4", "GET", -1)
        agent.on_response_headers(7, "https://blocked.example/a.mp4", [("Content-Type", "video/mp4")], -1)
        await agent.wait_idle()
        assert not peer.posted(MEDIA_PATH)

    @pytest.mark.asyncio
    async def test_error_discards_pending(self, agent, peer):
        await agent.sync.heartbeat()
        agent.on_request_sent(8, "https://h.example/stream", "GET", -1)
        agent.on_request_error(8)
        agent.on_response_headers(8, "https://h.example/stream", [("Content-Type", "video/mp4")], -1)
        await agent.wait_idle()
        assert not peer.posted(MEDIA_PATH)

    @pytest.mark.asyncio
    async def test_rules_swapped_between_phases(self, agent, peer):
        await agent.sync.heartbeat()
        agent.on_request_sent(9, "https://h.example/stream", "GET", -1)
        agent.rules = RuleStore()
        agent.on_response_headers(9, "https://h.example/stream", [("Content-Type", "video/mp4")], -1)
        await agent.wait_idle()
        assert not peer.posted(MEDIA_PATH)


class TestDownloads:

    @pytest.mark.asyncio
    async def test_takeover(self, agent, peer, fake_host):
        await agent.sync.heartbeat()
        item = DownloadItem(21, "ftp://files.example/f.zip", filename="f.zip")
        decision = await agent.on_download_created(item)

        assert decision is DownloadDecision.TAKEOVER
        assert [c for c in fake_host.calls if c[0] in ("cancel", "erase")] == [("cancel", 21), ("erase", 21)]
        posted = peer.posted(DOWNLOAD_PATH)
        assert len(posted) == 1
        assert posted[0]["requestHeaders"] == {"User-Agent": ["TestAgent/1.0"]}

    @pytest.mark.asyncio
    async def test_disable_during_cancel_still_completes_takeover(self, agent, peer, fake_host):
        await agent.sync.heartbeat()
        fake_host.cancel_delay = 0.05
        item = DownloadItem(5, "ftp://files.example/f.zip", filename="f.zip")
        task = asyncio.create_task(agent.on_download_created(item))
        while ("cancel", 5) not in fake_host.calls:
            await asyncio.sleep(0)

        agent.set_user_disabled(True)
        assert not agent.monitoring_enabled

        assert await task is DownloadDecision.TAKEOVER
        control = [c for c in fake_host.calls if c[0] in ("cancel", "cancel-settled", "erase")]
        assert control == [("cancel", 5), ("cancel-settled", 5), ("erase", 5)]
        assert len(peer.posted(DOWNLOAD_PATH)) == 1

    @pytest.mark.asyncio
    async def test_ignored_when_disconnected(self, agent, peer, fake_host):
        item = DownloadItem(22, "https://files.example/f.zip", filename="f.zip")
        assert await agent.on_download_created(item) is DownloadDecision.IGNORE
        assert not fake_host.calls
        assert not peer.requests

    @pytest.mark.asyncio
    async def test_manual_download_bypasses_extensions(self, agent, peer):
        request = await agent.request_download("https://h.example/page.html", "https://h.example/")
        assert request is not None
        posted = peer.posted(DOWNLOAD_PATH)
        assert posted[0]["requestHeaders"]["Referer"] == ["https://h.example/"]

    @pytest.mark.asyncio
    async def test_manual_download_rejects_unsupported(self, agent, peer):
        assert await agent.request_download("javascript:void(0)") is None
        assert not peer.requests


class TestTabs:

    @pytest.mark.asyncio
    async def test_watched_tab_title_is_posted(self, agent, peer):
        await agent.sync.heartbeat()
        assert await agent.on_tab_updated(3, "Song - YouTube", "https://www.youtube.com/watch?v=x")
        assert peer.posted(TAB_UPDATE_PATH) == [
            {"tabUrl": "https://www.youtube.com/watch?v=x", "tabTitle": "Song - YouTube"}
        ]

    @pytest.mark.asyncio
    async def test_unwatched_or_disabled_tab_is_ignored(self, agent, peer):
        await agent.sync.heartbeat()
        assert not await agent.on_tab_updated(3, "News", "https://news.example/")
        assert not await agent.on_tab_updated(3, None, "https://www.youtube.com/watch?v=x")
        agent.set_user_disabled(True)
        assert not await agent.on_tab_updated(3, "Song", "https://www.youtube.com/watch?v=x")
        assert not peer.posted(TAB_UPDATE_PATH)

    def test_tab_activation(self, agent):
        agent.on_tab_activated(12)
        assert agent.active_tab_id == 12


class TestUiMessages:

    @pytest.mark.asyncio
    async def test_stat(self, agent):
        await agent.sync.heartbeat()
        reply = await agent.on_ui_message({"type": "stat"})
        assert reply["enabled"] is True
        assert [v["id"] for v in reply["list"]] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_cmd_persists_and_updates_state(self, agent, prefs, fake_host):
        await agent.sync.heartbeat()
        assert await agent.on_ui_message({"type": "cmd", "enabled": False}) == {"ok": True}
        assert agent.user_disabled is True
        assert prefs.load() is True
        assert fake_host.states[-1][0] is VisibleState.DISABLED

        await agent.on_ui_message({"type": "cmd", "enabled": True})
        assert prefs.load() is False
        assert fake_host.states[-1][0] is VisibleState.ACTIVE

    @pytest.mark.asyncio
    async def test_cmd_enable_while_disconnected_beats(self, agent, peer):
        await agent.on_ui_message({"type": "cmd", "enabled": True})
        await agent.wait_idle()
        assert ("GET", "/sync", None) in peer.requests
        assert agent.sync.connected

    @pytest.mark.asyncio
    async def test_vid(self, agent, peer):
        await agent.on_ui_message({"type": "vid", "itemId": 42})
        assert peer.posted(VID_PATH) == [{"vid": "42"}]

    @pytest.mark.asyncio
    async def test_clear(self, agent, peer, fake_host):
        peer.payload = dict(peer.payload, videoList=[])
        await agent.on_ui_message({"type": "clear"})
        assert peer.posted(CLEAR_PATH) == [{}]
        assert agent.videos() == []
        assert fake_host.states[-1][1] == 0

    @pytest.mark.asyncio
    async def test_unknown_message(self, agent):
        assert await agent.on_ui_message({"type": "bogus"}) == {"ok": False}


@pytest.mark.asyncio
async def test_failing_handler_is_logged_not_raised(agent, fake_host, caplog):
    await agent.sync.heartbeat()

    async def broken_tab(tab_id):
        raise RuntimeError("host exploded")
    fake_host.get_tab = broken_tab

    agent.on_request_sent(1, "https://cdn.example/a.mp4", "GET", 3)
    await agent.wait_idle()
    assert "Event handler failed" in caplog.text
