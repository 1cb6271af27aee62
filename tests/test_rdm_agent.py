# tests/test_rdm_agent.py
"""
Tests for rdm_agent.py: argument parsing, logging setup, and the shell
commands mapped onto UI messages.
"""
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import rdm_agent
from rdm_agent import RdmAgentApp, build_parser, config_from_args, configure_logging, main
from structures import (
    DEFAULT_PROXY_PORT, PEER_BASE_URL, PENDING_CAPACITY, AgentConfig, DownloadRequest,
    VideoItem, VisibleState
)


@pytest.fixture
def app(tmp_path):
    application = RdmAgentApp(AgentConfig(prefs_path=str(tmp_path / "p.json")))
    application.agent = MagicMock()
    application.agent.on_ui_message = AsyncMock(return_value={"ok": True, "enabled": True, "list": []})
    application.agent.request_download = AsyncMock()
    application.agent.visible_state = VisibleState.ACTIVE
    application.agent.correlator.__len__.return_value = 0
    application.agent.correlator.evicted = 3
    return application


class TestArguments:

    def test_defaults(self):
        config = config_from_args(build_parser().parse_args([]))
        assert config.peer_url == PEER_BASE_URL
        assert config.proxy_port == DEFAULT_PROXY_PORT
        assert config.capacity == PENDING_CAPACITY
        assert config.heartbeat_count == 12

    def test_overrides(self):
        args = build_parser().parse_args([
            "--peer-url", "http://127.0.0.1:9000", "-p", "9999", "--capacity", "10",
            "--heartbeats", "3", "--heartbeat-period", "5", "--prefs", "/tmp/x.json",
            "--user-agent", "UA", "--no-shell"
        ])
        config = config_from_args(args)
        assert config.peer_url == "http://127.0.0.1:9000"
        assert config.proxy_port == 9999
        assert config.capacity == 10
        assert config.heartbeat_count == 3
        assert config.heartbeat_period == 5.0
        assert config.prefs_path == "/tmp/x.json"
        assert config.user_agent == "UA"
        assert args.no_shell

    def test_invalid_capacity_exits(self):
        with pytest.raises(SystemExit):
            main(["--capacity", "0"])

    def test_verbose_and_quiet_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["-v", "-q"])


@pytest.mark.parametrize("verbose, quiet, level", [
    (False, False, logging.INFO),
    (True, False, logging.DEBUG),
    (False, True, logging.WARNING),
])
def test_configure_logging(verbose, quiet, level):
    with patch("logging.basicConfig") as basic:
        configure_logging(verbose, quiet)
    assert basic.call_args.kwargs["level"] == level
    assert basic.call_args.kwargs["format"] == rdm_agent.LOG_FORMAT

def test_main_runs_headless_app():
    with patch("rdm_agent.RdmAgentApp") as app_cls, \
         patch("rdm_agent.configure_logging"), \
         patch("uvloop.run") as run:
        assert main(["--no-shell", "-p", "9000"]) == 0
    config = app_cls.call_args.args[0]
    assert config.proxy_port == 9000
    assert app_cls.call_args.kwargs["interactive"] is False
    run.assert_called_once()

def test_main_reports_bind_failure():
    with patch("rdm_agent.RdmAgentApp"), \
         patch("rdm_agent.configure_logging"), \
         patch("uvloop.run", side_effect=OSError("address in use")):
        assert main([]) == 1


class TestShellCommands:

    @pytest.mark.asyncio
    async def test_exit(self, app):
        with patch("rdm_agent.echo"):
            assert await app.handle_command("exit") is False
            assert await app.handle_command("q") is False

    @pytest.mark.asyncio
    async def test_blank_line(self, app):
        assert await app.handle_command("   ") is True

    @pytest.mark.asyncio
    async def test_on_off(self, app):
        with patch("rdm_agent.echo"):
            await app.handle_command("off")
            await app.handle_command("ON")
        calls = [c.args[0] for c in app.agent.on_ui_message.await_args_list]
        assert calls == [{"type": "cmd", "enabled": False}, {"type": "cmd", "enabled": True}]

    @pytest.mark.asyncio
    async def test_stat(self, app):
        with patch("rdm_agent.echo") as echo:
            assert await app.handle_command("stat")
        app.agent.on_ui_message.assert_awaited_once_with({"type": "stat"})
        assert "monitoring=True" in echo.call_args.args[0]
        assert "pending=0 evicted=3" in echo.call_args.args[0]

    @pytest.mark.asyncio
    async def test_vid(self, app):
        with patch("rdm_agent.echo") as echo:
            await app.handle_command("vid")
            assert "usage" in echo.call_args.args[0]
            await app.handle_command("vid 42")
        app.agent.on_ui_message.assert_awaited_once_with({"type": "vid", "itemId": "42"})

    @pytest.mark.asyncio
    async def test_clear(self, app):
        with patch("rdm_agent.echo"):
            await app.handle_command("clear")
        app.agent.on_ui_message.assert_awaited_once_with({"type": "clear"})

    @pytest.mark.asyncio
    async def test_ls(self, app):
        app.agent.videos.return_value = [VideoItem("1", "clip.mp4", "720p")]
        with patch("rdm_agent.echo") as echo:
            await app.handle_command("ls")
        lines = [c.args[0] for c in echo.call_args_list]
        assert "[1] clip.mp4 720p" in lines

    @pytest.mark.asyncio
    async def test_get(self, app):
        app.agent.request_download.return_value = DownloadRequest("https://h/f.iso", "", {}, {})
        with patch("rdm_agent.echo") as echo:
            await app.handle_command('get https://h/f.iso "https://h/page one"')
        app.agent.request_download.assert_awaited_once_with("https://h/f.iso", "https://h/page one")
        assert "Sent to peer" in echo.call_args.args[0]

    @pytest.mark.asyncio
    async def test_get_unsupported(self, app):
        app.agent.request_download.return_value = None
        with patch("rdm_agent.echo") as echo:
            await app.handle_command("get javascript:void(0)")
        assert "Unsupported URL" in echo.call_args.args[0]

    @pytest.mark.asyncio
    async def test_unknown_and_unbalanced_quotes(self, app):
        with patch("rdm_agent.echo") as echo:
            assert await app.handle_command("dance")
            assert "Unknown command" in echo.call_args.args[0]
            assert await app.handle_command('get "unterminated')
        app.agent.request_download.assert_not_awaited()


def test_state_hook_prints_transitions_once(app):
    with patch("rdm_agent.echo") as echo:
        app.proxy.set_visible_state(VisibleState.DISCONNECTED, 0)
        app.proxy.set_visible_state(VisibleState.DISCONNECTED, 0)
        app.proxy.set_visible_state(VisibleState.ACTIVE, 2)
    assert echo.call_count == 2
    assert "active [2]" in echo.call_args.args[0]
