#Filename: rdm_agent.py
"""
RDM AGENT
Browser-side agent for the rdm download manager.

ARCHITECTURE:
- HOST: 'proxy_host.py' observing HTTP proxy (network + download events).
- CORE: 'orchestrator.py' (Correlator, Download Gate, Connection Sync).
- PEER: 'peer_client.py' (httpx) against the daemon on the loopback.
- UI: PromptToolkit interactive shell standing in for the popup.
"""

import sys
import asyncio
import argparse
import logging
import shlex
from typing import List, Optional

from colorama import Fore, Style, init as colorama_init
from prompt_toolkit import PromptSession, print_formatted_text
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.formatted_text import ANSI
from prompt_toolkit.patch_stdout import patch_stdout

from host import PreferenceStore
from orchestrator import Orchestrator
from peer_client import PeerClient
from proxy_host import ProxyHost
from structures import (
    DEFAULT_PREFS_PATH, DEFAULT_PROXY_PORT, DEFAULT_USER_AGENT, HEARTBEAT_COUNT,
    HEARTBEAT_PERIOD, PEER_BASE_URL, PENDING_CAPACITY, AgentConfig, VisibleState
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"

BANNER = r"""
{Fore.CYAN}
    ____  ____  __  ___
   / __ \/ __ \/  |/  /
  / /_/ / / / / /|_/ /
 / _, _/ /_/ / /  / /
/_/ |_/_____/_/  /_/
{Fore.YELLOW}     [ RDM AGENT ]{Style.RESET_ALL}
    {Fore.WHITE}-- [+] Media Capture & Download Takeover [+] --{Style.RESET_ALL}
"""

STATE_COLORS = {
    VisibleState.ACTIVE: Fore.GREEN,
    VisibleState.DISABLED: Fore.YELLOW,
    VisibleState.DISCONNECTED: Fore.RED,
}

COMMANDS = ['stat', 'on', 'off', 'ls', 'vid', 'clear', 'get', 'help', 'exit', 'quit', 'q']


def echo(text: str) -> None:
    print_formatted_text(ANSI(text))


class RdmAgentApp:
    """Interactive shell around one Orchestrator and its proxy host."""

    def __init__(self, config: AgentConfig, interactive: bool = True) -> None:
        self.config = config
        self.interactive = interactive
        self.proxy = ProxyHost(config.bind_address, config.proxy_port, state_callback=self._on_state)
        self.client = PeerClient(config.peer_url, config.peer_timeout)
        self.agent = Orchestrator(self.proxy, self.client, PreferenceStore(config.prefs_path), config)
        self.session: Optional[PromptSession] = None
        self._last_state: Optional[VisibleState] = None

    def _on_state(self, state: VisibleState, badge: int) -> None:
        """Host hook: prints visible-state transitions."""
        if state is self._last_state:
            return
        self._last_state = state
        color = STATE_COLORS.get(state, Fore.WHITE)
        badge_str = f" [{badge}]" if badge else ""
        echo(f"{color}[STATE] {state.value}{badge_str}{Style.RESET_ALL}")

    # -- Commands --

    def print_help(self) -> None:
        echo(f"\n{Fore.YELLOW}--- RDM Agent Commands ---{Style.RESET_ALL}")
        echo(f"  {Fore.CYAN}stat{Style.RESET_ALL}                   : Show monitoring state")
        echo(f"  {Fore.CYAN}on / off{Style.RESET_ALL}               : Enable / disable monitoring")
        echo(f"  {Fore.CYAN}ls{Style.RESET_ALL}                     : List videos tracked by the peer")
        echo(f"  {Fore.CYAN}vid <id>{Style.RESET_ALL}               : Ask the peer to download a video")
        echo(f"  {Fore.CYAN}clear{Style.RESET_ALL}                  : Clear the video list")
        echo(f"  {Fore.CYAN}get <url> [referrer]{Style.RESET_ALL}   : Hand a link to the peer")
        echo(f"  {Fore.CYAN}help / ?{Style.RESET_ALL}               : Show this help message")
        echo(f"  {Fore.CYAN}exit / quit / q{Style.RESET_ALL}        : Exit the application")
        echo("")

    async def handle_command(self, line: str) -> bool:
        """Runs one shell command. Returns False when the shell should exit."""
        try:
            parts = shlex.split(line)
        except ValueError as e:
            echo(f"{Fore.RED}[ERR] {e}{Style.RESET_ALL}")
            return True
        if not parts:
            return True
        cmd, args = parts[0].lower(), parts[1:]

        if cmd in ('q', 'exit', 'quit'):
            echo("Shutting down...")
            return False

        if cmd in ('help', '?'):
            self.print_help()

        elif cmd == 'stat':
            reply = await self.agent.on_ui_message({'type': 'stat'})
            state = self.agent.visible_state
            color = STATE_COLORS.get(state, Fore.WHITE)
            echo(f"{color}[{state.value}]{Style.RESET_ALL} monitoring={reply['enabled']} "
                 f"connected={self.agent.sync.connected} videos={len(reply['list'])} "
                 f"pending={len(self.agent.correlator)} evicted={self.agent.correlator.evicted}")

        elif cmd in ('on', 'off'):
            await self.agent.on_ui_message({'type': 'cmd', 'enabled': cmd == 'on'})
            echo(f"{Fore.BLUE}[SYS] Monitoring switched {cmd}{Style.RESET_ALL}")

        elif cmd == 'ls':
            videos = self.agent.videos()
            echo(f"\n{Fore.YELLOW}--- Videos ({len(videos)}) ---{Style.RESET_ALL}")
            for video in videos:
                echo(f"[{video.id}] {video.display_str()}")
            if not videos:
                echo("No videos.")

        elif cmd == 'vid':
            if len(args) != 1:
                echo("usage: vid <id>")
            else:
                await self.agent.on_ui_message({'type': 'vid', 'itemId': args[0]})
                echo(f"{Fore.MAGENTA}[*] Requested video {args[0]}{Style.RESET_ALL}")

        elif cmd == 'clear':
            await self.agent.on_ui_message({'type': 'clear'})
            echo("Video list cleared.")

        elif cmd == 'get':
            if not 1 <= len(args) <= 2:
                echo("usage: get <url> [referrer]")
            else:
                request = await self.agent.request_download(args[0], args[1] if len(args) > 1 else None)
                if request is None:
                    echo(f"{Fore.RED}[ERR] Unsupported URL: {args[0]}{Style.RESET_ALL}")
                else:
                    echo(f"{Fore.GREEN}[+] Sent to peer: {request.url}{Style.RESET_ALL}")

        else:
            echo(f"Unknown command '{cmd}'. Type 'help'.")
        return True

    # -- Main loop --

    async def run(self) -> None:
        colorama_init()
        echo(BANNER.format(Fore=Fore, Style=Style))
        echo(f"{Fore.YELLOW}[*] Starting proxy on {self.config.bind_address}:{self.config.proxy_port}...{Style.RESET_ALL}")

        ready = asyncio.Event()
        proxy_task = asyncio.create_task(self.proxy.serve(self.agent, ready))
        ready_task = asyncio.create_task(ready.wait())
        await asyncio.wait({proxy_task, ready_task}, return_when=asyncio.FIRST_COMPLETED)
        if proxy_task.done():
            # Bind failure
            ready_task.cancel()
            await self.client.aclose()
            proxy_task.result()
            return
        await self.agent.start()

        try:
            if self.interactive:
                await self._shell()
            else:
                await proxy_task
        finally:
            proxy_task.cancel()
            await asyncio.gather(proxy_task, return_exceptions=True)
            await self.agent.stop()
            await self.client.aclose()

    async def _shell(self) -> None:
        self.session = PromptSession(completer=WordCompleter(COMMANDS, ignore_case=True))
        echo(f"{Fore.CYAN}Commands: stat, on, off, ls, vid <id>, clear, get <url>, exit{Style.RESET_ALL}")
        with patch_stdout():
            while True:
                try:
                    line = await self.session.prompt_async("rdm > ")
                    if not await self.handle_command(line):
                        break
                except (KeyboardInterrupt, EOFError):
                    break
                except Exception as e: # pylint: disable=broad-exception-caught
                    logger.error("Command failed: %s", e, exc_info=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="RDM Agent - media capture and download takeover for rdm")
    parser.add_argument("--peer-url", default=PEER_BASE_URL, help=f"rdm daemon URL (default: {PEER_BASE_URL})")
    parser.add_argument("-p", "--port", type=int, default=DEFAULT_PROXY_PORT, help=f"Proxy listen port (default: {DEFAULT_PROXY_PORT})")
    parser.add_argument("-b", "--bind", default="127.0.0.1", help="Proxy bind address (default: 127.0.0.1)")
    parser.add_argument("--capacity", type=int, default=PENDING_CAPACITY, help="Max pending requests awaiting headers")
    parser.add_argument("--heartbeats", type=int, default=HEARTBEAT_COUNT, help="Number of redundant heartbeat timers")
    parser.add_argument("--heartbeat-period", type=float, default=HEARTBEAT_PERIOD, help="Seconds between beats of one timer")
    parser.add_argument("--prefs", default=DEFAULT_PREFS_PATH, help=f"Preference file (default: {DEFAULT_PREFS_PATH})")
    parser.add_argument("--user-agent", default=DEFAULT_USER_AGENT, help="User-Agent reported to the peer")
    parser.add_argument("--no-shell", action="store_true", help="Run headless without the interactive shell")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Warnings and errors only")
    return parser

def config_from_args(args: argparse.Namespace) -> AgentConfig:
    if args.capacity < 1:
        raise ValueError("--capacity must be at least 1")
    if args.heartbeats < 1:
        raise ValueError("--heartbeats must be at least 1")
    return AgentConfig(
        peer_url=args.peer_url,
        capacity=args.capacity,
        heartbeat_count=args.heartbeats,
        heartbeat_period=args.heartbeat_period,
        user_agent=args.user_agent,
        prefs_path=args.prefs,
        bind_address=args.bind,
        proxy_port=args.port,
    )

def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = logging.DEBUG if verbose else (logging.WARNING if quiet else logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    configure_logging(args.verbose, args.quiet)
    app = RdmAgentApp(config, interactive=not args.no_shell)

    try:
        if sys.platform == 'win32':
            asyncio.run(app.run())
        else:
            import uvloop # pylint: disable=import-outside-toplevel
            uvloop.run(app.run())
    except KeyboardInterrupt:
        pass
    except OSError as e:
        logger.critical("Agent failed: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
