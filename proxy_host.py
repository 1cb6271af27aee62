#Filename: proxy_host.py
"""
OBSERVING PROXY HOST
HTTP/1.1 forward proxy acting as the agent's host.

Each relayed request becomes a transaction: request-sent when the request
head is parsed, response-headers-received when the upstream head arrives,
request-error when the upstream cannot be reached. A response carrying
`Content-Disposition: attachment` is a native download: the proxy holds the
body until the Orchestrator has decided, and answers the client with
204 No Content when the download was cancelled in favour of the peer.
CONNECT is tunnelled blind; encrypted traffic is not observed.
"""

import asyncio
import itertools
import logging
import posixpath
import re
import ssl
import socket
from collections import OrderedDict
from email.message import Message
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlsplit

from agent_common import (
    AgentError, CookieLookupError, DownloadControlError, LostTabContextError,
    UnresolvableHostError, get_header, hostname_of, parse_cookie_header
)
from orchestrator import Orchestrator
from structures import (
    DEFAULT_PROXY_PORT, NO_TAB_ID, DownloadItem, HeaderList, RequestId, TabInfo, VisibleState
)

logger = logging.getLogger(__name__)

# -- Constants --
STRICT_HEADER_PATTERN = re.compile(rb'^([!#$%&\'*+\-.^_`|~0-9a-zA-Z]+):[ \t]*(.*)$')
UPSTREAM_CONNECT_TIMEOUT = 10.0
IDLE_TIMEOUT = 60.0
MAX_HEADER_LIST_SIZE = 262144
MAX_BODY_SIZE = 10 * 1024 * 1024
READ_CHUNK_SIZE = 65536
COMPACTION_THRESHOLD = 65536
COOKIE_JAR_HOSTS = 256

# Headers that describe the client<->proxy hop, not the request
HOP_BY_HOP_HEADERS = frozenset({
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'proxy-connection', 'te', 'trailers', 'transfer-encoding', 'upgrade', 'content-length'
})


class ProxyError(AgentError):
    """Framing or upstream failure inside the proxy."""

class PayloadTooLargeError(ProxyError):
    """Raised when a request body exceeds MAX_BODY_SIZE."""


# -- Stateless Helper Functions --

def is_attachment(headers: HeaderList) -> bool:
    disposition = get_header(headers, 'content-disposition') or ""
    return disposition.strip().lower().startswith('attachment')

def filename_from_disposition(value: str) -> str:
    """Filename parameter of a Content-Disposition value (RFC 2231 aware), without directories."""
    msg = Message()
    msg['content-disposition'] = value
    name = msg.get_filename() or ""
    return posixpath.basename(name.replace('\\', '/'))

def filename_from_url(url: str) -> str:
    return posixpath.basename(unquote(urlsplit(url).path))

def parse_response_head(raw: bytes) -> Tuple[int, HeaderList]:
    """Splits a raw response head into (status, headers)."""
    lines = raw.rstrip(b"\r\n").split(b"\r\n")
    parts = lines[0].split(b' ', 2)
    if len(parts) < 2 or not parts[0].startswith(b'HTTP/'):
        raise ProxyError(f"Malformed status line {lines[0][:64]!r}")
    try:
        status = int(parts[1])
    except ValueError as exc:
        raise ProxyError(f"Malformed status code {parts[1][:16]!r}") from exc

    headers: HeaderList = []
    for line in lines[1:]:
        match = STRICT_HEADER_PATTERN.match(line)
        if match:
            headers.append((
                match.group(1).decode('ascii'),
                match.group(2).decode('latin-1').strip()
            ))
    return status, headers


class ProxyHost:
    """
    The host side of the agent: owns the listening server, the native
    download records, a small per-host cookie jar and the visible state.
    """

    def __init__(
        self,
        bind_address: str = "127.0.0.1",
        port: int = DEFAULT_PROXY_PORT,
        state_callback: Optional[Callable[[VisibleState, int], None]] = None
    ) -> None:
        self.bind_address = bind_address
        self.port = port
        self.state_callback = state_callback
        self.visible_state = VisibleState.DISCONNECTED
        self.badge = 0
        self._ids = itertools.count(1)
        self._downloads: Dict[RequestId, asyncio.Event] = {}
        self._cookie_jar: "OrderedDict[str, Dict[str, str]]" = OrderedDict()

    def next_request_id(self) -> int:
        return next(self._ids)

    # -- HostBridge --

    async def cancel_download(self, download_id: RequestId) -> None:
        cancelled = self._downloads.get(download_id)
        if cancelled is None:
            raise DownloadControlError(f"No active download #{download_id}")
        cancelled.set()

    async def erase_download(self, download_id: RequestId) -> None:
        if self._downloads.pop(download_id, None) is None:
            raise DownloadControlError(f"No download record #{download_id}")

    async def get_cookies(self, url: str) -> List[Dict[str, str]]:
        try:
            hostname = hostname_of(url)
        except UnresolvableHostError as exc:
            raise CookieLookupError(str(exc)) from exc
        jar = self._cookie_jar.get(hostname, {})
        return [{'name': name, 'value': value} for name, value in jar.items()]

    async def get_tab(self, tab_id: int) -> TabInfo:
        raise LostTabContextError(f"Proxy has no tab context for tab {tab_id}")

    def set_visible_state(self, state: VisibleState, badge: int) -> None:
        changed = state is not self.visible_state
        self.visible_state = state
        self.badge = badge
        if changed:
            logger.info("Visible state: %s", state.value)
        if self.state_callback:
            self.state_callback(state, badge)

    # -- Proxy-side bookkeeping --

    def register_download(self, download_id: RequestId) -> asyncio.Event:
        """Creates the native download record; the event is set on cancel."""
        cancelled = asyncio.Event()
        self._downloads[download_id] = cancelled
        return cancelled

    def release_download(self, download_id: RequestId) -> None:
        self._downloads.pop(download_id, None)

    def has_download(self, download_id: RequestId) -> bool:
        return download_id in self._downloads

    def remember_cookies(self, hostname: str, cookie_header: str) -> None:
        """Keeps the latest Cookie values seen per host, bounded by host count."""
        if not hostname or not cookie_header:
            return
        jar = self._cookie_jar.pop(hostname, {})
        for record in parse_cookie_header(cookie_header):
            jar[record['name']] = record['value']
        self._cookie_jar[hostname] = jar
        while len(self._cookie_jar) > COOKIE_JAR_HOSTS:
            self._cookie_jar.popitem(last=False)

    # -- Server --

    async def serve(self, agent: Orchestrator, ready: Optional[asyncio.Event] = None) -> None:
        """Runs the listening server until cancelled."""
        async def _handle(r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
            await ObservingProxyHandler(r, w, self, agent).run()

        server = await asyncio.start_server(_handle, self.bind_address, self.port)
        logger.info("Observing proxy listening on %s:%d", self.bind_address, self.port)
        if ready is not None:
            ready.set()

        async with server:
            try:
                await server.serve_forever()
            except asyncio.CancelledError:
                pass
            finally:
                logger.info("Proxy stopped")


class ObservingProxyHandler:
    """Handles one client connection: parse, report, relay."""
    __slots__ = (
        'reader', 'writer', 'proxy', 'agent', 'buffer', '_buffer_offset'
    )

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        proxy: ProxyHost,
        agent: Orchestrator
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.proxy = proxy
        self.agent = agent
        self.buffer = bytearray()
        self._buffer_offset = 0

    # -- Framing --

    def _compact(self) -> None:
        if (
            self._buffer_offset > COMPACTION_THRESHOLD
            and self._buffer_offset > (len(self.buffer) // 2)
        ):
            del self.buffer[:self._buffer_offset]
            self._buffer_offset = 0

    async def _fill(self) -> bytes:
        try:
            return await asyncio.wait_for(self.reader.read(READ_CHUNK_SIZE), timeout=IDLE_TIMEOUT)
        except asyncio.TimeoutError as exc:
            raise ProxyError("Read Timeout (Idle)") from exc

    async def _read_line(self) -> bytes:
        """
        Reads one CRLF (or bare LF) terminated line from the buffered stream.
        Returns b"" on a clean EOF.
        """
        while True:
            lf_index = self.buffer.find(b'\n', self._buffer_offset)
            if lf_index != -1:
                break
            if len(self.buffer) - self._buffer_offset > MAX_HEADER_LIST_SIZE:
                raise ProxyError("Header Line Exceeded Max Length")
            self._compact()
            data = await self._fill()
            if not data:
                if len(self.buffer) - self._buffer_offset > 0:
                    raise ProxyError("Incomplete message")
                return b""
            self.buffer.extend(data)

        if lf_index - self._buffer_offset > MAX_HEADER_LIST_SIZE:
            raise ProxyError("Header Line Exceeded Max Length")

        line_end = lf_index
        if lf_index > self._buffer_offset and self.buffer[lf_index - 1] == 0x0D:
            line_end -= 1
        line = bytes(self.buffer[self._buffer_offset:line_end])
        self._buffer_offset = lf_index + 1
        return line

    async def _read_bytes(self, n: int) -> bytes:
        """Reads exactly n bytes from the buffered stream."""
        if n > MAX_BODY_SIZE:
            raise PayloadTooLargeError(f"Content-Length {n} exceeds limit.")
        while (len(self.buffer) - self._buffer_offset) < n:
            data = await self._fill()
            if not data:
                raise ProxyError("Incomplete read")
            self._compact()
            self.buffer.extend(data)
        chunk = bytes(self.buffer[self._buffer_offset:self._buffer_offset + n])
        self._buffer_offset += n
        return chunk

    async def _read_chunked_body(self) -> bytes:
        parts = []
        total = 0
        while True:
            line = await self._read_line()
            if b';' in line:
                line, _ = line.split(b';', 1)
            try:
                size = int(line.strip(), 16)
            except ValueError as exc:
                raise ProxyError("Invalid chunk size") from exc

            if size == 0:
                # Trailers, up to the blank line
                while await self._read_line():
                    pass
                break

            total += size
            if total > MAX_BODY_SIZE:
                raise PayloadTooLargeError(f"Chunked body exceeded {MAX_BODY_SIZE} bytes.")
            parts.append(await self._read_bytes(size))
            await self._read_line()
        return b"".join(parts)

    async def _read_head(self) -> Optional[Tuple[str, str, str, HeaderList, Dict[str, str]]]:
        """Reads request line and headers. None on clean EOF."""
        line = await self._read_line()
        if not line:
            return None
        parts = line.split(b' ', 2)
        if len(parts) != 3:
            raise ProxyError("Malformed Request Line")
        try:
            method, target, version = (p.decode('ascii') for p in parts)
        except UnicodeDecodeError as exc:
            raise ProxyError("Malformed Request Line") from exc

        headers: HeaderList = []
        headers_dict: Dict[str, str] = {}
        while True:
            h_line = await self._read_line()
            if not h_line:
                break
            if h_line[0] in (0x20, 0x09):
                raise ProxyError("Obsolete Line Folding Rejected")
            match = STRICT_HEADER_PATTERN.match(h_line)
            if not match:
                raise ProxyError("Invalid Header Syntax")
            key = match.group(1).decode('ascii')
            val = match.group(2).decode('latin-1').strip()
            headers.append((key, val))
            headers_dict[key.lower()] = val
        return method, target, version, headers, headers_dict

    # -- Main loop --

    async def run(self) -> None:
        try:
            while True:
                try:
                    head = await self._read_head()
                except ProxyError as e:
                    logger.debug("Framing error from %s: %s", self._peer(), e)
                    if "Timeout" not in str(e) and "Incomplete" not in str(e):
                        await self._send_error(400, str(e))
                    return
                if head is None:
                    return

                method, target, version, headers, headers_dict = head
                if method == 'CONNECT':
                    await self._handle_connect(target)
                    return
                keep_alive = await self._handle_request(method, target, version, headers, headers_dict)
                if not keep_alive:
                    return
        except Exception as e: # pylint: disable=broad-exception-caught
            logger.error("Proxy handler error: %s", e)
        finally:
            if not self.writer.is_closing():
                self.writer.close()

    def _peer(self) -> str:
        addr = self.writer.get_extra_info('peername')
        if isinstance(addr, tuple) and len(addr) >= 2:
            return f"{addr[0]}:{addr[1]}"
        return "<?>"

    def _absolute_url(self, target: str, headers_dict: Dict[str, str]) -> Optional[str]:
        if target.lower().startswith(('http://', 'https://')):
            return target
        host = headers_dict.get('host')
        if host and target.startswith('/'):
            return f"http://{host}{target}"
        return None

    async def _read_request_body(self, headers_dict: Dict[str, str]) -> bytes:
        te = headers_dict.get('transfer-encoding', '').lower()
        if 'chunked' in te:
            return await self._read_chunked_body()
        cl = headers_dict.get('content-length')
        if cl:
            try:
                length = int(cl)
            except ValueError as exc:
                raise ProxyError("Invalid Content-Length") from exc
            if length < 0:
                raise ProxyError("Invalid Content-Length")
            return await self._read_bytes(length)
        return b""

    async def _handle_request(
        self, method: str, target: str, version: str,
        headers: HeaderList, headers_dict: Dict[str, str]
    ) -> bool:
        """Relays one request and reports its lifecycle. Always closes after."""
        url = self._absolute_url(target, headers_dict)
        if url is None:
            await self._send_error(400, "Absolute URL Required")
            return False
        try:
            parts = urlsplit(url)
            scheme = parts.scheme.lower()
            host = parts.hostname or ""
            port = parts.port or (443 if scheme == 'https' else 80)
        except ValueError:
            await self._send_error(400, "Bad Request Target")
            return False

        try:
            body = await self._read_request_body(headers_dict)
        except PayloadTooLargeError:
            await self._send_error(413, "Payload Too Large")
            return False
        except ProxyError as e:
            await self._send_error(400, str(e))
            return False

        request_id = self.proxy.next_request_id()
        self.proxy.remember_cookies(host.lower(), headers_dict.get('cookie', ''))
        self.agent.on_request_sent(request_id, url, method, NO_TAB_ID, headers)

        try:
            u_r, u_w = await self._connect_upstream(host, port, scheme == 'https')
        except asyncio.TimeoutError:
            self.agent.on_request_error(request_id)
            await self._send_error(504, "Gateway Timeout")
            return False
        except (OSError, ProxyError) as e:
            logger.debug("Upstream %s:%d failed: %s", host, port, e)
            self.agent.on_request_error(request_id)
            await self._send_error(502, "Bad Gateway")
            return False

        try:
            u_w.write(self._build_upstream_request(method, parts, version, headers, body))
            await u_w.drain()
            raw_head = await self._read_response_head(u_r)
            _, response_headers = parse_response_head(raw_head)
        except (OSError, ProxyError) as e:
            logger.debug("Upstream exchange for #%d failed: %s", request_id, e)
            self.agent.on_request_error(request_id)
            u_w.close()
            await self._send_error(502, "Bad Gateway")
            return False

        self.agent.on_response_headers(request_id, url, response_headers, NO_TAB_ID)

        if is_attachment(response_headers):
            if await self._intercept_download(request_id, url, headers, response_headers):
                u_w.close()
                await self._send_status(204, "No Content")
                return False

        try:
            self.writer.write(raw_head)
            await self.writer.drain()
            await self._pipe(u_r, self.writer)
        finally:
            self.proxy.release_download(request_id)
            u_w.close()
        return False

    async def _intercept_download(
        self, request_id: int, url: str, headers: HeaderList, response_headers: HeaderList
    ) -> bool:
        """Reports the native download and returns True when it was cancelled."""
        disposition = get_header(response_headers, 'content-disposition') or ""
        try:
            size = int(get_header(response_headers, 'content-length') or 0)
        except ValueError:
            size = 0
        item = DownloadItem(
            request_id, url, url,
            filename=filename_from_disposition(disposition) or filename_from_url(url),
            referrer=get_header(headers, 'referer') or "",
            file_size=size,
            mime=get_header(response_headers, 'content-type') or "",
        )
        cancelled = self.proxy.register_download(request_id)
        try:
            await self.agent.on_download_created(item)
        except Exception as e: # pylint: disable=broad-exception-caught
            logger.error("Download handler failed for #%d: %s", request_id, e)
        return cancelled.is_set()

    def _build_upstream_request(
        self, method: str, parts, version: str, headers: HeaderList, body: bytes
    ) -> bytes:
        path = parts.path or "/"
        if parts.query:
            path += "?" + parts.query
        out = [f"{method} {path} {version}\r\n".encode('ascii')]
        has_host = False
        for k, v in headers:
            lower = k.lower()
            if lower in HOP_BY_HOP_HEADERS:
                continue
            if lower == 'host':
                has_host = True
            out.append(f"{k}: {v}\r\n".encode('latin-1'))
        if not has_host:
            out.append(f"Host: {parts.netloc}\r\n".encode('latin-1'))
        if body or method in ('POST', 'PUT', 'PATCH'):
            out.append(f"Content-Length: {len(body)}\r\n".encode('ascii'))
        out.append(b"Connection: close\r\n\r\n")
        return b"".join(out) + body

    async def _read_response_head(self, reader: asyncio.StreamReader) -> bytes:
        try:
            return await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=IDLE_TIMEOUT)
        except asyncio.IncompleteReadError as exc:
            raise ProxyError("Upstream closed before response headers") from exc
        except asyncio.LimitOverrunError as exc:
            raise ProxyError("Upstream response head too large") from exc
        except asyncio.TimeoutError as exc:
            raise ProxyError("Upstream response timeout") from exc

    async def _connect_upstream(
        self, host: str, port: int, use_tls: bool
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        ctx = ssl.create_default_context() if use_tls else None
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=ctx, server_hostname=host if use_tls else None),
            timeout=UPSTREAM_CONNECT_TIMEOUT
        )
        try:
            sock = writer.get_extra_info('socket')
            if sock:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass
        return reader, writer

    async def _handle_connect(self, target: str) -> None:
        """Blind tunnel: bytes are relayed without inspection."""
        host, _, port_str = target.rpartition(':')
        try:
            port = int(port_str)
        except ValueError:
            await self._send_error(400, "Bad CONNECT Target")
            return
        host = host.strip('[]')
        try:
            u_r, u_w = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=UPSTREAM_CONNECT_TIMEOUT
            )
        except (OSError, asyncio.TimeoutError):
            await self._send_error(502, "Bad Gateway")
            return

        self.writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
        await self.writer.drain()
        if self._buffer_offset < len(self.buffer):
            u_w.write(bytes(self.buffer[self._buffer_offset:]))
            await u_w.drain()
        await asyncio.gather(
            self._pipe(self.reader, u_w),
            self._pipe(u_r, self.writer),
            return_exceptions=True
        )

    async def _pipe(self, r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        try:
            while not r.at_eof():
                data = await r.read(READ_CHUNK_SIZE)
                if not data:
                    break
                w.write(data)
                await w.drain()
        except (OSError, asyncio.IncompleteReadError):
            pass
        finally:
            try:
                w.close()
                await w.wait_closed()
            except OSError:
                pass

    async def _send_status(self, code: int, message: str) -> None:
        try:
            self.writer.write(
                f"HTTP/1.1 {code} {message}\r\nConnection: close\r\nContent-Length: 0\r\n\r\n".encode()
            )
            await self.writer.drain()
        except OSError:
            pass

    async def _send_error(self, code: int, message: str) -> None:
        await self._send_status(code, message)
