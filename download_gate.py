#Filename: download_gate.py
"""
DOWNLOAD GATE
Decides whether a native download is taken over by the peer, and
coordinates the takeover against the host's download subsystem.

Takeover order: cancel the native download, and only once the cancel has
settled erase its record; erasing first could drop a partial file the host
still controls. The reissue to the peer runs alongside and never waits on
cookies: a failed lookup sends an empty cookie string.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from agent_common import (
    CookieLookupError, DownloadControlError, UnresolvableHostError,
    ends_with_extension, format_cookies, host_in, parse_url
)
from host import HostBridge
from rules import DownloadRules
from structures import (
    DOWNLOAD_PATH, SUPPORTED_SCHEMES, DownloadDecision, DownloadItem, DownloadRequest,
    RequestId, SyncPayload
)

logger = logging.getLogger(__name__)

Deliver = Callable[[str, Dict[str, Any]], Awaitable[Optional[SyncPayload]]]


def is_supported_url(url: Optional[str]) -> bool:
    """True for http, https and ftp URLs with a hostname."""
    if not url:
        return False
    try:
        return parse_url(url).scheme.lower() in SUPPORTED_SCHEMES
    except UnresolvableHostError:
        return False

def decide(item: DownloadItem, monitoring_enabled: bool, rules: DownloadRules) -> DownloadDecision:
    """Pure takeover decision for a download-created observation."""
    if not monitoring_enabled:
        return DownloadDecision.IGNORE

    url = item.resolved_url
    if not is_supported_url(url):
        return DownloadDecision.IGNORE

    parts = parse_url(url)
    if host_in(parts.hostname or "", rules.blocked_hosts):
        return DownloadDecision.IGNORE

    if item.filename and ends_with_extension(item.filename, rules.file_extensions):
        return DownloadDecision.TAKEOVER
    if ends_with_extension(parts.path, rules.file_extensions):
        return DownloadDecision.TAKEOVER
    return DownloadDecision.IGNORE

def build_referer(item: DownloadItem) -> Optional[str]:
    """Explicit referrer first, then the pre-redirect URL, else nothing."""
    if item.referrer:
        return item.referrer
    if item.final_url and item.final_url != item.url:
        return item.url
    return None

def build_download_request(
    url: str,
    cookie: str,
    user_agent: str,
    referer: Optional[str] = None,
    filename: Optional[str] = None,
    file_size: Optional[int] = None,
    mime: Optional[str] = None
) -> DownloadRequest:
    request_headers = {'User-Agent': [user_agent]}
    if referer:
        request_headers['Referer'] = [referer]

    response_headers = {}
    if file_size and file_size > 0:
        response_headers['Content-Length'] = [str(file_size)]
    if mime:
        response_headers['Content-Type'] = [mime]

    return DownloadRequest(
        url=url,
        cookie=cookie,
        request_headers=request_headers,
        response_headers=response_headers,
        filename=filename or None,
        file_size=file_size if file_size and file_size > 0 else None,
        mime_type=mime or None,
    )


class DownloadGate:
    """Runs the takeover of one download against the host and the peer."""

    def __init__(self, host: HostBridge, deliver: Deliver, user_agent: str) -> None:
        self.host = host
        self._deliver = deliver
        self.user_agent = user_agent

    async def takeover(self, item: DownloadItem) -> DownloadRequest:
        """Cancels/erases the native download and hands it to the peer."""
        logger.info("Intercepting download #%s: %s", item.id, item.resolved_url)
        _, request = await asyncio.gather(
            self._cancel_then_erase(item.id),
            self.reissue(
                item.resolved_url, build_referer(item), item.filename,
                item.file_size, item.mime
            ),
        )
        return request

    async def reissue(
        self,
        url: str,
        referer: Optional[str] = None,
        filename: Optional[str] = None,
        file_size: Optional[int] = None,
        mime: Optional[str] = None
    ) -> DownloadRequest:
        """Builds the /download request and delivers it once."""
        cookie = await self.fetch_cookie(url)
        request = build_download_request(
            url, cookie, self.user_agent, referer, filename, file_size, mime
        )
        await self._deliver(DOWNLOAD_PATH, request.to_dict())
        return request

    async def fetch_cookie(self, url: str) -> str:
        """Best effort: any lookup failure yields an empty cookie string."""
        try:
            cookies = await self.host.get_cookies(url)
        except CookieLookupError as e:
            logger.warning("Cookie lookup failed for %s: %s", url, e)
            return ""
        return format_cookies(cookies or [])

    async def _cancel_then_erase(self, download_id: RequestId) -> None:
        try:
            await self.host.cancel_download(download_id)
        except DownloadControlError as e:
            logger.warning("Cancel of download #%s failed, record kept: %s", download_id, e)
            return
        try:
            await self.host.erase_download(download_id)
        except DownloadControlError as e:
            logger.warning("Erase of download #%s failed: %s", download_id, e)
