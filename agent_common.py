#Filename: agent_common.py
"""
AGENT COMMON DEFINITIONS
Exception hierarchy and stateless helpers shared by the Classifier,
Correlator, Download Gate and Proxy Host.
"""

from typing import Dict, Iterable, List, Optional
from urllib.parse import SplitResult, urlsplit

from structures import HeaderDict, HeaderList


class AgentError(Exception):
    """Base exception for agent operations."""

class MalformedRuleError(AgentError):
    """Raised when a configured URL pattern fails to compile."""

class UnresolvableHostError(AgentError):
    """Raised when a URL cannot be parsed into a hostname."""

class PeerUnreachableError(AgentError):
    """Raised on refused connections, timeouts, non-2xx answers or garbage bodies."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

class LostTabContextError(AgentError):
    """Raised by the host when a tab closed before its metadata was read."""

class CookieLookupError(AgentError):
    """Raised by the host when cookies for a URL cannot be fetched."""

class DownloadControlError(AgentError):
    """Raised by the host when cancelling or erasing a native download fails."""


# -- Stateless Helper Functions --

def parse_url(url: str) -> SplitResult:
    """
    Splits a URL and guarantees a hostname.
    Raises UnresolvableHostError instead of leaking ValueError.
    """
    if not url:
        raise UnresolvableHostError("Empty URL")
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError as exc:
        raise UnresolvableHostError(f"Unparsable URL {url!r}: {exc}") from exc
    if not parts.scheme or not hostname:
        raise UnresolvableHostError(f"No hostname in {url!r}")
    return parts

def hostname_of(url: str) -> str:
    """Lower-cased hostname of a URL."""
    return (parse_url(url).hostname or "").lower()

def host_in(hostname: str, substrings: Iterable[str]) -> bool:
    """Case-insensitive substring test against a host list."""
    hostname = hostname.lower()
    return any(sub.lower() in hostname for sub in substrings)

def ends_with_extension(value: str, extensions: Iterable[str]) -> bool:
    """
    Case-insensitive suffix test. Extensions are stored without their dot,
    so 'MP4' accepts both '/a.mp4' and '/amp4'.
    """
    upper = value.upper()
    return any(upper.endswith(ext.upper()) for ext in extensions)

def get_header(headers: Optional[HeaderList], name: str) -> Optional[str]:
    """Case-insensitive lookup returning the first value of a header."""
    lower = name.lower()
    for key, value in headers or []:
        if key.lower() == lower:
            return value
    return None

def headers_to_dict(headers: Optional[HeaderList]) -> HeaderDict:
    """Converts a header list to {name: [value, ...]}, keeping name casing."""
    out: HeaderDict = {}
    for key, value in headers or []:
        out.setdefault(key, []).append(value if value is not None else "")
    return out

def cookie_from_headers(headers: HeaderDict) -> str:
    """The request Cookie header (any casing) as one string."""
    for key in ('Cookie', 'cookie'):
        if key in headers:
            return "; ".join(headers[key])
    for key, values in headers.items():
        if key.lower() == 'cookie':
            return "; ".join(values)
    return ""

def format_cookies(cookies: Iterable[Dict[str, str]]) -> str:
    """Joins host cookie records into a Cookie header value."""
    return "; ".join(f"{c.get('name', '')}={c.get('value', '')}" for c in cookies)

def parse_cookie_header(value: str) -> List[Dict[str, str]]:
    """Splits a Cookie header into name/value records."""
    records: List[Dict[str, str]] = []
    for part in value.split(';'):
        part = part.strip()
        if not part or '=' not in part:
            continue
        name, val = part.split('=', 1)
        records.append({'name': name.strip(), 'value': val.strip()})
    return records
