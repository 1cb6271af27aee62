#Filename: classifier.py
"""
MEDIA CLASSIFIER
Pure decision functions over (URL, response headers, RuleStore).

Rules are evaluated in a fixed order and the first one that fires wins:
  0. blocked host          -> veto, nothing later can match
  1. path extension        -> match
  2. URL pattern           -> match
  3. Content-Type prefix   -> match (needs response headers)
  4. Content-Disposition   -> match (needs response headers)
  5. always-capture host   -> match
The fast path (phase 1, no response headers yet) runs rules 0, 1, 2 and 5.
"""

from typing import Optional

from agent_common import UnresolvableHostError, ends_with_extension, get_header, host_in, parse_url
from rules import RuleStore
from structures import HeaderList

# Match reasons, reported for logging
REASON_EXTENSION = "extension"
REASON_PATTERN = "pattern"
REASON_CONTENT_TYPE = "content-type"
REASON_CONTENT_DISPOSITION = "content-disposition"
REASON_ALWAYS_CAPTURE = "always-capture-host"


def classify(
    url: str,
    response_headers: Optional[HeaderList],
    rules: RuleStore,
    headers_available: bool = True
) -> Optional[str]:
    """
    Returns the name of the rule that matched, or None.
    An unparsable URL never matches and never raises.
    """
    try:
        parts = parse_url(url)
    except UnresolvableHostError:
        return None
    hostname = (parts.hostname or "").lower()

    if host_in(hostname, rules.blocked_hosts):
        return None

    if ends_with_extension(parts.path, rules.media_extensions):
        return REASON_EXTENSION

    if any(p.search(url) for p in rules.url_patterns):
        return REASON_PATTERN

    if headers_available:
        content_type = (get_header(response_headers, 'content-type') or "").lower()
        if any(content_type.startswith(mt) for mt in rules.media_type_prefixes):
            return REASON_CONTENT_TYPE

        disposition = (get_header(response_headers, 'content-disposition') or "").upper()
        if disposition and any(f".{ext}" in disposition for ext in rules.media_extensions):
            return REASON_CONTENT_DISPOSITION

    if host_in(hostname, rules.always_capture_hosts):
        return REASON_ALWAYS_CAPTURE

    return None
