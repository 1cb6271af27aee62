#Filename: correlator.py
"""
REQUEST CORRELATOR
Bounded two-phase buffer keyed by the host transaction id.

Phase 1 (request sent) stores a PendingRequest; phase 2 (response headers
received) or an error resolves it. Overflow evicts the oldest entry by
insertion order. Rules are read through a provider at decision time, so a
transaction is judged against whatever snapshot is current when its phase
arrives.
"""

import logging
from collections import OrderedDict
from typing import Callable, Optional

from agent_common import cookie_from_headers, headers_to_dict
from classifier import classify
from rules import RuleStore
from structures import (
    PENDING_CAPACITY, HeaderList, MatchedRequest, MediaEvent, PendingRequest, RequestId
)

logger = logging.getLogger(__name__)


class RequestCorrelator:
    """Correlates request-sent / response-headers / error events per transaction id."""

    def __init__(
        self,
        rules_provider: Callable[[], RuleStore],
        capacity: int = PENDING_CAPACITY
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._rules_provider = rules_provider
        self._capacity = capacity
        self._pending: "OrderedDict[RequestId, PendingRequest]" = OrderedDict()
        self.evicted = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def oldest_id(self) -> Optional[RequestId]:
        return next(iter(self._pending), None)

    def on_request_sent(
        self,
        request_id: RequestId,
        url: str,
        method: str,
        tab_id: int,
        request_headers: Optional[HeaderList] = None
    ) -> Optional[MatchedRequest]:
        """
        Phase 1. Stores the request, then tries the URL-only rules.
        A fast-path match resolves the entry immediately.
        """
        # A repeated id (redirect) replaces the entry in place and keeps its slot
        if request_id not in self._pending and len(self._pending) >= self._capacity:
            old_id, _ = self._pending.popitem(last=False)
            self.evicted += 1
            logger.debug("Pending store full, evicted #%s", old_id)

        req = PendingRequest(request_id, url, method, tab_id, request_headers)
        self._pending[request_id] = req

        reason = classify(url, None, self._rules_provider(), headers_available=False)
        if reason is None:
            return None

        del self._pending[request_id]
        logger.debug("Fast-path match #%s %s (%s)", request_id, url, reason)
        return MatchedRequest(req, url, [], tab_id, reason)

    def on_response_headers(
        self,
        request_id: RequestId,
        url: str,
        response_headers: Optional[HeaderList],
        tab_id: int
    ) -> Optional[MatchedRequest]:
        """Phase 2. Unknown ids (resolved, evicted, errored) are ignored."""
        req = self._pending.pop(request_id, None)
        if req is None:
            return None

        headers = list(response_headers or [])
        reason = classify(url, headers, self._rules_provider())
        if reason is None:
            return None

        logger.debug("Match #%s %s (%s)", request_id, url, reason)
        return MatchedRequest(req, url, headers, tab_id, reason)

    def on_error(self, request_id: RequestId) -> None:
        """Drops the transaction; failed requests never emit."""
        self._pending.pop(request_id, None)


def build_media_event(
    match: MatchedRequest,
    tab_title: str,
    tab_url: str,
    user_agent: str
) -> MediaEvent:
    """Builds the immutable /media event for a matched transaction."""
    request_headers = headers_to_dict(match.request.request_headers)
    return MediaEvent(
        url=match.url,
        display_name=tab_title,
        request_headers=request_headers,
        response_headers=headers_to_dict(match.response_headers),
        cookie=cookie_from_headers(request_headers),
        method=match.request.method,
        user_agent=user_agent,
        tab_url=tab_url,
        tab_id=match.tab_id,
    )
