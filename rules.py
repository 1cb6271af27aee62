#Filename: rules.py
"""
RULE SNAPSHOTS
Immutable matching configuration built from a peer sync payload.
A new snapshot replaces the old one wholesale; fields are never merged, so
an interleaved handler always sees one consistent set of rules.
"""

import logging
import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Pattern, Tuple

from agent_common import MalformedRuleError
from structures import SyncPayload

logger = logging.getLogger(__name__)


def _normalize(values: Iterable[str], upper: bool = False, strip_dot: bool = False) -> FrozenSet[str]:
    """Trims, re-cases and drops empty entries (an empty entry would match everything)."""
    out = set()
    for value in values:
        value = value.strip()
        if strip_dot:
            value = value.lstrip('.')
        if not value:
            continue
        out.add(value.upper() if upper else value.lower())
    return frozenset(out)

def compile_pattern(pattern: str) -> Pattern[str]:
    """Compiles one case-insensitive URL pattern."""
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise MalformedRuleError(f"Malformed URL pattern {pattern!r}: {exc}") from exc

def compile_patterns(patterns: Iterable[str]) -> Tuple[Pattern[str], ...]:
    """Compiles every pattern, logging and skipping the malformed ones."""
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(compile_pattern(pattern))
        except MalformedRuleError as e:
            logger.warning("Skipping rule: %s", e)
    return tuple(compiled)


@dataclass(frozen=True)
class RuleStore:
    """
    Media classification rules.
    Extensions are uppercased without their leading dot; host and media-type
    entries are lower-cased.
    """
    media_extensions: FrozenSet[str] = frozenset()
    blocked_hosts: FrozenSet[str] = frozenset()
    always_capture_hosts: FrozenSet[str] = frozenset()
    media_type_prefixes: FrozenSet[str] = frozenset()
    url_patterns: Tuple[Pattern[str], ...] = ()

    @classmethod
    def build(
        cls,
        media_extensions: Iterable[str] = (),
        blocked_hosts: Iterable[str] = (),
        always_capture_hosts: Iterable[str] = (),
        media_type_prefixes: Iterable[str] = (),
        url_patterns: Iterable[str] = ()
    ) -> "RuleStore":
        return cls(
            media_extensions=_normalize(media_extensions, upper=True, strip_dot=True),
            blocked_hosts=_normalize(blocked_hosts),
            always_capture_hosts=_normalize(always_capture_hosts),
            media_type_prefixes=_normalize(media_type_prefixes),
            url_patterns=compile_patterns(url_patterns),
        )

    @classmethod
    def from_sync(cls, payload: SyncPayload) -> "RuleStore":
        return cls.build(
            media_extensions=payload.request_file_exts,
            blocked_hosts=payload.blocked_hosts,
            always_capture_hosts=payload.matching_hosts,
            media_type_prefixes=payload.media_types,
            url_patterns=payload.url_patterns,
        )

    def __repr__(self) -> str:
        return (f"<RuleStore exts={len(self.media_extensions)} blocked={len(self.blocked_hosts)} "
                f"always={len(self.always_capture_hosts)} types={len(self.media_type_prefixes)} "
                f"patterns={len(self.url_patterns)}>")


@dataclass(frozen=True)
class DownloadRules:
    """Rules consulted by the Download Gate."""
    file_extensions: FrozenSet[str] = frozenset()
    blocked_hosts: FrozenSet[str] = frozenset()

    @classmethod
    def build(cls, file_extensions: Iterable[str] = (), blocked_hosts: Iterable[str] = ()) -> "DownloadRules":
        return cls(
            file_extensions=_normalize(file_extensions, upper=True, strip_dot=True),
            blocked_hosts=_normalize(blocked_hosts),
        )

    @classmethod
    def from_sync(cls, payload: SyncPayload) -> "DownloadRules":
        return cls.build(payload.file_exts, payload.blocked_hosts)
