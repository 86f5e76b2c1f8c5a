"""Conversation targeting and keyword matching logic (core domain)."""

from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set, Tuple

if TYPE_CHECKING:
    from milesguard.core.config import MonitorConfig
    from milesguard.core.ports import ConfigPort

LOGGER = logging.getLogger(__name__)


class FilterReason(str, Enum):
    KEYWORD_MATCH = "keyword_match"
    GLOBALLY_PAUSED = "globally_paused"
    GROUP_PAUSED = "group_paused"
    NOT_TARGET_GROUP = "not_target_group"
    NO_KEYWORD_MATCH = "no_keyword_match"
    INVALID_MESSAGE = "invalid_message"
    FILTER_ERROR = "filter_error"


@dataclass(frozen=True)
class FilterDecision:
    """Outcome of filtering one message, with the keywords that matched."""

    should_process: bool
    reason: FilterReason
    matched_keywords: Tuple[str, ...] = ()


def normalize_text(text: str) -> str:
    """Lowercase and strip diacritics so "Promoção" matches "promocao"."""

    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).strip()


def is_target_conversation(name: str, targets: Iterable[str], case_sensitive: bool = False) -> bool:
    """Return True when ``name`` and a configured target contain one another.

    Containment is checked in both directions so partial renames on either
    side still match ("Southern Flights Official" vs "Southern Flights").
    """

    if not name:
        return False
    candidate = name if case_sensitive else name.lower()
    for target in targets:
        if not target:
            continue
        wanted = target if case_sensitive else target.lower()
        if wanted in candidate or candidate in wanted:
            return True
    return False


def match_keywords(
    text: str,
    keywords: Iterable[str],
    case_sensitive: bool = False,
    paused: Optional[Set[str]] = None,
) -> List[str]:
    """Return every configured keyword found in ``text``.

    Keywords come back in configured order and spelling, without duplicates
    (two keywords that normalize to the same form are reported once).
    """

    if not text:
        return []
    paused = paused or set()
    haystack = text if case_sensitive else normalize_text(text)

    matched: List[str] = []
    seen: Set[str] = set()
    for keyword in keywords:
        if not keyword or keyword in paused:
            continue
        needle = keyword if case_sensitive else normalize_text(keyword)
        if not needle or needle in seen:
            continue
        if needle in haystack:
            seen.add(needle)
            matched.append(keyword)
    return matched


class FilterControls:
    """Runtime switches that pause groups, keywords or everything at once."""

    def __init__(self) -> None:
        self.paused_groups: Set[str] = set()
        self.paused_keywords: Set[str] = set()
        self.global_paused = False

    def pause_group(self, name: str) -> None:
        self.paused_groups.add(name)
        LOGGER.info("Group paused from filtering: %s", name)

    def resume_group(self, name: str) -> None:
        self.paused_groups.discard(name)
        LOGGER.info("Group resumed for filtering: %s", name)

    def pause_keyword(self, keyword: str) -> None:
        self.paused_keywords.add(keyword)
        LOGGER.info("Keyword paused from filtering: %s", keyword)

    def resume_keyword(self, keyword: str) -> None:
        self.paused_keywords.discard(keyword)
        LOGGER.info("Keyword resumed for filtering: %s", keyword)

    def set_global_pause(self, paused: bool) -> None:
        self.global_paused = paused
        LOGGER.info("Global filtering %s", "paused" if paused else "resumed")

    def toggle_global_pause(self) -> bool:
        self.set_global_pause(not self.global_paused)
        return self.global_paused


def decide(
    conversation_name: Optional[str],
    text: Optional[str],
    config: MonitorConfig,
    controls: Optional[FilterControls] = None,
) -> FilterDecision:
    """Decide whether a message should be delivered.

    Order of checks:
    - messages without text are invalid;
    - the global pause rejects everything;
    - paused groups are rejected;
    - non-target conversations are rejected before any keyword work;
    - otherwise at least one active keyword must match.
    """

    if not text or not text.strip():
        return FilterDecision(False, FilterReason.INVALID_MESSAGE)

    if controls is not None and controls.global_paused:
        return FilterDecision(False, FilterReason.GLOBALLY_PAUSED)

    if controls is not None and conversation_name in controls.paused_groups:
        return FilterDecision(False, FilterReason.GROUP_PAUSED)

    if not is_target_conversation(conversation_name or "", config.target_conversations, config.case_sensitive):
        return FilterDecision(False, FilterReason.NOT_TARGET_GROUP)

    matched = match_keywords(
        text,
        config.keywords,
        case_sensitive=config.case_sensitive,
        paused=controls.paused_keywords if controls is not None else None,
    )
    if not matched:
        return FilterDecision(False, FilterReason.NO_KEYWORD_MATCH)
    return FilterDecision(True, FilterReason.KEYWORD_MATCH, tuple(matched))


@dataclass
class FilterStats:
    processed: int = 0
    matched: int = 0
    rejected: int = 0
    keyword_matches: Dict[str, int] = field(default_factory=dict)
    group_matches: Dict[str, int] = field(default_factory=dict)


class FilterEngine:
    """Applies ``decide`` against the live configuration and keeps counters."""

    def __init__(self, config: ConfigPort, controls: Optional[FilterControls] = None) -> None:
        self._config = config
        self.controls = controls or FilterControls()
        self._stats = FilterStats()

    def evaluate(self, conversation_name: Optional[str], text: Optional[str]) -> FilterDecision:
        self._stats.processed += 1
        try:
            decision = decide(conversation_name, text, self._config.get_config(), self.controls)
        except Exception:
            LOGGER.exception("Filter failed for conversation %s", conversation_name)
            decision = FilterDecision(False, FilterReason.FILTER_ERROR)

        if decision.should_process:
            self._stats.matched += 1
            for keyword in decision.matched_keywords:
                self._stats.keyword_matches[keyword] = self._stats.keyword_matches.get(keyword, 0) + 1
            if conversation_name:
                self._stats.group_matches[conversation_name] = self._stats.group_matches.get(conversation_name, 0) + 1
        else:
            self._stats.rejected += 1
        return decision

    def top_keywords(self, limit: int = 10) -> List[Tuple[str, int]]:
        return sorted(self._stats.keyword_matches.items(), key=lambda item: item[1], reverse=True)[:limit]

    def top_groups(self, limit: int = 10) -> List[Tuple[str, int]]:
        return sorted(self._stats.group_matches.items(), key=lambda item: item[1], reverse=True)[:limit]

    def reset_stats(self) -> None:
        self._stats = FilterStats()
        LOGGER.info("Filter statistics reset")

    def stats(self) -> dict:
        processed = self._stats.processed
        match_rate = round(self._stats.matched / processed * 100, 2) if processed else 0.0
        return {
            "processed": processed,
            "matched": self._stats.matched,
            "rejected": self._stats.rejected,
            "match_rate": match_rate,
            "top_keywords": self.top_keywords(5),
            "top_groups": self.top_groups(5),
            "paused_groups": sorted(self.controls.paused_groups),
            "paused_keywords": sorted(self.controls.paused_keywords),
            "global_paused": self.controls.global_paused,
        }
