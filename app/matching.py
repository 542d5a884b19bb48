"""Confidence-scored matching of extracted staff names against venue personnel."""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from settings import build_default_settings, matching_settings


logger = logging.getLogger(__name__)

_PUNCTUATION_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")

INITIAL_SCORE = 0.85
PREFIX_SCORE = 0.8
DISPARITY_PENALTY = 0.15


@dataclass(frozen=True)
class MatchResult:
    person_id: Optional[int]
    confidence: int
    display_name: Optional[str] = None
    method: str = "none"  # exact | fuzzy | ambiguous | none


NO_MATCH = MatchResult(person_id=None, confidence=0, display_name=None, method="none")


def normalize_name(value: Any, honorifics: Iterable[str] = ()) -> str:
    """Case-fold, strip accents and punctuation, collapse whitespace and drop honorifics."""
    if value is None:
        return ""
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(char for char in text if not unicodedata.combining(char))
    text = _PUNCTUATION_RE.sub(" ", text.casefold())
    dropped = set(honorifics)
    tokens = [token for token in _WHITESPACE_RE.split(text) if token and token not in dropped]
    return " ".join(tokens)


def _ratio(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    return SequenceMatcher(None, left, right).ratio()


def token_similarity(left: str, right: str) -> float:
    if left == right:
        return 1.0
    if len(left) == 1 or len(right) == 1:
        longer = right if len(left) == 1 else left
        initial = left if len(left) == 1 else right
        return INITIAL_SCORE if longer.startswith(initial) else 0.0
    if left.startswith(right) or right.startswith(left):
        return max(PREFIX_SCORE, _ratio(left, right))
    return _ratio(left, right)


def _coverage(source: Sequence[str], target: Sequence[str]) -> float:
    return sum(max(token_similarity(token, other) for other in target) for token in source) / len(source)


def token_set_score(left: str, right: str) -> float:
    left_tokens = left.split()
    right_tokens = right.split()
    if not left_tokens or not right_tokens:
        return 0.0
    coverage = (_coverage(left_tokens, right_tokens) + _coverage(right_tokens, left_tokens)) / 2
    shorter, longer = sorted((len(left_tokens), len(right_tokens)))
    return coverage * (1 - DISPARITY_PENALTY * (1 - shorter / longer))


def name_score(left: str, right: str) -> int:
    """Score two already-normalised names on 0..100."""
    if not left or not right:
        return 0
    if left == right:
        return 100
    fallback = _ratio(left.replace(" ", ""), right.replace(" ", ""))
    score = max(token_set_score(left, right), fallback)
    return max(0, min(99, int(round(score * 100))))


class MatchingEngine:
    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        config = matching_settings(settings or build_default_settings())
        self.commit_threshold = int(config["commit_threshold"])
        self.suggestion_floor = int(config["suggestion_floor"])
        self.ambiguity_margin = int(config["ambiguity_margin"])
        self.honorifics = tuple(config.get("honorifics") or ())

    def normalize(self, value: Any) -> str:
        return normalize_name(value, self.honorifics)

    def is_committable(self, result: MatchResult) -> bool:
        return result.person_id is not None and result.confidence >= self.commit_threshold

    def rank(
        self,
        raw_name: Any,
        candidates: Iterable[Any],
        shift_counts: Optional[Mapping[int, int]] = None,
    ) -> List[Tuple[int, Any]]:
        """Return ``(score, candidate)`` pairs, best first."""
        target = self.normalize(raw_name)
        if not target:
            return []
        counts = shift_counts or {}
        scored = []
        for candidate in candidates:
            if not getattr(candidate, "active", True):
                continue
            score = name_score(target, self.normalize(candidate.display_name))
            scored.append((score, candidate))
        scored.sort(key=lambda item: (-item[0], -int(counts.get(item[1].id, 0)), item[1].id))
        return scored

    def match(
        self,
        raw_name: Any,
        candidates: Iterable[Any],
        shift_counts: Optional[Mapping[int, int]] = None,
    ) -> MatchResult:
        ranked = self.rank(raw_name, candidates, shift_counts)
        if not ranked:
            return NO_MATCH
        best_score, best = ranked[0]
        if best_score < self.suggestion_floor:
            logger.debug("No candidate for %r (best %s at %d)", raw_name, best.display_name, best_score)
            return NO_MATCH

        if best_score == 100:
            # Identical names are settled by rank's history tie-break, not demoted.
            logger.debug("Matched %r -> %s (exact)", raw_name, best.display_name)
            return MatchResult(person_id=best.id, confidence=100, display_name=best.display_name, method="exact")

        confidence = best_score
        method = "fuzzy"
        if len(ranked) > 1:
            runner_score = ranked[1][0]
            if runner_score >= self.suggestion_floor and best_score - runner_score < self.ambiguity_margin:
                confidence = min(confidence, self.commit_threshold - 1)
                method = "ambiguous"
        logger.debug("Matched %r -> %s (%d, %s)", raw_name, best.display_name, confidence, method)
        return MatchResult(person_id=best.id, confidence=confidence, display_name=best.display_name, method=method)
