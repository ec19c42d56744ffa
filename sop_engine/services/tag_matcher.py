"""
Tag matcher: resolve free-text document fragments to canonical lookup tags.

Tiers run in order and the first qualifying tier wins, even when a lower tier
would score higher:

  1. EXACT         case-insensitive equality with a tag's name/purpose/description
  2. SEMANTIC      word overlap > semantic_threshold (first candidate found)
  3. KEYWORD       stop-word-filtered overlap > keyword_threshold (best candidate)
  4. CODE_OVERLAP  code groups only: share of mentioned codes in ``expands_to``

EXACT and SEMANTIC results are trusted; KEYWORD and CODE_OVERLAP are heuristic
and callers should route them to a human (see ``MatchResult.is_trusted``).
Matching never raises for data problems; a miss is ``MatchResult.no_match()``.
"""
from __future__ import annotations

import logging
import re
from typing import Iterable, Sequence

from sop_engine.domain import LookupTag, MatchResult, MatchType, TagKind, TagStatus
from sop_engine.engine_config import EngineConfig, load_engine_config
from sop_engine.services.lookup_registry import LookupRepository, RegistrySnapshot
from sop_engine.services.tag_grammar import ACTION_VERBS

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    {"the", "and", "or", "for", "with", "in", "on", "at", "to", "a", "an", "of", "is", "are", "was", "were"}
)

ACTION_SYNONYMS: dict[str, tuple[str, ...]] = {
    "add": ("append", "include", "attach", "insert"),
    "remove": ("delete", "exclude", "drop", "omit"),
    "swap": ("replace", "exchange", "substitute", "switch"),
    "link": ("associate", "connect", "relate", "tie"),
    "deny": ("reject", "decline", "refuse"),
    "approve": ("accept", "allow", "authorize"),
    "require_prior_auth": ("prior authorization", "preauthorization", "precertification"),
    "cond_add": ("conditional add", "conditionally add", "add if"),
    "cond_remove": ("conditional remove", "conditionally remove", "remove if"),
    "always_add": ("always append", "always include", "mandatory add"),
    "never_add": ("never append", "never include", "exclude always"),
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _words(text: str) -> list[str]:
    return [w for w in text.lower().split() if len(w) > 2]


def semantic_similarity(text1: str, text2: str) -> float:
    """Word overlap of ``text1`` in ``text2`` divided by the longer word list."""
    words1 = _words(text1)
    words2 = _words(text2)
    if not words1 or not words2:
        return 0.0
    pool = set(words2)
    overlap = sum(1 for w in words1 if w in pool)
    return overlap / max(len(words1), len(words2))


def extract_keywords(text: str) -> list[str]:
    out = []
    for raw in text.lower().split():
        w = _NON_ALNUM.sub("", raw)
        if len(w) > 2 and w not in STOP_WORDS:
            out.append(w)
    return out


def keyword_overlap(keywords1: Sequence[str], keywords2: Sequence[str]) -> float:
    if not keywords1 or not keywords2:
        return 0.0
    pool = set(keywords2)
    overlap = sum(1 for k in keywords1 if k in pool)
    return overlap / max(len(keywords1), len(keywords2))


def code_overlap(mentioned_codes: Iterable[str], expands_to: Iterable[str]) -> float:
    """Fraction of the mentioned codes that appear in a group's member list."""
    mentioned = list(dict.fromkeys(c.strip() for c in mentioned_codes if c and c.strip()))
    if not mentioned:
        return 0.0
    members = set(expands_to)
    return sum(1 for c in mentioned if c in members) / len(mentioned)


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"(?<![a-z0-9_]){re.escape(phrase)}(?![a-z0-9_])", text) is not None


def _synonyms_for(action_name: str) -> tuple[str, ...]:
    if action_name in ACTION_SYNONYMS:
        return ACTION_SYNONYMS[action_name]
    # LINK_IF_MODIFIER, ALWAYS_LINK_PRIMARY ... fall back to the longest verb they start with
    for verb in sorted(ACTION_VERBS, key=len, reverse=True):
        v = verb.lower()
        if action_name.startswith(v + "_") and v in ACTION_SYNONYMS:
            return ACTION_SYNONYMS[v]
    return ()


class TagMatcher:
    """Tiered fuzzy matcher over one registry snapshot per call."""

    def __init__(self, repository: LookupRepository, config: EngineConfig | None = None):
        self.repository = repository
        self.config = config or load_engine_config()

    # ------------------------------------------------------------ public API
    def match_code_group(self, text: str, mentioned_codes: Sequence[str] | None = None) -> MatchResult:
        return self._match(TagKind.CODE_GROUP, text, mentioned_codes)

    def match_payer_group(self, text: str) -> MatchResult:
        return self._match(TagKind.PAYER_GROUP, text)

    def match_provider_group(self, text: str) -> MatchResult:
        return self._match(TagKind.PROVIDER_GROUP, text)

    def match_chart_section(self, text: str) -> MatchResult:
        return self._match(TagKind.CHART_SECTION, text)

    def match_action_tag(self, text: str) -> MatchResult:
        snap = self.repository.snapshot()
        clean = (text or "").lower().strip()
        if not clean:
            return MatchResult.no_match()
        candidates = self._candidates(snap, TagKind.ACTION_TAG)
        by_length = sorted(candidates, key=lambda t: len(t.tag), reverse=True)

        for tag in candidates:
            if any(t and t.lower().strip() == clean for t in tag.match_texts()):
                return self._hit(tag, MatchType.EXACT, 1.0)
        for tag in by_length:
            name = tag.tag.lstrip("@").lower()
            if _contains_phrase(clean, name) or _contains_phrase(clean, name.replace("_", " ")):
                return self._hit(tag, MatchType.EXACT, 1.0)

        semantic = self._semantic(candidates, clean)
        if semantic is not None:
            return semantic
        for tag in by_length:
            for synonym in _synonyms_for(tag.tag.lstrip("@").lower()):
                if _contains_phrase(clean, synonym):
                    return self._hit(tag, MatchType.SEMANTIC, self.config.action_synonym_confidence)
        keyword = self._keyword(candidates, clean)
        if keyword is not None:
            return keyword
        return MatchResult.no_match()

    def match(self, kind: TagKind | str, text: str, mentioned_codes: Sequence[str] | None = None) -> MatchResult:
        kind = TagKind(kind)
        if kind == TagKind.ACTION_TAG:
            return self.match_action_tag(text)
        return self._match(kind, text, mentioned_codes)

    # ------------------------------------------------------------ tiers
    def _candidates(self, snap: RegistrySnapshot, kind: TagKind) -> list[LookupTag]:
        return [t for t in snap.tags(kind) if t.status != TagStatus.DEPRECATED]

    def _hit(self, tag: LookupTag, match_type: MatchType, confidence: float) -> MatchResult:
        expanded = tuple(getattr(tag, "expands_to", ())) if tag.kind == TagKind.CODE_GROUP else None
        logger.debug("[matcher] %s -> %s (%s %.2f)", tag.kind.value, tag.tag, match_type.value, confidence)
        return MatchResult(
            matched=True, tag=tag.tag, match_type=match_type, confidence=confidence, expanded_codes=expanded
        )

    def _semantic(self, candidates: list[LookupTag], clean: str) -> MatchResult | None:
        for tag in candidates:
            similarity = max((semantic_similarity(clean, t) for t in tag.match_texts() if t), default=0.0)
            if similarity > self.config.semantic_threshold:
                return self._hit(tag, MatchType.SEMANTIC, similarity)
        return None

    def _keyword(self, candidates: list[LookupTag], clean: str) -> MatchResult | None:
        keywords = extract_keywords(clean)
        best: tuple[LookupTag, float] | None = None
        for tag in candidates:
            tag_keywords: list[str] = []
            for t in tag.match_texts():
                tag_keywords.extend(extract_keywords(t or ""))
            score = keyword_overlap(keywords, tag_keywords)
            if score > self.config.keyword_threshold and (best is None or score > best[1]):
                best = (tag, score)
        return self._hit(best[0], MatchType.KEYWORD, best[1]) if best else None

    def _match(self, kind: TagKind, text: str, mentioned_codes: Sequence[str] | None = None) -> MatchResult:
        snap = self.repository.snapshot()
        candidates = self._candidates(snap, kind)
        clean = (text or "").lower().strip()

        if clean:
            for tag in candidates:
                if any(t and t.lower().strip() == clean for t in tag.match_texts()):
                    return self._hit(tag, MatchType.EXACT, 1.0)
            semantic = self._semantic(candidates, clean)
            if semantic is not None:
                return semantic
            keyword = self._keyword(candidates, clean)
            if keyword is not None:
                return keyword

        if kind == TagKind.CODE_GROUP and mentioned_codes:
            best: tuple[LookupTag, float] | None = None
            for tag in candidates:
                score = code_overlap(mentioned_codes, getattr(tag, "expands_to", ()))
                if score > self.config.code_overlap_threshold and (best is None or score > best[1]):
                    best = (tag, score)
            if best is not None:
                return self._hit(best[0], MatchType.CODE_OVERLAP, best[1])

        logger.debug("[matcher] no %s match for %r", kind.value, text)
        return MatchResult.no_match()
