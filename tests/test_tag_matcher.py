"""Unit tests for sop_engine.services.tag_matcher."""
import pytest

from sop_engine.domain import CodeGroup, MatchType, TagKind
from sop_engine.engine_config import EngineConfig
from sop_engine.services.lookup_registry import LookupRegistry
from sop_engine.services.tag_matcher import (
    TagMatcher,
    code_overlap,
    extract_keywords,
    keyword_overlap,
    semantic_similarity,
)


@pytest.fixture
def matcher(registry, config) -> TagMatcher:
    return TagMatcher(registry, config)


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------

def test_semantic_similarity_ignores_short_words():
    assert semantic_similarity("of a bcbs plan", "bcbs plan") == 1.0
    assert semantic_similarity("", "anything") == 0.0


def test_extract_keywords_drops_stop_words_and_punctuation():
    assert extract_keywords("Cystoscopy and ureteroscopy, procedures!") == ["cystoscopy", "ureteroscopy", "procedures"]


def test_keyword_overlap_uses_longer_list():
    assert keyword_overlap(["a1x", "b2x"], ["a1x", "b2x", "c3x", "d4x"]) == 0.5


def test_code_overlap_is_share_of_mentioned_codes():
    assert code_overlap(["52287", "J0585", "99999"], ["52287", "J0585"]) == pytest.approx(2 / 3)
    assert code_overlap([], ["52287"]) == 0.0


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------

def test_exact_payer_match(matcher):
    result = matcher.match_payer_group("Blue Cross Blue Shield")
    assert result.matched
    assert result.tag == "@BCBS"
    assert result.match_type == MatchType.EXACT
    assert result.confidence == 1.0
    assert result.expanded_codes is None
    assert result.is_trusted


def test_exact_match_is_case_insensitive(matcher):
    assert matcher.match_payer_group("  blue cross blue shield ").tag == "@BCBS"


def test_semantic_code_group_match_expands_codes(matcher):
    result = matcher.match_code_group("office e&m visits with minor procedures today")
    assert result.match_type == MatchType.SEMANTIC
    assert result.tag == "@E&M_MINOR_PROC"
    assert result.confidence == pytest.approx(6 / 7)
    assert "99213" in result.expanded_codes
    assert result.is_trusted


def test_keyword_match_is_not_trusted(matcher):
    result = matcher.match_code_group("cystoscopy ureteroscopy procedures")
    assert result.match_type == MatchType.KEYWORD
    assert result.tag == "@ENDOSCOPY_PROCEDURES"
    assert not result.is_trusted


def test_exact_beats_code_overlap(matcher):
    result = matcher.match_code_group("Botox injection for bladder dysfunction", mentioned_codes=["52260", "52265"])
    assert result.match_type == MatchType.EXACT
    assert result.tag == "@BOTOX_BLADDER"


BOTOX_TEXT = "chemodenervation botox injection for overactive bladder dysfunction"


def _groups(*purposes) -> TagMatcher:
    groups = [CodeGroup(tag=tag, expands_to=("52287", "J0585"), purpose=purpose) for tag, purpose in purposes]
    return TagMatcher(LookupRegistry(groups), EngineConfig())


def test_exact_wins_over_earlier_semantic_candidate():
    # 7 of 8 words shared: semantic 0.875 on its own
    near = ("@NEAR", BOTOX_TEXT + " today")
    assert _groups(near).match_code_group(BOTOX_TEXT).match_type == MatchType.SEMANTIC

    result = _groups(near, ("@SAME", BOTOX_TEXT.upper())).match_code_group(BOTOX_TEXT)
    assert result.match_type == MatchType.EXACT
    assert result.tag == "@SAME"
    assert result.confidence == 1.0


def test_exact_wins_over_earlier_keyword_candidate():
    punctuated = ("@PUNCTUATED", "Chemodenervation, botox injection; overactive bladder dysfunction!")
    result = _groups(punctuated, ("@SAME", BOTOX_TEXT)).match_code_group(BOTOX_TEXT)
    assert result.match_type == MatchType.EXACT
    assert result.tag == "@SAME"


def test_semantic_wins_over_higher_keyword_score():
    # punctuation defeats word overlap (3/7) but not keyword overlap (6/6)
    punctuated = ("@PUNCTUATED", "Chemodenervation, botox injection; overactive bladder dysfunction!")
    alone = _groups(punctuated).match_code_group(BOTOX_TEXT)
    assert alone.match_type == MatchType.KEYWORD
    assert alone.confidence == 1.0

    result = _groups(punctuated, ("@NEAR", BOTOX_TEXT + " today")).match_code_group(BOTOX_TEXT)
    assert result.match_type == MatchType.SEMANTIC
    assert result.tag == "@NEAR"
    assert result.confidence == pytest.approx(7 / 8)


def test_semantic_takes_first_qualifying_candidate():
    first = ("@FIRST", BOTOX_TEXT + " today")
    # every word shared (1.0) but not an exact match
    second = ("@SECOND", BOTOX_TEXT.replace(" ", "  "))
    result = _groups(first, second).match_code_group(BOTOX_TEXT)
    assert result.tag == "@FIRST"


def test_code_overlap_match(matcher):
    result = matcher.match_code_group("", mentioned_codes=["Q2043", "96365", "99999"])
    assert result.match_type == MatchType.CODE_OVERLAP
    assert result.tag == "@PROVENGE_INFUSION"
    assert result.confidence == pytest.approx(2 / 3)
    assert not result.is_trusted


def test_code_overlap_threshold_is_strict(matcher):
    result = matcher.match_code_group("", mentioned_codes=["Q2043", "99999"])
    assert not result.matched


def test_no_match(matcher):
    result = matcher.match_provider_group("zzz qqq")
    assert not result.matched
    assert result.match_type == MatchType.NONE
    assert result.confidence == 0.0
    assert not matcher.match_chart_section("").matched


def test_deprecated_tags_are_not_matched(registry, config):
    registry.deprecate("@BCBS")
    assert not TagMatcher(registry, config).match_payer_group("Blue Cross Blue Shield").matched


def test_match_dispatches_on_kind(matcher):
    assert matcher.match("payer_group", "Medicare").tag == "@MEDICARE"
    assert matcher.match(TagKind.CHART_SECTION, "History of Present Illness").tag == "HPI"


def test_thresholds_come_from_config(registry):
    strict = TagMatcher(registry, EngineConfig(keyword_threshold=1.0))
    assert strict.match_code_group("cystoscopy ureteroscopy procedures").match_type == MatchType.NONE


# ---------------------------------------------------------------------------
# Action tags
# ---------------------------------------------------------------------------

def test_action_exact_description(matcher):
    result = matcher.match_action_tag("Replace one code with another")
    assert result.tag == "@SWAP"
    assert result.match_type == MatchType.EXACT


def test_action_name_in_text(matcher):
    result = matcher.match_action_tag("please add modifier")
    assert result.tag == "@ADD"
    assert result.match_type == MatchType.EXACT


def test_action_longest_name_wins(matcher):
    assert matcher.match_action_tag("cond add the drug code").tag == "@COND_ADD"


def test_action_synonym(matcher):
    result = matcher.match_action_tag("substitute the drug code")
    assert result.tag == "@SWAP"
    assert result.match_type == MatchType.SEMANTIC
    assert result.confidence == 0.9


def test_action_no_match(matcher):
    assert not matcher.match_action_tag("schedule a follow-up").matched


def test_prior_auth_synonym(matcher):
    result = matcher.match_action_tag("prior authorization is needed before billing")
    assert result.tag == "@REQUIRE_PRIOR_AUTH"
    assert result.match_type == MatchType.SEMANTIC
