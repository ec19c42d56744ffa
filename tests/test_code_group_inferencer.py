"""Unit tests for sop_engine.services.code_group_inferencer."""
import pytest

from sop_engine.domain import CandidateRule
from sop_engine.services.code_group_inferencer import CodeGroupInferencer

from conftest import make_rule


@pytest.fixture
def inferencer(registry, config) -> CodeGroupInferencer:
    return CodeGroupInferencer(registry, config)


def test_complete_match(inferencer):
    result = inferencer.auto_populate_code_group(["52287", "J0585"])
    assert result.code_group == "@BOTOX_BLADDER"
    assert result.confidence == 1.0
    assert result.expanded_codes == ("52287", "J0585")
    assert result.is_complete


def test_first_superset_wins(inferencer):
    # @E&M_OFFICE_VISITS also holds both codes but is registered later
    result = inferencer.auto_populate_code_group(["99213", "99214"])
    assert result.code_group == "@E&M_MINOR_PROC"
    assert result.reason == "All codes match a single code group"


def test_partial_match(inferencer):
    result = inferencer.auto_populate_code_group(["52287", "J0585", "99999"])
    assert result.code_group == "@BOTOX_BLADDER"
    assert result.confidence == pytest.approx(2 / 3)
    assert result.reason == "67% of codes match @BOTOX_BLADDER"
    assert not result.is_complete


def test_half_match_is_enough(inferencer):
    result = inferencer.auto_populate_code_group(["Q2043", "99999"])
    assert result.code_group == "@PROVENGE_INFUSION"
    assert result.confidence == 0.5


def test_no_match_falls_back_to_input(inferencer):
    result = inferencer.auto_populate_code_group(["99999"])
    assert result.code_group is None
    assert result.confidence == 0
    assert result.expanded_codes == ("99999",)
    assert result.to_dict()["expanded_codes"] == ["99999"]


def test_group_tags_are_not_reinferred(inferencer):
    result = inferencer.auto_populate_code_group(["@BOTOX_BLADDER"])
    assert result.code_group is None
    assert result.reason == "No codes provided"


def test_find_code_groups_for_codes(inferencer):
    matches = inferencer.find_code_groups_for_codes(["52260"])
    assert [m.code_group.tag for m in matches] == ["@HYDRODISTENSION", "@ENDOSCOPY_PROCEDURES"]
    assert all(m.match_percentage == 1.0 for m in matches)


def test_deprecated_groups_are_skipped(registry, config):
    registry.deprecate("@BOTOX_BLADDER")
    result = CodeGroupInferencer(registry, config).auto_populate_code_group(["52287", "J0585"])
    assert result.code_group != "@BOTOX_BLADDER"


# ---------------------------------------------------------------------------
# enhance_rule_with_code_group
# ---------------------------------------------------------------------------

def test_enhance_infers_and_expands(inferencer):
    rule = CandidateRule(rule_id="AU-EM-0001", code="99213,99214")
    out = inferencer.enhance_rule_with_code_group(rule)
    assert out.rule.code_group == "@E&M_MINOR_PROC"
    assert out.rule.code.split(",")[:2] == ["99202", "99203"]
    assert out.changes and not out.warnings
    assert rule.code == "99213,99214"


def test_enhance_partial_match_warns_about_outliers(inferencer):
    out = inferencer.enhance_rule_with_code_group(CandidateRule(rule_id="AU-BTX-0001", code="52287,J0585,99999"))
    assert out.rule.code_group == "@BOTOX_BLADDER"
    assert out.rule.code == "52287,J0585,99999"
    assert out.warnings == ["Codes not in @BOTOX_BLADDER: 99999"]


def test_enhance_without_match_warns(inferencer):
    out = inferencer.enhance_rule_with_code_group(CandidateRule(rule_id="AU-X-0001", code="99999"))
    assert out.rule.code_group is None
    assert out.warnings == ["Could not find matching code group for codes: 99999"]


def test_enhance_declared_group_mismatch_is_not_corrected(inferencer):
    rule = CandidateRule(rule_id="AU-X-0001", code="99999", code_group="@BOTOX_BLADDER")
    out = inferencer.enhance_rule_with_code_group(rule)
    assert out.rule is rule
    assert out.warnings == ["Some codes don't match code group @BOTOX_BLADDER"]


def test_enhance_declared_group_subset_expands(inferencer):
    out = inferencer.enhance_rule_with_code_group(
        CandidateRule(rule_id="AU-X-0001", code="52287", code_group="@BOTOX_BLADDER")
    )
    assert out.rule.code == "52287,J0585"
    assert out.changes == ["Expanded codes from @BOTOX_BLADDER"]


def test_enhance_declared_unknown_group(inferencer):
    out = inferencer.enhance_rule_with_code_group(CandidateRule(rule_id="AU-X-0001", code="99213", code_group="@NOPE"))
    assert out.warnings == ["Code group @NOPE not found in lookup table"]


def test_enhance_leaves_group_tag_code_alone(inferencer):
    rule = make_rule("AU-X-0001", code="@E&M_MINOR_PROC")
    out = inferencer.enhance_rule_with_code_group(rule)
    assert out.rule is rule
    assert not out.changes and not out.warnings


def test_enhance_works_on_validated_rules(inferencer):
    out = inferencer.enhance_rule_with_code_group(make_rule("AU-X-0001", code="52287,J0585"))
    assert out.rule.code_group == "@BOTOX_BLADDER"


def test_enhance_rules_summary(inferencer):
    rules = [
        CandidateRule(rule_id="AU-A-0001", code="99213,99214"),
        CandidateRule(rule_id="AU-B-0002", code="99999"),
        CandidateRule(rule_id="AU-C-0003", code="@CRIT_CARE"),
    ]
    summary = inferencer.enhance_rules(rules)
    assert summary.total_rules == 3
    assert summary.rules_enhanced == 1
    assert summary.rules_with_warnings == 1
    assert summary.changes[0].startswith("Rule AU-A-0001: Auto-populated code_group: @E&M_MINOR_PROC")
    assert summary.warnings == ["Rule AU-B-0002: Could not find matching code group for codes: 99999"]
    assert [r.rule_id for r in summary.rules] == ["AU-A-0001", "AU-B-0002", "AU-C-0003"]
    assert summary.to_dict()["summary"]["rules_enhanced"] == 1
