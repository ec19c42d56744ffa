"""Unit tests for sop_engine.services.rule_set."""
import pytest

from sop_engine.domain import RuleStatus
from sop_engine.errors import DuplicateRuleError, RuleNotFoundError, StaleConflictError
from sop_engine.services.rule_set import SOP_ACTIVE, SOP_DRAFT, RuleSet, referenced_tags

from conftest import make_rule


def _usage(registry, tag):
    return registry.get(tag).usage_count


def test_referenced_tags_are_unique():
    rule = make_rule("AU-A-0001", code="@E&M_MINOR_PROC", chart_section="PROCEDURE_SECTION")
    assert referenced_tags(rule) == ["@E&M_MINOR_PROC", "@ADD", "@25", "@BCBS", "@PHYSICIAN_MD_DO", "PROCEDURE_SECTION"]


def test_add_and_remove_track_usage(registry):
    rules = RuleSet("sop-1", registry)
    rules.add(make_rule("AU-A-0001", code="@E&M_MINOR_PROC"))
    assert _usage(registry, "@BCBS") == 1
    assert _usage(registry, "@E&M_MINOR_PROC") == 1
    assert not registry.can_delete_tag("@BCBS").can_delete
    rules.remove("AU-A-0001")
    assert _usage(registry, "@BCBS") == 0
    assert len(rules) == 0


def test_duplicate_and_missing_ids(registry):
    rules = RuleSet("sop-1", registry, [make_rule("AU-A-0001")])
    with pytest.raises(DuplicateRuleError):
        rules.add(make_rule("AU-A-0001"))
    with pytest.raises(RuleNotFoundError):
        rules.get("AU-Z-0009")
    with pytest.raises(RuleNotFoundError):
        rules.remove("AU-Z-0009")


def test_add_all_is_all_or_nothing(registry):
    rules = RuleSet("sop-1", registry, [make_rule("AU-A-0001")])
    with pytest.raises(DuplicateRuleError):
        rules.add_all([make_rule("AU-B-0002", payer="@AETNA"), make_rule("AU-A-0001")])
    with pytest.raises(DuplicateRuleError):
        rules.add_all([make_rule("AU-C-0003", payer="@AETNA"), make_rule("AU-C-0003", payer="@AETNA")])
    assert rules.rule_ids == ["AU-A-0001"]
    assert rules.version == 1
    assert _usage(registry, "@AETNA") == 0
    assert _usage(registry, "@BCBS") == 1

    added = rules.add_all([make_rule("AU-B-0002"), make_rule("AU-C-0003")])
    assert [r.rule_id for r in added] == ["AU-B-0002", "AU-C-0003"]
    assert rules.version == 2
    assert _usage(registry, "@BCBS") == 3


def test_version_bumps_on_every_mutation():
    rules = RuleSet("sop-1")
    assert rules.version == 0
    rules.add(make_rule("AU-A-0001"))
    rules.add(make_rule("AU-B-0002"))
    rules.approve("AU-A-0001")
    assert rules.version == 3


def test_replace_all_adjusts_usage(registry):
    rules = RuleSet("sop-1", registry, [make_rule("AU-A-0001")])
    rules.replace_all([make_rule("AU-A-0001", payer="@AETNA")])
    assert _usage(registry, "@BCBS") == 0
    assert _usage(registry, "@AETNA") == 1
    assert _usage(registry, "@ADD") == 1


def test_replace_all_rejects_stale_version():
    rules = RuleSet("sop-1", rules=[make_rule("AU-A-0001")])
    with pytest.raises(StaleConflictError):
        rules.replace_all([], expected_version=0)
    assert rules.replace_all([], expected_version=1) == 2


def test_replace_all_rejects_repeated_ids():
    rules = RuleSet("sop-1")
    with pytest.raises(DuplicateRuleError):
        rules.replace_all([make_rule("AU-A-0001"), make_rule("AU-A-0001")])


def test_approve_activates_sop():
    rules = RuleSet("sop-1", rules=[make_rule("AU-A-0001"), make_rule("AU-B-0002")])
    assert rules.sop_status == SOP_DRAFT
    assert rules.approve("AU-A-0001").status == RuleStatus.APPROVED
    assert rules.sop_status == SOP_ACTIVE


def test_reject_and_purge(registry):
    rules = RuleSet("sop-1", registry, [make_rule("AU-A-0001"), make_rule("AU-B-0002", payer="@AETNA")])
    rules.reject("AU-B-0002", "wrong payer")
    assert rules.get("AU-B-0002").status == RuleStatus.REJECTED
    assert rules.rejection_reason("AU-B-0002") == "wrong payer"
    purged = rules.purge_rejected()
    assert [r.rule_id for r in purged] == ["AU-B-0002"]
    assert rules.rule_ids == ["AU-A-0001"]
    assert _usage(registry, "@AETNA") == 0
    assert rules.rejection_reason("AU-B-0002") is None


def test_fingerprint_ignores_insertion_order():
    a = make_rule("AU-A-0001")
    b = make_rule("AU-B-0002", code="99214")
    assert RuleSet("x", rules=[a, b]).fingerprint() == RuleSet("y", rules=[b, a]).fingerprint()
    assert RuleSet("x", rules=[a]).fingerprint() != RuleSet("x", rules=[b]).fingerprint()


def test_tag_usage_counts_rules():
    rules = RuleSet("sop-1", rules=[make_rule("AU-A-0001"), make_rule("AU-B-0002", payer="@AETNA")])
    usage = rules.tag_usage()
    assert usage["@ADD"] == 2
    assert usage["@BCBS"] == 1


def test_to_dict():
    data = RuleSet("sop-1", rules=[make_rule("AU-A-0001")]).to_dict()
    assert data["sop_id"] == "sop-1"
    assert data["status"] == SOP_DRAFT
    assert data["rules"][0]["status"] == "pending"
