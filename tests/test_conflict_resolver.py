"""Unit tests for sop_engine.services.conflict_resolver."""
import logging

import pytest

from sop_engine.domain import ConflictSeverity, ConflictType, ResolutionAction
from sop_engine.errors import ConflictNotFoundError, ResolutionError, StaleConflictError
from sop_engine.services.conflict_detector import ConflictDetector
from sop_engine.services.conflict_resolver import ConflictResolver
from sop_engine.services.rule_set import RuleSet

from conftest import make_rule


def _resolver(rules, config, registry=None) -> ConflictResolver:
    resolver = ConflictResolver(RuleSet("sop-1", registry, rules), ConflictDetector(config))
    resolver.refresh()
    return resolver


def _only(resolver, conflict_type, severity=None):
    found = [
        c for c in resolver.open_conflicts
        if c.type == conflict_type and (severity is None or c.severity == severity)
    ]
    assert len(found) == 1
    return found[0]


def _duplicates():
    return [make_rule("AU-A-0001"), make_rule("AU-B-0002"), make_rule("AU-C-0003", code="99214")]


def test_keep_first(config):
    resolver = _resolver(_duplicates(), config)
    conflict = _only(resolver, ConflictType.DUPLICATE)
    rule_set = resolver.resolve(conflict.id, "keep_first")
    assert rule_set.rule_ids == ["AU-A-0001", "AU-C-0003"]
    assert resolver.open_conflicts == []


def test_keep_second(config):
    resolver = _resolver(_duplicates(), config)
    conflict = _only(resolver, ConflictType.DUPLICATE)
    assert resolver.resolve(conflict.id, ResolutionAction.KEEP_SECOND).rule_ids == ["AU-B-0002", "AU-C-0003"]


def test_delete_both(config, registry):
    resolver = _resolver(_duplicates(), config, registry)
    conflict = _only(resolver, ConflictType.DUPLICATE)
    assert resolver.resolve(conflict.id, "delete_both").rule_ids == ["AU-C-0003"]
    assert registry.get("@BCBS").usage_count == 1


def test_merge_inserts_at_first_position(config):
    rules = [make_rule("AU-Z-0000", code="99215")] + _duplicates()
    resolver = _resolver(rules, config)
    conflict = _only(resolver, ConflictType.DUPLICATE)
    merged = make_rule("AU-M-0009", payer="@BCBS|@AETNA")
    rule_set = resolver.resolve(conflict.id, "merge", merged_rule=merged)
    assert rule_set.rule_ids == ["AU-Z-0000", "AU-M-0009", "AU-C-0003"]
    assert resolver.history[-1].added_rule_ids == ("AU-M-0009",)
    assert set(resolver.history[-1].removed_rule_ids) == {"AU-A-0001", "AU-B-0002"}


def test_merge_requires_merged_rule(config):
    resolver = _resolver(_duplicates(), config)
    conflict = _only(resolver, ConflictType.DUPLICATE)
    with pytest.raises(ResolutionError):
        resolver.resolve(conflict.id, "merge")
    assert len(resolver.rule_set) == 3


def test_keep_both_acknowledges(config):
    resolver = _resolver(_duplicates(), config)
    conflict = _only(resolver, ConflictType.DUPLICATE)
    version = resolver.rule_set.version
    resolver.resolve(conflict.id, "keep_both")
    assert resolver.rule_set.version == version
    assert resolver.refresh() == []


def test_unknown_action(config):
    resolver = _resolver(_duplicates(), config)
    conflict = _only(resolver, ConflictType.DUPLICATE)
    with pytest.raises(ResolutionError):
        resolver.resolve(conflict.id, "explode")


def test_resolve_before_analysis_is_stale(config):
    resolver = ConflictResolver(RuleSet("sop-1", rules=_duplicates()), ConflictDetector(config))
    with pytest.raises(StaleConflictError):
        resolver.resolve("duplicate-0000000000", "keep_first")


def test_unknown_conflict_id(config):
    resolver = _resolver(_duplicates(), config)
    with pytest.raises(ConflictNotFoundError):
        resolver.resolve("duplicate-0000000000", "keep_first")


def test_second_resolution_revalidates_against_fresh_conflicts(config):
    rules = _duplicates() + [make_rule("AU-D-0004", code="99214")]
    resolver = _resolver(rules, config)
    ids = [c.id for c in resolver.open_conflicts]
    assert len(ids) == 2
    resolver.resolve(ids[0], "keep_first")
    assert resolver.is_stale
    resolver.resolve(ids[1], "keep_second")
    assert resolver.rule_set.rule_ids == ["AU-A-0001", "AU-D-0004"]


def test_conflict_removed_by_other_writer_is_stale(config):
    resolver = _resolver(_duplicates(), config)
    conflict = _only(resolver, ConflictType.DUPLICATE)
    resolver.rule_set.remove("AU-B-0002")
    with pytest.raises(StaleConflictError):
        resolver.resolve(conflict.id, "keep_first")


def test_multi_rule_conflict_needs_a_pair(config):
    rules = [
        make_rule("AU-ALL-0001", payer="@ALL_PAYERS"),
        make_rule("AU-BCBS-0002", payer="@BCBS", action="@REMOVE(@25)"),
        make_rule("AU-AET-0003", payer="@AETNA", action="@REMOVE(@25)"),
    ]
    resolver = _resolver(rules, config)
    broad = _only(resolver, ConflictType.OVERLAP, ConflictSeverity.LOW)
    with pytest.raises(ResolutionError):
        resolver.resolve(broad.id, "keep_first")
    with pytest.raises(ResolutionError):
        resolver.resolve(broad.id, "keep_first", rule_ids=["AU-ALL-0001", "AU-UHC-0009"])
    rule_set = resolver.resolve(broad.id, "keep_second", rule_ids=["AU-ALL-0001", "AU-AET-0003"])
    assert rule_set.rule_ids == ["AU-BCBS-0002", "AU-AET-0003"]


def test_resolution_is_logged_and_recorded(config, caplog):
    resolver = _resolver(_duplicates(), config)
    conflict = _only(resolver, ConflictType.DUPLICATE)
    with caplog.at_level(logging.INFO, logger="sop_engine.services.conflict_resolver"):
        resolver.resolve(conflict.id, "keep_first")
    assert f"conflict_id={conflict.id} action=keep_first" in caplog.text
    record = resolver.history[-1]
    assert record.sop_id == "sop-1"
    assert record.removed_rule_ids == ("AU-B-0002",)
    assert record.to_dict()["action"] == "keep_first"
    assert record.timestamp
