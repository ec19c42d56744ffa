"""
Conflict detection over a whole rule set.

Four independent passes (duplicate, contradiction, pairwise overlap, broad-rule
shadowing); a pair of rules may show up in several conflicts. The detector is
re-run in full after every rule-set change. Conflict ids are derived from the
conflict content, so the same rule set always yields the same ids.
"""
from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from typing import Iterable, Protocol, Sequence

from sop_engine.domain import Conflict, ConflictSeverity, ConflictType
from sop_engine.engine_config import EngineConfig, load_engine_config
from sop_engine.services.tag_grammar import split_pipe_list

logger = logging.getLogger(__name__)


class RuleLike(Protocol):
    rule_id: str | None
    code: str | None
    action: str | None
    payer_group: str | None
    provider_group: str | None


def conflict_id(conflict_type: ConflictType, severity: ConflictSeverity, key: str, rule_ids: Iterable[str]) -> str:
    payload = "|".join([conflict_type.value, severity.value, key, ",".join(sorted(rule_ids))])
    return f"{conflict_type.value}-{hashlib.sha1(payload.encode('utf-8')).hexdigest()[:10]}"


def _code(rule: RuleLike) -> str:
    return (rule.code or "").strip()


def _action(rule: RuleLike) -> str:
    return (rule.action or "").strip()


def _action_head(action: str) -> str:
    """``@DENY(@X)`` / ``deny`` -> ``deny``."""
    return action.lstrip("@").split("(", 1)[0].strip().lower()


def _bare(value: str) -> str:
    return value.lstrip("@").strip()


class ConflictDetector:
    def __init__(self, config: EngineConfig | None = None):
        self.config = config or load_engine_config()
        self._wild_payers = {w.lstrip("@") for w in self.config.wildcard_payers}
        self._wild_providers = {w.lstrip("@") for w in self.config.wildcard_providers}
        self._exclusive = {a.lower() for a in self.config.exclusive_actions}

    def _payers(self, rule: RuleLike) -> list[str]:
        return split_pipe_list(rule.payer_group)

    def _providers(self, rule: RuleLike) -> list[str]:
        return split_pipe_list(rule.provider_group)

    def _is_wild_payer(self, payer: str) -> bool:
        return _bare(payer) in self._wild_payers

    def _is_broad(self, rule: RuleLike) -> bool:
        return any(self._is_wild_payer(p) for p in self._payers(rule)) or any(
            _bare(p) in self._wild_providers for p in self._providers(rule)
        )

    def payers_intersect(self, rule1: RuleLike, rule2: RuleLike) -> bool:
        """Shared payer entry, or a wildcard on either side."""
        p1 = self._payers(rule1)
        p2 = self._payers(rule2)
        if any(self._is_wild_payer(p) for p in p1) and p2:
            return True
        if any(self._is_wild_payer(p) for p in p2) and p1:
            return True
        return bool(set(p1) & set(p2))

    # ------------------------------------------------------------ passes
    def find_duplicates(self, rules: Sequence[RuleLike]) -> list[Conflict]:
        groups: dict[tuple, list[str]] = defaultdict(list)
        for rule in rules:
            key = (
                _code(rule),
                _action(rule),
                tuple(sorted(self._payers(rule))),
                tuple(sorted(self._providers(rule))),
            )
            groups[key].append(rule.rule_id or "")
        out = []
        for key, ids in groups.items():
            if len(ids) > 1:
                out.append(Conflict(
                    id=conflict_id(ConflictType.DUPLICATE, ConflictSeverity.HIGH, key[0], ids),
                    type=ConflictType.DUPLICATE,
                    severity=ConflictSeverity.HIGH,
                    affected_rule_ids=tuple(ids),
                    description=f"{len(ids)} identical rules detected",
                    suggestion="These rules have the same code, action, payer group, and provider group. "
                               "Keep one of them or merge them.",
                ))
        return out

    def find_contradictions(self, rules: Sequence[RuleLike]) -> list[Conflict]:
        by_code: dict[str, dict[str, list[str]]] = defaultdict(lambda: defaultdict(list))
        for rule in rules:
            by_code[_code(rule)][_action(rule)].append(rule.rule_id or "")
        out = []
        for code, by_action in by_code.items():
            if len(by_action) < 2:
                continue
            conflicting = [a for a in by_action if _action_head(a) in self._exclusive]
            if len({_action_head(a) for a in conflicting}) < 2:
                continue
            ids = [rid for a in conflicting for rid in by_action[a]]
            out.append(Conflict(
                id=conflict_id(ConflictType.CONTRADICTION, ConflictSeverity.HIGH, code, ids),
                type=ConflictType.CONTRADICTION,
                severity=ConflictSeverity.HIGH,
                affected_rule_ids=tuple(ids),
                description=f"Conflicting actions for code {code}",
                suggestion=f"Code {code} has conflicting actions: {', '.join(conflicting)}. "
                           "Keep the rule that reflects current policy.",
            ))
        return out

    def find_overlaps(self, rules: Sequence[RuleLike]) -> list[Conflict]:
        out = []
        for i, rule1 in enumerate(rules):
            for rule2 in rules[i + 1:]:
                if rule1.rule_id == rule2.rule_id or _code(rule1) != _code(rule2):
                    continue
                if _action(rule1) == _action(rule2) or not self.payers_intersect(rule1, rule2):
                    continue
                ids = (rule1.rule_id or "", rule2.rule_id or "")
                out.append(Conflict(
                    id=conflict_id(ConflictType.OVERLAP, ConflictSeverity.MEDIUM, _code(rule1), ids),
                    type=ConflictType.OVERLAP,
                    severity=ConflictSeverity.MEDIUM,
                    affected_rule_ids=ids,
                    description=f"Overlapping rules for code {_code(rule1)}",
                    suggestion=f"Rules have overlapping payer groups but different actions "
                               f"({_action(rule1)} vs {_action(rule2)}). Review for consistency.",
                ))
        return out

    def find_broad_rule_shadowing(self, rules: Sequence[RuleLike]) -> list[Conflict]:
        limit = self.config.low_severity_rule_limit
        if limit is not None and len(rules) > limit:
            logger.info("[conflicts] broad-rule pass skipped: %d rules > limit %d", len(rules), limit)
            return []
        out = []
        for broad in rules:
            if not self._is_broad(broad):
                continue
            shadowed = [
                r for r in rules
                if r.rule_id != broad.rule_id
                and _code(r) == _code(broad)
                and self._payers(r)
                and not any(self._is_wild_payer(p) for p in self._payers(r))
                and _action(r) != _action(broad)
            ]
            if not shadowed:
                continue
            ids = (broad.rule_id or "",) + tuple(r.rule_id or "" for r in shadowed)
            out.append(Conflict(
                id=conflict_id(ConflictType.OVERLAP, ConflictSeverity.LOW, _code(broad), ids),
                type=ConflictType.OVERLAP,
                severity=ConflictSeverity.LOW,
                affected_rule_ids=ids,
                description="Broad rule may override specific rules",
                suggestion=f"Rule {broad.rule_id} applies to all payers/providers but specific rules "
                           "exist with different actions.",
            ))
        return out

    def analyze(self, rules: Sequence[RuleLike]) -> list[Conflict]:
        rules = list(rules)
        conflicts = (
            self.find_duplicates(rules)
            + self.find_contradictions(rules)
            + self.find_overlaps(rules)
            + self.find_broad_rule_shadowing(rules)
        )
        logger.info("[conflicts] %d rules analysed, %d conflicts", len(rules), len(conflicts))
        return conflicts


def attach_conflicts(rules: Iterable[RuleLike], conflicts: Iterable[Conflict]) -> dict[str, list[Conflict]]:
    """Conflicts per rule id, for display next to each rule. Not stored on the rules."""
    by_rule: dict[str, list[Conflict]] = {r.rule_id or "": [] for r in rules}
    for conflict in conflicts:
        for rid in conflict.affected_rule_ids:
            if rid in by_rule:
                by_rule[rid].append(conflict)
    return by_rule
