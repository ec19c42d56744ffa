"""
RuleSet: the validated rules of one SOP.

Every mutation keeps the registry usage counts in step with the rules that
reference each tag, and bumps ``version`` so stale conflict lists can be
detected. ``replace_all`` swaps the whole set in one step.
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections import Counter
from typing import Iterable, Iterator

from sop_engine.domain import Rule, RuleStatus
from sop_engine.errors import DuplicateRuleError, RuleNotFoundError, StaleConflictError
from sop_engine.services.lookup_registry import LookupRegistry
from sop_engine.services.tag_grammar import find_tags

logger = logging.getLogger(__name__)

SOP_DRAFT = "draft"
SOP_ACTIVE = "active"


def referenced_tags(rule: Rule) -> list[str]:
    """Registry tags a rule points at, each once."""
    seen: dict[str, None] = {}
    for value in (rule.code, rule.action, rule.payer_group, rule.provider_group, rule.description, rule.code_group):
        for tag in find_tags(value):
            seen.setdefault(tag, None)
    if rule.chart_section:
        seen.setdefault(rule.chart_section.strip(), None)
    return list(seen)


class RuleSet:
    def __init__(self, sop_id: str, registry: LookupRegistry | None = None, rules: Iterable[Rule] = ()):
        self.sop_id = sop_id
        self.registry = registry
        self._lock = threading.RLock()
        self._rules: dict[str, Rule] = {}
        self._rejection_reasons: dict[str, str] = {}
        self.version = 0
        for rule in rules:
            self.add(rule)

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self.rules)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    @property
    def rules(self) -> tuple[Rule, ...]:
        return tuple(self._rules.values())

    @property
    def rule_ids(self) -> list[str]:
        return list(self._rules)

    @property
    def sop_status(self) -> str:
        """An SOP becomes active once any of its rules is approved."""
        if any(r.status in (RuleStatus.APPROVED, RuleStatus.ACTIVE) for r in self._rules.values()):
            return SOP_ACTIVE
        return SOP_DRAFT

    # ------------------------------------------------------------ usage counts
    def _count(self, rule: Rule, delta: int) -> None:
        if self.registry is None:
            return
        for tag in referenced_tags(rule):
            if delta > 0:
                self.registry.increment_usage(tag)
            else:
                self.registry.decrement_usage(tag)

    def tag_usage(self) -> Counter:
        counts: Counter = Counter()
        for rule in self._rules.values():
            counts.update(referenced_tags(rule))
        return counts

    # ------------------------------------------------------------ mutations
    def get(self, rule_id: str) -> Rule:
        try:
            return self._rules[rule_id]
        except KeyError:
            raise RuleNotFoundError(f"Rule {rule_id} not found in SOP {self.sop_id}") from None

    def add(self, rule: Rule) -> Rule:
        with self._lock:
            if rule.rule_id in self._rules:
                raise DuplicateRuleError(f"Rule {rule.rule_id} already exists in SOP {self.sop_id}")
            self._rules[rule.rule_id] = rule
            self._count(rule, +1)
            self.version += 1
        logger.debug("[rules] %s: added %s", self.sop_id, rule.rule_id)
        return rule

    def add_all(self, rules: Iterable[Rule]) -> list[Rule]:
        """Add every rule or none. A repeated id, within the batch or already in the SOP, adds nothing."""
        batch = list(rules)
        with self._lock:
            seen: set[str] = set()
            for rule in batch:
                if rule.rule_id in self._rules:
                    raise DuplicateRuleError(f"Rule {rule.rule_id} already exists in SOP {self.sop_id}")
                if rule.rule_id in seen:
                    raise DuplicateRuleError(f"Rule {rule.rule_id} appears twice in the batch")
                seen.add(rule.rule_id)
            for rule in batch:
                self._rules[rule.rule_id] = rule
                self._count(rule, +1)
            if batch:
                self.version += 1
        logger.debug("[rules] %s: added %d rules", self.sop_id, len(batch))
        return batch

    def remove(self, rule_id: str) -> Rule:
        with self._lock:
            rule = self.get(rule_id)
            del self._rules[rule_id]
            self._rejection_reasons.pop(rule_id, None)
            self._count(rule, -1)
            self.version += 1
        logger.debug("[rules] %s: removed %s", self.sop_id, rule_id)
        return rule

    def _update(self, rule: Rule) -> Rule:
        with self._lock:
            old = self.get(rule.rule_id)
            self._rules[rule.rule_id] = rule
            if referenced_tags(old) != referenced_tags(rule):
                self._count(old, -1)
                self._count(rule, +1)
            self.version += 1
        return rule

    def replace_all(self, rules: Iterable[Rule], expected_version: int | None = None) -> int:
        """Swap in a whole new rule list. Returns the new version.

        With ``expected_version`` the swap is refused when another writer got
        there first.
        """
        new_rules: dict[str, Rule] = {}
        for rule in rules:
            if rule.rule_id in new_rules:
                raise DuplicateRuleError(f"Rule {rule.rule_id} appears twice in replacement set")
            new_rules[rule.rule_id] = rule
        with self._lock:
            if expected_version is not None and expected_version != self.version:
                raise StaleConflictError(
                    f"SOP {self.sop_id} changed (version {self.version}, expected {expected_version})"
                )
            old_rules = self._rules
            for rid, old in old_rules.items():
                if new_rules.get(rid) != old:
                    self._count(old, -1)
            for rid, new in new_rules.items():
                if old_rules.get(rid) != new:
                    self._count(new, +1)
            self._rules = new_rules
            self._rejection_reasons = {k: v for k, v in self._rejection_reasons.items() if k in new_rules}
            self.version += 1
            version = self.version
        logger.info("[rules] %s: replaced rule set (%d -> %d rules, v%d)", self.sop_id, len(old_rules), len(new_rules), version)
        return version

    def approve(self, rule_id: str) -> Rule:
        rule = self._update(self.get(rule_id).with_changes(status=RuleStatus.APPROVED))
        self._rejection_reasons.pop(rule_id, None)
        logger.info("[rules] %s: approved %s (SOP %s)", self.sop_id, rule_id, self.sop_status)
        return rule

    def reject(self, rule_id: str, reason: str = "") -> Rule:
        rule = self._update(self.get(rule_id).with_changes(status=RuleStatus.REJECTED))
        self._rejection_reasons[rule_id] = reason
        logger.info("[rules] %s: rejected %s: %s", self.sop_id, rule_id, reason or "(no reason)")
        return rule

    def rejection_reason(self, rule_id: str) -> str | None:
        return self._rejection_reasons.get(rule_id)

    def purge_rejected(self) -> list[Rule]:
        with self._lock:
            rejected = [r for r in self._rules.values() if r.status == RuleStatus.REJECTED]
            if rejected:
                self.replace_all([r for r in self._rules.values() if r.status != RuleStatus.REJECTED])
        return rejected

    def fingerprint(self) -> str:
        """sha256 over the rule payloads, independent of insertion order."""
        payload = [self._rules[rid].to_dict() for rid in sorted(self._rules)]
        blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return {
            "sop_id": self.sop_id,
            "status": self.sop_status,
            "version": self.version,
            "rules": [r.to_dict() for r in self._rules.values()],
        }
