"""
Conflict resolution state machine.

A conflict is either open (returned by the last detector run and not yet
handled) or resolved. ``resolve`` applies one action to the rule set as a
single ``replace_all`` swap, drops the conflict from the open list and appends
an audit record. The open list is not patched afterwards; call ``refresh``
(or let the next ``resolve`` do it) to pick up newly exposed conflicts.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from sop_engine.domain import Conflict, ResolutionAction, Rule
from sop_engine.errors import ConflictNotFoundError, ResolutionError, StaleConflictError
from sop_engine.services.conflict_detector import ConflictDetector
from sop_engine.services.rule_set import RuleSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionRecord:
    conflict_id: str
    action: ResolutionAction
    timestamp: str
    sop_id: str
    affected_rule_ids: tuple[str, ...]
    removed_rule_ids: tuple[str, ...] = ()
    added_rule_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflict_id": self.conflict_id,
            "action": self.action.value,
            "timestamp": self.timestamp,
            "sop_id": self.sop_id,
            "affected_rule_ids": list(self.affected_rule_ids),
            "removed_rule_ids": list(self.removed_rule_ids),
            "added_rule_ids": list(self.added_rule_ids),
        }


@dataclass
class ConflictResolver:
    rule_set: RuleSet
    detector: ConflictDetector = field(default_factory=ConflictDetector)
    history: list[ResolutionRecord] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._open: dict[str, Conflict] = {}
        self._acknowledged: set[str] = set()
        self._fingerprint: str | None = None

    @property
    def open_conflicts(self) -> list[Conflict]:
        return list(self._open.values())

    @property
    def is_stale(self) -> bool:
        return self._fingerprint != self.rule_set.fingerprint()

    def refresh(self) -> list[Conflict]:
        """Re-run the detector over the current rule set. Acknowledged conflicts stay closed."""
        conflicts = self.detector.analyze(self.rule_set.rules)
        self._open = {c.id: c for c in conflicts if c.id not in self._acknowledged}
        self._fingerprint = self.rule_set.fingerprint()
        return self.open_conflicts

    def _pair(self, conflict: Conflict, rule_ids: Sequence[str] | None) -> tuple[str, str]:
        affected = conflict.affected_rule_ids
        if rule_ids is None:
            if len(affected) != 2:
                raise ResolutionError(
                    f"Conflict {conflict.id} affects {len(affected)} rules; choose the two rules to resolve"
                )
            return affected[0], affected[1]
        if len(rule_ids) != 2 or rule_ids[0] == rule_ids[1]:
            raise ResolutionError("Exactly two distinct rule ids are required")
        missing = [rid for rid in rule_ids if rid not in affected]
        if missing:
            raise ResolutionError(f"Rules {', '.join(missing)} are not part of conflict {conflict.id}")
        return rule_ids[0], rule_ids[1]

    def resolve(
        self,
        conflict_id: str,
        action: ResolutionAction | str,
        merged_rule: Rule | None = None,
        rule_ids: Sequence[str] | None = None,
    ) -> RuleSet:
        try:
            action = ResolutionAction(action)
        except ValueError:
            raise ResolutionError(f"Unknown resolution action: {action}") from None

        with self._lock:
            if self._fingerprint is None:
                raise StaleConflictError("No conflict analysis has been run for this rule set")
            if self.is_stale:
                known = conflict_id in self._open
                self.refresh()
                if conflict_id not in self._open:
                    if known:
                        raise StaleConflictError(f"Conflict {conflict_id} no longer exists in the current rule set")
                    raise ConflictNotFoundError(f"Conflict {conflict_id} is not open")
            conflict = self._open.get(conflict_id)
            if conflict is None:
                raise ConflictNotFoundError(f"Conflict {conflict_id} is not open")

            first, second = self._pair(conflict, rule_ids)
            if action == ResolutionAction.MERGE and merged_rule is None:
                raise ResolutionError("merge requires a merged rule")

            removed: tuple[str, ...] = ()
            added: tuple[str, ...] = ()
            if action == ResolutionAction.KEEP_FIRST:
                removed = (second,)
            elif action == ResolutionAction.KEEP_SECOND:
                removed = (first,)
            elif action == ResolutionAction.DELETE_BOTH:
                removed = (first, second)
            elif action == ResolutionAction.MERGE:
                removed = (first, second)
                added = (merged_rule.rule_id,)

            if action == ResolutionAction.KEEP_BOTH:
                self._acknowledged.add(conflict_id)
            else:
                version = self.rule_set.version
                current = list(self.rule_set.rules)
                new_rules: list[Rule] = []
                for rule in current:
                    if rule.rule_id == first and merged_rule is not None and action == ResolutionAction.MERGE:
                        new_rules.append(merged_rule)
                    if rule.rule_id not in removed:
                        new_rules.append(rule)
                self.rule_set.replace_all(new_rules, expected_version=version)

            del self._open[conflict_id]
            record = ResolutionRecord(
                conflict_id=conflict_id,
                action=action,
                timestamp=datetime.now(timezone.utc).isoformat(),
                sop_id=self.rule_set.sop_id,
                affected_rule_ids=conflict.affected_rule_ids,
                removed_rule_ids=removed,
                added_rule_ids=added,
            )
            self.history.append(record)

        logger.info(
            "[resolver] conflict_id=%s action=%s timestamp=%s removed=%s added=%s",
            record.conflict_id, record.action.value, record.timestamp, list(removed), list(added),
        )
        return self.rule_set
