"""
Reverse lookup: infer which registered code group a set of literal codes
belongs to, and fold that back into rules.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence, TypeVar

from sop_engine.domain import CandidateRule, CodeGroup, Rule, TagKind, TagStatus
from sop_engine.engine_config import EngineConfig, load_engine_config
from sop_engine.services.lookup_registry import LookupRepository, RegistrySnapshot
from sop_engine.services.tag_grammar import split_codes

logger = logging.getLogger(__name__)

RuleT = TypeVar("RuleT", Rule, CandidateRule)


@dataclass(frozen=True)
class CodeGroupMatch:
    code_group: CodeGroup
    matched_codes: tuple[str, ...]
    match_percentage: float


@dataclass(frozen=True)
class InferenceResult:
    code_group: str | None
    expanded_codes: tuple[str, ...]
    confidence: float
    reason: str

    @property
    def is_complete(self) -> bool:
        return self.code_group is not None and self.confidence >= 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "code_group": self.code_group,
            "expanded_codes": list(self.expanded_codes),
            "confidence": self.confidence,
            "reason": self.reason,
        }


@dataclass
class Enhancement:
    rule: Any
    changes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class EnhancementSummary:
    rules: list[Any]
    total_rules: int = 0
    rules_enhanced: int = 0
    rules_with_warnings: int = 0
    changes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rules": [r.to_dict() for r in self.rules],
            "summary": {
                "total_rules": self.total_rules,
                "rules_enhanced": self.rules_enhanced,
                "rules_with_warnings": self.rules_with_warnings,
                "changes": list(self.changes),
                "warnings": list(self.warnings),
            },
        }


def _clean_codes(codes: Iterable[str]) -> list[str]:
    """Trimmed literal codes; @group entries are never re-inferred."""
    return [c.strip() for c in codes if c and c.strip() and not c.strip().startswith("@")]


class CodeGroupInferencer:
    def __init__(self, repository: LookupRepository, config: EngineConfig | None = None):
        self.repository = repository
        self.config = config or load_engine_config()

    def _groups(self, snap: RegistrySnapshot) -> list[CodeGroup]:
        return [g for g in snap.tags(TagKind.CODE_GROUP) if g.status != TagStatus.DEPRECATED]

    def find_code_groups_for_codes(self, codes: Sequence[str], snap: RegistrySnapshot | None = None) -> list[CodeGroupMatch]:
        """Every group holding at least one of ``codes``, best share first (stable for ties)."""
        snap = snap or self.repository.snapshot()
        clean = _clean_codes(codes)
        if not clean:
            return []
        matches = []
        for group in self._groups(snap):
            members = set(group.expands_to)
            matched = tuple(c for c in clean if c in members)
            if matched:
                matches.append(CodeGroupMatch(group, matched, len(matched) / len(clean)))
        return sorted(matches, key=lambda m: m.match_percentage, reverse=True)

    def auto_populate_code_group(self, codes: Sequence[str]) -> InferenceResult:
        snap = self.repository.snapshot()
        clean = _clean_codes(codes)
        if not clean:
            return InferenceResult(None, (), 0.0, "No codes provided")

        # first superset wins; no search for a tighter one
        for group in self._groups(snap):
            members = set(group.expands_to)
            if all(c in members for c in clean):
                return InferenceResult(group.tag, group.expands_to, 1.0, "All codes match a single code group")

        matches = self.find_code_groups_for_codes(clean, snap)
        if matches and matches[0].match_percentage >= self.config.inference_min_confidence:
            best = matches[0]
            return InferenceResult(
                best.code_group.tag,
                best.code_group.expands_to,
                best.match_percentage,
                f"{round(best.match_percentage * 100)}% of codes match {best.code_group.tag}",
            )
        return InferenceResult(None, tuple(clean), 0.0, "No matching code group found")

    def enhance_rule_with_code_group(self, rule: RuleT) -> Enhancement:
        """Attach or check ``code_group`` on one rule. Returns a new rule; the input is untouched."""
        out = Enhancement(rule=rule)
        declared = (rule.code_group or "").strip()
        code_field = (rule.code or "").strip()

        if declared:
            snap = self.repository.snapshot()
            group = snap.get(declared, TagKind.CODE_GROUP) or snap.get(f"@{declared.lstrip('@')}", TagKind.CODE_GROUP)
            if group is None:
                out.warnings.append(f"Code group {declared} not found in lookup table")
                return out
            listed = _clean_codes(split_codes(code_field))
            members = set(group.expands_to)
            if not all(c in members for c in listed):
                out.warnings.append(f"Some codes don't match code group {declared}")
            elif listed and len(set(listed)) < len(members):
                out.rule = rule.with_changes(code=",".join(group.expands_to))
                out.changes.append(f"Expanded codes from {declared}")
            return out

        if not code_field or code_field.startswith("@"):
            return out

        listed = _clean_codes(split_codes(code_field))
        result = self.auto_populate_code_group(listed)
        if result.code_group and result.confidence >= self.config.inference_min_confidence:
            if result.is_complete:
                out.rule = rule.with_changes(code_group=result.code_group, code=",".join(result.expanded_codes))
            else:
                out.rule = rule.with_changes(code_group=result.code_group)
                outside = [c for c in listed if c not in set(result.expanded_codes)]
                out.warnings.append(f"Codes not in {result.code_group}: {','.join(outside)}")
            out.changes.append(f"Auto-populated code_group: {result.code_group} ({result.reason})")
        else:
            out.warnings.append(f"Could not find matching code group for codes: {code_field}")
        return out

    def enhance_rules(self, rules: Sequence[RuleT]) -> EnhancementSummary:
        summary = EnhancementSummary(rules=[], total_rules=len(rules))
        for rule in rules:
            result = self.enhance_rule_with_code_group(rule)
            summary.rules.append(result.rule)
            if result.changes:
                summary.rules_enhanced += 1
                summary.changes.append(f"Rule {rule.rule_id}: {', '.join(result.changes)}")
            if result.warnings:
                summary.rules_with_warnings += 1
                summary.warnings.append(f"Rule {rule.rule_id}: {', '.join(result.warnings)}")
        logger.info(
            "[inferencer] enhanced %d/%d rules (%d with warnings)",
            summary.rules_enhanced, summary.total_rules, summary.rules_with_warnings,
        )
        return summary
