"""
Strict rule validation against the lookup registry.

``validate`` never raises for bad data. Problems come back as a
``ValidationResult``:

- errors block the rule (it stays out of the active rule set),
- warnings flag it but leave it usable,
- ``needs_definition`` lists referenced tags that are not registered, so the
  caller can offer to create them.

``promote`` is the only way to turn a ``CandidateRule`` into a ``Rule``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Union

from sop_engine.domain import (
    CandidateRule,
    Rule,
    RuleStatus,
    TagKind,
    TagStatus,
    ValidationIssue,
    ValidationResult,
)
from sop_engine.errors import CandidatePromotionError
from sop_engine.services.lookup_registry import LookupRepository, RegistrySnapshot
from sop_engine.services.tag_grammar import (
    find_tags,
    is_action_expression,
    is_action_verb,
    is_iso_date,
    is_literal_code,
    is_rule_id,
    parse_actions,
    parse_iso_date,
    requires_codes_selected,
    split_codes,
    split_pipe_list,
    split_sentences,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "rule_id",
    "code",
    "action",
    "payer_group",
    "provider_group",
    "description",
    "effective_date",
)

RuleInput = Union[CandidateRule, Rule, Mapping[str, Any]]


def as_candidate(rule: RuleInput) -> CandidateRule:
    if isinstance(rule, CandidateRule):
        return rule
    if isinstance(rule, Rule):
        return rule.to_candidate()
    return CandidateRule.from_dict(dict(rule))


@dataclass
class InvalidRule:
    rule: CandidateRule
    validation: ValidationResult

    def to_dict(self) -> dict[str, Any]:
        return {"rule": self.rule.to_dict(), "validation": self.validation.to_dict()}


@dataclass
class BatchValidation:
    valid_rules: list[CandidateRule] = field(default_factory=list)
    invalid_rules: list[InvalidRule] = field(default_factory=list)
    all_needs_definition: list[str] = field(default_factory=list)
    results: list[ValidationResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid_rules": [r.to_dict() for r in self.valid_rules],
            "invalid_rules": [r.to_dict() for r in self.invalid_rules],
            "all_needs_definition": list(self.all_needs_definition),
        }


class _Collector:
    """Accumulates issues for one rule; needs_definition keeps first-seen order."""

    def __init__(self) -> None:
        self.result = ValidationResult()

    def error(self, field_name: str, message: str, value: str | None = None) -> None:
        self.result.errors.append(ValidationIssue(field_name, message, "error", value))

    def warning(self, field_name: str, message: str, value: str | None = None) -> None:
        self.result.warnings.append(ValidationIssue(field_name, message, "warning", value))

    def needs(self, tag: str) -> None:
        if tag not in self.result.needs_definition:
            self.result.needs_definition.append(tag)


class RuleValidator:
    def __init__(self, repository: LookupRepository):
        self.repository = repository

    # ------------------------------------------------------------ public API
    def validate(self, rule: RuleInput, snapshot: RegistrySnapshot | None = None) -> ValidationResult:
        snap = snapshot or self.repository.snapshot()
        candidate = as_candidate(rule)
        c = _Collector()

        self._required_fields(candidate, c)
        self._rule_id(candidate.rule_id, c)
        self._description(candidate.description, snap, c)
        self._code(candidate.code, snap, c)
        self._group_list("payer_group", "Payer group", candidate.payer_group, TagKind.PAYER_GROUP, snap, c)
        self._group_list("provider_group", "Provider group", candidate.provider_group, TagKind.PROVIDER_GROUP, snap, c)
        self._action(candidate.action, snap, c)
        self._chart_section(candidate.chart_section, snap, c)
        self._codes_selected(candidate, c)
        self._dates(candidate.effective_date, candidate.end_date, c)
        self._recommended(candidate, c)
        self._tag_lifecycle(candidate, snap, c)

        logger.debug(
            "[validator] %s: %d errors, %d warnings, needs_definition=%s",
            candidate.rule_id, len(c.result.errors), len(c.result.warnings), c.result.needs_definition,
        )
        return c.result

    def validate_batch(self, rules: Iterable[RuleInput]) -> BatchValidation:
        """Partition candidates into valid / invalid against one registry snapshot."""
        snap = self.repository.snapshot()
        batch = BatchValidation()
        for rule in rules:
            candidate = as_candidate(rule)
            validation = self.validate(candidate, snap)
            batch.results.append(validation)
            if validation.is_valid:
                batch.valid_rules.append(candidate)
            else:
                batch.invalid_rules.append(InvalidRule(candidate, validation))
            for tag in validation.needs_definition:
                if tag not in batch.all_needs_definition:
                    batch.all_needs_definition.append(tag)
        logger.info(
            "[validator] batch: %d valid, %d invalid, %d tags need definition",
            len(batch.valid_rules), len(batch.invalid_rules), len(batch.all_needs_definition),
        )
        return batch

    def promote(self, rule: RuleInput, snapshot: RegistrySnapshot | None = None) -> Rule:
        """Validate and build a ``Rule``. Raises ``CandidatePromotionError`` on any error."""
        candidate = as_candidate(rule)
        validation = self.validate(candidate, snapshot)
        if not validation.is_valid:
            fields_in_error = sorted({e.field for e in validation.errors})
            raise CandidatePromotionError(
                f"Rule {candidate.rule_id or '<no id>'} failed validation: {', '.join(fields_in_error)}",
                validation=validation,
            )

        try:
            status = RuleStatus(candidate.status) if candidate.status else RuleStatus.PENDING
        except ValueError:
            status = RuleStatus.PENDING
        if validation.needs_definition and status == RuleStatus.PENDING:
            status = RuleStatus.NEEDS_DEFINITION

        return Rule(
            rule_id=candidate.rule_id,
            code=candidate.code.strip(),
            action=candidate.action.strip(),
            payer_group=candidate.payer_group.strip(),
            provider_group=candidate.provider_group.strip(),
            description=candidate.description.strip(),
            effective_date=candidate.effective_date,
            documentation_trigger=candidate.documentation_trigger or "",
            chart_section=candidate.chart_section or "",
            end_date=candidate.end_date or "",
            reference=candidate.reference or "",
            code_group=candidate.code_group or "",
            codes_selected=tuple(candidate.codes_selected or ()),
            status=status,
            validation_status=validation.validation_status,
            source=candidate.source or "ai",
            confidence=candidate.confidence,
        )

    # ------------------------------------------------------------ checks
    def _required_fields(self, rule: CandidateRule, c: _Collector) -> None:
        for name in REQUIRED_FIELDS:
            value = getattr(rule, name)
            if value is None or not str(value).strip():
                c.error(name, f"{name} is required")

    def _rule_id(self, rule_id: str | None, c: _Collector) -> None:
        if not rule_id:
            return
        if not is_rule_id(rule_id):
            c.error(
                "rule_id",
                "Rule ID must follow format: PREFIX-CATEGORY-#### (e.g., AU-MOD25-0001)",
                rule_id,
            )

    def _description(self, description: str | None, snap: RegistrySnapshot, c: _Collector) -> None:
        if not description or not description.strip():
            return
        if len(split_sentences(description)) != 1:
            c.error("description", "Description must be a single sentence", description)
        if not description.strip().endswith("."):
            c.error("description", "Description must end with a period", description)

        tags = find_tags(description)
        if not tags:
            c.warning("description", "Description should contain inline @tags for clarity", description)
        for tag in tags:
            if not snap.has(tag):
                c.warning("description", f"Unknown @tag: {tag}. Verify spelling or add to lookup tables", tag)
                c.needs(tag)

    def _code(self, code: str | None, snap: RegistrySnapshot, c: _Collector) -> None:
        if not code or not code.strip():
            return
        code = code.strip()
        if is_action_expression(code):
            c.error("code", "Code field must contain ONLY codes or a code group tag, not actions", code)
            return
        if code.startswith("@"):
            if not snap.has(code, TagKind.CODE_GROUP):
                c.error("code", f"Code group {code} not found in lookup tables. Needs definition.", code)
                c.needs(code)
            return
        for entry in split_codes(code):
            if not is_literal_code(entry):
                c.error("code", f"Invalid code format: {entry}. Must be 5-digit CPT or HCPCS (letter + 4 digits)", entry)

    def _group_list(
        self,
        field_name: str,
        label: str,
        value: str | None,
        kind: TagKind,
        snap: RegistrySnapshot,
        c: _Collector,
    ) -> None:
        for entry in split_pipe_list(value):
            if entry.startswith("@") and not snap.has(entry, kind):
                c.error(field_name, f"{label} {entry} not found in lookup tables. Needs definition.", entry)
                c.needs(entry)

    def _action(self, action: str | None, snap: RegistrySnapshot, c: _Collector) -> None:
        if not action or not action.strip():
            return
        exprs = parse_actions(action)
        for expr in exprs:
            if not snap.has(expr.tag, TagKind.ACTION_TAG):
                c.error("action", f"Action tag {expr.tag} not found in lookup tables. Needs definition.", expr.tag)
                c.needs(expr.tag)
        if not any(is_action_verb(expr.verb) for expr in exprs):
            c.error("action", "Action must contain valid action tag (@ADD, @REMOVE, @SWAP, etc.)", action)

    def _chart_section(self, section: str | None, snap: RegistrySnapshot, c: _Collector) -> None:
        if not section or not section.strip():
            return
        section = section.strip()
        if not snap.has(section, TagKind.CHART_SECTION):
            c.error("chart_section", f"Chart section {section} not found in lookup tables. Needs definition.", section)
            c.needs(section)

    def _codes_selected(self, rule: CandidateRule, c: _Collector) -> None:
        if requires_codes_selected(rule.action) and not rule.codes_selected:
            c.error("codes_selected", "codes_selected is required for SWAP/CONDITIONAL actions")

    def _dates(self, effective: str | None, end: str | None, c: _Collector) -> None:
        effective = (effective or "").strip()
        end = (end or "").strip()
        start_date = end_date = None
        if effective:
            if not is_iso_date(effective):
                c.error("effective_date", "Effective date must be in YYYY-MM-DD format", effective)
            else:
                start_date = parse_iso_date(effective)
                if start_date is None:
                    c.error("effective_date", "Effective date is not a valid calendar date", effective)
        if end:
            if not is_iso_date(end):
                c.error("end_date", "End date must be in YYYY-MM-DD format or empty", end)
            else:
                end_date = parse_iso_date(end)
                if end_date is None:
                    c.error("end_date", "End date is not a valid calendar date", end)
        if start_date and end_date and end_date <= start_date:
            c.error("end_date", "End date must be after effective date", end)

    def _recommended(self, rule: CandidateRule, c: _Collector) -> None:
        if not (rule.documentation_trigger or "").strip():
            c.warning("documentation_trigger", "Documentation trigger is recommended for rule clarity")
        if not (rule.reference or "").strip():
            c.warning("reference", "Reference to source document is recommended")

    def _tag_lifecycle(self, rule: CandidateRule, snap: RegistrySnapshot, c: _Collector) -> None:
        """Registered tags that are not yet ACTIVE, or retired, are flagged but not blocking."""
        # tag -> first rule field it appears in
        referenced: dict[str, str] = {}
        for field_name in ("code", "payer_group", "provider_group", "action", "description"):
            for tag in find_tags(getattr(rule, field_name)):
                referenced.setdefault(tag, field_name)
        if rule.chart_section and rule.chart_section.strip():
            referenced.setdefault(rule.chart_section.strip(), "chart_section")
        for tag, field_name in referenced.items():
            found = snap.get(tag)
            if found is None:
                continue
            if found.status == TagStatus.DEPRECATED:
                c.warning(field_name, f"Tag {tag} is deprecated", tag)
            elif found.status in (TagStatus.NEEDS_DEFINITION, TagStatus.PENDING_REVIEW):
                c.warning(field_name, f"Tag {tag} is {found.status.value} and not yet approved", tag)
