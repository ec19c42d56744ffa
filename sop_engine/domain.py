"""
Domain types shared by the registry, matcher, validator and conflict services.

Lookup tags are a tagged union keyed by an explicit ``kind``. Rules come in two
shapes: ``CandidateRule`` (anything an LLM, CSV import or user produced, every
field optional) and ``Rule`` (a candidate that passed validation). Only
``rule_validator.promote`` builds a ``Rule`` from a candidate.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any


class TagKind(str, Enum):
    CODE_GROUP = "code_group"
    PAYER_GROUP = "payer_group"
    PROVIDER_GROUP = "provider_group"
    ACTION_TAG = "action_tag"
    CHART_SECTION = "chart_section"


class TagStatus(str, Enum):
    ACTIVE = "ACTIVE"
    NEEDS_DEFINITION = "NEEDS_DEFINITION"
    PENDING_REVIEW = "PENDING_REVIEW"
    DEPRECATED = "DEPRECATED"


class CreatedBy(str, Enum):
    SYSTEM = "SYSTEM"
    AI = "AI"
    USER = "USER"


class RuleStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    ACTIVE = "active"
    REJECTED = "rejected"
    NEEDS_DEFINITION = "needs_definition"


class ValidationStatus(str, Enum):
    VALID = "valid"
    WARNING = "warning"
    ERROR = "error"


class MatchType(str, Enum):
    EXACT = "EXACT"
    SEMANTIC = "SEMANTIC"
    KEYWORD = "KEYWORD"
    CODE_OVERLAP = "CODE_OVERLAP"
    NONE = "NONE"


class ConflictType(str, Enum):
    DUPLICATE = "duplicate"
    CONTRADICTION = "contradiction"
    OVERLAP = "overlap"


class ConflictSeverity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ResolutionAction(str, Enum):
    KEEP_FIRST = "keep_first"
    KEEP_SECOND = "keep_second"
    KEEP_BOTH = "keep_both"
    MERGE = "merge"
    DELETE_BOTH = "delete_both"


# ---------------------------------------------------------------------------
# Lookup tags
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LookupTag:
    """Fields common to every lookup tag kind."""

    tag: str
    status: TagStatus = TagStatus.ACTIVE
    usage_count: int = 0
    created_by: CreatedBy = CreatedBy.SYSTEM
    created_date: str = ""
    confidence_score: float | None = None
    source_document: str | None = None
    last_used: str | None = None

    kind: TagKind = field(default=TagKind.CODE_GROUP, init=False)

    def match_texts(self) -> list[str]:
        """Canonical free-text strings the tag matcher compares input against."""
        return []

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data


@dataclass(frozen=True)
class CodeGroup(LookupTag):
    expands_to: tuple[str, ...] = ()
    purpose: str = ""
    code_type: str = "procedure"

    kind: TagKind = field(default=TagKind.CODE_GROUP, init=False)

    def match_texts(self) -> list[str]:
        return [self.purpose]

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["expands_to"] = list(self.expands_to)
        return data


@dataclass(frozen=True)
class PayerGroup(LookupTag):
    name: str = ""
    payer_type: str = "other"
    description: str = ""

    kind: TagKind = field(default=TagKind.PAYER_GROUP, init=False)

    def match_texts(self) -> list[str]:
        return [self.name]


@dataclass(frozen=True)
class ProviderGroup(LookupTag):
    name: str = ""
    description: str = ""

    kind: TagKind = field(default=TagKind.PROVIDER_GROUP, init=False)

    def match_texts(self) -> list[str]:
        return [self.name, self.description]


@dataclass(frozen=True)
class ActionTag(LookupTag):
    syntax: str = ""
    description: str = ""
    category: str = "code"

    kind: TagKind = field(default=TagKind.ACTION_TAG, init=False)

    def match_texts(self) -> list[str]:
        return [self.description]


@dataclass(frozen=True)
class ChartSection(LookupTag):
    name: str = ""
    description: str = ""

    kind: TagKind = field(default=TagKind.CHART_SECTION, init=False)

    def match_texts(self) -> list[str]:
        return [self.name, self.description]


TAG_CLASSES: dict[TagKind, type[LookupTag]] = {
    TagKind.CODE_GROUP: CodeGroup,
    TagKind.PAYER_GROUP: PayerGroup,
    TagKind.PROVIDER_GROUP: ProviderGroup,
    TagKind.ACTION_TAG: ActionTag,
    TagKind.CHART_SECTION: ChartSection,
}


def tag_from_dict(kind: TagKind | str, data: dict[str, Any]) -> LookupTag:
    """Build a lookup tag of ``kind`` from a plain dict (YAML, JSON, DB payload).

    Unknown keys are ignored; enum-valued keys accept their string values.
    """
    kind = TagKind(kind)
    cls = TAG_CLASSES[kind]
    allowed = {f.name for f in fields(cls) if f.init}
    kwargs = {k: v for k, v in (data or {}).items() if k in allowed}
    if "status" in kwargs:
        kwargs["status"] = TagStatus(kwargs["status"])
    if "created_by" in kwargs:
        kwargs["created_by"] = CreatedBy(kwargs["created_by"])
    if "expands_to" in kwargs:
        kwargs["expands_to"] = tuple(str(c).strip() for c in kwargs["expands_to"] or ())
    if "usage_count" in kwargs:
        kwargs["usage_count"] = int(kwargs["usage_count"] or 0)
    return cls(**kwargs)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def _join_list(value: Any, sep: str) -> Any:
    """LLM output sometimes carries list-valued groups; fold them into the wire format."""
    if isinstance(value, (list, tuple)):
        return sep.join(str(v).strip() for v in value if str(v).strip())
    return value


@dataclass(frozen=True)
class CandidateRule:
    """A rule as produced by extraction, import or manual entry. Nothing is trusted yet."""

    rule_id: str | None = None
    code: str | None = None
    action: str | None = None
    payer_group: str | None = None
    provider_group: str | None = None
    description: str | None = None
    documentation_trigger: str | None = None
    chart_section: str | None = None
    effective_date: str | None = None
    end_date: str | None = None
    reference: str | None = None
    code_group: str | None = None
    codes_selected: tuple[str, ...] | None = None
    status: str | None = None
    source: str | None = None
    confidence: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CandidateRule":
        allowed = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key not in allowed:
                continue
            if key == "codes_selected":
                if value is None:
                    kwargs[key] = None
                elif isinstance(value, str):
                    kwargs[key] = tuple(c.strip() for c in value.split(",") if c.strip())
                else:
                    kwargs[key] = tuple(str(c).strip() for c in value if str(c).strip())
                continue
            if key in ("payer_group", "provider_group"):
                value = _join_list(value, "|")
            elif key in ("code", "code_group"):
                value = _join_list(value, ",")
            elif key == "action":
                value = _join_list(value, " ")
            elif key == "documentation_trigger":
                value = _join_list(value, ";")
            if key == "confidence":
                try:
                    value = float(value) if value is not None else None
                except (TypeError, ValueError):
                    value = None
            elif value is not None and not isinstance(value, str):
                value = str(value)
            kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data["codes_selected"] is not None:
            data["codes_selected"] = list(data["codes_selected"])
        return data

    def with_changes(self, **changes: Any) -> "CandidateRule":
        return replace(self, **changes)


@dataclass(frozen=True)
class Rule:
    """A validated billing rule. Built by ``rule_validator.promote``."""

    rule_id: str
    code: str
    action: str
    payer_group: str
    provider_group: str
    description: str
    effective_date: str
    documentation_trigger: str = ""
    chart_section: str = ""
    end_date: str = ""
    reference: str = ""
    code_group: str = ""
    codes_selected: tuple[str, ...] = ()
    status: RuleStatus = RuleStatus.PENDING
    validation_status: ValidationStatus = ValidationStatus.VALID
    source: str = "ai"
    confidence: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["codes_selected"] = list(self.codes_selected)
        data["status"] = self.status.value
        data["validation_status"] = self.validation_status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rule":
        """Rehydrate a rule that was validated before it was stored."""
        allowed = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in (data or {}).items() if k in allowed}
        for key in ("documentation_trigger", "chart_section", "end_date", "reference", "code_group"):
            if kwargs.get(key) is None:
                kwargs.pop(key, None)
        kwargs["codes_selected"] = tuple(kwargs.get("codes_selected") or ())
        if "status" in kwargs:
            kwargs["status"] = RuleStatus(kwargs["status"])
        if "validation_status" in kwargs:
            kwargs["validation_status"] = ValidationStatus(kwargs["validation_status"])
        return cls(**kwargs)

    def to_candidate(self) -> CandidateRule:
        return CandidateRule.from_dict(self.to_dict())

    def with_changes(self, **changes: Any) -> "Rule":
        return replace(self, **changes)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str
    severity: str
    value: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {"field": self.field, "message": self.message, "severity": self.severity}
        if self.value is not None:
            data["value"] = self.value
        return data


@dataclass
class ValidationResult:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    needs_definition: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def validation_status(self) -> ValidationStatus:
        if self.errors:
            return ValidationStatus.ERROR
        if self.warnings or self.needs_definition:
            return ValidationStatus.WARNING
        return ValidationStatus.VALID

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "needs_definition": list(self.needs_definition),
        }


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    tag: str
    match_type: MatchType
    confidence: float
    expanded_codes: tuple[str, ...] | None = None

    @classmethod
    def no_match(cls) -> "MatchResult":
        return cls(matched=False, tag="", match_type=MatchType.NONE, confidence=0.0)

    @property
    def is_trusted(self) -> bool:
        """EXACT and SEMANTIC matches can be used as-is; the rest want human confirmation."""
        return self.matched and self.match_type in (MatchType.EXACT, MatchType.SEMANTIC)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "matched": self.matched,
            "tag": self.tag,
            "match_type": self.match_type.value,
            "confidence": self.confidence,
        }
        if self.expanded_codes is not None:
            data["expanded_codes"] = list(self.expanded_codes)
        return data


@dataclass(frozen=True)
class Conflict:
    id: str
    type: ConflictType
    severity: ConflictSeverity
    affected_rule_ids: tuple[str, ...]
    description: str
    suggestion: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "affected_rule_ids": list(self.affected_rule_ids),
            "description": self.description,
            "suggestion": self.suggestion,
        }
