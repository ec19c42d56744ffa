"""
Rule-quality audit: check that the rules built from a document cover it.

The document is scanned for billing codes and ``@TAG`` mentions; each code is
checked against the rules (literal codes plus expanded code-group tags) and
against the registry's code groups. Rules are checked for incomplete code-group
expansion, codes the registry does not know, and descriptions that do not read
like their code group's purpose.

Publishing is blocked when document codes are missing from every rule or when
any rule has an audit error. Mapping errors and context mismatches are
reported but never block.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sop_engine.domain import CodeGroup
from sop_engine.services.lookup_registry import LookupRepository, RegistrySnapshot
from sop_engine.services.tag_grammar import TAG_TOKEN, split_codes, split_pipe_list
from sop_engine.services.tag_matcher import extract_keywords

logger = logging.getLogger(__name__)

# CPT with an optional two-digit modifier (99213-25), or HCPCS (J0585)
DOCUMENT_CODE = re.compile(r"\b(?:(\d{5})(?:-(\d{2}))?|([A-Z]\d{4}))\b")

# How far back to look for a section header
SECTION_LOOKBACK = 20
UNKNOWN_SECTION = "Unknown Section"

# Code mapping statuses
VALID = "valid"
MISSING_IN_RULES = "missing_in_rules"
MISSING_IN_LOOKUP = "missing_in_lookup"
MAPPING_ERROR = "mapping_error"

# Code group statuses
INCOMPLETE = "incomplete"
NOT_FOUND = "not_found"


@dataclass(frozen=True)
class DocumentCode:
    code: str
    code_type: str
    context: str
    section: str
    line_number: int
    modifier: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "code": self.code,
            "type": self.code_type,
            "context": self.context,
            "section": self.section,
            "line_number": self.line_number,
        }
        if self.modifier:
            data["modifier"] = self.modifier
        return data


@dataclass(frozen=True)
class DocumentTagMention:
    tag: str
    context: str
    section: str
    mentioned_codes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "tag": self.tag,
            "context": self.context,
            "section": self.section,
            "mentioned_codes": list(self.mentioned_codes),
        }


@dataclass
class CodeMapping:
    code: str
    in_document: bool
    in_rules: bool
    in_lookup: bool
    code_group: str | None
    rules_using: list[str]
    context: str
    status: str
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "in_document": self.in_document,
            "in_rules": self.in_rules,
            "in_lookup": self.in_lookup,
            "code_group": self.code_group,
            "rules_using": list(self.rules_using),
            "context": self.context,
            "status": self.status,
            "issues": list(self.issues),
        }


@dataclass
class CodeGroupCoverage:
    tag: str
    exists: bool
    codes_in_lookup: list[str]
    codes_in_rules: list[str]
    missing_codes: list[str]
    extra_codes: list[str]
    rules_using: list[str]
    status: str
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tag": self.tag,
            "exists": self.exists,
            "codes_in_lookup": list(self.codes_in_lookup),
            "codes_in_rules": list(self.codes_in_rules),
            "missing_codes": list(self.missing_codes),
            "extra_codes": list(self.extra_codes),
            "rules_using": list(self.rules_using),
            "status": self.status,
            "issues": list(self.issues),
        }


@dataclass(frozen=True)
class AuditIssue:
    field: str
    message: str
    suggestion: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "message": self.message, "suggestion": self.suggestion}


@dataclass
class RuleAudit:
    rule_id: str
    errors: list[AuditIssue] = field(default_factory=list)
    warnings: list[AuditIssue] = field(default_factory=list)
    all_codes_expanded: bool = True
    all_codes_in_lookup: bool = True
    code_group_exists: bool = True
    description_matches_context: bool = True

    @property
    def status(self) -> str:
        if self.errors:
            return "error"
        if self.warnings:
            return "warning"
        return "valid"

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "status": self.status,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "checks": {
                "all_codes_expanded": self.all_codes_expanded,
                "all_codes_in_lookup": self.all_codes_in_lookup,
                "code_group_exists": self.code_group_exists,
                "description_matches_context": self.description_matches_context,
            },
        }


@dataclass
class AuditReport:
    document_name: str
    processed_at: str
    document_codes: list[DocumentCode]
    tag_mentions: list[DocumentTagMention]
    code_mappings: list[CodeMapping]
    code_groups: list[CodeGroupCoverage]
    rule_audits: list[RuleAudit]
    total_rules: int
    total_rule_codes: int
    recommendations: list[str] = field(default_factory=list)
    blocking_issues: list[str] = field(default_factory=list)

    @property
    def can_publish(self) -> bool:
        return not self.blocking_issues

    @property
    def missing_codes(self) -> list[CodeMapping]:
        return [m for m in self.code_mappings if m.status == MISSING_IN_RULES]

    @property
    def mapping_errors(self) -> list[CodeMapping]:
        return [m for m in self.code_mappings if m.status in (MAPPING_ERROR, MISSING_IN_LOOKUP)]

    @property
    def context_mismatches(self) -> list[RuleAudit]:
        return [r for r in self.rule_audits if not r.description_matches_context]

    def summary(self) -> dict[str, int]:
        return {
            "codes_in_document": len({c.code for c in self.document_codes}),
            "tags_in_document": len({t.tag for t in self.tag_mentions}),
            "rules": self.total_rules,
            "codes_in_rules": self.total_rule_codes,
            "missing_codes": len(self.missing_codes),
            "mapping_errors": len(self.mapping_errors),
            "context_mismatches": len(self.context_mismatches),
            "valid_rules": sum(1 for r in self.rule_audits if r.status == "valid"),
            "rules_with_warnings": sum(1 for r in self.rule_audits if r.status == "warning"),
            "rules_with_errors": sum(1 for r in self.rule_audits if r.status == "error"),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_name": self.document_name,
            "processed_at": self.processed_at,
            "summary": self.summary(),
            "document_codes": [c.to_dict() for c in self.document_codes],
            "tag_mentions": [t.to_dict() for t in self.tag_mentions],
            "code_mappings": [m.to_dict() for m in self.code_mappings],
            "code_groups": [g.to_dict() for g in self.code_groups],
            "rules": [r.to_dict() for r in self.rule_audits],
            "missing_codes": [m.code for m in self.missing_codes],
            "recommendations": list(self.recommendations),
            "can_publish": self.can_publish,
            "blocking_issues": list(self.blocking_issues),
        }


def code_type(code: str) -> str:
    """Rough CPT range classification; HCPCS level II codes are supplies/drugs."""
    if not code.isdigit():
        return "hcpcs"
    value = int(code)
    if 10000 <= value <= 69999 or 99000 <= value <= 99999:
        return "procedure"
    if 70000 <= value <= 79999:
        return "radiology"
    return "unknown"


def _is_header(line: str) -> bool:
    if not line or len(line) >= 100:
        return False
    if line.endswith(":"):
        return True
    return any(ch.isalpha() for ch in line) and line == line.upper()


def find_section(lines: Sequence[str], index: int) -> str:
    """Closest header line above ``index`` (all caps, or ending with a colon)."""
    for i in range(index - 1, max(index - 1 - SECTION_LOOKBACK, -1), -1):
        candidate = lines[i].strip()
        if _is_header(candidate):
            return candidate.rstrip(":").strip()
    return UNKNOWN_SECTION


def scan_document_codes(document_text: str) -> list[DocumentCode]:
    """Every billing code occurrence, in document order. Modifiers stay attached to their code."""
    lines = (document_text or "").split("\n")
    found: list[DocumentCode] = []
    for index, line in enumerate(lines):
        for m in DOCUMENT_CODE.finditer(line):
            code = m.group(1) or m.group(3)
            found.append(DocumentCode(
                code=code,
                code_type=code_type(code),
                context=line.strip(),
                section=find_section(lines, index),
                line_number=index + 1,
                modifier=m.group(2),
            ))
    return found


def _rule_values(rule: Any, name: str) -> str:
    return (getattr(rule, name, None) or "").strip()


def _rule_code_groups(rule: Any) -> list[str]:
    """Code-group tags named by a rule: its code_group field plus any @group in the code field."""
    out: dict[str, None] = {}
    for part in split_pipe_list(_rule_values(rule, "code_group")):
        for tag in split_codes(part):
            out.setdefault(tag, None)
    for entry in split_codes(_rule_values(rule, "code")):
        if entry.startswith("@"):
            out.setdefault(entry, None)
    return list(out)


class RuleAuditor:
    def __init__(self, repository: LookupRepository):
        self.repository = repository

    # ------------------------------------------------------------ document scan
    def scan_tag_mentions(self, document_text: str, snap: RegistrySnapshot | None = None) -> list[DocumentTagMention]:
        """Inline @TAG tokens plus code groups whose purpose is quoted in the text."""
        snap = snap or self.repository.snapshot()
        lines = (document_text or "").split("\n")
        mentions: list[DocumentTagMention] = []
        for index, line in enumerate(lines):
            for token in TAG_TOKEN.findall(line):
                mentions.append(DocumentTagMention(tag=token, context=line.strip(), section=find_section(lines, index)))

        lowered = [line.lower() for line in lines]
        for group in snap.code_groups:
            purpose = (group.purpose or "").lower().strip()
            if not purpose:
                continue
            index = next((i for i, line in enumerate(lowered) if purpose in line), None)
            if index is None:
                continue
            mentions.append(DocumentTagMention(
                tag=group.tag,
                context=lines[index].strip(),
                section=find_section(lines, index),
                mentioned_codes=tuple(group.expands_to),
            ))
        return mentions

    # ------------------------------------------------------------ helpers
    @staticmethod
    def _group_for_code(snap: RegistrySnapshot, code: str) -> CodeGroup | None:
        return next((g for g in snap.code_groups if code in g.expands_to), None)

    @staticmethod
    def _rule_codes(snap: RegistrySnapshot, rule: Any) -> list[str]:
        """Literal codes of a rule with code-group tags expanded."""
        out: dict[str, None] = {}
        for entry in split_codes(_rule_values(rule, "code")):
            if entry.startswith("@"):
                for code in snap.expand_code_group(entry):
                    out.setdefault(code, None)
            else:
                out.setdefault(entry, None)
        return list(out)

    # ------------------------------------------------------------ checks
    def map_codes(
        self,
        snap: RegistrySnapshot,
        document_codes: Sequence[DocumentCode],
        rules: Sequence[Any],
    ) -> list[CodeMapping]:
        code_to_rules: dict[str, list[str]] = {}
        for rule in rules:
            for code in self._rule_codes(snap, rule):
                code_to_rules.setdefault(code, []).append(_rule_values(rule, "rule_id"))

        mappings: list[CodeMapping] = []
        seen: set[str] = set()
        for doc_code in document_codes:
            code = doc_code.code
            if code in seen:
                continue
            seen.add(code)
            group = self._group_for_code(snap, code)
            in_rules = code in code_to_rules
            issues: list[str] = []
            status = VALID
            if not in_rules:
                issues.append(f"Code {code} found in document but not in any rule")
                status = MISSING_IN_RULES
            if group is None:
                issues.append(f"Code {code} not found in lookup table")
                if in_rules:
                    issues.append(f"Code {code} in rules but not mapped to any code group")
                    status = MAPPING_ERROR
                elif status == VALID:
                    status = MISSING_IN_LOOKUP
            mappings.append(CodeMapping(
                code=code,
                in_document=True,
                in_rules=in_rules,
                in_lookup=group is not None,
                code_group=group.tag if group else None,
                rules_using=code_to_rules.get(code, []),
                context=doc_code.context,
                status=status,
                issues=issues,
            ))

        for code, rule_ids in code_to_rules.items():
            if code in seen:
                continue
            group = self._group_for_code(snap, code)
            mappings.append(CodeMapping(
                code=code,
                in_document=False,
                in_rules=True,
                in_lookup=group is not None,
                code_group=group.tag if group else None,
                rules_using=rule_ids,
                context="Not found in document (may come from code group expansion)",
                status=VALID if group else MISSING_IN_LOOKUP,
                issues=[] if group else [f"Code {code} in rules but not in lookup table"],
            ))
        return mappings

    def check_code_groups(self, snap: RegistrySnapshot, rules: Sequence[Any]) -> list[CodeGroupCoverage]:
        rules_by_group: dict[str, list[str]] = {}
        codes_by_group: dict[str, dict[str, None]] = {}
        for rule in rules:
            codes = self._rule_codes(snap, rule)
            for group in _rule_code_groups(rule):
                rules_by_group.setdefault(group, []).append(_rule_values(rule, "rule_id"))
                bucket = codes_by_group.setdefault(group, {})
                for code in codes:
                    bucket.setdefault(code, None)

        out: list[CodeGroupCoverage] = []
        for tag, rule_ids in rules_by_group.items():
            entry = snap.get(tag)
            in_rules = list(codes_by_group.get(tag, {}))
            if not isinstance(entry, CodeGroup):
                out.append(CodeGroupCoverage(
                    tag=tag, exists=False, codes_in_lookup=[], codes_in_rules=in_rules,
                    missing_codes=[], extra_codes=[], rules_using=rule_ids, status=NOT_FOUND,
                    issues=[f"Code group {tag} not found in lookup table"],
                ))
                continue
            members = list(entry.expands_to)
            missing = [c for c in members if c not in in_rules]
            extra = [c for c in in_rules if c not in members]
            issues: list[str] = []
            status = VALID
            if missing:
                issues.append(f"Code group {tag} missing {len(missing)} codes in rules: {', '.join(missing)}")
                status = INCOMPLETE
            if extra:
                issues.append(f"Code group {tag} has {len(extra)} extra codes not in lookup table: {', '.join(extra)}")
                status = MAPPING_ERROR
            out.append(CodeGroupCoverage(
                tag=tag, exists=True, codes_in_lookup=members, codes_in_rules=in_rules,
                missing_codes=missing, extra_codes=extra, rules_using=rule_ids, status=status, issues=issues,
            ))
        return out

    def audit_rule(self, snap: RegistrySnapshot, rule: Any) -> RuleAudit:
        audit = RuleAudit(rule_id=_rule_values(rule, "rule_id"))
        codes = self._rule_codes(snap, rule)
        context = " ".join(
            _rule_values(rule, name) for name in ("description", "documentation_trigger", "reference")
        )
        context_words = set(extract_keywords(context))

        for tag in _rule_code_groups(rule):
            entry = snap.get(tag)
            if not isinstance(entry, CodeGroup):
                audit.code_group_exists = False
                audit.errors.append(AuditIssue(
                    "code_group",
                    f"Code group {tag} not found in lookup table",
                    f"Add {tag} to the lookup table or use an existing code group",
                ))
                continue
            missing = [c for c in entry.expands_to if c not in codes]
            if missing:
                audit.all_codes_expanded = False
                audit.errors.append(AuditIssue(
                    "code",
                    f"Code group {tag} not fully expanded. Missing: {', '.join(missing)}",
                    "Add the missing codes to the code field",
                ))
            purpose_words = set(extract_keywords(entry.purpose or ""))
            if purpose_words and tag not in context and not (purpose_words & context_words):
                audit.description_matches_context = False
                audit.warnings.append(AuditIssue(
                    "description",
                    f"Description may not match code group {tag} context",
                    f"Verify the description aligns with: {entry.purpose}",
                ))

        for code in codes:
            if self._group_for_code(snap, code) is None:
                audit.all_codes_in_lookup = False
                audit.warnings.append(AuditIssue(
                    "code",
                    f"Code {code} not found in lookup table",
                    f"Add {code} to the appropriate code group",
                ))
        return audit

    # ------------------------------------------------------------ report
    def generate_audit_report(
        self,
        document_text: str,
        rules: Iterable[Any],
        document_name: str = "",
    ) -> AuditReport:
        rules = list(rules)
        snap = self.repository.snapshot()
        document_codes = scan_document_codes(document_text)
        report = AuditReport(
            document_name=document_name,
            processed_at=datetime.now(timezone.utc).isoformat(),
            document_codes=document_codes,
            tag_mentions=self.scan_tag_mentions(document_text, snap),
            code_mappings=self.map_codes(snap, document_codes, rules),
            code_groups=self.check_code_groups(snap, rules),
            rule_audits=[self.audit_rule(snap, rule) for rule in rules],
            total_rules=len(rules),
            total_rule_codes=len({c for rule in rules for c in self._rule_codes(snap, rule)}),
        )

        summary = report.summary()
        if summary["missing_codes"]:
            report.blocking_issues.append(f"{summary['missing_codes']} codes from document not present in rules")
            report.recommendations.append(f"Review and add {summary['missing_codes']} missing codes to rules")
        if summary["rules_with_errors"]:
            report.blocking_issues.append(f"{summary['rules_with_errors']} rules have critical errors")
        if summary["mapping_errors"]:
            report.recommendations.append(f"Fix {summary['mapping_errors']} code mapping errors in lookup table")
        if summary["context_mismatches"]:
            report.recommendations.append(f"Review {summary['context_mismatches']} rules with context mismatches")
        if any(g.status == INCOMPLETE for g in report.code_groups):
            report.recommendations.append("Ensure all code groups are fully expanded in rules")

        logger.info(
            "[audit] %s: %d document codes, %d missing, %d rule errors, can_publish=%s",
            document_name or "<document>", summary["codes_in_document"], summary["missing_codes"],
            summary["rules_with_errors"], report.can_publish,
        )
        return report


def generate_audit_report(
    document_text: str,
    rules: Iterable[Any],
    repository: LookupRepository,
    document_name: str = "",
) -> AuditReport:
    return RuleAuditor(repository).generate_audit_report(document_text, rules, document_name)
