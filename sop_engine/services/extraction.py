"""Extraction service: document text -> candidate rules -> validated rule set."""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sop_engine.domain import CandidateRule, Conflict, Rule, TagKind
from sop_engine.errors import (
    CandidatePromotionError,
    ConfigurationError,
    DuplicateRuleError,
    DuplicateTagError,
    ExtractionError,
    classify_error,
)
from sop_engine.services.code_group_inferencer import CodeGroupInferencer, EnhancementSummary
from sop_engine.services.conflict_detector import ConflictDetector
from sop_engine.services.llm_provider import LLMProvider, get_llm_provider
from sop_engine.services.lookup_registry import LookupRegistry, LookupRepository
from sop_engine.services.rule_audit import AuditReport, RuleAuditor
from sop_engine.services.rule_set import RuleSet
from sop_engine.services.rule_validator import InvalidRule, RuleValidator
from sop_engine.services.utils import parse_json_response

logger = logging.getLogger(__name__)


EXTRACTION_PROMPT = """You are an expert medical coding assistant. Extract structured billing rules (SOP rules) from the document below.

**Use existing tags first.** Before inventing a tag, check the lookup tables below and reuse an equivalent tag. Only introduce a new @TAG when nothing suitable exists.

## Lookup tables (existing tags)
{lookup_context}

## Rule format
Each rule has these fields:
- rule_id: "{rule_id_prefix}-<CATEGORY>-<4 digits>", e.g. "{rule_id_prefix}-MOD25-0001" (uppercase letters, digits, underscore in the category)
- code: comma-separated CPT/HCPCS codes (e.g. "99213,99214") OR one code group tag (e.g. "@E&M_MINOR_PROC"). Never put an action here.
- code_group: the code group tag the codes belong to, if known
- codes_selected: list of source codes; REQUIRED when the action uses @SWAP, @COND_ADD or @COND_REMOVE
- action: one or more action expressions separated by spaces, e.g. "@ADD(@25)" or "@SWAP(@J0585→@J0587)"
- payer_group: payer tag, or several joined with "|"
- provider_group: provider tag, or several joined with "|"
- description: exactly ONE sentence ending with a period, with inline @tags, e.g. "For @BCBS payers, @ADD(@25)."
- documentation_trigger: keywords separated by ";"
- chart_section: chart section tag or empty
- effective_date / end_date: YYYY-MM-DD (end_date may be empty)
- reference: where in the document the rule comes from
- confidence: 0.0-1.0

## Document
```
{document_block}
```

Return JSON:
{{
  "rules": [
    {{
      "rule_id": "{rule_id_prefix}-MOD25-0001",
      "code": "@E&M_MINOR_PROC",
      "code_group": "@E&M_MINOR_PROC",
      "codes_selected": [],
      "action": "@ADD(@25)",
      "payer_group": "@BCBS",
      "provider_group": "@PHYSICIAN_MD_DO",
      "description": "For @BCBS payers, @ADD(@25).",
      "documentation_trigger": "minor procedure;same day",
      "chart_section": "PROCEDURE_SECTION",
      "effective_date": "2024-01-01",
      "end_date": "",
      "reference": "Section 2.1",
      "confidence": 0.9
    }}
  ]
}}

Return only valid JSON, no markdown formatting. Do not include any text before or after the JSON. No preamble or explanation."""


_SECTION_TITLES = {
    TagKind.CODE_GROUP: "Code Groups",
    TagKind.PAYER_GROUP: "Payer Groups",
    TagKind.PROVIDER_GROUP: "Provider Groups",
    TagKind.ACTION_TAG: "Action Tags",
    TagKind.CHART_SECTION: "Chart Sections",
}


def build_lookup_context(repository: LookupRepository) -> str:
    """Markdown listing of every usable tag with its human label."""
    snap = repository.snapshot()
    parts: List[str] = []
    for kind, title in _SECTION_TITLES.items():
        tags = snap.tags(kind)
        parts.append(f"### {title} ({len(tags)} available)")
        for tag in tags:
            label = next((t for t in tag.match_texts() if t), "")
            if kind == TagKind.ACTION_TAG and getattr(tag, "syntax", ""):
                label = f"{tag.syntax}: {label}"
            parts.append(f"- {tag.tag}: {label}" if label else f"- {tag.tag}")
        parts.append("")
    return "\n".join(parts).strip()


def build_extraction_prompt(
    document_text: str,
    lookup_context: str,
    client_prefix: Optional[str] = None,
    prompt_body: Optional[str] = None,
) -> str:
    if client_prefix is None:
        from sop_engine.config import RULE_ID_PREFIX
        client_prefix = RULE_ID_PREFIX
    template = prompt_body if prompt_body else EXTRACTION_PROMPT
    return template.format(
        lookup_context=lookup_context,
        document_block=(document_text or "").strip(),
        rule_id_prefix=client_prefix,
    )


def _candidate_from_llm(item: Dict[str, Any], index: int, client_prefix: str) -> CandidateRule:
    data = dict(item)
    if "confidence" not in data and "confidence_score" in data:
        data["confidence"] = data["confidence_score"]
    data.setdefault("source", "ai")
    if not data.get("rule_id"):
        data["rule_id"] = f"{client_prefix}-AUTO-{index:04d}"
        logger.debug("[extraction] candidate %d had no rule_id; assigned %s", index, data["rule_id"])
    return CandidateRule.from_dict(data)


async def extract(
    document_text: str,
    repository: LookupRepository,
    llm: Optional[LLMProvider] = None,
    client_prefix: Optional[str] = None,
    prompt_body: Optional[str] = None,
) -> List[CandidateRule]:
    """
    Ask the LLM for candidate rules. Single attempt.

    Raises:
        ConfigurationError: no usable LLM provider is configured
        ExtractionError: the call failed or the response could not be parsed
    """
    if client_prefix is None:
        from sop_engine.config import RULE_ID_PREFIX
        client_prefix = RULE_ID_PREFIX
    if llm is None:
        llm = get_llm_provider()

    prompt = build_extraction_prompt(document_text, build_lookup_context(repository), client_prefix, prompt_body)
    try:
        response = await llm.generate(prompt)
    except (ConfigurationError, ExtractionError):
        raise
    except Exception as e:
        logger.error("[extraction] LLM call failed: %s", e, exc_info=True)
        raise ExtractionError(f"LLM call failed: {e}") from e

    try:
        result = parse_json_response(response)
    except (json.JSONDecodeError, ValueError) as e:
        raise ExtractionError(f"Failed to parse LLM response: {e}", raw_response=response) from e

    candidates = [_candidate_from_llm(item, i, client_prefix) for i, item in enumerate(result["rules"], start=1)]
    logger.info("[extraction] LLM returned %d candidate rules", len(candidates))
    return candidates


@dataclass
class PipelineResult:
    added_rules: List[Rule] = field(default_factory=list)
    rejected: List[InvalidRule] = field(default_factory=list)
    needs_definition: List[str] = field(default_factory=list)
    created_tags: List[str] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    enhancement: Optional[EnhancementSummary] = None
    audit: Optional[AuditReport] = None
    run_log: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added_rules": [r.to_dict() for r in self.added_rules],
            "rejected": [r.to_dict() for r in self.rejected],
            "needs_definition": list(self.needs_definition),
            "created_tags": list(self.created_tags),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "enhancement": self.enhancement.to_dict()["summary"] if self.enhancement else None,
            "audit": self.audit.to_dict() if self.audit else None,
            "run_log": list(self.run_log),
        }


def _log_entry(rule_id: Optional[str], error: Exception) -> Dict[str, Any]:
    error_type, severity = classify_error(error)
    return {"rule_id": rule_id, "error_type": error_type, "severity": severity, "message": str(error)}


async def run_extraction_pipeline(
    document_text: str,
    registry: LookupRegistry,
    rule_set: RuleSet,
    llm: Optional[LLMProvider] = None,
    client_prefix: Optional[str] = None,
    create_missing_tags: bool = False,
    source_document: Optional[str] = None,
    detector: Optional[ConflictDetector] = None,
) -> PipelineResult:
    """
    extract -> validate batch -> enhance with code groups -> merge into the rule set -> analyze conflicts
    -> audit the rule set against the document.

    Terminal errors from the LLM boundary propagate; per-rule problems land in run_log and the
    pipeline carries on.
    """
    candidates = await extract(document_text, registry, llm=llm, client_prefix=client_prefix)
    validator = RuleValidator(registry)
    result = PipelineResult()

    batch = validator.validate_batch(candidates)
    result.rejected = batch.invalid_rules
    result.needs_definition = batch.all_needs_definition
    for invalid in batch.invalid_rules:
        messages = "; ".join(f"{e.field}: {e.message}" for e in invalid.validation.errors)
        result.run_log.append(_log_entry(invalid.rule.rule_id, CandidatePromotionError(messages)))

    result.enhancement = CodeGroupInferencer(registry).enhance_rules(batch.valid_rules)
    for candidate in result.enhancement.rules:
        try:
            rule = validator.promote(candidate)
            rule_set.add(rule)
        except (CandidatePromotionError, DuplicateRuleError) as e:
            logger.warning("[extraction] rule %s not added: %s", candidate.rule_id, e)
            result.run_log.append(_log_entry(candidate.rule_id, e))
            continue
        result.added_rules.append(rule)

    if create_missing_tags:
        for tag in result.needs_definition:
            if registry.has(tag):
                continue
            try:
                registry.create_tag(tag, source_document=source_document)
            except DuplicateTagError as e:
                result.run_log.append(_log_entry(None, e))
                continue
            result.created_tags.append(tag)

    result.conflicts = (detector or ConflictDetector()).analyze(rule_set.rules)
    result.audit = RuleAuditor(registry).generate_audit_report(document_text, rule_set.rules, source_document or "")
    logger.info(
        "[extraction] pipeline done: %d added, %d rejected, %d tags need definition, %d conflicts, can_publish=%s",
        len(result.added_rules), len(result.rejected), len(result.needs_definition), len(result.conflicts),
        result.audit.can_publish,
    )
    return result
