import asyncio
import logging
import threading
from collections import Counter
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sop_engine.config import ENV, LOOKUP_SEED_PATH
from sop_engine.database import AsyncSessionLocal, get_db
from sop_engine.domain import CandidateRule, ResolutionAction, TagKind
from sop_engine.engine_config import EngineConfig, load_engine_config
from sop_engine.errors import (
    CandidatePromotionError,
    ConfigurationError,
    ConflictNotFoundError,
    CsvFormatError,
    DuplicateRuleError,
    DuplicateTagError,
    ExtractionError,
    ResolutionError,
    RuleNotFoundError,
    SopEngineError,
    StaleConflictError,
    TagInUseError,
    UnknownTagError,
)
from sop_engine.services.code_group_inferencer import CodeGroupInferencer
from sop_engine.services.conflict_detector import ConflictDetector
from sop_engine.services.conflict_resolver import ConflictResolver
from sop_engine.services.extraction import run_extraction_pipeline
from sop_engine.services.lookup_registry import LookupRegistry
from sop_engine.services.lookup_repo import (
    load_registry_db,
    load_rules_db,
    record_resolution_db,
    save_registry_db,
    save_rules_db,
)
from sop_engine.services.rule_audit import RuleAuditor
from sop_engine.services.rule_csv import export_lookup_csv, export_rules_csv, import_rules_csv
from sop_engine.services.rule_set import RuleSet
from sop_engine.services.rule_validator import RuleValidator
from sop_engine.services.tag_matcher import TagMatcher

ENGINE_CONFIG = load_engine_config()

# Set up logging
logging.basicConfig(level=ENGINE_CONFIG.log_level, format=ENGINE_CONFIG.log_format)
logger = logging.getLogger(__name__)
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)  # Reduce SQLAlchemy verbosity
logging.getLogger('uvicorn').setLevel(logging.INFO)


class EngineState:
    """Process-wide registry plus one rule set and resolver per SOP."""

    def __init__(self, registry: LookupRegistry, config: EngineConfig):
        self.registry = registry
        self.config = config
        self.detector = ConflictDetector(config)
        self.validator = RuleValidator(registry)
        self.matcher = TagMatcher(registry, config)
        self.inferencer = CodeGroupInferencer(registry, config)
        self.auditor = RuleAuditor(registry)
        self._rule_sets: Dict[str, RuleSet] = {}
        self._resolvers: Dict[str, ConflictResolver] = {}
        self._lock = threading.Lock()

    def rule_set(self, sop_id: str) -> RuleSet:
        with self._lock:
            if sop_id not in self._rule_sets:
                self._rule_sets[sop_id] = RuleSet(sop_id, self.registry)
            return self._rule_sets[sop_id]

    def resolver(self, sop_id: str) -> ConflictResolver:
        rule_set = self.rule_set(sop_id)
        with self._lock:
            if sop_id not in self._resolvers:
                self._resolvers[sop_id] = ConflictResolver(rule_set, self.detector)
            return self._resolvers[sop_id]

    def load_rule_set(self, sop_id: str, rules) -> RuleSet:
        """Replace the in-memory SOP with stored rules; resets its resolver."""
        rule_set = self.rule_set(sop_id)
        rule_set.replace_all(rules)
        with self._lock:
            self._resolvers.pop(sop_id, None)
        return rule_set

    def sync_registry_usage(self) -> None:
        counts: Counter = Counter()
        for rule_set in list(self._rule_sets.values()):
            counts.update(rule_set.tag_usage())
        self.registry.sync_usage(counts)

    async def load_persisted_registry(self, db: AsyncSession) -> bool:
        """Swap in the stored lookup tables. An empty table keeps the seed."""
        stored = await load_registry_db(db)
        if stored is None:
            logger.info("[registry] no stored lookup tags; keeping seed vocabulary")
            return False
        self.registry.replace_contents(stored)
        self.sync_registry_usage()
        return True


def build_state(seed_path: str = LOOKUP_SEED_PATH, config: Optional[EngineConfig] = None) -> EngineState:
    return EngineState(LookupRegistry.from_yaml(seed_path), config or ENGINE_CONFIG)


state = build_state()

app = FastAPI(title="SOP Rule Engine", version="0.1.0")


@app.on_event("startup")
async def load_registry_on_startup():
    """Restore user/AI-created tags saved by earlier runs. Without a database the seed stays."""
    try:
        async with AsyncSessionLocal() as db:
            await state.load_persisted_registry(db)
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
        logger.warning("[registry] could not load stored lookup tags: %s. Using seed vocabulary.", e)


cors_origins = ["*"] if ENV == "dev" else []
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,  # must be False when allow_origins=["*"]
    allow_methods=["*"],
    allow_headers=["*"],
)


def _status_for(error: SopEngineError) -> int:
    if isinstance(error, (UnknownTagError, RuleNotFoundError, ConflictNotFoundError)):
        return 404
    if isinstance(error, (DuplicateTagError, DuplicateRuleError, TagInUseError, StaleConflictError)):
        return 409
    if isinstance(error, (CandidatePromotionError, ResolutionError, CsvFormatError)):
        return 422
    if isinstance(error, ExtractionError):
        return 502
    if isinstance(error, ConfigurationError):
        return 503
    return 400


@app.exception_handler(SopEngineError)
async def sop_engine_error_handler(request: Request, exc: SopEngineError):
    status = _status_for(exc)
    content: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, CandidatePromotionError) and exc.validation is not None:
        content["validation"] = exc.validation.to_dict()
    if status >= 500:
        logger.error("[api] %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=content)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class RuleBody(BaseModel):
    """Candidate rule as sent by the UI, CSV import or LLM. Every field optional."""
    rule_id: Optional[str] = None
    code: Optional[str] = None
    action: Optional[str] = None
    payer_group: Optional[str] = None
    provider_group: Optional[str] = None
    description: Optional[str] = None
    documentation_trigger: Optional[str] = None
    chart_section: Optional[str] = None
    effective_date: Optional[str] = None
    end_date: Optional[str] = None
    reference: Optional[str] = None
    code_group: Optional[str] = None
    codes_selected: Optional[List[str]] = None
    status: Optional[str] = None
    source: Optional[str] = None
    confidence: Optional[float] = None

    def to_candidate(self) -> CandidateRule:
        return CandidateRule.from_dict(self.model_dump(exclude_none=True))


class RuleListBody(BaseModel):
    rules: List[RuleBody] = Field(default_factory=list)

    def candidates(self) -> List[CandidateRule]:
        return [r.to_candidate() for r in self.rules]


class MatchBody(BaseModel):
    text: str = ""
    mentioned_codes: Optional[List[str]] = None


class InferBody(BaseModel):
    codes: List[str]


class AnalyzeBody(BaseModel):
    """Analyze either an SOP held by the service (sop_id) or an ad-hoc rule list."""
    sop_id: Optional[str] = None
    rules: Optional[List[RuleBody]] = None


class ResolveBody(BaseModel):
    sop_id: str
    conflict_id: str
    action: str
    merged_rule: Optional[RuleBody] = None
    rule_ids: Optional[List[str]] = None


class CreateTagBody(BaseModel):
    tag: str
    kind: Optional[str] = None
    created_by: str = "USER"
    confidence_score: Optional[float] = None
    source_document: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    purpose: Optional[str] = None
    expands_to: Optional[List[str]] = None


class ImportCsvBody(BaseModel):
    csv: str
    validate_rules: bool = True


class ExportCsvBody(BaseModel):
    sop_id: Optional[str] = None
    rules: Optional[List[RuleBody]] = None


class ExtractBody(BaseModel):
    document_text: str
    sop_id: str
    create_missing_tags: bool = False
    source_document: Optional[str] = None


class AuditBody(BaseModel):
    document_text: str
    document_name: Optional[str] = None


class RejectBody(BaseModel):
    reason: str = ""


class SaveSopBody(BaseModel):
    name: Optional[str] = None


_MATCH_KINDS = {
    "code-group": TagKind.CODE_GROUP,
    "payer-group": TagKind.PAYER_GROUP,
    "provider-group": TagKind.PROVIDER_GROUP,
    "action-tag": TagKind.ACTION_TAG,
    "chart-section": TagKind.CHART_SECTION,
}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/rules/validate")
def validate_rule(body: RuleBody):
    return state.validator.validate(body.to_candidate()).to_dict()


@app.post("/rules/validate-batch")
def validate_batch(body: RuleListBody):
    return state.validator.validate_batch(body.candidates()).to_dict()


@app.post("/match/{kind}")
def match_tag(kind: str, body: MatchBody):
    tag_kind = _MATCH_KINDS.get(kind)
    if tag_kind is None:
        raise HTTPException(status_code=400, detail=f"Unknown match kind: {kind}. Use one of {sorted(_MATCH_KINDS)}")
    result = state.matcher.match(tag_kind, body.text, body.mentioned_codes)
    return {**result.to_dict(), "trusted": result.is_trusted}


@app.post("/code-groups/infer")
def infer_code_group(body: InferBody):
    return state.inferencer.auto_populate_code_group(body.codes).to_dict()


@app.post("/rules/enhance")
def enhance_rules(body: RuleListBody):
    return state.inferencer.enhance_rules(body.candidates()).to_dict()


@app.post("/conflicts/analyze")
def analyze_conflicts(body: AnalyzeBody):
    if body.sop_id:
        resolver = state.resolver(body.sop_id)
        conflicts = resolver.refresh()
        return {
            "sop_id": body.sop_id,
            "fingerprint": state.rule_set(body.sop_id).fingerprint(),
            "conflicts": [c.to_dict() for c in conflicts],
        }
    if body.rules is None:
        raise HTTPException(status_code=400, detail="Provide sop_id or rules")
    conflicts = state.detector.analyze(RuleListBody(rules=body.rules).candidates())
    return {"conflicts": [c.to_dict() for c in conflicts]}


@app.post("/conflicts/resolve")
async def resolve_conflict(body: ResolveBody, db: AsyncSession = Depends(get_db)):
    merged = state.validator.promote(body.merged_rule.to_candidate()) if body.merged_rule else None
    resolver = state.resolver(body.sop_id)
    rule_set = resolver.resolve(body.conflict_id, body.action, merged_rule=merged, rule_ids=body.rule_ids)
    record = resolver.history[-1]
    await record_resolution_db(db, record)
    return {"resolution": record.to_dict(), "sop": rule_set.to_dict()}


@app.get("/conflicts/actions")
def list_resolution_actions():
    return {"actions": [a.value for a in ResolutionAction]}


@app.get("/lookup")
def get_lookup_tables():
    return state.registry.to_dict()


@app.get("/lookup/export-csv", response_class=PlainTextResponse)
def export_lookup_tables_csv():
    return PlainTextResponse(export_lookup_csv(state.registry), media_type="text/csv")


@app.post("/lookup")
async def create_lookup_tag(body: CreateTagBody, db: AsyncSession = Depends(get_db)):
    payload = body.model_dump(exclude_none=True, exclude={"tag", "kind", "created_by", "confidence_score", "source_document"})
    tag = state.registry.create_tag(
        body.tag,
        body.kind,
        created_by=body.created_by,
        confidence_score=body.confidence_score,
        source_document=body.source_document,
        **payload,
    )
    await save_registry_db(db, state.registry)
    return tag.to_dict()


@app.get("/lookup/{tag}/check")
def check_lookup_tag(tag: str):
    check = state.registry.check_tag(tag)
    return {
        "tag": check.tag,
        "exists": check.exists,
        "kind": check.kind.value if check.kind else None,
        "status": check.status.value if check.status else None,
        "suggested_kind": check.suggested_kind.value if check.suggested_kind else None,
    }


@app.get("/lookup/{tag}/can-delete")
def can_delete_lookup_tag(tag: str):
    return state.registry.can_delete_tag(tag).to_dict()


@app.post("/lookup/{tag}/promote")
async def promote_lookup_tag(tag: str, db: AsyncSession = Depends(get_db)):
    promoted = state.registry.promote(tag)
    await save_registry_db(db, state.registry)
    return promoted.to_dict()


@app.post("/lookup/{tag}/deprecate")
async def deprecate_lookup_tag(tag: str, db: AsyncSession = Depends(get_db)):
    deprecated = state.registry.deprecate(tag)
    await save_registry_db(db, state.registry)
    return deprecated.to_dict()


@app.delete("/lookup/{tag}")
async def delete_lookup_tag(tag: str, db: AsyncSession = Depends(get_db)):
    removed = state.registry.remove(tag)
    await save_registry_db(db, state.registry)
    return {"deleted": removed.tag, "kind": removed.kind.value}


@app.post("/rules/export-csv", response_class=PlainTextResponse)
def export_csv(body: ExportCsvBody):
    if body.sop_id:
        rules = state.rule_set(body.sop_id).rules
    elif body.rules is not None:
        rules = RuleListBody(rules=body.rules).candidates()
    else:
        raise HTTPException(status_code=400, detail="Provide sop_id or rules")
    return PlainTextResponse(export_rules_csv(rules), media_type="text/csv")


@app.post("/rules/import-csv")
def import_csv(body: ImportCsvBody):
    candidates = import_rules_csv(body.csv)
    if not body.validate_rules:
        return {"rules": [c.to_dict() for c in candidates]}
    return state.validator.validate_batch(candidates).to_dict()


@app.get("/sops/{sop_id}/rules")
def list_sop_rules(sop_id: str):
    return state.rule_set(sop_id).to_dict()


@app.post("/sops/{sop_id}/rules")
def add_sop_rules(sop_id: str, body: RuleListBody):
    """Promote and add candidates. Invalid candidates are reported, not added.

    Valid candidates go in together: a duplicate rule id adds none of them.
    """
    rule_set = state.rule_set(sop_id)
    batch = state.validator.validate_batch(body.candidates())
    promoted = [state.validator.promote(candidate) for candidate in batch.valid_rules]
    added = rule_set.add_all(promoted)
    return {
        "added": [r.to_dict() for r in added],
        "invalid_rules": [r.to_dict() for r in batch.invalid_rules],
        "all_needs_definition": batch.all_needs_definition,
        "sop": rule_set.to_dict(),
    }


@app.delete("/sops/{sop_id}/rules/{rule_id}")
def remove_sop_rule(sop_id: str, rule_id: str):
    return state.rule_set(sop_id).remove(rule_id).to_dict()


@app.post("/sops/{sop_id}/rules/{rule_id}/approve")
def approve_sop_rule(sop_id: str, rule_id: str):
    rule_set = state.rule_set(sop_id)
    rule = rule_set.approve(rule_id)
    return {"rule": rule.to_dict(), "sop_status": rule_set.sop_status}


@app.post("/sops/{sop_id}/rules/{rule_id}/reject")
def reject_sop_rule(sop_id: str, rule_id: str, body: Optional[RejectBody] = None):
    rule_set = state.rule_set(sop_id)
    rule = rule_set.reject(rule_id, body.reason if body else "")
    return {"rule": rule.to_dict(), "sop_status": rule_set.sop_status}


@app.post("/sops/{sop_id}/audit")
def audit_sop(sop_id: str, body: AuditBody):
    """Check the SOP's rules against the document they were built from."""
    rules = state.rule_set(sop_id).rules
    report = state.auditor.generate_audit_report(body.document_text, rules, body.document_name or sop_id)
    return report.to_dict()


@app.post("/extract")
async def extract_rules(body: ExtractBody, db: AsyncSession = Depends(get_db)):
    result = await run_extraction_pipeline(
        body.document_text,
        state.registry,
        state.rule_set(body.sop_id),
        create_missing_tags=body.create_missing_tags,
        source_document=body.source_document,
        detector=state.detector,
    )
    if result.created_tags:
        await save_registry_db(db, state.registry)
    return result.to_dict()


@app.post("/sops/{sop_id}/save")
async def save_sop(sop_id: str, body: Optional[SaveSopBody] = None, db: AsyncSession = Depends(get_db)):
    rule_set = state.rule_set(sop_id)
    sop = await save_rules_db(
        db,
        sop_id,
        rule_set.rules,
        status=rule_set.sop_status,
        version=rule_set.version,
        fingerprint=rule_set.fingerprint(),
        name=body.name if body else None,
    )
    return {"sop_id": sop_id, "status": sop.status, "version": sop.version, "rules": len(rule_set)}


@app.get("/sops/{sop_id}")
async def load_sop(sop_id: str, db: AsyncSession = Depends(get_db)):
    sop, rules = await load_rules_db(db, sop_id)
    if sop is None:
        raise HTTPException(status_code=404, detail=f"SOP {sop_id} not found")
    rule_set = state.load_rule_set(sop_id, rules)
    state.sync_registry_usage()
    return {"name": sop.name, **rule_set.to_dict()}
