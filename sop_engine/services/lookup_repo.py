"""
Persistence for the lookup registry, SOP rule sets and the resolution audit log.

Only the API layer and scripts call these; the engine services work on
in-memory state.
"""
from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import delete, select

from sop_engine.domain import LookupTag, Rule, TagKind, tag_from_dict
from sop_engine.models import ConflictResolutionRecord, LookupTagRecord, RuleRecord, SopRecord
from sop_engine.services.conflict_resolver import ResolutionRecord
from sop_engine.services.lookup_registry import LookupRegistry

logger = logging.getLogger(__name__)

# Columns of LookupTagRecord; everything else goes into payload.
_TAG_COLUMNS = ("tag", "kind", "status", "usage_count", "created_by", "confidence_score")


def _tag_to_record(tag: LookupTag) -> LookupTagRecord:
    data = tag.to_dict()
    payload = {k: v for k, v in data.items() if k not in _TAG_COLUMNS}
    return LookupTagRecord(
        kind=tag.kind.value,
        tag=tag.tag,
        status=tag.status.value,
        usage_count=tag.usage_count,
        created_by=tag.created_by.value,
        confidence_score=tag.confidence_score,
        payload=payload,
    )


def _record_to_tag(record: LookupTagRecord) -> LookupTag:
    data = dict(record.payload or {})
    data.update(
        tag=record.tag,
        status=record.status,
        usage_count=record.usage_count or 0,
        created_by=record.created_by,
        confidence_score=record.confidence_score,
    )
    if not data.get("created_date") and record.created_at is not None:
        data["created_date"] = record.created_at.isoformat()
    return tag_from_dict(record.kind, data)


async def load_registry_db(db) -> LookupRegistry | None:
    """Registry from the lookup_tags table, or None when the table is empty (caller falls back to the seed)."""
    result = await db.execute(select(LookupTagRecord).order_by(LookupTagRecord.kind, LookupTagRecord.created_at))
    records = result.scalars().all()
    if not records:
        return None
    tags = []
    for record in records:
        try:
            tags.append(_record_to_tag(record))
        except (ValueError, TypeError) as e:
            logger.warning("[registry] skipping unreadable tag row %s/%s: %s", record.kind, record.tag, e)
    logger.info("[registry] loaded %d tags from database", len(tags))
    return LookupRegistry(tags)


async def save_registry_db(db, registry: LookupRegistry) -> int:
    """Replace the lookup_tags table with the registry contents. Returns the number of rows written."""
    snap = registry.snapshot()
    await db.execute(delete(LookupTagRecord))
    count = 0
    for kind in TagKind:
        for tag in snap.tags(kind):
            db.add(_tag_to_record(tag))
            count += 1
    await db.commit()
    logger.info("[registry] saved %d tags to database", count)
    return count


async def load_rules_db(db, sop_id: str) -> tuple[SopRecord | None, list[Rule]]:
    sop = await db.get(SopRecord, sop_id)
    if sop is None:
        return None, []
    result = await db.execute(
        select(RuleRecord).where(RuleRecord.sop_id == sop_id).order_by(RuleRecord.position)
    )
    rules = [Rule.from_dict(r.payload) for r in result.scalars().all()]
    return sop, rules


async def save_rules_db(
    db,
    sop_id: str,
    rules: Iterable[Rule],
    *,
    status: str = "draft",
    version: int = 0,
    fingerprint: str | None = None,
    name: str | None = None,
) -> SopRecord:
    """Overwrite the stored rules of one SOP in a single transaction."""
    sop = await db.get(SopRecord, sop_id)
    if sop is None:
        sop = SopRecord(id=sop_id, name=name or sop_id)
        db.add(sop)
    elif name:
        sop.name = name
    sop.status = status
    sop.version = version
    sop.fingerprint = fingerprint

    await db.execute(delete(RuleRecord).where(RuleRecord.sop_id == sop_id))
    count = 0
    for position, rule in enumerate(rules):
        db.add(RuleRecord(
            sop_id=sop_id,
            rule_id=rule.rule_id,
            position=position,
            status=rule.status.value,
            validation_status=rule.validation_status.value,
            payload=rule.to_dict(),
        ))
        count += 1
    await db.commit()
    logger.info("[rules] saved SOP %s: %d rules (status=%s, v%d)", sop_id, count, status, version)
    return sop


async def record_resolution_db(db, entry: ResolutionRecord, note: str | None = None) -> ConflictResolutionRecord:
    row = ConflictResolutionRecord(
        sop_id=entry.sop_id,
        conflict_id=entry.conflict_id,
        action=entry.action.value,
        resolved_at=entry.timestamp,
        details={
            "affected_rule_ids": list(entry.affected_rule_ids),
            "removed_rule_ids": list(entry.removed_rule_ids),
            "added_rule_ids": list(entry.added_rule_ids),
        },
        note=note,
    )
    db.add(row)
    await db.commit()
    return row
