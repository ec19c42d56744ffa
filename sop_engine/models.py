from sqlalchemy import Column, String, DateTime, Integer, Text, ForeignKey, Float, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime
import uuid
from sop_engine.database import Base


class LookupTagRecord(Base):
    """One lookup tag of any kind; kind-specific fields live in payload."""
    __tablename__ = "lookup_tags"
    __table_args__ = (UniqueConstraint("kind", "tag", name="uq_lookup_tags_kind_tag"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    kind = Column(String(30), nullable=False)  # code_group, payer_group, provider_group, action_tag, chart_section
    tag = Column(String(200), nullable=False)
    status = Column(String(30), default="ACTIVE", nullable=False)  # ACTIVE, NEEDS_DEFINITION, PENDING_REVIEW, DEPRECATED
    usage_count = Column(Integer, default=0, nullable=False)
    created_by = Column(String(20), default="SYSTEM", nullable=False)  # SYSTEM, AI, USER
    confidence_score = Column(Float, nullable=True)
    payload = Column(JSONB, nullable=False, default=dict)  # expands_to/purpose, name/description, syntax/category ...
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class SopRecord(Base):
    __tablename__ = "sops"

    id = Column(String(100), primary_key=True)  # caller-chosen SOP id
    name = Column(String(255), nullable=True)
    status = Column(String(20), default="draft", nullable=False)  # draft, active
    version = Column(Integer, default=0, nullable=False)
    fingerprint = Column(String(64), nullable=True)  # sha256 of the rule payloads at save time
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class RuleRecord(Base):
    __tablename__ = "sop_rules"
    __table_args__ = (UniqueConstraint("sop_id", "rule_id", name="uq_sop_rules_sop_rule"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sop_id = Column(String(100), ForeignKey("sops.id", ondelete="CASCADE"), nullable=False)
    rule_id = Column(String(100), nullable=False)
    position = Column(Integer, nullable=False, default=0)  # order within the SOP
    status = Column(String(30), default="pending", nullable=False)
    validation_status = Column(String(20), default="valid", nullable=False)
    payload = Column(JSONB, nullable=False)  # Rule.to_dict()
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ConflictResolutionRecord(Base):
    """Audit log of applied conflict resolutions."""
    __tablename__ = "conflict_resolutions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sop_id = Column(String(100), nullable=False)
    conflict_id = Column(String(100), nullable=False)
    action = Column(String(20), nullable=False)  # keep_first, keep_second, keep_both, merge, delete_both
    resolved_at = Column(String(40), nullable=False)  # ISO timestamp from the resolver
    details = Column(JSONB, nullable=True)  # affected/removed/added rule ids
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
