"""
Lookup registry: the controlled vocabulary of code groups, payer groups,
provider groups, action tags and chart sections.

The registry is the single source of truth for "which tags exist". Services
receive it through the ``LookupRepository`` interface and read from an
immutable ``RegistrySnapshot`` taken at the start of each pass; mutations
replace the per-kind tables (copy-on-write) so a snapshot never changes
underneath a running validation.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import yaml

from sop_engine.domain import (
    CreatedBy,
    LookupTag,
    TagKind,
    TagStatus,
    tag_from_dict,
)
from sop_engine.errors import DuplicateTagError, TagInUseError, UnknownTagError

logger = logging.getLogger(__name__)

# YAML section name per kind
SECTION_NAMES: dict[TagKind, str] = {
    TagKind.CODE_GROUP: "code_groups",
    TagKind.PAYER_GROUP: "payer_groups",
    TagKind.PROVIDER_GROUP: "provider_groups",
    TagKind.ACTION_TAG: "action_tags",
    TagKind.CHART_SECTION: "chart_sections",
}

_PAYER_HINTS = ("BCBS", "AETNA", "CIGNA", "UHC", "HUMANA", "MEDICARE", "MEDICAID", "COMMERCIAL", "ANTHEM", "KAISER")
_PROVIDER_HINTS = ("PHYSICIAN", "PROVIDER", "NP", "PA", "MD", "DO")
_ACTION_PREFIXES = ("ADD", "REMOVE", "SWAP", "LINK", "COND", "ALWAYS", "NEVER", "DENY")
_CHART_HINTS = ("SECTION", "HPI", "ASSESSMENT", "PLAN", "PROCEDURE", "DIAGNOSIS")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def suggest_tag_kind(tag: str) -> TagKind:
    """Guess the kind of an unregistered tag from its name."""
    name = tag.lstrip("@").upper()
    words = set(name.split("_"))
    if any(h in name for h in _PAYER_HINTS):
        return TagKind.PAYER_GROUP
    if any(h in words for h in _PROVIDER_HINTS) or "PHYSICIAN" in name or "PROVIDER" in name:
        return TagKind.PROVIDER_GROUP
    if name.startswith(_ACTION_PREFIXES):
        return TagKind.ACTION_TAG
    if any(h in name for h in _CHART_HINTS):
        return TagKind.CHART_SECTION
    return TagKind.CODE_GROUP


@dataclass(frozen=True)
class TagCheck:
    tag: str
    exists: bool
    kind: TagKind | None = None
    status: TagStatus | None = None
    suggested_kind: TagKind | None = None

    @property
    def needs_creation(self) -> bool:
        return not self.exists


@dataclass(frozen=True)
class DeleteCheck:
    can_delete: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"can_delete": self.can_delete}
        if self.reason:
            data["reason"] = self.reason
        return data


class RegistrySnapshot:
    """Read-only view of the registry tables at one point in time."""

    def __init__(self, tables: Mapping[TagKind, Mapping[str, LookupTag]]):
        self._tables = tables

    def tags(self, kind: TagKind) -> tuple[LookupTag, ...]:
        return tuple(self._tables.get(kind, {}).values())

    def tag_names(self, kind: TagKind) -> list[str]:
        return list(self._tables.get(kind, {}).keys())

    def get(self, tag: str, kind: TagKind | None = None) -> LookupTag | None:
        if not tag:
            return None
        if kind is not None:
            return self._tables.get(kind, {}).get(tag)
        for k in TagKind:
            found = self._tables.get(k, {}).get(tag)
            if found is not None:
                return found
        return None

    def has(self, tag: str, kind: TagKind | None = None) -> bool:
        return self.get(tag, kind) is not None

    def find_kind(self, tag: str) -> TagKind | None:
        found = self.get(tag)
        return found.kind if found is not None else None

    def expand_code_group(self, tag: str) -> tuple[str, ...]:
        group = self.get(tag, TagKind.CODE_GROUP)
        if group is None and tag and not tag.startswith("@"):
            group = self.get(f"@{tag}", TagKind.CODE_GROUP)
        return tuple(getattr(group, "expands_to", ())) if group is not None else ()

    def expand_code_groups(self, tags: Iterable[str]) -> list[str]:
        """Codes of several groups, deduplicated, first occurrence kept."""
        seen: dict[str, None] = {}
        for tag in tags:
            for code in self.expand_code_group(tag):
                seen.setdefault(code, None)
        return list(seen)

    @property
    def code_groups(self) -> tuple[LookupTag, ...]:
        return self.tags(TagKind.CODE_GROUP)

    @property
    def payer_groups(self) -> tuple[LookupTag, ...]:
        return self.tags(TagKind.PAYER_GROUP)

    @property
    def provider_groups(self) -> tuple[LookupTag, ...]:
        return self.tags(TagKind.PROVIDER_GROUP)

    @property
    def action_tags(self) -> tuple[LookupTag, ...]:
        return self.tags(TagKind.ACTION_TAG)

    @property
    def chart_sections(self) -> tuple[LookupTag, ...]:
        return self.tags(TagKind.CHART_SECTION)

    def to_dict(self) -> dict[str, Any]:
        return {
            SECTION_NAMES[kind]: [t.to_dict() for t in self.tags(kind)]
            for kind in TagKind
        }


class LookupRepository(ABC):
    """What services need from the registry: a consistent snapshot per pass."""

    @abstractmethod
    def snapshot(self) -> RegistrySnapshot:
        pass


class LookupRegistry(LookupRepository):
    """Process-wide mutable registry with copy-on-write tables."""

    def __init__(self, tags: Iterable[LookupTag] = ()):
        self._lock = threading.Lock()
        tables: dict[TagKind, dict[str, LookupTag]] = {k: {} for k in TagKind}
        for t in tags:
            if t.tag in tables[t.kind]:
                raise DuplicateTagError(f"Duplicate {t.kind.value} tag {t.tag}")
            tables[t.kind][t.tag] = t
        self._tables: Mapping[TagKind, Mapping[str, LookupTag]] = MappingProxyType(
            {k: MappingProxyType(v) for k, v in tables.items()}
        )

    # ------------------------------------------------------------ loading
    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LookupRegistry":
        tags: list[LookupTag] = []
        for kind, section in SECTION_NAMES.items():
            for entry in (data or {}).get(section) or []:
                if not isinstance(entry, dict) or not entry.get("tag"):
                    logger.warning("[registry] skipping malformed %s entry: %r", section, entry)
                    continue
                tags.append(tag_from_dict(kind, entry))
        return cls(tags)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "LookupRegistry":
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        registry = cls.from_dict(data)
        logger.info(
            "[registry] loaded %s: %s",
            path,
            ", ".join(f"{len(registry.snapshot().tags(k))} {SECTION_NAMES[k]}" for k in TagKind),
        )
        return registry

    def to_dict(self) -> dict[str, Any]:
        return self.snapshot().to_dict()

    def dump_yaml(self, path: str | Path) -> str:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, allow_unicode=True, sort_keys=False)
        return str(path)

    # ------------------------------------------------------------ reads
    def snapshot(self) -> RegistrySnapshot:
        return RegistrySnapshot(self._tables)

    def get(self, tag: str, kind: TagKind | None = None) -> LookupTag | None:
        return self.snapshot().get(tag, kind)

    def has(self, tag: str, kind: TagKind | None = None) -> bool:
        return self.snapshot().has(tag, kind)

    def tags(self, kind: TagKind) -> tuple[LookupTag, ...]:
        return self.snapshot().tags(kind)

    def check_tag(self, tag: str) -> TagCheck:
        found = self.get(tag)
        if found is not None:
            return TagCheck(tag=tag, exists=True, kind=found.kind, status=found.status)
        return TagCheck(tag=tag, exists=False, suggested_kind=suggest_tag_kind(tag))

    def can_delete_tag(self, tag: str) -> DeleteCheck:
        found = self.get(tag)
        if found is None:
            return DeleteCheck(can_delete=False, reason=f"Tag {tag} is not registered")
        if found.usage_count > 0:
            return DeleteCheck(can_delete=False, reason=f"Tag is used in {found.usage_count} rules")
        return DeleteCheck(can_delete=True)

    # ------------------------------------------------------------ writes
    def _require(self, tag: str, kind: TagKind | None) -> LookupTag:
        found = self.get(tag, kind)
        if found is None:
            raise UnknownTagError(f"Tag {tag} is not registered")
        return found

    def _put(self, new_tag: LookupTag) -> None:
        """Swap in a new table for new_tag.kind; callers hold the lock."""
        tables = dict(self._tables)
        kind_table = dict(tables[new_tag.kind])
        kind_table[new_tag.tag] = new_tag
        tables[new_tag.kind] = MappingProxyType(kind_table)
        self._tables = MappingProxyType(tables)

    def _drop(self, old_tag: LookupTag) -> None:
        tables = dict(self._tables)
        kind_table = dict(tables[old_tag.kind])
        kind_table.pop(old_tag.tag, None)
        tables[old_tag.kind] = MappingProxyType(kind_table)
        self._tables = MappingProxyType(tables)

    def add(self, new_tag: LookupTag) -> LookupTag:
        with self._lock:
            if self.get(new_tag.tag, new_tag.kind) is not None:
                raise DuplicateTagError(f"{new_tag.kind.value} {new_tag.tag} already exists")
            self._put(new_tag)
        logger.info("[registry] added %s %s (%s)", new_tag.kind.value, new_tag.tag, new_tag.status.value)
        return new_tag

    def create_tag(
        self,
        tag: str,
        kind: TagKind | str | None = None,
        *,
        created_by: CreatedBy | str = CreatedBy.AI,
        status: TagStatus | str = TagStatus.NEEDS_DEFINITION,
        confidence_score: float | None = None,
        source_document: str | None = None,
        **payload: Any,
    ) -> LookupTag:
        """Register a tag discovered in a rule. It stays out of ACTIVE until promoted."""
        kind = TagKind(kind) if kind else suggest_tag_kind(tag)
        data: dict[str, Any] = {
            "tag": tag,
            "status": TagStatus(status),
            "created_by": CreatedBy(created_by),
            "created_date": _now(),
            "confidence_score": confidence_score,
            "source_document": source_document,
            "usage_count": 0,
        }
        if kind in (TagKind.PAYER_GROUP, TagKind.PROVIDER_GROUP, TagKind.CHART_SECTION):
            payload.setdefault("name", tag.lstrip("@").replace("_", " "))
        if kind == TagKind.CODE_GROUP:
            payload.setdefault("purpose", payload.pop("description", None) or "Auto-created from document")
        data.update(payload)
        return self.add(tag_from_dict(kind, data))

    def promote(self, tag: str, kind: TagKind | None = None) -> LookupTag:
        with self._lock:
            found = self._require(tag, kind)
            promoted = replace(found, status=TagStatus.ACTIVE)
            self._put(promoted)
        logger.info("[registry] promoted %s %s: %s -> ACTIVE", found.kind.value, tag, found.status.value)
        return promoted

    def deprecate(self, tag: str, kind: TagKind | None = None) -> LookupTag:
        with self._lock:
            found = self._require(tag, kind)
            deprecated = replace(found, status=TagStatus.DEPRECATED)
            self._put(deprecated)
        logger.info("[registry] deprecated %s %s", found.kind.value, tag)
        return deprecated

    def remove(self, tag: str, kind: TagKind | None = None) -> LookupTag:
        with self._lock:
            found = self._require(tag, kind)
            if found.usage_count > 0:
                raise TagInUseError(f"Tag {tag} is used in {found.usage_count} rules")
            self._drop(found)
        logger.info("[registry] removed %s %s", found.kind.value, tag)
        return found

    def increment_usage(self, tag: str, kind: TagKind | None = None) -> bool:
        """Bump usage for a referenced tag. Unregistered tags are ignored (returns False)."""
        with self._lock:
            found = self.get(tag, kind)
            if found is None:
                return False
            self._put(replace(found, usage_count=found.usage_count + 1, last_used=_now()))
        return True

    def decrement_usage(self, tag: str, kind: TagKind | None = None) -> bool:
        with self._lock:
            found = self.get(tag, kind)
            if found is None:
                return False
            self._put(replace(found, usage_count=max(0, found.usage_count - 1)))
        return True

    def sync_usage(self, counts: Mapping[str, int]) -> None:
        """Overwrite every usage count from a recount (tags absent from ``counts`` drop to 0)."""
        with self._lock:
            for kind in TagKind:
                for t in self._tables[kind].values():
                    n = int(counts.get(t.tag, 0))
                    if n != t.usage_count:
                        self._put(replace(t, usage_count=n))
        logger.debug("[registry] usage synced for %d tags", len(counts))

    def replace_contents(self, other: "LookupRegistry") -> None:
        """Take over every table of ``other`` in place; holders of this registry see the new tags."""
        tables = other._tables
        with self._lock:
            self._tables = tables
        logger.info(
            "[registry] replaced contents: %s",
            ", ".join(f"{len(tables[k])} {SECTION_NAMES[k]}" for k in TagKind),
        )
