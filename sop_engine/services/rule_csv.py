"""
CSV export/import for the rule table and the lookup tables.

The rule CSV column order is fixed. Fields holding a comma, quote or newline
are quoted with inner quotes doubled (RFC 4180), which is what ``csv`` does
with QUOTE_MINIMAL.
"""
from __future__ import annotations

import csv
import io
import logging
from enum import Enum
from typing import Any, Iterable, Sequence

from sop_engine.domain import CandidateRule, Rule, TagKind
from sop_engine.errors import CsvFormatError
from sop_engine.services.lookup_registry import LookupRepository

logger = logging.getLogger(__name__)

RULE_COLUMNS = (
    "rule_id",
    "code",
    "action",
    "payer_group",
    "provider_group",
    "description",
    "documentation_trigger",
    "chart_section",
    "effective_date",
    "end_date",
    "reference",
)

# Optional trailing columns for round-tripping the fields the fixed table drops.
EXTENDED_COLUMNS = RULE_COLUMNS + ("code_group", "codes_selected", "status")

LOOKUP_SECTIONS: tuple[tuple[TagKind, str, tuple[str, ...]], ...] = (
    (TagKind.CODE_GROUP, "Code Groups", ("tag", "code_type", "expands_to", "purpose")),
    (TagKind.PAYER_GROUP, "Payer Groups", ("tag", "name", "payer_type")),
    (TagKind.PROVIDER_GROUP, "Provider Groups", ("tag", "name", "description")),
    (TagKind.ACTION_TAG, "Action Tags", ("tag", "syntax", "description", "category")),
    (TagKind.CHART_SECTION, "Chart Sections", ("tag", "name", "description")),
)


def _writer(buf: io.StringIO):
    return csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def export_rules_csv(rules: Iterable[Rule | CandidateRule], columns: Sequence[str] = RULE_COLUMNS) -> str:
    buf = io.StringIO()
    writer = _writer(buf)
    writer.writerow(columns)
    count = 0
    for rule in rules:
        writer.writerow([_cell(getattr(rule, col, "")) for col in columns])
        count += 1
    logger.info("[csv] exported %d rules", count)
    return buf.getvalue()


def import_rules_csv(text: str) -> list[CandidateRule]:
    """Parse a rule CSV into candidates. Nothing here is validated."""
    text = (text or "").lstrip("\ufeff")
    reader = csv.DictReader(io.StringIO(text, newline=""))
    header = [h.strip() for h in (reader.fieldnames or [])]
    if not header or "rule_id" not in header:
        raise CsvFormatError("CSV must start with a header row containing rule_id")
    reader.fieldnames = header

    known = set(EXTENDED_COLUMNS)
    ignored = [h for h in header if h not in known]
    if ignored:
        logger.debug("[csv] ignoring unknown columns: %s", ignored)

    candidates: list[CandidateRule] = []
    for row in reader:
        if not any((v or "").strip() for k, v in row.items() if k is not None and isinstance(v, str)):
            continue
        data: dict[str, Any] = {col: (row.get(col) or "") for col in RULE_COLUMNS}
        for col in ("code_group", "codes_selected", "status"):
            if row.get(col):
                data[col] = row[col]
        data["source"] = "csv"
        candidates.append(CandidateRule.from_dict(data))
    logger.info("[csv] imported %d candidate rules", len(candidates))
    return candidates


def export_lookup_csv(repository: LookupRepository) -> str:
    """Sectioned export: one ``# Heading`` line, a header row and the rows per kind."""
    snap = repository.snapshot()
    buf = io.StringIO()
    writer = _writer(buf)
    for i, (kind, title, columns) in enumerate(LOOKUP_SECTIONS):
        if i:
            buf.write("\n")
        buf.write(f"# {title}\n")
        writer.writerow(columns)
        for tag in snap.tags(kind):
            row = []
            for col in columns:
                value = getattr(tag, col, "")
                row.append(";".join(value) if col == "expands_to" else _cell(value))
            writer.writerow(row)
    return buf.getvalue()
