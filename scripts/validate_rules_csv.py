#!/usr/bin/env python3
"""Validate a rule CSV offline against the lookup seed.

Imports the CSV, validates every row, enhances the valid rules with inferred
code groups, and runs conflict detection over them. Nothing is written.

Usage:
  python3 scripts/validate_rules_csv.py rules.csv
  python3 scripts/validate_rules_csv.py rules.csv --seed my_lookup.yaml --json
"""
import argparse
import json
import logging
import sys
from pathlib import Path

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from sop_engine.config import LOOKUP_SEED_PATH
from sop_engine.engine_config import load_engine_config
from sop_engine.errors import CsvFormatError
from sop_engine.services.code_group_inferencer import CodeGroupInferencer
from sop_engine.services.conflict_detector import ConflictDetector
from sop_engine.services.lookup_registry import LookupRegistry
from sop_engine.services.rule_csv import import_rules_csv
from sop_engine.services.rule_validator import RuleValidator


def build_report(csv_text: str, registry: LookupRegistry) -> dict:
    config = load_engine_config()
    candidates = import_rules_csv(csv_text)
    batch = RuleValidator(registry).validate_batch(candidates)
    enhancement = CodeGroupInferencer(registry, config).enhance_rules(batch.valid_rules)
    conflicts = ConflictDetector(config).analyze(enhancement.rules)
    return {
        "total": len(candidates),
        "valid": len(batch.valid_rules),
        "invalid_rules": [r.to_dict() for r in batch.invalid_rules],
        "needs_definition": batch.all_needs_definition,
        "enhancement": enhancement.to_dict()["summary"],
        "conflicts": [c.to_dict() for c in conflicts],
    }


def print_report(report: dict) -> None:
    print(f"Rules: {report['total']}  valid: {report['valid']}  invalid: {len(report['invalid_rules'])}")
    for invalid in report["invalid_rules"]:
        rule_id = invalid["rule"].get("rule_id") or "<no id>"
        for err in invalid["validation"]["errors"]:
            print(f"  ERROR {rule_id} [{err['field']}] {err['message']}")
    if report["needs_definition"]:
        print(f"Tags needing definition: {', '.join(report['needs_definition'])}")
    for line in report["enhancement"]["changes"]:
        print(f"  ENHANCED {line}")
    for line in report["enhancement"]["warnings"]:
        print(f"  WARN {line}")
    print(f"Conflicts: {len(report['conflicts'])}")
    for c in report["conflicts"]:
        print(f"  [{c['severity']}] {c['type']}: {c['description']} ({', '.join(c['affected_rule_ids'])})")


def main():
    parser = argparse.ArgumentParser(description="Validate a rule CSV against the lookup tables")
    parser.add_argument("csv_path", type=str, help="Rule CSV file")
    parser.add_argument("--seed", type=str, default=LOOKUP_SEED_PATH, help="Lookup seed YAML")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    registry = LookupRegistry.from_yaml(args.seed)
    try:
        report = build_report(Path(args.csv_path).read_text(encoding="utf-8"), registry)
    except CsvFormatError as e:
        raise SystemExit(f"Invalid CSV: {e}")

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        print_report(report)
    sys.exit(1 if report["invalid_rules"] else 0)


if __name__ == "__main__":
    main()
