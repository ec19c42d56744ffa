"""
Grammar of the rule text format.

Every regex over rule fields lives here: inline ``@TAG`` tokens, pipe lists,
comma code lists, ``@ACTION(@arg, ...)`` expressions, rule ids and ISO dates.
The CSV/LLM wire format is this grammar, so the rest of the engine calls these
helpers instead of matching strings inline.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

# @TAG token: uppercase letters, digits, underscore, ampersand (e.g. @E&M_MINOR_PROC, @25)
TAG_TOKEN = re.compile(r"@[A-Z0-9_&]+")

# @ACTION or @ACTION(args); args may hold nested tags, commas and the swap arrow.
ACTION_EXPR = re.compile(r"@([A-Z][A-Z0-9_]*)(?:\(([^)]*)\))?")

RULE_ID = re.compile(r"^[A-Z]{2,4}-[A-Z0-9_]+-\d{4}$")
CPT_CODE = re.compile(r"^\d{5}$")
HCPCS_CODE = re.compile(r"^[A-Z]\d{4}$")
ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
SENTENCE_SPLIT = re.compile(r"[.!?]")

# Action verbs an action field must contain at least one of. A head matches a
# verb exactly or as a prefix followed by "_" (LINK_IF_MODIFIER, ALWAYS_LINK_PRIMARY).
ACTION_VERBS = (
    "ADD",
    "REMOVE",
    "SWAP",
    "COND_ADD",
    "COND_REMOVE",
    "LINK",
    "DENY",
    "APPROVE",
    "REQUIRE_PRIOR_AUTH",
    "ALWAYS_LINK",
    "NEVER_LINK",
    "ALWAYS_ADD",
    "NEVER_ADD",
)

# Actions that operate code-to-code and need an explicit source code list.
CODES_SELECTED_ACTIONS = frozenset({"SWAP", "COND_ADD", "COND_REMOVE"})

_ARG_SPLIT = re.compile(r"\s*(?:,|→|->)\s*")


@dataclass(frozen=True)
class ActionExpr:
    tag: str
    args: tuple[str, ...] = ()

    @property
    def verb(self) -> str:
        return self.tag.lstrip("@")


def find_tags(text: str | None) -> list[str]:
    """Inline @TAG tokens in order of first appearance, arguments and pipes removed."""
    if not text:
        return []
    seen: dict[str, None] = {}
    for token in TAG_TOKEN.findall(text):
        seen.setdefault(token, None)
    return list(seen)


def split_pipe_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [p.strip() for p in str(value).split("|") if p.strip()]


def split_codes(value: str | None) -> list[str]:
    if not value:
        return []
    return [c.strip() for c in str(value).split(",") if c.strip()]


def split_triggers(value: str | None) -> list[str]:
    if not value:
        return []
    return [t.strip() for t in str(value).split(";") if t.strip()]


def parse_actions(value: str | None) -> list[ActionExpr]:
    """Parse a space-separated action field into ``ActionExpr`` items."""
    if not value:
        return []
    out: list[ActionExpr] = []
    for m in ACTION_EXPR.finditer(value):
        raw_args = (m.group(2) or "").strip()
        args = tuple(a for a in _ARG_SPLIT.split(raw_args) if a) if raw_args else ()
        out.append(ActionExpr(tag=f"@{m.group(1)}", args=args))
    return out


def is_action_verb(verb: str) -> bool:
    verb = verb.lstrip("@").upper()
    return any(verb == v or verb.startswith(v + "_") for v in ACTION_VERBS)


def is_action_expression(value: str | None) -> bool:
    """True when ``value`` holds an action (e.g. ``@ADD(@25)``), the code/action column mix-up.

    A bare head only counts when it is exactly a verb, so code groups such as
    ``@ADD_ON_CODES`` are not mistaken for actions.
    """
    for expr in parse_actions(value):
        if expr.verb in ACTION_VERBS:
            return True
        if expr.args and is_action_verb(expr.verb):
            return True
    return False


def action_verbs(value: str | None) -> list[str]:
    return [expr.verb for expr in parse_actions(value)]


def requires_codes_selected(action: str | None) -> bool:
    return any(verb in CODES_SELECTED_ACTIONS for verb in action_verbs(action))


def is_rule_id(value: str | None) -> bool:
    return bool(value) and RULE_ID.match(value) is not None


def is_literal_code(value: str) -> bool:
    return CPT_CODE.match(value) is not None or HCPCS_CODE.match(value) is not None


def parse_iso_date(value: str | None) -> date | None:
    """``YYYY-MM-DD`` that is also a real calendar date, else None."""
    if not value or not ISO_DATE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def is_iso_date(value: str | None) -> bool:
    return bool(value) and ISO_DATE.match(value) is not None


def split_sentences(text: str | None) -> list[str]:
    if not text:
        return []
    return [s.strip() for s in SENTENCE_SPLIT.split(text) if s.strip()]
