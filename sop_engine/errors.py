"""
Exception hierarchy for the SOP rule engine.

Validation and matching never raise for data-quality problems; they return
structured results. The exceptions below cover operational failures
(configuration, LLM boundary) and invalid mutations of registry or rule-set
state.
"""
from __future__ import annotations

import json


class SopEngineError(Exception):
    """Base class for every error raised by sop_engine."""


class ConfigurationError(SopEngineError):
    """Required configuration is missing (e.g. no LLM credentials)."""


class ExtractionError(SopEngineError):
    """LLM call failed or its response could not be parsed into candidate rules."""

    def __init__(self, message: str, *, raw_response: str | None = None):
        super().__init__(message)
        self.raw_response = (raw_response or "")[:500]


class UnknownTagError(SopEngineError):
    """Registry mutation referenced a tag that is not registered."""


class DuplicateTagError(SopEngineError):
    """Tag creation collided with an existing tag of the same kind."""


class TagInUseError(SopEngineError):
    """Tag removal refused because rules still reference the tag."""


class RuleNotFoundError(SopEngineError):
    """Rule-set operation referenced a rule id that is not in the set."""


class DuplicateRuleError(SopEngineError):
    """Rule id already present in the rule set."""


class CandidatePromotionError(SopEngineError):
    """A candidate rule with validation errors cannot become a validated rule."""

    def __init__(self, message: str, *, validation=None):
        super().__init__(message)
        self.validation = validation


class ConflictNotFoundError(SopEngineError):
    """Conflict id is not in the open conflict list."""


class StaleConflictError(SopEngineError):
    """Open conflict list was computed for a rule set that has since changed."""


class ResolutionError(SopEngineError):
    """Resolution request is malformed (unknown action, missing merged rule, bad pair)."""


class CsvFormatError(SopEngineError):
    """Rule CSV is missing its header or required columns."""


def classify_error(error: Exception) -> tuple[str, str]:
    """
    Classify an exception for the extraction run log.

    Returns:
        Tuple of (error_type, severity)
    """
    if isinstance(error, json.JSONDecodeError):
        return "json_parse_error", "critical"
    if isinstance(error, ConfigurationError):
        return "configuration_error", "critical"
    if isinstance(error, ExtractionError):
        return "llm_failure", "critical"
    if isinstance(error, CandidatePromotionError):
        return "validation_error", "warning"
    if isinstance(error, (DuplicateRuleError, RuleNotFoundError)):
        return "rule_set_error", "warning"
    if isinstance(error, SopEngineError):
        return "engine_error", "warning"
    return "other", "warning"
