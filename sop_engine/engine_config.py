"""
Rule engine configuration.

Single source of truth for the behavioural constants of the matcher,
inferencer and conflict detector. The defaults are the contract the rest of
the engine is tested against; deployments may override them through
``SOP_*`` environment variables.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConfig:
    """Immutable engine configuration loaded once at startup."""

    # --- Tag matcher tiers ---
    semantic_threshold: float = 0.85
    keyword_threshold: float = 0.6
    code_overlap_threshold: float = 0.5
    action_synonym_confidence: float = 0.9

    # --- Code-group inference ---
    inference_min_confidence: float = 0.5

    # --- Conflict detection ---
    wildcard_payers: tuple[str, ...] = ("ALL_PAYERS",)
    wildcard_providers: tuple[str, ...] = ("ALL_PROVIDERS",)
    exclusive_actions: tuple[str, ...] = ("deny", "approve", "require_prior_auth")
    low_severity_rule_limit: int | None = None  # None = always run the broad-rule pass

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def load_engine_config() -> EngineConfig:
    """Build EngineConfig from environment variables (with defaults)."""
    def _float(key: str, default: float) -> float:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except (TypeError, ValueError):
            return default

    def _opt_int(key: str) -> int | None:
        raw = os.getenv(key)
        if not raw:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    def _list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
        raw = os.getenv(key)
        if raw is None:
            return default
        items = tuple(p.strip() for p in raw.split(",") if p.strip())
        return items or default

    defaults = EngineConfig()
    return EngineConfig(
        semantic_threshold=_float("SOP_SEMANTIC_THRESHOLD", defaults.semantic_threshold),
        keyword_threshold=_float("SOP_KEYWORD_THRESHOLD", defaults.keyword_threshold),
        code_overlap_threshold=_float("SOP_CODE_OVERLAP_THRESHOLD", defaults.code_overlap_threshold),
        action_synonym_confidence=_float("SOP_ACTION_SYNONYM_CONFIDENCE", defaults.action_synonym_confidence),
        inference_min_confidence=_float("SOP_INFERENCE_MIN_CONFIDENCE", defaults.inference_min_confidence),
        wildcard_payers=_list("SOP_WILDCARD_PAYERS", defaults.wildcard_payers),
        wildcard_providers=_list("SOP_WILDCARD_PROVIDERS", defaults.wildcard_providers),
        exclusive_actions=tuple(a.lower() for a in _list("SOP_EXCLUSIVE_ACTIONS", defaults.exclusive_actions)),
        low_severity_rule_limit=_opt_int("SOP_LOW_SEVERITY_RULE_LIMIT"),
        log_level=os.getenv("SOP_LOG_LEVEL", defaults.log_level),
        log_format=os.getenv("SOP_LOG_FORMAT", defaults.log_format),
    )
