"""Unit tests for sop_engine.engine_config."""
import os
from unittest.mock import patch

from sop_engine.engine_config import EngineConfig, load_engine_config


def test_defaults():
    with patch.dict(os.environ, {}, clear=True):
        cfg = load_engine_config()
    assert cfg == EngineConfig()
    assert cfg.semantic_threshold == 0.85
    assert cfg.keyword_threshold == 0.6
    assert cfg.code_overlap_threshold == 0.5
    assert cfg.inference_min_confidence == 0.5
    assert cfg.exclusive_actions == ("deny", "approve", "require_prior_auth")
    assert cfg.low_severity_rule_limit is None


def test_env_overrides():
    env = {
        "SOP_SEMANTIC_THRESHOLD": "0.9",
        "SOP_WILDCARD_PAYERS": "ALL_PAYERS, ANY_PAYER",
        "SOP_EXCLUSIVE_ACTIONS": "DENY,Approve",
        "SOP_LOW_SEVERITY_RULE_LIMIT": "200",
        "SOP_LOG_LEVEL": "DEBUG",
    }
    with patch.dict(os.environ, env, clear=True):
        cfg = load_engine_config()
    assert cfg.semantic_threshold == 0.9
    assert cfg.wildcard_payers == ("ALL_PAYERS", "ANY_PAYER")
    assert cfg.exclusive_actions == ("deny", "approve")
    assert cfg.low_severity_rule_limit == 200
    assert cfg.log_level == "DEBUG"


def test_unparsable_values_fall_back():
    env = {
        "SOP_KEYWORD_THRESHOLD": "high",
        "SOP_LOW_SEVERITY_RULE_LIMIT": "lots",
        "SOP_WILDCARD_PROVIDERS": " , ",
    }
    with patch.dict(os.environ, env, clear=True):
        cfg = load_engine_config()
    assert cfg.keyword_threshold == 0.6
    assert cfg.low_severity_rule_limit is None
    assert cfg.wildcard_providers == ("ALL_PROVIDERS",)
