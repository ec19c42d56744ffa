"""Pytest fixtures for the SOP rule engine tests."""
import pytest
from fastapi.testclient import TestClient

from sop_engine.config import LOOKUP_SEED_PATH
from sop_engine.domain import Rule
from sop_engine.engine_config import EngineConfig
from sop_engine.main import app
from sop_engine.services.lookup_registry import LookupRegistry


@pytest.fixture
def client() -> TestClient:
    """FastAPI test client."""
    return TestClient(app)


@pytest.fixture
def registry() -> LookupRegistry:
    """Fresh registry loaded from the seed YAML (mutations do not leak between tests)."""
    return LookupRegistry.from_yaml(LOOKUP_SEED_PATH)


@pytest.fixture
def config() -> EngineConfig:
    """Default engine constants, independent of SOP_* variables in the environment."""
    return EngineConfig()


@pytest.fixture
def mod25_rule() -> dict:
    """Minimal valid rule: modifier 25 on minor-procedure E&M visits for BCBS."""
    return {
        "rule_id": "AU-MOD25-0001",
        "code": "@E&M_MINOR_PROC",
        "action": "@ADD(@25)",
        "payer_group": "@BCBS",
        "provider_group": "@PHYSICIAN_MD_DO",
        "description": "For @BCBS payers, @ADD(@25).",
        "effective_date": "2024-01-01",
    }


def make_rule(rule_id: str, code: str = "99213", action: str = "@ADD(@25)", payer: str = "@BCBS",
              provider: str = "@PHYSICIAN_MD_DO", **extra) -> Rule:
    return Rule(
        rule_id=rule_id,
        code=code,
        action=action,
        payer_group=payer,
        provider_group=provider,
        description=f"For {payer} payers, {action}.",
        effective_date="2024-01-01",
        **extra,
    )
