"""LLM provider abstraction for the rule-extraction boundary.

To add a backend:
1. Subclass LLMProvider and implement generate().
2. Call register_provider("name", factory) where factory is a callable (config_dict) -> LLMProvider.
3. Set LLM_PROVIDER=name.
"""
from abc import ABC, abstractmethod
from typing import Callable, Dict, Any
import asyncio
import json
import logging
import urllib.error
import urllib.request

from sop_engine.errors import ConfigurationError, ExtractionError

logger = logging.getLogger(__name__)

# Registry: provider name -> factory(config: dict) -> LLMProvider
_PROVIDER_REGISTRY: Dict[str, Callable[[Dict[str, Any]], "LLMProvider"]] = {}


def register_provider(name: str, factory: Callable[[Dict[str, Any]], "LLMProvider"]) -> None:
    """Register an LLM provider. factory(config_dict) must return an LLMProvider instance."""
    name = (name or "").lower().strip()
    if not name:
        raise ValueError("Provider name must be non-empty")
    _PROVIDER_REGISTRY[name] = factory


def list_providers() -> list[str]:
    """Return registered provider names."""
    return sorted(_PROVIDER_REGISTRY.keys())


class LLMProvider(ABC):
    """Abstract base class for LLM providers. One call, one complete response."""

    @abstractmethod
    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate complete LLM response (non-streaming)."""
        pass


def _ollama_request(base_url: str, model: str, prompt: str, **kwargs) -> tuple[str | None, str | None]:
    """Blocking Ollama HTTP request. Returns (error_msg, None) on failure or (None, response) on success."""
    req_data = {"model": model, "prompt": prompt, "stream": False, "format": "json", **kwargs}
    data = json.dumps(req_data).encode("utf-8")
    req = urllib.request.Request(
        f"{base_url.rstrip('/')}/api/generate",
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=300) as resp:
            body = resp.read().decode("utf-8")
            d = json.loads(body)
            return (None, d.get("response", ""))
    except urllib.error.HTTPError as e:
        try:
            err_body = e.read().decode("utf-8")
        except (OSError, UnicodeDecodeError):
            err_body = ""
        return (f"Ollama API error: {e.code} - {err_body}", None)
    except (urllib.error.URLError, OSError, json.JSONDecodeError) as e:
        return (str(e), None)


class OllamaProvider(LLMProvider):
    """Ollama provider for local development. Uses urllib (no aiohttp)."""

    def __init__(self, base_url: str = "http://localhost:11434", model: str = "llama3.1:8b", num_predict: int = 8192):
        self.base_url = base_url
        self.model = model
        self.num_predict = num_predict

    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate complete response from Ollama. The blocking request runs in the default executor."""
        opts = {"num_predict": self.num_predict}
        if "options" in kwargs:
            opts = {**opts, **kwargs.pop("options")}
        loop = asyncio.get_running_loop()
        err, response = await loop.run_in_executor(
            None,
            lambda: _ollama_request(self.base_url, self.model, prompt, options=opts, **kwargs),
        )
        if err:
            raise ExtractionError(err)
        return response or ""


def _ollama_factory(config: Dict[str, Any]) -> "LLMProvider":
    """Build OllamaProvider from config dict (for registry)."""
    ollama = config.get("ollama") or {}
    from sop_engine.config import OLLAMA_BASE_URL, OLLAMA_MODEL, OLLAMA_NUM_PREDICT
    base_url = ollama.get("base_url") or OLLAMA_BASE_URL
    model = config.get("model") or OLLAMA_MODEL
    options = config.get("options") or {}
    num_predict = options.get("num_predict")
    if num_predict is None:
        num_predict = OLLAMA_NUM_PREDICT
    return OllamaProvider(base_url=base_url, model=model, num_predict=int(num_predict))


def _openai_factory(config: Dict[str, Any]) -> "LLMProvider":
    """Build OpenAIProvider from config dict (for registry)."""
    from sop_engine.services.llm_provider_openai import OpenAIProvider
    openai_config = config.get("openai") or {}
    api_key = openai_config.get("api_key")
    if not api_key or (isinstance(api_key, str) and not api_key.strip()):
        raise ConfigurationError("OpenAI requires api_key (OPENAI_API_KEY)")
    model = config.get("model") or "gpt-4o-mini"
    base_url = openai_config.get("base_url")
    return OpenAIProvider(api_key=api_key, model=model, base_url=base_url)


register_provider("ollama", _ollama_factory)
register_provider("openai", _openai_factory)


def get_llm_provider() -> LLMProvider:
    """Get LLM provider based on environment configuration (config.py)."""
    from sop_engine.config import (
        LLM_PROVIDER,
        OLLAMA_BASE_URL,
        OLLAMA_MODEL,
        OLLAMA_NUM_PREDICT,
        OPENAI_API_KEY,
        OPENAI_MODEL,
        OPENAI_BASE_URL,
    )
    provider_name = (LLM_PROVIDER or "").lower()
    cfg = {
        "provider": provider_name,
        "model": OLLAMA_MODEL if provider_name == "ollama" else OPENAI_MODEL,
        "options": {"num_predict": OLLAMA_NUM_PREDICT} if provider_name == "ollama" else {},
        "ollama": {"base_url": OLLAMA_BASE_URL},
        "openai": {"api_key": OPENAI_API_KEY, "base_url": OPENAI_BASE_URL},
    }
    factory = _PROVIDER_REGISTRY.get(provider_name)
    if factory:
        return factory(cfg)
    raise ConfigurationError(f"Unknown LLM provider: {LLM_PROVIDER}. Registered: {list_providers()}")
