"""Utility functions for parsing LLM responses."""
import json
import logging

import json_repair

logger = logging.getLogger(__name__)


def _preprocess_response(response: str) -> str:
    """Strip markdown fences and preamble; return content from the first '{' or '['."""
    response = (response or "").strip()
    if response.startswith("```json"):
        response = response[7:]
    if response.startswith("```"):
        response = response[3:]
    if response.endswith("```"):
        response = response[:-3]
    response = response.strip()
    starts = [i for i in (response.find("{"), response.find("[")) if i >= 0]
    if starts:
        response = response[min(starts):]
    return response


def _normalize_extraction(obj) -> dict:
    """Wrap a bare rule array as {"rules": [...]}; make sure "rules" is a list."""
    if isinstance(obj, list):
        obj = {"rules": obj}
    if not isinstance(obj, dict):
        raise ValueError(f"Expected a JSON object or array, got {type(obj).__name__}")
    rules = obj.get("rules")
    if rules is None:
        obj["rules"] = []
    elif isinstance(rules, dict):
        obj["rules"] = [rules]
    elif not isinstance(rules, list):
        obj["rules"] = []
    obj["rules"] = [r for r in obj["rules"] if isinstance(r, dict)]
    return obj


def _try_close_truncated_json(s: str) -> str:
    """If string looks truncated (ends with comma or incomplete key), append closing brackets."""
    s = s.rstrip()
    if not s or s[-1] in "}]":
        return s
    if s[-1] == '"':
        return s + '": null}]}'
    if s[-1] in ",:":
        return s + " null}]}"
    return s


def parse_json_response(response: str) -> dict:
    """Parse JSON from LLM response, handling markdown, preamble, and trailing text (extra data).
    Tries: 1) strict parse, 2) truncate at last closing bracket, 3) json_repair on full,
    4) close truncated and repair.
    Returns dict with at least "rules" (a list of dicts); raises only if nothing usable."""
    preprocessed = _preprocess_response(response)
    first_error = None

    try:
        obj, _ = json.JSONDecoder().raw_decode(preprocessed)
        return _normalize_extraction(obj)
    except json.JSONDecodeError as e:
        first_error = e
        logger.error("[extraction] Failed to parse JSON: %s", e)
        logger.error("[extraction] Response was: %s", (response or "")[:500])

    # Recover partial JSON by truncating at the last complete '}' / ']'
    last_close = max(preprocessed.rfind("}"), preprocessed.rfind("]"))
    if last_close > 0:
        partial = preprocessed[: last_close + 1]
        if partial.count("{") == partial.count("}") and partial.count("[") == partial.count("]"):
            try:
                obj, _ = json.JSONDecoder().raw_decode(partial)
                logger.warning("[extraction] Recovered partial JSON by truncating at last complete bracket")
                return _normalize_extraction(obj)
            except (json.JSONDecodeError, ValueError):
                pass

    for label, candidate in (("full", preprocessed), ("closed", _try_close_truncated_json(preprocessed))):
        if not candidate:
            continue
        try:
            obj = json_repair.loads(candidate)
        except (ValueError, TypeError, RecursionError) as repair_err:
            logger.debug("[extraction] json_repair on %s failed: %s", label, repair_err)
            continue
        if isinstance(obj, (dict, list)) and obj:
            logger.warning("[extraction] Recovered JSON using json_repair (%s) after strict parse failed", label)
            return _normalize_extraction(obj)

    if first_error is not None:
        raise first_error
    raise ValueError("Failed to parse JSON")
