"""Extracting structured answers from free-form model output."""

import json
import re
from typing import Any, Dict, Iterable, List, Optional

from clinicflow.constants import Urgency

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_STRING_FIELD = r'"{name}"\s*:\s*"((?:[^"\\]|\\.)*)"'
_ARRAY_FIELD = r'"{name}"\s*:\s*\[(.*?)(?:\]|$)'
_QUOTED_ITEM_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the JSON object embedded in text, or None if there is no well-formed one."""
    if not text:
        return None

    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        candidate = candidate.strip()
        if not candidate.startswith("{"):
            continue
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except json.JSONDecodeError:
        return value


def salvage_fields(text: str, string_fields: Iterable[str], list_fields: Iterable[str] = ()) -> Dict[str, Any]:
    """
    Pull individual fields out of truncated or otherwise broken JSON.

    Only fields that can be read unambiguously are returned.
    """
    if not text:
        return {}

    found: Dict[str, Any] = {}
    for name in string_fields:
        match = re.search(_STRING_FIELD.format(name=re.escape(name)), text)
        if match:
            found[name] = _unescape(match.group(1))

    for name in list_fields:
        match = re.search(_ARRAY_FIELD.format(name=re.escape(name)), text, re.DOTALL)
        if match:
            found[name] = [_unescape(item) for item in _QUOTED_ITEM_RE.findall(match.group(1))]
        else:
            match = re.search(_STRING_FIELD.format(name=re.escape(name)), text)
            if match:
                found[name] = [_unescape(match.group(1))]
    return found


def coerce_urgency(value: Any) -> Urgency:
    """Map whatever the model said about urgency onto the Low/Moderate/High scale."""
    if isinstance(value, Urgency):
        return value
    text = str(value or "").strip().lower()
    if any(word in text for word in ("high", "urgent", "emergency", "critical")):
        return Urgency.HIGH
    if any(word in text for word in ("low", "routine")):
        return Urgency.LOW
    return Urgency.MODERATE


def coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "; ".join(str(v).strip() for v in value if str(v).strip())
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value).strip()


def coerce_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [str(value)]
