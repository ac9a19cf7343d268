"""Tolerant JSON parsing for oracle output."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)
# "" opening a key/value: after a delimiter, before a non-delimiter
_DOUBLED_OPEN = re.compile(r'(?<=[\{\[,:\s])""(?=[^\s,\}\]:"])')
# "" closing a key/value: after a non-delimiter, before a delimiter
_DOUBLED_CLOSE = re.compile(r'(?<=[^\s\{\[,:"])""(?=\s*[,\}\]:])')
_TRAILING_COMMA = re.compile(r",\s*([\}\]])")


def _token(value: str) -> str:
    return value.strip().lower().replace("_", "-").replace(" ", "-")


@dataclass(frozen=True)
class PhaseSchema:
    """Required top-level keys (and their types) of one oracle reply.

    ``choices`` restricts string keys to an enumeration, compared after
    lowercasing and turning spaces and underscores into hyphens.
    """
    name: str
    required: Dict[str, Tuple[type, ...]] = field(default_factory=dict)
    choices: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    def validate(self, payload: Any) -> bool:
        if not isinstance(payload, dict) or not payload:
            return False
        for key, types in self.required.items():
            if key not in payload:
                return False
            if not isinstance(payload[key], types):
                return False
        for key, allowed in self.choices.items():
            value = payload.get(key)
            if not isinstance(value, str) or _token(value) not in allowed:
                return False
        return True


def parse_json_payload(text: str) -> Dict[str, Any] | None:
    if not text:
        return None
    try:
        data = json.loads(text)
        return data if isinstance(data, dict) else None
    except ValueError:
        pass
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    blob = text[start:end + 1]
    try:
        data = json.loads(blob)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def sanitize(text: str) -> str:
    cleaned = _FENCE.sub("", text or "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start:end + 1]
    cleaned = _DOUBLED_OPEN.sub('"', cleaned)
    cleaned = _DOUBLED_CLOSE.sub('"', cleaned)
    cleaned = _TRAILING_COMMA.sub(r"\1", cleaned)
    return cleaned


def repair_json(text: str, schema: PhaseSchema | None = None) -> Dict[str, Any] | None:
    """Best-effort structural repair; returns a payload only if it parses and validates."""
    if not text:
        return None
    payload = parse_json_payload(sanitize(text))
    if payload is None:
        return None
    if schema is not None and not schema.validate(payload):
        return None
    if not payload:
        return None
    return payload
