from __future__ import annotations

import json
import re
from typing import Any

_ANSI_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


def decode_json_payload(raw: str) -> Any:
    """Decode CLI output that may carry banner lines before the JSON document."""
    text = _ANSI_RE.sub("", raw or "").strip()
    if not text:
        raise ValueError("empty_output")

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    for marker in ("{", "["):
        start = text.find(marker)
        while start != -1:
            try:
                obj, end = decoder.raw_decode(text[start:])
            except json.JSONDecodeError:
                start = text.find(marker, start + 1)
                continue
            if text[start + end :].strip():
                start = text.find(marker, start + 1)
                continue
            return obj
    raise ValueError("invalid_json_from_cli")


def decode_json_object(raw: str) -> dict[str, Any]:
    decoded = decode_json_payload(raw)
    if isinstance(decoded, dict):
        return decoded
    raise ValueError("invalid_json_from_cli")


def as_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def clean_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None
