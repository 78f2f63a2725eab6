from __future__ import annotations

import base64
import binascii
import json
from typing import Any


def decode_jwt_payload(token: str) -> dict[str, Any]:
    if not token:
        return {}
    parts = token.split(".")
    if len(parts) < 2:
        return {}
    payload_b64 = parts[1]
    padding = "=" * (-len(payload_b64) % 4)
    try:
        payload_bytes = base64.urlsafe_b64decode(payload_b64 + padding)
        decoded = json.loads(payload_bytes.decode("utf-8"))
    except (ValueError, json.JSONDecodeError, binascii.Error):
        return {}
    return decoded if isinstance(decoded, dict) else {}
