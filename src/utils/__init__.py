from .json_payload import decode_json_object, decode_json_payload
from .jwt import decode_jwt_payload
from .timefmt import format_iso8601, parse_iso8601

__all__ = [
    "decode_json_object",
    "decode_json_payload",
    "decode_jwt_payload",
    "format_iso8601",
    "parse_iso8601",
]
