"""Turn untrusted client input into a ``RequestObservation``.

Every attribute is optional. A value that cannot be coerced into the
expected type is treated as absent rather than rejected.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .models import ClientAttributes, RequestObservation

logger = logging.getLogger(__name__)

FINGERPRINT_HEADER = "x-device-fingerprint"
MAX_TEXT_LENGTH = 1024
MAX_LIST_ITEMS = 512
MAX_DIGITS = 18

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        value = value.strip()
        return value[:MAX_TEXT_LENGTH] if value else None
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        return str(value)
    if isinstance(value, int) and abs(value) < 10**MAX_DIGITS:
        return str(value)
    return None


def _flag(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    return None


def _integer(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value) if value >= 0 else None
    if isinstance(value, str):
        value = value.strip()
        # str.isdigit also accepts non-ASCII digits that int() rejects
        if value.isascii() and value.isdigit() and len(value) <= MAX_DIGITS:
            return int(value)
    return None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


def _strings(value: Any) -> Optional[Tuple[str, ...]]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return None
    items = [_text(item) for item in value[:MAX_LIST_ITEMS]]
    return tuple(item for item in items if item is not None)


def _screen(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        width, height = _integer(value.get("width")), _integer(value.get("height"))
        if width is None or height is None:
            return None
        return f"{width}x{height}"
    if isinstance(value, (list, tuple)) and len(value) == 2:
        width, height = _integer(value[0]), _integer(value[1])
        if width is None or height is None:
            return None
        return f"{width}x{height}"
    return _text(value)


_PARSERS: Dict[str, Tuple[Tuple[str, ...], Callable[[Any], Any]]] = {
    "timezone": (("timezone",), _text),
    "screen_resolution": (("screen_resolution", "screenResolution"), _screen),
    "platform": (("platform",), _text),
    "plugins": (("plugins",), _strings),
    "fonts": (("fonts",), _strings),
    "canvas": (("canvas",), _text),
    "webgl": (("webgl",), _text),
    "audio": (("audio", "audioContext"), _text),
    "touch_support": (("touch_support", "touchSupport"), _flag),
    "hardware_concurrency": (("hardware_concurrency", "hardwareConcurrency"), _integer),
    "device_memory": (("device_memory", "deviceMemory"), _number),
    "connection": (("connection",), _text),
    "cookies_enabled": (("cookies_enabled", "cookieEnabled"), _flag),
    "do_not_track": (("do_not_track", "doNotTrack"), _flag),
    "color_depth": (("color_depth", "colorDepth"), _integer),
    "accept_language": (("accept_language", "acceptLanguage"), _text),
    "accept_encoding": (("accept_encoding", "acceptEncoding"), _text),
}


def parse_client_attributes(payload: Any) -> ClientAttributes:
    """Build attributes from a loosely-typed mapping, dropping anything malformed."""
    if not isinstance(payload, Mapping):
        return ClientAttributes()

    values: Dict[str, Any] = {}
    for name, (keys, parse) in _PARSERS.items():
        for key in keys:
            if key in payload:
                values[name] = parse(payload[key])
                break
    return ClientAttributes(**values)


def decode_client_header(value: Optional[str]) -> Dict[str, Any]:
    """Decode the base64 JSON fingerprint header. Undecodable input yields ``{}``."""
    if not value:
        return {}
    try:
        decoded = json.loads(base64.b64decode(value, validate=False).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError, RecursionError):
        logger.debug("Ignoring undecodable %s header", FINGERPRINT_HEADER)
        return {}
    return decoded if isinstance(decoded, dict) else {}


def observation_from_headers(origin: Optional[str], headers: Mapping[str, str]) -> RequestObservation:
    """Assemble an observation from transport headers and the client fingerprint header."""
    lowered = {str(key).lower(): value for key, value in headers.items()}
    payload = decode_client_header(lowered.get(FINGERPRINT_HEADER))

    # transport headers win over the client-declared copies
    for header, key, alias in (
        ("accept-language", "accept_language", "acceptLanguage"),
        ("accept-encoding", "accept_encoding", "acceptEncoding"),
        ("dnt", "do_not_track", "doNotTrack"),
    ):
        if header in lowered:
            payload.pop(alias, None)
            payload[key] = lowered[header]

    return RequestObservation(
        origin=(origin or "unknown").strip() or "unknown",
        identifier=(lowered.get("user-agent") or "").strip(),
        attributes=parse_client_attributes(payload),
    )
