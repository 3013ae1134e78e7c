"""
Input sanitization for client-supplied session metadata.

``device_info`` and ``user_agent`` come straight from the client and end
up in admin views, so they are bounded in size and stripped of control
characters and markup before storage.
"""
import re
import json
import logging
from typing import Any, Dict, Optional

from sessionguard.config import settings

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_SCRIPT_BLOCKS = re.compile(r"<(script|style)\b[^>]*>.*?(</\1\s*>|\Z)", re.IGNORECASE | re.DOTALL)
_TAGS = re.compile(r"</?[A-Za-z!/?][^<>]*>?")
_ANGLE_BRACKETS = re.compile(r"[<>]")
_WHITESPACE = re.compile(r"\s+")

MAX_KEY_LENGTH = 64
MAX_VALUE_LENGTH = 256


def sanitize_text(value: Any, max_length: int) -> Optional[str]:
    """Strip markup and control characters, collapse whitespace, truncate."""
    if value is None:
        return None
    text = _CONTROL_CHARS.sub("", str(value))
    text = _SCRIPT_BLOCKS.sub(" ", text)
    text = _TAGS.sub(" ", text)
    text = _ANGLE_BRACKETS.sub("", text)
    text = _WHITESPACE.sub(" ", text).strip()[:max_length].rstrip()
    return text or None


def _sanitize_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return sanitize_text(value, MAX_VALUE_LENGTH)
    # Nested structures are flattened to bounded text
    try:
        encoded = json.dumps(value, default=str, sort_keys=True)
    except (TypeError, ValueError):
        encoded = str(value)
    return sanitize_text(encoded, MAX_VALUE_LENGTH)


def sanitize_device_info(
    device_info: Optional[Dict[str, Any]],
    max_keys: int = settings.DEVICE_INFO_MAX_KEYS,
    max_length: int = settings.DEVICE_INFO_MAX_LENGTH,
) -> Dict[str, Any]:
    """
    Return a bounded, flat copy of ``device_info``.

    Keeps at most ``max_keys`` entries, and drops trailing entries until
    the serialized form fits in ``max_length`` characters.
    """
    if not device_info or not isinstance(device_info, dict):
        return {}

    cleaned: Dict[str, Any] = {}
    for raw_key, raw_value in device_info.items():
        if len(cleaned) >= max_keys:
            logger.debug(f"device_info truncated to {max_keys} keys")
            break
        key = sanitize_text(raw_key, MAX_KEY_LENGTH)
        if not key:
            continue
        cleaned[key] = _sanitize_value(raw_value)

    while cleaned and len(json.dumps(cleaned)) > max_length:
        cleaned.pop(next(reversed(cleaned)))

    return cleaned


def serialize_device_info(device_info: Optional[Dict[str, Any]]) -> str:
    """Sanitize and encode ``device_info`` for storage."""
    return json.dumps(sanitize_device_info(device_info))


def sanitize_user_agent(
    user_agent: Optional[str],
    max_length: int = settings.USER_AGENT_MAX_LENGTH,
) -> Optional[str]:
    return sanitize_text(user_agent, max_length)
