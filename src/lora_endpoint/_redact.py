"""Helpers for safe debug logging.

Rotation messages carry private key material and the configuration carries
HTTP and broker passwords. Everything passed to a DEBUG log call that may
contain either goes through :func:`redact_for_log` first.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "authorization",
        "credentials",
        "data",
        "key",
        "mqtt_broker",
        "password",
        "tls_key",
    }
)


def _mask(value: Any) -> str:
    if value is None:
        return "<none>"
    if isinstance(value, (str, bytes, bytearray)):
        return f"<redacted:{len(value)}>"
    return "<redacted>"


def redact_for_log(value: Any, *, max_string: int = 256, _depth: int = 0) -> Any:
    """Return a copy of *value* with secrets masked and long strings cut."""
    if _depth > 16:
        return "<max-depth>"

    if isinstance(value, Mapping):
        return {
            str(k): _mask(v) if str(k).lower() in _SECRET_KEYS else redact_for_log(
                v, max_string=max_string, _depth=_depth + 1
            )
            for k, v in value.items()
        }

    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if value is None or isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, Sequence):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)
