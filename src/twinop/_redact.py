"""Helpers for safe debug logging.

The operator carries store tokens and broker passwords in its config and
logs twin documents and device reports at DEBUG. :func:`redact_for_log`
masks credentials before any of that reaches a log record.
"""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

# Keys are compared lowercased with ``_`` and ``-`` removed.
_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "mqttpassword",
        "token",
        "storetoken",
        "accesstoken",
        "bearertoken",
        "secret",
        "clientsecret",
        "apikey",
        "authorization",
        "cookie",
    }
)

_URL_USERINFO = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/@\s]+@", re.IGNORECASE)

_MAX_DEPTH = 20


def _is_sensitive(key: str) -> bool:
    return key.lower().replace("_", "").replace("-", "") in _SENSITIVE_KEYS


def _redact_string(value: str, max_string: int) -> str:
    value = _URL_USERINFO.sub(r"\g<scheme><redacted>@", value)
    if len(value) > max_string:
        return f"{value[:max_string]}…<truncated>"
    return value


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a copy of *value* with credentials masked.

    Mappings, sequences, dataclasses (the operator config) and pydantic
    models (twins, reports) are walked recursively. Credentials embedded
    in URLs (``mqtt://user:pw@host``) are masked as well.
    """
    if _depth > _MAX_DEPTH:
        return "<max-depth>"

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _redact_string(value, max_string)
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True)
    elif dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}

    if isinstance(value, Mapping):
        return {
            str(k): "<redacted>"
            if _is_sensitive(str(k)) and v is not None
            else redact_for_log(v, max_string=max_string, _depth=_depth + 1)
            for k, v in value.items()
        }

    if isinstance(value, Sequence):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)
