"""Base model and timestamp helpers shared by twin models.

Every wire-facing model inherits from :class:`TwinBaseModel` which
provides:

* ``alias_generator=to_camel`` so camelCase JSON keys map
  automatically to snake_case fields.
* Frozen instances, so snapshots handed between workers can never be
  mutated in place.

Timestamps on the wire may be epoch seconds, epoch milliseconds or ISO
8601 strings; :data:`UtcTimestamp` normalises all of them to tz-aware
UTC datetimes.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Convert an epoch (seconds **or** milliseconds) or ISO string to a UTC datetime.

    Returns ``None`` when the value is ``None`` or an empty string. Values
    that are not a timestamp, or lie outside the platform range, raise
    ``ValueError``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        stripped = value.strip()
        try:
            numeric = float(stripped)
        except ValueError:
            parsed = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
        value = numeric
    try:
        ts = float(value)
        if ts >= _MS_THRESHOLD:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    except (TypeError, OverflowError, OSError) as exc:
        # Pydantic only turns ValueError into a validation error.
        raise ValueError(f"invalid timestamp: {value!r}") from exc


UtcTimestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces epoch numbers and ISO strings to UTC datetimes."""


class TwinBaseModel(BaseModel):
    """Base for twin wire models (camelCase on the wire, snake_case in Python)."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump to a JSON-compatible dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
