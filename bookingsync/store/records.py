"""Record model and its JSON representation."""

import copy
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..errors import RecordValidationError

# Keys owned by the store; payloads may not set them
RESERVED_FIELDS = frozenset({"id", "createdAt", "updatedAt"})


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive values are interpreted as UTC.

    Raises:
        ValueError: If the string is not ISO-8601.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a watermark as ISO-8601 UTC with a ``Z`` suffix."""
    return parse_timestamp(value).isoformat().replace("+00:00", "Z")


def validate_payload(fields: Any, partial: bool = False) -> dict[str, Any]:
    """Check mutation input before it reaches the store.

    Args:
        fields: Decoded request body.
        partial: True for PATCH-style changes, which may not be empty either
            but are applied on top of existing fields.

    Returns:
        A deep copy of the validated fields.

    Raises:
        RecordValidationError: If the input is not a non-empty mapping with
            string keys or touches a reserved field.
    """
    if not isinstance(fields, Mapping):
        raise RecordValidationError("Record fields must be a JSON object")
    if not fields:
        kind = "Changes" if partial else "Record fields"
        raise RecordValidationError(f"{kind} must not be empty")

    for key in fields:
        if not isinstance(key, str) or not key:
            raise RecordValidationError(f"Invalid field name: {key!r}")
        if key in RESERVED_FIELDS:
            raise RecordValidationError(f"Field '{key}' is managed by the server")

    return copy.deepcopy(dict(fields))


@dataclass(frozen=True)
class Record:
    """A stored record.

    ``created_at`` and ``updated_at`` are watermarks issued by the store's
    shared clock, so ``updated_at >= created_at`` always holds.
    """

    id: str
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to the flat wire representation."""
        data: dict[str, Any] = {"id": self.id}
        data.update(copy.deepcopy(self.payload))
        data["createdAt"] = format_timestamp(self.created_at)
        data["updatedAt"] = format_timestamp(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Record":
        """Create from the flat wire representation."""
        payload = {k: copy.deepcopy(v) for k, v in data.items() if k not in RESERVED_FIELDS}
        return cls(
            id=str(data["id"]),
            payload=payload,
            created_at=parse_timestamp(data["createdAt"]),
            updated_at=parse_timestamp(data["updatedAt"]),
        )

    def copy(self) -> "Record":
        """Return a copy whose payload can be mutated independently."""
        return Record(
            id=self.id,
            payload=copy.deepcopy(self.payload),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
