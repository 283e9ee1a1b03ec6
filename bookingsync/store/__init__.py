"""Authoritative in-memory record store.

Assigns a monotonic watermark to every mutation and answers the point and
range queries that reconnecting clients use to catch up.
"""

from .clock import WatermarkClock
from .record_store import RecordStore
from .records import Record, format_timestamp, parse_timestamp, validate_payload

__all__ = [
    "Record",
    "RecordStore",
    "WatermarkClock",
    "format_timestamp",
    "parse_timestamp",
    "validate_payload",
]
