"""Thread-safe in-memory record store with watermark-based range queries."""

import logging
import threading
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from ..errors import RecordValidationError
from .clock import WatermarkClock
from .records import RESERVED_FIELDS, Record, parse_timestamp, validate_payload

logger = logging.getLogger(__name__)

Mutation = Mapping[str, Any] | Callable[[dict[str, Any]], None]


class RecordStore:
    """Authoritative keeper of mutable records.

    Every mutation is stamped by a single :class:`WatermarkClock`. Stamping
    and publishing the stamped record happen inside one critical section, so
    once a reader can see watermark ``W`` every record stamped at or before
    ``W`` is visible too. Mutation callbacks for one id run under that id's
    lock; different ids mutate in parallel.

    Deletes leave a tombstone that is kept for ``tombstone_retention``. A
    retention of zero disables tombstones entirely.
    """

    def __init__(
        self,
        clock: WatermarkClock | None = None,
        tombstone_retention: timedelta = timedelta(hours=1),
    ):
        """Initialize the store.

        Args:
            clock: Watermark source. A fresh wall-clock source if None.
            tombstone_retention: How long deletions stay queryable.
        """
        self.clock = clock or WatermarkClock()
        self.tombstone_retention = tombstone_retention
        self._records: dict[str, Record] = {}
        self._tombstones: dict[str, datetime] = {}
        self._publish_lock = threading.Lock()
        self._id_locks: dict[str, threading.Lock] = {}
        self._id_locks_guard = threading.Lock()

    def _lock_for(self, record_id: str) -> "threading.Lock | None":
        """Get the mutation lock for an existing record."""
        with self._id_locks_guard:
            if record_id not in self._records:
                return None
            lock = self._id_locks.get(record_id)
            if lock is None:
                lock = threading.Lock()
                self._id_locks[record_id] = lock
            return lock

    def add(self, payload: Mapping[str, Any]) -> Record:
        """Insert a new record.

        Args:
            payload: Record fields (without id or timestamps).

        Returns:
            A copy of the stored record.

        Raises:
            RecordValidationError: If the payload is malformed.
        """
        fields = validate_payload(payload)
        record_id = str(uuid.uuid4())

        with self._publish_lock:
            watermark = self.clock.issue()
            record = Record(
                id=record_id,
                payload=fields,
                created_at=watermark,
                updated_at=watermark,
            )
            with self._id_locks_guard:
                self._records[record_id] = record

        logger.debug(f"Added record {record_id} at {watermark.isoformat()}")
        return record.copy()

    def get(self, record_id: str) -> Record | None:
        """Get a record by id."""
        record = self._records.get(record_id)
        return record.copy() if record else None

    def update(self, record_id: str, mutation: Mutation) -> Record | None:
        """Apply a mutation to an existing record.

        Args:
            record_id: Id of the record to change.
            mutation: Either a mapping of changed fields or a callable that
                edits a copy of the payload in place.

        Returns:
            A copy of the updated record, or None if the id is unknown.

        Raises:
            RecordValidationError: If the changes are malformed. The stored
                record is left untouched.
        """
        if isinstance(mutation, Mapping):
            changes = validate_payload(mutation, partial=True)

            def apply(payload: dict[str, Any]) -> None:
                payload.update(changes)

        else:
            apply = mutation

        lock = self._lock_for(record_id)
        if lock is None:
            return None

        with lock:
            current = self._records.get(record_id)
            if current is None:
                return None

            payload = current.copy().payload
            apply(payload)
            touched = RESERVED_FIELDS.intersection(payload)
            if touched:
                raise RecordValidationError(
                    f"Field '{sorted(touched)[0]}' is managed by the server"
                )

            with self._publish_lock:
                if record_id not in self._records:
                    # Deleted while the mutation ran
                    return None
                record = Record(
                    id=record_id,
                    payload=payload,
                    created_at=current.created_at,
                    updated_at=self.clock.issue(),
                )
                self._records[record_id] = record

        logger.debug(f"Updated record {record_id} at {record.updated_at.isoformat()}")
        return record.copy()

    def delete(self, record_id: str) -> bool:
        """Remove a record.

        Returns:
            True if the record existed.
        """
        lock = self._lock_for(record_id)
        if lock is None:
            return False

        with lock:
            with self._publish_lock:
                record = self._records.pop(record_id, None)
                if record is None:
                    return False
                deleted_at = self.clock.issue()
                if self.tombstone_retention > timedelta(0):
                    self._tombstones[record_id] = deleted_at
                self._prune_tombstones(deleted_at)

        with self._id_locks_guard:
            self._id_locks.pop(record_id, None)

        logger.debug(f"Deleted record {record_id} at {deleted_at.isoformat()}")
        return True

    def get_all(self) -> list[Record]:
        """Snapshot of every record, most recently created first."""
        with self._publish_lock:
            records = list(self._records.values())
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.copy() for r in records]

    def get_since(self, watermark: datetime | str) -> list[Record]:
        """Records created or updated after a watermark.

        This is the catch-up primitive: a client that missed events while
        disconnected could have missed creations as well as updates.

        Args:
            watermark: Exclusive lower bound.

        Returns:
            Matching records ordered by ``created_at`` ascending.
        """
        since = parse_timestamp(watermark)
        with self._publish_lock:
            records = [
                r
                for r in self._records.values()
                if r.created_at > since or r.updated_at > since
            ]
        records.sort(key=lambda r: r.created_at)
        return [r.copy() for r in records]

    def get_deleted_since(self, watermark: datetime | str) -> list[str]:
        """Ids whose tombstone is newer than a watermark, oldest first."""
        since = parse_timestamp(watermark)
        with self._publish_lock:
            self._prune_tombstones(self.clock.current())
            deleted = [
                (deleted_at, record_id)
                for record_id, deleted_at in self._tombstones.items()
                if deleted_at > since
            ]
        deleted.sort()
        return [record_id for _, record_id in deleted]

    def watermark(self) -> datetime:
        """Current server time as a watermark.

        Every record stamped at or before the returned value is already
        visible to readers, and every later mutation is stamped after it.
        """
        with self._publish_lock:
            return self.clock.current()

    def _prune_tombstones(self, now: datetime) -> None:
        """Drop tombstones older than the retention window (lock held)."""
        if not self._tombstones:
            return
        cutoff = now - self.tombstone_retention
        expired = [rid for rid, ts in self._tombstones.items() if ts <= cutoff]
        for record_id in expired:
            del self._tombstones[record_id]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired tombstones")

    @property
    def count(self) -> int:
        """Number of live records."""
        return len(self._records)

    def clear(self) -> None:
        """Remove every record and tombstone."""
        with self._publish_lock:
            with self._id_locks_guard:
                self._records.clear()
                self._id_locks.clear()
            self._tombstones.clear()

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        return {
            "total_records": self.count,
            "tombstones": len(self._tombstones),
        }
