"""Merge engine folding catch-up batches and live events into local state.

The merge rule is an upsert keyed by record id that keeps the copy with the
newer ``updated_at`` (last-write-wins). Replaying a batch changes nothing,
and a catch-up response may be applied before or after overlapping live
events with the same result.
"""

import logging
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from ..hub.events import RecordCreated, RecordDeleted, RecordEvent, RecordUpdated
from ..store.records import Record

logger = logging.getLogger(__name__)

# Deleted ids remembered so stale upserts cannot resurrect them
MAX_REMEMBERED_DELETIONS = 10_000


@dataclass
class MergeResult:
    """What a single merge changed."""

    inserted: list[str] = field(default_factory=list)
    replaced: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    ignored: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.replaced or self.removed)


class SyncCoordinator:
    """Local replica of the record set.

    Not thread-safe: it is driven from a single execution context and
    processes merges in the order it receives them.
    """

    def __init__(
        self,
        on_new_record: Callable[[Record], None] | None = None,
        on_change: Callable[[MergeResult], None] | None = None,
    ):
        """Initialize the coordinator.

        Args:
            on_new_record: Called once per id the first time it is seen.
            on_change: Called after every merge that changed local state.
        """
        self._on_new_record = on_new_record
        self._on_change = on_change
        self._records: dict[str, Record] = {}
        self._deleted: OrderedDict[str, None] = OrderedDict()
        self._notified: set[str] = set()
        self._watermark: datetime | None = None

    # ==================== Merges ====================

    def apply_snapshot(
        self,
        records: Iterable[Record],
        as_of: datetime | None = None,
    ) -> MergeResult:
        """Fold in a full listing without raising new-record notifications.

        Used for the initial load, whose records are the baseline rather
        than news. Local records missing from the listing were deleted on
        the server and are dropped.

        Args:
            records: Every record on the server.
            as_of: Server watermark taken before the listing. Only local
                records last touched at or before it are dropped, so records
                that arrived live after the listing was taken survive. With
                None every unlisted record is dropped.

        Returns:
            What the merge changed.
        """
        records = list(records)
        listed = {record.id for record in records}
        missing = [
            record_id
            for record_id, record in self._records.items()
            if record_id not in listed and (as_of is None or record.updated_at <= as_of)
        ]
        for record in records:
            self._notified.add(record.id)

        result = self._merge(records, missing, source="snapshot")
        if result.removed:
            logger.info(f"Snapshot dropped {len(result.removed)} records deleted on the server")
        return result

    def apply_catchup(
        self,
        cutoff: datetime | None,
        records: Iterable[Record],
        deleted_ids: Iterable[str] = (),
    ) -> MergeResult:
        """Fold in a catch-up response.

        Args:
            cutoff: The watermark the query was issued with (for logging).
            records: Records created or updated after the cutoff.
            deleted_ids: Ids deleted after the cutoff, if the server reports
                tombstones.

        Returns:
            What the merge changed.
        """
        result = self._merge(list(records), list(deleted_ids), source="catch-up")
        logger.info(
            f"Catch-up since {cutoff.isoformat() if cutoff else 'the beginning'}: "
            f"{len(result.inserted)} new, {len(result.replaced)} updated, "
            f"{len(result.removed)} removed, {result.ignored} unchanged"
        )
        return result

    def apply_live_event(self, event: RecordEvent) -> MergeResult:
        """Fold in one broadcast event."""
        if isinstance(event, (RecordCreated, RecordUpdated)):
            return self._merge([event.record], (), source=event.kind.value)
        if isinstance(event, RecordDeleted):
            return self._merge((), [event.record_id], source=event.kind.value)
        raise TypeError(f"Unknown record event: {event!r}")

    def _merge(
        self,
        records: Iterable[Record],
        deleted_ids: Iterable[str],
        source: str,
    ) -> MergeResult:
        result = MergeResult()

        for record in records:
            outcome = self._upsert(record)
            if outcome == "inserted":
                result.inserted.append(record.id)
            elif outcome == "replaced":
                result.replaced.append(record.id)
            else:
                result.ignored += 1
            self._advance_watermark(record.updated_at)

        for record_id in deleted_ids:
            if self._remove(record_id):
                result.removed.append(record_id)

        # Notifications go out only once the merge has settled
        for record_id in result.inserted:
            if record_id in self._notified:
                continue
            self._notified.add(record_id)
            if self._on_new_record:
                self._on_new_record(self._records[record_id].copy())

        if result.changed:
            logger.debug(
                f"Merged {source}: +{len(result.inserted)} ~{len(result.replaced)} "
                f"-{len(result.removed)}; {len(self._records)} records"
            )
            if self._on_change:
                self._on_change(result)
        return result

    def _upsert(self, record: Record) -> str:
        if record.id in self._deleted:
            return "ignored"

        existing = self._records.get(record.id)
        if existing is None:
            self._records[record.id] = record.copy()
            return "inserted"

        if record.updated_at < existing.updated_at:
            return "ignored"
        if record == existing:
            return "ignored"

        self._records[record.id] = record.copy()
        return "replaced"

    def _remove(self, record_id: str) -> bool:
        self._deleted[record_id] = None
        self._deleted.move_to_end(record_id)
        while len(self._deleted) > MAX_REMEMBERED_DELETIONS:
            self._deleted.popitem(last=False)
        return self._records.pop(record_id, None) is not None

    def _advance_watermark(self, value: datetime) -> None:
        if self._watermark is None or value > self._watermark:
            self._watermark = value

    # ==================== Queries ====================

    @property
    def watermark(self) -> datetime | None:
        """Greatest ``updated_at`` seen so far."""
        return self._watermark

    @property
    def records(self) -> list[Record]:
        """Local records, most recently created first."""
        ordered = sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)
        return [r.copy() for r in ordered]

    def get(self, record_id: str) -> Record | None:
        record = self._records.get(record_id)
        return record.copy() if record else None

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def state(self) -> dict[str, Record]:
        """Id-keyed copy of local state, for comparisons."""
        return {rid: r.copy() for rid, r in self._records.items()}
