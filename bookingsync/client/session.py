"""Synchronizing client session.

Wires a :class:`ConnectionManager`, a :class:`SyncCoordinator` and a
:class:`RecordsClient` onto one :class:`SerialExecutor`: live events are
merged as they arrive, and every sync-required signal runs a catch-up query
whose response is merged on the same context.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ..config import ClientConfig
from ..errors import SyncError
from ..hub.events import RecordEvent
from ..store.records import Record
from .api import CatchupResponse, RecordsClient, SnapshotResponse
from .connection import ConnectionInfo, ConnectionManager, ReconnectPolicy
from .coordinator import MergeResult, SyncCoordinator
from .executor import SerialExecutor
from .transport import Transport, WebSocketTransport

logger = logging.getLogger(__name__)

# Pending-cutoff marker meaning "no catch-up queued"
_NOTHING = object()


class SyncSession:
    """A client that keeps a local replica converged with the server."""

    def __init__(
        self,
        config: ClientConfig,
        transport: Transport | None = None,
        api: RecordsClient | None = None,
        on_new_record: Callable[[Record], None] | None = None,
        on_sync_error: Callable[[SyncError], None] | None = None,
        on_state_change: Callable[[ConnectionInfo], None] | None = None,
        on_records_changed: Callable[[MergeResult], None] | None = None,
    ):
        """Initialize the session.

        Args:
            config: Client configuration.
            transport: Persistent channel. A WebSocket to ``config.ws_url`` if None.
            api: REST client. One for ``config.server_url`` if None.
            on_new_record: Called once for every newly seen record.
            on_sync_error: Called with every failed catch-up attempt.
            on_state_change: Called with connection state snapshots.
            on_records_changed: Called after every merge that changed state.
        """
        self.config = config
        self.executor = SerialExecutor()
        self.api = api or RecordsClient(config.server_url, timeout=config.catchup_timeout_seconds)
        self.policy = ReconnectPolicy.from_config(config)
        self._on_sync_error = on_sync_error

        self.coordinator = SyncCoordinator(
            on_new_record=on_new_record,
            on_change=on_records_changed,
        )
        self.connection = ConnectionManager(
            transport or WebSocketTransport(config.ws_url),
            executor=self.executor,
            policy=self.policy,
            on_sync_required=self._handle_sync_required,
            on_state_change=on_state_change,
            on_event=self._handle_event,
            keepalive_interval=config.keepalive_interval_seconds,
            server_timeout=config.server_timeout_seconds,
            sync_overlap=config.sync_overlap_seconds,
            focus_check_delay=config.focus_check_delay_seconds,
        )

        self._catchup_task: asyncio.Task | None = None
        self._catchup_timer: asyncio.Task | None = None
        self._catchup_cutoff: Any = _NOTHING
        self._pending_cutoff: Any = _NOTHING
        self._catchup_attempts = 0
        self.syncing = False
        self.last_sync_error: SyncError | None = None

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start the executor and begin connecting."""
        await self.executor.start()
        await self.connection.start()
        logger.info(f"Sync session started against {self.config.server_url}")

    async def stop(self) -> None:
        """Tear down the transport and cancel all pending work."""
        await self.connection.stop()
        for task in (self._catchup_task, self._catchup_timer):
            if task is not None:
                task.cancel()
        await self.executor.stop()
        self._catchup_task = self._catchup_timer = None
        self._catchup_cutoff = self._pending_cutoff = _NOTHING
        self.syncing = False
        logger.info("Sync session stopped")

    # ==================== Host Signals ====================

    def notify_visibility(self, visible: bool) -> None:
        self.connection.notify_visibility(visible)

    def notify_focus(self) -> None:
        self.connection.notify_focus()

    def notify_online(self) -> None:
        self.connection.notify_online()

    def trigger_sync(self) -> None:
        self.connection.trigger_sync()

    async def load(self) -> list[Record]:
        """Fetch a full listing and merge it as a baseline.

        Raises:
            SyncError: If the listing could not be fetched.
        """
        snapshot = await self.api.get_snapshot()
        await self.executor.submit(
            self.coordinator.apply_snapshot, snapshot.records, snapshot.server_time
        )
        return self.records

    # ==================== Local State ====================

    @property
    def records(self) -> list[Record]:
        return self.coordinator.records

    @property
    def watermark(self) -> datetime | None:
        return self.coordinator.watermark

    @property
    def connection_info(self) -> ConnectionInfo:
        return self.connection.info

    async def wait_idle(self) -> None:
        """Wait until every queued event has been handled."""
        await self.executor.drain()

    # ==================== Event Handling ====================

    def _handle_event(self, event: RecordEvent) -> None:
        self.coordinator.apply_live_event(event)

    def _handle_sync_required(self, cutoff: datetime | None) -> None:
        if self._catchup_cutoff is not _NOTHING:
            # One catch-up at a time; widen the follow-up to cover both
            self._pending_cutoff = _earliest(self._pending_cutoff, cutoff)
            logger.debug("Catch-up already running, queued another")
            return
        self._start_catchup(cutoff)

    def _start_catchup(self, cutoff: datetime | None) -> None:
        self._catchup_cutoff = cutoff
        self._catchup_timer = None
        self.syncing = True
        self._catchup_task = self.executor.spawn(
            self._fetch(cutoff),
            lambda result, exc: self._handle_catchup_result(cutoff, result, exc),
        )

    async def _fetch(self, cutoff: datetime | None) -> SnapshotResponse | CatchupResponse:
        timeout = self.config.catchup_timeout_seconds
        try:
            if cutoff is None:
                return await asyncio.wait_for(self.api.get_snapshot(), timeout)
            return await asyncio.wait_for(self.api.get_since(cutoff), timeout)
        except asyncio.TimeoutError as e:
            raise SyncError(f"Catch-up timed out after {timeout}s") from e

    def _handle_catchup_result(
        self,
        cutoff: datetime | None,
        result: SnapshotResponse | CatchupResponse | None,
        exc: BaseException | None,
    ) -> None:
        self._catchup_task = None

        if exc is not None:
            error = exc if isinstance(exc, SyncError) else SyncError(str(exc))
            self.last_sync_error = error
            logger.error(f"Sync failed: {error}")
            if self._on_sync_error:
                self._on_sync_error(error)

            if error.retryable:
                delay = self.policy.delay_for(self._catchup_attempts)
                self._catchup_attempts += 1
                logger.warning(f"Retrying catch-up in {delay}s (attempt {self._catchup_attempts})")
                self._catchup_timer = self.executor.call_later(
                    delay, self._handle_catchup_retry_due, cutoff
                )
                return
            self._catchup_attempts = 0
            self._finish_catchup()
            return

        self.last_sync_error = None
        self._catchup_attempts = 0
        if isinstance(result, CatchupResponse):
            self.coordinator.apply_catchup(cutoff, result.records, result.deleted_ids)
        else:
            self.coordinator.apply_snapshot(result.records, result.server_time)
        self._finish_catchup()

    def _handle_catchup_retry_due(self, cutoff: datetime | None) -> None:
        # A follow-up queued meanwhile may reach further back
        cutoff = _earliest(cutoff, self._pending_cutoff)
        self._pending_cutoff = _NOTHING
        self._start_catchup(cutoff)

    def _finish_catchup(self) -> None:
        self._catchup_cutoff = _NOTHING
        if self._pending_cutoff is not _NOTHING:
            cutoff, self._pending_cutoff = self._pending_cutoff, _NOTHING
            self._start_catchup(cutoff)
            return
        self.syncing = False


def _earliest(a: Any, b: Any) -> Any:
    """Earlier of two cutoffs; None (full snapshot) covers everything."""
    if a is _NOTHING:
        return b
    if b is _NOTHING:
        return a
    if a is None or b is None:
        return None
    return min(a, b)
