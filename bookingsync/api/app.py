"""FastAPI application: REST record surface and the persistent event channel."""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query, Request, Response, WebSocket
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketDisconnect

from ..config import Config
from ..errors import RecordValidationError
from ..hub import BroadcastHub, MessageType, Observer, RecordCreated, RecordDeleted, RecordUpdated
from ..hub.events import encode_pong, make_message
from ..store import RecordStore, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)


def create_app(
    config: Config,
    store: RecordStore | None = None,
    hub: BroadcastHub | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Application configuration.
        store: Record store. A fresh one built from config if None.
        hub: Broadcast hub. A fresh one sharing the store's clock if None.

    Returns:
        Configured FastAPI application.
    """
    if store is None:
        store = RecordStore(
            tombstone_retention=timedelta(seconds=config.store.tombstone_retention_seconds)
        )
    if hub is None:
        hub = BroadcastHub(clock=store.watermark, default_group=config.server.default_group)

    app = FastAPI(
        title="bookingsync",
        description="Booking records with real-time fan-out and watermark catch-up",
        version="0.1.0",
    )

    # Store references for route handlers
    app.state.config = config
    app.state.store = store
    app.state.hub = hub

    @app.exception_handler(RecordValidationError)
    async def validation_error_handler(request: Request, exc: RecordValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    def _not_found(record_id: str) -> HTTPException:
        return HTTPException(status_code=404, detail=f"Record {record_id} not found")

    # ==================== Record Routes ====================

    @app.get("/records")
    async def list_records(response: Response) -> list[dict[str, Any]]:
        """All records, most recently created first.

        The ``X-Server-Time`` header carries a watermark taken before the
        listing; every record stamped at or before it is included.
        """
        response.headers["X-Server-Time"] = format_timestamp(store.watermark())
        return [r.to_dict() for r in store.get_all()]

    @app.get("/records/since")
    async def records_since(
        since: datetime = Query(..., description="Exclusive ISO-8601 watermark"),
    ) -> dict[str, Any]:
        """Records created or updated after a watermark, for catch-up."""
        cutoff = parse_timestamp(since)
        # Taken first: everything stamped at or before it is in the result
        server_time = store.watermark()
        records = store.get_since(cutoff)
        deleted_ids = store.get_deleted_since(cutoff)

        logger.info(
            f"Catch-up since {format_timestamp(cutoff)}: "
            f"{len(records)} records, {len(deleted_ids)} deletions"
        )
        return {
            "records": [r.to_dict() for r in records],
            "deletedIds": deleted_ids,
            "serverTime": format_timestamp(server_time),
            "totalCount": len(records),
        }

    @app.get("/records/{record_id}")
    async def get_record(record_id: str) -> dict[str, Any]:
        record = store.get(record_id)
        if record is None:
            raise _not_found(record_id)
        return record.to_dict()

    @app.post("/records", status_code=201)
    async def create_record(fields: dict[str, Any] = Body(...)) -> dict[str, Any]:
        """Create a record and broadcast it."""
        record = store.add(fields)
        logger.info(f"Record created: {record.id}")
        hub.broadcast(RecordCreated(record))
        return record.to_dict()

    @app.patch("/records/{record_id}")
    async def update_record(
        record_id: str,
        changes: dict[str, Any] = Body(...),
    ) -> dict[str, Any]:
        """Apply a partial update and broadcast the result."""
        record = store.update(record_id, changes)
        if record is None:
            raise _not_found(record_id)
        logger.info(f"Record {record_id} updated: {', '.join(sorted(changes))}")
        hub.broadcast(RecordUpdated(record))
        return record.to_dict()

    @app.delete("/records/{record_id}", status_code=204)
    async def delete_record(record_id: str) -> Response:
        """Delete a record and broadcast the deletion."""
        if not store.delete(record_id):
            raise _not_found(record_id)
        logger.info(f"Record {record_id} deleted")
        hub.broadcast(RecordDeleted(record_id))
        return Response(status_code=204)

    # ==================== Monitoring ====================

    @app.get("/stats")
    async def stats() -> dict[str, Any]:
        """Store and connection statistics."""
        return {
            "totalRecords": store.count,
            "connections": hub.connection_count,
            "serverTime": format_timestamp(store.watermark()),
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness probe."""
        return {
            "status": "ok",
            "timestamp": format_timestamp(store.watermark()),
        }

    # ==================== Persistent Channel ====================

    async def _pump(websocket: WebSocket, observer: Observer) -> None:
        """Drain the observer's queue onto the socket."""
        while True:
            message = await observer.next_message()
            try:
                await websocket.send_text(json.dumps(message))
            except (WebSocketDisconnect, RuntimeError):
                return

    def _handle_client_message(observer: Observer, raw: str) -> None:
        try:
            message = json.loads(raw)
            msg_type = MessageType(message["type"])
            data = message.get("data") or {}
            if not isinstance(data, dict):
                raise TypeError(f"data must be an object, not {type(data).__name__}")
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError):
            observer.deliver(make_message(MessageType.ERROR, {"message": "malformed message"}))
            return

        if msg_type is MessageType.PING:
            observer.deliver(encode_pong(hub.ping()))
        elif msg_type is MessageType.VISIBILITY:
            is_visible = bool(data.get("isVisible"))
            logger.info(
                f"Client {observer.connection_id} visibility changed: "
                f"{'Visible' if is_visible else 'Hidden'}"
            )
            observer.deliver(
                make_message(
                    MessageType.VISIBILITY_ACK,
                    {
                        "isVisible": is_visible,
                        "serverTime": format_timestamp(store.watermark()),
                    },
                )
            )
        elif msg_type is MessageType.STATS:
            observer.deliver(
                make_message(
                    MessageType.STATS,
                    {
                        "totalConnections": hub.connection_count,
                        "serverTime": format_timestamp(store.watermark()),
                    },
                )
            )
        else:
            observer.deliver(
                make_message(
                    MessageType.ERROR,
                    {"message": f"unsupported message type: {msg_type.value}"},
                )
            )

    @app.websocket(config.client.ws_path)
    async def events_channel(websocket: WebSocket):
        await websocket.accept()
        observer = Observer(queue_size=config.server.observer_queue_size)
        hub.connect(observer)
        sender = asyncio.create_task(_pump(websocket, observer))

        reason = None
        try:
            while True:
                raw = await websocket.receive_text()
                _handle_client_message(observer, raw)
        except WebSocketDisconnect as e:
            reason = f"closed with code {e.code}"
        finally:
            hub.disconnect(observer, reason)
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass

    return app
