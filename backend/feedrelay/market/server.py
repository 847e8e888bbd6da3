"""WebSocket endpoint for downstream relay clients."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .exceptions import InvalidClientMessage
from .protocol import ClientIdMessage, SubscribeMessage, UnsubscribeMessage, parse_client_message

if TYPE_CHECKING:
    from .runtime import RelayRuntime

logger = logging.getLogger(__name__)


def create_relay_router(runtime: RelayRuntime) -> APIRouter:
    """Create the relay router with a reference to the runtime.

    This factory pattern lets us inject the runtime's components without globals.
    """
    router = APIRouter(tags=["relay"])

    @router.websocket("/ws")
    async def relay_socket(websocket: WebSocket) -> None:
        """Bidirectional client channel.

        Inbound: {"clientId": {...}}, {"subscribe": {...}}, {"unsubscribe": {...}}.
        Outbound: {"message": {...}} per subscription outcome and
        {"marketdata": [...]} for live candle and LTP updates.
        """
        await websocket.accept()
        await _serve_client(runtime, websocket)

    @router.get("/health")
    async def health() -> dict[str, Any]:
        return runtime.status()

    return router


async def _serve_client(runtime: RelayRuntime, websocket: WebSocket) -> None:
    """Read client messages until the connection closes.

    Text and binary frames are both decoded as JSON. Subscription batches
    run as tracked background tasks so a slow lookup never blocks the next
    message from the same client.
    """
    peer = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
    client_id: str | None = None
    logger.info("Client connected: %s", peer)

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            data = frame.get("text")
            if data is None:
                data = frame.get("bytes") or b""
            try:
                message = parse_client_message(data)
            except InvalidClientMessage as e:
                logger.warning("Ignoring message from %s: %s", client_id or peer, e)
                continue

            match message:
                case ClientIdMessage(client_id=declared):
                    if client_id is not None and client_id != declared:
                        runtime.clients.unregister(client_id, websocket)
                    client_id = declared
                    runtime.clients.register(declared, websocket)
                case SubscribeMessage(instruments=instruments) | UnsubscribeMessage(instruments=instruments):
                    subscriptions = runtime.subscriptions
                    if subscriptions is None:
                        logger.warning("Relay not started, ignoring request from %s", client_id or peer)
                        continue
                    if isinstance(message, SubscribeMessage):
                        run = subscriptions.subscribe
                    else:
                        run = subscriptions.unsubscribe
                    runtime.lifecycle.spawn(
                        run(instruments, websocket.send_json),
                        name=f"{run.__name__}-{client_id or peer}",
                    )
    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", client_id or peer)
    finally:
        if client_id is not None:
            runtime.clients.unregister(client_id, websocket)
