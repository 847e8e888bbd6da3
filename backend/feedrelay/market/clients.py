"""Registry of connected downstream clients."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .interface import ClientConnection

logger = logging.getLogger(__name__)


class ClientRegistry:
    """Active downstream connections keyed by the id each client declares.

    A client id maps to at most one connection. Registering the same id again
    re-points future broadcasts at the newer connection.
    """

    def __init__(self) -> None:
        self._clients: dict[str, ClientConnection] = {}

    def register(self, client_id: str, connection: ClientConnection) -> None:
        previous = self._clients.get(client_id)
        self._clients[client_id] = connection
        if previous is not None and previous is not connection:
            logger.info("Client %s re-registered on a new connection", client_id)
        else:
            logger.info("Client registered: %s (%d connected)", client_id, len(self._clients))

    def unregister(self, client_id: str, connection: ClientConnection | None = None) -> bool:
        """Remove a client. Returns True if a record was removed.

        When ``connection`` is given, the record is only removed if it still
        points at that connection, so a stale socket closing does not evict a
        newer one registered under the same id.
        """
        current = self._clients.get(client_id)
        if current is None:
            return False
        if connection is not None and current is not connection:
            return False
        del self._clients[client_id]
        logger.info("Client unregistered: %s (%d connected)", client_id, len(self._clients))
        return True

    async def broadcast(self, message: Any) -> int:
        """Send ``message`` to every registered connection.

        Best-effort: sends run concurrently and one failed send never stops
        the others. Returns the number of successful deliveries.
        """
        targets = list(self._clients.items())
        if not targets:
            return 0

        results = await asyncio.gather(
            *(connection.send_json(message) for _, connection in targets),
            return_exceptions=True,
        )
        delivered = 0
        for (client_id, _), result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("Broadcast to client %s failed: %s", client_id, result)
            else:
                delivered += 1
        return delivered

    def client_ids(self) -> list[str]:
        return list(self._clients)

    def get(self, client_id: str) -> ClientConnection | None:
        return self._clients.get(client_id)

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._clients
