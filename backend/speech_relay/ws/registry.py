import logging
from dataclasses import dataclass

from starlette.websockets import WebSocket, WebSocketState

logger = logging.getLogger("ws_relay")


@dataclass
class ConnectionRecord:
    connection_id: str
    client_socket: WebSocket
    upstream_session: object = None
    is_ready: bool = False
    user_id: str | None = None
    closing: bool = False

    def detach_upstream(self):
        session = self.upstream_session
        self.upstream_session = None
        self.is_ready = False
        return session

    async def close(self):
        """Close both legs. Only ever reached through ConnectionRegistry.cleanup."""
        session = self.detach_upstream()
        if session is not None:
            await session.close()
        ws = self.client_socket
        if ws.application_state != WebSocketState.DISCONNECTED and ws.client_state != WebSocketState.DISCONNECTED:
            try:
                await ws.close()
            except RuntimeError as e:
                # the peer went away between the state check and the close
                logger.debug(f"[{self.connection_id}] Client socket already closed: {e}")


class ConnectionRegistry:
    """Per-process table of live connections.

    All access happens on the event loop thread and every mutation is a
    single synchronous dict operation, so tasks never observe a half-applied
    change. ``shutdown`` iterates over a snapshot.
    """

    def __init__(self):
        self._records: dict[str, ConnectionRecord] = {}
        self._accepting = True

    def __len__(self):
        return len(self._records)

    def __contains__(self, connection_id):
        return connection_id in self._records

    @property
    def accepting(self) -> bool:
        return self._accepting

    def insert(self, record: ConnectionRecord):
        if record.connection_id in self._records:
            raise KeyError(f"duplicate connection id {record.connection_id}")
        self._records[record.connection_id] = record

    def get(self, connection_id: str) -> ConnectionRecord | None:
        return self._records.get(connection_id)

    def remove(self, connection_id: str) -> ConnectionRecord | None:
        return self._records.pop(connection_id, None)

    async def cleanup(self, connection_id: str) -> bool:
        """Close both legs of a connection, then forget it.

        The record is flagged before anything is awaited, so a concurrent or
        repeated call returns False without touching the sockets again.
        """
        record = self._records.get(connection_id)
        if record is None or record.closing:
            return False
        record.closing = True
        logger.info(f"[{connection_id}] Cleaning up connection")
        try:
            await record.close()
        finally:
            self.remove(connection_id)
        return True

    async def shutdown(self):
        self._accepting = False
        ids = list(self._records)
        if ids:
            logger.info(f"Shutting down {len(ids)} active connection(s)")
        for connection_id in ids:
            await self.cleanup(connection_id)
