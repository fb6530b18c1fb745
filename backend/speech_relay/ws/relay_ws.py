import aiohttp
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from ..auth.supabase_auth import extract_ws_token
from ..errors import AuthProviderError, MalformedFrame, Unauthorized, UpstreamClosed, UpstreamConnectTimeout
from ..providers.soniox_relay import UpstreamEnded, UpstreamFrame, UpstreamOpened
from ..utils.log_utils import email_hint, new_connection_id, preview
from .messages import AudioFrame, Finalize, Ping, Start, parse_client_frame
from .registry import ConnectionRecord, ConnectionRegistry

router = APIRouter()
logger = logging.getLogger("ws_relay")

POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011
GOING_AWAY = 1001


@dataclass
class ClientFrame:
    data: str | bytes
    is_binary: bool


@dataclass
class ClientClosed:
    code: int | None = None
    error: str | None = None


def _is_connected(ws: WebSocket) -> bool:
    return (ws.application_state == WebSocketState.CONNECTED
            and ws.client_state == WebSocketState.CONNECTED)


async def send_to_client(ws: WebSocket, payload: dict):
    if _is_connected(ws):
        await ws.send_text(json.dumps(payload))


async def send_error(ws: WebSocket, message: str, code: int | None = None):
    payload = {"type": "error", "message": message}
    if code is not None:
        payload["code"] = code
    await send_to_client(ws, payload)


class RelayConnection:
    """Drives one authenticated client connection.

    The client reader task and the upstream session both post events to a
    single inbox; ``run`` is the only consumer, so ``upstream_session`` and
    ``is_ready`` have exactly one writer.
    """

    def __init__(self, record: ConnectionRecord, registry: ConnectionRegistry, session_factory):
        self.record = record
        self.registry = registry
        self.session_factory = session_factory
        self._inbox = asyncio.Queue()

    @property
    def cid(self) -> str:
        return self.record.connection_id

    async def run(self):
        reader = asyncio.create_task(self._client_reader())
        try:
            while True:
                event = await self._inbox.get()
                if isinstance(event, ClientClosed):
                    if event.error:
                        logger.error(f"[{self.cid}] Client WebSocket error: {event.error}")
                    else:
                        logger.info(f"[{self.cid}] Client disconnected: {event.code}")
                    break
                if isinstance(event, ClientFrame):
                    await self.handle_client_frame(event.data, event.is_binary)
                else:
                    await self.handle_upstream_event(event)
        finally:
            reader.cancel()
            await self.registry.cleanup(self.cid)
            # a start that raced a concurrent cleanup can leave a session behind
            leftover = self.record.detach_upstream()
            if leftover is not None:
                await leftover.close()

    async def _client_reader(self):
        ws = self.record.client_socket
        try:
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    await self._inbox.put(ClientClosed(code=message.get("code")))
                    return
                if message.get("bytes") is not None:
                    await self._inbox.put(ClientFrame(message["bytes"], is_binary=True))
                elif message.get("text") is not None:
                    await self._inbox.put(ClientFrame(message["text"], is_binary=False))
        except WebSocketDisconnect as e:
            await self._inbox.put(ClientClosed(code=e.code))
        except RuntimeError as e:
            await self._inbox.put(ClientClosed(error=str(e)))

    # client -> upstream

    async def handle_client_frame(self, data, is_binary: bool):
        try:
            frame = parse_client_frame(data, is_binary)
        except MalformedFrame as e:
            logger.warning(f"[{self.cid}] {e.message}; raw data: {preview(data)}")
            return

        session = self.record.upstream_session
        if isinstance(frame, AudioFrame):
            # audio before the upstream is open is an expected race; drop it
            if session is not None and session.is_open:
                await self._forward(session.send_audio_chunk, frame.data)
            return

        logger.debug(f"[{self.cid}] Parsed JSON message: {preview(data)}")
        if isinstance(frame, Ping):
            await send_to_client(self.record.client_socket, {
                "type": "pong",
                "ref": frame.ref,
                "timestamp": int(time.time() * 1000),
            })
        elif isinstance(frame, Start):
            await self.start_upstream(frame.config)
        elif isinstance(frame, Finalize):
            if session is not None and session.is_open:
                await self._forward(session.send_json, frame.raw)
                logger.info(f"[{self.cid}] Finalize message forwarded to Soniox")
            else:
                logger.info(f"[{self.cid}] Cannot finalize - Soniox not connected")
        else:
            if session is not None and session.is_open:
                await self._forward(session.send_json, frame.raw)
            else:
                logger.info(f"[{self.cid}] Cannot forward - Soniox not connected")

    async def _forward(self, send, payload):
        try:
            await send(payload)
        except (aiohttp.ClientError, ConnectionError) as e:
            # the session reports its own close through the inbox
            logger.warning(f"[{self.cid}] Upstream send failed: {e}")

    async def start_upstream(self, config: dict):
        logger.info(f"[{self.cid}] Received START action - connecting to Soniox")
        previous = self.record.detach_upstream()
        if previous is not None:
            logger.info(f"[{self.cid}] Closing existing Soniox connection")
            await previous.close()
        if self.record.closing:
            logger.info(f"[{self.cid}] Connection is closing, not opening a Soniox session")
            return
        session = self.session_factory(self.cid, self._inbox.put)
        self.record.upstream_session = session
        session.start(config)

    # upstream -> client

    async def handle_upstream_event(self, event):
        record = self.record
        if event.session is not record.upstream_session:
            return

        if isinstance(event, UpstreamOpened):
            logger.info(f"[{self.cid}] Soniox connection open, waiting for acknowledgement")
        elif isinstance(event, UpstreamFrame):
            ws = record.client_socket
            if not record.is_ready:
                record.is_ready = True
                logger.info(f"[{self.cid}] Soniox acknowledged config, sending proxy_ready to client")
                await send_to_client(ws, {"type": "proxy_ready", "connection_id": self.cid})
            if not _is_connected(ws):
                return
            if event.is_binary:
                await ws.send_bytes(event.data)
            else:
                await ws.send_text(event.data)
        elif isinstance(event, UpstreamEnded):
            was_ready = record.is_ready
            record.detach_upstream()
            await self._report_upstream_ended(event, was_ready)

    async def _report_upstream_ended(self, event: UpstreamEnded, was_ready: bool):
        error = event.error
        if isinstance(error, UpstreamConnectTimeout):
            logger.warning(f"[{self.cid}] {error.message}")
        elif isinstance(error, UpstreamClosed):
            logger.info(f"[{self.cid}] {error.message} (code={error.code})")
            if not was_ready:
                logger.error(f"[{self.cid}] Soniox closed before acknowledging config - likely invalid API key or config")
        else:
            logger.error(f"[{self.cid}] {error.message}")
        # same frame shape whether or not the session ever became ready
        await send_error(self.record.client_socket, error.message, error.code)


async def authenticate(websocket: WebSocket, verifier, connection_id: str):
    """Return the principal, or send one error frame, close and return None."""
    try:
        token = extract_ws_token(websocket.url.query, websocket.headers.get("sec-websocket-protocol"))
        return await verifier.verify(token)
    except Unauthorized as e:
        logger.info(f"[{connection_id}] Auth failed: {e.message}")
        await send_error(websocket, e.message, e.code)
        await websocket.close(code=POLICY_VIOLATION, reason="Unauthorized")
    except AuthProviderError as e:
        logger.error(f"[{connection_id}] Auth error: {e.message}")
        await send_error(websocket, "Authentication error", e.code)
        await websocket.close(code=INTERNAL_ERROR, reason="Auth error")
    return None


@router.websocket("/")
async def relay_ws(websocket: WebSocket):
    state = websocket.app.state
    registry: ConnectionRegistry = state.registry
    connection_id = new_connection_id()
    client = websocket.client
    logger.info(f"[{connection_id}] New client connection from {client.host if client else 'unknown'}")

    if not registry.accepting:
        await websocket.close(code=GOING_AWAY)
        return

    # browsers drop the socket unless one offered subprotocol is echoed
    offered = websocket.scope.get("subprotocols") or []
    await websocket.accept(subprotocol=offered[0] if offered else None)

    principal = await authenticate(websocket, state.verifier, connection_id)
    if principal is None:
        return
    logger.info(f"[{connection_id}] User authenticated: {principal.user_id} ({email_hint(principal.email)})")

    record = ConnectionRecord(connection_id, websocket, user_id=principal.user_id)
    registry.insert(record)
    try:
        await send_to_client(websocket, {
            "type": "auth_success",
            "message": "Authenticated, ready for start message",
            "connectionId": connection_id,
        })
        await RelayConnection(record, registry, state.session_factory).run()
    except WebSocketDisconnect:
        logger.info(f"[{connection_id}] client disconnected")
    except Exception:
        logger.exception(f"[{connection_id}] Relay failed")
    finally:
        await registry.cleanup(connection_id)
