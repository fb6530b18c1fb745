import aiohttp
import asyncio
import json
import logging
from dataclasses import dataclass
from aiohttp import WSMsgType
from ..config import AUTH_MODE_HEADER
from ..errors import RelayError, UpstreamClosed, UpstreamConnectTimeout, UpstreamError
from ..utils.log_utils import mask_secret, preview

logger = logging.getLogger("soniox_relay")

DEFAULT_MODEL = "stt-rt-preview"
DEFAULT_AUDIO_FORMAT = "pcm_s16le"
DEFAULT_SAMPLE_RATE = 16000
DEFAULT_NUM_CHANNELS = 1
DEFAULT_MAX_NON_FINAL_MS = 4000
DEFAULT_LANGUAGE_HINTS = ["en"]
DEFAULT_TRANSLATION_TYPE = "one_way"


@dataclass
class UpstreamOpened:
    session: "SonioxProviderSession"


@dataclass
class UpstreamFrame:
    session: "SonioxProviderSession"
    data: str | bytes
    is_binary: bool


@dataclass
class UpstreamEnded:
    """Last event of a session; ``error`` says whether it timed out, failed or was closed."""
    session: "SonioxProviderSession"
    error: RelayError
    reason: str = ""


def build_soniox_config(client_config: dict, api_key: str | None = None, connection_id: str = "-") -> dict:
    """Translate a client ``start`` config into the Soniox config frame.

    Only known fields are copied, so anything else the client sent (an
    ``api_key`` included) never reaches the provider. ``api_key`` is set
    only when the key travels in-band.
    """
    config = client_config if isinstance(client_config, dict) else {}
    soniox_config = {}
    if api_key:
        soniox_config["api_key"] = api_key
    soniox_config.update({
        "model": config.get("model") or DEFAULT_MODEL,
        "audio_format": config.get("audio_format") or DEFAULT_AUDIO_FORMAT,
        "sample_rate": config.get("sample_rate") or DEFAULT_SAMPLE_RATE,
        "num_channels": config.get("num_channels") or DEFAULT_NUM_CHANNELS,
        "include_nonfinal": config.get("include_nonfinal") is not False,
        "language_hints": config.get("language_hints") or list(DEFAULT_LANGUAGE_HINTS),
        # finalize tokens on speech pauses
        "enable_endpoint_detection": config.get("enable_endpoint_detection") is not False,
        "max_non_final_tokens_duration_ms": config.get("max_non_final_tokens_duration_ms") or DEFAULT_MAX_NON_FINAL_MS,
    })

    translation = config.get("translation")
    if translation is not None:
        if not isinstance(translation, dict):
            translation = {}
        target = translation.get("target_language")
        source = translation.get("source_language")
        if not target:
            # Soniox rejects bad translation configs on its own; let it.
            logger.warning(f"[{connection_id}] Translation config missing target_language: {preview(translation)}")
        else:
            soniox_config["translation"] = {
                "type": translation.get("type") or DEFAULT_TRANSLATION_TYPE,
                "target_language": target,
            }
            if source:
                soniox_config["translation"]["source_language"] = source
            logger.info(f"[{connection_id}] Translation config - source: {source or 'auto'}, target: {target}")
    return soniox_config


class SonioxProviderSession:
    """One outbound WebSocket to the Soniox real-time endpoint.

    Everything the session observes is reported through ``on_event`` as an
    ``UpstreamOpened``, ``UpstreamFrame`` or ``UpstreamEnded``; the session
    never touches the client socket itself.
    """

    def __init__(self, connection_id: str, on_event, *, api_key: str, url: str,
                 auth_mode: str = "config", connect_timeout: float = 10.0):
        self.connection_id = connection_id
        self.on_event = on_event
        self.api_key = api_key
        self.url = url
        self.auth_mode = auth_mode
        self.connect_timeout = connect_timeout
        self._session = None
        self._ws = None
        self._task = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def start(self, client_config: dict):
        self._task = asyncio.create_task(self._run(client_config))
        return self._task

    def _headers(self) -> dict:
        if self.auth_mode == AUTH_MODE_HEADER:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    def _translate(self, client_config: dict) -> dict:
        in_band_key = None if self.auth_mode == AUTH_MODE_HEADER else self.api_key
        return build_soniox_config(client_config, api_key=in_band_key, connection_id=self.connection_id)

    async def _run(self, client_config: dict):
        cid = self.connection_id
        logger.info(f"[{cid}] Connecting to Soniox WebSocket...")
        self._session = aiohttp.ClientSession()
        try:
            # the timer covers the opening handshake only and dies with it
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, headers=self._headers()),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{cid}] Soniox connection timeout after {self.connect_timeout}s")
            await self._release()
            await self._emit(UpstreamEnded(self, UpstreamConnectTimeout("Soniox connection timeout")))
            return
        except (aiohttp.ClientError, OSError) as e:
            logger.error(f"[{cid}] Soniox connect failed: {e}")
            await self._release()
            await self._emit(UpstreamEnded(self, UpstreamError(f"Soniox connection error: {e}")))
            return

        logger.info(f"[{cid}] Connected to Soniox")
        soniox_config = self._translate(client_config)
        try:
            await self._ws.send_str(json.dumps(soniox_config))
        except (aiohttp.ClientError, ConnectionError) as e:
            logger.error(f"[{cid}] Failed to send config to Soniox: {e}")
            await self._release()
            await self._emit(UpstreamEnded(self, UpstreamError(f"Soniox connection error: {e}")))
            return
        logger.info(f"[{cid}] Sent config to Soniox: {preview(mask_secret(soniox_config), 300)}")
        # proxy_ready waits for the first provider frame
        await self._emit(UpstreamOpened(self))
        await self._reader_loop()

    async def _reader_loop(self):
        cid = self.connection_id
        reason = ""
        error = None
        while True:
            msg = await self._ws.receive()
            if msg.type == WSMsgType.TEXT:
                logger.debug(f"[{cid}] Soniox message: {preview(msg.data, 300)}")
                await self._emit(UpstreamFrame(self, msg.data, is_binary=False))
            elif msg.type == WSMsgType.BINARY:
                await self._emit(UpstreamFrame(self, msg.data, is_binary=True))
            elif msg.type == WSMsgType.CLOSE:
                reason = msg.extra or ""
                break
            elif msg.type == WSMsgType.ERROR:
                error = str(self._ws.exception() or msg.data)
                break
            elif msg.type in (WSMsgType.CLOSING, WSMsgType.CLOSED):
                break
        code = self._ws.close_code
        await self._release()
        if error:
            ended = UpstreamError(f"Soniox connection error: {error}")
        else:
            ended = UpstreamClosed(f"Soniox connection closed: {reason or 'No reason provided'}", code=code)
        await self._emit(UpstreamEnded(self, ended, reason=reason))

    async def _emit(self, event):
        # events after an intentional close are stale
        if not self._closing:
            await self.on_event(event)

    async def send_audio_chunk(self, chunk: bytes):
        await self._ws.send_bytes(chunk)

    async def send_json(self, message):
        await self._ws.send_str(json.dumps(message))

    async def _release(self):
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def close(self):
        """Tear the session down; safe to call more than once."""
        if self._closing:
            return
        self._closing = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._release()


def make_session_factory(settings):
    def factory(connection_id: str, on_event) -> SonioxProviderSession:
        return SonioxProviderSession(
            connection_id,
            on_event,
            api_key=settings.SONIOX_API_KEY,
            url=settings.SONIOX_WS_URL,
            auth_mode=settings.SONIOX_AUTH_MODE,
            connect_timeout=settings.SONIOX_CONNECT_TIMEOUT,
        )
    return factory
