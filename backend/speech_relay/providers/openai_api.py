import aiohttp
import logging
from ..errors import ProviderHTTPError

logger = logging.getLogger("openai_api")

DEFAULT_REALTIME_MODEL = "gpt-4o-realtime-preview-2024-12-17"
DEFAULT_TTS_MODEL = "tts-1"
DEFAULT_TTS_VOICE = "nova"
DEFAULT_TTS_SPEED = 1.1

VALID_REALTIME_VOICES = ("alloy", "ash", "ballad", "coral", "echo", "sage", "shimmer", "verse", "marin", "cedar")
# /v1/audio/speech voice names -> closest Realtime voice
REALTIME_VOICE_MAP = {
    "nova": "coral",
    "shimmer": "shimmer",
    "alloy": "alloy",
    "echo": "echo",
    "fable": "sage",
    "onyx": "ash",
}

CONTENT_TYPES = {
    "mp3": "audio/mpeg",
    "opus": "audio/opus",
    "aac": "audio/aac",
    "flac": "audio/flac",
}


def realtime_voice(requested: str | None) -> str:
    requested = requested or DEFAULT_TTS_VOICE
    if requested in VALID_REALTIME_VOICES:
        return requested
    return REALTIME_VOICE_MAP.get(requested, "coral")


def clamp_speed(value) -> float:
    try:
        speed = float(value)
    except (TypeError, ValueError):
        speed = 0.0
    if not speed:
        speed = DEFAULT_TTS_SPEED
    return min(4.0, max(0.25, speed))


class OpenAIClient:
    def __init__(self, http: aiohttp.ClientSession, api_key: str, api_host: str = "https://api.openai.com"):
        self.http = http
        self.api_key = api_key
        self.api_host = api_host.rstrip("/")

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def create_realtime_session(self, model: str, voice: str) -> dict:
        """Mint an ephemeral Realtime credential; the real key stays here."""
        body = {"model": model, "voice": voice, "modalities": ["text", "audio"]}
        async with self.http.post(f"{self.api_host}/v1/realtime/sessions", json=body, headers=self._headers()) as resp:
            if resp.status >= 300:
                text = await resp.text()
                logger.error(f"OpenAI ephemeral key error: {resp.status} {text[:300]}")
                raise ProviderHTTPError("OpenAI", resp.status, text)
            data = await resp.json(content_type=None)
        secret = data.get("client_secret") or {}
        return {
            "ephemeralKey": secret.get("value"),
            "model": model,
            "voice": voice,
            "expiresAt": secret.get("expires_at"),
        }

    async def speech(self, text: str, voice: str, model: str, speed: float, response_format: str) -> tuple[bytes, str]:
        body = {
            "model": model,
            "input": text,
            "voice": voice,
            "speed": speed,
            "response_format": response_format,
        }
        async with self.http.post(f"{self.api_host}/v1/audio/speech", json=body, headers=self._headers()) as resp:
            if resp.status >= 300:
                text_body = await resp.text()
                logger.error(f"OpenAI TTS error: {resp.status} {text_body[:300]}")
                raise ProviderHTTPError("OpenAI", resp.status, text_body)
            audio = await resp.read()
        return audio, CONTENT_TYPES.get(response_format, "audio/mpeg")
