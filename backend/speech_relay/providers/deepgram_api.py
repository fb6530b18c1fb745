import aiohttp
import logging
from ..errors import ProviderHTTPError

logger = logging.getLogger("deepgram_api")

DEFAULT_MODEL = "aura-asteria-en"
DEFAULT_ENCODING = "mp3"

CONTENT_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "opus": "audio/opus",
    "flac": "audio/flac",
}


class DeepgramClient:
    """Aura text-to-speech over ``POST /v1/speak``."""

    def __init__(self, http: aiohttp.ClientSession, api_key: str, api_host: str = "https://api.deepgram.com"):
        self.http = http
        self.api_key = api_key
        self.api_host = api_host.rstrip("/")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def speak(self, text: str, model: str = DEFAULT_MODEL, encoding: str = DEFAULT_ENCODING) -> tuple[bytes, str]:
        headers = {"Authorization": f"Token {self.api_key}", "Content-Type": "application/json"}
        params = {"model": model, "encoding": encoding}
        async with self.http.post(f"{self.api_host}/v1/speak", params=params, json={"text": text}, headers=headers) as resp:
            if resp.status >= 300:
                body = await resp.text()
                logger.error(f"Deepgram TTS error: {resp.status} {body[:300]}")
                raise ProviderHTTPError("Deepgram", resp.status, body)
            audio = await resp.read()
        return audio, CONTENT_TYPES.get(encoding, "audio/mpeg")
