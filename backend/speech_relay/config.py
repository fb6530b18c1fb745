# backend/speech_relay/config.py
import os
from dotenv import load_dotenv

from .errors import ConfigurationError

# load .env file automatically
load_dotenv()

AUTH_MODE_CONFIG = "config"
AUTH_MODE_HEADER = "header"

MANDATORY = ("SONIOX_API_KEY", "OPENAI_API_KEY", "SUPABASE_URL", "SUPABASE_ANON_KEY")


class Settings:
    def __init__(self, environ=None):
        env = os.environ if environ is None else environ
        self.HOST = env.get("HOST", "0.0.0.0")
        self.PORT = int(env.get("PORT", 8080))
        self.LOG_LEVEL = env.get("LOG_LEVEL", "info")
        self.SERVICE_NAME = env.get("SERVICE_NAME", "soniox-proxy")

        self.SONIOX_API_KEY = env.get("SONIOX_API_KEY", "")
        self.SONIOX_WS_URL = env.get("SONIOX_WS_URL", "wss://stt-rt.soniox.com/transcribe-websocket")
        # "config": key goes in the first config frame; "header": Authorization header
        self.SONIOX_AUTH_MODE = env.get("SONIOX_AUTH_MODE", AUTH_MODE_CONFIG).strip().lower()
        self.SONIOX_CONNECT_TIMEOUT = float(env.get("SONIOX_CONNECT_TIMEOUT", 10))

        self.OPENAI_API_KEY = env.get("OPENAI_API_KEY", "")
        self.OPENAI_API_HOST = env.get("OPENAI_API_HOST", "https://api.openai.com")
        self.DEEPGRAM_API_KEY = env.get("DEEPGRAM_API_KEY", "")
        self.DEEPGRAM_API_HOST = env.get("DEEPGRAM_API_HOST", "https://api.deepgram.com")

        self.SUPABASE_URL = env.get("SUPABASE_URL", "")
        self.SUPABASE_ANON_KEY = env.get("SUPABASE_ANON_KEY", "")

        self.PROXY_PUBLIC_URL = env.get("PROXY_PUBLIC_URL", "")
        self.CORS_ALLOW_ORIGINS = [
            o.strip() for o in env.get("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()
        ]

    def missing(self) -> list[str]:
        return [name for name in MANDATORY if not getattr(self, name)]

    def validate(self):
        missing = self.missing()
        if missing:
            raise ConfigurationError(f"{', '.join(missing)} environment variable(s) required")
        if self.SONIOX_AUTH_MODE not in (AUTH_MODE_CONFIG, AUTH_MODE_HEADER):
            raise ConfigurationError(
                f"SONIOX_AUTH_MODE must be '{AUTH_MODE_CONFIG}' or '{AUTH_MODE_HEADER}', "
                f"got '{self.SONIOX_AUTH_MODE}'"
            )
        return self


settings = Settings()
