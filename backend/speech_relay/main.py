import aiohttp
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .api.proxy_routes import router as api_router
from .auth.supabase_auth import SupabaseVerifier
from .config import settings as default_settings
from .errors import AuthProviderError, ConfigurationError, ProviderHTTPError, Unauthorized
from .providers.deepgram_api import DeepgramClient
from .providers.openai_api import OpenAIClient
from .providers.soniox_relay import make_session_factory
from .ws.registry import ConnectionRegistry
from .ws.relay_ws import router as ws_router

logger = logging.getLogger("speech_relay")


def key_status(value: str) -> str:
    return "configured" if value else "missing"


def create_app(settings=None, verifier=None, session_factory=None) -> FastAPI:
    """Build the relay application.

    ``verifier`` and ``session_factory`` default to the Supabase verifier and
    the Soniox session; tests pass fakes instead.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.validate()
        if not settings.DEEPGRAM_API_KEY:
            logger.warning("DEEPGRAM_API_KEY not configured - Deepgram TTS will not be available")
        http = aiohttp.ClientSession()
        owns_verifier = verifier is None
        app.state.verifier = verifier or SupabaseVerifier(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)
        app.state.session_factory = session_factory or make_session_factory(settings)
        app.state.openai = OpenAIClient(http, settings.OPENAI_API_KEY, settings.OPENAI_API_HOST)
        app.state.deepgram = DeepgramClient(http, settings.DEEPGRAM_API_KEY, settings.DEEPGRAM_API_HOST)
        app.state.registry = ConnectionRegistry()
        try:
            yield
        finally:
            logger.info("Shutting down gracefully...")
            await app.state.registry.shutdown()
            await http.close()
            if owns_verifier:
                await app.state.verifier.close()
            logger.info("Server closed")

    app = FastAPI(title="Soniox Translation Relay", lifespan=lifespan)
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(Unauthorized)
    async def unauthorized_handler(request: Request, exc: Unauthorized):
        logger.info(f"{request.url.path}: Auth failed: {exc.message}")
        return JSONResponse({"error": exc.message}, status_code=401)

    @app.exception_handler(AuthProviderError)
    async def auth_provider_handler(request: Request, exc: AuthProviderError):
        logger.error(f"{request.url.path}: Auth error: {exc.message}")
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.exception_handler(ProviderHTTPError)
    async def provider_error_handler(request: Request, exc: ProviderHTTPError):
        return JSONResponse({"error": f"{exc.provider} TTS failed: {exc.body}"}, status_code=exc.status)

    @app.exception_handler(aiohttp.ClientError)
    async def provider_unreachable_handler(request: Request, exc: aiohttp.ClientError):
        logger.error(f"{request.url.path}: provider request failed: {exc}")
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"{request.url.path}: unhandled error")
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.get("/health")
    @app.get("/")
    async def health():
        return {
            "status": "healthy",
            "service": settings.SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    app.include_router(api_router)
    app.include_router(ws_router)
    return app


app = create_app()


def run():
    import uvicorn

    settings = default_settings
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings.validate()
    except ConfigurationError as e:
        logger.error(f"ERROR: {e.message}")
        sys.exit(1)

    logger.info("Soniox Translation Relay starting...")
    logger.info(f"Port: {settings.PORT}")
    logger.info(f"Supabase URL: {settings.SUPABASE_URL}")
    logger.info(f"Soniox API Key: {key_status(settings.SONIOX_API_KEY)} (auth mode: {settings.SONIOX_AUTH_MODE})")
    logger.info(f"OpenAI API Key: {key_status(settings.OPENAI_API_KEY)}")
    logger.info(f"Deepgram API Key: {key_status(settings.DEEPGRAM_API_KEY)}")
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
