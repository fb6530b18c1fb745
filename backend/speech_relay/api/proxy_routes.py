import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from ..auth.supabase_auth import Principal, extract_bearer
from ..errors import ProviderHTTPError
from ..providers import deepgram_api, openai_api

router = APIRouter(prefix="/api")
logger = logging.getLogger("proxy_routes")


async def current_user(request: Request) -> Principal:
    token = extract_bearer(request.headers.get("authorization"))
    return await request.app.state.verifier.verify(token)


async def read_params(request: Request) -> dict:
    # bodies are optional and malformed ones count as empty
    try:
        params = await request.json()
    except (ValueError, UnicodeDecodeError):
        return {}
    return params if isinstance(params, dict) else {}


def missing_text() -> JSONResponse:
    return JSONResponse({"error": "Missing required field: text"}, status_code=400)


def proxy_url(request: Request) -> str:
    configured = request.app.state.settings.PROXY_PUBLIC_URL
    if configured:
        return configured
    scheme = "wss" if request.url.scheme == "https" else "ws"
    return f"{scheme}://{request.url.netloc}"


@router.post("/soniox/token")
async def soniox_token(request: Request, user: Principal = Depends(current_user)):
    logger.info(f"Soniox proxy access granted for user: {user.user_id}")
    # the Soniox key never leaves the server; clients connect to the relay instead
    return {
        "useProxy": True,
        "proxyUrl": proxy_url(request),
        "message": "Connect to proxyUrl with your JWT token as query param",
    }


@router.post("/openai/ephemeral-token")
async def openai_ephemeral_token(request: Request, user: Principal = Depends(current_user)):
    params = await read_params(request)
    requested = params.get("voice") or openai_api.DEFAULT_TTS_VOICE
    voice = openai_api.realtime_voice(requested)
    model = params.get("model") or openai_api.DEFAULT_REALTIME_MODEL
    logger.info(f"OpenAI ephemeral token request for user: {user.user_id}, voice: {requested} -> {voice}")

    try:
        session = await request.app.state.openai.create_realtime_session(model, voice)
    except ProviderHTTPError:
        return JSONResponse({"error": "Failed to create OpenAI session"}, status_code=500)
    logger.info(f"OpenAI ephemeral token issued for user: {user.user_id}")
    return session


@router.post("/openai/tts")
async def openai_tts(request: Request, user: Principal = Depends(current_user)):
    params = await read_params(request)
    text = params.get("text") or params.get("input")
    if not text:
        return missing_text()
    voice = params.get("voice") or openai_api.DEFAULT_TTS_VOICE
    model = params.get("model") or openai_api.DEFAULT_TTS_MODEL
    response_format = params.get("response_format") or "mp3"
    speed = openai_api.clamp_speed(params.get("speed"))
    logger.info(
        f"OpenAI TTS request for user: {user.user_id}, voice: {voice}, model: {model}, "
        f"speed: {speed}, text length: {len(text)}"
    )

    audio, content_type = await request.app.state.openai.speech(text, voice, model, speed, response_format)
    logger.info(f"OpenAI TTS success for user: {user.user_id}, audio size: {len(audio)} bytes")
    return Response(content=audio, media_type=content_type)


@router.post("/deepgram/tts")
async def deepgram_tts(request: Request, user: Principal = Depends(current_user)):
    deepgram = request.app.state.deepgram
    if not deepgram.enabled:
        return JSONResponse({"error": "Deepgram TTS not configured"}, status_code=503)
    params = await read_params(request)
    text = params.get("text") or params.get("input")
    if not text:
        return missing_text()
    model = params.get("model") or deepgram_api.DEFAULT_MODEL
    encoding = params.get("encoding") or deepgram_api.DEFAULT_ENCODING
    logger.info(f"Deepgram TTS request for user: {user.user_id}, model: {model}, text length: {len(text)}")

    audio, content_type = await deepgram.speak(text, model=model, encoding=encoding)
    logger.info(f"Deepgram TTS success for user: {user.user_id}, audio size: {len(audio)} bytes")
    return Response(content=audio, media_type=content_type)
