import asyncio
import logging
import re
from dataclasses import dataclass
from urllib.parse import parse_qs

import aiohttp

from ..errors import AuthProviderError, Unauthorized

logger = logging.getLogger("supabase_auth")

_BEARER_PROTOCOL = re.compile(r"^Bearer\.(.+)$")


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str | None = None


def token_from_query(query_string: str) -> str | None:
    values = parse_qs(query_string or "").get("token")
    return values[0] if values and values[0] else None


def token_from_protocol_header(header: str | None) -> str | None:
    """Find a ``Bearer.<token>`` entry in a Sec-WebSocket-Protocol list."""
    if not header:
        return None
    for part in header.split(","):
        match = _BEARER_PROTOCOL.match(part.strip())
        if match:
            return match.group(1)
    return None


def extract_ws_token(query_string: str, protocol_header: str | None) -> str:
    """WebSocket upgrade token: query ``token`` first, then the protocol header.

    Raises Unauthorized when neither carries one, so the verifier is never
    called without a token.
    """
    token = token_from_query(query_string) or token_from_protocol_header(protocol_header)
    if not token:
        raise Unauthorized("Unauthorized: No token provided")
    return token


def extract_bearer(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Unauthorized: No token provided")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise Unauthorized("Unauthorized: No token provided")
    return token


class SupabaseVerifier:
    """Validates access tokens against the Supabase auth ``/user`` endpoint."""

    def __init__(self, base_url: str, anon_key: str, timeout: float = 10.0):
        self.user_url = base_url.rstrip("/") + "/auth/v1/user"
        self.anon_key = anon_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def verify(self, token: str) -> Principal:
        if not token:
            raise Unauthorized("Unauthorized: No token provided")
        headers = {"apikey": self.anon_key, "Authorization": f"Bearer {token}"}
        session = await self._get_session()
        try:
            async with session.get(self.user_url, headers=headers) as resp:
                if resp.status in (400, 401, 403, 404):
                    body = await resp.text()
                    logger.info(f"Token rejected by identity provider: status={resp.status} {body[:200]}")
                    raise Unauthorized("Unauthorized: Invalid token")
                if resp.status >= 300:
                    raise AuthProviderError(f"Identity provider answered {resp.status}")
                try:
                    user = await resp.json(content_type=None)
                except ValueError as e:
                    raise AuthProviderError(f"Identity provider sent an unreadable body: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AuthProviderError(f"Identity provider unreachable: {e}") from e

        if not isinstance(user, dict) or not user.get("id"):
            raise Unauthorized("Unauthorized: Invalid token")
        return Principal(user_id=user["id"], email=user.get("email"))

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
