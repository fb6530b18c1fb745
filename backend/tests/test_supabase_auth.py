import json
from unittest.mock import MagicMock

import aiohttp
import pytest

from speech_relay.auth.supabase_auth import (
    Principal,
    SupabaseVerifier,
    extract_bearer,
    extract_ws_token,
    token_from_protocol_header,
)
from speech_relay.errors import AuthProviderError, Unauthorized


class TestTokenExtraction:
    def test_query_token_preferred(self):
        assert extract_ws_token("token=abc&x=1", "Bearer.other") == "abc"

    def test_protocol_header_fallback(self):
        assert extract_ws_token("", "json, Bearer.xyz.123 , other") == "xyz.123"

    def test_empty_query_value_falls_back(self):
        assert extract_ws_token("token=", "Bearer.xyz") == "xyz"

    def test_no_token(self):
        with pytest.raises(Unauthorized, match="No token provided"):
            extract_ws_token("", "json, chat")

    def test_protocol_header_needs_bearer_prefix(self):
        assert token_from_protocol_header("bearer.abc, Bearerabc") is None
        assert token_from_protocol_header(None) is None

    def test_http_bearer(self):
        assert extract_bearer("Bearer jwt-value") == "jwt-value"
        for header in (None, "", "Basic abc", "Bearer "):
            with pytest.raises(Unauthorized):
                extract_bearer(header)


def fake_response(status, payload=None, text="", json_error=None):
    response = MagicMock()
    response.status = status

    async def json(content_type=None):
        if json_error is not None:
            raise json_error
        return payload

    async def read_text():
        return text

    response.json = json
    response.text = read_text
    context = MagicMock()
    context.__aenter__.return_value = response
    context.__aexit__.return_value = False
    return context


def verifier_with(response=None, error=None):
    verifier = SupabaseVerifier("https://example.supabase.co/", "anon-key")
    http = MagicMock()
    http.closed = False
    if error is not None:
        http.get.side_effect = error
    else:
        http.get.return_value = response
    verifier._session = http
    return verifier, http


class TestSupabaseVerifier:
    @pytest.mark.asyncio
    async def test_valid_token(self):
        verifier, http = verifier_with(fake_response(200, {"id": "user-1", "email": "alice@example.com"}))
        principal = await verifier.verify("jwt")

        assert principal == Principal(user_id="user-1", email="alice@example.com")
        url = http.get.call_args.args[0]
        headers = http.get.call_args.kwargs["headers"]
        assert url == "https://example.supabase.co/auth/v1/user"
        assert headers == {"apikey": "anon-key", "Authorization": "Bearer jwt"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_token(self, status):
        verifier, _ = verifier_with(fake_response(status, text='{"msg": "invalid JWT"}'))
        with pytest.raises(Unauthorized, match="Invalid token"):
            await verifier.verify("jwt")

    @pytest.mark.asyncio
    async def test_user_without_id(self):
        verifier, _ = verifier_with(fake_response(200, {}))
        with pytest.raises(Unauthorized):
            await verifier.verify("jwt")

    @pytest.mark.asyncio
    async def test_provider_server_error(self):
        verifier, _ = verifier_with(fake_response(503))
        with pytest.raises(AuthProviderError):
            await verifier.verify("jwt")

    @pytest.mark.asyncio
    async def test_provider_gateway_page_is_provider_error(self):
        bad_body = json.JSONDecodeError("Expecting value", "<html>gateway hiccup</html>", 0)
        verifier, _ = verifier_with(fake_response(200, json_error=bad_body))
        with pytest.raises(AuthProviderError, match="unreadable body"):
            await verifier.verify("jwt")

    @pytest.mark.asyncio
    async def test_provider_unreachable(self):
        verifier, _ = verifier_with(error=aiohttp.ClientConnectionError("dns failure"))
        with pytest.raises(AuthProviderError, match="unreachable"):
            await verifier.verify("jwt")

    @pytest.mark.asyncio
    async def test_empty_token_is_not_sent(self):
        verifier, http = verifier_with(fake_response(200, {"id": "x"}))
        with pytest.raises(Unauthorized):
            await verifier.verify("")
        http.get.assert_not_called()
