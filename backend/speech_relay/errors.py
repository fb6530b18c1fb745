"""Error taxonomy shared by the relay core and the HTTP routes."""


class RelayError(Exception):
    code = None

    def __init__(self, message: str = "", code: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ConfigurationError(RelayError):
    """A mandatory setting is missing or invalid; fatal at startup."""


class Unauthorized(RelayError):
    """Token missing, malformed, expired or rejected by the identity provider."""
    code = 401


class AuthProviderError(RelayError):
    """The identity provider is unreachable or answered with a server error."""
    code = 500


class UpstreamConnectTimeout(RelayError):
    pass


class UpstreamClosed(RelayError):
    pass


class UpstreamError(RelayError):
    pass


class MalformedFrame(RelayError):
    pass


class ProviderHTTPError(RelayError):
    """A single-shot provider call (TTS, token issuance) answered non-2xx."""

    def __init__(self, provider: str, status: int, body: str = ""):
        super().__init__(f"{provider} request failed with status {status}", code=status)
        self.provider = provider
        self.status = status
        self.body = body
