import json
import secrets
import string

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_connection_id(length: int = 13) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def preview(data, limit: int = 200) -> str:
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("utf-8", errors="replace")
    elif not isinstance(data, str):
        data = json.dumps(data)
    return data[:limit]


def email_hint(email: str | None) -> str:
    # never log the full address
    return f"{email[:3]}***" if email else "unknown"


def mask_secret(config: dict, key: str = "api_key") -> dict:
    if key not in config:
        return config
    return {**config, key: "***"}
