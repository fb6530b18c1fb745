"""Inbound client frames, parsed once into explicit variants."""
import json
from dataclasses import dataclass, field

from ..errors import MalformedFrame


@dataclass
class AudioFrame:
    data: bytes


@dataclass
class Ping:
    ref: object = 0


@dataclass
class Start:
    config: dict = field(default_factory=dict)


@dataclass
class Finalize:
    raw: dict


@dataclass
class Other:
    raw: object


def looks_like_json(data: bytes) -> bool:
    stripped = data.lstrip()
    return stripped[:1] in (b"{", b"[")


def parse_client_frame(data: str | bytes, is_binary: bool):
    """Classify one client frame.

    Binary frames that do not start with ``{`` or ``[`` are audio. Anything
    else must be JSON; ``MalformedFrame`` is raised when it is not.
    """
    if is_binary and not looks_like_json(data):
        return AudioFrame(bytes(data))

    try:
        message = json.loads(data)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedFrame(f"Failed to parse JSON: {e}") from e

    if not isinstance(message, dict):
        return Other(message)
    if message.get("type") == "ping":
        ref = message.get("ref")
        return Ping(ref=ref if ref else 0)
    if message.get("action") == "start":
        config = message["config"] if message.get("config") is not None else message
        return Start(config=config if isinstance(config, dict) else {})
    if message.get("type") == "finalize":
        return Finalize(message)
    return Other(message)
