"""Realtime message envelopes.

Client → server frames are a tagged union on ``type``; anything with an
unrecognised type parses to ``UnknownMessage`` so the gateway can answer it
with an error instead of dropping the connection.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


class InvalidMessage(ValueError):
    """Frame is not JSON, not an object, or misses required fields."""


class ChannelData(BaseModel):
    channel: str = Field(min_length=1)


class PingMessage(BaseModel):
    type: Literal["ping"]
    data: dict[str, Any] | None = None


class PongMessage(BaseModel):
    type: Literal["pong"]
    data: dict[str, Any] | None = None


class SubscribeMessage(BaseModel):
    type: Literal["subscribe"]
    data: ChannelData


class UnsubscribeMessage(BaseModel):
    type: Literal["unsubscribe"]
    data: ChannelData


class UnknownMessage(BaseModel):
    type: str
    data: Any = None


ClientMessage = Annotated[
    Union[PingMessage, PongMessage, SubscribeMessage, UnsubscribeMessage],
    Field(discriminator="type"),
]

_client_message = TypeAdapter(ClientMessage)
KNOWN_TYPES = frozenset({"ping", "pong", "subscribe", "unsubscribe"})


def parse_client_message(raw: str | bytes) -> PingMessage | PongMessage | SubscribeMessage | UnsubscribeMessage | UnknownMessage:
    try:
        payload = json.loads(raw)
    except ValueError as e:
        raise InvalidMessage("Invalid message format") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        raise InvalidMessage("Invalid message format")

    if payload["type"] not in KNOWN_TYPES:
        return UnknownMessage(type=payload["type"], data=payload.get("data"))

    try:
        return _client_message.validate_python(payload)
    except ValidationError as e:
        raise InvalidMessage("Invalid message format") from e


def timestamp() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def server_message(type: str, data: Any = None, channel: str | None = None, stamped: bool = False) -> str:
    """Serialize a server → client envelope ``{type, data?, channel?, timestamp?}``."""
    envelope: dict[str, Any] = {"type": type}
    if channel is not None:
        envelope["channel"] = channel
    if data is not None:
        envelope["data"] = data
    if stamped:
        envelope["timestamp"] = timestamp()
    return json.dumps(envelope, default=str)


def error_message(message: str) -> str:
    return server_message("error", {"message": message})
