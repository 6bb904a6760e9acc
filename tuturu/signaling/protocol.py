"""Wire messages exchanged over the signaling WebSocket."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from ..errors import InvalidMessage
from ..utils.serialization import loads

JOIN = "join"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
LEAVE = "leave"
PEER_JOINED = "peer-joined"
PEER_LEFT = "peer-left"
ERROR = "error"

RELAY_TYPES = (OFFER, ANSWER, ICE_CANDIDATE)


class JoinMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["join"]
    # Format is checked by the handler so bad codes surface as InvalidCode.
    code: Any


class RelayMessage(BaseModel):
    """Negotiation payload; ``data`` is forwarded without inspection."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["offer", "answer", "ice-candidate"]
    data: Any


class LeaveMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["leave"]


ClientMessage = Union[JoinMessage, RelayMessage, LeaveMessage]

_MODELS = {
    JOIN: JoinMessage,
    OFFER: RelayMessage,
    ANSWER: RelayMessage,
    ICE_CANDIDATE: RelayMessage,
    LEAVE: LeaveMessage,
}


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Decode and validate one client frame or raise :class:`InvalidMessage`."""

    try:
        payload = loads(raw)
    except ValueError as exc:
        raise InvalidMessage("Malformed JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidMessage("Expected a JSON object")

    msg_type = payload.get("type")
    if not msg_type:
        raise InvalidMessage("Missing message type")
    model = _MODELS.get(msg_type) if isinstance(msg_type, str) else None
    if model is None:
        raise InvalidMessage(f"Unknown message type: {msg_type}")

    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        issue = exc.errors()[0]
        field = ".".join(str(part) for part in issue["loc"])
        if issue["type"] == "missing":
            raise InvalidMessage(f"Missing {field} in {msg_type} message") from exc
        raise InvalidMessage(f"Bad {field} in {msg_type} message: {issue['msg']}") from exc


def join_response(ice_servers: List[Dict[str, str]], relay_policy: str) -> Dict[str, Any]:
    return {"type": JOIN, "data": {"iceServers": ice_servers, "relayPolicy": relay_policy}}


def relay_frame(msg_type: str, data: Any) -> Dict[str, Any]:
    return {"type": msg_type, "data": data}


def error_frame(message: str) -> Dict[str, Any]:
    return {"type": ERROR, "error": message}


__all__ = [
    "JOIN",
    "OFFER",
    "ANSWER",
    "ICE_CANDIDATE",
    "LEAVE",
    "PEER_JOINED",
    "PEER_LEFT",
    "ERROR",
    "RELAY_TYPES",
    "JoinMessage",
    "RelayMessage",
    "LeaveMessage",
    "ClientMessage",
    "parse_client_message",
    "join_response",
    "relay_frame",
    "error_frame",
]
