"""Per-connection signaling state machine.

Connections move ``unjoined -> joined -> closed``. Only the occupant that was
already seated hears ``peer-joined`` when the second one arrives, so exactly
one side creates the offer and the two never race (glare).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Dict, Optional, Protocol, Set

from ..config import Settings
from ..errors import InvalidMessage, RoomFull, SignalingError
from ..revocation import RevocationStore
from ..rooms import Departure, Occupant, SessionRegistry, validate_code
from ..turn import CredentialIssuer, build_ice_servers
from .protocol import (
    PEER_JOINED,
    JoinMessage,
    LeaveMessage,
    RelayMessage,
    error_frame,
    join_response,
    parse_client_message,
    relay_frame,
)

logger = logging.getLogger(__name__)

UNJOINED = "unjoined"
JOINED = "joined"
CLOSED = "closed"

CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011

_client_counter = itertools.count(1)


def new_connection_id() -> str:
    return f"client-{next(_client_counter)}-{int(time.time() * 1000)}"


class Connection(Protocol):
    connection_id: str
    occupant: Optional[Occupant]
    state: str

    def send(self, message: Dict[str, Any]) -> None: ...

    def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


class SignalingHandler:
    def __init__(
        self,
        settings: Settings,
        registry: SessionRegistry,
        issuer: CredentialIssuer,
        revocations: RevocationStore,
    ):
        self.settings = settings
        self.registry = registry
        self.issuer = issuer
        self.revocations = revocations
        self._pending: Set[asyncio.Task] = set()

    async def handle(self, conn: Connection, raw: str | bytes) -> None:
        """Process one inbound frame for *conn*."""

        if conn.state == CLOSED:
            return
        try:
            message = parse_client_message(raw)
            logger.debug("%s -> %s", conn.connection_id, message.type)
            if isinstance(message, JoinMessage):
                self._join(conn, message)
            elif isinstance(message, RelayMessage):
                self._relay(conn, message)
            elif isinstance(message, LeaveMessage):
                self._leave(conn)
        except SignalingError as exc:
            logger.error("%s: %s", conn.connection_id, exc)
            self._fail(conn, str(exc), CLOSE_POLICY_VIOLATION)
        except Exception:
            logger.exception("Unhandled error for %s", conn.connection_id)
            self._fail(conn, "Internal server error", CLOSE_INTERNAL_ERROR)

    async def disconnect(self, conn: Connection) -> None:
        """Transport closed; same cleanup as an explicit leave."""

        self._vacate(conn)
        conn.state = CLOSED

    async def drain(self) -> None:
        """Wait for outstanding revocation writes."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _join(self, conn: Connection, message: JoinMessage) -> None:
        if conn.state != UNJOINED:
            raise InvalidMessage("Already joined a room")
        code = validate_code(message.code)
        occupant = Occupant(conn.connection_id, conn, code)
        session = self.registry.add_occupant(self.registry.get_or_create_session(code), occupant)
        if session is None:
            raise RoomFull(code)
        conn.occupant = occupant
        conn.state = JOINED

        credential = None
        if self.settings.turn_configured:
            credential = self.issuer.issue(conn.connection_id)
            self.registry.track_credential(session, conn.connection_id, credential)
            logger.info(
                "Generated ephemeral credentials for %s, TTL: %ss",
                conn.connection_id,
                self.issuer.ttl_seconds,
            )

        conn.send(join_response(build_ice_servers(self.settings, credential), self.settings.relay_policy))

        # Only the occupant already seated is told; the newcomer waits for its offer.
        peer = self.registry.find_peer(occupant)
        if peer is not None:
            self._deliver(peer, {"type": PEER_JOINED})

    def _relay(self, conn: Connection, message: RelayMessage) -> None:
        peer = self.registry.find_peer(conn.occupant) if conn.occupant else None
        if peer is None:
            logger.warning("No peer found for %s to relay %s", conn.connection_id, message.type)
            return
        self._deliver(peer, relay_frame(message.type, message.data))

    def _leave(self, conn: Connection) -> None:
        self._vacate(conn)
        conn.state = CLOSED
        conn.close(CLOSE_NORMAL, "Left room")

    def _fail(self, conn: Connection, text: str, code: int) -> None:
        try:
            conn.send(error_frame(text))
        except Exception as exc:
            logger.error("Could not send error to %s: %s", conn.connection_id, exc)
        self._vacate(conn)
        conn.state = CLOSED
        try:
            conn.close(code, text)
        except Exception as exc:
            logger.error("Could not close connection for %s: %s", conn.connection_id, exc)

    def _vacate(self, conn: Connection) -> None:
        occupant = conn.occupant
        if occupant is None:
            return
        conn.occupant = None
        self._revoke(self.registry.remove_occupant(occupant))

    def _revoke(self, departure: Departure) -> None:
        if departure.credential is not None:
            cred = departure.credential
            self._spawn(self.revocations.revoke(cred.username, cred.expires_at))
        if departure.residual:
            entries = [(cred.username, cred.expires_at) for cred in departure.residual]
            self._spawn(self.revocations.revoke_batch(entries))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _deliver(self, peer: Occupant, message: Dict[str, Any]) -> None:
        try:
            peer.channel.send(message)
        except Exception as exc:
            logger.warning("Could not deliver %s to %s: %s", message.get("type"), peer.connection_id, exc)


__all__ = [
    "UNJOINED",
    "JOINED",
    "CLOSED",
    "CLOSE_NORMAL",
    "CLOSE_POLICY_VIOLATION",
    "CLOSE_INTERNAL_ERROR",
    "Connection",
    "SignalingHandler",
    "new_connection_id",
]
