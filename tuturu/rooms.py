"""Room management for PIN-based peer matching.

A room (``Session``) holds at most two occupants for one access code. Join
order is kept because it decides which side creates the WebRTC offer. Rooms
are created on the first join and deleted as soon as they become empty.

All registry operations are synchronous and never wait on I/O. Each session
has its own lock so two joins racing on one code cannot both see a single
occupant; the mapping itself has a separate short lock for insert/delete.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .errors import InvalidCode
from .turn import EphemeralCredential

logger = logging.getLogger(__name__)

MAX_OCCUPANTS = 2
ACCESS_CODE_RE = re.compile(r"[0-9]{6}")


def is_valid_code(code: object) -> bool:
    return isinstance(code, str) and ACCESS_CODE_RE.fullmatch(code) is not None


def validate_code(code: object) -> str:
    if not is_valid_code(code):
        raise InvalidCode(code)
    return code  # type: ignore[return-value]


class Channel(Protocol):
    def send(self, message: Dict[str, Any]) -> None: ...


@dataclass(eq=False)
class Occupant:
    connection_id: str
    channel: Channel
    code: str


@dataclass(eq=False)
class Session:
    code: str
    occupants: List[Occupant] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    credentials: Dict[str, EphemeralCredential] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.lock = threading.RLock()
        self.closed = False

    def find(self, connection_id: str) -> Optional[Occupant]:
        for occupant in self.occupants:
            if occupant.connection_id == connection_id:
                return occupant
        return None


@dataclass
class Departure:
    """What the caller must clean up after an occupant left."""

    credential: Optional[EphemeralCredential] = None
    residual: List[EphemeralCredential] = field(default_factory=list)
    session_deleted: bool = False


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._map_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, code: object) -> bool:
        return code in self._sessions

    def get(self, code: str) -> Optional[Session]:
        return self._sessions.get(code)

    def get_or_create_session(self, code: str) -> Session:
        validate_code(code)
        with self._map_lock:
            session = self._sessions.get(code)
            if session is None:
                session = Session(code)
                self._sessions[code] = session
                logger.info("Created room for PIN %s", code)
            return session

    def add_occupant(self, session: Session, occupant: Occupant) -> Optional[Session]:
        """Seat *occupant* and return the session it landed in.

        Returns ``None`` if the room already has two. The returned session can
        differ from *session* when that one was deleted in the meantime.
        """

        while True:
            with session.lock:
                if not session.closed:
                    if len(session.occupants) >= MAX_OCCUPANTS:
                        return None
                    occupant.code = session.code
                    session.occupants.append(occupant)
                    logger.info(
                        "Client %s joined room %s (%d/%d)",
                        occupant.connection_id,
                        session.code,
                        len(session.occupants),
                        MAX_OCCUPANTS,
                    )
                    return session
            # The room emptied and was deleted after the caller fetched it.
            session = self.get_or_create_session(session.code)

    def track_credential(
        self, session: Session, connection_id: str, credential: EphemeralCredential
    ) -> None:
        with session.lock:
            session.credentials[connection_id] = credential

    def remove_occupant(self, occupant: Occupant) -> Departure:
        """Vacate *occupant* and hand back the credentials to revoke.

        The remaining peer, if any, is sent ``peer-left`` here so it is
        notified exactly once per departure. Removing an occupant that is no
        longer seated is a no-op.
        """

        departure = Departure()
        session = self._sessions.get(occupant.code)
        if session is None:
            return departure

        with session.lock:
            seated = session.find(occupant.connection_id)
            if seated is None:
                return departure
            session.occupants.remove(seated)
            logger.info(
                "Client %s left room %s (%d/%d)",
                occupant.connection_id,
                session.code,
                len(session.occupants),
                MAX_OCCUPANTS,
            )
            departure.credential = session.credentials.pop(occupant.connection_id, None)

            if len(session.occupants) == 1:
                remaining = session.occupants[0]
                try:
                    remaining.channel.send({"type": "peer-left"})
                except Exception as exc:
                    logger.warning("Could not notify %s of peer-left: %s", remaining.connection_id, exc)

            if not session.occupants:
                # Leftover credentials should not exist; revoke them anyway.
                departure.residual = list(session.credentials.values())
                session.credentials.clear()
                session.closed = True
                with self._map_lock:
                    if self._sessions.get(session.code) is session:
                        del self._sessions[session.code]
                departure.session_deleted = True
                logger.info("Deleted empty room %s", session.code)
        return departure

    def find_peer(self, occupant: Occupant) -> Optional[Occupant]:
        session = self._sessions.get(occupant.code)
        if session is None:
            return None
        with session.lock:
            if session.find(occupant.connection_id) is None:
                return None
            for other in session.occupants:
                if other.connection_id != occupant.connection_id:
                    return other
        return None


__all__ = [
    "ACCESS_CODE_RE",
    "MAX_OCCUPANTS",
    "Channel",
    "Departure",
    "Occupant",
    "Session",
    "SessionRegistry",
    "is_valid_code",
    "validate_code",
]
