"""Ephemeral TURN credentials in the coturn REST API format.

The username embeds the expiry timestamp and the connection id; the password
is ``base64(HMAC-SHA1(secret, username))``. coturn recomputes the HMAC with
the same shared secret, so no lookup table is needed on the relay side.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .config import DEFAULT_CREDENTIAL_TTL, Settings
from .errors import NotConfigured

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EphemeralCredential:
    """Username/credential pair handed to one client."""

    username: str
    credential: str
    expires_at: int


def compute_credential(secret: str, username: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), username.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


class CredentialIssuer:
    """Derive time-boxed TURN credentials from the shared secret."""

    def __init__(
        self,
        secret: Optional[str],
        ttl_seconds: int = DEFAULT_CREDENTIAL_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def issue(self, connection_id: str) -> EphemeralCredential:
        if not self._secret:
            raise NotConfigured()
        expires_at = int(self._clock()) + self.ttl_seconds
        username = f"{expires_at}:{connection_id}"
        return EphemeralCredential(
            username=username,
            credential=compute_credential(self._secret, username),
            expires_at=expires_at,
        )


def build_ice_servers(
    settings: Settings, credential: Optional[EphemeralCredential] = None
) -> List[Dict[str, str]]:
    """Return the ICE server list sent to a client on join.

    STUN entries come first. With TURN configured and a credential issued,
    four relay URLs follow, ordered by how likely they are to get through
    restrictive firewalls: TLS on 443, TLS on 5349, TCP 3478, UDP 3478.
    """

    servers: List[Dict[str, str]] = [{"urls": url} for url in settings.stun_servers]
    if not settings.turn_configured or credential is None:
        return servers

    host = f"t.{settings.domain}"
    for url in (
        f"turns:{host}:443?transport=tcp",
        f"turns:{host}:5349?transport=tcp",
        f"turn:{host}:3478?transport=tcp",
        f"turn:{host}:3478?transport=udp",
    ):
        servers.append(
            {"urls": url, "username": credential.username, "credential": credential.credential}
        )
    logger.debug("Configured TURN server %s for %s", host, credential.username)
    return servers


__all__ = ["EphemeralCredential", "CredentialIssuer", "compute_credential", "build_ice_servers"]
