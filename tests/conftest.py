import pytest

from tuturu.config import Settings
from tuturu.revocation import RevocationStore
from tuturu.rooms import SessionRegistry
from tuturu.signaling.handler import UNJOINED, SignalingHandler, new_connection_id
from tuturu.turn import CredentialIssuer

TURN_SECRET = "s" * 40


class RecordingConnection:
    """In-memory stand-in for a WebSocket peer."""

    def __init__(self, connection_id: str | None = None):
        self.connection_id = connection_id or new_connection_id()
        self.occupant = None
        self.state = UNJOINED
        self.sent = []
        self.closed_with = None

    def send(self, message):
        self.sent.append(message)

    def close(self, code=1000, reason=""):
        self.closed_with = (code, reason)

    def types(self):
        return [message["type"] for message in self.sent]


class RecordingStore(RevocationStore):
    """Revocation store that remembers what it was asked to revoke."""

    def __init__(self):
        self.revoked = []
        self.batches = []

    def is_available(self) -> bool:
        return True

    async def revoke(self, username, expires_at):
        self.revoked.append((username, expires_at))

    async def revoke_batch(self, entries):
        self.batches.append(list(entries))


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def turn_settings():
    return Settings(turn_secret=TURN_SECRET, domain="example.com")


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def make_handler(registry, store):
    def _make(settings):
        issuer = CredentialIssuer(settings.turn_secret, settings.credential_ttl)
        return SignalingHandler(settings, registry, issuer, store)

    return _make
