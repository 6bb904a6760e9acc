import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState

from ..config import Settings, load_settings, setup_logging
from ..errors import ConfigurationError
from ..revocation import RevocationStore, create_revocation_store
from ..rooms import Occupant, SessionRegistry
from ..turn import CredentialIssuer
from ..utils.serialization import dumps
from .handler import (
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    CLOSED,
    UNJOINED,
    SignalingHandler,
    new_connection_id,
)

logger = logging.getLogger(__name__)

# Upper bound on flushing a connection's outbox after its receive loop ends
SHUTDOWN_FLUSH_S = 5.0

# Frames queued for a client that is not reading before the connection is dropped
OUTBOX_LIMIT = 256


# ------------------------------------------------------------------------------
# Peer
# ------------------------------------------------------------------------------
@dataclass
class _Close:
    code: int
    reason: str


class Peer:
    """One WebSocket client.

    Outbound frames go through a queue drained by a single writer task, so
    sends from other connections (relay, peer-left) never block and frames
    reach the client in the order they were queued.
    """

    def __init__(self, ws: WebSocket, connection_id: str):
        self.ws = ws
        self.connection_id = connection_id
        self.occupant: Optional[Occupant] = None
        self.state = UNJOINED
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=OUTBOX_LIMIT)
        self._closing = False
        self._writer: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._writer = asyncio.create_task(self._pump())

    def send(self, message: Dict[str, Any]) -> None:
        if self._closing:
            logger.debug("Dropping %s for closing connection %s", message.get("type"), self.connection_id)
            return
        try:
            self._outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Outbox full for %s, closing connection", self.connection_id)
            self.close(CLOSE_POLICY_VIOLATION, "Outbound queue overflow")

    def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True
        if self._outbox.full():
            # Unsent frames are discarded so the close marker always fits.
            while not self._outbox.empty():
                self._outbox.get_nowait()
        self._outbox.put_nowait(_Close(code, reason))

    async def finish(self) -> None:
        self.close()
        if self._writer is None:
            return
        try:
            await asyncio.wait_for(self._writer, SHUTDOWN_FLUSH_S)
        except asyncio.TimeoutError:
            logger.warning("Timed out flushing frames for %s", self.connection_id)

    def _connected(self) -> bool:
        return (
            self.ws.application_state == WebSocketState.CONNECTED
            and self.ws.client_state == WebSocketState.CONNECTED
        )

    async def _pump(self) -> None:
        while True:
            item = await self._outbox.get()
            if isinstance(item, _Close):
                await self._close_socket(item)
                return
            if not self._connected():
                continue
            try:
                await self.ws.send_text(dumps(item))
            except Exception as exc:
                logger.warning("Send to %s failed: %s", self.connection_id, exc)

    async def _close_socket(self, item: _Close) -> None:
        if not self._connected():
            return
        try:
            await self.ws.close(code=item.code, reason=item.reason[:120])
        except Exception as exc:
            logger.debug("Close for %s failed: %s", self.connection_id, exc)


# ------------------------------------------------------------------------------
# Startup
# ------------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    revocations: Optional[RevocationStore] = None,
) -> FastAPI:
    """Build the signaling app.

    *settings* defaults to the environment, read when the app starts.
    *revocations* bypasses Redis discovery (tests inject a mock store).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings if settings is not None else load_settings()
        store = revocations if revocations is not None else await create_revocation_store(cfg)
        registry = SessionRegistry()
        issuer = CredentialIssuer(cfg.turn_secret, cfg.credential_ttl)
        app.state.settings = cfg
        app.state.registry = registry
        app.state.revocations = store
        app.state.handler = SignalingHandler(cfg, registry, issuer, store)

        logger.info(
            "Signaling ready (TURN: %s, revocation: %s, relay policy: %s)",
            "on" if cfg.turn_configured else "off",
            "on" if store.is_available() else "off",
            cfg.relay_policy,
        )
        yield

        await app.state.handler.drain()
        await store.close()

    app = FastAPI(title="tuturu signaling", version="0.1.0", lifespan=lifespan)

    # --------------------------------------------------------------------------
    # WebSocket endpoint: /ws
    # --------------------------------------------------------------------------
    @app.websocket("/ws")
    async def signaling_socket(ws: WebSocket):
        await ws.accept()
        handler: SignalingHandler = ws.app.state.handler
        peer = Peer(ws, new_connection_id())
        peer.start()
        logger.info("Client %s connected", peer.connection_id)

        try:
            while peer.state != CLOSED:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await handler.handle(peer, raw)
        except WebSocketDisconnect:
            pass
        finally:
            logger.info("Client %s disconnected", peer.connection_id)
            await handler.disconnect(peer)
            await peer.finish()

    @app.get("/health")
    async def health():
        return JSONResponse(
            {
                "status": "ok",
                "rooms": len(app.state.registry),
                "revocation": app.state.revocations.is_available(),
                "timestamp": int(time.time() * 1000),
            }
        )

    return app


app = create_app()


def main():
    import uvicorn

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        setup_logging()
        logger.error("%s", exc)
        raise SystemExit(1) from exc

    setup_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
