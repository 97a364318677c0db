from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from duet.config import RelaySettings
from duet.protocol.constants import PROTO_VER
from .broker import RelayBroker

logger = structlog.get_logger()


class WebSocketTransport:
    """Adapts a Starlette ``WebSocket`` to the broker's transport protocol."""

    def __init__(self, websocket):
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self.websocket.send_text(data)

    async def close(self, code: int = 1000) -> None:
        if self.is_open:
            await self.websocket.close(code=code)


def build_relay_app(settings: Optional[RelaySettings] = None, broker: Optional[RelayBroker] = None):
    settings = settings or RelaySettings()
    broker = broker or RelayBroker(max_frame_bytes=settings.max_frame_bytes)

    @asynccontextmanager
    async def lifespan(app):
        task = asyncio.create_task(broker.run_heartbeat(settings.heartbeat_interval))
        logger.info("relay_started", heartbeat_s=settings.heartbeat_interval)
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="duet relay", version=PROTO_VER, lifespan=lifespan)
    app.state.broker = broker

    class HealthResp(BaseModel):
        status: str
        rooms: int
        connections: int

    @app.get("/health", response_model=HealthResp)
    def health():
        return HealthResp(status="ok", rooms=len(broker.rooms), connections=len(broker.connections))

    async def ws_relay(websocket: WebSocket):
        await websocket.accept()
        client_ip = websocket.client.host if websocket.client else "unknown"
        peer = broker.connect(WebSocketTransport(websocket))
        logger.debug("ws_accepted", conn=peer.conn_id, ip=client_ip)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    data = message.get("bytes") or b""
                    raw = data.decode("utf-8", errors="replace")
                await broker.handle_frame(peer, raw)
        except WebSocketDisconnect:
            pass
        except RuntimeError as e:
            # receive() after the broker closed this socket
            logger.debug("ws_closed", conn=peer.conn_id, error=str(e))
        finally:
            await broker.disconnect(peer)

    app.add_api_websocket_route("/", ws_relay)
    app.add_api_websocket_route("/ws", ws_relay)
    return app
