from __future__ import annotations
import asyncio
import random
from typing import Any, Callable, Dict, Optional, Set

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from duet.config import Timeouts
from duet.crypto.envelope import seal, open_envelope
from duet.errors import DecryptionError, DuetError, NotPairedError, ProtocolError
from duet.protocol.constants import (
    ROLE, MAX_MSG_BYTES, MSG_JOIN, MSG_JOINED, MSG_PEER_JOINED, MSG_PEER_LEFT,
    MSG_MESSAGE, MSG_ERROR, MSG_PING, MSG_PONG, ERR_ROOM_FULL,
)
from duet.protocol.validation import fuzz_resistant_json_loads, json_dumps

from .state import ConnectionState, PeerEvent, SessionState, Transition

logger = structlog.get_logger()


class RelayConnection:
    """One peer's connection to the relay: join, heartbeat and reconnect.

    Subclasses supply the role-specific reactions (``on_peer_joined``,
    ``on_payload`` and friends). Every background task captures the
    generation it was started under and stops acting once a newer
    ``connect()`` has superseded it.
    """

    role: ROLE = "initiator"

    def __init__(self, relay_url: str, room: str, timeouts: Optional[Timeouts] = None,
                 on_state: Optional[Callable[[ConnectionState], None]] = None):
        self.relay_url = relay_url
        self.room = room
        self.timeouts = timeouts or Timeouts()
        self.on_state = on_state
        self.log = logger.bind(role=self.role, room=room)

        self.session = SessionState()
        self.ws = None
        self._closing = False
        self._attempts = 0
        self._lost_generation = 0
        self._heartbeat_generation = 0
        self._tasks: Set[asyncio.Task] = set()
        self._connect_lock = asyncio.Lock()

    # -- state -------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    @property
    def is_paired(self) -> bool:
        return self.session.state is ConnectionState.PAIRED and self.session.session_key is not None

    def fire(self, event: PeerEvent) -> Optional[Transition]:
        old = self.session.state
        step = self.session.apply(event)
        if step is None:
            self.log.debug("event_ignored", trigger=event.value, state=old.value)
            return None
        if step.state is not old:
            self.log.info("state_changed", old=old.value, new=step.state.value, trigger=event.value)
            if self.on_state:
                try:
                    self.on_state(step.state)
                except Exception as e:
                    self.log.error("state_callback_failed", error=str(e))
        self.after_transition(event, step)
        return step

    def after_transition(self, event: PeerEvent, step: Transition) -> None:
        pass

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{self.role}-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- transport ---------------------------------------------------------

    async def connect(self):
        async with self._connect_lock:
            self._closing = False
            await self._drop_socket()
            self.fire(PeerEvent.CONNECT)
            gen = self.session.generation
            self.log.info("relay_connecting", url=self.relay_url, generation=gen)
            try:
                ws = await websockets.connect(
                    self.relay_url, ping_interval=None, max_size=MAX_MSG_BYTES,
                    open_timeout=self.timeouts.handshake,
                )
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                self.log.warning("relay_connect_failed", error=str(e))
                self._on_transport_lost(gen, str(e))
                raise ProtocolError(f"cannot reach relay: {e}") from e

            if not self.session.is_current(gen):
                await ws.close()
                return
            self.ws = ws
            self._spawn(self._recv_loop(gen, ws), "recv")
            await self.send_raw({"type": MSG_JOIN, "room": self.room})

    async def close(self):
        self._closing = True
        self.fire(PeerEvent.CLOSE)
        await self._drop_socket()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    async def _drop_socket(self):
        ws, self.ws = self.ws, None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                self.log.debug("socket_close_failed", error=str(e))

    async def send_raw(self, o: Dict[str, Any]):
        if self.ws is None:
            raise ProtocolError("not connected")
        try:
            await self.ws.send(json_dumps(o))
        except ConnectionClosed as e:
            raise ProtocolError("connection closed") from e

    async def send_payload(self, payload: Dict[str, Any]):
        await self.send_raw({"type": MSG_MESSAGE, "payload": payload})

    async def send_sealed(self, kind: str, body: Dict[str, Any]):
        key = self.session.session_key
        if key is None or self.session.state is not ConnectionState.PAIRED:
            raise NotPairedError("not paired")
        await self.send_payload(seal(kind, body, key))

    def open_payload(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            return open_envelope(payload, self.session.session_key)
        except DecryptionError as e:
            self.session.decrypt_failures += 1
            self.log.warning("decryption_failed", kind=payload.get("type"), error=str(e),
                             failures=self.session.decrypt_failures)
            return None

    # -- loops -------------------------------------------------------------

    async def _recv_loop(self, gen: int, ws):
        try:
            async for raw in ws:
                if not self.session.is_current(gen):
                    return
                try:
                    msg = fuzz_resistant_json_loads(raw)
                except ValueError as e:
                    self.log.warning("frame_invalid", error=str(e))
                    continue
                if not isinstance(msg, dict):
                    continue
                try:
                    await self._dispatch(gen, msg)
                except DuetError as e:
                    self.log.warning("frame_dropped", type=msg.get("type"), error=str(e))
        except ConnectionClosed as e:
            self.log.info("relay_closed", code=getattr(e.rcvd, "code", None))
        finally:
            self._on_transport_lost(gen, "closed")

    async def _heartbeat_loop(self, gen: int, ws):
        interval = self.timeouts.heartbeat
        while self.session.is_current(gen) and not self._closing:
            await asyncio.sleep(interval)
            if not self.session.is_current(gen) or self._closing:
                return
            try:
                pong = await ws.ping()
                await asyncio.wait_for(pong, timeout=interval)
            except (asyncio.TimeoutError, ConnectionClosed, RuntimeError) as e:
                self.log.warning("heartbeat_failed", error=str(e) or type(e).__name__)
                self._on_transport_lost(gen, "heartbeat", PeerEvent.HEARTBEAT_FAILED)
                try:
                    await ws.close()
                except (ConnectionClosed, OSError):
                    pass
                return

    def _on_transport_lost(self, gen: int, reason: str, event: PeerEvent = PeerEvent.TRANSPORT_LOST):
        if not self.session.is_current(gen) or self._closing or self._lost_generation == gen:
            return
        self._lost_generation = gen
        self.ws = None
        self.log.info("transport_lost", reason=reason, generation=gen)
        self.on_transport_lost()
        step = self.fire(event)
        if step and step.reconnect:
            self._schedule_reconnect(gen)

    def on_transport_lost(self) -> None:
        pass

    def backoff_delay(self) -> float:
        t = self.timeouts
        delay = min(t.reconnect_cap, t.reconnect_base * (2 ** self._attempts))
        return delay * (1 + random.uniform(-t.reconnect_jitter, t.reconnect_jitter))

    def _schedule_reconnect(self, gen: int):
        delay = self.backoff_delay()
        self._attempts += 1
        self.log.info("reconnect_scheduled", delay_s=round(delay, 2), attempt=self._attempts)

        async def _later():
            await asyncio.sleep(delay)
            if not self.session.is_current(gen) or self._closing:
                return
            try:
                await self.connect()
            except ProtocolError:
                # connect() already scheduled the next attempt
                pass

        self._spawn(_later(), "reconnect")

    # -- dispatch ----------------------------------------------------------

    async def _dispatch(self, gen: int, msg: Dict[str, Any]):
        msg_type = msg.get("type")
        if msg_type == MSG_JOINED:
            peers = msg.get("peers")
            self.session.peers = peers if isinstance(peers, int) else 0
            self._attempts = 0
            self.fire(PeerEvent.JOINED)
            self.log.info("room_joined", peers=self.session.peers)
            if self._heartbeat_generation != gen and self.ws is not None:
                self._heartbeat_generation = gen
                self._spawn(self._heartbeat_loop(gen, self.ws), "heartbeat")
            await self.on_joined(gen)
        elif msg_type == MSG_PEER_JOINED:
            self.session.peers = 2
            self.log.info("peer_joined")
            await self.on_peer_joined(gen)
        elif msg_type == MSG_PEER_LEFT:
            self.session.peers = 1
            self.log.info("peer_left")
            step = self.fire(PeerEvent.PEER_LEFT)
            await self.on_peer_left(gen)
            if step and step.rehandshake:
                await self.send_raw({"type": MSG_JOIN, "room": self.room})
        elif msg_type == MSG_MESSAGE:
            payload = msg.get("payload")
            if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
                raise ProtocolError("message without payload type")
            await self.on_payload(gen, payload)
        elif msg_type == MSG_PING:
            await self.send_raw({"type": MSG_PONG})
        elif msg_type == MSG_PONG:
            return
        elif msg_type == MSG_ERROR:
            message = msg.get("message")
            self.log.warning("relay_error", message=message)
            if message == ERR_ROOM_FULL and self.session.state is ConnectionState.CONNECTING:
                ws = self.ws
                self._on_transport_lost(gen, "room_full")
                if ws is not None:
                    await ws.close()
        else:
            raise ProtocolError(f"unknown relay frame: {msg_type}")

    async def on_joined(self, gen: int) -> None:
        pass

    async def on_peer_joined(self, gen: int) -> None:
        pass

    async def on_peer_left(self, gen: int) -> None:
        pass

    async def on_payload(self, gen: int, payload: Dict[str, Any]) -> None:
        pass
