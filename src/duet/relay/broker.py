"""Room-based relay broker.

Pairs at most two connections per room id and forwards ``message``
frames between them verbatim. Holds no keys and never looks inside a
payload. Transport-agnostic: anything with ``send_text``, ``close`` and
``is_open`` can be attached, which keeps the broker testable without a
socket.
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import structlog

from duet.protocol.constants import (
    MSG_JOIN, MSG_JOINED, MSG_PEER_JOINED, MSG_PEER_LEFT, MSG_MESSAGE, MSG_ERROR,
    MSG_PING, MSG_PONG, ROOM_CAPACITY, MAX_MSG_BYTES, MAX_ROOM_ID_LENGTH,
    ERR_INVALID_JSON, ERR_NOT_OBJECT, ERR_TOO_LARGE, ERR_ROOM_REQUIRED, ERR_ROOM_FULL,
    ERR_NOT_IN_ROOM, ERR_UNKNOWN_TYPE,
)
from duet.protocol.validation import fuzz_resistant_json_loads, json_dumps

logger = structlog.get_logger()


class Transport(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass(eq=False)
class PeerConn:
    conn_id: int
    transport: Transport
    room: Optional[str] = None
    alive: bool = True


@dataclass(eq=False)
class Room:
    room_id: str
    peers: List[PeerConn] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RelayBroker:
    def __init__(self, max_frame_bytes: int = MAX_MSG_BYTES):
        self.max_frame_bytes = max_frame_bytes
        self.rooms: Dict[str, Room] = {}
        self.connections: List[PeerConn] = []
        self._ids = itertools.count(1)

    # -- connection lifecycle -------------------------------------------

    def connect(self, transport: Transport) -> PeerConn:
        peer = PeerConn(conn_id=next(self._ids), transport=transport)
        self.connections.append(peer)
        logger.info("client_connected", conn=peer.conn_id)
        return peer

    async def disconnect(self, peer: PeerConn) -> None:
        if peer in self.connections:
            self.connections.remove(peer)
            logger.info("client_disconnected", conn=peer.conn_id, room=peer.room)
        await self.leave(peer)

    async def terminate(self, peer: PeerConn) -> None:
        await self.disconnect(peer)
        try:
            await peer.transport.close(code=1001)
        except Exception as e:
            logger.debug("close_failed", conn=peer.conn_id, error=str(e))

    # -- frames ----------------------------------------------------------

    async def _send(self, peer: PeerConn, msg_type: str, **fields: Any) -> bool:
        msg = {"type": msg_type, **fields}
        try:
            await peer.transport.send_text(json_dumps(msg))
            return True
        except Exception as e:
            logger.debug("send_failed", conn=peer.conn_id, type=msg_type, error=str(e))
            return False

    async def send_error(self, peer: PeerConn, message: str) -> None:
        await self._send(peer, MSG_ERROR, message=message)

    async def handle_frame(self, peer: PeerConn, raw: str) -> None:
        peer.alive = True

        if len(raw.encode("utf-8")) > self.max_frame_bytes:
            await self.send_error(peer, ERR_TOO_LARGE)
            return

        try:
            msg = fuzz_resistant_json_loads(raw)
        except ValueError:
            await self.send_error(peer, ERR_INVALID_JSON)
            return

        if not isinstance(msg, dict):
            await self.send_error(peer, ERR_NOT_OBJECT)
            return

        msg_type = msg.get("type")
        if msg_type == MSG_JOIN:
            room_id = msg.get("room")
            if not isinstance(room_id, str) or not room_id or len(room_id) > MAX_ROOM_ID_LENGTH:
                await self.send_error(peer, ERR_ROOM_REQUIRED)
                return
            await self.join(peer, room_id)
        elif msg_type == MSG_MESSAGE:
            await self.forward(peer, msg.get("payload"))
        elif msg_type == MSG_PING:
            await self._send(peer, MSG_PONG)
        elif msg_type == MSG_PONG:
            return
        else:
            await self.send_error(peer, f"{ERR_UNKNOWN_TYPE}: {msg_type}")

    # -- rooms -----------------------------------------------------------

    async def _lock_room(self, room_id: str) -> Room:
        """Acquire the live room object for ``room_id``, creating it if needed.

        A room can be discarded while a joiner waits on its lock; in that case
        the stale object is released and the registry is consulted again.
        """
        while True:
            room = self.rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id)
                self.rooms[room_id] = room
            await room.lock.acquire()
            if self.rooms.get(room_id) is room:
                return room
            room.lock.release()

    async def _remove_locked(self, room: Room, peer: PeerConn) -> None:
        if peer in room.peers:
            room.peers.remove(peer)
        peer.room = None
        for other in room.peers:
            await self._send(other, MSG_PEER_LEFT)
        if not room.peers and self.rooms.get(room.room_id) is room:
            del self.rooms[room.room_id]
            logger.info("room_discarded", room=room.room_id)

    async def _evict_dead(self, room: Room) -> None:
        for member in list(room.peers):
            if not member.transport.is_open:
                logger.info("room_evict", room=room.room_id, conn=member.conn_id, reason="not_open")
                await self._evict_locked(room, member)
        if len(room.peers) < ROOM_CAPACITY:
            return
        for member in list(room.peers):
            if not await self._send(member, MSG_PING):
                logger.info("room_evict", room=room.room_id, conn=member.conn_id, reason="probe_failed")
                await self._evict_locked(room, member)

    async def _evict_locked(self, room: Room, member: PeerConn) -> None:
        await self._remove_locked(room, member)
        if member in self.connections:
            self.connections.remove(member)
        try:
            await member.transport.close(code=1001)
        except Exception as e:
            logger.debug("close_failed", conn=member.conn_id, error=str(e))

    async def join(self, peer: PeerConn, room_id: str) -> bool:
        if peer.room is not None:
            await self.leave(peer)

        room = await self._lock_room(room_id)
        try:
            if len(room.peers) >= ROOM_CAPACITY:
                await self._evict_dead(room)
            if len(room.peers) >= ROOM_CAPACITY:
                logger.warning("room_full", room=room_id, conn=peer.conn_id)
                await self.send_error(peer, ERR_ROOM_FULL)
                return False

            for other in room.peers:
                await self._send(other, MSG_PEER_JOINED)
            room.peers.append(peer)
            peer.room = room_id
            await self._send(peer, MSG_JOINED, room=room_id, peers=len(room.peers))
            if len(room.peers) == ROOM_CAPACITY:
                await self._send(peer, MSG_PEER_JOINED)
            logger.info("room_joined", room=room_id, conn=peer.conn_id, peers=len(room.peers))
            return True
        finally:
            if not room.peers and self.rooms.get(room_id) is room:
                del self.rooms[room_id]
            room.lock.release()

    async def leave(self, peer: PeerConn) -> None:
        room_id = peer.room
        if room_id is None:
            return
        room = self.rooms.get(room_id)
        if room is None:
            peer.room = None
            return
        async with room.lock:
            await self._remove_locked(room, peer)
        logger.info("room_left", room=room_id, conn=peer.conn_id)

    async def forward(self, peer: PeerConn, payload: Any) -> None:
        room = self.rooms.get(peer.room) if peer.room else None
        if room is None:
            await self.send_error(peer, ERR_NOT_IN_ROOM)
            return
        for other in list(room.peers):
            if other is not peer and other.transport.is_open:
                await self._send(other, MSG_MESSAGE, payload=payload)

    # -- liveness --------------------------------------------------------

    async def heartbeat_once(self) -> None:
        """Terminate connections silent since the last probe, then probe the rest."""
        for peer in list(self.connections):
            if not peer.alive:
                logger.info("heartbeat_terminate", conn=peer.conn_id, room=peer.room)
                await self.terminate(peer)
                continue
            peer.alive = False
            if not await self._send(peer, MSG_PING):
                await self.terminate(peer)

    async def run_heartbeat(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.heartbeat_once()
            except Exception as e:
                logger.error("heartbeat_error", error=str(e))
