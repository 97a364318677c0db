from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional, Union

from duet.config import Timeouts
from duet.crypto.handshake import HandshakeOffer, hs_offer, key_fingerprint
from duet.errors import (
    DuetError, HandshakeTimeoutError, NotPairedError, ProtocolError, TurnTimeoutError,
)
from duet.protocol.constants import Kind, KINDS
from duet.protocol.pairing import PairingInfo

from .connection import RelayConnection
from .state import ConnectionState, PeerEvent


@dataclass
class TextChunk:
    text: str
    index: int


@dataclass
class TextDone:
    text: str


StreamEvent = Union[TextChunk, TextDone]


@dataclass
class ServerInfo:
    work_dir: str
    hostname: str


class InitiatorClient(RelayConnection):
    """Handheld side: owns the handshake and sends turns to the executor."""

    role = "initiator"

    def __init__(self, pairing: PairingInfo, timeouts: Optional[Timeouts] = None,
                 on_state: Optional[Callable[[ConnectionState], None]] = None):
        super().__init__(pairing.relay_url, pairing.room, timeouts, on_state)
        self.pairing = pairing
        self.server_info: Optional[ServerInfo] = None

        self.on_server_info: Optional[Callable[[ServerInfo], None]] = None
        self.on_compact_needed: Optional[Callable[[str, int], None]] = None
        self.on_session_end: Optional[Callable[[str], None]] = None
        self.on_shutdown: Optional[Callable[[], None]] = None
        self.on_error: Optional[Callable[[DuetError], None]] = None

        self._offer: Optional[HandshakeOffer] = None
        self._turn: Optional[asyncio.Queue] = None
        # answers still owed by the executor for turns given up on here
        self._abandoned = 0

    def _report(self, exc: DuetError):
        if self.on_error:
            try:
                self.on_error(exc)
            except Exception as e:
                self.log.error("error_callback_failed", error=str(e))

    def _notify(self, callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            self.log.error("callback_failed", error=str(e))

    def _fail_turn(self, exc: DuetError):
        if self._turn is not None:
            self._turn.put_nowait(exc)

    async def wait_paired(self, timeout: Optional[float] = None) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout if timeout is not None else self.timeouts.handshake)
        while loop.time() < deadline:
            if self.is_paired:
                return True
            if self.state is ConnectionState.DISCONNECTED and self._closing:
                return False
            await asyncio.sleep(self.timeouts.handshake_poll)
        return self.is_paired

    # -- handshake -----------------------------------------------------------

    async def on_peer_joined(self, gen: int):
        if self.state is ConnectionState.CONNECTED:
            self._spawn(self._handshake(gen), "handshake")
        else:
            self.log.debug("peer_joined_ignored", state=self.state.value)

    async def _handshake(self, gen: int):
        offer = hs_offer(self.pairing.server_public_key)
        self._offer = offer
        try:
            await self.send_payload(offer.message)
        except ProtocolError as e:
            self.log.warning("key_exchange_send_failed", error=str(e))
            if self._offer is offer:
                self._offer = None
            return
        self.log.info("key_exchange_sent", ephemeral=key_fingerprint(offer.ephemeral_public_raw))

        # Polled rather than awaited on an event so a lost wake-up cannot
        # strand the attempt.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeouts.handshake
        while loop.time() < deadline:
            if not self.session.is_current(gen) or self._offer is not offer:
                return
            await asyncio.sleep(self.timeouts.handshake_poll)

        if not self.session.is_current(gen) or self._offer is not offer:
            return
        self._offer = None
        self.log.warning("handshake_timeout", window_s=self.timeouts.handshake)
        self._closing = True
        self.fire(PeerEvent.HANDSHAKE_TIMEOUT)
        await self._drop_socket()
        self._report(HandshakeTimeoutError("no key_exchange_ack from server"))

    def _accept_ack(self):
        offer, self._offer = self._offer, None
        if offer is None:
            self.log.debug("unexpected_key_exchange_ack")
            return
        self.session.session_key = offer.session_key
        self._abandoned = 0
        if self.fire(PeerEvent.HANDSHAKE_COMPLETE) is None:
            self.session.session_key = None
            return
        self.log.info("paired", session_key=key_fingerprint(offer.session_key))

    # -- transport hooks -----------------------------------------------------

    async def on_peer_left(self, gen: int):
        self._offer = None
        self._abandoned = 0
        self._fail_turn(ProtocolError("server left the room"))

    def on_transport_lost(self):
        self._offer = None
        self._fail_turn(ProtocolError("connection lost"))

    async def _handle_shutdown(self):
        self.log.info("server_shutdown")
        self._offer = None
        self._abandoned = 0
        self._fail_turn(ProtocolError("server shut down"))
        self._closing = True
        step = self.fire(PeerEvent.SERVER_SHUTDOWN)
        await self._drop_socket()
        if step and step.clear_session:
            self._notify(self.on_shutdown)

    # -- payloads ------------------------------------------------------------

    async def on_payload(self, gen: int, payload: Dict[str, Any]):
        kind = payload["type"]
        if kind == Kind.KEY_EXCHANGE_ACK:
            self._accept_ack()
            return
        if kind not in KINDS or kind == Kind.KEY_EXCHANGE:
            self.log.warning("unexpected_payload", kind=kind)
            return
        if self.session.session_key is None:
            self.log.debug("payload_before_pairing", kind=kind)
            return

        body = self.open_payload(payload)
        if body is None:
            return
        if kind in (Kind.TEXT_STREAM, Kind.TEXT_DONE, Kind.TEXT_ANSWER) and self._skip_abandoned(kind):
            return

        if kind == Kind.TEXT_STREAM:
            text, index = body.get("text"), body.get("index")
            if isinstance(text, str) and isinstance(index, int) and self._turn is not None:
                self._turn.put_nowait(TextChunk(text=text, index=index))
        elif kind == Kind.TEXT_DONE:
            if self._turn is not None:
                self._turn.put_nowait(TextDone(text=str(body.get("text") or "")))
        elif kind == Kind.TEXT_ANSWER:
            # older executors answer in one frame; adapt it to a terminal event
            if self._turn is not None:
                self._turn.put_nowait(TextDone(text=str(body.get("answer") or "")))
        elif kind == Kind.SERVER_INFO:
            self.server_info = ServerInfo(work_dir=str(body.get("workDir") or ""),
                                          hostname=str(body.get("hostname") or ""))
            self.log.info("server_info", work_dir=self.server_info.work_dir, hostname=self.server_info.hostname)
            self._notify(self.on_server_info, self.server_info)
        elif kind == Kind.COMPACT_NEEDED:
            sid, usage = body.get("sessionId"), body.get("usage")
            if isinstance(sid, str):
                self.log.info("compact_needed", session_id=sid, usage=usage)
                self._notify(self.on_compact_needed, sid, usage if isinstance(usage, int) else 0)
        elif kind == Kind.SESSION_END:
            sid = body.get("sessionId")
            if isinstance(sid, str):
                self._notify(self.on_session_end, sid)
        elif kind == Kind.SERVER_SHUTDOWN:
            await self._handle_shutdown()
        else:
            self.log.debug("payload_ignored", kind=kind)

    # -- turns ---------------------------------------------------------------

    async def ask_stream(self, text: str, session_id: Optional[str] = None) -> AsyncIterator[StreamEvent]:
        """Send one ``ask_text`` and yield its stream up to the terminal event.

        A turn given up on after sending (timeout, or the consumer closing
        the stream early) is counted as abandoned; the executor still answers
        it, in order, and that answer is dropped on arrival.
        """
        if not self.is_paired:
            raise NotPairedError("not paired")
        if self._turn is not None:
            raise ProtocolError("a turn is already in flight")

        queue: asyncio.Queue = asyncio.Queue()
        self._turn = queue
        sent = settled = False
        key = None
        try:
            body: Dict[str, Any] = {"text": text}
            if session_id:
                body["sessionId"] = session_id
            await self.send_sealed(Kind.ASK_TEXT, body)
            sent = True
            key = self.session.session_key

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.timeouts.turn
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise TurnTimeoutError(f"no answer within {self.timeouts.turn:.0f}s")
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    raise TurnTimeoutError(f"no answer within {self.timeouts.turn:.0f}s") from None
                if isinstance(item, BaseException):
                    # the link itself failed; nothing more will arrive for this pairing
                    settled = True
                    raise item
                if isinstance(item, TextDone):
                    settled = True
                yield item
                if settled:
                    return
        finally:
            if self._turn is queue:
                self._turn = None
            if sent and not settled and self.session.session_key is key:
                self._abandoned += 1
                self.log.info("turn_abandoned", pending_answers=self._abandoned)

    def _skip_abandoned(self, kind: str) -> bool:
        if not self._abandoned:
            return False
        if kind != Kind.TEXT_STREAM:
            self._abandoned -= 1
            self.log.info("late_answer_dropped", pending_answers=self._abandoned)
        return True

    async def send_session_end(self, session_id: str):
        await self.send_sealed(Kind.SESSION_END, {"sessionId": session_id})
        self.log.info("session_end_sent", session_id=session_id)

    async def send_session_clear(self, session_id: str):
        await self.send_sealed(Kind.SESSION_CLEAR, {"sessionId": session_id})
        self.log.info("session_clear_sent", session_id=session_id)

    async def send_session_compact(self, session_id: str, summary: str):
        await self.send_sealed(Kind.SESSION_COMPACT, {"sessionId": session_id, "summary": summary})
        self.log.info("session_compact_sent", session_id=session_id, summary_chars=len(summary))
