"""Executor side of the relay: accepts pairing and answers turns from the backend."""
from __future__ import annotations

import asyncio
import os
import socket
from typing import Any, Dict, Optional

from duet.client.connection import RelayConnection
from duet.client.state import PeerEvent
from duet.config import ExecutorSettings
from duet.crypto.handshake import StaticIdentity, hs_accept, key_fingerprint
from duet.errors import DuetError, HandshakeError, ProtocolError
from duet.protocol.constants import Kind, KINDS
from duet.protocol.pairing import PairingInfo
from duet.protocol.validation import optional_str, require_str

from .backend import Backend, BackendJobQueue, CommandBackend
from .sessions import SessionRegistry


class ExecutorConnector(RelayConnection):
    role = "executor"

    def __init__(self, identity: StaticIdentity, settings: Optional[ExecutorSettings] = None,
                 backend: Optional[Backend] = None, hostname: Optional[str] = None):
        settings = settings or ExecutorSettings()
        super().__init__(settings.relay_url, identity.room, settings.timeouts)
        self.identity = identity
        self.settings = settings
        self.hostname = hostname or socket.gethostname()
        self.work_dir = settings.work_dir or os.getcwd()
        if backend is None:
            backend = CommandBackend(settings.command, settings.system_prompt,
                                     self.work_dir, settings.timeouts.backend)
        self.jobs = BackendJobQueue(backend)
        self.sessions = SessionRegistry()

    @property
    def pairing(self) -> PairingInfo:
        return PairingInfo(relay_url=self.relay_url, room=self.room,
                           server_public_key=self.identity.public_key_raw)

    def backoff_delay(self) -> float:
        return self.timeouts.executor_reconnect

    # -- pairing -------------------------------------------------------------

    async def _accept_key_exchange(self, payload: Dict[str, Any]):
        try:
            session_key = hs_accept(self.identity.private_key, payload)
        except HandshakeError as e:
            self.log.warning("key_exchange_failed", error=str(e))
            return
        previous = self.session.session_key
        self.session.session_key = session_key
        if self.fire(PeerEvent.KEY_EXCHANGE_ACCEPTED) is None:
            self.session.session_key = previous
            self.log.warning("key_exchange_out_of_state", state=self.state.value)
            return
        self.log.info("paired", session_key=key_fingerprint(session_key))
        await self.send_payload({"type": Kind.KEY_EXCHANGE_ACK})
        await self.send_sealed(Kind.SERVER_INFO, {"workDir": self.work_dir, "hostname": self.hostname})
        self.log.info("server_info_sent", work_dir=self.work_dir, hostname=self.hostname)

    async def on_peer_left(self, gen: int):
        self.log.info("initiator_left")

    # -- payloads ------------------------------------------------------------

    async def on_payload(self, gen: int, payload: Dict[str, Any]):
        kind = payload["type"]
        if kind == Kind.KEY_EXCHANGE:
            await self._accept_key_exchange(payload)
            return
        if kind not in KINDS or kind == Kind.KEY_EXCHANGE_ACK:
            self.log.debug("payload_ignored", kind=kind)
            return
        if self.session.session_key is None:
            self.log.warning("payload_without_session_key", kind=kind)
            return

        body = self.open_payload(payload)
        if body is None:
            return

        if kind == Kind.ASK_TEXT:
            self._spawn(self._answer(gen, body), "answer")
        elif kind == Kind.SESSION_END:
            sid = self._session_id(body)
            if sid and self.sessions.end(sid):
                self.log.info("session_ended", session_id=sid)
        elif kind == Kind.SESSION_CLEAR:
            sid = self._session_id(body)
            if sid and self.sessions.clear(sid):
                self.log.info("session_cleared", session_id=sid)
        elif kind == Kind.SESSION_COMPACT:
            sid = self._session_id(body)
            summary = body.get("summary")
            if sid and isinstance(summary, str) and summary.strip():
                rec = self.sessions.compact(sid, summary)
                self.log.info("session_compacted", session_id=sid, backend_session=rec.backend_session_id,
                              summary_chars=len(summary))
        else:
            self.log.debug("payload_ignored", kind=kind)

    def _session_id(self, body: Dict[str, Any]) -> Optional[str]:
        try:
            sid = optional_str(body, "sessionId")
        except ValueError as e:
            self.log.warning("session_id_invalid", error=str(e))
            return None
        return sid.lower() if sid else None

    # -- turns ---------------------------------------------------------------

    async def _answer(self, gen: int, body: Dict[str, Any]):
        try:
            text = require_str(body, "text")
        except ValueError as e:
            self.log.warning("ask_text_invalid", error=str(e))
            return
        sid = self._session_id(body)
        backend_sid, resume, context = None, False, None
        if sid:
            rec = self.sessions.ensure(sid)
            backend_sid, resume = rec.backend_session_id, rec.initialized
            context = self.sessions.take_summary(sid)
        self.log.info("question_received", session_id=sid, chars=len(text))

        index = 0

        async def on_sentence(sentence: str):
            nonlocal index
            if not self.session.is_current(gen):
                return
            try:
                await self.send_sealed(Kind.TEXT_STREAM, {"text": sentence, "index": index})
            except DuetError as e:
                # the invocation runs to completion either way
                self.log.debug("sentence_not_delivered", index=index, error=str(e))
                return
            index += 1

        try:
            result = await self.jobs.submit(text, backend_sid, resume, on_sentence, context)
            if sid and result.ok and result.session_id:
                self.sessions.mark_initialized(sid)
            if not self.session.is_current(gen):
                self.log.info("answer_dropped_stale", session_id=sid)
                return
            await self.send_sealed(Kind.TEXT_DONE, {"text": result.text.strip()})
            self.log.info("answer_sent", session_id=sid, chunks=index, usage=result.usage)

            rec = self.sessions.get(sid) if sid else None
            if rec is not None and result.usage > self.settings.compact_threshold and not rec.compact_notified:
                rec.compact_notified = True
                await self.send_sealed(Kind.COMPACT_NEEDED, {"sessionId": sid, "usage": result.usage})
                self.log.info("compact_needed_sent", session_id=sid, usage=result.usage)
        except DuetError as e:
            self.log.warning("answer_not_delivered", session_id=sid, error=str(e))

    # -- lifecycle -----------------------------------------------------------

    async def run(self, stop: asyncio.Event):
        try:
            await self.connect()
        except ProtocolError as e:
            self.log.warning("initial_connect_failed", error=str(e))
        await stop.wait()
        await self.shutdown()

    async def shutdown(self):
        """End active sessions and tell the initiator we are going away."""
        if self.is_paired:
            try:
                for sid in self.sessions.active_ids():
                    await self.send_sealed(Kind.SESSION_END, {"sessionId": sid})
                    self.log.info("session_end_sent", session_id=sid)
                await self.send_sealed(Kind.SERVER_SHUTDOWN, {})
                self.log.info("server_shutdown_sent")
            except DuetError as e:
                self.log.warning("shutdown_notice_failed", error=str(e))
        await self.jobs.close()
        await self.close()
