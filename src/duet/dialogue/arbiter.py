"""Dialogue arbiter: turn-taking between the user and the executor.

Utterances queue in arrival order and are processed one at a time by a
single worker task, so at most one turn is ever in flight. A response that
is being delivered (spoken) when a new utterance arrives is cut off
("barge-in"); the backend request itself is never cancelled, its remaining
output is just not delivered.
"""
from __future__ import annotations

import asyncio
import itertools
import uuid
from collections import deque
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional, Protocol

import structlog

from duet.client.initiator import StreamEvent, TextChunk, TextDone
from duet.errors import DuetError, user_message

from .commands import VoiceCommand, detect_voice_command, COMPACT_PROMPT, CLEARED_REPLY

logger = structlog.get_logger()


class Status(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"


@dataclass
class ArbiterEvent:
    kind: str  # status | user | fragment | answer | error | command
    status: Status
    text: str = ""


@dataclass
class Utterance:
    text: str
    seq: int
    command: Optional[VoiceCommand] = None
    summary: Optional[str] = None


@dataclass
class Turn:
    utterance: Utterance
    session_id: str
    fragments: List[str] = field(default_factory=list)
    answer: Optional[str] = None
    error: Optional[str] = None
    superseded: bool = False


class Channel(Protocol):
    is_paired: bool

    def ask_stream(self, text: str, session_id: Optional[str] = None) -> AsyncIterator[StreamEvent]: ...

    async def send_session_end(self, session_id: str) -> None: ...

    async def send_session_clear(self, session_id: str) -> None: ...

    async def send_session_compact(self, session_id: str, summary: str) -> None: ...


class Speaker(Protocol):
    """Response delivery collaborator (TTS playback on a device)."""

    def speak(self, text: str) -> None: ...

    def stop(self) -> None: ...

    async def wait_done(self) -> None: ...


class NullSpeaker:
    def speak(self, text: str) -> None:
        pass

    def stop(self) -> None:
        pass

    async def wait_done(self) -> None:
        return None


class StreamAssembler:
    """Releases ``text_stream`` chunks in index order, dropping duplicates."""

    def __init__(self):
        self.parts: List[str] = []
        self._held: Dict[int, str] = {}

    def add(self, chunk: TextChunk) -> List[str]:
        if chunk.index < len(self.parts) or chunk.index in self._held:
            return []
        self._held[chunk.index] = chunk.text
        released = []
        while len(self.parts) in self._held:
            text = self._held.pop(len(self.parts))
            self.parts.append(text)
            released.append(text)
        return released

    def text(self) -> str:
        parts = self.parts + [self._held[i] for i in sorted(self._held)]
        return " ".join(p.strip() for p in parts if p.strip()).strip()


class DialogueArbiter:
    def __init__(self, channel: Channel, speaker: Optional[Speaker] = None,
                 on_event: Optional[Callable[[ArbiterEvent], None]] = None,
                 session_id: Optional[str] = None):
        self.channel = channel
        self.speaker = speaker or NullSpeaker()
        self.on_event = on_event

        self.pending: Deque[Utterance] = deque()
        self.in_flight = False
        self.session_id = session_id
        self.status = Status.IDLE
        self.transcript: List[Turn] = []
        self.compact_pending = False

        self._seq = itertools.count()
        self._worker: Optional[asyncio.Task] = None
        self._delivery: Optional[asyncio.Task] = None
        self._current: Optional[Turn] = None

    # -- wiring --------------------------------------------------------------

    def attach(self, client) -> None:
        """Subscribe to the executor notifications an initiator client raises."""
        client.on_compact_needed = self.handle_compact_needed
        client.on_session_end = self.handle_session_end
        client.on_shutdown = self.handle_shutdown

    def _emit(self, kind: str, text: str = ""):
        if self.on_event is None:
            return
        try:
            self.on_event(ArbiterEvent(kind=kind, status=self.status, text=text))
        except Exception as e:
            logger.error("event_callback_failed", error=str(e))

    def _set_status(self, status: Status):
        if status is self.status:
            return
        self.status = status
        self._emit("status")

    # -- input ---------------------------------------------------------------

    def submit(self, text: str) -> None:
        """Queue an utterance; never blocks and never touches an in-flight turn."""
        text = text.strip()
        if not text:
            return
        command = detect_voice_command(text)
        if command is not None:
            logger.info("voice_command", command=command.value)
            self.pending.clear()
            self._barge_in()
            self.pending.append(Utterance(text=text, seq=next(self._seq), command=command))
        else:
            self.pending.append(Utterance(text=text, seq=next(self._seq)))
            if self.status is Status.SPEAKING:
                self._barge_in()
        self._ensure_worker()

    def request(self, command: VoiceCommand, summary: Optional[str] = None) -> None:
        """Queue a session command behind any pending turns."""
        self.pending.append(Utterance(text=command.value, seq=next(self._seq), command=command, summary=summary))
        self._ensure_worker()

    def clear(self) -> None:
        self.request(VoiceCommand.CLEAR)

    def end(self) -> None:
        self.request(VoiceCommand.END)

    def compact(self, summary: Optional[str] = None) -> None:
        """Without ``summary`` the executor is asked to write one first."""
        self.request(VoiceCommand.COMPACT, summary)

    def _barge_in(self):
        self.speaker.stop()
        if self._current is not None:
            self._current.superseded = True
        if self._delivery is not None and not self._delivery.done():
            self._delivery.cancel()
        if self.status is Status.SPEAKING:
            logger.info("barge_in")
            self._set_status(Status.LISTENING)

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def drain(self):
        while self._worker is not None and not self._worker.done():
            await asyncio.wait({self._worker})

    def stop(self):
        self.pending.clear()
        self.speaker.stop()
        if self._delivery is not None and not self._delivery.done():
            self._delivery.cancel()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        self._worker = None
        self.in_flight = False
        self._current = None
        self._set_status(Status.IDLE)

    # -- notifications from the executor --------------------------------------

    def handle_compact_needed(self, session_id: str, usage: int = 0):
        if session_id != self.session_id:
            return
        logger.info("auto_compact_pending", session_id=session_id, usage=usage)
        self.compact_pending = True
        self._ensure_worker()

    def handle_session_end(self, session_id: str):
        if session_id == self.session_id:
            self.stop()
            self.session_id = None
            self.transcript = []

    def handle_shutdown(self):
        self.stop()
        self.session_id = None
        self.transcript = []
        self.compact_pending = False

    # -- worker --------------------------------------------------------------

    async def _run(self):
        while True:
            if self.pending:
                item = self.pending.popleft()
                if item.command is not None:
                    await self._run_command(item.command, item.summary)
                else:
                    await self._run_turn(item)
                    await self._await_delivery()
                continue
            if self.compact_pending:
                self.compact_pending = False
                await self._compact()
                continue
            break
        self._set_status(Status.LISTENING if self.channel.is_paired else Status.IDLE)

    def ensure_session(self) -> str:
        if self.session_id is None:
            self.session_id = str(uuid.uuid4())
            logger.info("session_created", session_id=self.session_id)
        return self.session_id

    async def _ask(self, turn: Turn, deliver: bool) -> Optional[str]:
        assembler = StreamAssembler()
        done_text: Optional[str] = None
        self.in_flight = True
        self._current = turn
        try:
            async with aclosing(self.channel.ask_stream(turn.utterance.text, turn.session_id)) as stream:
                async for event in stream:
                    if isinstance(event, TextChunk):
                        for part in assembler.add(event):
                            if deliver:
                                self._deliver(turn, part)
                    elif isinstance(event, TextDone):
                        done_text = event.text
        except DuetError as e:
            turn.error = user_message(e)
            logger.warning("turn_failed", seq=turn.utterance.seq, error=str(e), kind=type(e).__name__)
            return None
        finally:
            self.in_flight = False
            self._current = None

        answer = (done_text or "").strip() or assembler.text()
        turn.answer = answer
        if deliver and answer and not assembler.parts:
            self._deliver(turn, answer)
        return answer

    async def _run_turn(self, utterance: Utterance):
        turn = Turn(utterance=utterance, session_id=self.ensure_session())
        self.transcript.append(turn)
        self._set_status(Status.THINKING)
        self._emit("user", utterance.text)
        logger.info("turn_started", seq=utterance.seq, session_id=turn.session_id)

        answer = await self._ask(turn, deliver=True)
        if turn.error is not None:
            self._set_status(Status.LISTENING)
            self._emit("error", turn.error)
            return
        if not turn.superseded and answer:
            self._emit("answer", answer)
        logger.info("turn_finished", seq=utterance.seq, chars=len(answer or ""), superseded=turn.superseded)

    def _deliver(self, turn: Turn, text: str):
        text = text.strip()
        if turn.superseded or not text:
            return
        turn.fragments.append(text)
        self._set_status(Status.SPEAKING)
        self.speaker.speak(text)
        self._emit("fragment", text)

    async def _await_delivery(self):
        if self.status is not Status.SPEAKING:
            return
        self._delivery = asyncio.get_running_loop().create_task(self.speaker.wait_done())
        try:
            await asyncio.wait({self._delivery})
        finally:
            self._delivery = None
        if self.status is Status.SPEAKING:
            self._set_status(Status.LISTENING)

    # -- commands ------------------------------------------------------------

    async def _run_command(self, command: VoiceCommand, summary: Optional[str] = None):
        try:
            if command is VoiceCommand.CLEAR:
                await self._clear()
            elif command is VoiceCommand.COMPACT:
                await self._compact(summary)
            elif command is VoiceCommand.END:
                await self._end()
        except DuetError as e:
            logger.warning("command_failed", command=command.value, error=str(e))
            self._emit("error", user_message(e))

    async def _clear(self):
        sid = self.session_id
        if sid is not None:
            await self.channel.send_session_clear(sid)
        self.transcript = []
        self.session_id = None
        self.ensure_session()
        self._emit("command", CLEARED_REPLY)
        self._set_status(Status.SPEAKING)
        self.speaker.speak(CLEARED_REPLY)
        await self._await_delivery()

    async def _end(self):
        sid, self.session_id = self.session_id, None
        self.transcript = []
        if sid is not None:
            await self.channel.send_session_end(sid)

    async def _compact(self, summary: Optional[str] = None):
        sid = self.session_id
        if sid is None:
            return
        logger.info("compact_started", session_id=sid, given=summary is not None)
        if summary is None:
            self._set_status(Status.THINKING)
            turn = Turn(utterance=Utterance(text=COMPACT_PROMPT, seq=-1), session_id=sid)
            summary = await self._ask(turn, deliver=False)
            if not summary:
                if turn.error is not None:
                    self._emit("error", turn.error)
                logger.warning("compact_no_summary", session_id=sid)
                return
        await self.channel.send_session_compact(sid, summary)
        self.transcript = []
        self._emit("command", "compacted")
        logger.info("compact_done", session_id=sid, summary_chars=len(summary))
