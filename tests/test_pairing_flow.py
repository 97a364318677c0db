"""Initiator and executor paired through an in-process broker."""
import asyncio

import pytest

from duet.client import connection
from duet.client.initiator import InitiatorClient
from duet.client.state import ConnectionState
from duet.config import ExecutorSettings, Timeouts
from duet.crypto.handshake import StaticIdentity
from duet.dialogue.arbiter import DialogueArbiter
from duet.executor.backend import BackendResult
from duet.executor.connector import ExecutorConnector
from duet.protocol.pairing import PairingInfo
from duet.relay.broker import RelayBroker

from fakes import RecordingSpeaker, memory_connector, until

RELAY = "ws://relay.test/ws"
CHUNKS = ["Hello there. ", "How are you? ", "All done."]


class ChunkBackend:
    def __init__(self, usage=10):
        self.usage = usage
        self.calls = []

    async def run(self, question, session_id, resume, on_sentence=None, context=None):
        self.calls.append((question, session_id, resume, context))
        for chunk in CHUNKS:
            await on_sentence(chunk)
        return BackendResult(text="".join(CHUNKS) + "\n", usage=self.usage)


@pytest.fixture
def timeouts():
    return Timeouts(heartbeat=60, handshake=3, handshake_poll=0.01, turn=5, executor_reconnect=0.05)


@pytest.fixture
def relay(monkeypatch):
    broker = RelayBroker()
    sockets = []
    monkeypatch.setattr(connection.websockets, "connect", memory_connector(broker, sockets))
    return broker, sockets


def make_pair(timeouts, backend, room="r1"):
    identity = StaticIdentity.generate(room=room)
    pairing = PairingInfo(relay_url=RELAY, room=room, server_public_key=identity.public_key_raw)
    initiator = InitiatorClient(pairing, timeouts)
    executor = ExecutorConnector(identity, ExecutorSettings(relay_url=RELAY, timeouts=timeouts),
                                 backend=backend, hostname="workstation")
    return initiator, executor


def test_streamed_answer_is_reassembled(relay, timeouts):
    broker, sockets = relay

    async def scenario():
        backend = ChunkBackend()
        initiator, executor = make_pair(timeouts, backend)
        infos = []
        initiator.on_server_info = infos.append

        await initiator.connect()
        await until(lambda: initiator.state is ConnectionState.CONNECTED)
        await executor.connect()
        assert await initiator.wait_paired(3)
        assert executor.is_paired
        assert len(broker.rooms["r1"].peers) == 2

        speaker = RecordingSpeaker()
        events = []
        arbiter = DialogueArbiter(initiator, speaker=speaker, on_event=events.append)
        arbiter.attach(initiator)
        arbiter.submit("hello")
        await arbiter.drain()

        assert speaker.spoken == [c.strip() for c in CHUNKS]
        assert [e.text for e in events if e.kind == "answer"] == ["".join(CHUNKS).strip()]
        assert backend.calls[0][0] == "hello"
        assert backend.calls[0][1] == arbiter.session_id
        await until(lambda: bool(infos))
        assert infos[0].hostname == "workstation"

        await executor.shutdown()
        await until(lambda: initiator.state is ConnectionState.DISCONNECTED)
        assert arbiter.session_id is None
        await initiator.close()
    asyncio.run(scenario())


def test_second_turn_resumes_backend_session(relay, timeouts):
    async def scenario():
        backend = ChunkBackend()
        initiator, executor = make_pair(timeouts, backend)
        await initiator.connect()
        await until(lambda: initiator.state is ConnectionState.CONNECTED)
        await executor.connect()
        assert await initiator.wait_paired(3)

        arbiter = DialogueArbiter(initiator)
        arbiter.submit("first")
        arbiter.submit("second")
        await arbiter.drain()
        assert [c[2] for c in backend.calls] == [False, True]
        assert backend.calls[0][1] == backend.calls[1][1]

        await executor.close()
        await initiator.close()
    asyncio.run(scenario())


def test_compact_needed_reaches_arbiter_once(relay, timeouts):
    async def scenario():
        backend = ChunkBackend(usage=200_000)
        initiator, executor = make_pair(timeouts, backend)
        await initiator.connect()
        await until(lambda: initiator.state is ConnectionState.CONNECTED)
        await executor.connect()
        assert await initiator.wait_paired(3)

        arbiter = DialogueArbiter(initiator)
        arbiter.attach(initiator)
        arbiter.submit("first")
        await arbiter.drain()
        sid = arbiter.session_id
        await until(lambda: executor.sessions.get(sid).pending_summary is not None)
        await arbiter.drain()

        questions = [c[0] for c in backend.calls]
        assert questions[0] == "first"
        assert questions[1].startswith("Briefly summarize")
        assert len(questions) == 2
        assert arbiter.session_id == sid

        # the summary seeds exactly one following turn on a fresh backend context
        arbiter.submit("third")
        await arbiter.drain()
        assert backend.calls[2][3] == "".join(CHUNKS).strip()
        assert backend.calls[2][1] != sid
        assert backend.calls[2][2] is False

        await executor.close()
        await initiator.close()
    asyncio.run(scenario())


def test_peer_left_then_turn_is_not_paired(relay, timeouts):
    async def scenario():
        initiator, executor = make_pair(timeouts, ChunkBackend())
        await initiator.connect()
        await until(lambda: initiator.state is ConnectionState.CONNECTED)
        await executor.connect()
        assert await initiator.wait_paired(3)

        await executor.close()
        await until(lambda: not initiator.is_paired)
        assert initiator.session.session_key is None

        events = []
        arbiter = DialogueArbiter(initiator, on_event=events.append)
        arbiter.submit("anyone there?")
        await arbiter.drain()
        assert [e.text for e in events if e.kind == "error"] == ["Not paired with a server yet."]
        await initiator.close()
    asyncio.run(scenario())


def test_pairing_resumes_when_executor_returns(relay, timeouts):
    async def scenario():
        initiator, executor = make_pair(timeouts, ChunkBackend())
        await initiator.connect()
        await until(lambda: initiator.state is ConnectionState.CONNECTED)
        await executor.connect()
        assert await initiator.wait_paired(3)
        first_key = initiator.session.session_key

        await executor.close()
        await until(lambda: initiator.state is ConnectionState.CONNECTED)
        await executor.connect()
        assert await initiator.wait_paired(3)
        assert initiator.session.session_key != first_key

        await executor.close()
        await initiator.close()
    asyncio.run(scenario())


def test_handshake_times_out_against_wrong_key(relay, timeouts):
    async def scenario():
        short = timeouts.model_copy(update={"handshake": 0.2})
        initiator, _ = make_pair(short, ChunkBackend())
        _, executor = make_pair(short, ChunkBackend())
        errors = []
        initiator.on_error = errors.append

        await initiator.connect()
        await until(lambda: initiator.state is ConnectionState.CONNECTED)
        await executor.connect()
        await until(lambda: initiator.state is ConnectionState.DISCONNECTED)
        assert not initiator.is_paired
        assert type(errors[0]).__name__ == "HandshakeTimeoutError"

        await executor.close()
        await initiator.close()
    asyncio.run(scenario())


class GatedBackend:
    """Holds its answer to "slow" until the test opens the gate."""

    def __init__(self):
        self.gate = asyncio.Event()

    async def run(self, question, session_id, resume, on_sentence=None, context=None):
        if question == "slow":
            await self.gate.wait()
        await on_sentence(f"Answer to {question}.")
        return BackendResult(text=f"answer to {question}")


def test_late_answer_to_timed_out_turn_is_not_spoken(relay, timeouts):
    async def scenario():
        backend = GatedBackend()
        initiator, executor = make_pair(timeouts.model_copy(update={"turn": 0.3}), backend)
        await initiator.connect()
        await until(lambda: initiator.state is ConnectionState.CONNECTED)
        await executor.connect()
        assert await initiator.wait_paired(3)

        speaker = RecordingSpeaker()
        events = []
        arbiter = DialogueArbiter(initiator, speaker=speaker, on_event=events.append)
        arbiter.submit("slow")
        arbiter.submit("fast")
        await until(lambda: any(e.kind == "error" for e in events))
        backend.gate.set()
        await arbiter.drain()

        assert [e.text for e in events if e.kind == "error"] == ["The response timed out."]
        assert [e.text for e in events if e.kind == "answer"] == ["answer to fast"]
        assert speaker.spoken == ["Answer to fast."]

        await executor.close()
        await initiator.close()
    asyncio.run(scenario())
