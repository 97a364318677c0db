import asyncio

import pytest

from duet.client import connection
from duet.client.connection import RelayConnection
from duet.client.state import ConnectionState
from duet.config import Timeouts
from duet.relay.broker import RelayBroker

from fakes import SilentSocket, memory_connector, until

RELAY = "ws://relay.test/ws"


def test_backoff_doubles_up_to_the_cap():
    conn = RelayConnection(RELAY, "r", Timeouts(reconnect_jitter=0))
    delays = []
    for attempt in range(8):
        conn._attempts = attempt
        delays.append(conn.backoff_delay())
    assert delays == [1, 2, 4, 8, 16, 30, 30, 30]


@pytest.mark.parametrize("attempt,base", [(0, 1.0), (3, 8.0), (10, 30.0)])
def test_backoff_jitter_stays_within_ten_percent(attempt, base):
    conn = RelayConnection(RELAY, "r", Timeouts())
    conn._attempts = attempt
    for _ in range(50):
        assert base * 0.9 <= conn.backoff_delay() <= base * 1.1


def test_unanswered_heartbeat_drops_to_connecting_and_reconnects(monkeypatch):
    broker = RelayBroker()
    sockets = []
    monkeypatch.setattr(connection.websockets, "connect", memory_connector(broker, sockets, SilentSocket))
    timeouts = Timeouts(heartbeat=0.05, reconnect_base=0.05, reconnect_jitter=0)

    async def scenario():
        states = []
        conn = RelayConnection(RELAY, "hb", timeouts, on_state=states.append)
        await conn.connect()
        await until(lambda: conn.state is ConnectionState.CONNECTED)
        first_generation = conn.session.generation

        await until(lambda: len(states) >= 3)
        assert states[:3] == [ConnectionState.CONNECTING, ConnectionState.CONNECTED,
                              ConnectionState.CONNECTING]
        assert sockets[0].closed

        # the scheduled reconnect opens a fresh socket under a new generation
        await until(lambda: len(sockets) >= 2 and conn.session.generation > first_generation)
        await until(lambda: conn.state is ConnectionState.CONNECTED)
        await conn.close()
        assert conn.state is ConnectionState.DISCONNECTED
    asyncio.run(scenario())
