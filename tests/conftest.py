import pytest

from duet.relay.broker import RelayBroker

from fakes import FakeTransport


@pytest.fixture
def broker():
    return RelayBroker()


@pytest.fixture
def make_peer(broker):
    def _make(**kwargs):
        transport = FakeTransport(**kwargs)
        return broker.connect(transport), transport
    return _make
