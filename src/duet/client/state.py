from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    PAIRED = "paired"


class PeerEvent(Enum):
    CONNECT = "connect"
    JOINED = "joined"
    HANDSHAKE_COMPLETE = "handshake_complete"
    KEY_EXCHANGE_ACCEPTED = "key_exchange_accepted"
    TRANSPORT_LOST = "transport_lost"
    HEARTBEAT_FAILED = "heartbeat_failed"
    PEER_LEFT = "peer_left"
    SERVER_SHUTDOWN = "server_shutdown"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    CLOSE = "close"


@dataclass(frozen=True)
class Transition:
    state: ConnectionState
    discard_key: bool = False
    reconnect: bool = False
    clear_session: bool = False
    rehandshake: bool = False


S = ConnectionState
E = PeerEvent

_LOSS = Transition(S.CONNECTING, discard_key=True, reconnect=True)

_TABLE: Dict[Tuple[ConnectionState, PeerEvent], Transition] = {
    (S.DISCONNECTED, E.CONNECT): Transition(S.CONNECTING),
    (S.CONNECTING, E.CONNECT): Transition(S.CONNECTING, discard_key=True),
    (S.CONNECTED, E.CONNECT): Transition(S.CONNECTING, discard_key=True),
    (S.PAIRED, E.CONNECT): Transition(S.CONNECTING, discard_key=True),

    (S.CONNECTING, E.JOINED): Transition(S.CONNECTED),

    (S.CONNECTED, E.HANDSHAKE_COMPLETE): Transition(S.PAIRED),
    (S.CONNECTED, E.KEY_EXCHANGE_ACCEPTED): Transition(S.PAIRED),
    # executor: initiator re-keyed without the socket dropping
    (S.PAIRED, E.KEY_EXCHANGE_ACCEPTED): Transition(S.PAIRED),

    (S.CONNECTING, E.TRANSPORT_LOST): _LOSS,
    (S.CONNECTED, E.TRANSPORT_LOST): _LOSS,
    (S.PAIRED, E.TRANSPORT_LOST): _LOSS,
    (S.CONNECTED, E.HEARTBEAT_FAILED): _LOSS,
    (S.PAIRED, E.HEARTBEAT_FAILED): _LOSS,

    # socket stays up; pairing resumes when the partner rejoins
    (S.PAIRED, E.PEER_LEFT): Transition(S.CONNECTING, discard_key=True, rehandshake=True),
    (S.CONNECTED, E.PEER_LEFT): Transition(S.CONNECTED, discard_key=True),

    (S.CONNECTED, E.HANDSHAKE_TIMEOUT): Transition(S.DISCONNECTED, discard_key=True),
    (S.CONNECTING, E.HANDSHAKE_TIMEOUT): Transition(S.DISCONNECTED, discard_key=True),
}

for _s in S:
    _TABLE[(_s, E.CLOSE)] = Transition(S.DISCONNECTED, discard_key=True)
    _TABLE[(_s, E.SERVER_SHUTDOWN)] = Transition(S.DISCONNECTED, discard_key=True, clear_session=True)


def transition(state: ConnectionState, event: PeerEvent) -> Optional[Transition]:
    """Next step for ``event`` in ``state``; ``None`` means the event is ignored."""
    return _TABLE.get((state, event))


@dataclass
class SessionState:
    """Mutable per-peer connection state, owned by one connection object.

    ``generation`` increments on every connection attempt; background work
    captures it and becomes a no-op once it is stale.
    """
    state: ConnectionState = ConnectionState.DISCONNECTED
    session_key: Optional[bytes] = None
    generation: int = 0
    peers: int = 0
    decrypt_failures: int = 0

    def apply(self, event: PeerEvent) -> Optional[Transition]:
        step = transition(self.state, event)
        if step is None:
            return None
        if event is PeerEvent.CONNECT:
            self.generation += 1
        if step.discard_key:
            self.session_key = None
        self.state = step.state
        return step

    def is_current(self, generation: int) -> bool:
        return generation == self.generation
