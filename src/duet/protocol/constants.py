from __future__ import annotations

from typing import Literal

ROLE = Literal["initiator", "executor"]
PROTO_VER = "1.0"

# HKDF labels for the key-exchange wrapping key
HKDF_SALT = b"duet-relay"
HKDF_INFO = b"key-exchange"

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16
PUBLIC_KEY_BYTES = 32

MAX_MSG_BYTES = 1024 * 1024
MAX_JSON_DEPTH = 16
MAX_JSON_KEYS = 100
MAX_B64_LENGTH = 2 * MAX_MSG_BYTES
MAX_ROOM_ID_LENGTH = 128
ROOM_CAPACITY = 2

# Broker frame types
MSG_JOIN = "join"
MSG_JOINED = "joined"
MSG_PEER_JOINED = "peer_joined"
MSG_PEER_LEFT = "peer_left"
MSG_MESSAGE = "message"
MSG_ERROR = "error"
MSG_PING = "ping"
MSG_PONG = "pong"


class Kind:
    """Envelope types carried inside a forwarded ``message`` payload."""
    KEY_EXCHANGE = "key_exchange"
    KEY_EXCHANGE_ACK = "key_exchange_ack"
    SERVER_INFO = "server_info"
    ASK_TEXT = "ask_text"
    TEXT_STREAM = "text_stream"
    TEXT_DONE = "text_done"
    TEXT_ANSWER = "text_answer"
    SESSION_END = "session_end"
    SESSION_CLEAR = "session_clear"
    SESSION_COMPACT = "session_compact"
    COMPACT_NEEDED = "compact_needed"
    SERVER_SHUTDOWN = "server_shutdown"


HANDSHAKE_KINDS = {Kind.KEY_EXCHANGE, Kind.KEY_EXCHANGE_ACK}

KINDS = HANDSHAKE_KINDS | {
    Kind.SERVER_INFO, Kind.ASK_TEXT, Kind.TEXT_STREAM, Kind.TEXT_DONE,
    Kind.TEXT_ANSWER, Kind.SESSION_END, Kind.SESSION_CLEAR,
    Kind.SESSION_COMPACT, Kind.COMPACT_NEEDED, Kind.SERVER_SHUTDOWN,
}

# Broker error strings
ERR_INVALID_JSON = "invalid JSON"
ERR_NOT_OBJECT = "message must be a JSON object"
ERR_TOO_LARGE = "message too large"
ERR_ROOM_REQUIRED = "room is required"
ERR_ROOM_FULL = "room is full"
ERR_NOT_IN_ROOM = "not in a room"
ERR_UNKNOWN_TYPE = "unknown message type"

PAIRING_SCHEME = "duet"
PAIRING_HOST = "pair"

DEFAULT_RELAY = "ws://127.0.0.1:8080/ws"
DEFAULT_COMPACT_THRESHOLD = 150_000
BACKEND_FAILURE_ANSWER = "Error: command execution failed"
