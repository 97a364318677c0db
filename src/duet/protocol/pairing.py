from __future__ import annotations
from urllib.parse import parse_qs, quote, urlsplit

from pydantic import BaseModel, field_validator

from duet.crypto.primitives import b64url_decode, b64url_encode
from duet.errors import PairingError
from .constants import PAIRING_SCHEME, PAIRING_HOST, PUBLIC_KEY_BYTES, MAX_ROOM_ID_LENGTH


class PairingInfo(BaseModel):
    """Out-of-band pairing token: relay address, room and executor static key.

    Token form: ``duet://pair?relay=<urlencoded>&room=<id>&pub=<b64url>``.
    """
    relay_url: str
    room: str
    server_public_key: bytes

    @field_validator("relay_url")
    @classmethod
    def _check_relay(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("relay must be a ws:// or wss:// URL")
        return v

    @field_validator("room")
    @classmethod
    def _check_room(cls, v: str) -> str:
        if not v or len(v) > MAX_ROOM_ID_LENGTH:
            raise ValueError("room must be 1-128 characters")
        return v

    @field_validator("server_public_key")
    @classmethod
    def _check_key(cls, v: bytes) -> bytes:
        if len(v) != PUBLIC_KEY_BYTES:
            raise ValueError(f"public key must be {PUBLIC_KEY_BYTES} bytes")
        return v

    def to_url(self) -> str:
        return (
            f"{PAIRING_SCHEME}://{PAIRING_HOST}?relay={quote(self.relay_url, safe='')}"
            f"&room={quote(self.room, safe='')}&pub={b64url_encode(self.server_public_key)}"
        )

    @classmethod
    def from_url(cls, url: str) -> "PairingInfo":
        parts = urlsplit(url.strip())
        if parts.scheme != PAIRING_SCHEME or parts.netloc != PAIRING_HOST:
            raise PairingError(f"not a {PAIRING_SCHEME}://{PAIRING_HOST} URL")
        query = parse_qs(parts.query)
        try:
            relay = query["relay"][0]
            room = query["room"][0]
            pub = b64url_decode(query["pub"][0])
        except (KeyError, IndexError, ValueError) as e:
            raise PairingError(f"pairing URL is incomplete: {e}") from e
        try:
            return cls(relay_url=relay, room=room, server_public_key=pub)
        except ValueError as e:
            raise PairingError(str(e)) from e
