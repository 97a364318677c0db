from __future__ import annotations
import base64
import json
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from duet.crypto.envelope import generate_key, seal_bytes, open_bytes
from duet.crypto.primitives import hkdf_sha256, b64url_encode, validate_b64url, fingerprint
from duet.errors import DecryptionError, HandshakeError
from duet.protocol.constants import (
    HKDF_SALT, HKDF_INFO, KEY_BYTES, NONCE_BYTES, TAG_BYTES, PUBLIC_KEY_BYTES, Kind,
)

def require_crypto():
    try:
        from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
        from cryptography.hazmat.primitives.serialization import (
            Encoding, PublicFormat, PrivateFormat, NoEncryption,
        )
        return X25519PrivateKey, X25519PublicKey, Encoding, PublicFormat, PrivateFormat, NoEncryption
    except ImportError as e:
        raise RuntimeError("Missing dependency 'cryptography'") from e

def public_raw(priv) -> bytes:
    _, _, Encoding, PublicFormat, _, _ = require_crypto()
    return priv.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)

def derive_wrapping_key(priv, peer_pub_raw: bytes) -> bytes:
    """X25519 agreement followed by HKDF-SHA256; the result never leaves the peer."""
    _, X25519PublicKey, _, _, _, _ = require_crypto()
    try:
        peer_pub = X25519PublicKey.from_public_bytes(peer_pub_raw)
        ss = priv.exchange(peer_pub)
    except ValueError as e:
        raise HandshakeError(f"key agreement failed: {e}") from e
    return hkdf_sha256(ss, salt=HKDF_SALT, info=HKDF_INFO, n=KEY_BYTES)


@dataclass
class StaticIdentity:
    """Executor's long-lived key pair plus the room it advertises."""
    private_key: Any
    room: str

    @property
    def public_key_raw(self) -> bytes:
        return public_raw(self.private_key)

    @classmethod
    def generate(cls, room: Optional[str] = None) -> "StaticIdentity":
        X25519PrivateKey, *_ = require_crypto()
        return cls(private_key=X25519PrivateKey.generate(), room=room or str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, str]:
        _, _, Encoding, _, PrivateFormat, NoEncryption = require_crypto()
        pkcs8 = self.private_key.private_bytes(Encoding.DER, PrivateFormat.PKCS8, NoEncryption())
        return {
            "privateKeyPkcs8": base64.b64encode(pkcs8).decode("ascii"),
            "publicKeyRaw": base64.b64encode(self.public_key_raw).decode("ascii"),
            "room": self.room,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "StaticIdentity":
        from cryptography.hazmat.primitives.serialization import load_der_private_key

        pkcs8 = base64.b64decode(data["privateKeyPkcs8"], validate=True)
        priv = load_der_private_key(pkcs8, password=None)
        X25519PrivateKey, *_ = require_crypto()
        if not isinstance(priv, X25519PrivateKey):
            raise ValueError("identity key is not X25519")
        room = data.get("room")
        if not isinstance(room, str) or not room:
            raise ValueError("identity has no room")
        return cls(private_key=priv, room=room)

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load_or_create(cls, path: Path, force_new: bool = False, logger=None) -> "StaticIdentity":
        if not force_new and path.exists():
            try:
                with path.open("r", encoding="utf-8") as f:
                    identity = cls.from_dict(json.load(f))
                if logger:
                    logger.info("identity_loaded", path=str(path))
                return identity
            except (OSError, ValueError, KeyError) as e:
                if logger:
                    logger.warning("identity_load_failed", path=str(path), error=str(e))
        identity = cls.generate()
        identity.save(path)
        if logger:
            logger.info("identity_created", path=str(path), room=identity.room)
        return identity


@dataclass
class HandshakeOffer:
    """Initiator side of one handshake attempt."""
    session_key: bytes
    message: Dict[str, str]
    ephemeral_public_raw: bytes


def hs_offer(server_public_raw: bytes) -> HandshakeOffer:
    """Build a ``key_exchange`` payload for the executor's static key.

    A fresh ephemeral key pair and session key are generated on every call,
    so re-running after an aborted attempt never reuses material.
    """
    if len(server_public_raw) != PUBLIC_KEY_BYTES:
        raise HandshakeError(f"server public key must be {PUBLIC_KEY_BYTES} bytes")
    X25519PrivateKey, *_ = require_crypto()
    ephemeral = X25519PrivateKey.generate()
    wrapping_key = derive_wrapping_key(ephemeral, server_public_raw)
    session_key = generate_key()
    sealed = seal_bytes(wrapping_key, session_key)
    eph_pub = public_raw(ephemeral)
    message = {
        "type": Kind.KEY_EXCHANGE,
        "publicKey": b64url_encode(eph_pub),
        "encryptedSessionKey": b64url_encode(sealed),
    }
    return HandshakeOffer(session_key=session_key, message=message, ephemeral_public_raw=eph_pub)

def hs_accept(static_private, payload: Dict[str, Any]) -> bytes:
    """Recover the session key from a ``key_exchange`` payload.

    Raises ``HandshakeError`` for anything that is not a well-formed offer
    made against our static key.
    """
    try:
        peer_pub = validate_b64url(payload.get("publicKey"), "publicKey", PUBLIC_KEY_BYTES, PUBLIC_KEY_BYTES)
        sealed = validate_b64url(
            payload.get("encryptedSessionKey"), "encryptedSessionKey",
            NONCE_BYTES + KEY_BYTES + TAG_BYTES, NONCE_BYTES + KEY_BYTES + TAG_BYTES,
        )
    except ValueError as e:
        raise HandshakeError(str(e)) from e

    wrapping_key = derive_wrapping_key(static_private, peer_pub)
    try:
        session_key = open_bytes(wrapping_key, sealed)
    except DecryptionError as e:
        raise HandshakeError(f"session key unwrap failed: {e}") from e
    if len(session_key) != KEY_BYTES:
        raise HandshakeError("session key has wrong length")
    return session_key

def key_fingerprint(key: bytes) -> str:
    return fingerprint(key)
