"""Envelope codec: AEAD wrapping of payload-bearing messages.

Wire form of a sealed blob is ``nonce(12) || ciphertext || tag(16)``
encoded as unpadded base64url, the same layout used to wrap the session
key during the handshake.
"""
from __future__ import annotations
import json
import secrets
from typing import Any, Dict, Optional

from duet.crypto.primitives import b64url_encode, b64url_decode
from duet.errors import DecryptionError
from duet.protocol.constants import KEY_BYTES, NONCE_BYTES, TAG_BYTES

def require_aead():
    try:
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM
        return AESGCM
    except ImportError as e:
        raise RuntimeError("Missing dependency 'cryptography'") from e

def generate_key() -> bytes:
    return secrets.token_bytes(KEY_BYTES)

def seal_bytes(key: bytes, plaintext: bytes) -> bytes:
    AESGCM = require_aead()
    nonce = secrets.token_bytes(NONCE_BYTES)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)

def open_bytes(key: bytes, combined: bytes) -> bytes:
    from cryptography.exceptions import InvalidTag

    if len(combined) < NONCE_BYTES + TAG_BYTES:
        raise DecryptionError("sealed blob truncated")
    if len(key) != KEY_BYTES:
        raise DecryptionError("wrong key size")
    AESGCM = require_aead()
    nonce, body = combined[:NONCE_BYTES], combined[NONCE_BYTES:]
    try:
        return AESGCM(key).decrypt(nonce, body, None)
    except InvalidTag as e:
        raise DecryptionError("authentication failed") from e

def encrypt(session_key: bytes, obj: Dict[str, Any]) -> str:
    plaintext = json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return b64url_encode(seal_bytes(session_key, plaintext))

def decrypt(session_key: bytes, wire: str) -> Dict[str, Any]:
    try:
        combined = b64url_decode(wire)
    except ValueError as e:
        raise DecryptionError(f"bad encoding: {e}") from e
    plaintext = open_bytes(session_key, combined)
    try:
        obj = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError("plaintext is not JSON") from e
    if not isinstance(obj, dict):
        raise DecryptionError("plaintext is not a JSON object")
    return obj

def seal(kind: str, body: Dict[str, Any], session_key: bytes) -> Dict[str, Any]:
    return {"type": kind, "encrypted": encrypt(session_key, body)}

def open_envelope(envelope: Dict[str, Any], session_key: Optional[bytes]) -> Dict[str, Any]:
    if session_key is None:
        raise DecryptionError("no session key")
    wire = envelope.get("encrypted")
    if not isinstance(wire, str):
        raise DecryptionError("envelope carries no ciphertext")
    return decrypt(session_key, wire)
