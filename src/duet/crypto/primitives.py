from __future__ import annotations
import base64
import hashlib
import hmac
from duet.protocol.constants import MAX_B64_LENGTH

def hkdf_sha256(ikm: bytes, salt: bytes, info: bytes, n: int) -> bytes:
    prk = hmac.new(salt, ikm, hashlib.sha256).digest()
    out, t = b"", b""
    c = 1
    while len(out) < n:
        t = hmac.new(prk, t + info + bytes([c]), hashlib.sha256).digest()
        out += t
        c += 1
    return out[:n]

def fingerprint(b: bytes) -> str:
    return b[:4].hex()

def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")

def b64url_decode(s: str) -> bytes:
    if not isinstance(s, str):
        raise ValueError("Base64 value must be a string")
    if len(s) > MAX_B64_LENGTH:
        raise ValueError(f"Base64 too long: {len(s)} > {MAX_B64_LENGTH}")
    s = s.replace("+", "-").replace("/", "_").rstrip("=")
    padded = s + "=" * (-len(s) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except ValueError as e:
        raise ValueError(f"Invalid base64: {e}") from e

def validate_bytes_length(data: bytes, name: str, min_len: int, max_len: int | None = None):
    if len(data) < min_len:
        raise ValueError(f"{name} too short: {len(data)} < {min_len}")
    if max_len and len(data) > max_len:
        raise ValueError(f"{name} too long: {len(data)} > {max_len}")

def validate_b64url(s: str, name: str, min_bytes: int, max_bytes: int | None = None) -> bytes:
    data = b64url_decode(s)
    validate_bytes_length(data, name, min_bytes, max_bytes)
    return data
