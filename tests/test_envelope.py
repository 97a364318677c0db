import pytest

from duet.crypto.envelope import decrypt, encrypt, generate_key, open_envelope, seal, seal_bytes
from duet.crypto.primitives import b64url_decode, b64url_encode
from duet.errors import DecryptionError
from duet.protocol.constants import Kind, NONCE_BYTES, TAG_BYTES


def test_encrypt_decrypt_roundtrip_unicode():
    key = generate_key()
    obj = {"text": "こんにちは", "index": 3}
    assert decrypt(key, encrypt(key, obj)) == obj


def test_wire_layout_is_unpadded_b64url_with_nonce_and_tag():
    key = generate_key()
    wire = encrypt(key, {})
    assert "=" not in wire and "+" not in wire and "/" not in wire
    # b"{}" is two bytes of plaintext
    assert len(b64url_decode(wire)) == NONCE_BYTES + 2 + TAG_BYTES


def test_fresh_nonce_per_seal():
    key = generate_key()
    assert encrypt(key, {"a": 1}) != encrypt(key, {"a": 1})


def test_wrong_key_rejected():
    wire = encrypt(generate_key(), {"a": 1})
    with pytest.raises(DecryptionError):
        decrypt(generate_key(), wire)


def test_tampered_ciphertext_rejected():
    key = generate_key()
    blob = bytearray(b64url_decode(encrypt(key, {"a": 1})))
    blob[NONCE_BYTES] ^= 0x01
    with pytest.raises(DecryptionError):
        decrypt(key, b64url_encode(bytes(blob)))


def test_truncated_and_bad_base64_rejected():
    key = generate_key()
    with pytest.raises(DecryptionError):
        decrypt(key, b64url_encode(b"\x00" * 10))
    with pytest.raises(DecryptionError):
        decrypt(key, "not base64 !!")


def test_non_object_plaintext_rejected():
    key = generate_key()
    wire = b64url_encode(seal_bytes(key, b"[1, 2]"))
    with pytest.raises(DecryptionError):
        decrypt(key, wire)


def test_seal_and_open_envelope():
    key = generate_key()
    env = seal(Kind.TEXT_DONE, {"text": "done"}, key)
    assert env["type"] == "text_done"
    assert open_envelope(env, key) == {"text": "done"}


def test_open_envelope_without_key_or_ciphertext():
    key = generate_key()
    with pytest.raises(DecryptionError):
        open_envelope(seal(Kind.TEXT_DONE, {}, key), None)
    with pytest.raises(DecryptionError):
        open_envelope({"type": "text_done"}, key)
