import json
import os
import stat

import pytest

from duet.crypto.handshake import StaticIdentity, hs_accept, hs_offer
from duet.crypto.primitives import b64url_decode, b64url_encode
from duet.errors import HandshakeError


def test_offer_and_accept_agree_on_session_key():
    identity = StaticIdentity.generate()
    offer = hs_offer(identity.public_key_raw)
    assert offer.message["type"] == "key_exchange"
    assert len(b64url_decode(offer.message["publicKey"])) == 32
    assert len(b64url_decode(offer.message["encryptedSessionKey"])) == 60
    assert hs_accept(identity.private_key, offer.message) == offer.session_key


def test_each_offer_uses_fresh_material():
    identity = StaticIdentity.generate()
    a = hs_offer(identity.public_key_raw)
    b = hs_offer(identity.public_key_raw)
    assert a.session_key != b.session_key
    assert a.ephemeral_public_raw != b.ephemeral_public_raw


def test_offer_for_other_key_is_rejected():
    ours = StaticIdentity.generate()
    theirs = StaticIdentity.generate()
    offer = hs_offer(theirs.public_key_raw)
    with pytest.raises(HandshakeError):
        hs_accept(ours.private_key, offer.message)


def test_tampered_session_key_is_rejected():
    identity = StaticIdentity.generate()
    offer = hs_offer(identity.public_key_raw)
    sealed = bytearray(b64url_decode(offer.message["encryptedSessionKey"]))
    sealed[-1] ^= 0xFF
    message = dict(offer.message, encryptedSessionKey=b64url_encode(bytes(sealed)))
    with pytest.raises(HandshakeError):
        hs_accept(identity.private_key, message)


@pytest.mark.parametrize("field,value", [
    ("publicKey", "%%%"),
    ("publicKey", b64url_encode(b"\x01" * 31)),
    ("encryptedSessionKey", b64url_encode(b"\x01" * 59)),
    ("encryptedSessionKey", None),
])
def test_malformed_offer_is_rejected(field, value):
    identity = StaticIdentity.generate()
    message = dict(hs_offer(identity.public_key_raw).message)
    message[field] = value
    with pytest.raises(HandshakeError):
        hs_accept(identity.private_key, message)


def test_offer_requires_32_byte_server_key():
    with pytest.raises(HandshakeError):
        hs_offer(b"\x00" * 16)


def test_identity_persists_and_reloads(tmp_path):
    path = tmp_path / "cfg" / "identity.json"
    first = StaticIdentity.load_or_create(path)
    assert path.exists()
    if os.name == "posix":
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
    data = json.loads(path.read_text())
    assert set(data) == {"privateKeyPkcs8", "publicKeyRaw", "room"}

    again = StaticIdentity.load_or_create(path)
    assert again.room == first.room
    assert again.public_key_raw == first.public_key_raw


def test_identity_force_new_regenerates(tmp_path):
    path = tmp_path / "identity.json"
    first = StaticIdentity.load_or_create(path)
    fresh = StaticIdentity.load_or_create(path, force_new=True)
    assert fresh.public_key_raw != first.public_key_raw
    assert fresh.room != first.room


def test_corrupt_identity_is_replaced(tmp_path):
    path = tmp_path / "identity.json"
    path.write_text("{not json")
    identity = StaticIdentity.load_or_create(path)
    assert len(identity.public_key_raw) == 32
