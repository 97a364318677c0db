import pytest

from duet.crypto.primitives import b64url_encode
from duet.errors import PairingError
from duet.protocol.pairing import PairingInfo

KEY = bytes(range(32))


def test_url_roundtrip():
    info = PairingInfo(relay_url="wss://relay.example.com/ws?x=1", room="4f0c-room", server_public_key=KEY)
    url = info.to_url()
    assert url.startswith("duet://pair?relay=wss%3A%2F%2Frelay.example.com")
    assert url.endswith("&pub=" + b64url_encode(KEY))
    assert PairingInfo.from_url(url) == info


def test_standard_base64_key_is_accepted():
    import base64
    std = base64.b64encode(KEY).decode()
    url = f"duet://pair?relay=ws%3A%2F%2F127.0.0.1%3A8080&room=r1&pub={std.replace('+', '%2B').replace('/', '%2F')}"
    assert PairingInfo.from_url(url).server_public_key == KEY


@pytest.mark.parametrize("url", [
    "easy://pair?relay=ws%3A%2F%2Fh&room=r&pub=" + b64url_encode(KEY),
    "duet://pair?room=r&pub=" + b64url_encode(KEY),
    "duet://pair?relay=ws%3A%2F%2Fh&room=r",
    "duet://pair?relay=ws%3A%2F%2Fh&room=r&pub=" + b64url_encode(KEY[:16]),
    "duet://pair?relay=http%3A%2F%2Fh&room=r&pub=" + b64url_encode(KEY),
    "duet://pair?relay=ws%3A%2F%2Fh&room=r&pub=***",
])
def test_bad_urls_raise_pairing_error(url):
    with pytest.raises(PairingError):
        PairingInfo.from_url(url)
