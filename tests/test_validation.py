import json

import pytest

from duet.protocol.validation import fuzz_resistant_json_loads, optional_str, require_str


def test_plain_frame_parses():
    assert fuzz_resistant_json_loads(b'{"type":"join","room":"r"}') == {"type": "join", "room": "r"}


def test_deep_nesting_rejected():
    raw = "[" * 40 + "]" * 40
    with pytest.raises(ValueError):
        fuzz_resistant_json_loads(raw)


def test_too_many_keys_rejected():
    raw = json.dumps({f"k{i}": i for i in range(150)})
    with pytest.raises(ValueError):
        fuzz_resistant_json_loads(raw)


def test_invalid_utf8_rejected():
    with pytest.raises(ValueError):
        fuzz_resistant_json_loads(b"\xff\xfe")


def test_string_field_helpers():
    body = {"text": "hi", "empty": "", "num": 3}
    assert require_str(body, "text") == "hi"
    with pytest.raises(ValueError):
        require_str(body, "empty")
    assert optional_str(body, "empty") is None
    assert optional_str(body, "missing") is None
    with pytest.raises(ValueError):
        optional_str(body, "num")
