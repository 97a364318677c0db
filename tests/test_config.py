import json

import pytest

from duet.config import load_settings
from duet.errors import (
    ConfigError, DuetError, HandshakeTimeoutError, NotPairedError, ProtocolError, TurnTimeoutError,
    user_message,
)


def test_defaults_without_config(tmp_path):
    settings = load_settings(tmp_path, env={})
    assert settings.relay.port == 8080
    assert settings.relay.heartbeat_interval == 15
    assert settings.executor.compact_threshold == 150_000
    assert settings.executor.timeouts.handshake == 10
    assert settings.client.timeouts.turn == 120
    assert settings.executor.identity_path == tmp_path / "identity.json"


def test_file_then_env_overrides(tmp_path):
    (tmp_path / "config.json").write_text(json.dumps({
        "relay": {"port": 9000, "heartbeat_interval": 5},
        "executor": {"relay_url": "ws://from-file/ws", "compact_threshold": 1000},
    }))
    settings = load_settings(tmp_path, env={"DUET_PORT": "9100", "DUET_RELAY_URL": "wss://from-env/ws"})
    assert settings.relay.port == 9100
    assert settings.relay.heartbeat_interval == 5
    assert settings.executor.relay_url == "wss://from-env/ws"
    assert settings.executor.compact_threshold == 1000


def test_bad_config_raises(tmp_path):
    (tmp_path / "config.json").write_text("{nope")
    with pytest.raises(ConfigError):
        load_settings(tmp_path, env={})

    (tmp_path / "config.json").write_text(json.dumps({"relay": {"port": 0}}))
    with pytest.raises(ConfigError):
        load_settings(tmp_path, env={})


def test_user_messages():
    assert user_message(TurnTimeoutError("x")) == "The response timed out."
    assert user_message(NotPairedError("not paired")) == "Not paired with a server yet."
    assert user_message(HandshakeTimeoutError("x")).startswith("Pairing failed")
    assert user_message(ProtocolError("x")) == "Lost connection to the server."
    assert user_message(DuetError("x")) == "Something went wrong."
    assert user_message(KeyError("x")) == "Something went wrong."
