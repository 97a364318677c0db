"""Configuration objects passed explicitly into relay, client and executor.

Values load from ``~/.duet/config.json`` when present, then environment
variables, then command-line flags (applied by ``duet.cli``).
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from duet.errors import ConfigError
from duet.protocol.constants import DEFAULT_COMPACT_THRESHOLD, DEFAULT_RELAY, MAX_MSG_BYTES

CONFIG_DIR = Path.home() / ".duet"
CONFIG_FILE = "config.json"
IDENTITY_FILE = "identity.json"

VOICE_SYSTEM_PROMPT = (
    "You are being used via a voice interface (TTS). Keep responses concise and "
    "conversational. No markdown, no code blocks, no bullet points. Speak naturally "
    "as if talking to a developer. When explaining code changes, describe what you "
    "did briefly instead of showing code."
)


class Timeouts(BaseModel):
    handshake: float = Field(10.0, gt=0)
    handshake_poll: float = Field(0.1, gt=0)
    heartbeat: float = Field(15.0, gt=0)
    turn: float = Field(120.0, gt=0)
    backend: float = Field(120.0, gt=0)
    reconnect_base: float = Field(1.0, gt=0)
    reconnect_cap: float = Field(30.0, gt=0)
    reconnect_jitter: float = Field(0.1, ge=0, le=1)
    executor_reconnect: float = Field(3.0, gt=0)


class RelaySettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(8080, ge=1, le=65535)
    heartbeat_interval: float = Field(15.0, gt=0)
    max_frame_bytes: int = Field(MAX_MSG_BYTES, gt=0)


class ExecutorSettings(BaseModel):
    relay_url: str = DEFAULT_RELAY
    command: List[str] = Field(default_factory=lambda: ["claude"])
    system_prompt: str = VOICE_SYSTEM_PROMPT
    work_dir: Optional[str] = None
    compact_threshold: int = Field(DEFAULT_COMPACT_THRESHOLD, gt=0)
    config_dir: Path = CONFIG_DIR
    timeouts: Timeouts = Field(default_factory=Timeouts)

    @property
    def identity_path(self) -> Path:
        return self.config_dir / IDENTITY_FILE


class ClientSettings(BaseModel):
    language: str = "en"
    timeouts: Timeouts = Field(default_factory=Timeouts)


class Settings(BaseModel):
    relay: RelaySettings = Field(default_factory=RelaySettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    client: ClientSettings = Field(default_factory=ClientSettings)


def _env_overrides(env: Dict[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if env.get("DUET_RELAY_URL"):
        out.setdefault("executor", {})["relay_url"] = env["DUET_RELAY_URL"]
    if env.get("DUET_HOST"):
        out.setdefault("relay", {})["host"] = env["DUET_HOST"]
    port = env.get("DUET_PORT") or env.get("PORT")
    if port:
        out.setdefault("relay", {})["port"] = port
    return out


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = _merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def load_settings(config_dir: Optional[Path] = None, env: Optional[Dict[str, str]] = None) -> Settings:
    config_dir = config_dir or CONFIG_DIR
    env = dict(os.environ) if env is None else env
    data: Dict[str, Any] = {}
    path = config_dir / CONFIG_FILE
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"cannot read {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a JSON object")
    data = _merge(data, _env_overrides(env))
    data = _merge(data, {"executor": {"config_dir": str(config_dir)}})
    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
