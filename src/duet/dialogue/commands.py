from __future__ import annotations
from enum import Enum
from typing import Optional


class VoiceCommand(Enum):
    CLEAR = "clear"
    COMPACT = "compact"
    END = "end"


CLEAR_KEYWORDS = ("clear", "new conversation", "reset conversation")
COMPACT_KEYWORDS = ("compact", "summarize", "summary")

COMPACT_PROMPT = "Briefly summarize our conversation so far."
CLEARED_REPLY = "Conversation cleared."


def detect_voice_command(text: str) -> Optional[VoiceCommand]:
    lower = text.strip().lower()
    if any(k in lower for k in CLEAR_KEYWORDS):
        return VoiceCommand.CLEAR
    if any(k in lower for k in COMPACT_KEYWORDS):
        return VoiceCommand.COMPACT
    return None
