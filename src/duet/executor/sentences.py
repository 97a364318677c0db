from __future__ import annotations
import re
from typing import List

_BOUNDARY = re.compile(r"(?<=[.!?。！？])\s+|\n+")


class SentenceSplitter:
    """Incremental splitter: feed text deltas, get back finished sentences."""

    def __init__(self, min_chars: int = 1):
        self.min_chars = min_chars
        self._buf = ""

    def feed(self, text: str) -> List[str]:
        self._buf += text
        parts = _BOUNDARY.split(self._buf)
        # the last part has no terminator yet
        self._buf = parts.pop()
        out: List[str] = []
        carry = ""
        for p in parts:
            s = (carry + " " + p).strip() if carry else p.strip()
            if not s:
                continue
            if len(s) < self.min_chars:
                carry = s
                continue
            out.append(s)
            carry = ""
        if carry:
            self._buf = carry + " " + self._buf.lstrip()
        return out

    def flush(self) -> List[str]:
        rest, self._buf = self._buf.strip(), ""
        return [rest] if rest else []
