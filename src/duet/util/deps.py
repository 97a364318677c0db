from __future__ import annotations
from typing import List, Tuple

REQUIRED = [
    ("websockets", "websockets"),
    ("fastapi", "fastapi"),
    ("uvicorn", "uvicorn[standard]"),
    ("cryptography", "cryptography"),
    ("structlog", "structlog"),
    ("pydantic", "pydantic"),
]


def check_dependencies() -> Tuple[bool, List[str]]:
    """Returns ``(ok, missing)`` with pip names of modules that fail to import."""
    missing = []
    for mod, pipname in REQUIRED:
        try:
            __import__(mod)
        except ImportError:
            missing.append(pipname)
    return (len(missing) == 0, missing)
