"""Compact JSON encoding for WebSocket text frames."""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def loads(data: str | bytes) -> Any:
    """Parse one frame; raises ``ValueError`` on malformed JSON."""

    return orjson.loads(data)


__all__ = ["dumps", "loads"]
