"""Small shared helpers."""

from __future__ import annotations

from typing import Any


async def maybe_await(result: Any) -> Any:
    """Await *result* if a callback returned an awaitable."""
    if hasattr(result, "__await__"):
        return await result
    return result
