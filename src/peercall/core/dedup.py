"""Seen-message ledger for idempotent processing of at-least-once delivery."""

from __future__ import annotations

import logging
from collections import OrderedDict

logger = logging.getLogger("peercall.dedup")


class DedupLedger:
    """Remembers which signaling messages have already been processed.

    Message ids are grouped by the call they belong to. When a call
    closes, its ids are dropped and the call id itself is remembered in a
    bounded LRU so that late re-deliveries of that call are still
    recognized.

    At most ``capacity`` ids are held in total. Past that, ids without a
    call id go first, then whole calls in least recently used order. The
    most recently touched call is never evicted.
    """

    def __init__(self, capacity: int = 1024, closed_call_capacity: int = 256) -> None:
        self._capacity = capacity
        self._closed_capacity = closed_call_capacity
        self._by_call: OrderedDict[str, set[str]] = OrderedDict()
        self._loose: OrderedDict[str, None] = OrderedDict()
        self._closed: OrderedDict[str, None] = OrderedDict()
        self._seen: set[str] = set()

    def record(self, message_id: str, call_id: str | None = None) -> bool:
        """Remember *message_id*.

        Returns:
            True if the id was unseen (and is now recorded), False if it
            was already recorded. A False result changes nothing.
        """
        if message_id in self._seen:
            return False

        self._seen.add(message_id)
        if call_id is None:
            self._loose[message_id] = None
        else:
            self._by_call.setdefault(call_id, set()).add(message_id)
            self._by_call.move_to_end(call_id)
        self._evict()
        return True

    def close_call(self, call_id: str) -> None:
        """Forget the ids of a completed call and remember it as closed."""
        dropped = self._by_call.pop(call_id, set())
        self._seen.difference_update(dropped)
        self._closed[call_id] = None
        self._closed.move_to_end(call_id)
        while len(self._closed) > self._closed_capacity:
            self._closed.popitem(last=False)
        logger.debug("Closed call %s, released %d message ids", call_id, len(dropped))

    def is_closed(self, call_id: str | None) -> bool:
        return call_id is not None and call_id in self._closed

    def clear(self) -> None:
        self._by_call.clear()
        self._loose.clear()
        self._closed.clear()
        self._seen.clear()

    def _evict(self) -> None:
        while len(self._seen) > self._capacity:
            if self._loose:
                message_id, _ = self._loose.popitem(last=False)
                self._seen.discard(message_id)
            elif len(self._by_call) > 1:
                call_id, ids = self._by_call.popitem(last=False)
                self._seen.difference_update(ids)
                logger.debug("Evicted call %s, released %d message ids", call_id, len(ids))
            else:
                break

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)
