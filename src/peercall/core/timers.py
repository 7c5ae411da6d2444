"""Ringer, no-answer and call-duration timers.

All timers count in ticks of ``tick_seconds``. Each timer role owns at
most one live :class:`PeriodicTimer`; starting a role cancels the handle
it already holds.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from peercall.core._helpers import maybe_await
from peercall.media.ringtone import RingtonePlayer
from peercall.models.enums import RingerRole

logger = logging.getLogger("peercall.timers")

TickCallback = Callable[[int], Any]
TickAction = Callable[[], Any]


class PeriodicTimer:
    """Cancellable repeating timer backed by an asyncio task.

    The callback receives the 1-based tick number and may be a plain
    function or a coroutine function. ``stop()`` is idempotent and may be
    called from inside the callback; the current tick then finishes and no
    further ticks run.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        *,
        max_ticks: int | None = None,
        on_finished: Callable[[], Any] | None = None,
    ) -> None:
        self.name = name
        self._interval = interval
        self._callback = callback
        self._max_ticks = max_ticks
        self._on_finished = on_finished
        self._task: asyncio.Task[None] | None = None
        self._ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def ticks(self) -> int:
        return self._ticks

    def start(self) -> None:
        self.stop()
        self._ticks = 0
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _is_current(self) -> bool:
        return self._task is not None and self._task is asyncio.current_task()

    async def _run(self) -> None:
        while self._is_current() and (self._max_ticks is None or self._ticks < self._max_ticks):
            await asyncio.sleep(self._interval)
            if not self._is_current():
                return
            await self._tick()

        if self._is_current():
            self._task = None
            if self._on_finished is not None:
                await maybe_await(self._on_finished())

    async def _tick(self) -> None:
        self._ticks += 1
        try:
            await maybe_await(self._callback(self._ticks))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error in %s timer tick %d", self.name, self._ticks)


class RingerScheduler:
    """Plays the outgoing and incoming ring tones for a bounded time.

    Starting a role rings immediately and then once per period until
    ``max_rings`` rings have played, after which the role stops itself.
    Stopping a role always silences it, even if it never started.
    """

    def __init__(
        self,
        player: RingtonePlayer,
        *,
        tick_seconds: float = 1.0,
        outgoing_period: int = 5,
        incoming_period: int = 12,
        max_rings: int = 20,
    ) -> None:
        self._player = player
        self._tick_seconds = tick_seconds
        self._periods = {
            RingerRole.OUTGOING: outgoing_period,
            RingerRole.INCOMING: incoming_period,
        }
        self._max_rings = max_rings
        self._timers: dict[RingerRole, PeriodicTimer] = {}

    def start(self, role: RingerRole) -> None:
        existing = self._timers.pop(role, None)
        if existing is not None:
            existing.stop()

        timer = PeriodicTimer(
            f"ringer_{role}",
            self._periods[role] * self._tick_seconds,
            lambda _tick: self._play(role),
            max_ticks=self._max_rings - 1,
            on_finished=lambda: self._finished(role, timer),
        )
        self._timers[role] = timer
        self._play(role)
        timer.start()
        logger.debug("Started %s ringer", role)

    def stop(self, role: RingerRole) -> None:
        timer = self._timers.pop(role, None)
        if timer is not None:
            timer.stop()
        try:
            self._player.silence(role)
        except Exception:
            logger.exception("Failed to silence %s ringer", role)

    def stop_all(self) -> None:
        for role in RingerRole:
            self.stop(role)

    def is_running(self, role: RingerRole) -> bool:
        timer = self._timers.get(role)
        return timer is not None and timer.running

    def ring_count(self, role: RingerRole) -> int:
        """Rings played by the running timer of *role* (0 when stopped)."""
        timer = self._timers.get(role)
        return timer.ticks + 1 if timer is not None else 0

    def _play(self, role: RingerRole) -> None:
        try:
            self._player.play(role)
        except Exception:
            logger.exception("Failed to play %s ringer", role)

    def _finished(self, role: RingerRole, timer: PeriodicTimer) -> None:
        if self._timers.get(role) is timer:
            logger.debug("%s ringer reached %d rings", role, self._max_rings)
            self.stop(role)


class NoAnswerTimer:
    """Bounds how long a call may wait for the other leg.

    Counts down ``ticks`` ticks. Every tick before the last runs the
    per-tick actions; the last tick terminates the call through
    *terminate* and then calls ``on_expire``.
    """

    def __init__(
        self,
        terminate: Callable[[], Awaitable[None]],
        *,
        ticks: int = 30,
        tick_seconds: float = 1.0,
    ) -> None:
        self._terminate = terminate
        self._ticks = ticks
        self._tick_seconds = tick_seconds
        self._timer: PeriodicTimer | None = None
        self._on_expire: Callable[[], Any] | None = None
        self._actions: list[TickAction] = []

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.running

    @property
    def remaining(self) -> int:
        if self._timer is None:
            return 0
        return self._ticks - self._timer.ticks

    def start(
        self,
        on_expire: Callable[[], Any] | None = None,
        per_tick_actions: Iterable[TickAction] = (),
    ) -> None:
        self.stop()
        self._on_expire = on_expire
        self._actions = list(per_tick_actions)
        self._timer = PeriodicTimer(
            "no_answer",
            self._tick_seconds,
            self._on_tick,
            max_ticks=self._ticks,
        )
        self._timer.start()

    def stop(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.stop()

    async def _on_tick(self, tick: int) -> None:
        if tick < self._ticks:
            for action in self._actions:
                try:
                    await maybe_await(action())
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("No-answer tick action failed")
            return

        on_expire = self._on_expire
        logger.info("No answer after %d ticks, ending call", self._ticks)
        await self._terminate()
        self.stop()
        if on_expire is not None:
            await maybe_await(on_expire())


class CallTimer:
    """Ticks once per tick while a call is connected."""

    def __init__(self, *, tick_seconds: float = 1.0) -> None:
        self._tick_seconds = tick_seconds
        self._timer: PeriodicTimer | None = None

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.running

    def start(self, on_tick: TickCallback) -> None:
        self.stop()
        self._timer = PeriodicTimer("call_duration", self._tick_seconds, on_tick)
        self._timer.start()

    def stop(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.stop()
