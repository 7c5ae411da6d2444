"""Ringtone playback triggers."""

from __future__ import annotations

from abc import ABC, abstractmethod

from peercall.models.enums import RingerRole


class RingtonePlayer(ABC):
    """Plays and silences the outgoing and incoming ring tones.

    Both methods are fire-and-forget triggers. ``silence`` must be safe to
    call when nothing is playing.
    """

    @abstractmethod
    def play(self, role: RingerRole) -> None: ...

    @abstractmethod
    def silence(self, role: RingerRole) -> None: ...


class NullRingtonePlayer(RingtonePlayer):
    """Default player for headless deployments."""

    def play(self, role: RingerRole) -> None:
        pass

    def silence(self, role: RingerRole) -> None:
        pass


class MockRingtonePlayer(RingtonePlayer):
    """Records every trigger for test assertions."""

    def __init__(self) -> None:
        self.events: list[tuple[str, RingerRole]] = []
        self.playing: set[RingerRole] = set()

    def play(self, role: RingerRole) -> None:
        self.events.append(("play", role))
        self.playing.add(role)

    def silence(self, role: RingerRole) -> None:
        self.events.append(("silence", role))
        self.playing.discard(role)

    def plays(self, role: RingerRole) -> int:
        return sum(1 for action, r in self.events if action == "play" and r == role)

    def silences(self, role: RingerRole) -> int:
        return sum(1 for action, r in self.events if action == "silence" and r == role)
