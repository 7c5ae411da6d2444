"""Exceptions raised by the call controller."""

from __future__ import annotations


class PeerCallError(Exception):
    """Base exception for call controller errors."""


class CallAlreadyActiveError(PeerCallError):
    """A call was started while another call is in progress."""


class NoActiveCallError(PeerCallError):
    """The operation needs a call that does not exist."""


class LocalMediaNotReadyError(PeerCallError):
    """Local audio/video is not attached yet."""


class IncompleteCallbacksError(PeerCallError, TypeError):
    """A required UI callback is missing or not callable."""
