"""peercall - Async signaling and session state machine for peer-to-peer calls."""

from peercall._version import __version__
from peercall.core.callbacks import CallCallbacks
from peercall.core.controller import (
    CallAlreadyActiveError,
    CallController,
    IncompleteCallbacksError,
    LocalMediaNotReadyError,
    NoActiveCallError,
    PeerCallError,
    ReconnectHook,
)
from peercall.core.dedup import DedupLedger
from peercall.core.retry import retry_with_backoff
from peercall.core.timers import CallTimer, NoAnswerTimer, PeriodicTimer, RingerScheduler
from peercall.media import (
    IceCandidate,
    MediaAcquisitionError,
    MediaCapability,
    MediaError,
    MediaStream,
    MediaTrack,
    MockMediaCapability,
    MockPeerConnection,
    MockRingtonePlayer,
    NegotiationError,
    NullRingtonePlayer,
    PeerConnection,
    PeerConnectionConfig,
    PeerConnectionEvents,
    RingtonePlayer,
    SessionDescription,
)
from peercall.models.config import CallConfig, IceServer, RetryPolicy
from peercall.models.enums import (
    CallKind,
    CallRole,
    CallStatus,
    ConnectionState,
    EndReason,
    MediaConnectionState,
    NegotiationState,
    RingerRole,
    SignalKind,
)
from peercall.models.identity import LocalIdentity, PeerProfile
from peercall.models.session import CallSession
from peercall.models.signal import TOPIC_KEY, SignalingMessage
from peercall.realtime import (
    InMemoryTransport,
    MessageTransport,
    TransportError,
    TransportNotConnectedError,
)
from peercall.realtime.websocket import WebSocketTransport
from peercall.telemetry import (
    MockTelemetryProvider,
    NoopTelemetryProvider,
    SpanKind,
    TelemetryConfig,
    TelemetryProvider,
)

__all__ = [
    "__version__",
    # Controller
    "CallCallbacks",
    "CallController",
    "ReconnectHook",
    # Errors
    "CallAlreadyActiveError",
    "IncompleteCallbacksError",
    "LocalMediaNotReadyError",
    "MediaAcquisitionError",
    "MediaError",
    "NegotiationError",
    "NoActiveCallError",
    "PeerCallError",
    "TransportError",
    "TransportNotConnectedError",
    # Building blocks
    "CallTimer",
    "DedupLedger",
    "NoAnswerTimer",
    "PeriodicTimer",
    "RingerScheduler",
    "retry_with_backoff",
    # Models
    "CallConfig",
    "CallKind",
    "CallRole",
    "CallSession",
    "CallStatus",
    "ConnectionState",
    "EndReason",
    "IceServer",
    "LocalIdentity",
    "MediaConnectionState",
    "NegotiationState",
    "PeerProfile",
    "RetryPolicy",
    "RingerRole",
    "SignalKind",
    "SignalingMessage",
    "TOPIC_KEY",
    # Media
    "IceCandidate",
    "MediaCapability",
    "MediaStream",
    "MediaTrack",
    "MockMediaCapability",
    "MockPeerConnection",
    "MockRingtonePlayer",
    "NullRingtonePlayer",
    "PeerConnection",
    "PeerConnectionConfig",
    "PeerConnectionEvents",
    "RingtonePlayer",
    "SessionDescription",
    # Transport
    "InMemoryTransport",
    "MessageTransport",
    "WebSocketTransport",
    # Telemetry
    "MockTelemetryProvider",
    "NoopTelemetryProvider",
    "SpanKind",
    "TelemetryConfig",
    "TelemetryProvider",
]
