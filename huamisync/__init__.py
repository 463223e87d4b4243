__version__ = "0.3.0"

from .auth import AuthHandshake, Credential, HandshakeState
from .device import HuamiDevice
from .errors import (
    AuthenticationError,
    AuthFailure,
    ConfigurationError,
    FetchInProgressError,
    HuamiError,
    ProtocolError,
    TransportError,
)
from .fetch import ActivityFetchSession, FetchTimings
from .gpx import export_summary, to_gpx
from .reassembly import FrameKind, RawChunk, reassemble
from .stats import ActivitySummary, FetchSessionState, summarize
from .telemetry import DecodeResult, TelemetryLayout, TrackPoint, decode
from .transport import (
    BleakFrameTransport,
    CommandChannel,
    Endpoint,
    EndpointHandle,
    FrameTransport,
    RetryPolicy,
    WriteMode,
)
