from __future__ import annotations

from enum import Enum


class HuamiError(Exception):
    """Base class for every failure raised by the protocol core."""


class ConfigurationError(HuamiError):
    """Missing endpoint or malformed credential; raised before any I/O."""


class TransportError(HuamiError):
    """A characteristic write or subscription failed."""


class ProtocolError(HuamiError):
    """Unexpected opcode/status or a malformed frame."""


class FetchInProgressError(ProtocolError):
    """A second fetch was requested while one is still running."""


class AuthFailure(Enum):
    KEY_REJECTED = "key_rejected"
    PAIRING_REQUIRED = "pairing_required"
    DEVICE_ERROR = "device_error"
    MALFORMED_CHALLENGE = "malformed_challenge"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"


class AuthenticationError(HuamiError):
    def __init__(self, reason: AuthFailure, message: str, code: int | None = None):
        super().__init__(message)
        self.reason = reason
        self.code = code


class AuthTimeoutError(AuthenticationError, TimeoutError):
    def __init__(self, message: str):
        super().__init__(AuthFailure.TIMEOUT, message)
