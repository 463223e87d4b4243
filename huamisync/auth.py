from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .const import (
    AUTH_ENCRYPTED_PREFIX,
    AUTH_KEY_HEX_LENGTH,
    AUTH_NONCE_LENGTH,
    AUTH_OP_REQUEST_RANDOM,
    AUTH_OP_SEND_ENCRYPTED,
    AUTH_OP_SEND_KEY,
    AUTH_REQUEST_RANDOM,
    AUTH_RESPONSE,
    AUTH_STATUS_FAIL,
    AUTH_STATUS_SUCCESS,
    AUTH_TIMEOUT_SECONDS,
)
from .errors import (
    AuthenticationError,
    AuthFailure,
    AuthTimeoutError,
    ConfigurationError,
    ProtocolError,
)
from .transport import CommandChannel, Endpoint, FrameTransport, require_endpoint

_LOGGER = logging.getLogger(__name__)

_HEX_KEY_RE = re.compile(rf"^[0-9A-Fa-f]{{{AUTH_KEY_HEX_LENGTH}}}$")


@dataclass(frozen=True)
class Credential:
    key: bytes

    def __post_init__(self) -> None:
        if len(self.key) != AUTH_KEY_HEX_LENGTH // 2:
            raise ConfigurationError("Auth key must be 16 bytes")

    @classmethod
    def from_hex(cls, text: str) -> Credential:
        text = (text or "").strip()
        if not _HEX_KEY_RE.match(text):
            raise ConfigurationError(
                f"Auth key must be {AUTH_KEY_HEX_LENGTH} hexadecimal characters"
            )
        return cls(bytes.fromhex(text))

    @property
    def masked(self) -> str:
        h = self.key.hex()
        return h[:4] + "." * (len(h) - 8) + h[-4:]

    def __repr__(self) -> str:
        return f"Credential({self.masked})"

    def encrypt_nonce(self, nonce: bytes) -> bytes:
        """AES-128 on a single block; the protocol defines no IV."""
        encryptor = Cipher(algorithms.AES(self.key), modes.ECB()).encryptor()
        return encryptor.update(nonce[:AUTH_NONCE_LENGTH]) + encryptor.finalize()


class HandshakeState(Enum):
    IDLE = "idle"
    CHALLENGE_AWAITED = "challenge_awaited"
    RESPONSE_SENT = "response_sent"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


def classify_rejection(opcode: int, status: int) -> AuthFailure:
    if status == AUTH_STATUS_FAIL and opcode == AUTH_OP_SEND_ENCRYPTED:
        return AuthFailure.KEY_REJECTED
    if status == AUTH_STATUS_FAIL and opcode == AUTH_OP_SEND_KEY:
        return AuthFailure.PAIRING_REQUIRED
    return AuthFailure.DEVICE_ERROR


_REJECTION_MESSAGES = {
    AuthFailure.KEY_REJECTED: "Auth key rejected by the device",
    AuthFailure.PAIRING_REQUIRED: "Device requires pairing; confirm on the watch",
}


class AuthHandshake:
    """Challenge/response exchange on the auth characteristic.

    One instance per connection. No retries here; the caller reconnects.
    """

    def __init__(
        self,
        transport: FrameTransport,
        channel: CommandChannel,
        credential: Credential,
        timeout: float = AUTH_TIMEOUT_SECONDS,
    ) -> None:
        self._transport = transport
        self._channel = channel
        self._credential = credential
        self._timeout = timeout
        self.state = HandshakeState.IDLE
        self.cancelled = asyncio.Event()
        self._result: asyncio.Future[HandshakeState] | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def authenticated(self) -> bool:
        return self.state is HandshakeState.AUTHENTICATED

    async def authenticate(self) -> HandshakeState:
        if self.state is not HandshakeState.IDLE:
            raise ProtocolError(f"Handshake already used (state={self.state.value})")
        require_endpoint(self._transport, Endpoint.AUTH)

        _LOGGER.info("Starting auth handshake (key %s)", self._credential.masked)
        self._result = asyncio.get_running_loop().create_future()
        await self._transport.subscribe(Endpoint.AUTH, self._handle_frame)
        try:
            self.state = HandshakeState.CHALLENGE_AWAITED
            if not await self._channel.send(
                Endpoint.AUTH, AUTH_REQUEST_RANDOM, "AUTH_REQUEST_RANDOM"
            ):
                self._fail(AuthFailure.TRANSPORT, "Could not request auth challenge")

            try:
                return await asyncio.wait_for(self._result, timeout=self._timeout)
            except asyncio.TimeoutError:
                self.state = HandshakeState.FAILED
                self.cancelled.set()
                _LOGGER.warning("Device did not answer the auth handshake")
                raise AuthTimeoutError(
                    f"No handshake response within {self._timeout:.0f}s"
                ) from None
        finally:
            for task in list(self._tasks):
                task.cancel()
            self._tasks.clear()
            if self._result is not None and not self._result.done():
                self._result.cancel()
            await self._transport.unsubscribe(Endpoint.AUTH)

    def _finish(self) -> None:
        self.state = HandshakeState.AUTHENTICATED
        if self._result is not None and not self._result.done():
            self._result.set_result(self.state)

    def _fail(self, reason: AuthFailure, message: str, code: int | None = None) -> None:
        self.state = HandshakeState.FAILED
        _LOGGER.warning("Auth failed: %s", message)
        if self._result is not None and not self._result.done():
            self._result.set_exception(AuthenticationError(reason, message, code))

    def _handle_frame(self, _endpoint: Endpoint, frame: bytes) -> None:
        _LOGGER.debug("Auth frame: %s", frame.hex())
        if self.state in (HandshakeState.AUTHENTICATED, HandshakeState.FAILED):
            return
        if len(frame) < 3 or frame[0] != AUTH_RESPONSE:
            _LOGGER.debug("Ignoring unexpected auth frame: %s", frame.hex())
            return

        opcode, status = frame[1], frame[2]
        if status != AUTH_STATUS_SUCCESS:
            reason = classify_rejection(opcode, status)
            message = _REJECTION_MESSAGES.get(
                reason, f"Handshake error code 0x{status:02x} (opcode 0x{opcode:02x})"
            )
            self._fail(reason, message, status)
            return

        if opcode == AUTH_OP_REQUEST_RANDOM:
            nonce = frame[3:]
            if len(nonce) < AUTH_NONCE_LENGTH:
                self._fail(
                    AuthFailure.MALFORMED_CHALLENGE,
                    f"Challenge too short ({len(nonce)} bytes)",
                )
                return
            task = asyncio.create_task(self._answer_challenge(nonce))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif opcode == AUTH_OP_SEND_ENCRYPTED:
            _LOGGER.info("Auth handshake complete")
            self._finish()
        else:
            _LOGGER.debug("Ignoring auth opcode 0x%02x", opcode)

    async def _answer_challenge(self, nonce: bytes) -> None:
        response = AUTH_ENCRYPTED_PREFIX + self._credential.encrypt_nonce(nonce)
        if await self._channel.send(Endpoint.AUTH, response, "AUTH_RESPONSE"):
            if self.state is HandshakeState.CHALLENGE_AWAITED:
                self.state = HandshakeState.RESPONSE_SENT
        else:
            self._fail(AuthFailure.TRANSPORT, "Could not send auth response")
