from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Protocol

from bleak import BleakClient
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.exc import BleakError

from .const import (
    CHAR_AUTH,
    CHAR_CONTROL_FALLBACK,
    CHAR_FETCH_CONTROL,
    CHAR_FETCH_DATA,
    CHAR_TIME_UUID,
    HUAMI_UUID_FMT,
    WRITE_ATTEMPTS,
    WRITE_BACKOFF_BASE_SECONDS,
    WRITE_BACKOFF_FACTOR,
    WRITE_BACKOFF_MAX_SECONDS,
    WRITE_SETTLE_SECONDS,
)
from .errors import ConfigurationError, TransportError

_LOGGER = logging.getLogger(__name__)


def huami_uuid(short: int) -> str:
    return HUAMI_UUID_FMT.format(short=short)


class Endpoint(str, Enum):
    AUTH = "auth"
    CONTROL = "control"
    DATA = "data"
    TIME = "time"


class WriteMode(Enum):
    WITH_RESPONSE = "write"
    WITHOUT_RESPONSE = "write-without-response"


FrameCallback = Callable[[Endpoint, bytes], None]


@dataclass(frozen=True)
class EndpointHandle:
    endpoint: Endpoint
    uuid: str
    write_modes: frozenset[WriteMode] = frozenset()
    notify: bool = False

    @property
    def writable(self) -> bool:
        return bool(self.write_modes)

    def primary_mode(self) -> WriteMode:
        """Fire-and-forget first; it keeps slow firmware from stalling the link."""
        if WriteMode.WITHOUT_RESPONSE in self.write_modes:
            return WriteMode.WITHOUT_RESPONSE
        if WriteMode.WITH_RESPONSE in self.write_modes:
            return WriteMode.WITH_RESPONSE
        raise ConfigurationError(f"{self.endpoint.value} endpoint is not writable")

    def fallback_mode(self) -> WriteMode | None:
        if len(self.write_modes) < 2:
            return None
        primary = self.primary_mode()
        return next(m for m in self.write_modes if m is not primary)


class FrameTransport(Protocol):
    """Everything the protocol core needs from the wireless link."""

    endpoints: Mapping[Endpoint, EndpointHandle]

    async def write(self, endpoint: Endpoint, data: bytes, mode: WriteMode) -> None:
        ...

    async def subscribe(self, endpoint: Endpoint, on_frame: FrameCallback) -> None:
        ...

    async def unsubscribe(self, endpoint: Endpoint) -> None:
        ...


def require_endpoint(
    transport: FrameTransport, endpoint: Endpoint
) -> EndpointHandle:
    handle = transport.endpoints.get(endpoint)
    if handle is None:
        raise ConfigurationError(f"Required {endpoint.value} endpoint is not available")
    return handle


def _handle_from_char(endpoint: Endpoint, char: BleakGATTCharacteristic) -> EndpointHandle:
    props = set(char.properties)
    modes = frozenset(m for m in WriteMode if m.value in props)
    return EndpointHandle(
        endpoint=endpoint,
        uuid=char.uuid.lower(),
        write_modes=modes,
        notify=bool(props & {"notify", "indicate"}),
    )


class BleakFrameTransport:
    """FrameTransport over a connected bleak client.

    Endpoint resolution happens once per connection in resolve(); the rest of
    the core never sees UUIDs or service discovery.
    """

    def __init__(self, client: BleakClient, endpoints: Mapping[Endpoint, EndpointHandle]):
        self._client = client
        self.endpoints = dict(endpoints)
        self._callbacks: dict[str, dict[Endpoint, FrameCallback]] = {}

    @classmethod
    def resolve(cls, client: BleakClient) -> BleakFrameTransport:
        wanted = {
            huami_uuid(CHAR_AUTH): Endpoint.AUTH,
            huami_uuid(CHAR_FETCH_CONTROL): Endpoint.CONTROL,
            huami_uuid(CHAR_FETCH_DATA): Endpoint.DATA,
            CHAR_TIME_UUID: Endpoint.TIME,
        }
        fallback_control = huami_uuid(CHAR_CONTROL_FALLBACK)

        endpoints: dict[Endpoint, EndpointHandle] = {}
        fallback: EndpointHandle | None = None
        for service in client.services:
            for char in service.characteristics:
                uuid = char.uuid.lower()
                props = "|".join(char.properties)
                _LOGGER.debug("Characteristic %s [%s]", uuid, props)

                endpoint = wanted.get(uuid)
                if endpoint is not None and endpoint not in endpoints:
                    endpoints[endpoint] = _handle_from_char(endpoint, char)
                elif uuid == fallback_control and fallback is None:
                    candidate = _handle_from_char(Endpoint.CONTROL, char)
                    if candidate.writable:
                        fallback = candidate

        control = endpoints.get(Endpoint.CONTROL)
        if (control is None or not control.writable) and fallback is not None:
            _LOGGER.info("Using secondary control characteristic %s", fallback.uuid)
            endpoints[Endpoint.CONTROL] = fallback

        if Endpoint.DATA not in endpoints and Endpoint.CONTROL in endpoints:
            _LOGGER.warning("No data characteristic; listening on the control channel")
            control = endpoints[Endpoint.CONTROL]
            endpoints[Endpoint.DATA] = EndpointHandle(
                Endpoint.DATA, control.uuid, frozenset(), control.notify
            )

        if Endpoint.AUTH not in endpoints:
            raise ConfigurationError("Auth characteristic (0009) not found")

        return cls(client, endpoints)

    async def write(self, endpoint: Endpoint, data: bytes, mode: WriteMode) -> None:
        handle = require_endpoint(self, endpoint)
        try:
            await self._client.write_gatt_char(
                handle.uuid, data, response=mode is WriteMode.WITH_RESPONSE
            )
        except (BleakError, asyncio.TimeoutError, OSError) as err:
            raise TransportError(
                f"{endpoint.value} write ({mode.value}) failed: {err}"
            ) from err

    async def subscribe(self, endpoint: Endpoint, on_frame: FrameCallback) -> None:
        handle = require_endpoint(self, endpoint)
        callbacks = self._callbacks.get(handle.uuid)
        if callbacks is not None:
            # Shared characteristic; already notifying
            callbacks[endpoint] = on_frame
            return

        self._callbacks[handle.uuid] = {endpoint: on_frame}

        def _dispatch(_char: BleakGATTCharacteristic, data: bytearray) -> None:
            frame = bytes(data)
            for ep, cb in list(self._callbacks.get(handle.uuid, {}).items()):
                cb(ep, frame)

        try:
            await self._client.start_notify(handle.uuid, _dispatch)
        except (BleakError, asyncio.TimeoutError, OSError) as err:
            self._callbacks.pop(handle.uuid, None)
            raise TransportError(f"{endpoint.value} subscribe failed: {err}") from err

    async def unsubscribe(self, endpoint: Endpoint) -> None:
        handle = self.endpoints.get(endpoint)
        if handle is None:
            return
        callbacks = self._callbacks.get(handle.uuid)
        if not callbacks:
            return
        callbacks.pop(endpoint, None)
        if callbacks:
            return

        self._callbacks.pop(handle.uuid, None)
        try:
            await self._client.stop_notify(handle.uuid)
        except (BleakError, asyncio.TimeoutError, OSError) as err:
            _LOGGER.debug("stop_notify %s failed: %s", handle.uuid, err)

    async def close(self) -> None:
        for endpoint in list(self.endpoints):
            await self.unsubscribe(endpoint)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = WRITE_ATTEMPTS
    settle_delay: float = WRITE_SETTLE_SECONDS
    base_delay: float = WRITE_BACKOFF_BASE_SECONDS
    factor: float = WRITE_BACKOFF_FACTOR
    max_delay: float = WRITE_BACKOFF_MAX_SECONDS

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)


@dataclass
class CommandChannel:
    """Serialises writes: one in flight, bounded retries, write-mode fallback."""

    transport: FrameTransport
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def send(
        self,
        endpoint: Endpoint,
        data: bytes,
        label: str,
        attempts: int | None = None,
    ) -> bool:
        handle = require_endpoint(self.transport, endpoint)
        primary = handle.primary_mode()
        fallback = handle.fallback_mode()
        attempts = attempts or self.policy.attempts

        async with self._lock:
            for attempt in range(1, attempts + 1):
                if self.policy.settle_delay:
                    await asyncio.sleep(self.policy.settle_delay)

                _LOGGER.debug(
                    "Write %s -> %s (%s) attempt %d/%d: %s",
                    label,
                    endpoint.value,
                    primary.value,
                    attempt,
                    attempts,
                    data.hex(),
                )
                try:
                    await self.transport.write(endpoint, data, primary)
                    return True
                except TransportError as err:
                    _LOGGER.debug("Write %s failed: %s", label, err)

                if fallback is not None:
                    try:
                        await self.transport.write(endpoint, data, fallback)
                        _LOGGER.debug("Write %s succeeded with %s", label, fallback.value)
                        return True
                    except TransportError as err:
                        _LOGGER.debug("Fallback write %s failed: %s", label, err)

                if attempt < attempts:
                    delay = self.policy.delay(attempt)
                    _LOGGER.debug("GATT busy; retrying %s in %.1fs", label, delay)
                    await asyncio.sleep(delay)

        _LOGGER.warning("Write %s gave up after %d attempts", label, attempts)
        return False
