from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from huamisync.errors import TransportError
from huamisync.fetch import FetchTimings
from huamisync.transport import (
    CommandChannel,
    Endpoint,
    EndpointHandle,
    RetryPolicy,
    WriteMode,
)

BOTH_MODES = frozenset({WriteMode.WITH_RESPONSE, WriteMode.WITHOUT_RESPONSE})

FAST_RETRY = RetryPolicy(attempts=5, settle_delay=0, base_delay=0, max_delay=0)

FAST_TIMINGS = FetchTimings(
    phase1_deadline=0.05,
    phase2_deadline=0.05,
    phase3_deadline=0.05,
    settle_delay=0,
    reject_cooldown=0.01,
    inactivity_timeout=0.1,
    progress_interval=0,
    ack_every_bytes=2048,
)


def default_endpoints(**overrides) -> dict[Endpoint, EndpointHandle]:
    endpoints = {
        Endpoint.AUTH: EndpointHandle(Endpoint.AUTH, "auth-uuid", BOTH_MODES, True),
        Endpoint.CONTROL: EndpointHandle(Endpoint.CONTROL, "control-uuid", BOTH_MODES, True),
        Endpoint.DATA: EndpointHandle(Endpoint.DATA, "data-uuid", frozenset(), True),
        Endpoint.TIME: EndpointHandle(
            Endpoint.TIME, "time-uuid", frozenset({WriteMode.WITH_RESPONSE}), False
        ),
    }
    for name, handle in overrides.items():
        endpoint = Endpoint(name)
        if handle is None:
            endpoints.pop(endpoint, None)
        else:
            endpoints[endpoint] = handle
    return endpoints


class FakeTransport:
    """In-memory FrameTransport.

    failures maps a write mode to how many more writes in that mode fail;
    -1 means every write in that mode fails.
    """

    def __init__(self, endpoints=None) -> None:
        self.endpoints = endpoints if endpoints is not None else default_endpoints()
        self.writes: list[tuple[Endpoint, bytes, WriteMode]] = []
        self.attempts: list[tuple[Endpoint, bytes, WriteMode]] = []
        self.callbacks: dict[Endpoint, Callable[[Endpoint, bytes], None]] = {}
        self.failures: dict[WriteMode, int] = {}
        self.responder: Callable[[Endpoint, bytes], None] | None = None
        self.write_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def write(self, endpoint: Endpoint, data: bytes, mode: WriteMode) -> None:
        self.attempts.append((endpoint, bytes(data), mode))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.write_delay:
                await asyncio.sleep(self.write_delay)
            remaining = self.failures.get(mode, 0)
            if remaining:
                if remaining > 0:
                    self.failures[mode] = remaining - 1
                raise TransportError(f"GATT busy ({mode.value})")
        finally:
            self.in_flight -= 1

        self.writes.append((endpoint, bytes(data), mode))
        if self.responder is not None:
            self.responder(endpoint, bytes(data))

    async def subscribe(self, endpoint: Endpoint, on_frame) -> None:
        self.callbacks[endpoint] = on_frame

    async def unsubscribe(self, endpoint: Endpoint) -> None:
        self.callbacks.pop(endpoint, None)

    async def close(self) -> None:
        self.closed = True
        self.callbacks.clear()

    def notify(self, endpoint: Endpoint, frame: bytes) -> None:
        self.callbacks[endpoint](endpoint, bytes(frame))

    def written(self, endpoint: Endpoint) -> list[bytes]:
        return [data for ep, data, _mode in self.writes if ep is endpoint]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def channel(transport) -> CommandChannel:
    return CommandChannel(transport, FAST_RETRY)
