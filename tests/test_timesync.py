from datetime import datetime

import pytest

from huamisync.timesync import build_time_packets, sync_time
from huamisync.transport import CommandChannel, Endpoint, EndpointHandle, WriteMode

from .conftest import FAST_RETRY, FakeTransport, default_endpoints

NOW = datetime(2024, 5, 1, 7, 30, 15)  # a Wednesday


def test_packet_layouts():
    packets = build_time_packets(NOW)
    date_time = bytes([0xE8, 0x07, 5, 1, 7, 30, 15])

    assert [len(p) for p in packets] == [11, 10, 7]
    assert packets[0] == date_time + bytes([3, 0, 0, 0])
    assert packets[1] == date_time + bytes([3, 0, 1])
    assert packets[2] == date_time


@pytest.mark.asyncio
async def test_first_layout_accepted(transport, channel):
    assert await sync_time(transport, channel, NOW, grace=0) == 11
    assert transport.written(Endpoint.TIME) == [build_time_packets(NOW)[0]]


@pytest.mark.asyncio
async def test_falls_through_refused_layouts(transport, channel):
    transport.failures = {WriteMode.WITH_RESPONSE: 2}

    assert await sync_time(transport, channel, NOW, grace=0) == 7
    assert [len(data) for _ep, data, _mode in transport.attempts] == [11, 10, 7]


@pytest.mark.asyncio
async def test_all_layouts_refused(transport, channel):
    transport.failures = {WriteMode.WITH_RESPONSE: -1}
    assert await sync_time(transport, channel, NOW, grace=0) is None


@pytest.mark.asyncio
async def test_skipped_without_time_endpoint():
    transport = FakeTransport(default_endpoints(time=None))
    channel = CommandChannel(transport, FAST_RETRY)

    assert await sync_time(transport, channel, NOW, grace=0) is None
    assert transport.attempts == []


@pytest.mark.asyncio
async def test_skipped_when_time_is_read_only():
    read_only = EndpointHandle(Endpoint.TIME, "time-uuid", frozenset(), True)
    transport = FakeTransport(default_endpoints(time=read_only))
    channel = CommandChannel(transport, FAST_RETRY)

    assert await sync_time(transport, channel, NOW, grace=0) is None
    assert transport.attempts == []


@pytest.mark.asyncio
async def test_slow_write_times_out(transport, channel):
    transport.write_delay = 0.2
    assert await sync_time(transport, channel, NOW, grace=0, timeout=0.01) is None
