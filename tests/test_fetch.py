"""
Tests for the activity fetch state machine.

A scripted watch answers control writes through FakeTransport.responder, so
every test drives the real session timers with short FetchTimings.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from huamisync.const import EMERGENCY_FETCH_COMMAND, SECONDARY_FETCH_COMMAND
from huamisync.errors import ConfigurationError, ProtocolError, TransportError
from huamisync.fetch import ActivityFetchSession, build_end_ack, build_fetch_command
from huamisync.stats import FetchSessionState
from huamisync.telemetry import TelemetryLayout
from huamisync.transport import CommandChannel, Endpoint, EndpointHandle, WriteMode

from .conftest import FAST_RETRY, FAST_TIMINGS, FakeTransport, default_endpoints
from .records import delta_fix, frames, timestamp

T0 = datetime(2024, 5, 1, 7, 30, tzinfo=timezone.utc)
SYNC = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

DIRECT = build_fetch_command()
ACCEPTED = b"\x10\x01\x01"
REJECTED = b"\x10\x01\x02"
END_OK = b"\x10\x02\x01"
START_TRANSFER = b"\x02"

TRACK = timestamp(T0) + delta_fix(1, 10, 10) + delta_fix(1, 10, 10) + delta_fix(1, -5, -5)


def _session(transport, channel, **kwargs):
    kwargs.setdefault("timings", FAST_TIMINGS)
    kwargs.setdefault("now", lambda: SYNC)
    return ActivityFetchSession(transport, channel, **kwargs)


def scripted_watch(
    transport,
    buffer=TRACK,
    *,
    accept=DIRECT,
    reject=(),
    end=END_OK,
    data_endpoint=Endpoint.DATA,
    announce=True,
):
    """Accept one fetch command, stream buffer on start-transfer, then send end."""
    streamed = False

    def stream():
        for frame in frames(buffer):
            transport.notify(data_endpoint, frame)
        if end is not None:
            transport.notify(Endpoint.CONTROL, end)

    def responder(endpoint, data):
        nonlocal streamed
        if endpoint is not Endpoint.CONTROL:
            return
        if data in reject:
            transport.notify(Endpoint.CONTROL, REJECTED)
        elif data == accept:
            if announce:
                transport.notify(Endpoint.CONTROL, ACCEPTED + len(buffer).to_bytes(4, "little"))
            else:
                streamed = True
                stream()
        elif data == START_TRANSFER and not streamed:
            streamed = True
            stream()

    transport.responder = responder


class TestCommands:
    def test_default_fetch_command(self):
        assert DIRECT == bytes.fromhex("0106e407010100000000")

    def test_fetch_command_encodes_start(self):
        cmd = build_fetch_command(datetime(2024, 5, 1, 7, 30))
        assert cmd == bytes.fromhex("0106e8070501071e0000")

    def test_end_ack(self):
        assert build_end_ack(True) == b"\x03\x09"
        assert build_end_ack(False) == b"\x03\x01"


class TestSuccessfulFetch:
    @pytest.mark.asyncio
    async def test_direct_fetch(self, transport, channel):
        scripted_watch(transport)
        session = _session(transport, channel)

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.COMPLETE
        assert session.state is FetchSessionState.COMPLETE
        assert summary.is_real_data
        assert summary.layout is TelemetryLayout.TLV
        assert len(summary.position_points) == 3
        assert summary.distance_km > 0
        assert summary.byte_count == len(TRACK)
        assert summary.sync_timestamp == SYNC
        assert session.expected_bytes == len(TRACK)
        assert session.bytes_received == len(TRACK) + len(frames(TRACK))
        assert transport.written(Endpoint.CONTROL) == [DIRECT, START_TRANSFER, b"\x03\x09"]
        assert transport.callbacks == {}

    @pytest.mark.asyncio
    async def test_delete_after_fetch(self, transport, channel):
        scripted_watch(transport)
        session = _session(transport, channel, retain=False)

        await session.fetch()

        assert transport.written(Endpoint.CONTROL)[-1] == b"\x03\x01"

    @pytest.mark.asyncio
    async def test_rejected_command_falls_back_to_secondary(self, transport, channel):
        scripted_watch(transport, accept=SECONDARY_FETCH_COMMAND, reject=(DIRECT,))
        session = _session(transport, channel)

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.COMPLETE
        assert len(summary.position_points) == 3
        assert transport.written(Endpoint.CONTROL) == [
            DIRECT,
            SECONDARY_FETCH_COMMAND,
            START_TRANSFER,
            b"\x03\x09",
        ]

    @pytest.mark.asyncio
    async def test_silent_phases_escalate_to_emergency(self, transport, channel):
        scripted_watch(transport, accept=EMERGENCY_FETCH_COMMAND)
        session = _session(transport, channel)

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.COMPLETE
        assert transport.written(Endpoint.CONTROL)[:3] == [
            DIRECT,
            SECONDARY_FETCH_COMMAND,
            EMERGENCY_FETCH_COMMAND,
        ]

    @pytest.mark.asyncio
    async def test_data_without_announcement(self, transport, channel):
        scripted_watch(transport, announce=False)
        session = _session(transport, channel)

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.COMPLETE
        assert len(summary.position_points) == 3
        assert transport.written(Endpoint.CONTROL) == [DIRECT, b"\x03\x09"]

    @pytest.mark.asyncio
    async def test_nothing_to_fetch(self, transport, channel):
        transport.responder = lambda ep, data: transport.notify(
            Endpoint.CONTROL, ACCEPTED + bytes(4)
        )
        session = _session(transport, channel)

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.COMPLETE
        assert summary.points == []
        assert summary.byte_count == 0
        assert transport.written(Endpoint.CONTROL) == [DIRECT]

    @pytest.mark.asyncio
    async def test_inactivity_closes_transfer(self, transport, channel):
        scripted_watch(transport, end=None)
        session = _session(transport, channel)

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.COMPLETE
        assert len(summary.position_points) == 3
        assert transport.written(Endpoint.CONTROL) == [DIRECT, START_TRANSFER]

    @pytest.mark.asyncio
    async def test_shared_control_and_data_endpoint(self):
        shared = EndpointHandle(Endpoint.DATA, "control-uuid", frozenset(), True)
        transport = FakeTransport(default_endpoints(data=shared))
        channel = CommandChannel(transport, FAST_RETRY)
        scripted_watch(transport, data_endpoint=Endpoint.CONTROL)
        session = _session(transport, channel)

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.COMPLETE
        assert len(summary.position_points) == 3

    @pytest.mark.asyncio
    async def test_keepalive_ack_every_2048_bytes(self, transport, channel):
        buffer = timestamp(T0) + delta_fix(1, 1, 1) * 400
        scripted_watch(transport, buffer)
        session = _session(transport, channel)

        summary = await session.fetch()

        control = transport.written(Endpoint.CONTROL)
        assert summary.outcome is FetchSessionState.COMPLETE
        assert control.count(b"\x02") == 2
        assert control[-1] == b"\x03\x09"
        assert len(summary.position_points) == 400

    @pytest.mark.asyncio
    async def test_progress_reports(self, transport, channel):
        seen = []
        scripted_watch(transport)
        session = _session(transport, channel, on_progress=seen.append)

        await session.fetch()

        assert seen
        assert seen == sorted(seen)
        assert seen[-1] == session.bytes_received


class TestFailedFetch:
    @pytest.mark.asyncio
    async def test_silent_device(self, transport, channel):
        session = _session(transport, channel)

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.FAILED
        assert summary.points == []
        assert summary.distance_km == 0
        assert summary.avg_heart_rate is None
        assert transport.written(Endpoint.CONTROL) == [
            DIRECT,
            SECONDARY_FETCH_COMMAND,
            EMERGENCY_FETCH_COMMAND,
        ]

    @pytest.mark.asyncio
    async def test_rejected_in_every_phase(self, transport, channel):
        scripted_watch(
            transport,
            accept=None,
            reject=(DIRECT, SECONDARY_FETCH_COMMAND, EMERGENCY_FETCH_COMMAND),
        )
        session = _session(transport, channel)

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.FAILED
        assert len(transport.written(Endpoint.CONTROL)) == 3

    @pytest.mark.asyncio
    async def test_undeliverable_commands_escalate_immediately(self, transport, channel):
        transport.failures = {WriteMode.WITHOUT_RESPONSE: -1, WriteMode.WITH_RESPONSE: -1}
        session = _session(transport, channel)

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.FAILED
        assert len(transport.attempts) == 3 * 5 * 2

    @pytest.mark.asyncio
    async def test_transfer_error_keeps_partial_data(self, transport, channel):
        scripted_watch(transport, end=b"\x10\x02\x04")
        session = _session(transport, channel)

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.FAILED
        assert summary.byte_count == len(TRACK)
        assert len(summary.position_points) == 3
        assert b"\x03\x09" not in transport.written(Endpoint.CONTROL)

    @pytest.mark.asyncio
    async def test_subscribe_failure(self):
        class NoNotify(FakeTransport):
            async def subscribe(self, endpoint, on_frame):
                raise TransportError("notify refused")

        transport = NoNotify()
        session = _session(transport, CommandChannel(transport, FAST_RETRY))

        summary = await session.fetch()

        assert summary.outcome is FetchSessionState.FAILED
        assert transport.attempts == []

    @pytest.mark.asyncio
    async def test_abort(self, transport, channel):
        session = _session(transport, channel)
        task = asyncio.create_task(session.fetch())
        await asyncio.sleep(0.01)

        session.abort()
        summary = await task

        assert summary.outcome is FetchSessionState.FAILED
        assert session.done
        assert transport.written(Endpoint.CONTROL) == [DIRECT]

    @pytest.mark.asyncio
    async def test_cancel_releases_everything(self, transport, channel):
        session = _session(transport, channel)
        task = asyncio.create_task(session.fetch())
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.state is FetchSessionState.FAILED
        assert session._phase_timer is None
        assert session._inactivity_timer is None
        assert transport.callbacks == {}

        # Timers are gone; nothing else gets written
        await asyncio.sleep(0.1)
        assert transport.written(Endpoint.CONTROL) == [DIRECT]


class TestCorruptData:
    @pytest.mark.asyncio
    async def test_decoder_error_still_resolves(self, transport, channel, monkeypatch):
        def broken_decode(buffer, origin=None):
            raise RuntimeError("decoder exploded")

        monkeypatch.setattr("huamisync.fetch.decode", broken_decode)
        scripted_watch(transport)
        session = _session(transport, channel)

        summary = await asyncio.wait_for(session.fetch(), 2)

        assert summary.outcome is FetchSessionState.COMPLETE
        assert session.state is FetchSessionState.COMPLETE
        assert summary.layout is TelemetryLayout.ESTIMATE
        assert summary.byte_count == len(TRACK)
        assert not summary.is_real_data
        assert summary.points == []
        assert transport.callbacks == {}

    @pytest.mark.asyncio
    async def test_far_future_timestamp_is_ignored(self, transport, channel):
        far = datetime(9999, 12, 31, 23, 59, tzinfo=timezone.utc)
        buffer = timestamp(far) + delta_fix(120, 1, 1) * 3
        scripted_watch(transport, buffer)
        session = _session(transport, channel)

        summary = await asyncio.wait_for(session.fetch(), 2)

        assert summary.outcome is FetchSessionState.COMPLETE
        assert summary.layout is TelemetryLayout.TLV
        assert summary.byte_count == len(buffer)
        assert [p.timestamp for p in summary.points] == [
            SYNC + timedelta(seconds=s) for s in (120, 240, 360)
        ]


class TestSessionContract:
    @pytest.mark.asyncio
    async def test_single_use(self, transport, channel):
        transport.responder = lambda ep, data: transport.notify(
            Endpoint.CONTROL, ACCEPTED + bytes(4)
        )
        session = _session(transport, channel)
        await session.fetch()

        with pytest.raises(ProtocolError):
            await session.fetch()

    def test_missing_control_endpoint(self):
        transport = FakeTransport(default_endpoints(control=None))
        with pytest.raises(ConfigurationError):
            ActivityFetchSession(transport, CommandChannel(transport, FAST_RETRY))

    def test_read_only_control_endpoint(self):
        read_only = EndpointHandle(Endpoint.CONTROL, "control-uuid", frozenset(), True)
        transport = FakeTransport(default_endpoints(control=read_only))
        with pytest.raises(ConfigurationError):
            ActivityFetchSession(transport, CommandChannel(transport, FAST_RETRY))
