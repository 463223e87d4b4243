from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .const import (
    ACK_EVERY_BYTES,
    ACTIVITY_CLASS_SPORTS_DETAILS,
    CMD_END_ACK,
    CMD_KEEPALIVE_ACK,
    CMD_START_TRANSFER,
    DEFAULT_FETCH_START,
    EMERGENCY_FETCH_COMMAND,
    END_ACK_DELETE,
    END_ACK_RETAIN,
    FETCH_OP_START_DATE,
    FETCH_OP_TRANSFER,
    FETCH_RESPONSE,
    FETCH_STATUS_REJECTED,
    FETCH_STATUS_SUCCESS,
    INACTIVITY_TIMEOUT_SECONDS,
    PHASE1_DEADLINE_SECONDS,
    PHASE2_DEADLINE_SECONDS,
    PHASE3_DEADLINE_SECONDS,
    PROGRESS_INTERVAL_SECONDS,
    REJECT_COOLDOWN_SECONDS,
    SECONDARY_FETCH_COMMAND,
    START_TRANSFER_SETTLE_SECONDS,
)
from .errors import ConfigurationError, ProtocolError, TransportError
from .reassembly import FrameKind, RawChunk, reassemble
from .stats import ActivitySummary, FetchSessionState, empty_summary, summarize
from .telemetry import TelemetryLayout, decode
from .transport import CommandChannel, Endpoint, FrameTransport, require_endpoint

_LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

PHASES = (
    FetchSessionState.PHASE1,
    FetchSessionState.PHASE2,
    FetchSessionState.PHASE3,
)
TERMINAL_STATES = (FetchSessionState.COMPLETE, FetchSessionState.FAILED)


@dataclass(frozen=True)
class FetchTimings:
    phase1_deadline: float = PHASE1_DEADLINE_SECONDS
    phase2_deadline: float = PHASE2_DEADLINE_SECONDS
    phase3_deadline: float = PHASE3_DEADLINE_SECONDS
    settle_delay: float = START_TRANSFER_SETTLE_SECONDS
    reject_cooldown: float = REJECT_COOLDOWN_SECONDS
    inactivity_timeout: float = INACTIVITY_TIMEOUT_SECONDS
    progress_interval: float = PROGRESS_INTERVAL_SECONDS
    ack_every_bytes: int = ACK_EVERY_BYTES

    def deadline(self, phase: FetchSessionState) -> float:
        return {
            FetchSessionState.PHASE1: self.phase1_deadline,
            FetchSessionState.PHASE2: self.phase2_deadline,
            FetchSessionState.PHASE3: self.phase3_deadline,
        }[phase]


def build_fetch_command(
    start: datetime | None = None, activity_class: int = ACTIVITY_CLASS_SPORTS_DETAILS
) -> bytes:
    """01 <class> <year LE> <month> <day> <hour> <minute> 00 00"""
    if start is None:
        start = datetime(*DEFAULT_FETCH_START)
    return (
        bytes([0x01, activity_class])
        + start.year.to_bytes(2, "little")
        + bytes([start.month, start.day, start.hour, start.minute, 0x00, 0x00])
    )


def build_end_ack(retain: bool) -> bytes:
    return bytes([CMD_END_ACK, END_ACK_RETAIN if retain else END_ACK_DELETE])


class ActivityFetchSession:
    """Negotiates and drains one sports-detail transfer.

    IDLE -> PHASE1 -> PHASE2 -> PHASE3 escalate while the watch stays silent;
    the first sign of data moves to TRANSFERRING, and the session ends in
    COMPLETE or FAILED. fetch() always resolves: the inactivity timer closes
    out firmwares that never send an end-of-transfer marker.
    """

    def __init__(
        self,
        transport: FrameTransport,
        channel: CommandChannel,
        *,
        timings: FetchTimings | None = None,
        start: datetime | None = None,
        retain: bool = True,
        on_progress: ProgressCallback | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        control = require_endpoint(transport, Endpoint.CONTROL)
        if not control.writable:
            raise ConfigurationError("Control endpoint does not accept writes")
        data = transport.endpoints.get(Endpoint.DATA)

        self._transport = transport
        self._channel = channel
        self._timings = timings or FetchTimings()
        self._retain = retain
        self._on_progress = on_progress
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._shared = data is None or data.uuid == control.uuid
        self._commands = {
            FetchSessionState.PHASE1: build_fetch_command(start),
            FetchSessionState.PHASE2: SECONDARY_FETCH_COMMAND,
            FetchSessionState.PHASE3: EMERGENCY_FETCH_COMMAND,
        }

        self.state = FetchSessionState.IDLE
        self.bytes_received = 0
        self.expected_bytes: int | None = None
        self.summary: ActivitySummary | None = None
        self.sync_timestamp: datetime | None = None

        self._chunks: list[RawChunk] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._result: asyncio.Future[ActivitySummary] | None = None
        self._phase_timer: asyncio.TimerHandle | None = None
        self._inactivity_timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._last_progress = 0.0
        self._next_ack_at = self._timings.ack_every_bytes
        self._finalized = False

    @property
    def done(self) -> bool:
        return self._finalized

    # ---------- Entry point ----------
    async def fetch(self) -> ActivitySummary:
        if self._result is not None:
            raise ProtocolError("A fetch session serves a single fetch()")

        self._loop = asyncio.get_running_loop()
        self._result = self._loop.create_future()
        self.sync_timestamp = self._now()
        _LOGGER.info("Requesting sports activities")

        try:
            await self._transport.subscribe(Endpoint.CONTROL, self._handle_control_endpoint)
            if not self._shared:
                await self._transport.subscribe(Endpoint.DATA, self._handle_data_endpoint)
        except TransportError as err:
            _LOGGER.warning("Could not enable fetch notifications: %s", err)
            await self._release()
            self._finalize(FetchSessionState.FAILED)
            return self._result.result()

        try:
            self._enter_phase(FetchSessionState.PHASE1)
            return await self._result
        finally:
            if not self._finalized:
                _LOGGER.info("Fetch cancelled in state %s", self.state.value)
                self._finalized = True
                self.state = FetchSessionState.FAILED
                self._teardown()
            await self._release()

    def abort(self) -> None:
        if self._finalized:
            return
        _LOGGER.warning("Fetch aborted in state %s", self.state.value)
        self._finalize(FetchSessionState.FAILED)

    # ---------- Phase ladder ----------
    def _enter_phase(self, phase: FetchSessionState) -> None:
        self.state = phase
        _LOGGER.info("Fetch %s: %s", phase.value, self._commands[phase].hex())
        self._spawn(self._send_phase_command(phase))

    async def _send_phase_command(self, phase: FetchSessionState) -> None:
        ok = await self._channel.send(
            Endpoint.CONTROL, self._commands[phase], f"FETCH_{phase.name}"
        )
        if self.state is not phase:
            return
        if not ok:
            _LOGGER.warning("Fetch %s command could not be delivered", phase.value)
            self._escalate()
            return
        self._arm_phase_deadline(phase)

    def _arm_phase_deadline(self, phase: FetchSessionState) -> None:
        self._cancel_phase_deadline()
        self._phase_timer = self._loop.call_later(
            self._timings.deadline(phase), self._on_phase_deadline, phase
        )

    def _cancel_phase_deadline(self) -> None:
        if self._phase_timer is not None:
            self._phase_timer.cancel()
            self._phase_timer = None

    def _on_phase_deadline(self, phase: FetchSessionState) -> None:
        self._phase_timer = None
        if self.state is not phase or self.bytes_received:
            return
        _LOGGER.info("No data after %s", phase.value)
        self._escalate()

    def _escalate(self) -> None:
        if self.state not in PHASES:
            return
        idx = PHASES.index(self.state)
        if idx + 1 < len(PHASES):
            self._enter_phase(PHASES[idx + 1])
            return
        _LOGGER.warning("Device did not react to any fetch command")
        self._finalize(FetchSessionState.FAILED)

    async def _escalate_after_cooldown(self, phase: FetchSessionState) -> None:
        await asyncio.sleep(self._timings.reject_cooldown)
        if self.state is phase:
            self._escalate()

    # ---------- Transfer ----------
    async def _start_transfer(self) -> None:
        await asyncio.sleep(self._timings.settle_delay)
        if self.state is FetchSessionState.TRANSFERRING:
            await self._channel.send(Endpoint.CONTROL, CMD_START_TRANSFER, "START_TRANSFER")

    async def _acknowledge_end(self) -> None:
        self._cancel_inactivity()
        await self._channel.send(
            Endpoint.CONTROL, build_end_ack(self._retain), "END_ACK"
        )
        self._finalize(FetchSessionState.COMPLETE)

    def _begin_transfer(self) -> None:
        self._cancel_phase_deadline()
        self.state = FetchSessionState.TRANSFERRING
        self._arm_inactivity()

    def _arm_inactivity(self) -> None:
        self._cancel_inactivity()
        self._inactivity_timer = self._loop.call_later(
            self._timings.inactivity_timeout, self._on_inactivity
        )

    def _cancel_inactivity(self) -> None:
        if self._inactivity_timer is not None:
            self._inactivity_timer.cancel()
            self._inactivity_timer = None

    def _on_inactivity(self) -> None:
        self._inactivity_timer = None
        _LOGGER.info(
            "No data for %.1fs; closing transfer at %d bytes",
            self._timings.inactivity_timeout,
            self.bytes_received,
        )
        self._finalize(
            FetchSessionState.COMPLETE if self.bytes_received else FetchSessionState.FAILED
        )

    # ---------- Notifications ----------
    def _handle_control_endpoint(self, _endpoint: Endpoint, frame: bytes) -> None:
        if self._shared and (not frame or frame[0] != FETCH_RESPONSE):
            self._handle_data(frame)
        else:
            self._handle_control(frame)

    def _handle_data_endpoint(self, _endpoint: Endpoint, frame: bytes) -> None:
        self._handle_data(frame)

    def _handle_control(self, frame: bytes) -> None:
        _LOGGER.debug("Control frame: %s", frame.hex())
        if self._finalized:
            return
        if len(frame) < 3 or frame[0] != FETCH_RESPONSE:
            _LOGGER.debug("Ignoring malformed control frame: %s", frame.hex())
            return

        opcode, status = frame[1], frame[2]
        if opcode == FETCH_OP_START_DATE:
            if status == FETCH_STATUS_SUCCESS:
                self._on_fetch_accepted(frame)
            elif status == FETCH_STATUS_REJECTED:
                self._on_fetch_rejected()
            else:
                _LOGGER.debug("Unhandled fetch status 0x%02x", status)
        elif opcode == FETCH_OP_TRANSFER:
            if status == FETCH_STATUS_SUCCESS:
                _LOGGER.info("End of transfer after %d bytes", self.bytes_received)
                self._spawn(self._acknowledge_end())
            else:
                _LOGGER.warning("Transfer failed with status 0x%02x", status)
                self._finalize(FetchSessionState.FAILED)
        else:
            _LOGGER.debug("Ignoring control opcode 0x%02x", opcode)

    def _on_fetch_accepted(self, frame: bytes) -> None:
        if len(frame) >= 7:
            self.expected_bytes = int.from_bytes(frame[3:7], "little")
            _LOGGER.info("Device announced %d bytes", self.expected_bytes)
            if self.expected_bytes == 0:
                _LOGGER.info("Nothing new to fetch")
                self._finalize(FetchSessionState.COMPLETE)
                return
        if self.state is FetchSessionState.TRANSFERRING:
            return
        self._begin_transfer()
        self._spawn(self._start_transfer())

    def _on_fetch_rejected(self) -> None:
        if self.state not in PHASES:
            _LOGGER.debug("Late fetch rejection ignored in %s", self.state.value)
            return
        _LOGGER.warning("Device rejected %s command; retrying", self.state.value)
        self._cancel_phase_deadline()
        self._spawn(self._escalate_after_cooldown(self.state))

    def _handle_data(self, frame: bytes) -> None:
        if self._finalized or self.state is FetchSessionState.IDLE or not frame:
            return

        self._chunks.append(RawChunk(FrameKind.DATA, frame))
        previous = self.bytes_received
        self.bytes_received += len(frame)
        if self.state is not FetchSessionState.TRANSFERRING:
            self._begin_transfer()
        else:
            self._arm_inactivity()

        if self.bytes_received // 4096 > previous // 4096:
            _LOGGER.debug(
                "Received %.1f KB (last %d bytes: %s)",
                self.bytes_received / 1024,
                len(frame),
                frame[:4].hex(),
            )

        now = self._loop.time()
        if now - self._last_progress >= self._timings.progress_interval:
            self._last_progress = now
            self._report_progress()

        if self._timings.ack_every_bytes and self.bytes_received >= self._next_ack_at:
            while self._next_ack_at <= self.bytes_received:
                self._next_ack_at += self._timings.ack_every_bytes
            self._spawn(
                self._channel.send(
                    Endpoint.CONTROL, CMD_KEEPALIVE_ACK, "ACK_KEEPALIVE", attempts=1
                )
            )

    def _report_progress(self) -> None:
        if self._on_progress is not None:
            self._on_progress(self.bytes_received)

    # ---------- Finalize ----------
    def _spawn(self, coro) -> None:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            _LOGGER.error("Fetch task failed: %s", task.exception())

    def _teardown(self) -> None:
        self._cancel_phase_deadline()
        self._cancel_inactivity()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    async def _release(self) -> None:
        await self._transport.unsubscribe(Endpoint.CONTROL)
        if not self._shared:
            await self._transport.unsubscribe(Endpoint.DATA)

    def _finalize(self, outcome: FetchSessionState) -> None:
        if self._finalized:
            return
        self._finalized = True
        self.state = FetchSessionState.FINALIZING
        self._teardown()

        summary = empty_summary(self.sync_timestamp, outcome)
        try:
            buffer = reassemble(self._chunks)
            self._chunks = []
            if buffer:
                _LOGGER.info("Rebuilt %d payload bytes", len(buffer))
                # Byte count survives even if decoding blows up
                summary = empty_summary(
                    self.sync_timestamp,
                    outcome,
                    byte_count=len(buffer),
                    layout=TelemetryLayout.ESTIMATE,
                )
                summary = summarize(
                    decode(buffer, self.sync_timestamp), self.sync_timestamp, outcome
                )
            self._report_progress()
        except Exception as err:
            _LOGGER.exception("Could not decode activity data: %s", err)
        finally:
            self.state = outcome
            self.summary = summary
            if self._result is not None and not self._result.done():
                self._result.set_result(summary)
