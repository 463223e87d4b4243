from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from .const import TIME_SYNC_CONNECT_GRACE_SECONDS, TIME_SYNC_TIMEOUT_SECONDS
from .transport import CommandChannel, Endpoint, FrameTransport

_LOGGER = logging.getLogger(__name__)


def _date_time(now: datetime) -> bytes:
    # BLE Date Time (0x2A08)
    return now.year.to_bytes(2, "little") + bytes(
        [now.month, now.day, now.hour, now.minute, now.second]
    )


def build_time_packets(now: datetime) -> list[bytes]:
    """Candidate Current Time payloads, most specific first.

    11 bytes: Huami layout with fractions, timezone and DST bytes.
    10 bytes: BLE Exact Time 256 with adjust reason "manual".
     7 bytes: bare Date Time.
    """
    base = _date_time(now)
    weekday = now.isoweekday()
    return [
        base + bytes([weekday, 0x00, 0x00, 0x00]),
        base + bytes([weekday, 0x00, 0x01]),
        base,
    ]


async def sync_time(
    transport: FrameTransport,
    channel: CommandChannel,
    now: datetime,
    *,
    grace: float = TIME_SYNC_CONNECT_GRACE_SECONDS,
    timeout: float = TIME_SYNC_TIMEOUT_SECONDS,
) -> int | None:
    """Write the wall clock to the watch; it refuses to hand out tracks otherwise.

    Returns the length of the accepted packet, or None.
    """
    handle = transport.endpoints.get(Endpoint.TIME)
    if handle is None or not handle.writable:
        _LOGGER.debug("No writable time characteristic; skipping time sync")
        return None

    if grace > 0:
        await asyncio.sleep(grace)

    for packet in build_time_packets(now):
        try:
            ok = await asyncio.wait_for(
                channel.send(Endpoint.TIME, packet, f"TIME_SYNC_{len(packet)}", attempts=1),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            _LOGGER.warning("Time sync timed out")
            return None
        if ok:
            _LOGGER.info("Time synchronised (%d-byte layout)", len(packet))
            return len(packet)
        _LOGGER.debug("Time layout of %d bytes refused", len(packet))

    _LOGGER.warning("Watch accepted none of the time layouts")
    return None
