from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from bleak.backends.device import BLEDevice
from bleak.exc import BleakError
from bleak_retry_connector import (
    BleakClientWithServiceCache,
    BleakConnectionError,
    BleakNotFoundError,
    BleakOutOfConnectionSlotsError,
    establish_connection,
)

from .auth import AuthHandshake, Credential
from .const import AUTH_TIMEOUT_SECONDS, CONNECT_MAX_ATTEMPTS
from .errors import FetchInProgressError, ProtocolError, TransportError
from .fetch import ActivityFetchSession, FetchTimings, ProgressCallback
from .stats import ActivitySummary
from .timesync import sync_time
from .transport import BleakFrameTransport, CommandChannel, RetryPolicy

_LOGGER = logging.getLogger(__name__)


class HuamiDevice:
    """One connection to one watch: connect, authenticate, fetch, disconnect.

    Nothing here outlives the connection; reconnecting means a new instance.
    """

    def __init__(
        self,
        ble_device: BLEDevice,
        credential: Credential,
        *,
        timings: FetchTimings | None = None,
        retry_policy: RetryPolicy | None = None,
        auth_timeout: float = AUTH_TIMEOUT_SECONDS,
        sync_clock: bool = True,
    ) -> None:
        self._ble_device = ble_device
        self._credential = credential
        self._timings = timings
        self._retry_policy = retry_policy or RetryPolicy()
        self._auth_timeout = auth_timeout
        self._sync_clock = sync_clock

        self._client: BleakClientWithServiceCache | None = None
        self.transport: BleakFrameTransport | None = None
        self.channel: CommandChannel | None = None
        self.handshake: AuthHandshake | None = None
        self._fetch: ActivityFetchSession | None = None
        self.disconnected = asyncio.Event()

    @property
    def address(self) -> str:
        return self._ble_device.address

    @property
    def name(self) -> str:
        return self._ble_device.name or self.address

    @property
    def authenticated(self) -> bool:
        return self.handshake is not None and self.handshake.authenticated

    @property
    def fetching(self) -> bool:
        return self._fetch is not None and not self._fetch.done

    async def __aenter__(self) -> HuamiDevice:
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        loop = asyncio.get_running_loop()

        def _disconnected_callback(_client) -> None:
            loop.call_soon_threadsafe(self.disconnected.set)

        self.disconnected.clear()
        try:
            self._client = await establish_connection(
                BleakClientWithServiceCache,
                self._ble_device,
                self.name,
                disconnected_callback=_disconnected_callback,
                max_attempts=CONNECT_MAX_ATTEMPTS,
            )
        except (
            BleakOutOfConnectionSlotsError,
            BleakNotFoundError,
            BleakConnectionError,
            BleakError,
            asyncio.TimeoutError,
        ) as err:
            raise TransportError(f"Could not connect to {self.address}: {err}") from err

        _LOGGER.info("Connected to %s (%s)", self.name, self.address)
        try:
            self.transport = BleakFrameTransport.resolve(self._client)
            self.channel = CommandChannel(self.transport, self._retry_policy)
            self.handshake = AuthHandshake(
                self.transport, self.channel, self._credential, self._auth_timeout
            )
            await self.handshake.authenticate()

            if self._sync_clock:
                await sync_time(self.transport, self.channel, datetime.now().astimezone())
        except BaseException:
            await self.disconnect()
            raise

    async def fetch_activities(
        self,
        *,
        start: datetime | None = None,
        retain: bool = True,
        on_progress: ProgressCallback | None = None,
    ) -> ActivitySummary:
        if not self.authenticated:
            raise ProtocolError("Not authenticated")
        if self.fetching:
            raise FetchInProgressError("A fetch is already running on this connection")

        self._fetch = ActivityFetchSession(
            self.transport,
            self.channel,
            timings=self._timings,
            start=start,
            retain=retain,
            on_progress=on_progress,
        )
        summary = await self._fetch.fetch()
        _LOGGER.info(
            "Fetch finished (%s): %d bytes, %d points, %.2f km",
            summary.outcome.value,
            summary.byte_count,
            len(summary.position_points),
            summary.distance_km,
        )
        return summary

    async def disconnect(self) -> None:
        if self._fetch is not None:
            self._fetch.abort()
            self._fetch = None

        transport, self.transport = self.transport, None
        client, self._client = self._client, None
        self.channel = None

        if transport is not None:
            await transport.close()
        if client is not None:
            try:
                await client.disconnect()
            except (BleakError, asyncio.TimeoutError, OSError) as err:
                _LOGGER.debug("Disconnect from %s failed: %s", self.address, err)
            _LOGGER.info("Disconnected from %s", self.address)
