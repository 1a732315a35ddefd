"""Reporting client: identity push and report stream.

Two independent schedules run on the event loop:

- Identity push: on start and then every ``info_interval_seconds`` the system
  facts are POSTed to uploadBasicInfo. A failure is logged and left to the
  next tick; there is no immediate retry.
- Report stream: a websocket to the report endpoint. While it is OPEN a push
  timer samples and sends one frame every ``report_interval_seconds``. Any
  close or error stops the timer and schedules exactly one reconnect after
  ``reconnect_delay_seconds``; reconnects continue until ``stop()``.

Frames are never queued: a push while the stream is not open is skipped, and
samples taken while disconnected are not replayed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import aiohttp

from komari_agent.core.schemas import AgentConfig
from komari_agent.monitoring.sampler import MetricsSampler
from komari_agent.reporting.payloads import (
    basic_info_url,
    build_basic_info,
    build_report,
    report_url,
)
from komari_agent.reporting.state import (
    ConnectionEvent,
    ConnectionState,
    ConnectionStateMachine,
)
from komari_agent.utils.logging import mask_token, truncate

logger = logging.getLogger(__name__)

# Errors that end one stream connection or one HTTP call; everything else is unexpected
TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, OSError)


class ReportingError(RuntimeError):
    """Raised when the collector answers with a non-2xx status."""

    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


class ReportingClient:
    """Push identity facts and stream snapshots to a Komari collector.

    Example:
        ```python
        client = ReportingClient(config)
        await client.run()   # until stop() is called or an unexpected error
        ```
    """

    def __init__(
        self,
        config: AgentConfig,
        sampler: MetricsSampler | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Agent configuration
            sampler: Metrics source (defaults to a sampler built from config.metrics)
            session_factory: Creates the HTTP/websocket session on start
        """
        self.config = config
        self.sampler = sampler or MetricsSampler(config.metrics)
        self._session_factory = session_factory or self._default_session
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._connection = ConnectionStateMachine()
        self._connection.add_listener(self._on_connection_change)
        self._running = False
        self._seq = 0
        self._reconnects = 0
        self._info_task: asyncio.Task[None] | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._report_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def running(self) -> bool:
        return self._running

    @property
    def seq(self) -> int:
        """Number of frames sent since start."""
        return self._seq

    @property
    def reconnect_count(self) -> int:
        return self._reconnects

    @property
    def report_timer_running(self) -> bool:
        return self._report_task is not None and not self._report_task.done()

    def _default_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(headers={"User-Agent": self.config.agent_version})

    def _mask(self, text: str) -> str:
        return mask_token(text, self.config.token)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Warm up the sampler, push identity once, and start both schedules."""
        if self._running:
            logger.warning("ReportingClient already running")
            return

        self._running = True
        logger.info("Agent start invoked")
        if self._session is None:
            self._session = self._session_factory()

        try:
            warm = await self.sampler.snapshot()
            logger.info(
                f"Warmup snapshot ok (cgroup={warm.system.cgroup_mode.value}, "
                f"uptime={int(warm.metrics.uptime_seconds)}s)"
            )
        except Exception as e:
            logger.warning(f"Warmup snapshot failed (will retry later): {e}")

        await self._upload_basic_info_logged("Initial")

        self._info_task = asyncio.create_task(self._info_loop(), name="komari-info")
        self._stream_task = asyncio.create_task(self._stream_loop(), name="komari-stream")

    async def run(self) -> None:
        """Start and block until ``stop()``.

        Raises:
            Exception: Any unexpected error from the schedules, after stopping
        """
        await self.start()
        tasks = [t for t in (self._info_task, self._stream_task) if t is not None]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            if self._running:
                raise
        except Exception:
            logger.exception("Reporting client failed unexpectedly")
            await self.stop()
            raise

    async def stop(self) -> None:
        """Cancel both schedules, close the stream and the HTTP session."""
        if not self._running and self._session is None:
            return
        logger.warning("Agent stop invoked")
        self._running = False

        tasks = [t for t in (self._report_task, self._info_task, self._stream_task) if t]
        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current]
        for task in tasks:
            task.cancel()

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._info_task = self._stream_task = self._report_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Identity push
    # ------------------------------------------------------------------

    async def upload_basic_info(self) -> None:
        """POST the identity facts once.

        Raises:
            ReportingError: If the collector answers with a non-2xx status
            aiohttp.ClientError: On network failure
        """
        if self._session is None:
            raise RuntimeError("upload_basic_info() called before start()")

        diag = self.config.diagnostics
        url = basic_info_url(self.config.endpoint, self.config.token)
        system = await self.sampler.system_info()
        body = build_basic_info(system, self.config.agent_version)

        logger.info(f"uploadBasicInfo -> {self._mask(url)}")
        if diag.log_payload:
            logger.debug(f"uploadBasicInfo payload: {body.model_dump_json()}")

        timeout = aiohttp.ClientTimeout(total=self.config.http_timeout_seconds)
        async with self._session.post(url, json=body.model_dump(), timeout=timeout) as resp:
            text = await resp.text(errors="replace")
            if not 200 <= resp.status < 300:
                logger.error(self._mask(f"uploadBasicInfo failed: HTTP {resp.status} {text[:500]}"))
                raise ReportingError(f"uploadBasicInfo failed: HTTP {resp.status}", resp.status)

        logger.info(f"uploadBasicInfo success: HTTP {resp.status}")
        if diag.log_payload and text:
            logger.debug(f"uploadBasicInfo response body: {text}")

    async def _upload_basic_info_logged(self, label: str) -> bool:
        try:
            await self.upload_basic_info()
        except (ReportingError, *TRANSIENT_ERRORS) as e:
            logger.error(self._mask(f"{label} uploadBasicInfo failed: {e}"))
            return False
        return True

    async def _info_loop(self) -> None:
        interval = self.config.info_interval_seconds
        while self._running:
            await asyncio.sleep(interval)
            await self._upload_basic_info_logged("Periodic")

    # ------------------------------------------------------------------
    # Report stream
    # ------------------------------------------------------------------

    def _on_connection_change(self, old: ConnectionState, new: ConnectionState) -> None:
        if new is ConnectionState.OPEN:
            if self._report_task is not None:
                self._report_task.cancel()
            self._report_task = asyncio.get_running_loop().create_task(
                self._report_loop(), name="komari-report"
            )
        elif old is ConnectionState.OPEN and self._report_task is not None:
            self._report_task.cancel()
            self._report_task = None

    async def _stream_loop(self) -> None:
        url = report_url(self.config.endpoint, self.config.token)
        delay = self.config.reconnect_delay_seconds
        while self._running:
            await self._connect_and_pump(url)
            if not self._running:
                break
            self._reconnects += 1
            logger.info(f"Reconnecting in {delay}s...")
            await asyncio.sleep(delay)

    async def _connect_and_pump(self, url: str) -> None:
        assert self._session is not None
        self._connection.fire(ConnectionEvent.CONNECT)
        logger.info(f"WebSocket connecting -> {self._mask(url)}")
        try:
            ws = await asyncio.wait_for(
                self._session.ws_connect(url, compress=0, autoping=True),
                timeout=self.config.handshake_timeout_seconds,
            )
        except TRANSIENT_ERRORS as e:
            logger.error(self._mask(f"WebSocket connect failed: {e!r}"))
            self._connection.fire(ConnectionEvent.FAILED)
            return
        except asyncio.CancelledError:
            self._connection.fire(ConnectionEvent.FAILED)
            raise

        self._ws = ws
        logger.info("WebSocket connected")
        self._connection.fire(ConnectionEvent.OPENED)
        try:
            await self._pump(ws)
        finally:
            self._ws = None
            if not ws.closed:
                await ws.close()
            self._connection.fire(ConnectionEvent.CLOSED)

    async def _pump(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Run until the stream ends; re-raise an unexpected push-timer failure."""
        receiver = asyncio.create_task(self._receive(ws), name="komari-receive")
        waiters: set[asyncio.Task[None]] = {receiver}
        if self._report_task is not None:
            waiters.add(self._report_task)
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not receiver.done():
                receiver.cancel()
                await asyncio.gather(receiver, return_exceptions=True)

        for task in done:
            if task is not receiver and not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]

    async def _receive(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    logger.debug(f"WebSocket message received: {msg.data}")
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    logger.debug(f"WebSocket binary message received ({len(msg.data)} bytes)")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(self._mask(f"WebSocket error: {ws.exception()!r}"))
                    break
        except TRANSIENT_ERRORS as e:
            logger.error(self._mask(f"WebSocket receive failed: {e!r}"))
        logger.warning(f"WebSocket closed: code={ws.close_code}")

    async def _report_loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.report_interval_seconds
        next_at = loop.time()
        while True:
            try:
                await self.send_report()
            except TRANSIENT_ERRORS as e:
                logger.error(self._mask(f"sendReport failed: {e!r}"))
            next_at = max(next_at + interval, loop.time())
            await asyncio.sleep(next_at - loop.time())

    async def send_report(self) -> bool:
        """Sample once and send the frame over the open stream.

        Returns:
            True if a frame was sent, False if the stream was not open
        """
        if not self._stream_is_open():
            logger.debug("sendReport skipped: ws not open")
            return False

        snapshot = await self.sampler.snapshot()
        ws = self._ws
        if ws is None or not self._stream_is_open():
            logger.debug("sendReport skipped: ws closed while sampling")
            return False

        diag = self.config.diagnostics
        frame = build_report(snapshot, attach_threads=diag.attach_threads_to_message)
        data = frame.model_dump_json()
        self._seq += 1
        if diag.log_ws_send and self._seq % diag.log_ws_every == 0:
            logger.debug(
                f"ws.send seq={self._seq} bytes={len(data)} -> "
                f"{truncate(data, diag.log_ws_max_length)}"
            )
        await ws.send_str(data)
        return True

    def _stream_is_open(self) -> bool:
        return self._connection.is_open and self._ws is not None and not self._ws.closed
