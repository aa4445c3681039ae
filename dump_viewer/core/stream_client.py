"""Pull-style client for a remote sentinel-framed dump stream.

Connects over TCP to something that writes the same output as the launcher
script (for example a launcher running on another host behind ``socat``)
and publishes each framed record as a DumpHtmlEvent. Records go through the
same classifier path as the local supervisor's.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..types import ClientConfig, ConnectionState, DumpHtmlEvent, DumpViewerError
from .framer import StreamFramer

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]


@dataclass
class ReconnectPolicy:
    """Capped exponential backoff: ``min(base * 2**(attempt-1), max)``."""
    max_attempts: int = 10
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * 2 ** (max(attempt, 1) - 1), self.max_delay)

    def exhausted(self, failures: int) -> bool:
        return failures >= self.max_attempts

    @classmethod
    def from_config(cls, config: ClientConfig) -> ReconnectPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
        )


def parse_address(address: str) -> tuple[str, int]:
    """``"host:port"`` -> ``(host, port)``. Raises ValueError."""
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Expected HOST:PORT, got {address!r}")
    return host, int(port)


class StreamClient:
    """Connect, frame, publish; reconnect with backoff until the policy gives up.

    After ``max_attempts`` consecutive failed connects the state becomes
    ``failed`` and the client stays idle until ``retry()``.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        policy: ReconnectPolicy | None = None,
        connect_timeout: float = 5.0,
        log: logging.Logger | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.policy = policy or ReconnectPolicy()
        self.connect_timeout = connect_timeout
        self.framer = StreamFramer()
        self._log = log or logger

        self._state = ConnectionState.DISCONNECTED
        self._failures = 0
        self._task: asyncio.Task | None = None
        self._dump_listeners: list[Listener] = []
        self._state_listeners: list[Listener] = []
        self._error_listeners: list[Listener] = []

        self.connects = 0
        self.records_received = 0

    @classmethod
    def from_config(cls, config: ClientConfig, log: logging.Logger | None = None) -> StreamClient:
        host, port = parse_address(config.attach or "")
        return cls(
            host,
            port,
            policy=ReconnectPolicy.from_config(config),
            connect_timeout=config.connect_timeout,
            log=log,
        )

    # -- observers --------------------------------------------------------

    def on_dump_record(self, listener: Listener) -> None:
        self._dump_listeners.append(listener)

    def on_state_change(self, listener: Listener) -> None:
        """*listener* receives the new ConnectionState."""
        self._state_listeners.append(listener)

    def on_error(self, listener: Listener) -> None:
        self._error_listeners.append(listener)

    async def _dispatch(self, listeners: list[Listener], event: Any) -> None:
        for listener in list(listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._log.exception("Stream client listener failed")

    async def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        await self._dispatch(self._state_listeners, state)

    # -- queries ----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def stats(self) -> dict:
        return {
            "address": f"{self.host}:{self.port}",
            "state": self._state.value,
            "failures": self._failures,
            "connects": self.connects,
            "recordsReceived": self.records_received,
        }

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())

    def retry(self) -> None:
        """Manual retry after ``failed``: reset the failure count and reconnect."""
        self._failures = 0
        self.start()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._set_state(ConnectionState.DISCONNECTED)

    async def wait(self) -> None:
        """Wait until the run loop exits (gave up or stopped)."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        first = True
        while True:
            await self._set_state(
                ConnectionState.CONNECTING if first else ConnectionState.RECONNECTING
            )
            first = False
            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(self.host, self.port), self.connect_timeout
                )
            except (OSError, asyncio.TimeoutError) as e:
                self._failures += 1
                self._log.warning(
                    "Connection to %s:%d failed (%d/%d): %s",
                    self.host, self.port, self._failures, self.policy.max_attempts,
                    str(e) or "timeout",
                )
                if self.policy.exhausted(self._failures):
                    await self._give_up()
                    return
                await asyncio.sleep(self.policy.delay(self._failures))
                continue

            self._failures = 0
            self.connects += 1
            self.framer.reset()
            self._log.info("Connected to dump stream at %s:%d", self.host, self.port)
            await self._set_state(ConnectionState.CONNECTED)
            try:
                await self._read(reader)
            except OSError as e:
                self._log.warning("Dump stream %s:%d read error: %s", self.host, self.port, e)
            finally:
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError:
                    pass

            self._log.info("Dump stream %s:%d closed; reconnecting", self.host, self.port)
            await self._set_state(ConnectionState.DISCONNECTED)
            await asyncio.sleep(self.policy.delay(1))

    async def _read(self, reader: asyncio.StreamReader) -> None:
        while True:
            chunk = await reader.read(65536)
            if not chunk:
                return
            for html in self.framer.feed(chunk):
                self.records_received += 1
                await self._dispatch(self._dump_listeners, DumpHtmlEvent(html))

    async def _give_up(self) -> None:
        message = (
            f"Gave up connecting to {self.host}:{self.port} after "
            f"{self._failures} attempts"
        )
        self._log.error(message)
        await self._set_state(ConnectionState.FAILED)
        await self._dispatch(self._error_listeners, DumpViewerError(message))
