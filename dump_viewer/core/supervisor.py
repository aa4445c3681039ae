"""ProcessSupervisor: owns the var-dump-server subprocess.

State machine::

    stopped -> starting -> running -> stopping -> stopped
                              |
                              +-> crashed -> starting (after restart_delay)

Stdout is framed into HTML records and published as DumpHtmlEvent.
Stderr is triaged line by line. Crashes restart unconditionally; a failed
restart is logged and ends that restart attempt.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import signal
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any

from ..types import (
    DumpHtmlEvent,
    DumpServerConfig,
    SupervisorError,
    SupervisorErrorEvent,
    SupervisorState,
    SupervisorStateEvent,
)
from .dependencies import ensure_dependencies, resolve_vendor_dir
from .framer import StreamFramer
from .launcher import LauncherFiles
from .ports import find_available_port

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]
DependencyCheck = Callable[[], Awaitable[Path | None]]
CommandFactory = Callable[[str, int], Sequence[str]]

_SUPPRESSED_STDERR = ("PHP Notice", "PHP Warning")
_READ_SIZE = 65536


class ProcessSupervisor:
    """Spawn, watch, restart and stop the dump server.

    ``dependency_check`` and ``command`` replace the composer/vendor checks
    and the generated launcher command; both default to the real thing.
    """

    def __init__(
        self,
        config: DumpServerConfig | None = None,
        *,
        launcher: LauncherFiles | None = None,
        dependency_check: DependencyCheck | None = None,
        command: CommandFactory | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.config = config or DumpServerConfig()
        self.launcher = launcher or LauncherFiles()
        self.framer = StreamFramer()
        self._dependency_check = dependency_check or self._check_dependencies
        self._command = command or self._launcher_command
        self._log = log or logger

        self._state = SupervisorState.STOPPED
        self._port = self.config.port
        self._vendor_dir: Path | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._stdout_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None
        self._restart_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._stop_lock = asyncio.Lock()

        self._dump_listeners: list[Listener] = []
        self._error_listeners: list[Listener] = []
        self._state_listeners: list[Listener] = []

        self.records_received = 0
        self.stderr_suppressed = 0
        self.stderr_reported = 0
        self.crashes = 0
        self.restarts = 0

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_dump_record(self, listener: Listener) -> None:
        """*listener* receives a DumpHtmlEvent per framed record."""
        self._dump_listeners.append(listener)

    def on_error(self, listener: Listener) -> None:
        self._error_listeners.append(listener)

    def on_state_change(self, listener: Listener) -> None:
        self._state_listeners.append(listener)

    async def _dispatch(self, listeners: list[Listener], event: Any) -> None:
        for listener in list(listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._log.exception("Supervisor listener failed for %s", type(event).__name__)

    async def _set_state(self, new: SupervisorState, detail: str = "") -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        self._log.debug("Dump server state %s -> %s %s", old.value, new.value, detail)
        await self._dispatch(self._state_listeners, SupervisorStateEvent(old, new, detail))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    def is_running(self) -> bool:
        return (
            self._state is SupervisorState.RUNNING
            and self._process is not None
            and self._process.returncode is None
        )

    def get_port(self) -> int:
        return self._port

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def get_helper_path(self) -> Path:
        return self.launcher.create_helper(
            port=self._port,
            vendor_dir=self._vendor_dir or self.config.vendor_path,
            host=self.config.host,
        )

    def stats(self) -> dict:
        return {
            "state": self._state.value,
            "port": self._port,
            "pid": self.pid,
            "recordsReceived": self.records_received,
            "stderrSuppressed": self.stderr_suppressed,
            "stderrReported": self.stderr_reported,
            "crashes": self.crashes,
            "restarts": self.restarts,
            "pendingBytes": len(self.framer.pending),
        }

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Verify deps, pick a port, spawn. No-op if starting or running.

        Raises DependencyError, PortUnavailableError or SupervisorError.
        """
        if self._state in (SupervisorState.STARTING, SupervisorState.RUNNING):
            return

        await self._set_state(SupervisorState.STARTING)
        try:
            await self._spawn()
        except asyncio.CancelledError:
            await self._abort_start("cancelled")
            raise
        except Exception as e:
            self._log.error("Failed to start dump server: %s", e)
            await self._abort_start(str(e))
            await self._dispatch(self._error_listeners, SupervisorErrorEvent(e))
            raise

        await asyncio.sleep(self.config.settle_delay)
        # An exit during the settle delay has already been handled as a crash.
        if self._state is SupervisorState.STARTING:
            await self._set_state(SupervisorState.RUNNING, f"port {self._port}")
            self._log.info("Dump server running on %s:%d", self.config.host, self._port)

    async def _spawn(self) -> None:
        vendor = await self._dependency_check()
        if vendor is not None:
            self._vendor_dir = Path(vendor)

        if self.config.kill_stale:
            await self._kill_stale()

        self._port = find_available_port(
            self.config.port, self.config.port_attempts, self.config.host
        )
        if self.launcher.has_helper:
            # The port may differ from the last run.
            self.get_helper_path()
        argv = list(self._command(self.config.host, self._port))

        self.framer.reset()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SupervisorError(f"Failed to spawn dump server ({argv[0]}): {e}") from e

        if self._state is not SupervisorState.STARTING:
            # stop() ran while spawning; nothing would own this child.
            self._log.debug("Dump server stopped during spawn, killing pid=%s", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            self.launcher.cleanup(keep_helper=True)
            return

        self._process = process
        self._stdout_task = asyncio.create_task(self._pump_stdout(process))
        self._stderr_task = asyncio.create_task(self._pump_stderr(process))
        self._exit_task = asyncio.create_task(self._watch_exit(process))
        self._log.debug("Spawned dump server pid=%s: %s", process.pid, " ".join(argv))

    async def _abort_start(self, detail: str) -> None:
        process = self._process
        # Detach first so the exit watcher does not report this as a crash.
        self._process = None
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        await self._join_readers()
        self.launcher.cleanup(keep_helper=True)
        await self._set_state(SupervisorState.STOPPED, detail)

    async def _check_dependencies(self) -> Path:
        await ensure_dependencies(
            composer=self.config.composer_binary,
            php=self.config.php_binary,
            auto_install=self.config.auto_install,
            vendor_path=self.config.vendor_path,
        )
        return resolve_vendor_dir(self.config.vendor_path)

    def _launcher_command(self, host: str, port: int) -> list[str]:
        vendor = self._vendor_dir or resolve_vendor_dir(self.config.vendor_path)
        script = self.launcher.create_server_script(host, port, vendor)
        return [self.config.php_binary, str(script)]

    async def _kill_stale(self) -> None:
        """Best-effort ``pkill -f var-dump-server``."""
        try:
            proc = await asyncio.create_subprocess_exec(
                "pkill", "-f", "var-dump-server",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await proc.wait()
        except OSError as e:
            self._log.debug("pkill unavailable: %s", e)
        await asyncio.sleep(self.config.kill_settle_delay)

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    async def _pump_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        while True:
            chunk = await process.stdout.read(_READ_SIZE)
            if not chunk:
                break
            for html in self.framer.feed(chunk):
                self.records_received += 1
                await self._dispatch(self._dump_listeners, DumpHtmlEvent(html))

    async def _pump_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            raw = await process.stderr.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            if any(marker in line for marker in _SUPPRESSED_STDERR):
                self.stderr_suppressed += 1
                self._log.debug("Dump server stderr (suppressed): %s", line)
                continue
            self.stderr_reported += 1
            self._log.warning("Dump server stderr: %s", line)

    async def _join_readers(self) -> None:
        tasks = [t for t in (self._stdout_task, self._stderr_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._stdout_task = self._stderr_task = None

    # ------------------------------------------------------------------
    # Crash handling
    # ------------------------------------------------------------------

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        # Drain output written just before exit.
        readers = [t for t in (self._stdout_task, self._stderr_task) if t is not None]
        if readers:
            await asyncio.gather(*readers, return_exceptions=True)
        await self._handle_exit(process, code)

    async def _handle_exit(self, process: asyncio.subprocess.Process, code: int | None) -> None:
        if process is not self._process:
            return
        if self._state not in (SupervisorState.STARTING, SupervisorState.RUNNING):
            return

        self.crashes += 1
        if code is not None and code < 0:
            try:
                reason = f"signal {signal.Signals(-code).name}"
            except ValueError:
                reason = f"signal {-code}"
        else:
            reason = f"exit code {code}"
        self._log.warning(
            "Dump server exited unexpectedly (%s); restarting in %.1fs",
            reason, self.config.restart_delay,
        )

        self._process = None
        self.launcher.cleanup(keep_helper=True)
        await self._set_state(SupervisorState.CRASHED, reason)
        self._restart_task = asyncio.create_task(self._restart_later())

    async def _restart_later(self) -> None:
        await asyncio.sleep(self.config.restart_delay)
        if self._state is not SupervisorState.CRASHED:
            return
        self.restarts += 1
        try:
            await self.start()
        except Exception as e:
            self._log.error("Dump server restart failed: %s", e)

    def start_health_monitoring(self) -> None:
        """Poll every ``health_interval`` for a process that died unnoticed."""
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.create_task(self._health_loop())

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_interval)
            process = self._process
            if (
                self._state is SupervisorState.RUNNING
                and process is not None
                and process.returncode is not None
            ):
                self._log.debug("Health check found dead dump server pid=%s", process.pid)
                await self._handle_exit(process, process.returncode)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """SIGTERM, then SIGKILL after ``stop_timeout``. Idempotent."""
        async with self._stop_lock:
            await _cancel(self._health_task)
            self._health_task = None
            await _cancel(self._restart_task)
            self._restart_task = None

            process = self._process
            if process is None:
                self.launcher.cleanup()
                await self._set_state(SupervisorState.STOPPED)
                return

            await self._set_state(SupervisorState.STOPPING)
            if process.returncode is None:
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(process.wait(), self.config.stop_timeout)
                except asyncio.TimeoutError:
                    self._log.warning(
                        "Dump server did not exit within %.1fs, sending SIGKILL",
                        self.config.stop_timeout,
                    )
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()

            await self._join_readers()
            if self._exit_task is not None:
                await asyncio.gather(self._exit_task, return_exceptions=True)
                self._exit_task = None
            self._process = None
            self.launcher.cleanup()
            await self._set_state(SupervisorState.STOPPED)
            self._log.info("Dump server stopped")


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
