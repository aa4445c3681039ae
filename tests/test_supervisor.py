"""Tests for ProcessSupervisor using a stand-in dump server script.

The stand-in is a small Python program that writes sentinel-framed records
to stdout and PHP-style lines to stderr, so no PHP toolchain is needed.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import sys
import textwrap

import pytest

from conftest import wait_until
from dump_viewer.core.launcher import LauncherFiles
from dump_viewer.core.ports import is_port_available
from dump_viewer.core.supervisor import ProcessSupervisor
from dump_viewer.types import (
    DependencyError,
    DumpHtmlEvent,
    DumpServerConfig,
    SupervisorError,
    SupervisorErrorEvent,
    SupervisorState,
)

FAKE_SERVER = textwrap.dedent("""\
    import os
    import signal
    import sys
    import time

    mode, port, counter = sys.argv[1], sys.argv[2], sys.argv[3]
    SEP = "\\n<!-- __DUMP_SEPARATOR__ -->\\n"

    if mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    runs = 0
    if os.path.exists(counter):
        with open(counter) as f:
            runs = int(f.read() or 0)
    with open(counter, "w") as f:
        f.write(str(runs + 1))

    sys.stdout.write("<pre>port " + port + "</pre>" + SEP)
    sys.stdout.write("<!-- SOURCE_INFO: app.php on line 7 --><pre>run " + str(runs) + "</pre>" + SEP)
    sys.stdout.flush()
    sys.stderr.write("PHP Notice: Undefined index: foo\\n")
    sys.stderr.write("PHP Fatal error: something broke\\n")
    sys.stderr.flush()

    if mode == "crash" and runs == 0:
        time.sleep(0.5)
        sys.exit(3)

    while True:
        time.sleep(0.05)
""")


def _free_base(span: int = 3) -> int:
    for _ in range(50):
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            base = s.getsockname()[1]
        if base + span < 65535 and all(is_port_available(base + i) for i in range(span)):
            return base
    pytest.skip("could not find a free port range")


@pytest.fixture
def fake_server(tmp_path):
    script = tmp_path / "fake_dump_server.py"
    script.write_text(FAKE_SERVER)
    return script


@pytest.fixture
def make_supervisor(tmp_path, fake_server):
    """Factory: ProcessSupervisor running the stand-in in *mode*."""

    def _make(mode: str = "emit", dependency_check=None, **overrides):
        counter = tmp_path / f"runs-{mode}.txt"
        options = dict(
            port=_free_base(),
            port_attempts=3,
            kill_stale=False,
            settle_delay=0.2,
            restart_delay=0.1,
            stop_timeout=0.5,
            health_interval=0.1,
        )
        options.update(overrides)

        async def no_deps():
            return None

        sup = ProcessSupervisor(
            DumpServerConfig(**options),
            launcher=LauncherFiles(tmp_path),
            dependency_check=dependency_check or no_deps,
            command=lambda host, port: [
                sys.executable, str(fake_server), mode, str(port), str(counter),
            ],
        )
        records: list[str] = []
        states: list = []
        errors: list = []
        sup.on_dump_record(lambda e: records.append(e.html))
        sup.on_state_change(lambda e: states.append(e))
        sup.on_error(lambda e: errors.append(e))
        return sup, records, states, errors

    return _make


class TestStartAndRecords:
    @pytest.mark.asyncio
    async def test_records_delivered_in_order(self, make_supervisor):
        sup, records, states, _ = make_supervisor()
        try:
            await sup.start()
            assert sup.state is SupervisorState.RUNNING
            assert sup.is_running()
            await wait_until(lambda: len(records) >= 2)
            assert records[0] == f"<pre>port {sup.get_port()}</pre>"
            assert records[1].endswith("<pre>run 0</pre>")
            assert [s.new for s in states] == [SupervisorState.STARTING, SupervisorState.RUNNING]
        finally:
            await sup.stop()
        assert sup.state is SupervisorState.STOPPED

    @pytest.mark.asyncio
    async def test_dump_events_are_dump_html_events(self, make_supervisor):
        sup, _, _, _ = make_supervisor()
        events = []
        sup.on_dump_record(events.append)
        try:
            await sup.start()
            await wait_until(lambda: len(events) >= 1)
            assert isinstance(events[0], DumpHtmlEvent)
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_async_listener_supported(self, make_supervisor):
        sup, _, _, _ = make_supervisor()
        seen = []

        async def listener(event):
            await asyncio.sleep(0)
            seen.append(event.html)

        sup.on_dump_record(listener)
        try:
            await sup.start()
            await wait_until(lambda: len(seen) >= 2)
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_others(self, make_supervisor):
        sup, records, _, _ = make_supervisor()

        def broken(event):
            raise RuntimeError("listener bug")

        sup._dump_listeners.insert(0, broken)
        try:
            await sup.start()
            await wait_until(lambda: len(records) >= 2)
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_stderr_triage(self, make_supervisor, caplog):
        caplog.set_level(logging.DEBUG, logger="dump_viewer.core.supervisor")
        sup, _, _, _ = make_supervisor()
        try:
            await sup.start()
            await wait_until(lambda: sup.stderr_reported >= 1 and sup.stderr_suppressed >= 1)
        finally:
            await sup.stop()
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert any("PHP Fatal error" in r.getMessage() for r in warnings)
        assert not any("PHP Notice" in r.getMessage() for r in warnings)
        assert sup.stats()["stderrSuppressed"] == 1

    @pytest.mark.asyncio
    async def test_port_fallback(self, make_supervisor):
        sup, records, _, _ = make_supervisor()
        preferred = sup.config.port
        with socket.socket() as blocker:
            blocker.bind(("127.0.0.1", preferred))
            blocker.listen(1)
            try:
                await sup.start()
                assert sup.get_port() == preferred + 1
                await wait_until(lambda: len(records) >= 1)
                assert records[0] == f"<pre>port {preferred + 1}</pre>"
            finally:
                await sup.stop()


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_start_is_noop(self, make_supervisor):
        sup, _, _, _ = make_supervisor()
        try:
            await sup.start()
            pid = sup.pid
            await sup.start()
            assert sup.pid == pid
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_stop_twice_and_stop_before_start(self, make_supervisor):
        sup, _, states, _ = make_supervisor()
        await sup.stop()
        assert sup.state is SupervisorState.STOPPED
        assert states == []

        await sup.start()
        await sup.stop()
        await sup.stop()
        assert sup.state is SupervisorState.STOPPED
        assert sup.pid is None

    @pytest.mark.asyncio
    async def test_launcher_files_removed_on_stop(self, make_supervisor, tmp_path):
        sup, _, _, _ = make_supervisor()
        await sup.start()
        helper = sup.get_helper_path()
        assert helper.exists()
        await sup.stop()
        assert not helper.exists()


class TestCrashRestart:
    @pytest.mark.asyncio
    async def test_crash_then_restart(self, make_supervisor):
        sup, records, states, _ = make_supervisor("crash")
        try:
            await sup.start()
            await wait_until(
                lambda: sup.restarts == 1 and sup.state is SupervisorState.RUNNING,
                timeout=10.0,
            )
            await wait_until(lambda: any(r.endswith("<pre>run 1</pre>") for r in records))
        finally:
            await sup.stop()

        assert sup.crashes == 1
        crashed = [s for s in states if s.new is SupervisorState.CRASHED]
        assert len(crashed) == 1
        assert crashed[0].detail == "exit code 3"
        # Records from before the crash were delivered too
        assert any(r.endswith("<pre>run 0</pre>") for r in records)

    @pytest.mark.asyncio
    async def test_stop_during_restart_delay(self, make_supervisor):
        sup, _, _, _ = make_supervisor("crash", restart_delay=5.0)
        await sup.start()
        await wait_until(lambda: sup.state is SupervisorState.CRASHED, timeout=10.0)
        await sup.stop()
        await asyncio.sleep(0.1)
        assert sup.state is SupervisorState.STOPPED
        assert sup.restarts == 0

    @pytest.mark.asyncio
    async def test_helper_survives_crash(self, make_supervisor):
        sup, _, _, _ = make_supervisor("crash")
        try:
            await sup.start()
            helper = sup.get_helper_path()
            await wait_until(
                lambda: sup.restarts == 1 and sup.state is SupervisorState.RUNNING,
                timeout=10.0,
            )
            assert helper.exists()
            assert f"tcp://127.0.0.1:{sup.get_port()}" in helper.read_text()
        finally:
            await sup.stop()
        assert not helper.exists()

    @pytest.mark.asyncio
    async def test_restart_rewrites_helper_with_new_port(self, make_supervisor):
        sup, _, _, _ = make_supervisor("crash", restart_delay=0.5)
        try:
            await sup.start()
            first_port = sup.get_port()
            helper = sup.get_helper_path()
            await wait_until(lambda: sup.state is SupervisorState.CRASHED, timeout=10.0)
            with socket.socket() as blocker:
                blocker.bind(("127.0.0.1", first_port))
                blocker.listen(1)
                await wait_until(lambda: sup.state is SupervisorState.RUNNING, timeout=10.0)
            assert sup.get_port() == first_port + 1
            assert f"tcp://127.0.0.1:{first_port + 1}" in helper.read_text()
        finally:
            await sup.stop()


class TestStop:
    @pytest.mark.asyncio
    async def test_graceful_stop(self, make_supervisor):
        sup, _, states, _ = make_supervisor()
        await sup.start()
        process = sup._process
        await sup.stop()
        assert process.returncode is not None
        assert [s.new for s in states][-2:] == [SupervisorState.STOPPING, SupervisorState.STOPPED]
        assert sup.crashes == 0

    @pytest.mark.asyncio
    async def test_sigkill_when_sigterm_ignored(self, make_supervisor, caplog):
        caplog.set_level(logging.WARNING, logger="dump_viewer.core.supervisor")
        sup, records, _, _ = make_supervisor("stubborn")
        await sup.start()
        # Records are written after the SIGTERM handler is installed.
        await wait_until(lambda: len(records) >= 2)
        process = sup._process
        await sup.stop()
        assert process.returncode == -9
        assert any("SIGKILL" in r.getMessage() for r in caplog.records)
        assert sup.state is SupervisorState.STOPPED
        assert sup.crashes == 0

    @pytest.mark.asyncio
    async def test_stop_while_spawning_kills_child(self, make_supervisor, monkeypatch):
        entered, gate = asyncio.Event(), asyncio.Event()

        async def slow_deps():
            entered.set()
            await gate.wait()
            return None

        spawned = []
        real_exec = asyncio.create_subprocess_exec

        async def recording_exec(*args, **kwargs):
            process = await real_exec(*args, **kwargs)
            spawned.append(process)
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", recording_exec)
        sup, _, _, _ = make_supervisor(dependency_check=slow_deps)
        starting = asyncio.create_task(sup.start())
        await entered.wait()
        await sup.stop()
        assert sup.state is SupervisorState.STOPPED

        gate.set()
        await asyncio.wait_for(starting, 5)
        assert sup.state is SupervisorState.STOPPED
        assert sup.pid is None
        assert len(spawned) == 1
        assert spawned[0].returncode is not None


class TestStartFailures:
    @pytest.mark.asyncio
    async def test_dependency_error_not_retried(self, make_supervisor):
        async def missing():
            raise DependencyError("Composer is required but not found.", ["/x/vendor"])

        sup, _, states, errors = make_supervisor(dependency_check=missing)
        with pytest.raises(DependencyError):
            await sup.start()
        await asyncio.sleep(0.3)
        assert sup.state is SupervisorState.STOPPED
        assert sup.restarts == 0
        assert len(errors) == 1
        assert isinstance(errors[0], SupervisorErrorEvent)
        assert isinstance(errors[0].error, DependencyError)
        assert [s.new for s in states] == [SupervisorState.STARTING, SupervisorState.STOPPED]

    @pytest.mark.asyncio
    async def test_spawn_failure_raises_supervisor_error(self, tmp_path):
        async def no_deps():
            return None

        sup = ProcessSupervisor(
            DumpServerConfig(port=_free_base(), kill_stale=False, settle_delay=0.1),
            launcher=LauncherFiles(tmp_path),
            dependency_check=no_deps,
            command=lambda host, port: [str(tmp_path / "no-such-php")],
        )
        with pytest.raises(SupervisorError):
            await sup.start()
        assert sup.state is SupervisorState.STOPPED
        assert not sup.is_running()
