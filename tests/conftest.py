"""Shared fixtures for dump-viewer tests."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from starlette.websockets import WebSocketDisconnect, WebSocketState

from dump_viewer.config import load_config
from dump_viewer.types import (
    DumpCategory,
    DumpRecord,
    DumpSource,
    DumpViewerConfig,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("PHP_VENDOR_PATH", raising=False)
    monkeypatch.delenv("DUMP_VIEWER_LOG_LEVEL", raising=False)


@pytest.fixture
def ts() -> datetime:
    return datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def make_record(
    rid: str,
    ts: datetime,
    *,
    content: str = "<pre class=sf-dump>1</pre>",
    file: str = "app.php",
    line: int = 1,
    category: DumpCategory = DumpCategory.DUMP,
    function: str | None = None,
    class_name: str | None = None,
) -> DumpRecord:
    return DumpRecord(
        id=rid,
        timestamp=ts,
        source=DumpSource(file=file, line=line, function=function, class_name=class_name),
        category=category,
        content=content,
        raw_data=content,
    )


@pytest.fixture
def sample_records(ts) -> list[DumpRecord]:
    return [
        make_record("d1", ts, content="<pre>SELECT * FROM users</pre>",
                    file="src/Repo/UserRepository.php", line=12,
                    category=DumpCategory.QUERY, function="findAll", class_name="UserRepository"),
        make_record("d2", ts + timedelta(minutes=1), content="<pre>array:2 [1, 2]</pre>",
                    file="src/Controller/Home.php", line=40),
        make_record("d3", ts + timedelta(minutes=2), content="<pre>Request headers</pre>",
                    file="src/Controller/Api.php", line=7, category=DumpCategory.REQUEST),
        make_record("d4", ts + timedelta(minutes=3), content="<pre>cache warmup</pre>",
                    file="src/Jobs/Warmup.php", line=3, category=DumpCategory.JOB),
    ]


@pytest.fixture
def quiet_config() -> DumpViewerConfig:
    """Viewer config with no subprocess, no browser and a fast heartbeat."""
    return load_config(config_dict={
        "dump_server": {"enabled": False},
        "web": {"port": 3999, "auto_open": False, "heartbeat_interval": 30},
        "store": {"capacity": 100},
    })


class FakeWebSocket:
    """In-memory stand-in for a starlette WebSocket."""

    def __init__(self, incoming: list[str] | None = None, fail_send: bool = False):
        self.client_state = WebSocketState.CONNECTING
        self.application_state = WebSocketState.CONNECTING
        self.sent: list[dict] = []
        self.fail_send = fail_send
        self.closed_with: int | None = None
        self._incoming: asyncio.Queue = asyncio.Queue()
        for text in incoming or []:
            self._incoming.put_nowait(text)

    async def accept(self):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, text: str):
        if self.fail_send:
            raise RuntimeError("socket broken")
        self.sent.append(json.loads(text))

    async def receive_text(self) -> str:
        item = await self._incoming.get()
        if item is None:
            self.client_state = WebSocketState.DISCONNECTED
            raise WebSocketDisconnect(code=1000)
        return item

    def push(self, text: str | None):
        self._incoming.put_nowait(text)

    async def close(self, code: int = 1000):
        self.closed_with = code
        self.application_state = WebSocketState.DISCONNECTED
        # The peer answers the close, which ends a pending receive.
        self._incoming.put_nowait(None)

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> None:
    """Poll *predicate* on the running loop until true or *timeout* seconds pass."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


class StalledWebSocket(FakeWebSocket):
    """Accepts the welcome message, then never finishes another send."""

    async def send_text(self, text: str):
        if self.sent:
            await asyncio.Event().wait()
        await super().send_text(text)
