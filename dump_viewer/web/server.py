"""DumpViewer orchestrator and the FastAPI application.

Wires supervisor -> classifier -> store + broadcaster, fulfils browser
requests published by the broadcaster, and exposes the HTTP API.

Usage:
    dump-viewer serve --port 3000 --dump-port 9912
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response

from ..config import load_config
from ..core.classifier import RecordClassifier
from ..core.store import RingStore
from ..core.stream_client import StreamClient
from ..core.supervisor import ProcessSupervisor
from ..types import (
    ConnectionState,
    DumpFilter,
    DumpHtmlEvent,
    DumpRecord,
    DumpViewerConfig,
    DumpViewerError,
    ServerStatus,
    SessionEvent,
    SessionEventKind,
    SupervisorErrorEvent,
    SupervisorStateEvent,
    utc_now,
)
from .assets import SymfonyAssets, register_asset_routes
from .broadcaster import Broadcaster
from .page import get_page_html

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DumpViewer: component wiring
# ---------------------------------------------------------------------------

class DumpViewer:
    """Owns the pipeline components and routes events between them."""

    def __init__(
        self,
        config: DumpViewerConfig | None = None,
        *,
        supervisor: ProcessSupervisor | None = None,
        classifier: RecordClassifier | None = None,
        store: RingStore | None = None,
        broadcaster: Broadcaster | None = None,
        stream_client: StreamClient | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.config = config or DumpViewerConfig()
        self._log = log or logger
        self.supervisor = supervisor or ProcessSupervisor(self.config.dump_server)
        self.classifier = classifier or RecordClassifier(self.config.classifier)
        self.store = store or RingStore(self.config.store.capacity)
        self.broadcaster = broadcaster or Broadcaster(send_timeout=self.config.web.send_timeout)
        if stream_client is None and self.config.client.attach:
            stream_client = StreamClient.from_config(self.config.client)
        self.stream_client = stream_client
        self.started_at = time.monotonic()

        self.supervisor.on_dump_record(self._on_dump_html)
        self.supervisor.on_state_change(self._on_supervisor_state)
        self.supervisor.on_error(self._on_supervisor_error)
        self.broadcaster.add_listener(self._on_session_event)
        if self.stream_client is not None:
            self.stream_client.on_dump_record(self._on_dump_html)
            self.stream_client.on_state_change(self._on_stream_state)
            self.stream_client.on_error(self._on_stream_error)

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Start background components. A dump server failure leaves the UI up."""
        if self.config.dump_server.enabled:
            try:
                await self.supervisor.start()
            except DumpViewerError as e:
                self._log.error("Dump server not started: %s", e)
            self.supervisor.start_health_monitoring()
        self.broadcaster.start_heartbeat(self.config.web.heartbeat_interval)
        if self.stream_client is not None:
            self.stream_client.start()

    async def stop(self) -> None:
        if self.stream_client is not None:
            await self.stream_client.stop()
        await self.supervisor.stop()
        await self.broadcaster.close_all()

    # -- pipeline ---------------------------------------------------------

    async def ingest(self, html: str, context: Mapping | None = None) -> DumpRecord:
        """Classify, store, fan out one record, then push the new status."""
        record = self.classifier.classify(html, context)
        evicted = self.store.add(record)
        if evicted:
            self._log.debug("Store full, evicted %d oldest dump(s)", len(evicted))
        await self.broadcaster.broadcast_dump(record)
        await self.broadcast_status()
        return record

    async def clear(self) -> int:
        count = self.store.clear()
        self._log.info("Cleared %d dump(s)", count)
        await self.broadcaster.broadcast_clear()
        await self.broadcast_status()
        return count

    def status(self) -> ServerStatus:
        return ServerStatus(
            dump_server_running=self.supervisor.is_running(),
            dump_server_port=self.supervisor.get_port(),
            web_server_port=self.config.web.port,
            connected_clients=self.broadcaster.connected_count(),
            tcp_client_connected=(
                self.stream_client.is_connected() if self.stream_client else False
            ),
            total_dumps=len(self.store),
        )

    async def broadcast_status(self) -> None:
        await self.broadcaster.broadcast_status(self.status())

    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    def stats(self) -> dict:
        return {
            "store": self.store.get_stats().to_dict(),
            "memory": self.store.memory_usage(),
            "broadcaster": self.broadcaster.stats(),
            "supervisor": self.supervisor.stats(),
            "classifier": self.classifier.stats(),
            "streamClient": self.stream_client.stats() if self.stream_client else None,
            "uptime": round(self.uptime(), 3),
        }

    # -- event handlers ---------------------------------------------------

    async def _on_dump_html(self, event: DumpHtmlEvent) -> None:
        await self.ingest(event.html)

    async def _on_supervisor_state(self, event: SupervisorStateEvent) -> None:
        self._log.debug("Dump server %s -> %s", event.old.value, event.new.value)
        await self.broadcast_status()

    async def _on_supervisor_error(self, event: SupervisorErrorEvent) -> None:
        await self.broadcaster.broadcast_error(f"Dump server error: {event.error}")

    async def _on_stream_state(self, state: ConnectionState) -> None:
        await self.broadcast_status()

    async def _on_stream_error(self, error: Exception) -> None:
        await self.broadcaster.broadcast_error(str(error))

    async def _on_session_event(self, event: SessionEvent) -> None:
        kind, sid = event.kind, event.session_id
        if kind is SessionEventKind.CONNECTED:
            records = self.store.get_all()
            if records:
                await self.broadcaster.send_dumps(sid, records)
            await self.broadcast_status()
        elif kind is SessionEventKind.DISCONNECTED:
            await self.broadcast_status()
        elif kind is SessionEventKind.REQUEST_STATUS:
            await self.broadcaster.send(sid, "status", self.status().to_dict())
        elif kind in (SessionEventKind.REQUEST_DUMPS, SessionEventKind.FILTER_DUMPS):
            try:
                criteria = DumpFilter.from_mapping(event.payload) if event.payload else None
            except ValueError as e:
                await self.broadcaster.send(sid, "error", {"message": f"Invalid filter: {e}"})
                return
            await self.broadcaster.send_dumps(sid, self.store.get_filtered(criteria))
        elif kind is SessionEventKind.CLEAR_DUMPS:
            await self.clear()


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

def create_app(
    config: DumpViewerConfig | None = None,
    *,
    viewer: DumpViewer | None = None,
    manage_lifecycle: bool = True,
) -> FastAPI:
    """Create the dump viewer application.

    Args:
        config: Loaded config; discovered from disk when omitted.
        viewer: Reuse an existing DumpViewer (tests, embedding).
        manage_lifecycle: Start/stop the viewer's components in ``lifespan``.
    """
    if viewer is None:
        viewer = DumpViewer(config or load_config())
    config = viewer.config

    assets = SymfonyAssets(config.dump_server.vendor_path)
    assets.discover()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        if manage_lifecycle:
            await viewer.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await viewer.stop()

    app = FastAPI(title="Symfony Dump Viewer", lifespan=lifespan)
    app.state.viewer = viewer

    if config.web.cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            {"error": "Internal server error", "message": str(exc)}, status_code=500,
        )

    register_asset_routes(app, assets)

    @app.get("/")
    async def index():
        return HTMLResponse(get_page_html())

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": utc_now().isoformat(),
            "uptime": round(viewer.uptime(), 3),
        }

    # -----------------------------------------------------------------------
    # Dumps
    # -----------------------------------------------------------------------

    @app.get("/api/dumps")
    async def list_dumps(request: Request):
        try:
            criteria = DumpFilter.from_mapping(dict(request.query_params))
        except ValueError as e:
            return JSONResponse({"error": f"Invalid filter: {e}"}, status_code=400)
        records = viewer.store.get_filtered(criteria)
        return {
            "dumps": [r.to_dict() for r in records],
            "total": len(records),
            "filter": criteria.to_dict(),
        }

    @app.get("/api/dumps/{dump_id}")
    async def get_dump(dump_id: str):
        record = viewer.store.get_by_id(dump_id)
        if record is None:
            return JSONResponse({"error": "Dump not found"}, status_code=404)
        return record.to_dict()

    @app.delete("/api/dumps")
    async def clear_dumps():
        cleared = await viewer.clear()
        return {"success": True, "cleared": cleared}

    @app.get("/api/export")
    async def export_dumps(request: Request):
        try:
            criteria = DumpFilter.from_mapping(dict(request.query_params))
        except ValueError as e:
            return JSONResponse({"error": f"Invalid filter: {e}"}, status_code=400)
        filename = f"dumps-{int(time.time() * 1000)}.json"
        return Response(
            viewer.store.export_json(criteria),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/import")
    async def import_dumps(request: Request):
        body = (await request.body()).decode("utf-8", errors="replace")
        try:
            imported = viewer.store.import_json(body)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        logger.info("Imported %d dump(s)", imported)
        await viewer.broadcaster.broadcast("dumps", [r.to_dict() for r in viewer.store.get_all()])
        await viewer.broadcast_status()
        return {"imported": imported, "total": len(viewer.store)}

    # -----------------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------------

    @app.get("/api/stats")
    async def stats():
        return viewer.stats()

    @app.get("/api/status")
    async def status():
        return viewer.status().to_dict()

    @app.get("/api/helper")
    async def helper():
        path = viewer.supervisor.get_helper_path()
        return {
            "path": str(path),
            "port": viewer.supervisor.get_port(),
            "snippet": f"require_once '{path}';",
        }

    @app.post("/api/stream/retry")
    async def retry_stream():
        client = viewer.stream_client
        if client is None:
            return JSONResponse({"error": "No stream client configured"}, status_code=404)
        logger.info("Manual retry of stream %s:%d (was %s)", client.host, client.port, client.state.value)
        client.retry()
        return {"success": True, "address": f"{client.host}:{client.port}"}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await viewer.broadcaster.serve(websocket)

    return app
