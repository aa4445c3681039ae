"""All dataclasses, enums, events and errors for dump-viewer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal


# ---------------------------------------------------------------------------
# Dump records
# ---------------------------------------------------------------------------

class DumpCategory(str, Enum):
    """Coarse record tag used for UI filtering. Values are the wire tags."""
    DUMP = "dumps"
    QUERY = "queries"
    LOG = "logs"
    REQUEST = "requests"
    VIEW = "views"
    JOB = "jobs"

    @classmethod
    def parse(cls, value: str | DumpCategory) -> DumpCategory:
        """Accept either the wire tag ("queries") or the member name ("query")."""
        if isinstance(value, DumpCategory):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if text in (member.value, member.name.lower()):
                return member
        raise ValueError(f"Unknown dump category: {value!r}")


@dataclass(frozen=True)
class DumpSource:
    """Best-effort provenance of a dump. Never null on a record."""
    file: str = "unknown"
    line: int = 0
    function: str | None = None
    class_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "file": self.file,
            "line": self.line,
            "function": self.function,
            "class": self.class_name,
        }


@dataclass(frozen=True)
class DumpMetadata:
    size: int = 0
    has_expandable_content: bool = False
    data_type: str = "unknown"
    source_context: str | None = None

    def to_dict(self) -> dict:
        return {
            "size": self.size,
            "hasExpandableContent": self.has_expandable_content,
            "dataType": self.data_type,
            "sourceContext": self.source_context,
        }


@dataclass(frozen=True)
class DumpRecord:
    """One classified unit of debug output. Immutable once built."""
    id: str
    timestamp: datetime
    source: DumpSource
    category: DumpCategory
    content: str
    raw_data: str | None = None
    metadata: DumpMetadata | None = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.to_dict(),
            "category": self.category.value,
            "content": self.content,
            "rawData": self.raw_data,
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata.to_dict()
        return data

    @classmethod
    def from_dict(cls, raw: dict) -> DumpRecord:
        """Rebuild a record from its ``to_dict()`` shape. Raises ValueError if invalid."""
        if not isinstance(raw, dict):
            raise ValueError("record must be an object")
        rid = raw.get("id")
        content = raw.get("content")
        source = raw.get("source")
        if not isinstance(rid, str) or not rid:
            raise ValueError("record id must be a non-empty string")
        if not isinstance(content, str):
            raise ValueError("record content must be a string")
        if not isinstance(source, dict) or not isinstance(source.get("file"), str):
            raise ValueError("record source.file must be a string")
        line = source.get("line")
        if not isinstance(line, int) or isinstance(line, bool) or line < 0:
            raise ValueError("record source.line must be a non-negative integer")
        ts_raw = raw.get("timestamp")
        if not ts_raw:
            raise ValueError("record timestamp is required")
        timestamp = parse_timestamp(str(ts_raw))
        category = DumpCategory.parse(raw.get("category") or DumpCategory.DUMP)
        return cls(
            id=rid,
            timestamp=timestamp,
            source=DumpSource(
                file=source["file"],
                line=line,
                function=source.get("function"),
                class_name=source.get("class"),
            ),
            category=category,
            content=content,
            raw_data=raw.get("rawData"),
        )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(text: str) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed). Naive values are UTC."""
    value = text.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class DumpFilter:
    """Filter criteria for the ring store. All set criteria are AND-combined."""
    category: DumpCategory | Literal["all"] | None = None
    search: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    file: str | None = None

    @classmethod
    def from_mapping(cls, raw: dict | None) -> DumpFilter:
        """Build a filter from query params or a WebSocket payload.

        Accepts both the short wire keys (``search``, ``file``, ``from``, ``to``)
        and the long ones (``searchTerm``, ``sourceFile``, ``dateFrom``, ``dateTo``).
        Raises ValueError on an unknown category or unparseable date.
        """
        raw = raw or {}
        category_raw = raw.get("category")
        category: DumpCategory | Literal["all"] | None = None
        if category_raw:
            category = "all" if category_raw == "all" else DumpCategory.parse(category_raw)

        def _date(*keys: str) -> datetime | None:
            for key in keys:
                value = raw.get(key)
                if value:
                    return parse_timestamp(str(value))
            return None

        return cls(
            category=category,
            search=raw.get("search") or raw.get("searchTerm") or None,
            date_from=_date("from", "dateFrom"),
            date_to=_date("to", "dateTo"),
            file=raw.get("file") or raw.get("sourceFile") or None,
        )

    def to_dict(self) -> dict:
        data: dict[str, Any] = {}
        if self.category is not None:
            data["category"] = (
                self.category.value if isinstance(self.category, DumpCategory) else self.category
            )
        if self.search:
            data["search"] = self.search
        if self.file:
            data["file"] = self.file
        if self.date_from:
            data["from"] = self.date_from.isoformat()
        if self.date_to:
            data["to"] = self.date_to.isoformat()
        return data


@dataclass
class DumpStats:
    total: int = 0
    by_category: dict[DumpCategory, int] = field(
        default_factory=lambda: {c: 0 for c in DumpCategory}
    )
    total_size: int = 0
    oldest: datetime | None = None
    newest: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "byCategory": {c.value: n for c, n in self.by_category.items()},
            "totalSize": self.total_size,
            "oldestDump": self.oldest.isoformat() if self.oldest else None,
            "newestDump": self.newest.isoformat() if self.newest else None,
        }


@dataclass
class ServerStatus:
    dump_server_running: bool = False
    dump_server_port: int = 0
    web_server_port: int = 0
    connected_clients: int = 0
    tcp_client_connected: bool = False
    total_dumps: int = 0

    def to_dict(self) -> dict:
        return {
            "dumpServerRunning": self.dump_server_running,
            "dumpServerPort": self.dump_server_port,
            "webServerPort": self.web_server_port,
            "connectedClients": self.connected_clients,
            "tcpClientConnected": self.tcp_client_connected,
            "totalDumps": self.total_dumps,
        }


# ---------------------------------------------------------------------------
# Lifecycle states & events
# ---------------------------------------------------------------------------

class SupervisorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


class ConnectionState(str, Enum):
    """State of the pull-style stream client."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class DumpHtmlEvent:
    """One complete framed HTML record from the dump stream."""
    html: str


@dataclass(frozen=True)
class SupervisorStateEvent:
    old: SupervisorState
    new: SupervisorState
    detail: str = ""


@dataclass(frozen=True)
class SupervisorErrorEvent:
    error: BaseException


class SessionEventKind(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    REQUEST_STATUS = "request_status"
    REQUEST_DUMPS = "request_dumps"
    CLEAR_DUMPS = "clear_dumps"
    FILTER_DUMPS = "filter_dumps"


@dataclass(frozen=True)
class SessionEvent:
    kind: SessionEventKind
    session_id: str
    payload: dict | None = None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DumpViewerError(Exception):
    """Base class for dump-viewer failures."""


class DependencyError(DumpViewerError):
    """A required toolchain or library is missing, or installing it failed."""
    def __init__(self, message: str, searched_paths: list[str] | None = None):
        super().__init__(message)
        self.searched_paths = list(searched_paths or [])


class PortUnavailableError(DumpViewerError):
    def __init__(self, start_port: int, end_port: int):
        super().__init__(f"No available ports found in range {start_port}-{end_port}")
        self.start_port = start_port
        self.end_port = end_port


class SupervisorError(DumpViewerError):
    """The dump server subprocess could not be spawned."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class DumpServerConfig:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9912
    port_attempts: int = 10
    php_binary: str = "php"
    composer_binary: str = "composer"
    vendor_path: str | None = None
    auto_install: bool = True
    kill_stale: bool = True
    kill_settle_delay: float = 0.5
    settle_delay: float = 1.0
    restart_delay: float = 2.0
    health_interval: float = 5.0
    stop_timeout: float = 5.0


@dataclass
class WebConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    cors: bool = True
    auto_open: bool = True
    heartbeat_interval: float = 30.0
    send_timeout: float = 5.0


@dataclass
class StoreConfig:
    capacity: int = 1000


@dataclass
class ClassifierConfig:
    categorize: bool = False
    category_keywords: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class ClientConfig:
    """Pull-style stream client. Disabled unless ``attach`` is set (``host:port``)."""
    attach: str | None = None
    max_attempts: int = 10
    base_delay: float = 1.0
    max_delay: float = 30.0
    connect_timeout: float = 5.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class DumpViewerConfig:
    version: str = "1.0"
    dump_server: DumpServerConfig = field(default_factory=DumpServerConfig)
    web: WebConfig = field(default_factory=WebConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
