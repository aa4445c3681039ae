"""dump-viewer: live browser viewer for Symfony VarDumper output."""

from .config import load_config
from .types import (
    DumpCategory,
    DumpFilter,
    DumpRecord,
    DumpSource,
    DumpViewerConfig,
    ServerStatus,
)
from .web.server import DumpViewer, create_app

__version__ = "0.1.0"

__all__ = [
    "DumpViewer",
    "create_app",
    "load_config",
    "DumpCategory",
    "DumpFilter",
    "DumpRecord",
    "DumpSource",
    "DumpViewerConfig",
    "ServerStatus",
]
