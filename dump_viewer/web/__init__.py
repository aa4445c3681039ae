from .server import create_app, DumpViewer
from .broadcaster import Broadcaster, ConnectedSession
from .assets import SymfonyAssets

__all__ = [
    "create_app",
    "DumpViewer",
    "Broadcaster",
    "ConnectedSession",
    "SymfonyAssets",
]
