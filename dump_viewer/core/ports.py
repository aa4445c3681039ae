"""Port negotiation for the dump server listener."""

from __future__ import annotations

import logging
import socket

from ..types import PortUnavailableError

logger = logging.getLogger(__name__)


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """True if a listener can bind *host:port* right now.

    The test socket is closed before returning, so the result is only a
    hint: another process can still take the port before the caller binds.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
            sock.listen(1)
        except OSError:
            return False
    return True


def find_available_port(
    preferred: int,
    attempts: int = 10,
    host: str = "127.0.0.1",
) -> int:
    """Return the first bindable port in ``preferred .. preferred+attempts-1``.

    Raises PortUnavailableError naming the scanned range when every port is taken.
    """
    last = preferred + max(attempts, 1) - 1
    for port in range(preferred, last + 1):
        if port > 65535:
            break
        if is_port_available(port, host):
            if port != preferred:
                logger.info("Port %d in use, using %d instead", preferred, port)
            return port
        logger.debug("Port %d on %s is taken", port, host)
    raise PortUnavailableError(preferred, last)
