"""Tests for dump server port negotiation, using real sockets."""

from __future__ import annotations

import socket

import pytest

from dump_viewer.core.ports import find_available_port, is_port_available
from dump_viewer.types import PortUnavailableError


def _free_base(span: int = 3) -> int:
    """A port whose next ``span`` neighbours are currently free."""
    for _ in range(50):
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            base = s.getsockname()[1]
        if base + span < 65535 and all(is_port_available(base + i) for i in range(span)):
            return base
    pytest.skip("could not find a free port range")


def _occupy(port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", port))
    sock.listen(1)
    return sock


class TestIsPortAvailable:
    def test_free_port(self):
        assert is_port_available(_free_base(1)) is True

    def test_taken_port(self):
        base = _free_base(1)
        with _occupy(base):
            assert is_port_available(base) is False


class TestFindAvailablePort:
    def test_preferred_when_free(self):
        base = _free_base()
        assert find_available_port(base, attempts=3) == base

    def test_falls_through_taken_ports(self):
        base = _free_base()
        with _occupy(base), _occupy(base + 1):
            assert find_available_port(base, attempts=3) == base + 2

    def test_exhausted_range_raises(self):
        base = _free_base()
        with _occupy(base), _occupy(base + 1):
            with pytest.raises(PortUnavailableError) as exc_info:
                find_available_port(base, attempts=2)
        err = exc_info.value
        assert err.start_port == base
        assert err.end_port == base + 1
        assert f"{base}-{base + 1}" in str(err)

    def test_default_range_fallback(self):
        if not all(is_port_available(p) for p in range(9912, 9916)):
            pytest.skip("9912-9915 not free on this host")
        with _occupy(9912), _occupy(9913), _occupy(9914):
            assert find_available_port(9912) == 9915
