"""
tests/test_connection.py
────────────────────────
CloudConnection: lazy client creation, leases and close.

Test groups:
    Group 1 — Lazy creation (3 tests)
    Group 2 — Leases and close (3 tests)
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from conftest import make_cloud
from containeragents.remote.connection import CloudConnection, ConnectionClosedError
from containeragents.remote.memory import SimulatedRemoteClient


@pytest.fixture
def factory() -> MagicMock:
    return MagicMock(side_effect=lambda cloud: SimulatedRemoteClient())


@pytest.fixture
def connection(factory) -> CloudConnection:
    return CloudConnection(make_cloud(), factory)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — Lazy creation
# ─────────────────────────────────────────────────────────────────────────────

class TestLazyCreation:

    def test_client_created_on_first_lease(self, connection, factory):
        assert not connection.initialized
        with connection.lease():
            pass
        assert connection.initialized
        factory.assert_called_once()

    def test_client_is_shared(self, connection, factory):
        with connection.lease() as first, connection.lease() as second:
            assert first is second
        assert factory.call_count == 1

    def test_concurrent_first_leases_create_one_client(self, connection, factory):
        barrier = threading.Barrier(8)
        clients = []

        def lease():
            barrier.wait()
            with connection.lease() as client:
                clients.append(client)

        threads = [threading.Thread(target=lease) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert factory.call_count == 1
        assert len({id(c) for c in clients}) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Leases and close
# ─────────────────────────────────────────────────────────────────────────────

class TestLeases:

    def test_lease_count(self, connection):
        with connection.lease():
            assert connection.active_leases == 1
            with connection.lease():
                assert connection.active_leases == 2
        assert connection.active_leases == 0

    def test_lease_released_on_error(self, connection):
        with pytest.raises(RuntimeError):
            with connection.lease():
                raise RuntimeError("boom")
        assert connection.active_leases == 0

    def test_closed_connection_refuses_leases(self, connection):
        with connection.lease() as client:
            pass
        connection.close()

        assert client.closed
        with pytest.raises(ConnectionClosedError):
            with connection.lease():
                pass
