"""
containeragents/remote/connection.py
────────────────────────────────────
CloudConnection: one lazily created remote client per configured cloud.

Platform clients are expensive (TLS sessions, token acquisition) and safe to
share between threads, so every provisioning task and every reclamation sweep
for a cloud reuses a single client. It is created on first use with
double-checked locking:

    if self._client is None:            # fast path, no lock
        with self._lock:
            if self._client is None:    # re-check under the lock
                self._client = factory(cloud)

and never reassigned afterwards (until close()).

Consumers never hold the client directly. They lease it:

    with connection.lease() as client:
        client.create(spec)

The lease counter is decremented on every exit path, so polling loops and
creation calls cannot leak checkouts when they raise.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from containeragents.remote.base import RemoteResourceClient
from containeragents.shared.models import CloudConfig

logger = logging.getLogger(__name__)


ClientFactory = Callable[[CloudConfig], RemoteResourceClient]


class ConnectionClosedError(Exception):
    """
    Raised when leasing a connection that has been closed.

    Attributes:
        reason: Human-readable explanation naming the cloud.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class CloudConnection:
    """
    Lazily created, shared RemoteResourceClient for one cloud.

    Args:
        cloud:   The cloud this connection serves.
        factory: Builds the client on first lease.
    """

    def __init__(self, cloud: CloudConfig, factory: ClientFactory) -> None:
        self.cloud = cloud
        self._factory = factory
        self._client: Optional[RemoteResourceClient] = None
        self._lock = threading.Lock()
        self._leases = 0
        self._closed = False

    @property
    def active_leases(self) -> int:
        return self._leases

    @property
    def initialized(self) -> bool:
        return self._client is not None

    def _get_client(self) -> RemoteResourceClient:
        client = self._client
        if client is None:
            with self._lock:
                if self._closed:
                    raise ConnectionClosedError(
                        f"Connection for cloud {self.cloud.name!r} is closed"
                    )
                if self._client is None:
                    logger.info(
                        "Creating %s client for cloud %s",
                        self.cloud.kind.value, self.cloud.name,
                    )
                    self._client = self._factory(self.cloud)
                client = self._client
        return client

    @contextmanager
    def lease(self) -> Iterator[RemoteResourceClient]:
        """Check out the shared client for the duration of a `with` block."""
        if self._closed:
            raise ConnectionClosedError(
                f"Connection for cloud {self.cloud.name!r} is closed"
            )
        client = self._get_client()
        with self._lock:
            self._leases += 1
        try:
            yield client
        finally:
            with self._lock:
                self._leases -= 1

    def close(self) -> None:
        with self._lock:
            self._closed = True
            client, self._client = self._client, None
            leases = self._leases
        if leases:
            logger.warning(
                "Closing connection for cloud %s with %d active leases",
                self.cloud.name, leases,
            )
        if client is not None:
            client.close()
