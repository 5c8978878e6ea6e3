"""
containeragents/remote/credentials.py
─────────────────────────────────────
Credential lookup.

Credential storage belongs to the host scheduler. The provisioner only needs
`lookup(credential_id) → Credential`, used to authenticate against the
platform, to fill registry pull secrets and Azure file volume keys, and to
open the pull-style transport. StaticCredentialStore is the in-process
implementation used for configuration files and tests.
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Protocol

from containeragents.shared.models import Credential


class CredentialNotFoundError(Exception):
    """
    Raised when a referenced credential id is unknown.

    Attributes:
        reason: Human-readable explanation naming the missing id.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class CredentialStore(Protocol):
    def lookup(self, credential_id: str) -> Credential:
        ...


class StaticCredentialStore:
    """Dictionary-backed CredentialStore."""

    def __init__(self, credentials: Optional[Iterable[Credential]] = None) -> None:
        self._credentials: Dict[str, Credential] = {}
        for credential in credentials or ():
            self.add(credential)

    def add(self, credential: Credential) -> None:
        self._credentials[credential.credential_id] = credential

    def lookup(self, credential_id: str) -> Credential:
        try:
            return self._credentials[credential_id]
        except KeyError:
            raise CredentialNotFoundError(
                f"No credential with id {credential_id!r}"
            ) from None

    def __contains__(self, credential_id: object) -> bool:
        return credential_id in self._credentials
