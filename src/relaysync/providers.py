"""Remote Provider contract consumed by the sync engine.

Implementations raise ``RemoteAPIError`` on any network, auth or rate-limit
failure. Authentication is established outside the core; a provider may
expose ``is_authenticated`` so the engine can refuse to start early.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from .models import RemoteIssue


@runtime_checkable
class RemoteProvider(Protocol):
    def fetch_all(self, repository: str) -> list[RemoteIssue]: ...  # pragma: no cover

    def create(
        self, repository: str, title: str, body: str, labels: Sequence[str]
    ) -> RemoteIssue: ...  # pragma: no cover

    def update(
        self,
        repository: str,
        remote_id: int,
        title: str,
        body: str,
        state: str,
        labels: Sequence[str],
    ) -> None: ...  # pragma: no cover


@runtime_checkable
class AuthenticatedProvider(Protocol):
    def is_authenticated(self) -> bool: ...  # pragma: no cover


__all__ = ["RemoteProvider", "AuthenticatedProvider"]
