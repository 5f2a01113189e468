"""relaysync - local issue store with bidirectional GitHub sync.

High-level public API:

from relaysync import IssueStore, SyncEngine, build_provider, load_config

cfg = load_config(".")
store = IssueStore.for_project(".")
engine = SyncEngine(store, build_provider(cfg.repository), cfg.repository)
result = engine.sync(cfg.sync_direction)
print(result.summary_line())

The CLI (``relaysync``) is a thin layer over this library.
"""

from __future__ import annotations

from .config import RelayConfig, load_config, save_config
from .errors import (
    ConfigurationError,
    NotFoundError,
    PersistenceError,
    RelaySyncError,
    RemoteAPIError,
    ValidationError,
)
from .github_issues import GhCliClient, build_provider
from .github_rest import GitHubRestClient
from .issue_store import IssueStore
from .models import Issue, RemoteIssue, SyncResult, SyncStatus
from .providers import RemoteProvider
from .sync_engine import SyncEngine

# Version constant (keep in sync with pyproject)
__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "GhCliClient",
    "GitHubRestClient",
    "Issue",
    "IssueStore",
    "NotFoundError",
    "PersistenceError",
    "RelayConfig",
    "RelaySyncError",
    "RemoteAPIError",
    "RemoteIssue",
    "RemoteProvider",
    "SyncEngine",
    "SyncResult",
    "SyncStatus",
    "ValidationError",
    "build_provider",
    "load_config",
    "save_config",
    "__version__",
]
