from __future__ import annotations

import os
import re
import shutil
import subprocess  # nosec B404 - git remote lookup
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, cast

import yaml

from .errors import ConfigurationError
from .issue_store import RELAY_DIR, write_atomic
from .models import format_timestamp, parse_timestamp
from .sync_engine import SYNC_DIRECTIONS

CONFIG_FILE = "config.yaml"

_SSH_REMOTE = re.compile(r"^git@github\.com:([^/]+/[^/]+?)(?:\.git)?/?$")
_HTTPS_REMOTE = re.compile(r"^(?:https|ssh)://(?:[^@/]+@)?github\.com/([^/]+/[^/]+?)(?:\.git)?/?$")
_REPO_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


@dataclass
class RelayConfig:
    project_dir: Path
    repository: str | None = None
    sync_direction: str = "bidirectional"
    auto_sync: bool = False
    sync_interval: int = 0  # minutes, 0 = disabled
    last_synced_at: datetime | None = None
    closed_lookback_hours: int = 24
    # Logging configuration
    logging_json_enabled: bool = False
    logging_level: str = "INFO"
    # Concurrency configuration
    max_workers: int = 1

    @property
    def path(self) -> Path:
        return config_path(self.project_dir)


def config_path(project_dir: str | Path) -> Path:
    return Path(project_dir) / RELAY_DIR / CONFIG_FILE


def _resolve_env_var(value: Any) -> Any:
    """Resolve ``$NAME`` indirection; fall back to the literal when unset."""
    if isinstance(value, str) and value.startswith("$"):
        return os.getenv(value[1:], value)
    return value


def _validate_repository(repo: Any) -> str | None:
    if repo is None or repo == "":
        return None
    text = str(repo).strip()
    if not _REPO_PATTERN.match(text):
        raise ConfigurationError(f"repository must look like owner/name, got {text!r}")
    return text


def _int_setting(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}") from exc


def load_config(project_dir: str | Path) -> RelayConfig:
    """Load ``<project>/.relay/config.yaml``; defaults when the file is absent."""
    project = Path(project_dir)
    path = config_path(project)
    raw: dict[str, Any] = {}
    if path.exists():
        try:
            raw = cast(dict[str, Any], yaml.safe_load(path.read_text(encoding="utf-8")) or {})
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"invalid YAML in {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{path} must contain a mapping")
    gh = cast(dict[str, Any], raw.get("github", {}) or {})
    logging_config = cast(dict[str, Any], raw.get("logging", {}) or {})
    concurrency_config = cast(dict[str, Any], raw.get("concurrency", {}) or {})

    repository = os.environ.get("RELAYSYNC_REPOSITORY") or _resolve_env_var(gh.get("repository"))
    direction = str(gh.get("sync_direction", "bidirectional") or "bidirectional").lower()
    if direction not in SYNC_DIRECTIONS:
        raise ConfigurationError(
            f"invalid sync_direction {direction!r}; expected one of {', '.join(SYNC_DIRECTIONS)}"
        )
    try:
        last_synced = parse_timestamp(gh.get("last_synced_at"))
    except ValueError as exc:
        raise ConfigurationError(f"invalid last_synced_at: {exc}") from exc

    return RelayConfig(
        project_dir=project,
        repository=_validate_repository(repository),
        sync_direction=direction,
        auto_sync=bool(gh.get("auto_sync", False)),
        sync_interval=max(0, _int_setting(gh, "sync_interval", 0)),
        last_synced_at=last_synced,
        closed_lookback_hours=_int_setting(gh, "closed_lookback_hours", 24),
        logging_json_enabled=bool(logging_config.get("json_enabled", False)),
        logging_level=str(logging_config.get("level", "INFO")),
        max_workers=max(1, _int_setting(concurrency_config, "max_workers", 1)),
    )


def save_config(cfg: RelayConfig) -> Path:
    """Write the config atomically (temp file + rename in the same directory)."""
    payload = {
        "github": {
            "repository": cfg.repository,
            "sync_direction": cfg.sync_direction,
            "auto_sync": cfg.auto_sync,
            "sync_interval": cfg.sync_interval,
            "last_synced_at": format_timestamp(cfg.last_synced_at),
            "closed_lookback_hours": cfg.closed_lookback_hours,
        },
        "logging": {"json_enabled": cfg.logging_json_enabled, "level": cfg.logging_level},
        "concurrency": {"max_workers": cfg.max_workers},
    }
    path = cfg.path
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_atomic(path, yaml.safe_dump(payload, sort_keys=False))
    except OSError as exc:
        raise ConfigurationError(f"failed to write {path}: {exc}") from exc
    return path


def parse_remote_url(remote_url: str) -> str | None:
    """Extract ``owner/name`` from an SSH or HTTPS GitHub remote URL."""
    url = remote_url.strip()
    for pattern in (_SSH_REMOTE, _HTTPS_REMOTE):
        match = pattern.match(url)
        if match:
            return match.group(1)
    return None


def detect_repository(project_dir: str | Path) -> str:
    """Detect the repository from ``git remote get-url origin``."""
    git = shutil.which("git")
    if not git:
        raise ConfigurationError("git executable not found; set github.repository explicitly")
    try:
        output = subprocess.check_output(  # nosec B603 - resolved executable, constant args
            [git, "remote", "get-url", "origin"],
            cwd=str(project_dir),
            text=True,
            stderr=subprocess.STDOUT,
        )
    except subprocess.CalledProcessError as exc:
        raise ConfigurationError(f"failed to get git remote: {exc.output.strip()}") from exc
    repo = parse_remote_url(output)
    if repo is None:
        raise ConfigurationError(f"could not parse GitHub repository from remote URL: {output.strip()}")
    return repo


__all__ = [
    "RelayConfig",
    "CONFIG_FILE",
    "config_path",
    "load_config",
    "save_config",
    "parse_remote_url",
    "detect_repository",
]
