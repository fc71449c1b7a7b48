"""TOML configuration loading and config file discovery."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass
from pathlib import Path

CONFIG_FILENAME = "bq_transfer.toml"

DEFAULT_POLL_INTERVAL = 3.0


@dataclass(frozen=True)
class ProjectConfig:
    """GCP project configuration."""

    id: str
    credentials: str | None = None


@dataclass(frozen=True)
class TransferConfig:
    """Top-level configuration parsed from ``bq_transfer.toml``."""

    project: ProjectConfig
    proxy: str | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    timeout: float | None = None


def load_config(path: Path) -> TransferConfig:
    """Read and parse a ``bq_transfer.toml`` file.

    Args:
        path: Absolute or relative path to the TOML config file.

    Returns:
        Parsed ``TransferConfig``.

    Raises:
        FileNotFoundError: If *path* does not exist.
        KeyError: If required keys are missing from the TOML.
    """
    with path.open("rb") as fh:
        raw = tomllib.load(fh)

    project_raw = raw["project"]
    project = ProjectConfig(
        id=project_raw["id"],
        credentials=project_raw.get("credentials"),
    )

    transport_raw = raw.get("transport", {})
    load_raw = raw.get("load", {})
    timeout = load_raw.get("timeout")
    return TransferConfig(
        project=project,
        proxy=transport_raw.get("proxy") or None,
        poll_interval=float(load_raw.get("poll_interval", DEFAULT_POLL_INTERVAL)),
        timeout=float(timeout) if timeout is not None else None,
    )


def discover_config(start: Path | None = None) -> Path:
    """Walk from *start* upward looking for ``bq_transfer.toml``.

    Args:
        start: Directory to begin the search.  Defaults to the current
            working directory.

    Returns:
        Absolute path to the discovered config file.

    Raises:
        FileNotFoundError: If no ``bq_transfer.toml`` is found between
            *start* and the filesystem root.
    """
    current = (start or Path.cwd()).resolve()

    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate

        parent = current.parent
        if parent == current:
            break
        current = parent

    msg = f"{CONFIG_FILENAME} not found (searched from {start or Path.cwd()})"
    raise FileNotFoundError(msg)


def resolve_credentials(config: TransferConfig, config_path: Path) -> Path | None:
    """Resolve the service-account key path from the config.

    Relative paths are taken against the config file's parent directory.

    Args:
        config: Parsed transfer configuration.
        config_path: Path to the ``bq_transfer.toml`` that was loaded.

    Returns:
        Absolute key path, or ``None`` when the config does not set one.
    """
    if not config.project.credentials:
        return None
    base = config_path.resolve().parent
    return (base / config.project.credentials).resolve()
