from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/metalprov"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for metalprov logs and artifacts.

    The location can be overridden via the ``METALPROV_BASE_PATH`` environment
    variable.  Rescue systems usually run from a tmpfs, so anything written
    here is gone after reboot; point it at persistent storage when the run
    records must survive.
    """

    override = os.environ.get("METALPROV_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def artifacts_dir() -> str:
    return str(Path(base_path()) / "artifacts")


def presets_dir() -> str:
    return str(Path(__file__).resolve().parent / "presets")
