from __future__ import annotations

import os
from pathlib import Path

APP_NAME = "parascribe"
RESULT_FILENAME = "result.json"


def _ensure(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def app_data_dir() -> Path:
    """``APP_DATA_DIR`` if set, else ``$XDG_DATA_HOME/parascribe`` or ``~/.local/share/parascribe``."""
    configured = os.environ.get("APP_DATA_DIR", "").strip()
    if configured:
        return _ensure(Path(configured).expanduser())
    xdg = os.environ.get("XDG_DATA_HOME", "").strip()
    root = Path(xdg).expanduser() if xdg else Path.home() / ".local" / "share"
    return _ensure(root / APP_NAME)


def job_dir(job_id: str) -> Path:
    return _ensure(app_data_dir() / "jobs" / job_id)


def segments_dir(job_id: str) -> Path:
    return _ensure(job_dir(job_id) / "segments")


def result_path(job_id: str) -> Path:
    return job_dir(job_id) / RESULT_FILENAME
