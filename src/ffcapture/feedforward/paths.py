from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path


def find_repo_root() -> Path | None:
    """Return the nearest ancestor of this file holding `pyproject.toml`, if any.

    Installed (non-editable) copies have no such ancestor.
    """
    start = Path(__file__).resolve()
    for parent in start.parents:
        if (parent / "pyproject.toml").is_file():
            return parent
    return None


def default_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%SZ")


def sanitize_run_id(run_id: str) -> str:
    """Make run_id filesystem-safe and non-empty."""
    s = run_id.strip()
    if not s:
        raise ValueError("run_id must be non-empty")
    s = re.sub(r"[^A-Za-z0-9_.-]+", "-", s)
    s = s.strip("-")
    if not s:
        raise ValueError("run_id must contain at least one alphanumeric character after sanitization")
    return s


def default_out_dir(*, run_id: str, root: Path | None = None) -> Path:
    base = Path.cwd() if root is None else root
    return (base / "tmp" / "ffcapture" / sanitize_run_id(run_id)).resolve()
