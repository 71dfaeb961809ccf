"""
Device trace capture around a single evaluation.

This module provides:

- `start_capture(path)` / `stop_capture()`: one process-wide capture at a time,
  recorded with the PyTorch profiler and exported as a Chrome trace JSON
- `capture(path)`: the same pair as a context manager (stop is guaranteed)
- helpers for the on-disk layout `<capture_dir>/<case_id>/trace.json`
  plus `meta.json` and a short `README.md`

Captures are never nested: starting while another capture is active is an
error, as is stopping when nothing is active.
"""

from __future__ import annotations

import json
import platform
import re
import shutil
import subprocess
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import torch
from mdutils.mdutils import MdUtils  # type: ignore[import-untyped]
from torch.profiler import ProfilerActivity, profile

TRACE_FILE_NAME = "trace.json"

_active: tuple[profile, Path] | None = None


def _utc_now_iso() -> str:
    """Return the current UTC time in ISO-8601 format."""
    return datetime.now(timezone.utc).isoformat()


def _run_capture(cmd: list[str], *, cwd: Path | None = None) -> str | None:
    """Run a command and capture combined stdout/stderr as text."""
    try:
        out = subprocess.check_output(cmd, stderr=subprocess.STDOUT, cwd=cwd)
    except Exception:
        return None
    return out.decode(errors="replace").strip()


def _git_state(repo_root: Path) -> dict[str, Any] | None:
    """Return a best-effort git state snapshot (branch/commit/dirty)."""
    git = shutil.which("git")
    if git is None:
        return None
    commit = _run_capture([git, "rev-parse", "HEAD"], cwd=repo_root)
    branch = _run_capture([git, "rev-parse", "--abbrev-ref", "HEAD"], cwd=repo_root)
    dirty = _run_capture([git, "status", "--porcelain=v1"], cwd=repo_root)
    if not commit or not branch:
        return None
    return {"commit": commit, "branch": branch, "dirty": bool(dirty)}


def capture_available() -> bool:
    """True if the profiler backend (Kineto) is compiled into this torch build."""
    return bool(torch.autograd.kineto_available())


def capture_activities(device: torch.device | None = None) -> list[ProfilerActivity]:
    activities = [ProfilerActivity.CPU]
    if device is not None and device.type == "cuda" and torch.cuda.is_available():
        activities.append(ProfilerActivity.CUDA)
    return activities


def is_capturing() -> bool:
    return _active is not None


def start_capture(path: Path, *, device: torch.device | None = None) -> None:
    """Begin recording device and host activity; the trace is written to `path` on stop."""
    global _active
    if _active is not None:
        raise RuntimeError(f"A capture is already active (writing to {_active[1]}); captures cannot be nested")
    prof = profile(activities=capture_activities(device))
    prof.start()
    _active = (prof, path)


def stop_capture() -> Path:
    """Stop the active capture and export it. Returns the trace path."""
    global _active
    if _active is None:
        raise RuntimeError("stop_capture() called with no active capture")
    prof, path = _active
    _active = None
    prof.stop()
    path.parent.mkdir(parents=True, exist_ok=True)
    prof.export_chrome_trace(str(path))
    return path


@contextmanager
def capture(path: Path, *, device: torch.device | None = None) -> Iterator[Path]:
    start_capture(path, device=device)
    try:
        yield path
    finally:
        stop_capture()


_CASE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_case_id(case_id: str) -> None:
    """
    Validate a case identifier used in on-disk capture layout.

    Parameters
    ----------
    case_id:
        Short identifier used under `<capture_dir>/<case_id>/`.
        Allowed characters are `[A-Za-z0-9._-]` and it must start with an
        alphanumeric character.
    """
    if not _CASE_ID_RE.fullmatch(case_id):
        raise ValueError(
            f"Invalid case_id '{case_id}'. Expected /^[A-Za-z0-9][A-Za-z0-9._-]{{0,127}}$/."
        )


def captures_case_dir(capture_dir: Path, case_id: str) -> Path:
    """Return the directory used to store artifacts for a capture case."""
    validate_case_id(case_id)
    return capture_dir / case_id


def case_trace_path(capture_dir: Path, case_id: str) -> Path:
    return captures_case_dir(capture_dir, case_id) / TRACE_FILE_NAME


def write_capture_metadata(
    case_dir: Path,
    *,
    case_id: str,
    trace_path: Path,
    device: torch.device,
    label: str,
    repo_root: Path | None = None,
) -> Path:
    """Write `meta.json` and `README.md` next to a finished trace. Returns the meta path."""
    case_dir.mkdir(parents=True, exist_ok=True)
    meta = {
        "tool": "torch.profiler",
        "timestamp_utc": _utc_now_iso(),
        "case_id": case_id,
        "label": label,
        "device": str(device),
        "activities": [a.name for a in capture_activities(device)],
        "host": {"platform": platform.platform(), "machine": platform.machine()},
        "tool_versions": {"torch": torch.__version__, "cuda": torch.version.cuda},
        "git": _git_state(repo_root or Path.cwd()),
        "outputs": {"trace": str(trace_path)},
    }
    meta_path = case_dir / "meta.json"
    meta_path.write_text(json.dumps(meta, indent=2, sort_keys=True) + "\n")

    md = MdUtils(file_name=str(case_dir / "README"), title=f"Trace Capture ({case_id})")
    md.new_paragraph(f"This directory contains a single-evaluation trace for `{label}`.")
    md.new_header(level=1, title="Outputs")
    md.new_list(
        [
            f"`{trace_path.name}`: Chrome trace (open in Perfetto or chrome://tracing)",
            "`meta.json`: capture metadata",
        ]
    )
    md.create_md_file()
    return meta_path
