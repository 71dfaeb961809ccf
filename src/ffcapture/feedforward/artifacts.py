from __future__ import annotations

from pathlib import Path

RESULTS_FILE_NAME = "results.json"
REPORT_FILE_NAME = "report.md"


def ensure_new_run_dir(out_dir: Path) -> None:
    """Raise FileExistsError if out_dir already holds a results file (prevents overwrites)."""
    if (out_dir / RESULTS_FILE_NAME).exists():
        raise FileExistsError(f"Refusing to overwrite existing run in: {out_dir}")


def create_run_dir(out_dir: Path) -> None:
    ensure_new_run_dir(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
