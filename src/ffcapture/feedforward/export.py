from __future__ import annotations

import json
import platform
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import torch
from jsonschema import Draft202012Validator

from .config import CompareConfig
from .records import Comparison, PrerequisiteCheck, RunStatus, VariantRecord

SCHEMA_VERSION = "0.1.0"


def now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def default_results_schema_path() -> Path:
    return Path(__file__).resolve().parent / "schemas" / "results.schema.json"


def validate_results_schema(results: dict[str, Any], *, schema_path: Path | None = None) -> None:
    schema_path = default_results_schema_path() if schema_path is None else schema_path
    schema = json.loads(schema_path.read_text())
    Draft202012Validator(schema).validate(results)


def load_results(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text())


def write_results(path: Path, results: dict[str, Any]) -> None:
    path.write_text(json.dumps(results, indent=2, sort_keys=True) + "\n")


def git_info(repo_root: Path) -> dict[str, Any]:
    def _run(cmd: list[str]) -> str:
        out = subprocess.check_output(cmd, cwd=repo_root, stderr=subprocess.DEVNULL)
        return out.decode().strip()

    try:
        branch = _run(["git", "rev-parse", "--abbrev-ref", "HEAD"])
        commit = _run(["git", "rev-parse", "HEAD"])
        dirty = bool(_run(["git", "status", "--porcelain=v1"]))
        return {"branch": branch, "commit": commit, "dirty": dirty}
    except Exception:
        return {"branch": "unknown", "commit": "unknown", "dirty": False}


def environment_info(device: torch.device) -> dict[str, Any]:
    device_name: str | None = None
    if device.type == "cuda" and torch.cuda.is_available():
        device_name = torch.cuda.get_device_name(device)
    return {
        "platform": {"os": platform.system().lower(), "arch": platform.machine()},
        "python": platform.python_version(),
        "torch": {"version": torch.__version__, "cuda": torch.version.cuda},
        "device": {"type": device.type, "name": device_name},
    }


def build_results(
    *,
    run_id: str,
    started_at: str,
    finished_at: str | None,
    status: RunStatus,
    failure_reason: str,
    git: dict[str, Any],
    environment: dict[str, Any],
    config: CompareConfig,
    artifacts_dir: Path,
    records: list[VariantRecord],
    comparison: Comparison | None,
    prerequisites: list[PrerequisiteCheck],
) -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "run": {
            "run_id": run_id,
            "started_at": started_at,
            "finished_at": finished_at,
            "status": status,
            "failure_reason": failure_reason,
            "git": git,
            "environment": environment,
            "settings": config.to_settings(),
            "artifacts_dir": str(artifacts_dir),
            "prerequisites": [c.to_dict() for c in prerequisites],
        },
        "records": [r.to_dict() for r in records],
        "comparison": comparison.to_dict() if comparison is not None else None,
    }
