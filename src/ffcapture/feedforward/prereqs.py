from __future__ import annotations

import os
from pathlib import Path

import torch

from ..profiling import capture as trace_capture
from .config import CompareConfig, resolve_device
from .records import PrerequisiteCheck


def check_device_available(device: str) -> PrerequisiteCheck:
    try:
        dev = resolve_device(device)
    except RuntimeError as e:
        return PrerequisiteCheck(check_name="device_available", status="fail", details=str(e))

    if dev.type == "cuda" and not torch.cuda.is_available():
        return PrerequisiteCheck(
            check_name="device_available",
            status="fail",
            details="CUDA requested but torch.cuda.is_available() is False (use --device cpu or auto).",
        )
    if dev.type == "mps":
        mps = getattr(torch.backends, "mps", None)
        if mps is None or not mps.is_available():
            return PrerequisiteCheck(
                check_name="device_available",
                status="fail",
                details="MPS requested but not available on this host.",
            )
    return PrerequisiteCheck(check_name="device_available", status="pass", details=str(dev))


def check_capture_available() -> PrerequisiteCheck:
    """Optional: a missing profiler backend disables capture instead of failing the run."""
    if trace_capture.capture_available():
        return PrerequisiteCheck(check_name="capture_available", status="pass", required=False)
    return PrerequisiteCheck(
        check_name="capture_available",
        status="fail",
        details="torch was built without Kineto; traces will not be captured.",
        required=False,
    )


def check_out_dir_writable(out_dir: Path) -> PrerequisiteCheck:
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        test = out_dir / f".write_test_{os.getpid()}"
        test.write_text("ok")
        test.unlink()
        return PrerequisiteCheck(check_name="out_dir_writable", status="pass")
    except OSError as e:
        return PrerequisiteCheck(check_name="out_dir_writable", status="fail", details=str(e))


def check_quant_layout(*, dim: int, hidden_dim: int, group_size: int) -> PrerequisiteCheck:
    """Both projection widths must split evenly into quantization groups."""
    bad = [n for n in (dim, hidden_dim) if n % group_size != 0]
    if not bad:
        return PrerequisiteCheck(check_name="quant_layout", status="pass")
    return PrerequisiteCheck(
        check_name="quant_layout",
        status="fail",
        details=f"dim/hidden_dim {bad} not divisible by group_size={group_size}",
    )


def check_all(*, out_dir: Path, config: CompareConfig) -> list[PrerequisiteCheck]:
    checks = [
        check_device_available(config.device),
        check_out_dir_writable(out_dir),
        check_quant_layout(dim=config.shape.dim, hidden_dim=config.shape.hidden_dim, group_size=config.quant.group_size),
    ]
    if config.capture:
        checks.append(check_capture_available())
    return checks


def required_failures(checks: list[PrerequisiteCheck]) -> list[PrerequisiteCheck]:
    return [c for c in checks if c.status == "fail" and c.required]


def format_prereq_failures(checks: list[PrerequisiteCheck]) -> str:
    lines: list[str] = ["Missing prerequisites:"]
    for c in checks:
        if c.status != "fail":
            continue
        hint = f" - {c.details}" if c.details else ""
        lines.append(f"- {c.check_name}{hint}")
    return "\n".join(lines)
