from __future__ import annotations

import argparse
from pathlib import Path

from . import paths
from .config import DTYPES, SHAPE_PRESETS, SUPPORTED_BITS, SUPPORTED_GROUP_SIZES, CompareConfig, QuantConfig, resolve_shape
from .report import report_run
from .runner import compare_run
from .sweep import sweep_run


def _abs_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


def _int_list(v: str) -> list[int]:
    return [int(s) for s in v.split(",") if s.strip()]


def _add_model_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--preset", default="full", choices=sorted(SHAPE_PRESETS), help="Named model/input shape.")
    p.add_argument("--dtype", default="fp16", choices=sorted(DTYPES))
    p.add_argument("--device", default="auto", help="torch device (auto, cpu, cuda, cuda:1, mps).")
    p.add_argument("--seed", type=int, default=0)


def _add_run_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--out-dir", type=_abs_path, default=None, help="Output directory (default: ./tmp/ffcapture/<run-id>).")
    p.add_argument("--run-id", default=None, help="Filesystem-safe run id (default: timestamp).")
    _add_model_args(p)
    p.add_argument("--group-size", type=int, default=64, choices=list(SUPPORTED_GROUP_SIZES))
    p.add_argument("--bits", type=int, default=4, choices=list(SUPPORTED_BITS))
    p.add_argument(
        "--shared-weights",
        action="store_true",
        help="Quantize the dense model's weights instead of sampling independent ones.",
    )
    p.add_argument("--capture-dir", type=_abs_path, default=None, help="Trace output dir (default: <out-dir>/captures).")
    p.add_argument("--no-capture", action="store_true", help="Skip trace capture.")
    p.add_argument("--max-abs-tol", type=float, default=None, help="Fail the run if max |diff| exceeds this.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ffcapture.feedforward",
        description="Compare a dense and a group-quantized SwiGLU feed-forward block under trace capture.",
    )
    sub = parser.add_subparsers(dest="cmd")

    run = sub.add_parser("run", help="Run both variants once and print '<mean_diff> <max_abs_diff>' (default).")
    _add_run_args(run)

    report = sub.add_parser("report", help="Regenerate report.md from results.json (no model run).")
    report.add_argument("--out-dir", type=_abs_path, required=True)

    sweep = sub.add_parser("sweep", help="Shared-weight quantization error over a bits x group-size grid.")
    sweep.add_argument("--out-dir", type=_abs_path, required=True)
    _add_model_args(sweep)
    sweep.add_argument("--bits", type=_int_list, default=list(SUPPORTED_BITS), help="Comma-separated bit widths.")
    sweep.add_argument(
        "--group-sizes", type=_int_list, default=list(SUPPORTED_GROUP_SIZES), help="Comma-separated group sizes."
    )

    return parser


def _run(ns: argparse.Namespace) -> int:
    run_id = ns.run_id or paths.default_run_id()
    out_dir = ns.out_dir or paths.default_out_dir(run_id=run_id)
    config = CompareConfig(
        shape=resolve_shape(ns.preset),
        dtype_key=ns.dtype,
        device=ns.device,
        seed=ns.seed,
        quant=QuantConfig(group_size=ns.group_size, bits=ns.bits),
        shared_weights=ns.shared_weights,
        capture=not ns.no_capture,
        capture_output_dir=ns.capture_dir,
        max_abs_tol=ns.max_abs_tol,
    )
    return compare_run(out_dir=out_dir, config=config, run_id=run_id)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    ns = parser.parse_args(argv)

    # No sub-command behaves like `run` with defaults.
    if ns.cmd is None:
        ns = parser.parse_args(["run", *(argv or [])])

    if ns.cmd == "run":
        return _run(ns)
    if ns.cmd == "report":
        return report_run(out_dir=ns.out_dir)
    if ns.cmd == "sweep":
        return sweep_run(
            out_dir=ns.out_dir,
            shape=resolve_shape(ns.preset),
            dtype_key=ns.dtype,
            device=ns.device,
            seed=ns.seed,
            bits_list=ns.bits,
            group_sizes=ns.group_sizes,
        )

    raise AssertionError(f"Unhandled cmd: {ns.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
