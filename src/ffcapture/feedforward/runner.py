from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Any

import attrs
import torch
from torch.profiler import record_function

from ..profiling import capture as trace_capture
from . import artifacts, paths, prereqs
from .config import CompareConfig, default_capture_dir, resolve_device, resolve_dtype
from .export import build_results, environment_info, git_info, now_rfc3339, validate_results_schema, write_results
from .layers import FeedForward, QuantizedFeedForward
from .lazy import defer, materialize
from .records import CaptureArtifacts, Comparison, PrerequisiteCheck, RunStatus, Variant, VariantRecord
from .report import generate_report

DENSE_CASE_ID = "ff"
QUANTIZED_CASE_ID = "qff"


def make_input(
    rows: int, dim: int, *, dtype: torch.dtype, device: torch.device, generator: torch.Generator, std: float
) -> torch.Tensor:
    x = torch.randn((rows, dim), generator=generator, dtype=torch.float32) * std
    (x,) = materialize([x.to(device=device, dtype=dtype)])
    return x


def build_models(
    config: CompareConfig, *, dtype: torch.dtype, device: torch.device, generator: torch.Generator
) -> tuple[FeedForward, QuantizedFeedForward]:
    shape = config.shape
    ff = FeedForward(
        shape.dim, shape.hidden_dim, dtype=dtype, device=device, generator=generator, std=config.weight_std
    )
    if config.shared_weights:
        qff = QuantizedFeedForward.from_dense(ff, group_size=config.quant.group_size, bits=config.quant.bits)
    else:
        qff = QuantizedFeedForward(
            shape.dim,
            shape.hidden_dim,
            dtype=dtype,
            device=device,
            generator=generator,
            std=config.weight_std,
            group_size=config.quant.group_size,
            bits=config.quant.bits,
        )
    return ff, qff


def evaluate_variant(
    *,
    variant: Variant,
    case_id: str,
    model: FeedForward | QuantizedFeedForward,
    x: torch.Tensor,
    device: torch.device,
    capture_dir: Path | None,
) -> tuple[torch.Tensor, VariantRecord]:
    """Run one forward pass; when `capture_dir` is set, the pass is the only work in its trace."""
    pending = defer(model.forward, x)
    capture_artifacts: CaptureArtifacts | None = None

    if capture_dir is None:
        t0 = time.perf_counter()
        (out,) = materialize([pending])
        eval_ms = (time.perf_counter() - t0) * 1e3
    else:
        trace_path = trace_capture.case_trace_path(capture_dir, case_id)
        with trace_capture.capture(trace_path, device=device):
            t0 = time.perf_counter()
            with record_function(f"{case_id}.forward"):
                (out,) = materialize([pending])
            eval_ms = (time.perf_counter() - t0) * 1e3
        meta_path = trace_capture.write_capture_metadata(
            trace_path.parent,
            case_id=case_id,
            trace_path=trace_path,
            device=device,
            label=f"{type(model).__name__}.forward",
            repo_root=paths.find_repo_root(),
        )
        capture_artifacts = CaptureArtifacts(trace_path=trace_path, meta_path=meta_path)

    record = VariantRecord(
        variant=variant,
        case_id=case_id,
        output_shape=tuple(out.shape),
        eval_ms=eval_ms,
        weight_bytes=model.weight_bytes,
        capture=capture_artifacts,
    )
    return out, record


def compare_outputs(
    dense: torch.Tensor, quantized: torch.Tensor, *, weights_shared: bool, tolerance: float | None = None
) -> Comparison:
    diff = quantized - dense
    return Comparison(
        mean_diff=float(torch.mean(diff.to(torch.float32)).item()),
        max_abs_diff=float(torch.max(torch.abs(diff)).to(torch.float32).item()),
        weights_shared=weights_shared,
        tolerance=tolerance,
    )


def _capture_unavailable(checks: list[PrerequisiteCheck]) -> bool:
    return any(c.check_name == "capture_available" and c.status == "fail" for c in checks)


def compare_run(*, out_dir: Path, config: CompareConfig, run_id: str | None = None) -> int:
    """Build both variants, evaluate each inside its own capture scope, and report the drift.

    Prints `"<mean_diff> <max_abs_diff>"` to stdout. `results.json` and `report.md`
    are always written under `out_dir`; errors from the tensor library are
    recorded and then re-raised.
    """
    chosen_run_id = paths.sanitize_run_id(run_id or paths.default_run_id())

    try:
        artifacts.create_run_dir(out_dir)
    except FileExistsError as e:
        print(str(e), file=sys.stderr)
        return 2

    checks = prereqs.check_all(out_dir=out_dir, config=config)
    if prereqs.required_failures(checks):
        print(prereqs.format_prereq_failures(checks), file=sys.stderr)
        return 2
    if config.capture and _capture_unavailable(checks):
        print("Warning: trace capture unavailable in this torch build; running without capture.", file=sys.stderr)
        config = attrs.evolve(config, capture=False)

    device = resolve_device(config.device)
    dtype = resolve_dtype(config.dtype_key)
    config = attrs.evolve(config, device=str(device))
    capture_dir: Path | None = None
    if config.capture:
        capture_dir = config.capture_output_dir or default_capture_dir(out_dir)

    if not config.shared_weights:
        print(
            "Note: variants use independent random weights; the difference mixes initialization "
            "variance with quantization error (use --shared-weights to isolate quantization).",
            file=sys.stderr,
        )

    started_at = now_rfc3339()
    status: RunStatus = "fail"
    failure_reason = ""
    records: list[VariantRecord] = []
    comparison: Comparison | None = None
    exit_code = 1
    try:
        generator = torch.Generator().manual_seed(config.seed)
        shape = config.shape
        x = make_input(shape.rows, shape.dim, dtype=dtype, device=device, generator=generator, std=config.input_std)
        ff, qff = build_models(config, dtype=dtype, device=device, generator=generator)

        ff_out, ff_rec = evaluate_variant(
            variant="dense", case_id=DENSE_CASE_ID, model=ff, x=x, device=device, capture_dir=capture_dir
        )
        records.append(ff_rec)
        qff_out, qff_rec = evaluate_variant(
            variant="quantized", case_id=QUANTIZED_CASE_ID, model=qff, x=x, device=device, capture_dir=capture_dir
        )
        records.append(qff_rec)

        comparison = compare_outputs(
            ff_out, qff_out, weights_shared=config.shared_weights, tolerance=config.max_abs_tol
        )
        print(comparison.to_line())

        if comparison.within_tolerance:
            status, exit_code = "pass", 0
        else:
            failure_reason = f"max_abs_diff {comparison.max_abs_diff:g} exceeds tolerance {comparison.tolerance:g}"
            exit_code = 1
    except Exception as e:
        failure_reason = f"{type(e).__name__}: {e}"
        raise
    finally:
        results: dict[str, Any] = build_results(
            run_id=chosen_run_id,
            started_at=started_at,
            finished_at=now_rfc3339(),
            status=status,
            failure_reason=failure_reason,
            git=git_info(paths.find_repo_root() or Path.cwd()),
            environment=environment_info(device),
            config=config,
            artifacts_dir=out_dir,
            records=records,
            comparison=comparison,
            prerequisites=checks,
        )
        validate_results_schema(results)
        write_results(out_dir / artifacts.RESULTS_FILE_NAME, results)
        (out_dir / artifacts.REPORT_FILE_NAME).write_text(generate_report(results) + "\n")

    return exit_code
