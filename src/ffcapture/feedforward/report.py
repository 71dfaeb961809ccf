from __future__ import annotations

from pathlib import Path
from typing import Any

from .artifacts import REPORT_FILE_NAME, RESULTS_FILE_NAME
from .export import load_results


def _format_float(v: float | None, spec: str = ".3f") -> str:
    if v is None:
        return "NA"
    return format(v, spec)


def _format_shape(shape: list[int] | None) -> str:
    if not shape:
        return "NA"
    return "x".join(str(d) for d in shape)


def _format_bytes(n: int | None) -> str:
    if n is None:
        return "NA"
    return f"{n / (1 << 20):.1f} MiB"


def _speedup(records: list[dict[str, Any]]) -> float | None:
    by_variant = {r.get("variant"): r for r in records}
    dense = by_variant.get("dense", {}).get("timing", {}).get("eval_ms")
    quant = by_variant.get("quantized", {}).get("timing", {}).get("eval_ms")
    if dense is None or quant is None or quant == 0:
        return None
    return float(dense / quant)


def generate_report(results: dict[str, Any]) -> str:
    run = results.get("run", {})
    settings = run.get("settings", {})
    records = list(results.get("records", []))
    comparison = results.get("comparison")

    lines: list[str] = []
    lines.append("# Feed-Forward Quantization Comparison")
    lines.append("")
    lines.append(f"- Run: `{run.get('run_id', '')}`")
    lines.append(f"- Branch: `{run.get('git', {}).get('branch', '')}`")
    lines.append(f"- Commit: `{run.get('git', {}).get('commit', '')}`")
    lines.append(f"- Status: `{run.get('status', '')}`")
    if run.get("failure_reason"):
        lines.append(f"- Failure: {run['failure_reason']}")
    lines.append("")

    lines.append("## Settings")
    lines.append("")
    shape = settings.get("shape", {})
    quant = settings.get("quant", {})
    lines.append(f"- Input: `{shape.get('rows', 'NA')}x{shape.get('dim', 'NA')}` ({settings.get('dtype', 'NA')})")
    lines.append(f"- Hidden dim: `{shape.get('hidden_dim', 'NA')}`")
    lines.append(f"- Quantization: `{quant.get('bits', 'NA')}`-bit, group size `{quant.get('group_size', 'NA')}`")
    lines.append(f"- Device: `{settings.get('device', 'NA')}`, seed `{settings.get('seed', 'NA')}`")
    lines.append(f"- Shared weights: `{settings.get('shared_weights', False)}`")
    lines.append("")

    lines.append("## Variants")
    lines.append("")
    header = ["variant", "case_id", "output_shape", "eval_ms", "weight_bytes", "trace"]
    lines.append("| " + " | ".join(header) + " |")
    lines.append("|" + "|".join(["---"] * len(header)) + "|")
    for r in records:
        capture = r.get("capture")
        trace = f"`{Path(capture['trace_path']).name}`" if capture else "NA"
        lines.append(
            "| "
            + " | ".join(
                [
                    str(r.get("variant", "")),
                    str(r.get("case_id", "")),
                    _format_shape(r.get("output_shape")),
                    _format_float(r.get("timing", {}).get("eval_ms")),
                    _format_bytes(r.get("weight_bytes")),
                    trace,
                ]
            )
            + " |"
        )
    lines.append("")
    speedup = _speedup(records)
    if speedup is not None:
        lines.append(f"Dense / quantized eval time: `{speedup:.2f}x`")
        lines.append("")

    lines.append("## Output Difference")
    lines.append("")
    if comparison is None:
        lines.append("No comparison was recorded (the run did not finish).")
    else:
        lines.append(f"- Mean of `quantized - dense`: `{_format_float(comparison.get('mean_diff'), '.6g')}`")
        lines.append(f"- Max absolute difference: `{_format_float(comparison.get('max_abs_diff'), '.6g')}`")
        tol = comparison.get("tolerance")
        if tol is not None:
            verdict = "within" if comparison.get("within_tolerance") else "exceeds"
            lines.append(f"- Tolerance `{tol:g}`: {verdict}")
        if not comparison.get("weights_shared"):
            lines.append("")
            lines.append(
                "Note: both variants were initialized from independent random weights, so this difference "
                "mixes initialization variance with quantization error. Rerun with `--shared-weights` to "
                "isolate quantization error."
            )
    lines.append("")

    lines.append("## Column Definitions")
    lines.append("")
    lines.append("- `eval_ms`: Wall-clock time of one materialized forward pass (inside the capture scope when capturing).")
    lines.append("- `weight_bytes`: Bytes held by the variant's weight tensors (the quantized variant counts data, scales and biases).")
    lines.append("- `trace`: Chrome trace file for that single evaluation; `NA` when capture was disabled or unavailable.")
    lines.append("")

    return "\n".join(lines)


def report_run(*, out_dir: Path) -> int:
    results_path = out_dir / RESULTS_FILE_NAME
    if not results_path.exists():
        raise FileNotFoundError(f"Missing results.json at {results_path}")

    results = load_results(results_path)
    report_md = generate_report(results)
    (out_dir / REPORT_FILE_NAME).write_text(report_md + "\n")
    return 0
