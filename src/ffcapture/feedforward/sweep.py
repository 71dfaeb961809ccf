"""
Quantization error sweep.

Runs the shared-weight comparison over a grid of `bits x group_size` settings
so the error of each quantization scheme can be read off directly, without
the initialization variance of independently sampled weights.
"""

from __future__ import annotations

import csv
import sys
from pathlib import Path
from typing import Any

import torch
from mdutils.mdutils import MdUtils  # type: ignore[import-untyped]

from .config import SUPPORTED_BITS, SUPPORTED_GROUP_SIZES, ModelShape, QuantConfig, resolve_device, resolve_dtype
from .layers import FeedForward, QuantizedFeedForward
from .lazy import materialize
from .runner import compare_outputs, make_input

SWEEP_CSV = "sweep.csv"
SWEEP_MD = "sweep.md"


def sweep_grid(bits_list: list[int], group_sizes: list[int]) -> list[QuantConfig]:
    return [QuantConfig(group_size=g, bits=b) for b in bits_list for g in group_sizes]


def sweep_run(
    *,
    out_dir: Path,
    shape: ModelShape,
    dtype_key: str,
    device: str,
    seed: int,
    bits_list: list[int] | None = None,
    group_sizes: list[int] | None = None,
    weight_std: float = 0.0025,
    input_std: float = 0.1,
) -> int:
    out_dir.mkdir(parents=True, exist_ok=True)
    grid = sweep_grid(list(bits_list or SUPPORTED_BITS), list(group_sizes or SUPPORTED_GROUP_SIZES))
    dev = resolve_device(device)
    dtype = resolve_dtype(dtype_key)

    generator = torch.Generator().manual_seed(seed)
    x = make_input(shape.rows, shape.dim, dtype=dtype, device=dev, generator=generator, std=input_std)
    ff = FeedForward(shape.dim, shape.hidden_dim, dtype=dtype, device=dev, generator=generator, std=weight_std)
    (ref,) = materialize([ff.forward(x)])

    rows: list[dict[str, Any]] = []
    for q in grid:
        qff = QuantizedFeedForward.from_dense(ff, group_size=q.group_size, bits=q.bits)
        (out,) = materialize([qff.forward(x)])
        cmp = compare_outputs(ref, out, weights_shared=True)
        rows.append(
            {
                "bits": q.bits,
                "group_size": q.group_size,
                "mean_diff": cmp.mean_diff,
                "max_abs_diff": cmp.max_abs_diff,
                "weight_bytes": qff.weight_bytes,
                "compression": ff.weight_bytes / qff.weight_bytes,
            }
        )
        print(f"bits={q.bits} group_size={q.group_size}: {cmp.to_line()}", file=sys.stderr)

    with (out_dir / SWEEP_CSV).open("w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=list(rows[0].keys()) if rows else ["bits"])
        writer.writeheader()
        for r in rows:
            writer.writerow(r)

    md = MdUtils(file_name=str(out_dir / Path(SWEEP_MD).stem), title="Quantization Error Sweep")
    md.new_paragraph(
        f"Shape `{shape.to_label()}` (rows x dim x hidden_dim), dtype `{dtype_key}`, device `{dev}`, seed `{seed}`. "
        "Both variants share the same base weights."
    )
    header = ["bits", "group_size", "mean_diff", "max_abs_diff", "compression"]
    cells: list[str] = list(header)
    for r in rows:
        cells += [
            str(r["bits"]),
            str(r["group_size"]),
            f"{r['mean_diff']:.3g}",
            f"{r['max_abs_diff']:.3g}",
            f"{r['compression']:.2f}x",
        ]
    md.new_table(columns=len(header), rows=len(rows) + 1, text=cells, text_align="left")
    md.create_md_file()
    return 0
