from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import attrs

RunStatus = Literal["pass", "fail"]
Variant = Literal["dense", "quantized"]


@attrs.define(frozen=True, slots=True)
class PrerequisiteCheck:
    check_name: str
    status: RunStatus
    details: str | None = None
    required: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"check_name": self.check_name, "status": self.status, "details": self.details, "required": self.required}


@attrs.define(frozen=True, slots=True)
class CaptureArtifacts:
    trace_path: Path
    meta_path: Path

    def to_dict(self) -> dict[str, Any]:
        return {"trace_path": str(self.trace_path), "meta_path": str(self.meta_path)}


@attrs.define(frozen=True, slots=True)
class VariantRecord:
    variant: Variant
    case_id: str
    output_shape: tuple[int, ...]
    eval_ms: float
    weight_bytes: int
    capture: CaptureArtifacts | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "variant": self.variant,
            "case_id": self.case_id,
            "output_shape": list(self.output_shape),
            "timing": {"eval_ms": self.eval_ms},
            "weight_bytes": self.weight_bytes,
            "capture": self.capture.to_dict() if self.capture is not None else None,
        }


@attrs.define(frozen=True, slots=True)
class Comparison:
    mean_diff: float
    max_abs_diff: float
    weights_shared: bool
    tolerance: float | None = None

    @property
    def within_tolerance(self) -> bool:
        return self.tolerance is None or self.max_abs_diff <= self.tolerance

    def to_line(self) -> str:
        # Same shape as `cout << mean << " " << max`: six significant digits.
        return f"{self.mean_diff:g} {self.max_abs_diff:g}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "mean_diff": self.mean_diff,
            "max_abs_diff": self.max_abs_diff,
            "weights_shared": self.weights_shared,
            "tolerance": self.tolerance,
            "within_tolerance": self.within_tolerance,
        }
