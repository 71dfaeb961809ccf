from __future__ import annotations

import os
from pathlib import Path

import attrs
import torch

CAPTURE_DIR_ENV = "FFCAPTURE_CAPTURE_DIR"

SUPPORTED_BITS: tuple[int, ...] = (2, 4, 8)
SUPPORTED_GROUP_SIZES: tuple[int, ...] = (32, 64, 128)


@attrs.define(frozen=True, slots=True)
class ModelShape:
    dim: int
    hidden_dim: int
    rows: int

    def to_label(self) -> str:
        return f"{self.rows}x{self.dim}x{self.hidden_dim}"


def _check_bits(_inst: object, _attr: attrs.Attribute, value: int) -> None:
    if value not in SUPPORTED_BITS:
        raise ValueError(f"Unsupported bits={value}. Supported: {list(SUPPORTED_BITS)}")


def _check_group_size(_inst: object, _attr: attrs.Attribute, value: int) -> None:
    if value not in SUPPORTED_GROUP_SIZES:
        raise ValueError(f"Unsupported group_size={value}. Supported: {list(SUPPORTED_GROUP_SIZES)}")


@attrs.define(frozen=True, slots=True)
class QuantConfig:
    group_size: int = attrs.field(default=64, validator=_check_group_size)
    bits: int = attrs.field(default=4, validator=_check_bits)

    def to_dict(self) -> dict[str, int]:
        return {"group_size": self.group_size, "bits": self.bits}


# `full` is the 256-token, 4096 -> 14336 block of the reference comparison.
SHAPE_PRESETS: dict[str, ModelShape] = {
    "full": ModelShape(dim=4096, hidden_dim=14336, rows=256),
    "small": ModelShape(dim=1024, hidden_dim=2816, rows=64),
    "smoke": ModelShape(dim=256, hidden_dim=512, rows=8),
}


DTYPES: dict[str, torch.dtype] = {
    "fp16": torch.float16,
    "bf16": torch.bfloat16,
    "fp32": torch.float32,
}


def resolve_shape(preset: str) -> ModelShape:
    if preset not in SHAPE_PRESETS:
        raise KeyError(f"Unknown shape preset={preset!r}. Known: {sorted(SHAPE_PRESETS)}")
    return SHAPE_PRESETS[preset]


def resolve_dtype(key: str) -> torch.dtype:
    if key not in DTYPES:
        raise KeyError(f"Unknown dtype={key!r}. Known: {sorted(DTYPES)}")
    return DTYPES[key]


def resolve_device(device: str) -> torch.device:
    """Map "auto" to the best available backend; pass anything else to torch."""
    if device != "auto":
        return torch.device(device)
    if torch.cuda.is_available():
        return torch.device("cuda")
    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def default_capture_dir(out_dir: Path) -> Path:
    env = os.environ.get(CAPTURE_DIR_ENV)
    if env:
        return Path(env).expanduser().resolve()
    return out_dir / "captures"


@attrs.define(frozen=True, slots=True)
class CompareConfig:
    shape: ModelShape = SHAPE_PRESETS["full"]
    dtype_key: str = "fp16"
    device: str = "auto"
    seed: int = 0
    weight_std: float = 0.0025
    input_std: float = 0.1
    quant: QuantConfig = attrs.field(factory=QuantConfig)
    shared_weights: bool = False
    capture: bool = True
    capture_output_dir: Path | None = None
    max_abs_tol: float | None = None

    def to_settings(self) -> dict[str, object]:
        return {
            "shape": {"rows": self.shape.rows, "dim": self.shape.dim, "hidden_dim": self.shape.hidden_dim},
            "dtype": self.dtype_key,
            "device": self.device,
            "seed": self.seed,
            "weight_std": self.weight_std,
            "input_std": self.input_std,
            "quant": self.quant.to_dict(),
            "shared_weights": self.shared_weights,
            "capture": self.capture,
            "max_abs_tol": self.max_abs_tol,
        }
