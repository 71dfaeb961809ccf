"""
Grouped affine weight quantization.

A weight matrix `W` of shape `(out_features, in_features)` is split along its
last axis into groups of `group_size` consecutive elements. Each group stores

- `scale = (max - min) / (2**bits - 1)`
- `bias = min`
- `q = round((w - bias) / scale)` in `[0, 2**bits - 1]`

and is reconstructed as `q * scale + bias`. The integer codes are bit-packed
into uint8 storage, `8 // bits` codes per byte, first code in the lowest bits.

The three tensors (`data`, `scales`, `biases`) form one `QuantizedWeight` and
are only meaningful together.
"""

from __future__ import annotations

import attrs
import torch

from .config import SUPPORTED_BITS, SUPPORTED_GROUP_SIZES


@attrs.define(frozen=True, slots=True, eq=False)
class QuantizedWeight:
    data: torch.Tensor
    scales: torch.Tensor
    biases: torch.Tensor
    group_size: int
    bits: int
    shape: tuple[int, int]

    def tensors(self) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        return self.data, self.scales, self.biases

    @property
    def nbytes(self) -> int:
        return sum(t.numel() * t.element_size() for t in self.tensors())


def _check_params(*, group_size: int, bits: int) -> None:
    if bits not in SUPPORTED_BITS:
        raise ValueError(f"Unsupported bits={bits}. Supported: {list(SUPPORTED_BITS)}")
    if group_size not in SUPPORTED_GROUP_SIZES:
        raise ValueError(f"Unsupported group_size={group_size}. Supported: {list(SUPPORTED_GROUP_SIZES)}")


def pack_bits(codes: torch.Tensor, bits: int) -> torch.Tensor:
    """Pack integer codes along the last axis into uint8, low bits first."""
    per_byte = 8 // bits
    if codes.shape[-1] % per_byte != 0:
        raise ValueError(f"Last axis ({codes.shape[-1]}) must be a multiple of {per_byte} for {bits}-bit packing")
    c = codes.to(torch.int32).reshape(*codes.shape[:-1], codes.shape[-1] // per_byte, per_byte)
    shifts = torch.arange(0, 8, bits, dtype=torch.int32, device=codes.device)
    packed = (c << shifts).sum(dim=-1)
    return packed.to(torch.uint8)


def unpack_bits(packed: torch.Tensor, bits: int) -> torch.Tensor:
    """Inverse of `pack_bits`; returns int32 codes."""
    per_byte = 8 // bits
    mask = (1 << bits) - 1
    shifts = torch.arange(0, 8, bits, dtype=torch.int32, device=packed.device)
    p = packed.to(torch.int32).unsqueeze(-1)
    codes = (p >> shifts) & mask
    return codes.reshape(*packed.shape[:-1], packed.shape[-1] * per_byte)


def quantize(w: torch.Tensor, *, group_size: int = 64, bits: int = 4) -> QuantizedWeight:
    _check_params(group_size=group_size, bits=bits)
    if w.ndim != 2:
        raise ValueError(f"Expected a 2-D weight, got shape {tuple(w.shape)}")
    rows, cols = w.shape
    if cols % group_size != 0:
        raise ValueError(f"Last axis ({cols}) is not divisible by group_size={group_size}")

    n_bins = (1 << bits) - 1
    g = w.to(torch.float32).reshape(rows, cols // group_size, group_size)
    w_min = g.amin(dim=-1, keepdim=True)
    w_max = g.amax(dim=-1, keepdim=True)
    scales = ((w_max - w_min) / n_bins).clamp(min=torch.finfo(torch.float32).tiny)
    codes = torch.round((g - w_min) / scales).clamp(0, n_bins)

    data = pack_bits(codes.reshape(rows, cols), bits)
    return QuantizedWeight(
        data=data,
        scales=scales.squeeze(-1).to(w.dtype),
        biases=w_min.squeeze(-1).to(w.dtype),
        group_size=group_size,
        bits=bits,
        shape=(rows, cols),
    )


def dequantize(qw: QuantizedWeight, *, dtype: torch.dtype | None = None) -> torch.Tensor:
    rows, cols = qw.shape
    out_dtype = qw.scales.dtype if dtype is None else dtype
    codes = unpack_bits(qw.data, qw.bits).reshape(rows, cols // qw.group_size, qw.group_size)
    w = codes.to(out_dtype) * qw.scales.to(out_dtype).unsqueeze(-1) + qw.biases.to(out_dtype).unsqueeze(-1)
    return w.reshape(rows, cols)


def quantized_matmul(x: torch.Tensor, qw: QuantizedWeight, *, transpose: bool = True) -> torch.Tensor:
    """`x @ W.T` (default) or `x @ W` with `W` reconstructed from the triple."""
    w = dequantize(qw, dtype=x.dtype)
    return torch.matmul(x, w.T if transpose else w)
