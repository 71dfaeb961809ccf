from __future__ import annotations

import torch

from .lazy import materialize
from .quant import QuantizedWeight, quantize, quantized_matmul


def init_weight(
    shape: tuple[int, int],
    *,
    dtype: torch.dtype = torch.float16,
    device: torch.device | str = "cpu",
    generator: torch.Generator | None = None,
    mean: float = 0.0,
    std: float = 0.0025,
) -> torch.Tensor:
    """Sample N(mean, std) on the host, then cast and move.

    Sampling on CPU keeps a seeded generator reproducible across devices.
    """
    w = torch.randn(shape, generator=generator, dtype=torch.float32) * std + mean
    return w.to(device=device, dtype=dtype)


class FeedForward:
    """SwiGLU feed-forward block with full-precision weights.

    `forward(x) = (silu(x @ w1) * (x @ w3)) @ w2`
    """

    def __init__(
        self,
        dim: int,
        hidden_dim: int,
        *,
        dtype: torch.dtype = torch.float16,
        device: torch.device | str = "cpu",
        generator: torch.Generator | None = None,
        std: float = 0.0025,
    ) -> None:
        self.dim = dim
        self.hidden_dim = hidden_dim
        self.w1 = init_weight((dim, hidden_dim), dtype=dtype, device=device, generator=generator, std=std)
        self.w2 = init_weight((hidden_dim, dim), dtype=dtype, device=device, generator=generator, std=std)
        self.w3 = init_weight((dim, hidden_dim), dtype=dtype, device=device, generator=generator, std=std)
        # Weights must be resident before any timed or captured forward pass.
        materialize([self.w1, self.w2, self.w3])

    @property
    def weight_bytes(self) -> int:
        return sum(w.numel() * w.element_size() for w in (self.w1, self.w2, self.w3))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        h = torch.matmul(x, self.w1)
        act = h * torch.sigmoid(h) * torch.matmul(x, self.w3)
        return torch.matmul(act, self.w2)

    __call__ = forward


class QuantizedFeedForward:
    """The same block computed through group-quantized weights.

    Weights are stored as `(out_features, in_features)` triples and applied with
    a transposed quantized matmul, so outputs line up with `FeedForward`.
    """

    def __init__(
        self,
        dim: int,
        hidden_dim: int,
        *,
        dtype: torch.dtype = torch.float16,
        device: torch.device | str = "cpu",
        generator: torch.Generator | None = None,
        std: float = 0.0025,
        group_size: int = 64,
        bits: int = 4,
    ) -> None:
        w1 = init_weight((hidden_dim, dim), dtype=dtype, device=device, generator=generator, std=std)
        w2 = init_weight((dim, hidden_dim), dtype=dtype, device=device, generator=generator, std=std)
        w3 = init_weight((hidden_dim, dim), dtype=dtype, device=device, generator=generator, std=std)
        self._set_weights(
            dim,
            hidden_dim,
            quantize(w1, group_size=group_size, bits=bits),
            quantize(w2, group_size=group_size, bits=bits),
            quantize(w3, group_size=group_size, bits=bits),
        )

    def _set_weights(
        self, dim: int, hidden_dim: int, w1: QuantizedWeight, w2: QuantizedWeight, w3: QuantizedWeight
    ) -> None:
        self.dim = dim
        self.hidden_dim = hidden_dim
        self.w1 = w1
        self.w2 = w2
        self.w3 = w3
        materialize(self.layers)

    @classmethod
    def from_dense(cls, ff: FeedForward, *, group_size: int = 64, bits: int = 4) -> "QuantizedFeedForward":
        """Quantize an existing `FeedForward` so both variants share base weights."""
        self = cls.__new__(cls)
        self._set_weights(
            ff.dim,
            ff.hidden_dim,
            quantize(ff.w1.T.contiguous(), group_size=group_size, bits=bits),
            quantize(ff.w2.T.contiguous(), group_size=group_size, bits=bits),
            quantize(ff.w3.T.contiguous(), group_size=group_size, bits=bits),
        )
        return self

    @property
    def layers(self) -> list[torch.Tensor]:
        return [*self.w1.tensors(), *self.w2.tensors(), *self.w3.tensors()]

    @property
    def weight_bytes(self) -> int:
        return self.w1.nbytes + self.w2.nbytes + self.w3.nbytes

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        h = quantized_matmul(x, self.w1)
        act = h * torch.sigmoid(h) * quantized_matmul(x, self.w3)
        return quantized_matmul(act, self.w2)

    __call__ = forward
