from __future__ import annotations

import pytest
import torch

from ffcapture.feedforward.layers import FeedForward, QuantizedFeedForward, init_weight


def _gen(seed: int = 0) -> torch.Generator:
    return torch.Generator().manual_seed(seed)


@pytest.mark.parametrize("dim,hidden_dim,rows", [(64, 128, 1), (128, 256, 5), (256, 64, 3)])
def test_feedforward_output_shape(dim: int, hidden_dim: int, rows: int) -> None:
    ff = FeedForward(dim, hidden_dim, dtype=torch.float32, generator=_gen())
    x = torch.randn(rows, dim, generator=_gen(1))
    assert ff.forward(x).shape == (rows, dim)


@pytest.mark.parametrize("dim,hidden_dim,rows", [(64, 128, 1), (128, 256, 5), (256, 64, 3)])
def test_quantized_feedforward_output_shape(dim: int, hidden_dim: int, rows: int) -> None:
    qff = QuantizedFeedForward(dim, hidden_dim, dtype=torch.float32, generator=_gen())
    x = torch.randn(rows, dim, generator=_gen(1))
    assert qff.forward(x).shape == (rows, dim)


def test_feedforward_accepts_leading_dims() -> None:
    ff = FeedForward(64, 128, dtype=torch.float32, generator=_gen())
    x = torch.randn(2, 3, 64, generator=_gen(1))
    assert ff(x).shape == (2, 3, 64)


def test_feedforward_weight_shapes_and_dtype() -> None:
    ff = FeedForward(64, 192, generator=_gen())
    assert ff.w1.shape == (64, 192)
    assert ff.w2.shape == (192, 64)
    assert ff.w3.shape == (64, 192)
    assert {w.dtype for w in (ff.w1, ff.w2, ff.w3)} == {torch.float16}


def test_quantized_feedforward_holds_nine_tensors() -> None:
    qff = QuantizedFeedForward(64, 128, dtype=torch.float32, generator=_gen())
    layers = qff.layers
    assert len(layers) == 9
    # w1 is stored (hidden_dim, dim) with 4-bit codes packed two per byte.
    assert layers[0].shape == (128, 32)
    assert layers[0].dtype == torch.uint8
    assert layers[1].shape == (128, 1)
    assert layers[2].shape == (128, 1)


def test_forward_is_deterministic() -> None:
    ff = FeedForward(64, 128, dtype=torch.float32, generator=_gen())
    x = torch.randn(4, 64, generator=_gen(1))
    assert torch.equal(ff.forward(x), ff.forward(x))


def test_seeded_construction_is_reproducible() -> None:
    a = FeedForward(64, 128, dtype=torch.float32, generator=_gen(7))
    b = FeedForward(64, 128, dtype=torch.float32, generator=_gen(7))
    assert torch.equal(a.w1, b.w1)
    assert torch.equal(a.w2, b.w2)
    assert torch.equal(a.w3, b.w3)


def test_forward_matches_swiglu_formula() -> None:
    ff = FeedForward(64, 128, dtype=torch.float32, generator=_gen())
    x = torch.randn(3, 64, generator=_gen(1))
    expected = (torch.nn.functional.silu(x @ ff.w1) * (x @ ff.w3)) @ ff.w2
    torch.testing.assert_close(ff.forward(x), expected)


def test_shape_mismatch_propagates_library_error() -> None:
    ff = FeedForward(64, 128, dtype=torch.float32, generator=_gen())
    with pytest.raises(RuntimeError):
        ff.forward(torch.randn(2, 63))


def test_init_weight_statistics() -> None:
    w = init_weight((256, 256), dtype=torch.float32, generator=_gen(), std=0.0025)
    assert abs(w.mean().item()) < 1e-3
    assert w.std().item() == pytest.approx(0.0025, rel=0.05)


def test_from_dense_tracks_dense_output() -> None:
    ff = FeedForward(128, 256, dtype=torch.float32, generator=_gen(), std=0.05)
    x = torch.randn(8, 128, generator=_gen(1))
    dense = ff.forward(x)

    q8 = QuantizedFeedForward.from_dense(ff, group_size=32, bits=8).forward(x)
    q4 = QuantizedFeedForward.from_dense(ff, group_size=32, bits=4).forward(x)

    err8 = (q8 - dense).abs().max().item()
    err4 = (q4 - dense).abs().max().item()
    scale = dense.abs().max().item()
    assert err8 < 0.05 * scale
    assert err4 < 0.5 * scale
    assert err8 < err4


def test_quantized_weight_bytes_smaller_than_dense() -> None:
    ff = FeedForward(128, 256, generator=_gen())
    qff = QuantizedFeedForward.from_dense(ff)
    assert qff.weight_bytes < ff.weight_bytes
