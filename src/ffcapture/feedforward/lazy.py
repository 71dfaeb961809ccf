"""
Deferred evaluation on top of an eager tensor library.

PyTorch executes eagerly on the host but queues device work asynchronously, so
"computed" and "finished" are different moments. This module makes the
two-phase contract explicit:

- `defer(fn, *args)` records a computation without running it.
- `materialize(items)` runs any pending computations and blocks until the
  device has finished, so timing or trace capture around it reflects exactly
  that work.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

import torch


def synchronize(device: torch.device) -> None:
    """Block until all queued work on `device` has completed."""
    if device.type == "cuda":
        torch.cuda.synchronize(device)
    elif device.type == "mps":
        torch.mps.synchronize()


class Deferred:
    """A pending tensor computation, evaluated at most once."""

    __slots__ = ("_fn", "_args", "_value")

    def __init__(self, fn: Callable[..., torch.Tensor], *args: Any) -> None:
        self._fn = fn
        self._args = args
        self._value: torch.Tensor | None = None

    @property
    def is_realized(self) -> bool:
        return self._value is not None

    def realize(self) -> torch.Tensor:
        if self._value is None:
            value = self._fn(*self._args)
            synchronize(value.device)
            self._value = value
            # Drop references to inputs once the value exists.
            self._args = ()
        return self._value

    def value(self) -> torch.Tensor:
        if self._value is None:
            raise RuntimeError("Deferred value read before materialize()")
        return self._value


def defer(fn: Callable[..., torch.Tensor], *args: Any) -> Deferred:
    return Deferred(fn, *args)


def materialize(items: Iterable[torch.Tensor | Deferred]) -> list[torch.Tensor]:
    """Force a batch of tensors and/or deferred computations; return tensors in order."""
    out: list[torch.Tensor] = []
    devices: set[torch.device] = set()
    for it in items:
        if isinstance(it, Deferred):
            out.append(it.realize())
        else:
            out.append(it)
            devices.add(it.device)
    for dev in devices:
        synchronize(dev)
    return out
