"""SwiGLU feed-forward comparison (PyTorch layer).

This package builds a full-precision and a group-quantized feed-forward block,
evaluates each on a shared input inside its own trace-capture scope, and reports
the numeric drift between the two outputs as a stable JSON document plus a
Markdown summary.
"""

from __future__ import annotations
