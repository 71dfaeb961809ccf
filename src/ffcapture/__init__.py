"""Dense vs. quantized feed-forward comparison with trace capture."""

from __future__ import annotations

__version__ = "0.1.0"
