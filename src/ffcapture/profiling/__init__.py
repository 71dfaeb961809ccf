"""
Trace-capture utilities.

This package wraps the PyTorch profiler in a balanced start/stop scope and
writes each capture into a deterministic on-disk layout for later inspection
(e.g., in Perfetto or `chrome://tracing`).
"""
