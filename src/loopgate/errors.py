from __future__ import annotations


class LoopgateError(RuntimeError):
    """Base class for loopgate failures that indicate a defect or bad state."""
