# pylint: disable=C0114
from __future__ import annotations


class FastMNNError(Exception):
    """
    Base class for every error raised by fastmnnpy.

    Carries the pipeline stage that failed and, where it applies,
    the batch being processed, so that a caller can retry with
    adjusted `k`, `bandwidth` or gene filtering.
    """

    def __init__(self, message: str, stage: str | None = None, batch=None):
        self.stage = stage
        self.batch = batch

        prefix = []
        if stage is not None:
            prefix.append(f"stage={stage}")
        if batch is not None:
            prefix.append(f"batch={batch}")

        if prefix:
            message = f"[{', '.join(prefix)}] {message}"

        super().__init__(message)


class ConfigurationError(FastMNNError, ValueError):
    """Empty gene intersection, bad merge order, `k` or `d` out of range."""


class ValidationError(FastMNNError, ValueError):
    """Input data can't be integrated as given (empty batch, `k` above batch size)."""


class IntegrationError(FastMNNError, RuntimeError):
    """A merge step couldn't find any mutual nearest neighbours."""


class NumericalError(FastMNNError, ArithmeticError):
    """Rank deficient decomposition or non-finite values after correction."""
