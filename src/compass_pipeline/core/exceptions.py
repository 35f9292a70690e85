"""
Error hierarchy for compass-pipeline.

Configuration and alignment problems are fatal and raised before any chain
starts. Convergence problems are recorded as ``ConvergenceWarning`` objects
on the fitted result and never raised.
"""

from __future__ import annotations


class CompassError(Exception):
    """Base class for all compass-pipeline errors."""
    pass


class ConfigurationError(CompassError, ValueError):
    """Raised for invalid settings, marker sets, counts or priors."""
    pass


class DimensionMismatch(CompassError, ValueError):
    """Raised when the count matrices disagree with each other or the markers."""
    pass


class FitCancelled(CompassError):
    """Raised when a chain observes the cancellation token."""

    def __init__(self, chain_index: int, iteration: int):
        self.chain_index = chain_index
        self.iteration = iteration
        super().__init__(chain_index, iteration)

    def __str__(self) -> str:
        return f"Chain {self.chain_index} cancelled at iteration {self.iteration}"


class ConvergenceWarning(UserWarning):
    """Non-fatal sampler diagnostic attached to a fitted result."""

    def __init__(self, kind: str, message: str):
        self.kind = kind
        self.message = message
        super().__init__(kind, message)

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"ConvergenceWarning(kind={self.kind!r}, message={self.message!r})"
