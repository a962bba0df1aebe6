# gmm_em/_errors.py
"""Exception types raised by the EM engine.

- InvalidArgumentError: bad arguments, raised before any computation.
- DegenerateCovarianceError / NumericFailureError: a single restart or fold
  failed. The engine records these and keeps going with its siblings.
- FitFailedError: every restart (or every fold) failed.
"""

from __future__ import annotations

from typing import List, Tuple


class InvalidArgumentError(ValueError):
    pass


class GMMFitError(RuntimeError):
    """Base class for failures local to one restart or one fold."""


class DegenerateCovarianceError(GMMFitError):
    pass


class NumericFailureError(GMMFitError):
    pass


class FitFailedError(GMMFitError):
    def __init__(self, message: str, failures: List[Tuple[int, Exception]]) -> None:
        super().__init__(message)
        self.failures = failures
