"""
Error taxonomy for the areal metrics engine.

Validation errors are raised when a Dataset is constructed. Statistical errors
are raised at the call site and carry the method name, the observed sample
size and the required minimum so callers can report them without parsing text.
"""

from typing import Optional


class ArealMetricsError(Exception):
    """Base class for every error raised by areal_metrics."""


class InputValidationError(ArealMetricsError, ValueError):
    """Malformed records: duplicate ids, negative weights, non-numeric values."""


class MissingAttributeError(ArealMetricsError, KeyError):
    """A declared attribute column is not present in the dataset."""

    def __init__(self, attribute: str, available: Optional[list] = None, detail: Optional[str] = None):
        self.attribute = attribute
        self.available = sorted(available) if available is not None else None
        message = f"Attribute '{attribute}' not found in dataset"
        if detail is not None:
            message += f": {detail}"
        if self.available is not None:
            message += f". Available: {self.available}"
        super().__init__(message)

    def __str__(self) -> str:
        # KeyError.__str__ would quote the whole message
        return self.args[0]


class InsufficientDataError(ArealMetricsError, ValueError):
    """Sample size is below the minimum a method requires."""

    def __init__(self, method: str, n: int, minimum: int):
        self.method = method
        self.n = n
        self.minimum = minimum
        super().__init__(
            f"{method} requires at least {minimum} observations, got {n}"
        )


class NumericInstabilityError(ArealMetricsError, ArithmeticError):
    """Singular design matrix or degenerate variance where a statistic is undefined."""


class AnalysisTimeoutError(ArealMetricsError, TimeoutError):
    """A caller-supplied deadline expired before the computation finished."""

    def __init__(self, stage: str, elapsed: float, budget: float):
        self.stage = stage
        self.elapsed = elapsed
        self.budget = budget
        super().__init__(
            f"Deadline of {budget:.3f}s exceeded during {stage} "
            f"(elapsed {elapsed:.3f}s)"
        )


class ZeroVarianceWarning(UserWarning):
    """Standardization hit zero variance; the affected values were zero-filled."""
