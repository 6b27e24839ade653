"""
Exception hierarchy for the antenna calibration core.

Four families, one per failure source:
- InputError: insufficient, duplicate or non-finite coordinates
- GeometryError: collinear layouts, non-invertible transforms
- WorkflowError: operation attempted in the wrong workflow state
- DataError: repository / persistence failures (propagated, never swallowed)

Every error carries a human-readable message plus a ``details`` dict with
the specific deficiency (counts, offending points) for diagnostics.
"""

from typing import Any, Dict, Optional


class CalibrationError(Exception):
    """Base exception for all calibration core errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize error.

        Args:
            message: Human-readable error message
            details: Optional structured context (counts, points, ids)
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


# =============================================================================
# Input errors
# =============================================================================


class InputError(CalibrationError, ValueError):
    """Invalid caller-supplied coordinates or parameters."""
    pass


class InsufficientPointsError(InputError):
    """Fewer correspondences than the fit requires."""

    def __init__(self, required: int, provided: int, context: str = "correspondence pairs"):
        self.required = required
        self.provided = provided
        super().__init__(
            f"Insufficient {context}: need >= {required}, have {provided}",
            {'required': required, 'provided': provided},
        )


class DuplicatePointError(InputError):
    """Two correspondences share the same reference coordinate."""

    def __init__(self, point, first_index: int, second_index: int):
        self.point = point
        super().__init__(
            "Duplicate reference coordinate",
            {'point': point, 'first_index': first_index, 'second_index': second_index},
        )


class CSVFormatError(InputError):
    """Malformed calibration CSV file."""

    def __init__(self, message: str, line: Optional[int] = None, source: Optional[str] = None):
        self.line = line
        details = {}
        if source is not None:
            details['source'] = source
        if line is not None:
            details['line'] = line
        super().__init__(message, details)


# =============================================================================
# Geometry errors
# =============================================================================


class GeometryError(CalibrationError):
    """Correspondence geometry cannot support a unique transform."""
    pass


class DegenerateConfigurationError(GeometryError):
    """Points are collinear (or coincident) so the fit is under-determined."""
    pass


class SingularTransformError(GeometryError):
    """Transform matrix is not invertible."""

    def __init__(self, determinant: float):
        self.determinant = determinant
        super().__init__(
            "Transform matrix is singular and cannot be inverted",
            {'determinant': determinant},
        )


# =============================================================================
# Workflow errors
# =============================================================================


class WorkflowError(CalibrationError):
    """Operation not permitted in the current workflow state."""

    def __init__(self, operation: str, state, hint: Optional[str] = None):
        self.operation = operation
        self.state = state
        message = f"Cannot {operation} while workflow is '{getattr(state, 'value', state)}'"
        if hint:
            message = f"{message}: {hint}"
        super().__init__(message, {'operation': operation})


# =============================================================================
# Data (repository) errors
# =============================================================================


class DataError(CalibrationError):
    """Base class for repository failures."""
    pass


class NotFoundError(DataError):
    """Requested record does not exist."""
    pass


class DuplicateEntryError(DataError):
    """Record with the same key already exists."""
    pass


class InvalidDataError(DataError):
    """Record failed validation on save/load."""
    pass
