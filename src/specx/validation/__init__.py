"""Pre-assignment safety checks."""

from specx.validation.types import ValidationOptions, ValidationRequest, ValidationResult
from specx.validation.validator import AssignmentValidator

__all__ = [
    "AssignmentValidator",
    "ValidationOptions",
    "ValidationRequest",
    "ValidationResult",
]
