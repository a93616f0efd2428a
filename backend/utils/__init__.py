"""
Utils Package

Provides utility modules for:
- validation_errors: structured 422 error bodies for request validation
"""

from .validation_errors import (
    ValidationErrorResponse,
    raise_missing_parameter,
    raise_invalid_parameter,
    validate_date_range,
)

__all__ = [
    'ValidationErrorResponse',
    'raise_missing_parameter',
    'raise_invalid_parameter',
    'validate_date_range',
]
