"""
Structured Validation Error Utilities

Standardized error bodies so the UI can tell validation failures apart from
conflicts and connectivity issues.

Error Response Format:
{
    "error": "missing_parameter" | "invalid_parameter" | "validation_error" | <domain code>,
    "parameter": "X-User-Id",
    "message": "X-User-Id is required"
}
"""

from datetime import date
from fastapi import HTTPException, status
from typing import Optional, Any


class ValidationErrorResponse:
    """Structured validation error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        return {
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Create an invalid parameter error response.

        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value (optional, for debugging)
        """
        response = {
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]  # Truncate for safety
        return response


def raise_missing_parameter(parameter: str, message: Optional[str] = None):
    """
    Raise HTTPException with structured missing parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.missing_parameter(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None):
    """
    Raise HTTPException with structured invalid parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.invalid_parameter(parameter, message, value)
    )


def validate_date_range(date_from: date, date_to: date) -> None:
    """Reject a range whose start falls after its end."""
    if date_from > date_to:
        raise_invalid_parameter(
            "date_from",
            "date_from must be on or before date_to",
            date_from.isoformat()
        )
