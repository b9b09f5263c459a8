"""Exception types raised inside the widget pipeline.

Every exception carries the error-widget code the orchestrator reports when the
failure reaches the response boundary.
"""

from __future__ import annotations

from typing import Optional

MISSING_ID = "MISSING_ID"
METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
VALIDATION_ERROR = "VALIDATION_ERROR"
DOC_NOT_FOUND = "DOC_NOT_FOUND"
MAP_TOO_FEW_LOCATIONS = "MAP_TOO_FEW_LOCATIONS"
UNSUPPORTED_FN = "UNSUPPORTED_FN"
SERVER_ERROR = "SERVER_ERROR"

ERROR_CODES = (
    MISSING_ID,
    METHOD_NOT_ALLOWED,
    VALIDATION_ERROR,
    DOC_NOT_FOUND,
    MAP_TOO_FEW_LOCATIONS,
    UNSUPPORTED_FN,
    SERVER_ERROR,
)


class WidgetError(Exception):
    """Base failure that maps onto an error widget."""
    code = SERVER_ERROR

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class DocumentParseError(WidgetError):
    """Uploaded bytes could not be decoded into a StructuredDocument."""
    code = VALIDATION_ERROR


class DocumentNotFoundError(WidgetError):
    code = DOC_NOT_FOUND


class UnsupportedToolError(WidgetError):
    code = UNSUPPORTED_FN


class WidgetValidationError(WidgetError):
    code = VALIDATION_ERROR


class ModelInvocationError(WidgetError):
    """Provider call failed (network, quota, timeout, bad response)."""
    code = SERVER_ERROR


class ModelNotFoundError(ModelInvocationError):
    """Provider rejected the model identifier; eligible for the fallback retry."""


class WeatherLookupError(WidgetError):
    code = SERVER_ERROR


class StreamError(WidgetError):
    code = SERVER_ERROR


class StreamNotReadyError(StreamError):
    pass
