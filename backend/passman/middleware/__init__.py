"""HTTP host integration for the PassMan core."""

from .error_handling import APIErrorResponse, ErrorType, register_exception_handlers

__all__ = ["APIErrorResponse", "ErrorType", "register_exception_handlers"]
