# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Custom Exception Hierarchy for the Eflo editor core.

Provides standardized exceptions for consistent error handling across the client.

Usage:
    from core.exceptions import NetworkError, ResourceNotFoundError

    try:
        workflow = await repository.get_workflow(workflow_id)
    except ResourceNotFoundError:
        ...

Architecture:
- Base EfloException for all custom exceptions
- NetworkError for every failed repository call (session state is left unchanged)
- Stream errors for the debug run event feed
- PersistenceError for durable tab storage (always recovered locally)
- All exceptions include status_code and detail attributes
"""

from typing import Optional, Dict, Any


# =============================================================================
# Base Exception
# =============================================================================

class EfloException(Exception):
    """
    Base exception for all editor core exceptions.

    All custom exceptions should inherit from this class to ensure
    consistent error handling across the client.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        detail: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.detail = detail or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "detail": self.detail
        }


# =============================================================================
# Repository Errors
# =============================================================================

class NetworkError(EfloException):
    """A workflow API call failed (connection, timeout or non-2xx response)."""

    def __init__(
        self,
        message: str,
        status_code: int = 503,
        detail: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, status_code=status_code, detail=detail)


class ResourceNotFoundError(NetworkError):
    """404 Not Found - Resource does not exist."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Any,
        detail: Optional[Dict[str, Any]] = None
    ):
        message = f"{resource_type} with id {resource_id} not found"
        super().__init__(message, status_code=404, detail=detail)


class RepositoryTimeoutError(NetworkError):
    """504 Gateway Timeout - The workflow API did not answer in time."""

    def __init__(self, message: str = "Request timed out", detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=504, detail=detail)


# =============================================================================
# Debug Stream Errors
# =============================================================================

class StreamProtocolError(EfloException):
    """A data line of the debug stream is not a valid JSON event. Never fatal."""

    def __init__(self, line: str, reason: str):
        super().__init__(
            f"Malformed debug event: {reason}",
            status_code=422,
            detail={"line": line}
        )


class StreamTransportError(EfloException):
    """The debug stream could not be read (bad status or missing body)."""

    def __init__(self, message: str, status_code: int = 502, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=status_code, detail=detail)


# =============================================================================
# Persistence Errors
# =============================================================================

class PersistenceError(EfloException):
    """Durable client storage could not be read or written."""

    def __init__(self, key: str, reason: str):
        super().__init__(
            f"Storage operation failed for key '{key}': {reason}",
            status_code=500,
            detail={"key": key}
        )
