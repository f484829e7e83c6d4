"""Error taxonomy for the access-control layer.

Services raise these; the app factory translates them into the JSON envelope.
A denied authorization check is never one of these: it is a plain ``False``.
"""
from __future__ import annotations
from typing import Dict, List, Optional


class AccessControlError(Exception):
    status_code = 500
    title = 'Access Control Error'

    def __init__(self, message: str, errors: Optional[Dict[str, List[str]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}


class ValidationError(AccessControlError):
    status_code = 422
    title = 'Unprocessable Entity'

    @classmethod
    def single(cls, field: str, message: str) -> 'ValidationError':
        return cls('Validation failed.', {field: [message]})


class NotFound(AccessControlError):
    status_code = 404
    title = 'Not Found'


class Conflict(AccessControlError):
    status_code = 409
    title = 'Conflict'


class AuthorizationUnavailable(AccessControlError):
    """Grant data could not be read; the caller should retry, never treat it as allow."""
    status_code = 503
    title = 'Service Unavailable'


__all__ = ['AccessControlError', 'ValidationError', 'NotFound', 'Conflict', 'AuthorizationUnavailable']
