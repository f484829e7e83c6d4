"""Field-level validation helpers.

Errors are collected into a ``{field: [message, ...]}`` map so one request can
report every problem at once, then raised as a single ``ValidationError``.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional

from backoffice.errors import ValidationError

ErrorMap = Dict[str, List[str]]


def add_error(errors: ErrorMap, field: str, message: str):
    errors.setdefault(field, []).append(message)


def check_text(errors: ErrorMap, field: str, value: Any, min_len: int, max_len: int,
               required: bool = True) -> Optional[str]:
    """Validate a string field and return it stripped (or None when optional and absent)."""
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            add_error(errors, field, f'The {field} field is required.')
        return None
    if not isinstance(value, str):
        add_error(errors, field, f'The {field} field must be a string.')
        return None
    value = value.strip()
    if len(value) < min_len:
        add_error(errors, field, f'The {field} field must be at least {min_len} characters.')
    elif len(value) > max_len:
        add_error(errors, field, f'The {field} field must not be greater than {max_len} characters.')
    return value


def check_bool(errors: ErrorMap, field: str, value: Any, default: Optional[bool] = None) -> Optional[bool]:
    if value is None:
        return default
    if not isinstance(value, bool):
        add_error(errors, field, f'The {field} field must be true or false.')
        return default
    return value


def raise_if_errors(errors: ErrorMap):
    if errors:
        raise ValidationError('Validation failed.', errors)


__all__ = ['add_error', 'check_text', 'check_bool', 'raise_if_errors', 'ErrorMap']
