"""Typed identifiers for protected operations.

``OperationKey`` and ``ShortKey`` are ``str`` subclasses whose constructors
validate format, so a typo fails loudly instead of silently granting or denying
the wrong route. Operation keys always contain dots; short keys never do, which
keeps a lookup key unambiguous between the two namespaces.
"""
from __future__ import annotations
import re
from typing import Union

OPERATION_KEY_RE = re.compile(r'^[a-z][a-z0-9_]*(?:\.[a-z][a-z0-9_]*){2,}$')
SHORT_KEY_RE = re.compile(r'^[a-z0-9_]+$')

KEY_MIN_LEN = 5
KEY_MAX_LEN = 200


def _check_length(kind: str, raw: str):
    if not (KEY_MIN_LEN <= len(raw) <= KEY_MAX_LEN):
        raise ValueError(f'{kind} must be between {KEY_MIN_LEN} and {KEY_MAX_LEN} characters')


class OperationKey(str):
    """Route identifier such as ``api.admin.coupon.destroy``."""

    def __new__(cls, raw: str):
        if not isinstance(raw, str):
            raise ValueError('operation key must be a string')
        _check_length('operation key', raw)
        if not OPERATION_KEY_RE.match(raw):
            raise ValueError('operation key must look like scope.area.resource.action')
        return super().__new__(cls, raw)

    @property
    def action(self) -> str:
        return self.rsplit('.', 1)[1]


class ShortKey(str):
    """Short machine name such as ``coupon_delete``."""

    def __new__(cls, raw: str):
        if not isinstance(raw, str):
            raise ValueError('short key must be a string')
        _check_length('short key', raw)
        if not SHORT_KEY_RE.match(raw):
            raise ValueError('short key may only contain lowercase letters, digits and underscores')
        return super().__new__(cls, raw)


LookupKey = Union[OperationKey, ShortKey]


def parse_lookup_key(raw: str) -> LookupKey:
    """Classify a key passed to an authorization check."""
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError('key must be a non-empty string')
    if '.' in raw:
        return OperationKey(raw)
    return ShortKey(raw)


__all__ = ['OperationKey', 'ShortKey', 'LookupKey', 'parse_lookup_key', 'KEY_MIN_LEN', 'KEY_MAX_LEN']
