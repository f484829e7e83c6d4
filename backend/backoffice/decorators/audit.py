"""Audit logging decorator for admin route handlers.

Usage::

    @audit_log('ROLE.CREATE', entity='Role', entity_id_key='id', meta_keys=['name'])
    def create_role_view():
        ... return envelope(data={'id': role.id, 'name': role.name}), 201

Parameters:
  action: required audit action code (e.g. ROLE.CREATE)
  entity: optional entity label (Role, AccessRight, User)
  entity_id_key: key in the response envelope's ``data`` whose value becomes entity_id.
  entity_id_arg: name of the view argument to use for entity_id (fallback if entity_id_key absent).
  meta_keys: keys projected from ``data`` into meta.
  meta_builder: callable(data, kwargs) -> dict; overrides meta_keys.

Only successful responses are audited: a handler that raises writes nothing.
"""
from __future__ import annotations
import logging
from functools import wraps
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from backoffice import get_db
from backoffice.services.audit import add_audit

logger = logging.getLogger(__name__)


def _extract_data(rv: Any) -> dict:
    """Return the envelope's ``data`` dict from a view return value."""
    body = rv[0] if isinstance(rv, tuple) and rv else rv
    if isinstance(body, dict) and isinstance(body.get('data'), dict):
        return body['data']
    return {}


def audit_log(
    action: str,
    *,
    entity: Optional[str] = None,
    entity_id_key: Optional[str] = None,
    entity_id_arg: Optional[str] = None,
    meta_keys: Optional[Iterable[str]] = None,
    meta_builder: Optional[Callable[[dict, dict], dict]] = None,
):
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            rv = fn(*args, **kwargs)
            data = _extract_data(rv)
            entity_id = None
            if entity_id_key and entity_id_key in data:
                entity_id = data.get(entity_id_key)
            elif entity_id_arg and entity_id_arg in kwargs:
                entity_id = kwargs.get(entity_id_arg)
            if meta_builder:
                meta = meta_builder(data, kwargs)
            else:
                meta = {k: data.get(k) for k in (meta_keys or ()) if k in data}
            session = get_db()
            try:
                add_audit(action, entity, entity_id, meta)
                session.commit()
            except SQLAlchemyError:
                # the audited change is already committed; losing the trail entry must not fail the response
                session.rollback()
                logger.exception('Failed to write audit entry %s', action)
            return rv
        return wrapper
    return outer
