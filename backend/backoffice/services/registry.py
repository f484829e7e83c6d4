"""Right Registry: the persisted set of protected operations."""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from backoffice import get_db
from backoffice.errors import Conflict, NotFound, ValidationError
from backoffice.models.access import AccessRight, Grant
from backoffice.schemas.keys import OperationKey, ShortKey
from backoffice.services.grants import current_grant_index
from backoffice.utils.listing import Page, apply_search, apply_sort, paginate
from backoffice.utils.validation import ErrorMap, add_error, check_text, raise_if_errors

logger = logging.getLogger(__name__)

RIGHT_FIELDS = ('operation_key', 'short_key', 'short_description', 'details')
RIGHT_SORT_FIELDS = {
    'id': AccessRight.id,
    'operation_key': AccessRight.operation_key,
    'short_key': AccessRight.short_key,
    'short_description': AccessRight.short_description,
    'details': AccessRight.details,
    'created_at': AccessRight.created_at,
    'updated_at': AccessRight.updated_at,
}


def _check_key(errors: ErrorMap, field: str, value: Any, key_type) -> Optional[str]:
    value = check_text(errors, field, value, 5, 200)
    if value is None or field in errors:
        return value
    try:
        return str(key_type(value))
    except ValueError as e:
        add_error(errors, field, str(e))
        return value


def validate_right_fields(data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Validate right fields; with ``partial`` only the supplied keys are checked."""
    errors: ErrorMap = {}
    out: Dict[str, Any] = {}
    if not partial or 'operation_key' in data:
        out['operation_key'] = _check_key(errors, 'operation_key', data.get('operation_key'), OperationKey)
    if not partial or 'short_key' in data:
        out['short_key'] = _check_key(errors, 'short_key', data.get('short_key'), ShortKey)
    if not partial or 'short_description' in data:
        out['short_description'] = check_text(errors, 'short_description', data.get('short_description'), 5, 300)
    if not partial or 'details' in data:
        out['details'] = check_text(errors, 'details', data.get('details'), 10, 1000, required=False)
    raise_if_errors(errors)
    return out


def _ensure_unique(session, fields: Dict[str, Any], exclude_id: Optional[int] = None):
    errors: ErrorMap = {}
    for field in ('operation_key', 'short_key'):
        if field not in fields:
            continue
        stmt = select(AccessRight.id).where(getattr(AccessRight, field) == fields[field])
        if exclude_id is not None:
            stmt = stmt.where(AccessRight.id != exclude_id)
        if session.execute(stmt).first() is not None:
            add_error(errors, field, f'The {field} has already been taken.')
    raise_if_errors(errors)


def grant_count(session, right_id: int) -> int:
    return session.scalar(select(func.count(Grant.id)).where(Grant.access_right_id == right_id)) or 0


def upsert_right(session, operation_key: str, short_key: str, short_description: str,
                 details: Optional[str] = None) -> Tuple[AccessRight, bool]:
    """Insert or refresh a right keyed by ``operation_key``; the caller commits.

    Returns ``(right, created)``.
    """
    fields = validate_right_fields({
        'operation_key': operation_key,
        'short_key': short_key,
        'short_description': short_description,
        'details': details,
    })
    right = session.execute(
        select(AccessRight).where(AccessRight.operation_key == fields['operation_key'])
    ).scalar_one_or_none()
    if right is None:
        _ensure_unique(session, fields)
        right = AccessRight(**fields)
        session.add(right)
        session.flush()
        return right, True
    if fields['short_key'] != right.short_key:
        _ensure_unique(session, {'short_key': fields['short_key']}, exclude_id=right.id)
        if grant_count(session, right.id):
            raise Conflict(f'Short key of {right.operation_key} is referenced by grants and cannot change.')
        right.short_key = fields['short_key']
    right.short_description = fields['short_description']
    right.details = fields['details']
    session.flush()
    return right, False


def declare_right(operation_key: str, short_key: str, short_description: str,
                  details: Optional[str] = None) -> AccessRight:
    """Idempotent upsert by operation key; grants are left untouched."""
    session = get_db()
    try:
        right, created = upsert_right(session, operation_key, short_key, short_description, details)
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ValidationError.single('operation_key', 'The access right was declared concurrently; retry.')
    except Exception:
        session.rollback()
        raise
    logger.info('Access right %s %s', right.operation_key, 'created' if created else 'refreshed')
    return right


def create_right(data: Dict[str, Any]) -> AccessRight:
    session = get_db()
    fields = validate_right_fields(data)
    try:
        _ensure_unique(session, fields)
        right = AccessRight(**fields)
        session.add(right)
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ValidationError.single('operation_key', 'The operation_key has already been taken.')
    except Exception:
        session.rollback()
        raise
    logger.info('Access right created: id=%s operation_key=%s', right.id, right.operation_key)
    return right


def get_right(right_id: int) -> AccessRight:
    right = get_db().get(AccessRight, right_id)
    if right is None:
        raise NotFound('Access right not found.')
    return right


def update_right(right_id: int, data: Dict[str, Any]) -> AccessRight:
    """Correct a right's fields. Keys are frozen once any grant references the right."""
    session = get_db()
    fields = validate_right_fields({k: v for k, v in data.items() if k in RIGHT_FIELDS}, partial=True)
    keys_changed = False
    try:
        right = session.execute(
            select(AccessRight).where(AccessRight.id == right_id).with_for_update()
        ).scalar_one_or_none()
        if right is None:
            raise NotFound('Access right not found.')
        changed_keys = {k: v for k, v in fields.items()
                        if k in ('operation_key', 'short_key') and v != getattr(right, k)}
        if changed_keys:
            _ensure_unique(session, changed_keys, exclude_id=right.id)
            if grant_count(session, right.id):
                raise Conflict('Access right is referenced by grants; delete and re-create it to change its keys.')
            keys_changed = True
        for k, v in fields.items():
            setattr(right, k, v)
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ValidationError.single('operation_key', 'The operation_key or short_key has already been taken.')
    except Exception:
        session.rollback()
        raise
    if keys_changed:
        current_grant_index().invalidate_all()
    logger.info('Access right updated: id=%s operation_key=%s', right.id, right.operation_key)
    return right


def delete_right(right_id: int):
    """Delete an unreferenced right; referenced rights raise ``Conflict``."""
    session = get_db()
    try:
        right = session.execute(
            select(AccessRight).where(AccessRight.id == right_id).with_for_update()
        ).scalar_one_or_none()
        if right is None:
            raise NotFound('Access right not found.')
        refs = grant_count(session, right.id)
        if refs:
            raise Conflict(f'Cannot delete access right granted to {refs} role(s).')
        operation_key = right.operation_key
        session.delete(right)
        session.commit()
    except IntegrityError:
        session.rollback()
        raise Conflict('Cannot delete access right while it is granted to a role.')
    except Exception:
        session.rollback()
        raise
    current_grant_index().invalidate_all()
    logger.info('Access right deleted: id=%s operation_key=%s', right_id, operation_key)


def list_rights(search: Optional[str] = None, sort_by: Optional[str] = None, sort_order: Optional[str] = None,
                page=None, per_page=None) -> Page:
    q = get_db().query(AccessRight)
    q = apply_search(q, search, [AccessRight.operation_key, AccessRight.short_key, AccessRight.short_description])
    q = apply_sort(q, sort_by, sort_order, RIGHT_SORT_FIELDS, 'created_at', AccessRight.id)
    return paginate(q, page, per_page)


__all__ = [
    'validate_right_fields', 'upsert_right', 'declare_right', 'create_right', 'get_right',
    'update_right', 'delete_right', 'list_rights', 'grant_count',
]
