"""Role Store: named bundles of rights and the user -> role seam."""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from backoffice import get_db
from backoffice.errors import Conflict, NotFound, ValidationError
from backoffice.models.access import Role, User
from backoffice.services.grants import current_grant_index, mark_grants_changed
from backoffice.utils.listing import Page, apply_search, apply_sort, paginate
from backoffice.utils.validation import ErrorMap, add_error, check_bool, check_text, raise_if_errors

logger = logging.getLogger(__name__)

ROLE_FIELDS = ('name', 'description', 'is_active', 'is_default')
ROLE_SORT_FIELDS = {
    'id': Role.id,
    'name': Role.name,
    'description': Role.description,
    'is_active': Role.is_active,
    'is_default': Role.is_default,
    'created_at': Role.created_at,
    'updated_at': Role.updated_at,
}


@dataclass
class RoleListing:
    role: Role
    users_count: int
    users: List[User] = field(default_factory=list)


def validate_role_fields(data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    errors: ErrorMap = {}
    out: Dict[str, Any] = {}
    if not partial or 'name' in data:
        out['name'] = check_text(errors, 'name', data.get('name'), 5, 100)
    if not partial or 'description' in data:
        out['description'] = check_text(errors, 'description', data.get('description'), 5, 1000)
    if not partial or 'is_active' in data:
        out['is_active'] = check_bool(errors, 'is_active', data.get('is_active'), default=None if partial else True)
    if not partial or 'is_default' in data:
        out['is_default'] = check_bool(errors, 'is_default', data.get('is_default'), default=None if partial else False)
    raise_if_errors(errors)
    if partial:
        out = {k: v for k, v in out.items() if v is not None}
    return out


def _ensure_name_free(session, name: str, exclude_id: Optional[int] = None):
    stmt = select(Role.id).where(Role.name == name)
    if exclude_id is not None:
        stmt = stmt.where(Role.id != exclude_id)
    if session.execute(stmt).first() is not None:
        errors: ErrorMap = {}
        add_error(errors, 'name', 'The name has already been taken.')
        raise_if_errors(errors)


def create_role(name: str, description: str, is_active: bool = True, is_default: bool = False,
                actor_id: Optional[int] = None) -> Role:
    fields = validate_role_fields({
        'name': name, 'description': description, 'is_active': is_active, 'is_default': is_default,
    })
    session = get_db()
    try:
        _ensure_name_free(session, fields['name'])
        role = Role(created_by=actor_id, **fields)
        session.add(role)
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ValidationError.single('name', 'The name has already been taken.')
    except Exception:
        session.rollback()
        raise
    logger.info('Role created: id=%s name=%s', role.id, role.name)
    return role


def get_role(role_id: int) -> Role:
    role = get_db().get(Role, role_id)
    if role is None:
        raise NotFound('Role not found.')
    return role


def users_count(role_id: int) -> int:
    return get_db().scalar(select(func.count(User.id)).where(User.role_id == role_id)) or 0


def update_role(role_id: int, data: Dict[str, Any], actor_id: Optional[int] = None) -> Role:
    fields = validate_role_fields({k: v for k, v in data.items() if k in ROLE_FIELDS}, partial=True)
    session = get_db()
    try:
        role = session.execute(select(Role).where(Role.id == role_id).with_for_update()).scalar_one_or_none()
        if role is None:
            raise NotFound('Role not found.')
        was_active = role.is_active
        if fields.get('name') and fields['name'] != role.name:
            _ensure_name_free(session, fields['name'], exclude_id=role.id)
        for k, v in fields.items():
            setattr(role, k, v)
        role.updated_by = actor_id
        if role.is_active != was_active:
            mark_grants_changed(role)
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ValidationError.single('name', 'The name has already been taken.')
    except Exception:
        session.rollback()
        raise
    finally:
        current_grant_index().invalidate(role_id)
    logger.info('Role updated: id=%s name=%s is_active=%s', role.id, role.name, role.is_active)
    return role


def delete_role(role_id: int):
    """Delete a role and its grants; blocked while any user is assigned to it.

    The assigned-user count and the delete run in one transaction with the role
    row locked, and ``assign_user_role`` takes the same lock.
    """
    session = get_db()
    try:
        role = session.execute(select(Role).where(Role.id == role_id).with_for_update()).scalar_one_or_none()
        if role is None:
            raise NotFound('Role not found.')
        assigned = session.scalar(select(func.count(User.id)).where(User.role_id == role.id)) or 0
        if assigned:
            raise Conflict('Cannot delete role with assigned users.')
        name = role.name
        session.delete(role)
        session.commit()
    except IntegrityError:
        session.rollback()
        raise Conflict('Cannot delete role with assigned users.')
    except Exception:
        session.rollback()
        raise
    finally:
        current_grant_index().invalidate(role_id)
    logger.info('Role deleted: id=%s name=%s', role_id, name)


def assign_user_role(user_id: int, role_id: Optional[int]) -> User:
    """Point a user at a role (or at none)."""
    session = get_db()
    try:
        user = session.execute(select(User).where(User.id == user_id).with_for_update()).scalar_one_or_none()
        if user is None:
            raise NotFound('User not found.')
        if role_id is not None:
            role = session.execute(select(Role).where(Role.id == role_id).with_for_update()).scalar_one_or_none()
            if role is None:
                raise NotFound('Role not found.')
        user.role_id = role_id
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info('User %s assigned role %s', user_id, role_id)
    return user


def list_roles(search: Optional[str] = None, is_active: Optional[bool] = None, sort_by: Optional[str] = None,
               sort_order: Optional[str] = None, page=None, per_page=None, include_users: bool = False) -> Page:
    session = get_db()
    counts = (
        select(User.role_id.label('role_id'), func.count(User.id).label('users_count'))
        .group_by(User.role_id)
        .subquery()
    )
    users_count_col = func.coalesce(counts.c.users_count, 0)
    q = session.query(Role, users_count_col.label('users_count')).outerjoin(counts, counts.c.role_id == Role.id)
    if include_users:
        q = q.options(selectinload(Role.users))
    q = apply_search(q, search, [Role.name, Role.description])
    if is_active is not None:
        q = q.filter(Role.is_active == is_active)
    allowed = dict(ROLE_SORT_FIELDS, users_count=users_count_col)
    q = apply_sort(q, sort_by, sort_order, allowed, 'created_at', Role.id)
    result = paginate(q, page, per_page)
    result.items = [
        RoleListing(role=role, users_count=count, users=list(role.users) if include_users else [])
        for role, count in result.items
    ]
    return result


__all__ = [
    'RoleListing', 'validate_role_fields', 'create_role', 'get_role', 'users_count',
    'update_role', 'delete_role', 'assign_user_role', 'list_roles',
]
