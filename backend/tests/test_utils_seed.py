"""Test seeding utilities to reduce duplication.

These helpers centralize creation of users, roles, rights and grants while going
through the same services production code uses, so cache invalidation happens
exactly as it would for an admin request.
"""
from typing import Iterable, Optional
from backoffice import get_db
from backoffice.models.access import AccessRight, Role, SiteFeature, User
from backoffice.services import grants, registry, roles


def short_key_for(operation_key: str) -> str:
    """api.admin.coupon.destroy -> coupon_destroy"""
    parts = operation_key.split('.')
    return f'{parts[-2]}_{parts[-1]}'


def ensure_right(operation_key: str, short_key: Optional[str] = None, description: Optional[str] = None) -> AccessRight:
    return registry.declare_right(
        operation_key,
        short_key or short_key_for(operation_key),
        description or f'Right {operation_key}',
    )


def ensure_role(name: str, keys: Iterable[str] = (), is_active: bool = True) -> Role:
    session = get_db()
    role = session.query(Role).filter_by(name=name).one_or_none()
    if role is None:
        role = roles.create_role(name, f'{name} role for tests', is_active=is_active)
    for key in keys:
        right = ensure_right(key)
        grants.grant_right(role.id, right.id)
    return role


def ensure_user(email: str, role: Optional[Role] = None, name: Optional[str] = None, is_active: bool = True) -> User:
    session = get_db()
    user = session.query(User).filter_by(email=email).one_or_none()
    if user is None:
        user = User(name=name or email.split('@')[0], email=email, is_active=is_active)
        session.add(user)
        session.commit()
    if role is not None:
        roles.assign_user_role(user.id, role.id)
    return user


def ensure_feature(name: str, is_active: bool = True) -> SiteFeature:
    session = get_db()
    feature = session.query(SiteFeature).filter_by(name=name).one_or_none()
    if feature is None:
        feature = SiteFeature(name=name, is_active=is_active)
        session.add(feature)
        session.commit()
    return feature


def seed_admin(email: str = 'admin@example.com', keys: Iterable[str] = ()):
    """User holding a role with the given rights; returns (user, role)."""
    role = ensure_role('Test Admin', keys)
    user = ensure_user(email, role)
    return user, role


__all__ = [
    'short_key_for', 'ensure_right', 'ensure_role', 'ensure_user', 'ensure_feature', 'seed_admin',
]
