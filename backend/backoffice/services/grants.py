"""Grant Index and the authorization decision.

``GrantIndex`` caches one immutable ``GrantSnapshot`` per role, tagged with the
role's persisted ``grants_version``. Every grant, revoke or role change bumps
that version in the same transaction, so each check does one primary-key read
of the version and rebuilds the snapshot when it moved, whichever process
committed the change. ``invalidate`` additionally drops the local entry right
after a commit. Builds and invalidations of a role serialize on that role's
lock stripe; the dict itself is only swapped or popped under ``_store_guard``.
"""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backoffice.errors import AuthorizationUnavailable, NotFound, ValidationError
from backoffice.models.access import AccessRight, Grant, Role
from backoffice.schemas.keys import parse_lookup_key
from backoffice.schemas.session import GrantEntry, grant_entries

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


@dataclass(frozen=True)
class GrantSnapshot:
    role_id: int
    is_active: bool
    version: int
    entries: Tuple[GrantEntry, ...]
    operation_keys: FrozenSet[str]
    short_keys: FrozenSet[str]

    @classmethod
    def build(cls, role_id: int, is_active: bool, version: int,
              pairs: Iterable[Tuple[str, str]]) -> 'GrantSnapshot':
        entries = grant_entries(pairs)
        return cls(
            role_id=role_id,
            is_active=bool(is_active),
            version=version,
            entries=entries,
            operation_keys=frozenset(e.operation_key for e in entries),
            short_keys=frozenset(e.short_key for e in entries),
        )

    def allows(self, key: str) -> bool:
        # Same rule as schemas.session.entry_matches, via set lookups
        if not self.is_active:
            return False
        return key in self.operation_keys or key in self.short_keys

    @property
    def effective_entries(self) -> Tuple[GrantEntry, ...]:
        return self.entries if self.is_active else ()


def mark_grants_changed(role: Role):
    """Stage a ``grants_version`` bump; it lands with the caller's commit."""
    role.grants_version = Role.grants_version + 1


class GrantIndex:
    def __init__(self, session_provider: Optional[Callable] = None, stripes: int = LOCK_STRIPES):
        self._session_provider = session_provider
        self._snapshots: Dict[int, GrantSnapshot] = {}
        # fixed stripe set: memory stays bounded whatever role ids callers pass
        self._locks = tuple(threading.Lock() for _ in range(stripes))
        self._store_guard = threading.Lock()
        self._generation = 0

    def _session(self):
        if self._session_provider is not None:
            return self._session_provider()
        from backoffice import get_db
        return get_db()

    def _lock_for(self, role_id: int) -> threading.Lock:
        return self._locks[role_id % len(self._locks)]

    def _current_version(self, role_id: int) -> int:
        try:
            version = self._session().execute(
                select(Role.grants_version).where(Role.id == role_id)
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.exception('Failed to read grants version for role %s', role_id)
            raise AuthorizationUnavailable('Grant data is temporarily unavailable.') from e
        if version is None:
            raise NotFound('Role not found.')
        return version

    def snapshot(self, role_id: int) -> GrantSnapshot:
        version = self._current_version(role_id)
        snap = self._snapshots.get(role_id)
        if snap is not None and snap.version == version:
            return snap
        with self._lock_for(role_id):
            snap = self._snapshots.get(role_id)
            if snap is not None and snap.version == version:
                return snap
            generation = self._generation
            snap = self._load(role_id)
            with self._store_guard:
                # an invalidate_all() during the load means the data may predate it
                if generation == self._generation:
                    self._snapshots[role_id] = snap
            return snap

    def _load(self, role_id: int) -> GrantSnapshot:
        session = self._session()
        try:
            row = session.execute(
                select(Role.id, Role.is_active, Role.grants_version).where(Role.id == role_id)
            ).one_or_none()
            if row is None:
                raise NotFound('Role not found.')
            pairs = session.execute(
                select(AccessRight.operation_key, AccessRight.short_key)
                .join(Grant, Grant.access_right_id == AccessRight.id)
                .where(Grant.role_id == role_id)
            ).all()
        except SQLAlchemyError as e:
            logger.exception('Failed to load grants for role %s', role_id)
            raise AuthorizationUnavailable('Grant data is temporarily unavailable.') from e
        return GrantSnapshot.build(row.id, row.is_active, row.grants_version, [(p[0], p[1]) for p in pairs])

    def invalidate(self, role_id: int):
        with self._lock_for(role_id):
            with self._store_guard:
                self._snapshots.pop(role_id, None)

    def invalidate_all(self):
        with self._store_guard:
            self._generation += 1
            self._snapshots = {}

    def cached_role_ids(self) -> List[int]:
        return sorted(self._snapshots)


def current_grant_index() -> GrantIndex:
    return current_app.extensions['grant_index']


def _check_role_id(role_id) -> int:
    if isinstance(role_id, bool) or not isinstance(role_id, int) or role_id < 1:
        raise ValidationError.single('role_id', 'The role_id must be a positive integer.')
    return role_id


def is_authorized(role_id: int, key: str) -> bool:
    """Return True iff the role is active and holds a right matching ``key``.

    ``key`` may be an operation key or a short key. Denial is a ``False``
    result; only malformed input, an unknown role or an unreadable store raise.
    """
    _check_role_id(role_id)
    try:
        lookup = parse_lookup_key(key)
    except ValueError as e:
        raise ValidationError.single('key', str(e))
    return current_grant_index().snapshot(role_id).allows(lookup)


def _get_role(session, role_id: int, lock: bool = False) -> Role:
    stmt = select(Role).where(Role.id == role_id)
    if lock:
        stmt = stmt.with_for_update()
    role = session.execute(stmt).scalar_one_or_none()
    if role is None:
        raise NotFound('Role not found.')
    return role


def _get_right(session, right_id: int, lock: bool = False) -> AccessRight:
    stmt = select(AccessRight).where(AccessRight.id == right_id)
    if lock:
        stmt = stmt.with_for_update()
    right = session.execute(stmt).scalar_one_or_none()
    if right is None:
        raise NotFound('Access right not found.')
    return right


def grant_right(role_id: int, right_id: int) -> bool:
    """Grant a right to a role. Returns False when it was already held."""
    from backoffice import get_db
    session = get_db()
    try:
        role = _get_role(session, role_id, lock=True)
        # lock the right so a concurrent delete_right cannot orphan the new grant
        right = _get_right(session, right_id, lock=True)
        existing = session.execute(
            select(Grant.id).where(Grant.role_id == role.id, Grant.access_right_id == right.id)
        ).scalar_one_or_none()
        if existing is not None:
            session.rollback()
            return False
        session.add(Grant(role_id=role.id, access_right_id=right.id))
        mark_grants_changed(role)
        session.commit()
    except IntegrityError:
        # lost a race against an identical grant; the pair exists either way
        session.rollback()
        return False
    except Exception:
        session.rollback()
        raise
    finally:
        current_grant_index().invalidate(role_id)
    logger.info('Granted %s to role %s', right.operation_key, role.id)
    return True


def revoke_right(role_id: int, right_id: int) -> bool:
    """Revoke a right from a role. Returns False when it was not held."""
    from backoffice import get_db
    session = get_db()
    try:
        role = _get_role(session, role_id, lock=True)
        right = _get_right(session, right_id)
        grant = session.execute(
            select(Grant).where(Grant.role_id == role.id, Grant.access_right_id == right.id)
        ).scalar_one_or_none()
        if grant is None:
            session.rollback()
            return False
        session.delete(grant)
        mark_grants_changed(role)
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        current_grant_index().invalidate(role_id)
    logger.info('Revoked %s from role %s', right.operation_key, role.id)
    return True


def role_rights(role_id: int) -> List[AccessRight]:
    from backoffice import get_db
    session = get_db()
    _get_role(session, role_id)
    return session.execute(
        select(AccessRight)
        .join(Grant, Grant.access_right_id == AccessRight.id)
        .where(Grant.role_id == role_id)
        .order_by(AccessRight.operation_key.asc())
    ).scalars().all()


__all__ = [
    'GrantSnapshot', 'GrantIndex', 'current_grant_index', 'is_authorized', 'mark_grants_changed',
    'grant_right', 'revoke_right', 'role_rights',
]
