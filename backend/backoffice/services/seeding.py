"""Synchronization protocol between code-declared rights and persisted grants.

Run at deploy/bootstrap time. Converges the registry and the bootstrap roles'
grant sets; running it twice leaves the same content as running it once.
Grants are only ever added here, never removed.
"""
from __future__ import annotations
import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from backoffice import get_db
from backoffice.constants.access_rights import BOOTSTRAP_ROLES, RIGHT_DECLARATIONS, BootstrapRole, RightDeclaration
from backoffice.errors import AccessControlError
from backoffice.models.access import AccessRight, AccessSyncState, Grant, Role
from backoffice.services.grants import current_grant_index, mark_grants_changed
from backoffice.services.registry import upsert_right

logger = logging.getLogger(__name__)

SYNC_TARGET = 'access'
_sync_lock = threading.Lock()


@dataclass
class SyncReport:
    rights_created: List[str] = field(default_factory=list)
    rights_refreshed: List[str] = field(default_factory=list)
    # operation_key -> messages for declarations that failed validation
    failures: Dict[str, List[str]] = field(default_factory=dict)
    roles_created: List[str] = field(default_factory=list)
    grants_added: Dict[str, List[str]] = field(default_factory=dict)
    role_failures: Dict[str, str] = field(default_factory=dict)
    role_rights: Dict[str, List[str]] = field(default_factory=dict)
    checksum: Optional[str] = None
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures and not self.role_failures

    def summary(self) -> str:
        added = sum(len(v) for v in self.grants_added.values())
        return (f'rights created={len(self.rights_created)} refreshed={len(self.rights_refreshed)} '
                f'failed={len(self.failures)} roles created={len(self.roles_created)} grants added={added}')


def roles_checksum(role_rights: Dict[str, List[str]]) -> str:
    canonical = json.dumps(role_rights, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def _error_messages(e: AccessControlError) -> List[str]:
    if e.errors:
        return [f'{f}: {m}' for f, msgs in sorted(e.errors.items()) for m in msgs]
    return [e.message]


def _insert_sync_state(session) -> bool:
    """Create the lock row if missing; False when a concurrent run created it first."""
    savepoint = session.begin_nested()
    try:
        session.add(AccessSyncState(name=SYNC_TARGET, runs=0))
        session.flush()
        savepoint.commit()
    except IntegrityError:
        savepoint.rollback()
        logger.info('Sync state row %s created concurrently; waiting on its lock', SYNC_TARGET)
        return False
    return True


def _lock_sync_state(session) -> AccessSyncState:
    # the migration creates the row; the insert covers schemas built with create_all
    stmt = select(AccessSyncState).where(AccessSyncState.name == SYNC_TARGET).with_for_update()
    state = session.execute(stmt).scalar_one_or_none()
    if state is None:
        _insert_sync_state(session)
        state = session.execute(stmt).scalar_one()
    return state


def _ensure_role(session, boot: BootstrapRole) -> Tuple[Role, bool]:
    role = session.execute(select(Role).where(Role.name == boot.name).with_for_update()).scalar_one_or_none()
    if role is not None:
        return role, False
    role = Role(name=boot.name, description=boot.description, is_active=True, is_default=False)
    session.add(role)
    session.flush()
    return role, True


def _grant_missing(session, role: Role, rights: Iterable[AccessRight]) -> List[str]:
    held = set(session.execute(select(Grant.access_right_id).where(Grant.role_id == role.id)).scalars())
    added = []
    for right in rights:
        if right.id in held:
            continue
        session.add(Grant(role_id=role.id, access_right_id=right.id))
        added.append(right.operation_key)
    session.flush()
    return added


def _role_rights_map(session, names: Sequence[str]) -> Dict[str, List[str]]:
    rows = session.execute(
        select(Role.name, AccessRight.operation_key)
        .join(Grant, Grant.role_id == Role.id)
        .join(AccessRight, AccessRight.id == Grant.access_right_id)
        .where(Role.name.in_(list(names)))
    ).all()
    mapping: Dict[str, List[str]] = {n: [] for n in names}
    for name, key in rows:
        mapping[name].append(key)
    return {n: sorted(keys) for n, keys in mapping.items()}


def sync_access(declarations: Optional[Sequence[RightDeclaration]] = None,
                bootstrap_roles: Optional[Sequence[BootstrapRole]] = None,
                dry_run: bool = False) -> SyncReport:
    """Upsert declared rights, then grant bootstrap roles their admitted rights.

    A declaration that fails validation is reported and skipped; the others
    still apply. Each role's grant assignment is all-or-nothing.
    """
    declarations = RIGHT_DECLARATIONS if declarations is None else declarations
    bootstrap_roles = BOOTSTRAP_ROLES if bootstrap_roles is None else bootstrap_roles
    report = SyncReport(dry_run=dry_run)
    session = get_db()
    with _sync_lock:
        try:
            state = _lock_sync_state(session)

            for decl in declarations:
                savepoint = session.begin_nested()
                try:
                    right, created = upsert_right(session, decl.operation_key, decl.short_key,
                                                  decl.short_description, decl.details)
                    savepoint.commit()
                except AccessControlError as e:
                    savepoint.rollback()
                    report.failures[decl.operation_key] = _error_messages(e)
                    logger.warning('Skipping access right %s: %s', decl.operation_key, e.message)
                    continue
                (report.rights_created if created else report.rights_refreshed).append(right.operation_key)

            rights = session.execute(select(AccessRight).order_by(AccessRight.id.asc())).scalars().all()
            for boot in bootstrap_roles:
                savepoint = session.begin_nested()
                try:
                    role, created = _ensure_role(session, boot)
                    added = _grant_missing(session, role, [r for r in rights if boot.admits(r.operation_key)])
                    if added:
                        mark_grants_changed(role)
                        session.flush()
                    savepoint.commit()
                except Exception as e:
                    savepoint.rollback()
                    report.role_failures[boot.name] = str(e)
                    logger.error('Grant assignment for role %s rolled back: %s', boot.name, e)
                    continue
                if created:
                    report.roles_created.append(boot.name)
                report.grants_added[boot.name] = added

            report.role_rights = _role_rights_map(session, [b.name for b in bootstrap_roles])
            report.checksum = roles_checksum(report.role_rights)
            state.runs += 1
            state.checksum = report.checksum
            state.last_synced_at = datetime.now(timezone.utc)
            if dry_run:
                session.rollback()
            else:
                session.commit()
        except Exception:
            session.rollback()
            raise
    if not dry_run:
        current_grant_index().invalidate_all()
    logger.info('Access sync%s finished: %s', ' (dry run)' if dry_run else '', report.summary())
    return report


__all__ = ['SyncReport', 'sync_access', 'roles_checksum', 'SYNC_TARGET']
