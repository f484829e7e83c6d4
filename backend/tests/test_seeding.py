import threading

import pytest

import backoffice
from backoffice import create_app, get_db
from backoffice.constants.access_rights import (
    BOOTSTRAP_ROLES, RIGHT_DECLARATIONS, BootstrapRole, RightDeclaration,
)
from backoffice.models.access import AccessRight, AccessSyncState, Base, Grant, Role
from backoffice.services import grants, seeding
from backoffice.services.grants import GrantIndex, is_authorized
from backoffice.services.seeding import sync_access


def _role(name):
    return get_db().query(Role).filter_by(name=name).one()


def _grant_pairs():
    return sorted(get_db().query(Grant.role_id, Grant.access_right_id).all())


def test_declarations_are_unique():
    assert len({d.operation_key for d in RIGHT_DECLARATIONS}) == len(RIGHT_DECLARATIONS)
    assert len({d.short_key for d in RIGHT_DECLARATIONS}) == len(RIGHT_DECLARATIONS)


def test_first_sync_seeds_rights_and_bootstrap_roles(app_instance):
    report = sync_access()
    assert report.ok
    assert len(report.rights_created) == len(RIGHT_DECLARATIONS)
    assert report.roles_created == ['Admin', 'Salesperson']
    assert len(report.role_rights['Admin']) == len(RIGHT_DECLARATIONS)
    assert not any(k.endswith('.destroy') for k in report.role_rights['Salesperson'])
    assert get_db().get(AccessSyncState, seeding.SYNC_TARGET).runs == 1


def test_sync_is_idempotent(app_instance):
    first = sync_access()
    rights_before = sorted(get_db().query(AccessRight.operation_key, AccessRight.short_key).all())
    grants_before = _grant_pairs()

    second = sync_access()
    assert second.rights_created == []
    assert second.roles_created == []
    assert all(added == [] for added in second.grants_added.values())
    assert second.checksum == first.checksum
    assert sorted(get_db().query(AccessRight.operation_key, AccessRight.short_key).all()) == rights_before
    assert _grant_pairs() == grants_before
    assert get_db().query(Role).count() == 2


def test_coupon_delete_scenario(app_instance):
    sync_access()
    admin = _role('Admin')
    sales = _role('Salesperson')
    assert is_authorized(admin.id, 'coupon_delete') is True
    assert is_authorized(admin.id, 'api.admin.coupon.destroy') is True
    assert is_authorized(sales.id, 'coupon_delete') is False
    assert is_authorized(sales.id, 'api.admin.coupon.index') is True
    assert is_authorized(sales.id, 'coupon_list') is True


def test_invalid_declaration_is_reported_and_others_apply(app_instance):
    declarations = [
        RightDeclaration('api.admin.coupon.index', 'coupon_list', 'View coupon list', 'Allows viewing coupons.'),
        RightDeclaration('api.admin.coupon.store', 'coupon list', 'Create coupon', 'Allows creating a coupon.'),
        RightDeclaration('api.admin.coupon.update', 'coupon_update', 'Edit', 'Allows editing a coupon.'),
        RightDeclaration('api.admin.coupon.destroy', 'coupon_delete', 'Delete coupon', 'Allows removing a coupon.'),
    ]
    report = sync_access(declarations=declarations)
    assert not report.ok
    assert set(report.failures) == {'api.admin.coupon.store', 'api.admin.coupon.update'}
    assert any(m.startswith('short_key') for m in report.failures['api.admin.coupon.store'])
    assert any(m.startswith('short_description') for m in report.failures['api.admin.coupon.update'])
    stored = {k for (k,) in get_db().query(AccessRight.operation_key).all()}
    assert stored == {'api.admin.coupon.index', 'api.admin.coupon.destroy'}
    assert report.role_rights['Salesperson'] == ['api.admin.coupon.index']


def test_role_grant_assignment_is_all_or_nothing(app_instance, monkeypatch):
    real_grant_missing = seeding._grant_missing

    def flaky(session, role, rights):
        if role.name == 'Salesperson':
            real_grant_missing(session, role, list(rights)[:3])
            raise RuntimeError('connection dropped')
        return real_grant_missing(session, role, rights)

    monkeypatch.setattr(seeding, '_grant_missing', flaky)
    report = sync_access()
    assert report.role_failures == {'Salesperson': 'connection dropped'}
    assert 'Salesperson' not in report.roles_created
    assert get_db().query(Role).filter_by(name='Salesperson').one_or_none() is None
    assert len(report.role_rights['Admin']) == len(RIGHT_DECLARATIONS)

    monkeypatch.setattr(seeding, '_grant_missing', real_grant_missing)
    retry = sync_access()
    assert retry.ok
    assert retry.roles_created == ['Salesperson']


def test_dry_run_leaves_store_untouched(app_instance):
    report = sync_access(dry_run=True)
    assert report.dry_run
    assert len(report.role_rights['Admin']) == len(RIGHT_DECLARATIONS)
    session = get_db()
    assert session.query(AccessRight).count() == 0
    assert session.query(Role).count() == 0
    assert session.get(AccessSyncState, seeding.SYNC_TARGET) is None


def test_sync_never_removes_manual_grants(app_instance):
    sync_access()
    sales = _role('Salesperson')
    destroy = get_db().query(AccessRight).filter_by(operation_key='api.admin.order.destroy').one()
    grants.grant_right(sales.id, destroy.id)
    sync_access()
    assert is_authorized(sales.id, 'order_delete') is True


def test_sync_drops_cached_snapshots(app_instance, grant_index):
    sync_access()
    admin = _role('Admin')
    is_authorized(admin.id, 'coupon_list')
    assert grant_index.cached_role_ids() == [admin.id]
    sync_access()
    assert grant_index.cached_role_ids() == []


def test_custom_bootstrap_roles(app_instance):
    auditors = BootstrapRole('Auditor', 'Read-only auditors.', excluded_suffixes=('.store', '.update', '.destroy'))
    report = sync_access(bootstrap_roles=[auditors])
    assert report.role_rights['Auditor'] == sorted(
        d.operation_key for d in RIGHT_DECLARATIONS if d.operation_key.endswith('.index')
    )


@pytest.mark.parametrize('role', BOOTSTRAP_ROLES, ids=lambda r: r.name)
def test_checksum_is_stable_across_runs(app_instance, role):
    first = sync_access(bootstrap_roles=[role]).checksum
    assert sync_access(bootstrap_roles=[role]).checksum == first
    assert first == seeding.roles_checksum({role.name: sorted(
        d.operation_key for d in RIGHT_DECLARATIONS if role.admits(d.operation_key)
    )})


def test_sync_grants_reach_a_warm_cache_in_another_worker(app_instance):
    first = [d for d in RIGHT_DECLARATIONS if d.operation_key.startswith('api.admin.coupon.')]
    sync_access(declarations=first)
    sales = _role('Salesperson')
    other_worker = GrantIndex(session_provider=get_db)
    assert other_worker.snapshot(sales.id).allows('order_list') is False

    sync_access()
    assert other_worker.snapshot(sales.id).allows('order_list') is True


def test_sync_state_insert_tolerates_a_concurrent_creator(app_instance):
    sync_access()
    session = get_db()
    session.close()  # forget the row, as a run that raced the creator would
    assert seeding._insert_sync_state(get_db()) is False
    assert seeding._lock_sync_state(get_db()).runs == 1
    get_db().rollback()


def test_concurrent_syncs_converge(tmp_path):
    app = create_app({
        'DATABASE_URL': f"sqlite:///{tmp_path / 'access.db'}",
        'JWT_SECRET_KEY': 'test-secret-key-with-enough-length-for-hs256',
        'ACCESS_SYNC_ON_STARTUP': False,
        'TESTING': True,
    })
    Base.metadata.create_all(backoffice.db_engine)
    reports, errors = [], []

    def deploy():
        with app.app_context():
            try:
                reports.append(sync_access())
            except Exception as e:
                errors.append(e)

    workers = [threading.Thread(target=deploy) for _ in range(2)]
    for w in workers:
        w.start()
    for w in workers:
        w.join()

    assert errors == []
    assert sorted(len(r.rights_created) for r in reports) == [0, len(RIGHT_DECLARATIONS)]
    assert reports[0].checksum == reports[1].checksum
    with app.app_context():
        session = get_db()
        assert session.get(AccessSyncState, seeding.SYNC_TARGET).runs == 2
        assert session.query(Role).count() == 2
        assert session.query(AccessRight).count() == len(RIGHT_DECLARATIONS)
