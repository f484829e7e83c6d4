import pytest
from sqlalchemy.exc import OperationalError

from backoffice import get_db
from backoffice.decorators.auth import FORBIDDEN_MESSAGE
from backoffice.models.access import AccessRight, Role
from backoffice.models.audit import AuditLog
from backoffice.services.grants import GrantIndex
from backoffice.services.seeding import sync_access
from tests.test_utils_seed import ensure_feature, ensure_role, ensure_user


@pytest.fixture()
def seeded(app_instance):
    sync_access()
    session = get_db()
    admin_role = session.query(Role).filter_by(name='Admin').one()
    sales_role = session.query(Role).filter_by(name='Salesperson').one()
    admin = ensure_user('admin@example.com', admin_role)
    seller = ensure_user('seller@example.com', sales_role)
    return {'admin': admin, 'seller': seller, 'admin_role': admin_role, 'sales_role': sales_role}


def _right_id(operation_key):
    return get_db().query(AccessRight.id).filter_by(operation_key=operation_key).scalar()


def test_requires_token(client, seeded):
    r = client.get('/api/role-list')
    assert r.status_code == 401


def test_user_without_role_is_forbidden(client, seeded, auth_headers):
    nobody = ensure_user('nobody@example.com')
    r = client.get('/api/role-list', headers=auth_headers(nobody))
    assert r.status_code == 403
    body = r.get_json()
    assert body['success'] is False
    assert body['message'] == FORBIDDEN_MESSAGE


def test_inactive_user_is_forbidden(client, seeded, auth_headers):
    retired = ensure_user('retired@example.com', seeded['admin_role'], is_active=False)
    assert client.get('/api/role-list', headers=auth_headers(retired)).status_code == 403


def test_salesperson_cannot_delete(client, seeded, auth_headers):
    target = ensure_role('Temporary Crew')
    r = client.delete(f'/api/role-delete/{target.id}', headers=auth_headers(seeded['seller']))
    assert r.status_code == 403
    assert get_db().get(Role, target.id) is not None


def test_access_right_list_envelope_and_meta(client, seeded, auth_headers):
    r = client.get('/api/access-right-list?per_page=5&page=2&sort_by=operation_key&sort_order=asc',
                   headers=auth_headers(seeded['admin']))
    assert r.status_code == 200
    body = r.get_json()
    assert body['success'] is True
    assert len(body['data']) == 5
    assert body['meta'] == {'current_page': 2, 'last_page': 16, 'per_page': 5, 'total': 80, 'from': 6, 'to': 10}
    keys = [row['operation_key'] for row in body['data']]
    assert keys == sorted(keys)


def test_list_rejects_bad_pagination(client, seeded, auth_headers):
    r = client.get('/api/access-right-list?per_page=500', headers=auth_headers(seeded['admin']))
    assert r.status_code == 422
    assert 'per_page' in r.get_json()['errors']


def test_create_right_and_audit(client, seeded, auth_headers):
    r = client.post('/api/access-right-create', headers=auth_headers(seeded['admin']), json={
        'operation_key': 'api.admin.invoice.index',
        'short_key': 'invoice_list',
        'short_description': 'View invoice list',
    })
    assert r.status_code == 201
    data = r.get_json()['data']
    assert data['short_key'] == 'invoice_list'
    entry = get_db().query(AuditLog).filter_by(action='RIGHT.CREATE').one()
    assert entry.entity_id == str(data['id'])
    assert entry.actor_user_id == seeded['admin'].id
    assert entry.meta['operation_key'] == 'api.admin.invoice.index'


def test_create_right_validation_errors(client, seeded, auth_headers):
    r = client.post('/api/access-right-create', headers=auth_headers(seeded['admin']), json={
        'operation_key': 'Invoice',
        'short_key': 'coupon_list',
    })
    assert r.status_code == 422
    errors = r.get_json()['errors']
    assert set(errors) == {'operation_key', 'short_description'}
    assert get_db().query(AuditLog).count() == 0


def test_delete_referenced_right_conflicts(client, seeded, auth_headers):
    r = client.delete(f"/api/access-right-delete/{_right_id('api.admin.coupon.index')}",
                      headers=auth_headers(seeded['admin']))
    assert r.status_code == 409


def test_role_crud(client, seeded, auth_headers):
    headers = auth_headers(seeded['admin'])
    r = client.post('/api/role-create', headers=headers, json={'name': 'Support', 'description': 'Support desk'})
    assert r.status_code == 201
    role = r.get_json()['data']
    assert role['created_by'] == seeded['admin'].id
    assert role['is_active'] is True

    r = client.put(f"/api/role-update/{role['id']}", headers=headers, json={'is_active': False})
    assert r.get_json()['data']['is_active'] is False

    r = client.get('/api/role-list?is_active=false', headers=headers)
    assert [row['name'] for row in r.get_json()['data']] == ['Support']

    r = client.get(f"/api/role-show/{role['id']}", headers=headers)
    assert r.get_json()['data']['users'] == []

    assert client.delete(f"/api/role-delete/{role['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/role-show/{role['id']}", headers=headers).status_code == 404


def test_role_list_with_users(client, seeded, auth_headers):
    r = client.get('/api/role-list?with_users=1&sort_by=name&sort_order=asc', headers=auth_headers(seeded['admin']))
    rows = r.get_json()['data']
    assert [row['name'] for row in rows] == ['Admin', 'Salesperson']
    assert rows[1]['users_count'] == 1
    assert rows[1]['users'][0]['email'] == 'seller@example.com'


def test_role_list_rejects_bad_boolean(client, seeded, auth_headers):
    r = client.get('/api/role-list?is_active=maybe', headers=auth_headers(seeded['admin']))
    assert r.status_code == 422


def test_delete_role_with_users_conflicts(client, seeded, auth_headers):
    r = client.delete(f"/api/role-delete/{seeded['sales_role'].id}", headers=auth_headers(seeded['admin']))
    assert r.status_code == 409
    assert r.get_json()['message'] == 'Cannot delete role with assigned users.'


def test_missing_role_is_404(client, seeded, auth_headers):
    r = client.get('/api/role-show/999', headers=auth_headers(seeded['admin']))
    assert r.status_code == 404
    assert r.get_json()['error']['title'] == 'Not Found'


def test_revoke_takes_effect_on_next_request(client, seeded, auth_headers):
    seller_headers = auth_headers(seeded['seller'])
    assert client.get('/api/role-list', headers=seller_headers).status_code == 200

    sales_id = seeded['sales_role'].id
    right_id = _right_id('api.admin.role.index')
    r = client.delete(f'/api/role-revoke/{sales_id}/{right_id}', headers=auth_headers(seeded['admin']))
    assert r.get_json()['data']['changed'] is True
    assert client.get('/api/role-list', headers=seller_headers).status_code == 403

    r = client.put(f'/api/role-grant/{sales_id}/{right_id}', headers=auth_headers(seeded['admin']))
    assert r.get_json()['data']['changed'] is True
    assert client.get('/api/role-list', headers=seller_headers).status_code == 200
    actions = [a for (a,) in get_db().query(AuditLog.action).order_by(AuditLog.id).all()]
    assert actions == ['ROLE.REVOKE', 'ROLE.GRANT']


def test_role_rights_listing(client, seeded, auth_headers):
    r = client.get(f"/api/role-rights/{seeded['sales_role'].id}", headers=auth_headers(seeded['admin']))
    keys = [row['operation_key'] for row in r.get_json()['data']]
    assert keys == sorted(keys)
    assert 'api.admin.coupon.index' in keys
    assert 'api.admin.coupon.destroy' not in keys


def test_user_role_assignment(client, seeded, auth_headers):
    headers = auth_headers(seeded['admin'])
    newcomer = ensure_user('new@example.com')
    r = client.put(f'/api/user-role/{newcomer.id}', headers=headers, json={'role_id': seeded['sales_role'].id})
    assert r.status_code == 200
    assert r.get_json()['data']['role_id'] == seeded['sales_role'].id
    assert client.get('/api/role-list', headers=auth_headers(newcomer)).status_code == 200

    assert client.put(f'/api/user-role/{newcomer.id}', headers=headers, json={'role_id': 'x'}).status_code == 422
    assert client.put(f'/api/user-role/{newcomer.id}', headers=headers, json={'role_id': 999}).status_code == 404


def test_grant_store_failure_is_503(client, seeded, auth_headers, app_instance):
    class BrokenSession:
        def execute(self, *a, **k):
            raise OperationalError('SELECT 1', {}, Exception('disk I/O error'))

    app_instance.extensions['grant_index'] = GrantIndex(session_provider=BrokenSession)
    r = client.get('/api/role-list', headers=auth_headers(seeded['admin']))
    assert r.status_code == 503
    assert r.get_json()['success'] is False


def test_session_payload_endpoint(client, seeded, auth_headers):
    ensure_feature('coupons')
    r = client.get('/api/session', headers=auth_headers(seeded['seller']))
    assert r.status_code == 200
    data = r.get_json()['data']
    assert data['enabledFeatures'] == ['coupons']
    shorts = {g['shortKey'] for g in data['grants']}
    assert 'coupon_list' in shorts
    assert 'coupon_delete' not in shorts


def test_session_script_endpoint(client, seeded, auth_headers):
    r = client.get('/api/session/permissions.js', headers=auth_headers(seeded['seller']))
    assert r.status_code == 200
    assert r.mimetype == 'application/javascript'
    text = r.get_data(as_text=True)
    assert 'AccessMirror.load(' in text
    assert '"shortKey": "coupon_list"' in text
