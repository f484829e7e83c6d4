from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from flask import Blueprint, Response, abort, request
from flask_jwt_extended import jwt_required

from backoffice.decorators.audit import audit_log
from backoffice.decorators.auth import current_user_id, require_access
from backoffice.models.access import AccessRight, Role, User
from backoffice.schemas.session import render_client_script
from backoffice.services import grants, registry, roles
from backoffice.services.audit import current_actor_id
from backoffice.services.session import build_session_payload
from backoffice.utils.listing import Page

logger = logging.getLogger(__name__)

access_bp = Blueprint('access', __name__)


def envelope(message: str, data: Any = None, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {'success': True, 'message': message}
    if data is not None:
        body['data'] = data
    if meta is not None:
        body['meta'] = meta
    return body


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def right_to_dict(r: AccessRight) -> Dict[str, Any]:
    return {
        'id': r.id,
        'operation_key': r.operation_key,
        'short_key': r.short_key,
        'short_description': r.short_description,
        'details': r.details,
        'created_at': _iso(r.created_at),
        'updated_at': _iso(r.updated_at),
    }


def user_to_dict(u: User) -> Dict[str, Any]:
    return {'id': u.id, 'name': u.name, 'email': u.email, 'role_id': u.role_id}


def role_to_dict(r: Role, users_count: Optional[int] = None, users=None) -> Dict[str, Any]:
    out = {
        'id': r.id,
        'name': r.name,
        'description': r.description,
        'is_active': r.is_active,
        'is_default': r.is_default,
        'created_by': r.created_by,
        'updated_by': r.updated_by,
        'created_at': _iso(r.created_at),
        'updated_at': _iso(r.updated_at),
    }
    if users_count is not None:
        out['users_count'] = users_count
    if users is not None:
        out['users'] = [user_to_dict(u) for u in users]
    return out


def _bool_arg(name: str) -> Optional[bool]:
    raw = request.args.get(name)
    if raw is None or raw == '':
        return None
    lowered = raw.lower()
    if lowered in ('1', 'true'):
        return True
    if lowered in ('0', 'false'):
        return False
    abort(422, description=f'{name} must be a boolean')


def _list_args() -> Dict[str, Any]:
    return {
        'search': request.args.get('search'),
        'sort_by': request.args.get('sort_by'),
        'sort_order': request.args.get('sort_order'),
        'page': request.args.get('page'),
        'per_page': request.args.get('per_page'),
    }


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(422, description='Request body must be a JSON object')
    return data


# --- Access rights ---

@access_bp.get('/access-right-list')
@require_access('api.admin.access_right.index')
def list_access_rights():
    page: Page = registry.list_rights(**_list_args())
    logger.info('Access rights list retrieved: total=%s page=%s', page.total, page.page)
    return envelope('Access rights retrieved successfully.', [right_to_dict(r) for r in page.items], page.meta())


@access_bp.get('/access-right-show/<int:right_id>')
@require_access('api.admin.access_right.index')
def show_access_right(right_id: int):
    return envelope('Access right retrieved successfully.', right_to_dict(registry.get_right(right_id)))


@access_bp.post('/access-right-create')
@require_access('api.admin.access_right.store')
@audit_log('RIGHT.CREATE', entity='AccessRight', entity_id_key='id', meta_keys=['operation_key', 'short_key'])
def create_access_right():
    right = registry.create_right(_json_body())
    return envelope('Access right created successfully.', right_to_dict(right)), 201


@access_bp.put('/access-right-update/<int:right_id>')
@require_access('api.admin.access_right.update')
@audit_log('RIGHT.UPDATE', entity='AccessRight', entity_id_key='id', meta_keys=['operation_key', 'short_key'])
def update_access_right(right_id: int):
    right = registry.update_right(right_id, _json_body())
    return envelope('Access right updated successfully.', right_to_dict(right))


@access_bp.delete('/access-right-delete/<int:right_id>')
@require_access('api.admin.access_right.destroy')
@audit_log('RIGHT.DELETE', entity='AccessRight', entity_id_arg='right_id')
def delete_access_right(right_id: int):
    registry.delete_right(right_id)
    return envelope('Access right deleted successfully.')


# --- Roles ---

@access_bp.get('/role-list')
@require_access('api.admin.role.index')
def list_roles():
    include_users = bool(_bool_arg('with_users'))
    page: Page = roles.list_roles(is_active=_bool_arg('is_active'), include_users=include_users, **_list_args())
    data = [
        role_to_dict(row.role, row.users_count, row.users if include_users else None)
        for row in page.items
    ]
    return envelope('Roles retrieved successfully.', data, page.meta())


@access_bp.get('/role-show/<int:role_id>')
@require_access('api.admin.role.index')
def show_role(role_id: int):
    role = roles.get_role(role_id)
    users = list(role.users)
    return envelope('Role retrieved successfully.', role_to_dict(role, len(users), users))


@access_bp.post('/role-create')
@require_access('api.admin.role.store')
@audit_log('ROLE.CREATE', entity='Role', entity_id_key='id', meta_keys=['name'])
def create_role():
    data = _json_body()
    role = roles.create_role(
        data.get('name'),
        data.get('description'),
        is_active=data.get('is_active', True),
        is_default=data.get('is_default', False),
        actor_id=current_actor_id(),
    )
    return envelope('Role created successfully.', role_to_dict(role)), 201


@access_bp.put('/role-update/<int:role_id>')
@require_access('api.admin.role.update')
@audit_log('ROLE.UPDATE', entity='Role', entity_id_key='id', meta_keys=['name', 'is_active'])
def update_role(role_id: int):
    role = roles.update_role(role_id, _json_body(), actor_id=current_actor_id())
    return envelope('Role updated successfully.', role_to_dict(role))


@access_bp.delete('/role-delete/<int:role_id>')
@require_access('api.admin.role.destroy')
@audit_log('ROLE.DELETE', entity='Role', entity_id_arg='role_id')
def delete_role(role_id: int):
    roles.delete_role(role_id)
    return envelope('Role deleted successfully.')


# --- Grants ---

@access_bp.get('/role-rights/<int:role_id>')
@require_access('api.admin.role.index')
def list_role_rights(role_id: int):
    rights = grants.role_rights(role_id)
    return envelope('Role rights retrieved successfully.', [right_to_dict(r) for r in rights])


@access_bp.put('/role-grant/<int:role_id>/<int:right_id>')
@require_access('api.admin.role.update')
@audit_log('ROLE.GRANT', entity='Role', entity_id_key='role_id', meta_keys=['right_id', 'changed'])
def grant_role_right(role_id: int, right_id: int):
    changed = grants.grant_right(role_id, right_id)
    message = 'Access right granted.' if changed else 'Access right already granted.'
    return envelope(message, {'role_id': role_id, 'right_id': right_id, 'changed': changed})


@access_bp.delete('/role-revoke/<int:role_id>/<int:right_id>')
@require_access('api.admin.role.update')
@audit_log('ROLE.REVOKE', entity='Role', entity_id_key='role_id', meta_keys=['right_id', 'changed'])
def revoke_role_right(role_id: int, right_id: int):
    changed = grants.revoke_right(role_id, right_id)
    message = 'Access right revoked.' if changed else 'Access right was not granted.'
    return envelope(message, {'role_id': role_id, 'right_id': right_id, 'changed': changed})


# --- User role assignment ---

@access_bp.put('/user-role/<int:user_id>')
@require_access('api.admin.user.update')
@audit_log('USER.ROLE.SET', entity='User', entity_id_key='id', meta_keys=['role_id'])
def set_user_role(user_id: int):
    data = _json_body()
    role_id = data.get('role_id')
    if role_id is not None and (isinstance(role_id, bool) or not isinstance(role_id, int)):
        abort(422, description='role_id must be an integer or null')
    user = roles.assign_user_role(user_id, role_id)
    return envelope('User role updated successfully.', user_to_dict(user))


# --- Session payload (any authenticated user) ---

@access_bp.get('/session')
@jwt_required()
def session_payload():
    payload = build_session_payload(current_user_id())
    return envelope('Session permissions retrieved successfully.', payload.to_dict())


@access_bp.get('/session/permissions.js')
@jwt_required()
def session_script():
    payload = build_session_payload(current_user_id())
    return Response(render_client_script(payload), mimetype='application/javascript')
