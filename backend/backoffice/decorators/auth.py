from __future__ import annotations
import logging
from functools import wraps
from typing import Dict, Optional

from flask import abort
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from backoffice import get_db
from backoffice.errors import AuthorizationUnavailable, NotFound
from backoffice.models.access import User
from backoffice.schemas.keys import OperationKey
from backoffice.services.grants import is_authorized

logger = logging.getLogger(__name__)

# view qualname -> operation key, filled as routes are decorated
GUARDED_VIEWS: Dict[str, str] = {}

FORBIDDEN_MESSAGE = 'You do not have permission to perform this action.'


def current_user_id() -> int:
    ident = get_jwt_identity()
    try:
        return int(ident)
    except (TypeError, ValueError):
        abort(401, description='Invalid token identity')


def resolve_role_id(user_id: int) -> Optional[int]:
    """Role of an active user, or None. One indexed lookup."""
    try:
        row = get_db().execute(select(User.role_id, User.is_active).where(User.id == user_id)).one_or_none()
    except SQLAlchemyError as e:
        logger.exception('Failed to resolve role for user %s', user_id)
        raise AuthorizationUnavailable('Role data is temporarily unavailable.') from e
    if row is None or not row.is_active:
        return None
    return row.role_id


def require_access(operation_key: str):
    """Guard a view with the right paired to its route.

    The key is validated when the view is decorated, so a malformed key fails
    at import time rather than silently denying every request.
    """
    key = OperationKey(operation_key)

    def outer(fn):
        GUARDED_VIEWS[fn.__qualname__] = key

        @wraps(fn)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            user_id = current_user_id()
            role_id = resolve_role_id(user_id)
            allowed = False
            if role_id is not None:
                try:
                    allowed = is_authorized(role_id, key)
                except NotFound:
                    allowed = False  # role vanished between lookups
            if not allowed:
                logger.info('Access denied: user=%s role=%s key=%s', user_id, role_id, key)
                abort(403, description=FORBIDDEN_MESSAGE)
            return fn(*args, **kwargs)
        wrapper.required_access = key
        return wrapper
    return outer
