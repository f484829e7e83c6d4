from __future__ import annotations
from typing import Any, Dict, Optional
from flask import has_request_context, request
from flask_jwt_extended import get_jwt_identity
from backoffice import get_db
from backoffice.models.audit import AuditLog


def current_actor_id() -> Optional[int]:
    """Identity of the authenticated caller, or None outside a verified request."""
    try:
        ident = get_jwt_identity()
    except RuntimeError:
        return None  # no JWT verified in this context
    try:
        return int(ident) if ident is not None else None
    except (TypeError, ValueError):
        return None


def add_audit(action: str, entity: Optional[str] = None, entity_id: Optional[Any] = None,
              meta: Optional[Dict[str, Any]] = None) -> AuditLog:
    """Stage an audit entry in the current DB session; the caller commits.

    Parameters:
      action: short action code e.g. ROLE.CREATE, ROLE.GRANT, RIGHT.DELETE
      entity: optional entity name (Role, AccessRight, User)
      entity_id: optional primary key
      meta: additional JSON-safe dictionary (shallow copied)
    """
    meta = dict(meta or {})
    if has_request_context():
        meta.setdefault('ip', request.remote_addr)
    log = AuditLog(
        actor_user_id=current_actor_id() or 0,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        meta=meta,
    )
    get_db().add(log)
    return log
