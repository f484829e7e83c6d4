"""Builds the once-per-session payload shipped to the browser."""
from __future__ import annotations
from typing import List

from sqlalchemy import select

from backoffice import get_db
from backoffice.errors import NotFound
from backoffice.models.access import SiteFeature, User
from backoffice.schemas.session import SessionPayload
from backoffice.services.grants import current_grant_index


def enabled_features() -> List[str]:
    return list(get_db().execute(
        select(SiteFeature.name).where(SiteFeature.is_active == True).order_by(SiteFeature.name.asc())  # noqa: E712
    ).scalars())


def build_session_payload(user_id: int) -> SessionPayload:
    """Grants come from the same snapshot the server check consults."""
    user = get_db().get(User, user_id)
    if user is None:
        raise NotFound('User not found.')
    grants = ()
    if user.is_active and user.role_id is not None:
        grants = current_grant_index().snapshot(user.role_id).effective_entries
    return SessionPayload(grants=grants, enabled_features=tuple(enabled_features()))
