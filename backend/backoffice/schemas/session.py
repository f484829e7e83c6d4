"""Shared contract between the server-side check and the browser mirror.

The session payload delivered once per authenticated session is::

    {"grants": [{"operationKey": ..., "shortKey": ...}], "enabledFeatures": [...]}

Both ``GrantSnapshot`` (server, authoritative) and ``PermissionMirror`` (client,
advisory) match keys through ``entry_matches``; the JS helper served to the
browser is rendered from ``GRANT_FIELDS`` so the field names cannot drift.
"""
from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

OPERATION_KEY_FIELD = 'operationKey'
SHORT_KEY_FIELD = 'shortKey'
GRANT_FIELDS: Tuple[str, str] = (OPERATION_KEY_FIELD, SHORT_KEY_FIELD)
GRANTS_FIELD = 'grants'
FEATURES_FIELD = 'enabledFeatures'


@dataclass(frozen=True)
class GrantEntry:
    operation_key: str
    short_key: str

    def to_dict(self) -> Dict[str, str]:
        return {OPERATION_KEY_FIELD: self.operation_key, SHORT_KEY_FIELD: self.short_key}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'GrantEntry':
        return cls(operation_key=raw[OPERATION_KEY_FIELD], short_key=raw[SHORT_KEY_FIELD])


def entry_matches(entry: GrantEntry, key: str) -> bool:
    return key == entry.operation_key or key == entry.short_key


@dataclass(frozen=True)
class SessionPayload:
    grants: Tuple[GrantEntry, ...] = ()
    enabled_features: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            GRANTS_FIELD: [g.to_dict() for g in self.grants],
            FEATURES_FIELD: list(self.enabled_features),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'SessionPayload':
        grants = tuple(GrantEntry.from_dict(g) for g in raw.get(GRANTS_FIELD) or [])
        features = tuple(raw.get(FEATURES_FIELD) or [])
        return cls(grants=grants, enabled_features=features)


@dataclass(frozen=True)
class PermissionMirror:
    """Advisory permission checks over a delivered session payload.

    Only ever used to hide or show UI affordances; every state-changing request
    is re-checked server-side regardless of what this returns.
    """
    payload: SessionPayload = field(default_factory=SessionPayload)

    def has_permission(self, key: str) -> bool:
        return any(entry_matches(g, key) for g in self.payload.grants)

    def is_feature_enabled(self, feature: str) -> bool:
        return feature in self.payload.enabled_features


CLIENT_SCRIPT_TEMPLATE = """\
// Generated from backoffice.schemas.session; advisory only.
var AccessMirror = (function () {{
    var payload = {{{grants}: [], {features}: []}};
    function load(sessionPayload) {{
        payload = sessionPayload || payload;
    }}
    function hasPermission(key) {{
        return (payload.{grants} || []).some(function (g) {{
            return g.{op} === key || g.{short} === key;
        }});
    }}
    function isFeatureEnabled(feature) {{
        return Array.isArray(payload.{features}) && payload.{features}.indexOf(feature) !== -1;
    }}
    return {{load: load, hasPermission: hasPermission, isFeatureEnabled: isFeatureEnabled}};
}})();
"""


def render_client_script(initial: Optional[SessionPayload] = None) -> str:
    script = CLIENT_SCRIPT_TEMPLATE.format(
        grants=GRANTS_FIELD,
        features=FEATURES_FIELD,
        op=OPERATION_KEY_FIELD,
        short=SHORT_KEY_FIELD,
    )
    if initial is not None:
        script += f'AccessMirror.load({json.dumps(initial.to_dict(), sort_keys=True)});\n'
    return script


def grant_entries(pairs: Iterable[Tuple[str, str]]) -> Tuple[GrantEntry, ...]:
    return tuple(sorted({GrantEntry(op, short) for op, short in pairs}, key=lambda g: g.operation_key))


__all__ = [
    'GrantEntry', 'SessionPayload', 'PermissionMirror', 'entry_matches', 'grant_entries',
    'render_client_script', 'GRANT_FIELDS',
]
