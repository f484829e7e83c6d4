"""Code-level declaration of every protected admin operation.

Each admin route is paired with exactly one operation key
(``api.admin.<resource>.<action>``). Never rename a key silently: grants match
on it, so a rename must be shipped as a new declaration plus a delete of the old
right once no role references it.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Tuple


class RightDeclaration(NamedTuple):
    operation_key: str
    short_key: str
    short_description: str
    details: str


# resource -> (singular label, plural label)
RESOURCES: Dict[str, Tuple[str, str]] = {
    'user': ('user', 'users'),
    'user_details': ('user details record', 'user profiles'),
    'role': ('role', 'roles'),
    'access_right': ('access right', 'access rights'),
    'site_feature': ('site feature', 'site features'),
    'setting': ('setting', 'settings'),
    'brand': ('brand', 'brands'),
    'category': ('category', 'categories'),
    'product': ('product', 'products'),
    'product_image': ('product image', 'product images'),
    'product_stock': ('product stock entry', 'product stock entries'),
    'project': ('project', 'projects'),
    'post': ('post', 'posts'),
    'comment': ('comment', 'comments'),
    'review': ('review', 'reviews'),
    'supplier': ('supplier', 'suppliers'),
    'coupon': ('coupon', 'coupons'),
    'payment': ('payment', 'payments'),
    'order': ('order', 'orders'),
    'order_item': ('order item', 'order items'),
}

# route action -> short key suffix
ACTIONS: Dict[str, str] = {
    'index': 'list',
    'store': 'create',
    'update': 'update',
    'destroy': 'delete',
}

DESTRUCTIVE_SUFFIXES: Tuple[str, ...] = ('.destroy',)


def _describe(action: str, singular: str, plural: str) -> Tuple[str, str]:
    if action == 'index':
        return f'View {singular} list', f'Allows viewing all {plural} in the back office.'
    if action == 'store':
        return f'Create {singular}', f'Allows creating a new {singular}.'
    if action == 'update':
        return f'Update {singular}', f'Allows editing an existing {singular}.'
    return f'Delete {singular}', f'Allows permanently removing a {singular}.'


def build_right_declarations() -> List[RightDeclaration]:
    out: List[RightDeclaration] = []
    for resource, (singular, plural) in RESOURCES.items():
        for action, suffix in ACTIONS.items():
            short_description, details = _describe(action, singular, plural)
            out.append(RightDeclaration(
                operation_key=f'api.admin.{resource}.{action}',
                short_key=f'{resource}_{suffix}',
                short_description=short_description,
                details=details,
            ))
    return out


RIGHT_DECLARATIONS = build_right_declarations()


@dataclass(frozen=True)
class BootstrapRole:
    name: str
    description: str
    excluded_suffixes: Tuple[str, ...] = ()

    def admits(self, operation_key: str) -> bool:
        return not any(operation_key.endswith(s) for s in self.excluded_suffixes)


FULL_ACCESS_ROLE = BootstrapRole(
    name='Admin',
    description='Administrator with full access to all modules.',
)
RESTRICTED_ROLE = BootstrapRole(
    name='Salesperson',
    description='Salesperson with limited access to sales related modules.',
    excluded_suffixes=DESTRUCTIVE_SUFFIXES,
)

BOOTSTRAP_ROLES: Tuple[BootstrapRole, ...] = (FULL_ACCESS_ROLE, RESTRICTED_ROLE)
