from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy import func, or_
from sqlalchemy.orm import Query

from backoffice.config.pagination import normalize_pagination
from backoffice.errors import ValidationError

SORT_ORDERS = ('asc', 'desc')
SEARCH_MAX_LEN = 200


@dataclass
class Page:
    items: List[Any]
    total: int
    page: int
    per_page: int

    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.per_page))

    @property
    def first_item(self) -> Optional[int]:
        if not self.items:
            return None
        return (self.page - 1) * self.per_page + 1

    @property
    def last_item(self) -> Optional[int]:
        if not self.items:
            return None
        return self.first_item + len(self.items) - 1

    def meta(self) -> Dict[str, Any]:
        return {
            'current_page': self.page,
            'last_page': self.last_page,
            'per_page': self.per_page,
            'total': self.total,
            'from': self.first_item,
            'to': self.last_item,
        }


def apply_search(query: Query, term: Optional[str], columns: Iterable) -> Query:
    """Case-insensitive substring match over any of the given columns."""
    if not term:
        return query
    if len(term) > SEARCH_MAX_LEN:
        raise ValidationError.single('search', f'The search field must not be greater than {SEARCH_MAX_LEN} characters.')
    needle = term.lower()
    return query.filter(or_(*[func.lower(c).contains(needle, autoescape=True) for c in columns]))


def apply_sort(query: Query, sort_by: Optional[str], sort_order: Optional[str], allowed: dict,
               default: str, tie_breaker) -> Query:
    """Order by one whitelisted column with a deterministic tie breaker.

    allowed: mapping of field key -> column object.
    """
    key = sort_by or default
    col = allowed.get(key)
    if col is None:
        raise ValidationError.single('sort_by', f'The selected sort_by is invalid: {key}.')
    order = (sort_order or 'desc').lower()
    if order not in SORT_ORDERS:
        raise ValidationError.single('sort_order', 'The selected sort_order is invalid.')
    clause = col.desc() if order == 'desc' else col.asc()
    tie = tie_breaker.desc() if order == 'desc' else tie_breaker.asc()
    return query.order_by(clause, tie)


def paginate(query: Query, page_raw=None, per_page_raw=None) -> Page:
    try:
        per_page, page = normalize_pagination(per_page_raw, page_raw)
    except ValueError as e:
        raise ValidationError.single('per_page', str(e))
    total = query.order_by(None).count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return Page(items=items, total=total, page=page, per_page=per_page)


__all__ = ['Page', 'apply_search', 'apply_sort', 'paginate']
