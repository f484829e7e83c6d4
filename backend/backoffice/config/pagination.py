DEFAULT_PER_PAGE = 15
MAX_PER_PAGE = 100


def normalize_pagination(per_page_raw, page_raw):
    try:
        per_page = int(per_page_raw) if per_page_raw is not None else DEFAULT_PER_PAGE
        page = int(page_raw) if page_raw is not None else 1
    except (TypeError, ValueError):
        raise ValueError('per_page/page must be int')
    if per_page < 1 or per_page > MAX_PER_PAGE:
        raise ValueError(f'per_page must be between 1 and {MAX_PER_PAGE}')
    if page < 1:
        raise ValueError('page must be >= 1')
    return per_page, page
