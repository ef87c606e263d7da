from marketplace_monitor.errors import InvalidSearchError
from marketplace_monitor.models import DateListed, Search


def validate_search(search: Search) -> None:
    """Reject search definitions that cannot produce sensible results."""
    if not search.keyword_terms:
        raise InvalidSearchError("Keywords are required")
    for label, value in (("Minimum", search.min_price), ("Maximum", search.max_price)):
        if value is not None and value < 0:
            raise InvalidSearchError(f"{label} price cannot be negative")
    if search.min_price is not None and search.max_price is not None and search.min_price > search.max_price:
        raise InvalidSearchError("Minimum price cannot be greater than maximum price")
    if search.radius is not None and search.radius <= 0:
        raise InvalidSearchError("Radius must be positive")
    try:
        DateListed(search.date_listed)
    except ValueError:
        raise InvalidSearchError(f"Unknown date filter: {search.date_listed}") from None
