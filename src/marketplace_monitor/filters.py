"""Status predicates and display filtering over listings.

All functions here are pure; reconciliation and the listing views share
``is_price_drop`` so both agree on what counts as a price drop.
"""

from typing import Iterable

from marketplace_monitor.categories import detect_category
from marketplace_monitor.models import FilterSpec, Listing, ListingStatus
from marketplace_monitor.prices import parse_price


def is_price_drop(listing: Listing) -> bool:
    if listing.price_drop_detected:
        return True

    history = listing.price_history
    if history and len(history) >= 2:
        return parse_price(history[-1]) < parse_price(history[-2])

    if listing.original_price and listing.price:
        return parse_price(listing.price) < parse_price(listing.original_price)

    if listing.price_drop_at is not None and not listing.hidden:
        return True

    return False


def is_effectively_new(listing: Listing) -> bool:
    return not listing.seen and not listing.hidden


def is_seen(listing: Listing) -> bool:
    return listing.seen or listing.hidden


def listing_statuses(listing: Listing) -> set[ListingStatus]:
    """All statuses a listing currently qualifies for."""
    statuses = set()
    if is_effectively_new(listing):
        statuses.add(ListingStatus.NEW)
    if is_price_drop(listing):
        statuses.add(ListingStatus.PRICE_DROP)
    if is_seen(listing):
        statuses.add(ListingStatus.SEEN)
    return statuses


def matches_filter(listing: Listing, spec: FilterSpec) -> bool:
    # Hidden listings only show up when the caller asks for seen items
    if listing.hidden and ListingStatus.SEEN not in spec.statuses:
        return False

    price = parse_price(listing.price)
    if spec.min_price is not None and price < spec.min_price:
        return False
    if spec.max_price is not None and price > spec.max_price:
        return False

    if spec.categories and detect_category(listing) not in spec.categories:
        return False

    if spec.statuses and not (listing_statuses(listing) & spec.statuses):
        return False

    return True


def apply_filter(listings: Iterable[Listing], spec: FilterSpec) -> list[Listing]:
    return [listing for listing in listings if matches_filter(listing, spec)]
