"""Merge freshly scraped listings into the stored state of a search.

``reconcile`` is the pure algorithm: it decides what to upsert, what to
delete and what changed. ``Reconciler`` applies that plan to a listing
store, one search at a time.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Iterable

from marketplace_monitor.errors import StoreError, StoreUnavailableError
from marketplace_monitor.models import ChangeReport, Listing, RawListing, ReconcilePlan
from marketplace_monitor.prices import parse_price

logger = logging.getLogger(__name__)


def price_dropped(previous: str, current: str) -> bool:
    """True only when both prices parse and the current one is lower."""
    before = parse_price(previous)
    after = parse_price(current)
    return before > 0 and after > 0 and after < before


def _title_price_key(title: str, price: str) -> tuple[str, str]:
    # Exact match only; near-identical titles are different items
    return (title, price)


def _url_index(listings: Iterable[Listing]) -> dict[str, Listing]:
    index: dict[str, Listing] = {}
    for listing in listings:
        if not listing.url:
            continue
        # A hidden listing owns its url even if a visible one shares it
        current = index.get(listing.url)
        if current is None or (listing.hidden and not current.hidden):
            index[listing.url] = listing
    return index


def _with_price(history: tuple[str, ...], price: str) -> tuple[str, ...]:
    if not price or (history and history[-1] == price):
        return history
    return history + (price,)


def _merge(existing: Listing, raw: RawListing, search_id: int, now: datetime) -> tuple[Listing, bool]:
    dropped = price_dropped(existing.price, raw.price)
    history = existing.price_history or ((existing.price,) if existing.price else ())

    merged = replace(
        existing,
        search_id=search_id,
        title=raw.title,
        price=raw.price,
        url=raw.url,
        image=raw.image,
        location=raw.location,
        description=raw.description,
        posted_at=raw.timestamp or existing.posted_at,
        timestamp=now,
        original_price=existing.original_price or existing.price,
        price_history=_with_price(history, raw.price),
    )
    if dropped:
        # The only automated path that unhides a listing
        merged = replace(
            merged,
            price_drop_detected=True,
            price_drop_at=now,
            hidden=False,
            hidden_at=None,
        )
    return merged, dropped


def _new_listing(raw: RawListing, search_id: int, now: datetime) -> Listing:
    return Listing(
        id=raw.id,
        search_id=search_id,
        title=raw.title,
        price=raw.price,
        original_price=raw.price,
        url=raw.url,
        image=raw.image,
        location=raw.location,
        description=raw.description,
        timestamp=now,
        posted_at=raw.timestamp,
        price_history=(raw.price,) if raw.price else (),
    )


def reconcile(
    search_id: int,
    old_listings: Iterable[Listing],
    fresh_batch: Iterable[RawListing],
    now: datetime,
    *,
    fuzzy_match: bool = True,
) -> ReconcilePlan:
    """Plan the merge of a fresh scrape batch against the stored listings.

    Hidden listings never come back on re-scrape, whether the fresh item
    matches them by id, by url, or (with ``fuzzy_match``) by identical title
    and price. The exception is a genuine price drop on the same id, which
    resurfaces the listing. Stale listings are only deleted while visible.

    Only listings whose drop flag turns on in this run are reported as price
    drops; a further drop still updates the price and ``price_drop_at``.
    """
    old_listings = list(old_listings)
    by_id = {listing.id: listing for listing in old_listings}
    by_url = _url_index(old_listings)
    hidden_keys = {_title_price_key(listing.title, listing.price) for listing in old_listings if listing.hidden}

    to_persist: list[Listing] = []
    new_listings: list[Listing] = []
    price_drops: list[Listing] = []
    batch_ids: set[str] = set()

    for raw in fresh_batch:
        if raw.id in batch_ids:
            logger.debug("Skipping duplicate id %s in fresh batch", raw.id)
            continue
        batch_ids.add(raw.id)

        existing = by_id.get(raw.id)
        url_match = by_url.get(raw.url) if raw.url else None

        if existing is not None and existing.hidden and not price_dropped(existing.price, raw.price):
            logger.debug("Suppressing hidden listing %s (id match)", raw.id)
            continue
        if url_match is not None and url_match.id != raw.id and url_match.hidden:
            logger.debug("Suppressing %s, url matches hidden listing %s", raw.id, url_match.id)
            continue
        if (
            fuzzy_match
            and existing is None
            and url_match is None
            and _title_price_key(raw.title, raw.price) in hidden_keys
        ):
            logger.debug("Suppressing %s, title and price match a hidden listing", raw.id)
            continue

        if existing is not None:
            listing, dropped = _merge(existing, raw, search_id, now)
            if dropped and not existing.price_drop_detected:
                price_drops.append(listing)
        else:
            listing = _new_listing(raw, search_id, now)
            new_listings.append(listing)
        to_persist.append(listing)

    persisted_ids = {listing.id for listing in to_persist}
    to_delete = tuple(
        listing.id
        for listing in old_listings
        if listing.id not in persisted_ids and not listing.hidden
    )

    return ReconcilePlan(
        to_persist=tuple(to_persist),
        to_delete=to_delete,
        report=ChangeReport(
            new_listings=tuple(new_listings),
            price_drop_listings=tuple(price_drops),
            stale_removed_ids=to_delete,
        ),
    )


@dataclass
class ApplyResult:
    persisted: int = 0
    failed: int = 0
    deleted: int = 0
    failed_deletes: int = 0
    report: ChangeReport = field(default_factory=ChangeReport)

    @property
    def partial(self) -> bool:
        return bool(self.failed or self.failed_deletes)


class Reconciler:
    """Apply reconciliation plans to a listing store, one run per search at a time."""

    def __init__(self, store, *, clock: Callable[[], datetime] = datetime.now, fuzzy_match: bool = True):
        self.store = store
        self.clock = clock
        self.fuzzy_match = fuzzy_match
        self._locks: dict[int, asyncio.Lock] = {}

    def lock_for(self, search_id: int) -> asyncio.Lock:
        lock = self._locks.get(search_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[search_id] = lock
        return lock

    async def run(self, search_id: int, fresh_batch: list[RawListing], *, allow_empty: bool = False) -> ApplyResult:
        """Reconcile a fresh batch and write the result.

        An empty batch is treated as a failed fetch and writes nothing unless
        ``allow_empty`` is set.
        """
        if not fresh_batch and not allow_empty:
            logger.info("Search %s returned no listings, leaving stored listings untouched", search_id)
            return ApplyResult()

        async with self.lock_for(search_id):
            old_listings = await self.store.get_listings_by_search(search_id)
            plan = reconcile(
                search_id,
                old_listings,
                fresh_batch,
                self.clock(),
                fuzzy_match=self.fuzzy_match,
            )
            return await self.apply(search_id, plan)

    async def apply(self, search_id: int, plan: ReconcilePlan) -> ApplyResult:
        result = ApplyResult()
        written: set[str] = set()
        deleted: list[str] = []

        for listing in plan.to_persist:
            try:
                await self.store.upsert_listing(listing)
            except StoreError as e:
                logger.warning("Failed to save listing %s for search %s: %s", listing.id, search_id, e)
                result.failed += 1
            else:
                written.add(listing.id)
                result.persisted += 1

        for listing_id in plan.to_delete:
            try:
                await self.store.delete_listing(search_id, listing_id)
            except StoreError as e:
                logger.warning("Failed to delete stale listing %s for search %s: %s", listing_id, search_id, e)
                result.failed_deletes += 1
            else:
                deleted.append(listing_id)
                result.deleted += 1

        attempted = len(plan.to_persist) + len(plan.to_delete)
        if attempted and not (result.persisted or result.deleted):
            raise StoreUnavailableError(
                f"All {attempted} store operations failed for search {search_id}"
            )

        result.report = ChangeReport(
            new_listings=tuple(l for l in plan.report.new_listings if l.id in written),
            price_drop_listings=tuple(l for l in plan.report.price_drop_listings if l.id in written),
            stale_removed_ids=tuple(deleted),
        )
        logger.info(
            "Search %s reconciled: %d saved, %d failed, %d removed, %d new, %d price drops",
            search_id,
            result.persisted,
            result.failed,
            result.deleted,
            len(result.report.new_listings),
            len(result.report.price_drop_listings),
        )
        return result
