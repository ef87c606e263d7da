import asyncio
from datetime import datetime

import pytest

from marketplace_monitor.errors import StoreError, StoreUnavailableError
from marketplace_monitor.models import Listing, RawListing

NOW = datetime(2025, 3, 1, 12, 0, 0)
LATER = datetime(2025, 3, 1, 13, 0, 0)


def raw(listing_id, price="$100", title=None, url=None, search_id=1):
    return RawListing(
        id=listing_id,
        search_id=search_id,
        title=title or f"Item {listing_id}",
        price=price,
        url=url if url is not None else f"https://example.com/item/{listing_id}",
        location="Portland, OR",
    )


def stored(listing_id, price="$100", hidden=False, seen=None, title=None, url=None, original_price=None, **kwargs):
    return Listing(
        id=listing_id,
        search_id=1,
        title=title or f"Item {listing_id}",
        price=price,
        original_price=price if original_price is None else original_price,
        url=url if url is not None else f"https://example.com/item/{listing_id}",
        location="Portland, OR",
        timestamp=datetime(2025, 2, 28, 12, 0, 0),
        seen=hidden if seen is None else seen,
        hidden=hidden,
        hidden_at=datetime(2025, 2, 28, 12, 30, 0) if hidden else None,
        price_history=(price,),
        **kwargs,
    )


class FakeStore:
    """In-memory ListingStore with optional per-id failures."""

    def __init__(self, listings=(), fail_upserts=(), fail_deletes=()):
        self.rows = {(l.search_id, l.id): l for l in listings}
        self.fail_upserts = set(fail_upserts)
        self.fail_deletes = set(fail_deletes)

    async def get_listings_by_search(self, search_id):
        return [l for (sid, _), l in self.rows.items() if sid == search_id]

    async def upsert_listing(self, listing):
        if listing.id in self.fail_upserts:
            raise StoreError(f"disk full writing {listing.id}")
        self.rows[(listing.search_id, listing.id)] = listing

    async def upsert_listings(self, listings):
        for listing in listings:
            await self.upsert_listing(listing)

    async def delete_listing(self, search_id, listing_id):
        if listing_id in self.fail_deletes:
            raise StoreError(f"locked deleting {listing_id}")
        self.rows.pop((search_id, listing_id), None)

    async def get_recent_listings(self, hours):
        return [l for l in self.rows.values() if not l.hidden]


def test_unchanged_listing_produces_empty_report():
    from marketplace_monitor.reconcile import reconcile

    plan = reconcile(1, [stored("A")], [raw("A")], NOW)

    assert [l.id for l in plan.to_persist] == ["A"]
    assert plan.to_persist[0].price == "$100"
    assert plan.to_persist[0].hidden is False
    assert plan.to_delete == ()
    assert plan.report.is_empty


def test_price_drop_unhides_hidden_listing():
    from marketplace_monitor.reconcile import reconcile

    plan = reconcile(1, [stored("A", hidden=True)], [raw("A", price="$80")], NOW)

    assert len(plan.to_persist) == 1
    listing = plan.to_persist[0]
    assert listing.price == "$80"
    assert listing.hidden is False
    assert listing.hidden_at is None
    assert listing.price_drop_detected is True
    assert listing.price_drop_at == NOW
    assert listing.original_price == "$100"
    assert [l.id for l in plan.report.price_drop_listings] == ["A"]
    assert plan.report.new_listings == ()


def test_price_drop_keeps_seen_flag():
    from marketplace_monitor.reconcile import reconcile

    plan = reconcile(1, [stored("A", hidden=True)], [raw("A", price="$80")], NOW)

    assert plan.to_persist[0].seen is True


@pytest.mark.parametrize("price", ["$100", "$120"])
def test_hidden_listing_stays_suppressed_without_price_drop(price):
    from marketplace_monitor.reconcile import reconcile

    old = stored("A", hidden=True)
    plan = reconcile(1, [old], [raw("A", price=price)], NOW)

    assert plan.to_persist == ()
    assert plan.to_delete == ()
    assert plan.report.is_empty


def test_url_match_suppresses_hidden_listing_under_new_id():
    from marketplace_monitor.reconcile import reconcile

    old = stored("A", hidden=True, url="https://example.com/item/shared")
    plan = reconcile(1, [old], [raw("B", url="https://example.com/item/shared")], NOW)

    assert plan.to_persist == ()
    assert plan.report.new_listings == ()


def test_url_match_suppresses_even_with_lower_price():
    from marketplace_monitor.reconcile import reconcile

    old = stored("A", hidden=True, url="https://example.com/item/shared")
    plan = reconcile(1, [old], [raw("B", price="$50", url="https://example.com/item/shared")], NOW)

    assert plan.to_persist == ()


def test_title_and_price_match_suppresses_hidden_listing():
    from marketplace_monitor.reconcile import reconcile

    old = stored("A", hidden=True, title="Oak Dining Table")
    fresh = raw("B", title="Oak Dining Table", url="https://example.com/item/relisted")
    plan = reconcile(1, [old], [fresh], NOW)

    assert plan.to_persist == ()


def test_title_and_price_match_can_be_disabled():
    from marketplace_monitor.reconcile import reconcile

    old = stored("A", hidden=True, title="Oak Dining Table")
    fresh = raw("B", title="Oak Dining Table", url="https://example.com/item/relisted")
    plan = reconcile(1, [old], [fresh], NOW, fuzzy_match=False)

    assert [l.id for l in plan.to_persist] == ["B"]
    assert [l.id for l in plan.report.new_listings] == ["B"]


def test_title_match_with_different_price_is_not_suppressed():
    from marketplace_monitor.reconcile import reconcile

    old = stored("A", hidden=True, title="Oak Dining Table")
    fresh = raw("B", title="Oak Dining Table", price="$90", url="https://example.com/item/relisted")
    plan = reconcile(1, [old], [fresh], NOW)

    assert [l.id for l in plan.to_persist] == ["B"]


def test_title_match_must_be_exact():
    from marketplace_monitor.reconcile import reconcile

    old = stored("A", hidden=True, title="Oak Dining Table")
    fresh = raw("B", title="oak dining table ", url="https://example.com/item/relisted")
    plan = reconcile(1, [old], [fresh], NOW)

    assert [l.id for l in plan.to_persist] == ["B"]


def test_visible_stale_listing_is_deleted():
    from marketplace_monitor.reconcile import reconcile

    plan = reconcile(1, [stored("A")], [], NOW)

    assert plan.to_persist == ()
    assert plan.to_delete == ("A",)
    assert plan.report.stale_removed_ids == ("A",)


def test_hidden_stale_listing_is_retained():
    from marketplace_monitor.reconcile import reconcile

    plan = reconcile(1, [stored("A", hidden=True)], [], NOW)

    assert plan.to_delete == ()
    assert plan.report.stale_removed_ids == ()


def test_new_listing_defaults():
    from marketplace_monitor.reconcile import reconcile

    plan = reconcile(1, [], [raw("A", price="$45")], NOW)

    listing = plan.to_persist[0]
    assert listing.seen is False
    assert listing.hidden is False
    assert listing.original_price == "$45"
    assert listing.price_drop_detected is False
    assert listing.timestamp == NOW
    assert listing.price_history == ("$45",)
    assert [l.id for l in plan.report.new_listings] == ["A"]


def test_merge_carries_user_state_and_overwrites_scraped_fields():
    from marketplace_monitor.reconcile import reconcile

    seen_at = datetime(2025, 2, 28, 18, 0, 0)
    old = stored("A", seen=True, seen_at=seen_at, original_price="$150")
    fresh = RawListing(
        id="A",
        search_id=1,
        title="Item A (updated)",
        price="$100",
        url="https://example.com/item/A?ref=2",
        image="https://img.example.com/a.jpg",
        location="Gresham, OR",
    )
    plan = reconcile(1, [old], [fresh], NOW)

    listing = plan.to_persist[0]
    assert listing.seen is True
    assert listing.seen_at == seen_at
    assert listing.original_price == "$150"
    assert listing.title == "Item A (updated)"
    assert listing.url == "https://example.com/item/A?ref=2"
    assert listing.image == "https://img.example.com/a.jpg"
    assert listing.location == "Gresham, OR"
    assert listing.timestamp == NOW
    assert plan.report.is_empty


def test_price_increase_is_not_a_drop():
    from marketplace_monitor.reconcile import reconcile

    plan = reconcile(1, [stored("A")], [raw("A", price="$120")], NOW)

    listing = plan.to_persist[0]
    assert listing.price_drop_detected is False
    assert listing.original_price == "$100"
    assert listing.price_history == ("$100", "$120")
    assert plan.report.price_drop_listings == ()


def test_repeat_drop_updates_listing_but_is_not_reported():
    from marketplace_monitor.reconcile import reconcile

    old = stored("A", price="$80", original_price="$100", price_drop_detected=True, price_drop_at=NOW)
    plan = reconcile(1, [old], [raw("A", price="$60")], LATER)

    listing = plan.to_persist[0]
    assert listing.price == "$60"
    assert listing.price_drop_detected is True
    assert listing.price_drop_at == LATER
    assert listing.price_history == ("$80", "$60")
    assert plan.report.price_drop_listings == ()


@pytest.mark.parametrize("old_price,new_price", [
    ("Free", "$80"),
    ("$100", "Contact seller"),
    ("", "$80"),
])
def test_unparsable_prices_never_count_as_drop(old_price, new_price):
    from marketplace_monitor.reconcile import reconcile

    old = stored("A", price=old_price, hidden=True)
    plan = reconcile(1, [old], [raw("A", price=new_price)], NOW)

    # Still suppressed on identity, never resurfaced by price logic
    assert plan.to_persist == ()
    assert plan.report.price_drop_listings == ()


def test_duplicate_ids_in_batch_keep_first():
    from marketplace_monitor.reconcile import reconcile

    plan = reconcile(1, [], [raw("A", price="$10"), raw("A", price="$20")], NOW)

    assert len(plan.to_persist) == 1
    assert plan.to_persist[0].price == "$10"


def test_reconcile_is_idempotent():
    from marketplace_monitor.reconcile import reconcile

    old = [
        stored("A"),
        stored("B", hidden=True),
        stored("C", hidden=True, url="https://example.com/item/shared"),
        stored("D"),
    ]
    fresh = [
        raw("A", price="$90"),
        raw("B", price="$70"),
        raw("E", url="https://example.com/item/shared"),
        raw("F"),
    ]

    first = reconcile(1, old, fresh, NOW)
    assert not first.report.is_empty

    survivors = [l for l in old if l.id not in first.to_delete]
    by_id = {l.id: l for l in survivors}
    by_id.update({l.id: l for l in first.to_persist})

    second = reconcile(1, list(by_id.values()), fresh, LATER)

    assert second.report.new_listings == ()
    assert second.report.price_drop_listings == ()
    assert second.report.stale_removed_ids == ()
    assert {l.id for l in second.to_persist} == {l.id for l in first.to_persist}


def test_hidden_items_never_come_back_visible():
    from marketplace_monitor.reconcile import reconcile

    old = [
        stored("A", hidden=True, title="Desk", url="https://example.com/a"),
        stored("B", hidden=True, title="Lamp", url="https://example.com/b"),
        stored("C", hidden=True, title="Chair", url="https://example.com/c"),
    ]
    fresh = [
        raw("A", title="Desk", url="https://example.com/a2"),
        raw("X", title="Other", url="https://example.com/b"),
        raw("Y", title="Chair", url="https://example.com/y"),
    ]
    plan = reconcile(1, old, fresh, NOW)

    assert plan.to_persist == ()


def test_fresh_items_are_tagged_with_search_id():
    from marketplace_monitor.reconcile import reconcile

    plan = reconcile(7, [], [raw("A", search_id=3)], NOW)

    assert plan.to_persist[0].search_id == 7


def test_reconciler_writes_plan_to_store():
    from marketplace_monitor.reconcile import Reconciler

    store = FakeStore([stored("A"), stored("B"), stored("C", hidden=True)])
    reconciler = Reconciler(store, clock=lambda: NOW)

    result = asyncio.run(reconciler.run(1, [raw("A", price="$80"), raw("D")]))

    assert result.persisted == 2
    assert result.deleted == 1
    assert result.failed == 0
    assert set(k[1] for k in store.rows) == {"A", "C", "D"}
    assert store.rows[(1, "A")].price_drop_detected is True
    assert [l.id for l in result.report.new_listings] == ["D"]
    assert result.report.stale_removed_ids == ("B",)


def test_reconciler_leaves_store_alone_on_empty_batch():
    from marketplace_monitor.reconcile import Reconciler

    store = FakeStore([stored("A")])
    reconciler = Reconciler(store, clock=lambda: NOW)

    result = asyncio.run(reconciler.run(1, []))

    assert (1, "A") in store.rows
    assert result.deleted == 0
    assert result.report.is_empty


def test_reconciler_empty_batch_can_be_authoritative():
    from marketplace_monitor.reconcile import Reconciler

    store = FakeStore([stored("A"), stored("B", hidden=True)])
    reconciler = Reconciler(store, clock=lambda: NOW)

    result = asyncio.run(reconciler.run(1, [], allow_empty=True))

    assert set(k[1] for k in store.rows) == {"B"}
    assert result.report.stale_removed_ids == ("A",)


def test_reconciler_collects_partial_failures():
    from marketplace_monitor.reconcile import Reconciler

    store = FakeStore([stored("A"), stored("B")], fail_upserts={"D"}, fail_deletes={"B"})
    reconciler = Reconciler(store, clock=lambda: NOW)

    result = asyncio.run(reconciler.run(1, [raw("A"), raw("D"), raw("E")]))

    assert result.persisted == 2
    assert result.failed == 1
    assert result.deleted == 0
    assert result.failed_deletes == 1
    assert result.partial
    # Failed writes are not reported as changes
    assert [l.id for l in result.report.new_listings] == ["E"]
    assert result.report.stale_removed_ids == ()


def test_reconciler_reports_fully_failed_store():
    from marketplace_monitor.reconcile import Reconciler

    store = FakeStore([stored("A")], fail_upserts={"B", "C"}, fail_deletes={"A"})
    reconciler = Reconciler(store, clock=lambda: NOW)

    with pytest.raises(StoreUnavailableError):
        asyncio.run(reconciler.run(1, [raw("B"), raw("C")]))


def test_reconciler_serializes_runs_for_same_search():
    from marketplace_monitor.reconcile import Reconciler

    events = []

    class SlowStore(FakeStore):
        async def get_listings_by_search(self, search_id):
            events.append("read")
            await asyncio.sleep(0.01)
            return await super().get_listings_by_search(search_id)

        async def upsert_listing(self, listing):
            events.append("write")
            await super().upsert_listing(listing)

    store = SlowStore()
    reconciler = Reconciler(store, clock=lambda: NOW)

    async def main():
        return await asyncio.gather(
            reconciler.run(1, [raw("A")]),
            reconciler.run(1, [raw("A")]),
        )

    first, second = asyncio.run(main())

    assert events == ["read", "write", "read", "write"]
    # The second run saw the first run's write, so A is not new twice
    assert len(first.report.new_listings) + len(second.report.new_listings) == 1


def test_reconciler_uses_separate_locks_per_search():
    from marketplace_monitor.reconcile import Reconciler

    reconciler = Reconciler(FakeStore())

    assert reconciler.lock_for(1) is reconciler.lock_for(1)
    assert reconciler.lock_for(1) is not reconciler.lock_for(2)
