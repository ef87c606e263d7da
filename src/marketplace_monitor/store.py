"""Async listing store interface and its sqlite-backed implementation."""

import sqlite3
from typing import Protocol

from marketplace_monitor.db import Database
from marketplace_monitor.errors import StoreError
from marketplace_monitor.models import Listing


class ListingStore(Protocol):
    async def get_listings_by_search(self, search_id: int) -> list[Listing]: ...

    async def upsert_listing(self, listing: Listing) -> None: ...

    async def upsert_listings(self, listings: list[Listing]) -> None: ...

    async def delete_listing(self, search_id: int, listing_id: str) -> None: ...

    async def get_recent_listings(self, hours: int) -> list[Listing]: ...


class SqliteListingStore:
    """ListingStore over a Database, translating sqlite errors to StoreError."""

    def __init__(self, db: Database):
        self.db = db

    async def get_listings_by_search(self, search_id: int) -> list[Listing]:
        try:
            return self.db.get_listings_by_search(search_id)
        except sqlite3.Error as e:
            raise StoreError(f"Could not load listings for search {search_id}: {e}") from e

    async def upsert_listing(self, listing: Listing) -> None:
        try:
            self.db.upsert_listing(listing)
        except sqlite3.Error as e:
            raise StoreError(f"Could not save listing {listing.id}: {e}") from e

    async def upsert_listings(self, listings: list[Listing]) -> None:
        for listing in listings:
            await self.upsert_listing(listing)

    async def delete_listing(self, search_id: int, listing_id: str) -> None:
        try:
            self.db.delete_listing(search_id, listing_id)
        except sqlite3.Error as e:
            raise StoreError(f"Could not delete listing {listing_id}: {e}") from e

    async def get_recent_listings(self, hours: int) -> list[Listing]:
        try:
            return self.db.get_recent_listings(hours)
        except sqlite3.Error as e:
            raise StoreError(f"Could not load recent listings: {e}") from e
