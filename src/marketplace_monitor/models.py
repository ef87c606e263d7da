from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from marketplace_monitor.errors import InvalidListingError


class DateListed(str, Enum):
    ALL = "all"
    LAST_24H = "24h"
    LAST_7D = "7d"
    LAST_30D = "30d"


class Category(str, Enum):
    ELECTRONICS = "electronics"
    FURNITURE = "furniture"
    VEHICLES = "vehicles"
    CLOTHING = "clothing"
    OTHER = "other"


class ListingStatus(str, Enum):
    NEW = "new"
    PRICE_DROP = "price-drop"
    SEEN = "seen"


class AlertType(str, Enum):
    URGENT = "urgent"
    IMPORTANT = "important"
    NEW = "new"
    NORMAL = "normal"


@dataclass
class Search:
    id: int | None
    keywords: str
    min_price: float | None = None
    max_price: float | None = None
    date_listed: DateListed = DateListed.ALL
    location: str = ""
    radius: int | None = None
    enabled: bool = True
    created_at: datetime | None = None
    last_checked: datetime | None = None
    last_result_count: int | None = None

    @property
    def keyword_terms(self) -> list[str]:
        return [term.strip().lower() for term in self.keywords.split(",") if term.strip()]


RAW_LISTING_FIELDS = ("id", "title", "price", "url", "image", "location", "timestamp", "description")


@dataclass(frozen=True)
class RawListing:
    id: str
    search_id: int
    title: str
    price: str = ""
    url: str = ""
    image: str = ""
    location: str = ""
    timestamp: datetime | None = None
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict, search_id: int) -> "RawListing":
        """Build a raw listing from scraper output, ignoring unknown keys."""
        listing_id = str(data.get("id") or "").strip()
        title = str(data.get("title") or "").strip()
        if not listing_id or not title:
            raise InvalidListingError(f"Scraped listing is missing id or title: {data!r}")

        timestamp = data.get("timestamp")
        if isinstance(timestamp, (int, float)):
            # Millisecond epoch, as produced by browser-side scrapers
            timestamp = datetime.fromtimestamp(timestamp / 1000)
        elif isinstance(timestamp, str):
            try:
                timestamp = datetime.fromisoformat(timestamp)
            except ValueError:
                timestamp = None
        elif not isinstance(timestamp, datetime):
            timestamp = None

        return cls(
            id=listing_id,
            search_id=search_id,
            title=title,
            price=str(data.get("price") or ""),
            url=str(data.get("url") or ""),
            image=str(data.get("image") or ""),
            location=str(data.get("location") or ""),
            timestamp=timestamp,
            description=str(data.get("description") or ""),
        )


@dataclass(frozen=True)
class Listing:
    id: str
    search_id: int
    title: str
    price: str = ""
    original_price: str = ""
    url: str = ""
    image: str = ""
    location: str = ""
    description: str = ""
    timestamp: datetime | None = None
    posted_at: datetime | None = None
    seen: bool = False
    seen_at: datetime | None = None
    hidden: bool = False
    hidden_at: datetime | None = None
    price_drop_detected: bool = False
    price_drop_at: datetime | None = None
    price_history: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChangeReport:
    new_listings: tuple[Listing, ...] = ()
    price_drop_listings: tuple[Listing, ...] = ()
    stale_removed_ids: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.new_listings or self.price_drop_listings or self.stale_removed_ids)


@dataclass(frozen=True)
class ReconcilePlan:
    to_persist: tuple[Listing, ...]
    to_delete: tuple[str, ...]
    report: ChangeReport


@dataclass(frozen=True)
class FilterSpec:
    min_price: float | None = None
    max_price: float | None = None
    categories: frozenset[Category] = frozenset()
    statuses: frozenset[ListingStatus] = frozenset()


@dataclass
class FetchLog:
    id: int | None
    search_id: int
    fetched_at: datetime | None
    listings_found: int
    status: str


@dataclass
class RunResult:
    search_id: int
    status: str
    fetched: int = 0
    persisted: int = 0
    failed: int = 0
    deleted: int = 0
    failed_deletes: int = 0
    alerts_sent: int = 0
    report: ChangeReport = field(default_factory=ChangeReport)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in ("success", "partial", "empty")
