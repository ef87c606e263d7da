import asyncio
import logging
import random
from typing import Protocol
from urllib.parse import quote, urlencode, urljoin

import httpx
from bs4 import BeautifulSoup

from marketplace_monitor.errors import InvalidListingError, ScraperError
from marketplace_monitor.models import DateListed, RawListing, Search
from marketplace_monitor.prices import parse_price

logger = logging.getLogger(__name__)

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Linux; Android 10; SM-S918B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

DAYS_SINCE_LISTED = {
    DateListed.LAST_24H: 1,
    DateListed.LAST_7D: 7,
    DateListed.LAST_30D: 30,
}


class Scraper(Protocol):
    async def scrape(self, search: Search) -> list[RawListing]: ...


def build_search_url(search: Search, base_url: str) -> str:
    """Build the marketplace search URL for a saved search."""
    url = base_url.rstrip("/")
    if search.location:
        url = f"{url}/{quote(search.location)}"
    url = f"{url}/search"

    params = {}
    if search.keywords:
        params["query"] = search.keywords
    if search.min_price:
        params["minPrice"] = f"{search.min_price:g}"
    if search.max_price:
        params["maxPrice"] = f"{search.max_price:g}"

    days = DAYS_SINCE_LISTED.get(DateListed(search.date_listed))
    if days:
        params["daysSinceListed"] = str(days)
    if search.radius:
        params["radius"] = str(search.radius)

    return f"{url}?{urlencode(params)}" if params else url


def get_headers() -> dict:
    """Get randomized browser-like headers."""
    return {
        "User-Agent": random.choice(USER_AGENTS),
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.5",
        "Accept-Encoding": "gzip, deflate, br",
        "DNT": "1",
        "Connection": "keep-alive",
        "Upgrade-Insecure-Requests": "1",
    }


def parse_listings(html: str, search_id: int, base_url: str = "") -> list[RawListing]:
    """Extract listing cards (elements with a data-listing-id attribute) from a results page."""
    soup = BeautifulSoup(html, "lxml")
    listings = []

    for item in soup.select("[data-listing-id]"):
        title_elem = item.select_one(".listing-title, h3")
        price_elem = item.select_one(".listing-price")
        link_elem = item.select_one("a[href]")
        image_elem = item.select_one("img[src]")
        location_elem = item.select_one(".listing-location")
        time_elem = item.select_one("time[datetime]")

        url = link_elem.get("href") if link_elem else ""
        if url and base_url:
            url = urljoin(base_url, url)

        data = {
            "id": item.get("data-listing-id"),
            "title": title_elem.get_text(strip=True) if title_elem else None,
            "price": price_elem.get_text(strip=True) if price_elem else "",
            "url": url,
            "image": image_elem.get("src") if image_elem else "",
            "location": location_elem.get_text(strip=True) if location_elem else "",
            "timestamp": time_elem.get("datetime") if time_elem else None,
        }
        try:
            listings.append(RawListing.from_dict(data, search_id))
        except InvalidListingError as e:
            logger.debug("Skipping listing card: %s", e)

    return listings


def matches_search_criteria(listing: RawListing, search: Search) -> bool:
    """Keyword and price-range check applied before reconciliation.

    Listings whose price does not parse are kept.
    """
    title = listing.title.lower()
    terms = search.keyword_terms
    if terms and not any(term in title or title in term for term in terms):
        return False

    price = parse_price(listing.price)
    if price > 0:
        if search.min_price and price < search.min_price:
            return False
        if search.max_price and price > search.max_price:
            return False

    return True


class HttpScraper:
    """Fetch and parse marketplace search pages over HTTP."""

    def __init__(
        self,
        base_url: str,
        proxy_url: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.proxy_url = proxy_url
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        transport = self.transport
        if transport is None and self.proxy_url:
            transport = httpx.AsyncHTTPTransport(proxy=self.proxy_url)
        return httpx.AsyncClient(transport=transport, timeout=30.0, follow_redirects=True)

    async def fetch_page(self, url: str) -> str:
        async with self._client() as client:
            response = await client.get(url, headers=get_headers())
            response.raise_for_status()
            return response.text

    async def scrape(self, search: Search) -> list[RawListing]:
        url = build_search_url(search, self.base_url)
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                logger.debug("Fetching %s (attempt %d)", url, attempt + 1)
                html = await self.fetch_page(url)
                break
            except httpx.HTTPError as e:
                last_error = e
                logger.warning("Scraping attempt %d for search %s failed: %s", attempt + 1, search.id, e)
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay * (attempt + 1))
        else:
            raise ScraperError(f"Could not fetch {url}: {last_error}") from last_error

        listings = parse_listings(html, search.id, self.base_url)
        matching = [listing for listing in listings if matches_search_criteria(listing, search)]
        logger.info("Parsed %d listings for search %s, %d match", len(listings), search.id, len(matching))
        return matching
