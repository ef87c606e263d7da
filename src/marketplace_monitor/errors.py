class MonitorError(Exception):
    """Base class for marketplace monitor errors."""


class ScraperError(MonitorError):
    """The scraper could not fetch or read a search page."""


class StoreError(MonitorError):
    """A listing store operation failed."""


class StoreUnavailableError(StoreError):
    """Every store operation in a reconciliation run failed."""


class InvalidListingError(MonitorError):
    """A scraped record is missing required fields."""


class InvalidSearchError(MonitorError):
    """A search definition was rejected at creation or edit time."""
