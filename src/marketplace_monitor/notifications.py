"""Decide which reconciled listings are worth an alert, and how urgent they are."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Protocol

from rich.console import Console

from marketplace_monitor.filters import is_price_drop
from marketplace_monitor.models import AlertType, ChangeReport, Listing, Search
from marketplace_monitor.prices import parse_price

logger = logging.getLogger(__name__)

ALERT_PREFIXES = {
    AlertType.URGENT: "🚨 URGENT: ",
    AlertType.IMPORTANT: "⭐ IMPORTANT: ",
    AlertType.NEW: "🆕 NEW: ",
    AlertType.NORMAL: "📍 ",
}

ALERT_TITLES = {
    AlertType.URGENT: "🚨 Urgent Alerts",
    AlertType.IMPORTANT: "⭐ Important Alerts",
    AlertType.NEW: "🆕 New Listings",
    AlertType.NORMAL: "📍 Regular Alerts",
}


@dataclass
class AlertConditions:
    price_drop_threshold: float = 10.0
    max_daily_alerts: int = 50
    quiet_hours_start: int = 22
    quiet_hours_end: int = 8
    quiet_hours_enabled: bool = True
    alert_cooldown: timedelta = timedelta(minutes=5)
    high_value_cutoff: float = 5000.0


@dataclass(frozen=True)
class AlertContext:
    search_keywords: str
    search_id: int
    alert_type: AlertType


class NotificationSink(Protocol):
    def notify(self, listing: Listing, context: AlertContext) -> None: ...

    def notify_bulk(self, listings: list[Listing], context: AlertContext) -> None: ...


def alert_prefix(alert_type: AlertType) -> str:
    return ALERT_PREFIXES[alert_type]


def price_drop_percent(listing: Listing) -> float | None:
    """Percentage drop from the previous price, or None if no drop is known."""
    if len(listing.price_history) >= 2:
        previous = parse_price(listing.price_history[-2])
        current = parse_price(listing.price_history[-1])
    elif listing.price_drop_detected and listing.original_price:
        previous = parse_price(listing.original_price)
        current = parse_price(listing.price)
    else:
        return None

    if previous <= 0 or current <= 0 or current >= previous:
        return None
    return (previous - current) / previous * 100


class AlertPolicy:
    """Rate limiting and classification for listing alerts.

    Holds the per-search cooldown map and the daily counter; both are only
    updated through ``record_alert``.
    """

    def __init__(self, conditions: AlertConditions | None = None):
        self.conditions = conditions or AlertConditions()
        self.last_alert_time: dict[int, datetime] = {}
        self.daily_alert_count = 0
        self.last_alert_date: date | None = None

    def _roll_day(self, now: datetime) -> None:
        today = now.date()
        if self.last_alert_date != today:
            self.daily_alert_count = 0
            self.last_alert_date = today

    def is_quiet_hours(self, now: datetime) -> bool:
        if not self.conditions.quiet_hours_enabled:
            return False
        start = self.conditions.quiet_hours_start
        end = self.conditions.quiet_hours_end
        hour = now.hour
        if start > end:
            # Window wraps midnight, e.g. 22:00 to 08:00
            return hour >= start or hour < end
        return start <= hour < end

    def in_cooldown(self, search_id: int, now: datetime) -> bool:
        last = self.last_alert_time.get(search_id)
        return last is not None and now - last < self.conditions.alert_cooldown

    def can_send(self, search: Search, now: datetime) -> bool:
        """The listing-independent part of ``should_alert``."""
        self._roll_day(now)
        if self.daily_alert_count >= self.conditions.max_daily_alerts:
            logger.warning("Daily alert limit of %d reached", self.conditions.max_daily_alerts)
            return False
        if self.is_quiet_hours(now):
            logger.info("In quiet hours, skipping alert for search %s", search.id)
            return False
        if self.in_cooldown(search.id, now):
            logger.info("Alerts for search %s are in cooldown", search.id)
            return False
        return True

    def should_alert(self, listing: Listing, search: Search, now: datetime) -> bool:
        return self.can_send(search, now) and not listing.seen

    def classify(self, listing: Listing, now: datetime) -> AlertType:
        drop = price_drop_percent(listing)
        if drop is not None and drop >= self.conditions.price_drop_threshold:
            return AlertType.URGENT
        if parse_price(listing.price) > self.conditions.high_value_cutoff:
            return AlertType.IMPORTANT
        if listing.posted_at is not None and now - listing.posted_at < timedelta(hours=1):
            return AlertType.NEW
        return AlertType.NORMAL

    def record_alert(self, search: Search, now: datetime) -> None:
        self._roll_day(now)
        self.daily_alert_count += 1
        self.last_alert_time[search.id] = now

    def dispatch(self, report: ChangeReport, search: Search, sink: NotificationSink, now: datetime) -> list[Listing]:
        """Send alerts for a change report. Returns the listings that were alerted.

        Price drops come before new listings. Several candidates go out as one
        bulk alert, which counts once against the daily limit and cooldown.
        """
        candidates = []
        for listing in (*report.price_drop_listings, *report.new_listings):
            if listing.seen or any(c.id == listing.id for c in candidates):
                continue
            candidates.append(listing)

        if not candidates or not self.can_send(search, now):
            return []

        if len(candidates) == 1:
            listing = candidates[0]
            alert_type = self.classify(listing, now)
            sink.notify(listing, AlertContext(search.keywords, search.id, alert_type))
        else:
            # Most urgent classification among the batch
            alert_type = min(
                (self.classify(listing, now) for listing in candidates),
                key=list(AlertType).index,
            )
            sink.notify_bulk(candidates, AlertContext(search.keywords, search.id, alert_type))

        self.record_alert(search, now)
        return candidates


class ConsoleSink:
    """Print alerts to a rich console."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def notify(self, listing: Listing, context: AlertContext) -> None:
        marker = " [magenta]Price drop![/magenta]" if is_price_drop(listing) else ""
        self.console.print(
            f"{alert_prefix(context.alert_type)}[bold]{listing.title}[/bold]{marker}\n"
            f"  {listing.price} • {listing.location} [dim]({context.search_keywords})[/dim]"
        )
        if listing.url:
            self.console.print(f"  [link={listing.url}]{listing.url}[/link]")

    def notify_bulk(self, listings: list[Listing], context: AlertContext) -> None:
        self.console.print(
            f"{alert_prefix(context.alert_type)}[bold]Multiple New Matches[/bold]\n"
            f"  {len(listings)} new matches found for \"{context.search_keywords}\""
        )


@dataclass(frozen=True)
class QueuedAlert:
    listing: Listing
    search: Search
    alert_type: AlertType
    queued_at: datetime


@dataclass(frozen=True)
class Digest:
    subject: str
    body: str
    alerts: tuple[QueuedAlert, ...]


def digest_subject(alerts: list[QueuedAlert]) -> str:
    urgent = sum(1 for alert in alerts if alert.alert_type == AlertType.URGENT)
    total = len(alerts)
    if urgent:
        plural = "s" if urgent > 1 else ""
        return f"🚨 {urgent} Urgent Marketplace Alert{plural} + {total - urgent} more"
    plural = "s" if total > 1 else ""
    return f"📍 {total} New Marketplace Alert{plural}"


def digest_body(alerts: list[QueuedAlert]) -> str:
    grouped: dict[AlertType, list[QueuedAlert]] = {}
    for alert in alerts:
        grouped.setdefault(alert.alert_type, []).append(alert)

    lines = ["Marketplace Monitor Alerts", ""]
    for alert_type, group in grouped.items():
        lines.append(f"{ALERT_TITLES[alert_type]} ({len(group)})")
        for alert in group:
            listing = alert.listing
            lines.append(f"- {listing.title}")
            lines.append(f"  Price: {listing.price}")
            lines.append(f"  Location: {listing.location}")
            lines.append(f"  Search: \"{alert.search.keywords}\"")
            if listing.url:
                lines.append(f"  {listing.url}")
        lines.append("")
    return "\n".join(lines)


class AlertDigest:
    """Batch alerts into a single digest after a quiet period.

    Every ``add`` cancels the pending flush and schedules a new one
    ``delay`` seconds out. A flush that has already started is left to
    finish. Must be used from a running event loop.
    """

    def __init__(self, flush: Callable[[Digest], Awaitable[None]], delay: float = 30.0):
        self._flush = flush
        self.delay = delay
        self.queue: list[QueuedAlert] = []
        # Only ever a task still waiting out its delay
        self._pending: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    def add(self, listing: Listing, search: Search, alert_type: AlertType) -> None:
        self.queue.append(QueuedAlert(listing, search, alert_type, datetime.now()))
        self._reschedule()

    def _reschedule(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        task = asyncio.get_running_loop().create_task(self._flush_later())
        task.add_done_callback(self._task_done)
        self._tasks.add(task)
        self._pending = task

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.delay)
        if self._pending is asyncio.current_task():
            self._pending = None
        await self.flush_now()

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Alert digest flush failed: %s", error, exc_info=error)

    async def flush_now(self) -> Digest | None:
        if not self.queue:
            return None
        alerts, self.queue = self.queue, []
        digest = Digest(digest_subject(alerts), digest_body(alerts), tuple(alerts))
        try:
            await self._flush(digest)
        except Exception:
            # Keep the alerts for the next flush
            self.queue[:0] = alerts
            raise
        logger.info("Flushed %d alerts into a digest", len(alerts))
        return digest

    def cancel(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
