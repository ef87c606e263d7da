"""Run saved searches: scrape, reconcile, record and alert."""

import asyncio
import logging
import sqlite3
from dataclasses import replace
from datetime import datetime, time
from typing import Awaitable, Callable

from marketplace_monitor.db import Database
from marketplace_monitor.errors import ScraperError, StoreError
from marketplace_monitor.models import FetchLog, RunResult, Search
from marketplace_monitor.notifications import AlertDigest, AlertPolicy, NotificationSink
from marketplace_monitor.reconcile import Reconciler
from marketplace_monitor.scraper import Scraper
from marketplace_monitor.settings import load_settings
from marketplace_monitor.store import ListingStore

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def parse_hhmm(value: str) -> time:
    hour, minute = (int(part) for part in value.strip().split(":"))
    return time(hour, minute)


def is_within_active_hours(now: datetime, start: str, end: str) -> bool:
    """Inclusive same-day window check against "HH:MM" bounds."""
    current = now.time().replace(second=0, microsecond=0)
    return parse_hhmm(start) <= current <= parse_hhmm(end)


class Monitor:
    def __init__(
        self,
        db: Database,
        store: ListingStore,
        scraper: Scraper,
        policy: AlertPolicy,
        sink: NotificationSink | None = None,
        *,
        digest: AlertDigest | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Sleep = asyncio.sleep,
        inter_search_delay: float = 2.0,
        fuzzy_match: bool = True,
    ):
        self.db = db
        self.scraper = scraper
        self.policy = policy
        self.sink = sink
        self.digest = digest
        self.clock = clock
        self.sleep = sleep
        self.inter_search_delay = inter_search_delay
        self.reconciler = Reconciler(store, clock=clock, fuzzy_match=fuzzy_match)

    def _log(self, search: Search, found: int, status: str) -> None:
        try:
            self.db.add_fetch_log(FetchLog(
                id=None,
                search_id=search.id,
                fetched_at=None,
                listings_found=found,
                status=status,
            ))
        except sqlite3.Error:
            logger.exception("Could not write fetch log for search %s", search.id)

    async def run_search(self, search: Search) -> RunResult:
        """Run one search end to end. Never raises; failures are reported in the result."""
        try:
            fresh = await self.scraper.scrape(search)
        except ScraperError as e:
            logger.error("Scraping failed for search %s: %s", search.id, e)
            self._log(search, 0, f"error: {e}")
            return RunResult(search_id=search.id, status="error", error=str(e))
        except Exception as e:
            logger.exception("Unexpected scraper failure for search %s", search.id)
            self._log(search, 0, f"error: {e}")
            return RunResult(search_id=search.id, status="error", error=str(e))

        fresh = [raw if raw.search_id == search.id else replace(raw, search_id=search.id) for raw in fresh]

        try:
            applied = await self.reconciler.run(search.id, fresh)
        except StoreError as e:
            logger.error("Could not store listings for search %s: %s", search.id, e)
            self._log(search, len(fresh), f"error: {e}")
            return RunResult(search_id=search.id, status="error", fetched=len(fresh), error=str(e))
        except Exception as e:
            logger.exception("Reconciliation failed for search %s", search.id)
            self._log(search, len(fresh), f"error: {e}")
            return RunResult(search_id=search.id, status="error", fetched=len(fresh), error=str(e))

        now = self.clock()
        if not fresh:
            status = "empty"
        elif applied.partial:
            status = "partial"
            logger.warning(
                "Search %s partially saved: %d listings and %d deletes failed",
                search.id, applied.failed, applied.failed_deletes,
            )
        else:
            status = "success"

        result = RunResult(
            search_id=search.id,
            status=status,
            fetched=len(fresh),
            persisted=applied.persisted,
            failed=applied.failed,
            deleted=applied.deleted,
            failed_deletes=applied.failed_deletes,
            report=applied.report,
        )

        # Listings are already stored; failures from here on are reported, not raised
        try:
            self.db.update_search_last_checked(search.id, now, len(fresh))
            self._log(search, len(fresh), status)
            if self.sink is not None:
                alerted = self.policy.dispatch(applied.report, search, self.sink, now)
                result.alerts_sent = 1 if alerted else 0
                if self.digest is not None:
                    for listing in alerted:
                        self.digest.add(listing, search, self.policy.classify(listing, now))
        except Exception as e:
            logger.exception("Post-run bookkeeping failed for search %s", search.id)
            result.error = str(e)

        return result

    async def run_all(
        self,
        searches: list[Search] | None = None,
        on_result: Callable[[Search, RunResult], None] | None = None,
    ) -> list[RunResult]:
        """Run searches one after another with a fixed delay between them.

        Defaults to all enabled searches. ``on_result`` is called after each
        search finishes.
        """
        if searches is None:
            searches = self.db.get_enabled_searches()

        results = []
        for index, search in enumerate(searches):
            result = await self.run_search(search)
            results.append(result)
            if on_result is not None:
                on_result(search, result)
            if index < len(searches) - 1:
                await self.sleep(self.inter_search_delay)
        return results


class Scheduler:
    """Periodically run all enabled searches within the active hours."""

    def __init__(
        self,
        monitor: Monitor,
        db: Database,
        *,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Sleep = asyncio.sleep,
    ):
        self.monitor = monitor
        self.db = db
        self.clock = clock
        self.sleep = sleep

    async def tick(self) -> list[RunResult] | None:
        settings = load_settings(self.db)
        if not is_within_active_hours(self.clock(), settings.start_time, settings.end_time):
            logger.info("Skipping automatic search, outside active hours")
            return None
        return await self.monitor.run_all()

    async def run_forever(self, max_cycles: int | None = None) -> None:
        settings = load_settings(self.db)
        removed = self.db.cleanup_old_listings(settings.retention_days)
        if removed:
            logger.info("Removed %d listings older than %d days", removed, settings.retention_days)

        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            settings = load_settings(self.db)
            if settings.check_interval_minutes <= 0:
                logger.info("Automatic searches disabled (interval = 0)")
                return
            await self.tick()
            cycles += 1
            await self.sleep(settings.check_interval_minutes * 60)
