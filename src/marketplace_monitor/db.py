import json
import sqlite3
from dataclasses import fields
from datetime import datetime, timedelta
from pathlib import Path

from marketplace_monitor.models import DateListed, FetchLog, Listing, Search

DEFAULT_SETTINGS = {
    "checkInterval": 30,
    "startTime": "08:00",
    "endTime": "22:00",
    "priceDropThreshold": 10,
    "maxDailyAlerts": 50,
    "enableQuietHours": True,
    "enableNotifications": True,
    "retentionDays": 7,
}

SEARCH_COLUMNS = (
    "keywords", "min_price", "max_price", "date_listed", "location",
    "radius", "enabled", "last_checked", "last_result_count",
)

EXPORT_VERSION = 1

EXPORT_SECTIONS = {"searches": list, "listings": list, "settings": dict}

DATETIME_FIELDS = ("timestamp", "posted_at", "seen_at", "hidden_at", "price_drop_at")


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None

    def init(self) -> None:
        """Initialize database connection and create tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()
        self.set_default_settings()

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS searches (
                id                  INTEGER PRIMARY KEY,
                keywords            TEXT NOT NULL,
                min_price           REAL,
                max_price           REAL,
                date_listed         TEXT NOT NULL DEFAULT 'all',
                location            TEXT NOT NULL DEFAULT '',
                radius              INTEGER,
                enabled             INTEGER NOT NULL DEFAULT 1,
                created_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_checked        TIMESTAMP,
                last_result_count   INTEGER
            );

            CREATE TABLE IF NOT EXISTS listings (
                id                  TEXT NOT NULL,
                search_id           INTEGER NOT NULL REFERENCES searches(id) ON DELETE CASCADE,
                title               TEXT NOT NULL,
                price               TEXT NOT NULL DEFAULT '',
                original_price      TEXT NOT NULL DEFAULT '',
                url                 TEXT NOT NULL DEFAULT '',
                image               TEXT NOT NULL DEFAULT '',
                location            TEXT NOT NULL DEFAULT '',
                description         TEXT NOT NULL DEFAULT '',
                timestamp           TIMESTAMP,
                posted_at           TIMESTAMP,
                seen                INTEGER NOT NULL DEFAULT 0,
                seen_at             TIMESTAMP,
                hidden              INTEGER NOT NULL DEFAULT 0,
                hidden_at           TIMESTAMP,
                price_drop_detected INTEGER NOT NULL DEFAULT 0,
                price_drop_at       TIMESTAMP,
                price_history       TEXT NOT NULL DEFAULT '[]',
                PRIMARY KEY (search_id, id)
            );

            CREATE INDEX IF NOT EXISTS idx_listings_timestamp ON listings(timestamp);

            CREATE TABLE IF NOT EXISTS settings (
                key                 TEXT PRIMARY KEY,
                value               TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS fetch_log (
                id                  INTEGER PRIMARY KEY,
                search_id           INTEGER NOT NULL REFERENCES searches(id) ON DELETE CASCADE,
                fetched_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                listings_found      INTEGER,
                status              TEXT
            );
        """)
        self.conn.commit()

    # Searches

    def add_search(self, search: Search) -> int:
        """Add a new search. Returns the search ID."""
        cursor = self.conn.execute(
            """
            INSERT INTO searches (keywords, min_price, max_price, date_listed, location, radius, enabled)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                search.keywords,
                search.min_price,
                search.max_price,
                DateListed(search.date_listed).value,
                search.location,
                search.radius,
                int(search.enabled),
            ),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_search_by_id(self, search_id: int) -> Search | None:
        """Get a search by ID."""
        cursor = self.conn.execute("SELECT * FROM searches WHERE id = ?", (search_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_search(row)

    def get_all_searches(self) -> list[Search]:
        """Get all searches, oldest first."""
        cursor = self.conn.execute("SELECT * FROM searches ORDER BY created_at, id")
        return [self._row_to_search(row) for row in cursor.fetchall()]

    def get_enabled_searches(self) -> list[Search]:
        cursor = self.conn.execute("SELECT * FROM searches WHERE enabled = 1 ORDER BY created_at, id")
        return [self._row_to_search(row) for row in cursor.fetchall()]

    def update_search(self, search_id: int, **updates) -> None:
        """Update the given search columns, leaving the rest unchanged."""
        unknown = set(updates) - set(SEARCH_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown search fields: {', '.join(sorted(unknown))}")
        if not updates:
            return

        values = []
        for key, value in updates.items():
            if key == "enabled":
                value = int(value)
            elif key == "date_listed":
                value = DateListed(value).value
            elif key == "last_checked":
                value = _dt(value)
            values.append(value)

        assignments = ", ".join(f"{key} = ?" for key in updates)
        self.conn.execute(f"UPDATE searches SET {assignments} WHERE id = ?", (*values, search_id))
        self.conn.commit()

    def update_search_last_checked(self, search_id: int, checked_at: datetime, result_count: int) -> None:
        self.update_search(search_id, last_checked=checked_at, last_result_count=result_count)

    def delete_search(self, search_id: int) -> None:
        """Delete a search and all its listings."""
        self.conn.execute("DELETE FROM searches WHERE id = ?", (search_id,))
        self.conn.commit()

    # Listings

    def upsert_listing(self, listing: Listing) -> None:
        """Insert a listing or replace the stored row with the same (search_id, id)."""
        row = self._listing_to_row(listing)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        updates = ", ".join(f"{key} = excluded.{key}" for key in row if key not in ("id", "search_id"))
        self.conn.execute(
            f"""
            INSERT INTO listings ({columns}) VALUES ({placeholders})
            ON CONFLICT(search_id, id) DO UPDATE SET {updates}
            """,
            tuple(row.values()),
        )
        self.conn.commit()

    def upsert_listings(self, listings: list[Listing]) -> None:
        for listing in listings:
            self.upsert_listing(listing)

    def get_listing(self, search_id: int, listing_id: str) -> Listing | None:
        cursor = self.conn.execute(
            "SELECT * FROM listings WHERE search_id = ? AND id = ?",
            (search_id, listing_id),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_listing(row)

    def get_listings_by_search(self, search_id: int) -> list[Listing]:
        """Get all listings for a search, most recently scraped first."""
        cursor = self.conn.execute(
            "SELECT * FROM listings WHERE search_id = ? ORDER BY timestamp DESC, id",
            (search_id,),
        )
        return [self._row_to_listing(row) for row in cursor.fetchall()]

    def get_recent_listings(self, hours: int = 24, limit: int = 100) -> list[Listing]:
        """Get visible listings scraped within the last ``hours``."""
        cutoff = datetime.now() - timedelta(hours=hours)
        cursor = self.conn.execute(
            """
            SELECT * FROM listings
            WHERE hidden = 0 AND timestamp > ?
            ORDER BY timestamp DESC
            LIMIT ?
            """,
            (cutoff.isoformat(), limit),
        )
        return [self._row_to_listing(row) for row in cursor.fetchall()]

    def delete_listing(self, search_id: int, listing_id: str) -> None:
        self.conn.execute(
            "DELETE FROM listings WHERE search_id = ? AND id = ?",
            (search_id, listing_id),
        )
        self.conn.commit()

    def mark_listing_seen(self, search_id: int, listing_id: str) -> bool:
        """Mark a listing as seen. Returns False if it does not exist."""
        cursor = self.conn.execute(
            "UPDATE listings SET seen = 1, seen_at = COALESCE(seen_at, ?) WHERE search_id = ? AND id = ?",
            (datetime.now().isoformat(), search_id, listing_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def hide_listing(self, search_id: int, listing_id: str) -> bool:
        """Hide a listing. Hiding also marks it seen."""
        now = datetime.now().isoformat()
        cursor = self.conn.execute(
            """
            UPDATE listings
            SET hidden = 1, hidden_at = ?, seen = 1, seen_at = COALESCE(seen_at, ?)
            WHERE search_id = ? AND id = ?
            """,
            (now, now, search_id, listing_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def cleanup_old_listings(self, retention_days: int) -> int:
        """Delete visible listings not scraped within the retention window."""
        cutoff = datetime.now() - timedelta(days=retention_days)
        cursor = self.conn.execute(
            "DELETE FROM listings WHERE hidden = 0 AND timestamp < ?",
            (cutoff.isoformat(),),
        )
        self.conn.commit()
        return cursor.rowcount

    def get_listing_count_for_search(self, search_id: int) -> int:
        """Get the number of listings for a search."""
        cursor = self.conn.execute(
            "SELECT COUNT(*) FROM listings WHERE search_id = ?",
            (search_id,),
        )
        return cursor.fetchone()[0]

    def get_stats(self) -> dict:
        """Counts for the status overview."""
        def count(sql: str, params: tuple = ()) -> int:
            return self.conn.execute(sql, params).fetchone()[0]

        return {
            "total_searches": count("SELECT COUNT(*) FROM searches"),
            "active_searches": count("SELECT COUNT(*) FROM searches WHERE enabled = 1"),
            "total_listings": count("SELECT COUNT(*) FROM listings"),
            "unseen_listings": count("SELECT COUNT(*) FROM listings WHERE seen = 0"),
            "recent_listings": len(self.get_recent_listings(24)),
        }

    # Settings

    def get_setting(self, key: str, default=None):
        row = self.conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return json.loads(row["value"])

    def set_setting(self, key: str, value) -> None:
        self.conn.execute(
            "INSERT INTO settings (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, json.dumps(value)),
        )
        self.conn.commit()

    def get_all_settings(self) -> dict:
        cursor = self.conn.execute("SELECT key, value FROM settings ORDER BY key")
        return {row["key"]: json.loads(row["value"]) for row in cursor.fetchall()}

    def set_default_settings(self) -> None:
        """Store defaults for any setting that has never been written."""
        self.conn.executemany(
            "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
            [(key, json.dumps(value)) for key, value in DEFAULT_SETTINGS.items()],
        )
        self.conn.commit()

    # Backup

    def export_data(self) -> dict:
        """Dump searches, listings and settings as a JSON-serializable dict."""
        searches = [dict(row) for row in self.conn.execute("SELECT * FROM searches ORDER BY id")]
        listings = []
        for row in self.conn.execute("SELECT * FROM listings ORDER BY search_id, id"):
            item = dict(row)
            item["price_history"] = json.loads(item["price_history"])
            listings.append(item)

        return {
            "version": EXPORT_VERSION,
            "exported_at": datetime.now().isoformat(),
            "searches": searches,
            "listings": listings,
            "settings": self.get_all_settings(),
        }

    def import_data(self, data: dict) -> dict:
        """Load an ``export_data`` dump. All or nothing; returns row counts.

        Raises ValueError for a malformed dump and sqlite3.Error when rows
        clash with existing data.
        """
        if not isinstance(data, dict) or not data.get("version"):
            raise ValueError("Invalid data format")
        if data["version"] != EXPORT_VERSION:
            raise ValueError(f"Unsupported export version: {data['version']}")
        for section, kind in EXPORT_SECTIONS.items():
            if not isinstance(data.get(section), kind):
                raise ValueError(f"Invalid data format: '{section}' missing or malformed")

        with self.conn:
            for search in data["searches"]:
                self._insert_row("searches", search)
            for listing in data["listings"]:
                listing = dict(listing)
                listing["price_history"] = json.dumps(list(listing.get("price_history") or []))
                self._insert_row("listings", listing)
            for key, value in data["settings"].items():
                self.conn.execute(
                    "INSERT INTO settings (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, json.dumps(value)),
                )

        return {section: len(data[section]) for section in EXPORT_SECTIONS}

    def clear_all_data(self) -> None:
        """Delete everything and restore the default settings."""
        with self.conn:
            self.conn.execute("DELETE FROM listings")
            self.conn.execute("DELETE FROM fetch_log")
            self.conn.execute("DELETE FROM searches")
            self.conn.execute("DELETE FROM settings")
        self.set_default_settings()

    def _insert_row(self, table: str, values: dict) -> None:
        if not isinstance(values, dict):
            raise ValueError(f"Invalid {table} entry: {values!r}")
        known = [row["name"] for row in self.conn.execute(f"PRAGMA table_info({table})")]
        columns = [column for column in known if column in values]
        self.conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            tuple(values[column] for column in columns),
        )

    # Fetch log

    def add_fetch_log(self, log: FetchLog) -> int:
        """Add a fetch log entry."""
        cursor = self.conn.execute(
            """
            INSERT INTO fetch_log (search_id, listings_found, status)
            VALUES (?, ?, ?)
            """,
            (log.search_id, log.listings_found, log.status),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_fetch_logs(self, search_id: int) -> list[FetchLog]:
        cursor = self.conn.execute(
            "SELECT * FROM fetch_log WHERE search_id = ? ORDER BY id",
            (search_id,),
        )
        return [
            FetchLog(
                id=row["id"],
                search_id=row["search_id"],
                fetched_at=_parse_dt(row["fetched_at"]),
                listings_found=row["listings_found"],
                status=row["status"],
            )
            for row in cursor.fetchall()
        ]

    def _row_to_search(self, row: sqlite3.Row) -> Search:
        """Convert a database row to a Search model."""
        return Search(
            id=row["id"],
            keywords=row["keywords"],
            min_price=row["min_price"],
            max_price=row["max_price"],
            date_listed=DateListed(row["date_listed"]),
            location=row["location"],
            radius=row["radius"],
            enabled=bool(row["enabled"]),
            created_at=_parse_dt(row["created_at"]),
            last_checked=_parse_dt(row["last_checked"]),
            last_result_count=row["last_result_count"],
        )

    def _listing_to_row(self, listing: Listing) -> dict:
        row = {}
        for f in fields(Listing):
            value = getattr(listing, f.name)
            if f.name in DATETIME_FIELDS:
                value = _dt(value)
            elif f.name == "price_history":
                value = json.dumps(list(value))
            elif isinstance(value, bool):
                value = int(value)
            row[f.name] = value
        return row

    def _row_to_listing(self, row: sqlite3.Row) -> Listing:
        """Convert a database row to a Listing model."""
        return Listing(
            id=row["id"],
            search_id=row["search_id"],
            title=row["title"],
            price=row["price"],
            original_price=row["original_price"],
            url=row["url"],
            image=row["image"],
            location=row["location"],
            description=row["description"],
            timestamp=_parse_dt(row["timestamp"]),
            posted_at=_parse_dt(row["posted_at"]),
            seen=bool(row["seen"]),
            seen_at=_parse_dt(row["seen_at"]),
            hidden=bool(row["hidden"]),
            hidden_at=_parse_dt(row["hidden_at"]),
            price_drop_detected=bool(row["price_drop_detected"]),
            price_drop_at=_parse_dt(row["price_drop_at"]),
            price_history=tuple(json.loads(row["price_history"])),
        )
