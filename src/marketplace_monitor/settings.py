from dataclasses import dataclass

from marketplace_monitor.db import Database
from marketplace_monitor.notifications import AlertConditions

# Attribute name -> key in the settings table
SETTING_KEYS = {
    "check_interval_minutes": "checkInterval",
    "start_time": "startTime",
    "end_time": "endTime",
    "price_drop_threshold": "priceDropThreshold",
    "max_daily_alerts": "maxDailyAlerts",
    "quiet_hours_enabled": "enableQuietHours",
    "notifications_enabled": "enableNotifications",
    "retention_days": "retentionDays",
}


@dataclass
class MonitorSettings:
    check_interval_minutes: int = 30
    start_time: str = "08:00"
    end_time: str = "22:00"
    price_drop_threshold: float = 10.0
    max_daily_alerts: int = 50
    quiet_hours_enabled: bool = True
    notifications_enabled: bool = True
    retention_days: int = 7


def parse_setting(name: str, value):
    """Coerce a raw value to the type of the named setting. Raises ValueError."""
    default = getattr(MonitorSettings(), name)
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, (int, float)):
        return type(default)(value)
    if name in ("start_time", "end_time"):
        hour, _, minute = str(value).partition(":")
        if not (0 <= int(hour) <= 23 and 0 <= int(minute) <= 59):
            raise ValueError(f"Invalid time: {value}")
    return str(value)


def load_settings(db: Database) -> MonitorSettings:
    defaults = MonitorSettings()
    values = {}
    for attr, key in SETTING_KEYS.items():
        values[attr] = parse_setting(attr, db.get_setting(key, getattr(defaults, attr)))
    return MonitorSettings(**values)


def save_settings(db: Database, settings: MonitorSettings) -> None:
    for attr, key in SETTING_KEYS.items():
        db.set_setting(key, getattr(settings, attr))


def alert_conditions_from(settings: MonitorSettings) -> AlertConditions:
    return AlertConditions(
        price_drop_threshold=settings.price_drop_threshold,
        max_daily_alerts=settings.max_daily_alerts,
        quiet_hours_enabled=settings.quiet_hours_enabled,
    )
