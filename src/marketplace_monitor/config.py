import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from rich.logging import RichHandler

load_dotenv()

DEFAULT_BASE_URL = "https://www.facebook.com/marketplace"


@dataclass
class Config:
    proxy_url: str | None
    db_path: Path
    base_url: str
    log_level: str


def get_config() -> Config:
    return Config(
        proxy_url=os.environ.get("MARKETPLACE_MONITOR_PROXY_URL"),
        db_path=Path(os.environ.get("MARKETPLACE_MONITOR_DB_PATH", "data/marketplace_monitor.db")),
        base_url=os.environ.get("MARKETPLACE_MONITOR_BASE_URL", DEFAULT_BASE_URL),
        log_level=os.environ.get("MARKETPLACE_MONITOR_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    """Route library logging through rich. Safe to call more than once."""
    root = logging.getLogger("marketplace_monitor")
    root.setLevel(getattr(logging, level, logging.INFO))
    if not any(isinstance(handler, RichHandler) for handler in root.handlers):
        root.addHandler(RichHandler(show_path=False, rich_tracebacks=True))
