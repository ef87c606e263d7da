import pandas as pd

from marketplace_monitor.categories import detect_category
from marketplace_monitor.filters import is_effectively_new, is_price_drop, is_seen
from marketplace_monitor.models import Category, Listing, ListingStatus
from marketplace_monitor.prices import parse_price


def summarize_listings(listings: list[Listing]) -> dict:
    """Summarize listings by status, category and price."""
    if not listings:
        return {
            "count": 0,
            "hidden": 0,
            "status": {status.value: 0 for status in ListingStatus},
            "category": {category.value: 0 for category in Category},
            "price": {"min": None, "median": None, "max": None},
        }

    df = pd.DataFrame({
        "price": [parse_price(l.price) for l in listings],
        "category": [detect_category(l).value for l in listings],
        "new": [is_effectively_new(l) for l in listings],
        "price_drop": [is_price_drop(l) for l in listings],
        "seen": [is_seen(l) for l in listings],
        "hidden": [l.hidden for l in listings],
    })

    category_counts = df["category"].value_counts()
    # Unparsable prices come back as 0 and are left out of price stats
    prices = df.loc[df["price"] > 0, "price"]

    return {
        "count": len(df),
        "hidden": int(df["hidden"].sum()),
        "status": {
            ListingStatus.NEW.value: int(df["new"].sum()),
            ListingStatus.PRICE_DROP.value: int(df["price_drop"].sum()),
            ListingStatus.SEEN.value: int(df["seen"].sum()),
        },
        "category": {category.value: int(category_counts.get(category.value, 0)) for category in Category},
        "price": {
            "min": float(prices.min()) if not prices.empty else None,
            "median": float(prices.median()) if not prices.empty else None,
            "max": float(prices.max()) if not prices.empty else None,
        },
    }
