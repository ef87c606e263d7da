"""Keyword-based category detection for marketplace listings."""

from marketplace_monitor.models import Category

ELECTRONICS_KEYWORDS = (
    "iphone", "phone", "laptop", "computer", "ipad", "tablet", "tv", "television",
    "xbox", "playstation", "gaming", "headphones", "speaker", "camera", "drone",
    "macbook", "imac", "android", "samsung", "apple", "dell", "hp", "sony",
    "nintendo", "keyboard", "mouse", "monitor", "printer", "router", "electronics",
)

FURNITURE_KEYWORDS = (
    "chair", "table", "desk", "bed", "mattress", "sofa", "couch", "dresser",
    "bookshelf", "cabinet", "wardrobe", "nightstand", "dining", "furniture",
    "ottoman", "bench", "stool", "shelving", "storage", "drawer",
)

VEHICLE_KEYWORDS = (
    "car", "truck", "motorcycle", "bike", "van", "suv", "sedan", "hatchback",
    "toyota", "honda", "ford", "bmw", "mercedes", "audi", "nissan", "mazda",
    "vehicle", "auto", "wheels", "tires", "engine", "parts",
)

CLOTHING_KEYWORDS = (
    "shirt", "pants", "dress", "shoes", "jacket", "coat", "jeans", "shorts",
    "skirt", "blouse", "sweater", "hoodie", "sneakers", "boots", "sandals",
    "clothing", "apparel", "fashion", "brand", "size", "outfit",
)

# Checked in order; the first category with a matching keyword wins.
CATEGORY_KEYWORDS = (
    (Category.ELECTRONICS, ELECTRONICS_KEYWORDS),
    (Category.FURNITURE, FURNITURE_KEYWORDS),
    (Category.VEHICLES, VEHICLE_KEYWORDS),
    (Category.CLOTHING, CLOTHING_KEYWORDS),
)


def detect_category(listing) -> Category:
    """Classify a listing by substring match over its title and description."""
    title = (getattr(listing, "title", "") or "").lower()
    description = (getattr(listing, "description", "") or "").lower()
    text = f"{title} {description}"

    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return Category.OTHER


def categories_from_names(names: list[str]) -> frozenset[Category]:
    """Convert user-supplied category names, ignoring case."""
    return frozenset(Category(name.strip().lower()) for name in names if name.strip())
