import re


def parse_price(text) -> float:
    """Parse a free-text price like "$1,234.56" to a float.

    Anything that does not parse, including free or empty prices, is 0.0.
    """
    if text is None:
        return 0.0
    if isinstance(text, (int, float)):
        return float(text)
    # Remove currency symbol and commas
    cleaned = re.sub(r"[^\d.]", "", str(text))
    try:
        return float(cleaned)
    except ValueError:
        return 0.0
