"""
Rule-based service categories.

Always-available fallback for duplicate-service grouping when no AI
category is known for a merchant.
"""

from typing import Optional


SERVICE_CATEGORIES: dict[str, tuple[str, ...]] = {
    "Streaming": (
        "NETFLIX", "HULU", "DISNEY", "HBO", "MAX.COM", "PARAMOUNT",
        "PEACOCK", "PRIME VIDEO", "APPLE TV", "CRUNCHYROLL",
    ),
    "Music": (
        "SPOTIFY", "APPLE MUSIC", "TIDAL", "PANDORA", "YOUTUBE MUSIC",
        "DEEZER",
    ),
    "CloudStorage": (
        "ICLOUD", "GOOGLE ONE", "DROPBOX", "ONEDRIVE", "BOX.COM",
    ),
    "News": (
        "NYT", "NEW YORK TIMES", "WSJ", "WASHINGTON POST", "MEDIUM",
        "SUBSTACK", "ECONOMIST",
    ),
    "Fitness": (
        "PELOTON", "STRAVA", "FITBIT", "MYFITNESSPAL", "HEADSPACE", "CALM",
    ),
}

# Lowercase AI answers mapped onto the names above
_ALIASES = {
    "streaming": "Streaming",
    "video": "Streaming",
    "music": "Music",
    "cloud_storage": "CloudStorage",
    "cloud storage": "CloudStorage",
    "cloudstorage": "CloudStorage",
    "storage": "CloudStorage",
    "news": "News",
    "fitness": "Fitness",
}


def categorize_merchant(merchant: str) -> Optional[str]:
    """Category from keyword match on the merchant key, or None."""
    m = merchant.upper()
    for category, keywords in SERVICE_CATEGORIES.items():
        if any(keyword in m for keyword in keywords):
            return category
    return None


def normalize_category(category: Optional[str]) -> Optional[str]:
    """
    Canonical spelling for a category, so "streaming" from a model and
    "Streaming" from the keyword table land in the same group.
    """
    if category is None:
        return None
    cleaned = category.strip()
    if not cleaned or cleaned.lower() in ("none", "null", "other", "unknown"):
        return None
    alias = _ALIASES.get(cleaned.lower())
    if alias:
        return alias
    return cleaned.replace("_", " ").title().replace(" ", "")
