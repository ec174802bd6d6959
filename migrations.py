import logging
from typing import Any, Optional

from database import SheetsDatabase
from models import CATEGORIES

logger = logging.getLogger(__name__)

DEFAULT_EMOJI = "📂"

COLOR_EMOJI = {
    "#FF6B6B": "🍽️",
    "#4ECDC4": "🚗",
    "#FFD93D": "💡",
    "#6BCF7F": "🛍️",
    "#4D96FF": "🎬",
    "#FF6B9D": "🏥",
    "#C44569": "📚",
    "#F8B500": "💰",
    "#54A0FF": "🏠",
    "#5F27CD": "✈️",
    "#FF9F43": "🎯",
    "#8395A7": "📂",
    "#3867D6": "💳",
    "#20BF6B": "⛽",
    "#FF9FF3": "📱",
}

# Checked in order; first keyword hit wins.
KEYWORD_EMOJI = (
    (("food", "dining", "restaurant"), "🍽️"),
    (("transport", "car", "gas"), "🚗"),
    (("bill", "utilities", "electric"), "💡"),
    (("shop", "store", "retail"), "🛍️"),
    (("entertainment", "movie", "fun"), "🎬"),
    (("health", "medical", "doctor"), "🏥"),
    (("education", "school", "book"), "📚"),
    (("finance", "bank", "money"), "💰"),
    (("home", "house", "rent"), "🏠"),
    (("travel", "vacation", "trip"), "✈️"),
    (("goal", "saving", "target"), "🎯"),
)


def emoji_for(color: Optional[str], name: Optional[str]) -> str:
    if color and color.upper() in COLOR_EMOJI:
        return COLOR_EMOJI[color.upper()]
    lowered = (name or "").lower()
    for keywords, emoji in KEYWORD_EMOJI:
        if any(keyword in lowered for keyword in keywords):
            return emoji
    return DEFAULT_EMOJI


class CategoryEmojiMigration:
    """Backfill the emoji column for categories created before it existed."""

    def __init__(self, db: SheetsDatabase) -> None:
        self.db = db

    def verify(self) -> dict[str, int]:
        self.db.ensure_table(CATEGORIES)
        categories = self.db.find(CATEGORIES.name)
        with_emoji = sum(1 for c in categories if (c.get("emoji") or "").strip())
        return {
            "total": len(categories),
            "withEmoji": with_emoji,
            "withoutEmoji": len(categories) - with_emoji,
        }

    def run(self) -> dict[str, Any]:
        before = self.verify()
        if before["withoutEmoji"] == 0:
            return {"migrated": 0, "before": before, "after": before}
        migrated = 0
        for category in self.db.find(CATEGORIES.name):
            if (category.get("emoji") or "").strip():
                continue
            emoji = emoji_for(category.get("color"), category.get("name"))
            self.db.update(CATEGORIES.name, category["id"], {"emoji": emoji})
            migrated += 1
        after = self.verify()
        logger.info(f"emoji_migration: migrated={migrated} remaining={after['withoutEmoji']}")
        return {"migrated": migrated, "before": before, "after": after}
