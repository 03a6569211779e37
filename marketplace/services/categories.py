"""Vendor categories and the badge (icon + colour) each one renders with."""
from dataclasses import dataclass
from enum import Enum


class BusinessCategory(str, Enum):
    RESTAURANT = "restaurant"
    GROCERY = "grocery"
    RETAIL = "retail"
    LODGING = "lodging"
    SERVICES = "services"
    EVENTS = "events"
    OTHER = "other"


@dataclass(frozen=True)
class CategoryBadge:
    icon: str
    color: str


CATEGORY_BADGES: dict[BusinessCategory, CategoryBadge] = {
    BusinessCategory.RESTAURANT: CategoryBadge("utensils", "orange"),
    BusinessCategory.GROCERY: CategoryBadge("shopping-basket", "green"),
    BusinessCategory.RETAIL: CategoryBadge("shopping-bag", "blue"),
    BusinessCategory.LODGING: CategoryBadge("bed", "purple"),
    BusinessCategory.SERVICES: CategoryBadge("wrench", "slate"),
    BusinessCategory.EVENTS: CategoryBadge("calendar", "pink"),
    BusinessCategory.OTHER: CategoryBadge("store", "gray"),
}

_missing = set(BusinessCategory) - set(CATEGORY_BADGES)
if _missing:
    raise RuntimeError(f"no badge defined for categories: {sorted(c.value for c in _missing)}")


def parse_category(value: str | None) -> BusinessCategory:
    """Unknown or empty values fall back to OTHER; stored rows predate some categories."""
    try:
        return BusinessCategory((value or "").strip().lower())
    except ValueError:
        return BusinessCategory.OTHER


def category_badge(value: str | BusinessCategory | None) -> CategoryBadge:
    category = value if isinstance(value, BusinessCategory) else parse_category(value)
    return CATEGORY_BADGES[category]
