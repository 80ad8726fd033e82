"""Message categories (Meshtastic port numbers)."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class Category(StrEnum):
    TEXT_MESSAGE_APP = "TEXT_MESSAGE_APP"
    POSITION_APP = "POSITION_APP"
    NODEINFO_APP = "NODEINFO_APP"
    ROUTING_APP = "ROUTING_APP"
    TELEMETRY_APP = "TELEMETRY_APP"
    TRACEROUTE_APP = "TRACEROUTE_APP"
    NEIGHBORINFO_APP = "NEIGHBORINFO_APP"
    WAYPOINT_APP = "WAYPOINT_APP"
    MAP_REPORT_APP = "MAP_REPORT_APP"


PORTNUM_TO_CATEGORY: dict[int, Category] = {
    1: Category.TEXT_MESSAGE_APP,
    3: Category.POSITION_APP,
    4: Category.NODEINFO_APP,
    5: Category.ROUTING_APP,
    8: Category.WAYPOINT_APP,
    67: Category.TELEMETRY_APP,
    70: Category.TRACEROUTE_APP,
    71: Category.NEIGHBORINFO_APP,
    73: Category.MAP_REPORT_APP,
}

# Categories exposed by the query surface (statistics, per-device cleanup).
QUERYABLE_CATEGORIES: tuple[Category, ...] = (
    Category.TEXT_MESSAGE_APP,
    Category.POSITION_APP,
    Category.NODEINFO_APP,
    Category.TELEMETRY_APP,
    Category.NEIGHBORINFO_APP,
    Category.WAYPOINT_APP,
    Category.MAP_REPORT_APP,
    Category.TRACEROUTE_APP,
)


def category_name(portnum: Any) -> Category | None:
    """Resolve a numeric portnum or a category name; ``None`` if unknown."""
    if isinstance(portnum, Category):
        return portnum
    if isinstance(portnum, bool):
        return None
    if isinstance(portnum, int):
        return PORTNUM_TO_CATEGORY.get(portnum)
    if isinstance(portnum, str):
        text = portnum.strip()
        if text.isdigit():
            return PORTNUM_TO_CATEGORY.get(int(text))
        try:
            return Category(text)
        except ValueError:
            return None
    return None
