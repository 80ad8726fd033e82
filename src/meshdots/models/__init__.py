"""Data models for mesh frames and aggregated device records."""

from meshdots.models._base import MeshBaseModel, MeshEnum
from meshdots.models.category import PORTNUM_TO_CATEGORY, QUERYABLE_CATEGORIES, Category, category_name
from meshdots.models.dot import DOT_FIELD_ALIASES, DeviceDot, MapPoint, MeshcoreDot
from meshdots.models.frame import (
    AdvertFlags,
    AdvertFrame,
    AdvertPayload,
    DecodeFailure,
    DeviceRole,
    FrameHeader,
    PayloadType,
    RawFrame,
    RouteType,
)

__all__ = [
    "DOT_FIELD_ALIASES",
    "PORTNUM_TO_CATEGORY",
    "QUERYABLE_CATEGORIES",
    "AdvertFlags",
    "AdvertFrame",
    "AdvertPayload",
    "Category",
    "DecodeFailure",
    "DeviceDot",
    "DeviceRole",
    "FrameHeader",
    "MapPoint",
    "MeshBaseModel",
    "MeshEnum",
    "MeshcoreDot",
    "PayloadType",
    "RawFrame",
    "RouteType",
    "category_name",
]
