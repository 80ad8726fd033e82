"""meshdots - Mesh frame decoding and per-device state aggregation."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("meshdots")
except PackageNotFoundError:
    __version__ = "0+local"
from meshdots.config import MeshDotsConfig
from meshdots.exceptions import (
    FrameDecodeError,
    MeshDotsConfigError,
    MeshDotsError,
    StorageError,
    StorageTimeoutError,
)
from meshdots.meshcore import decode_advert, decode_advert_frame, decode_frame
from meshdots.models import (
    AdvertFrame,
    AdvertPayload,
    Category,
    DecodeFailure,
    DeviceDot,
    MapPoint,
    MeshcoreDot,
    RawFrame,
)
from meshdots.service import MeshDotsService
from meshdots.state.engine import AggregationEngine
from meshdots.state.events import DotUpdate, MeshcoreUpdate
from meshdots.validators import NameValidator, is_valid_packet

__all__ = [
    "__version__",
    "AdvertFrame",
    "AdvertPayload",
    "AggregationEngine",
    "Category",
    "DecodeFailure",
    "DeviceDot",
    "DotUpdate",
    "FrameDecodeError",
    "MapPoint",
    "MeshDotsConfig",
    "MeshDotsConfigError",
    "MeshDotsError",
    "MeshDotsService",
    "MeshcoreDot",
    "MeshcoreUpdate",
    "NameValidator",
    "RawFrame",
    "StorageError",
    "StorageTimeoutError",
    "decode_advert",
    "decode_advert_frame",
    "decode_frame",
    "is_valid_packet",
]
