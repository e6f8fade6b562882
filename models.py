"""Data types and errors shared by the monitor and the extractors."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class MonitorError(Exception):
    """Base class for all monitor errors"""


class ConfigError(MonitorError):
    """Missing or invalid startup configuration. Fatal."""


class FetchError(MonitorError):
    """Page could not be retrieved (timeout, non-2xx, connection failure)"""


class ExtractError(MonitorError):
    """Page content not recognised by the item's extractor"""


class NotifyError(MonitorError):
    """Telegram message could not be delivered"""


class AvailabilityStatus(Enum):
    IN_STOCK = "In Stock"
    OUT_OF_STOCK = "Out of Stock"
    UNKNOWN = "Unknown"

    @property
    def is_definite(self) -> bool:
        return self is not AvailabilityStatus.UNKNOWN

    def __str__(self) -> str:
        return self.value


IN_STOCK = AvailabilityStatus.IN_STOCK
OUT_OF_STOCK = AvailabilityStatus.OUT_OF_STOCK
UNKNOWN = AvailabilityStatus.UNKNOWN


@dataclass(frozen=True)
class TrackedItem:
    item_id: str
    name: str
    url: str
    extractor: Any = field(compare=False, repr=False)
    vendor: str = ""


@dataclass(frozen=True)
class WatchRecord:
    """
    What the monitor remembers about one item.

    ``status`` is the last definite status, or None while the item has never
    been seen In Stock or Out of Stock. ``last_result`` is the raw result of
    the latest check and may be Unknown.
    """
    status: Optional[AvailabilityStatus]
    last_result: AvailabilityStatus
    last_checked: datetime
    consecutive_unknown: int = 0


@dataclass(frozen=True)
class TransitionEvent:
    item_id: str
    previous: AvailabilityStatus
    new: AvailabilityStatus
    timestamp: datetime
