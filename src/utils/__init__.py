"""Utilities package for the garment fulfillment tracker."""

from .config import get_config, reset_config
from .datetime_utils import utc_now

__all__ = [
    "get_config",
    "reset_config",
    "utc_now",
]
