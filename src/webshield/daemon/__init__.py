"""Delivery process: caches, request coordination and page-facing service."""

from .cache import CacheEntry, PinnedCache, RuleCache
from .coordinator import RuleCoordinator
from .preloader import Preloader
from .service import DeliveryServer, DeliveryService

__all__ = [
    "CacheEntry",
    "DeliveryServer",
    "DeliveryService",
    "PinnedCache",
    "Preloader",
    "RuleCache",
    "RuleCoordinator",
]
