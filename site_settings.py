"""
Site configuration

The `setting` collection holds at most one document; it is merged over the
defaults of `schemas.Setting` and cached for SETTINGS_CACHE_SECONDS.
"""
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

import database
from database import collection
from schemas import Setting

logger = logging.getLogger(__name__)

SETTINGS_CACHE_SECONDS = float(os.getenv("SETTINGS_CACHE_SECONDS", "60"))

T = TypeVar("T")


class CachedValue(Generic[T]):
    """Memoize a loader for `ttl_seconds`, with explicit invalidation."""

    def __init__(self, loader: Callable[[], T], ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self.value: Optional[T] = None
        self.expires_at: float = 0.0

    def get(self) -> T:
        with self._lock:
            now = self._clock()
            if self.value is None or now >= self.expires_at:
                self.value = self._loader()
                self.expires_at = now + self._ttl
            return self.value

    def invalidate(self) -> None:
        with self._lock:
            self.value = None
            self.expires_at = 0.0


def load_setting() -> Setting:
    if database.db is None:
        logger.warning("Database not initialized, using default site settings")
        return Setting()
    doc = collection("setting").find_one({}) or {}
    doc.pop("_id", None)
    doc.pop("created_at", None)
    doc.pop("updated_at", None)
    return Setting(**doc)


_cache: CachedValue[Setting] = CachedValue(load_setting, SETTINGS_CACHE_SECONDS)


def get_setting() -> Setting:
    return _cache.get()


def invalidate_setting() -> None:
    _cache.invalidate()


def save_setting(data: Dict[str, Any]) -> Setting:
    setting = Setting(**data)
    collection("setting").replace_one({}, setting.model_dump(), upsert=True)
    invalidate_setting()
    logger.info("Site settings updated")
    return setting
