"""In-memory response cache with TTL expiry and LRU eviction."""

import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar

import structlog

from .errors import ConfigurationError
from .providers.base import Message

logger = structlog.get_logger(__name__)

V = TypeVar("V")


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for response caching."""

    ttl: float = 300.0  # Seconds an entry stays fresh
    max_entries: int = 1000
    enabled: bool = True

    def validate(self) -> None:
        if self.ttl <= 0:
            raise ConfigurationError("ttl", "must be > 0")
        if self.max_entries <= 0:
            raise ConfigurationError("max_entries", "must be > 0")

    def is_valid(self) -> bool:
        try:
            self.validate()
        except ConfigurationError:
            return False
        return True

    def with_ttl(self, ttl: float) -> "CacheConfig":
        return replace(self, ttl=ttl)

    def with_max_entries(self, max_entries: int) -> "CacheConfig":
        return replace(self, max_entries=max_entries)

    def with_enabled(self, enabled: bool) -> "CacheConfig":
        return replace(self, enabled=enabled)


@dataclass
class CacheMetrics:
    """Cache counters."""

    hits: int = 0
    misses: int = 0
    stores: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        if lookups == 0:
            return 0.0
        return self.hits / lookups

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stores": self.stores,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
        }


class ResponseCache(Generic[V]):
    """
    Caches completed responses keyed by request content.

    Entries expire ``ttl`` seconds after they were stored. When the cache is
    full the least recently used entry is evicted. A disabled cache never
    stores and always misses.
    """

    def __init__(self, config: Optional[CacheConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or CacheConfig()
        self.config.validate()
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, V]]" = OrderedDict()
        self._metrics = CacheMetrics()
        self._lock = threading.Lock()

    @staticmethod
    def key_for(messages: List[Message], model: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Deterministic key over model, messages and request parameters."""
        payload = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "params": dict(params or {}),
        }
        encoded = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def get(self, key: str) -> Optional[V]:
        """Return the fresh entry for key, or None."""
        if not self.config.enabled:
            return None

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() - entry[0] > self.config.ttl:
                del self._entries[key]
                entry = None

            if entry is None:
                self._metrics.misses += 1
                return None

            self._entries.move_to_end(key)
            self._metrics.hits += 1
            return entry[1]

    def store(self, key: str, value: V) -> None:
        if not self.config.enabled:
            return

        evicted = None
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.config.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._metrics.evictions += 1
            self._entries[key] = (self._clock(), value)
            self._metrics.stores += 1

        if evicted is not None:
            logger.debug("cache_evicted", key=evicted)

    def invalidate(self, key: str) -> bool:
        """Drop one entry. Returns False if it was not cached."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def metrics(self) -> CacheMetrics:
        with self._lock:
            return replace(self._metrics)
