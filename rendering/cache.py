"""
In-memory LRU cache for rendered diagrams.
"""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, List, Optional

from core.models import RenderedDiagram


@dataclass
class CacheEntry:
    """A cached render with access metadata."""

    value: RenderedDiagram
    created_at: float
    accessed_at: float
    access_count: int = 0

    def touch(self):
        """Update access timestamp and count."""
        self.accessed_at = time.time()
        self.access_count += 1


class RenderCache:
    """Thread-safe LRU cache keyed by render cache key."""

    def __init__(self, max_size: int = 100):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self.evictions = 0

    def get(self, key: str) -> Optional[RenderedDiagram]:
        """Return the cached render and mark it most recently used."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            entry.touch()
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key: str, value: RenderedDiagram) -> None:
        """Store a render, evicting the least recently used entry when full."""
        with self._lock:
            now = time.time()
            if key in self._entries:
                self._entries[key].value = value
                self._entries[key].accessed_at = now
                self._entries.move_to_end(key)
                return
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1
            self._entries[key] = CacheEntry(value=value, created_at=now, accessed_at=now)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> List[str]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def __contains__(self, key: Any) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
