"""
Memory Manager - Tracks large buffer allocations against memory pressure.

System pressure is read from psutil (fraction of physical memory in use).
Allocations are bookkeeping records for buffers the pipeline holds (raw file
bytes, page images, PDF chunks) so they can be released by cleanup tiers
when pressure rises.
"""
import asyncio
import hashlib
import inspect
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

import psutil

from config.logging_config import get_logger
from core.constants import DEFAULT_CHUNK_SIZE, MEMORY_THRESHOLDS
from core.exceptions import MemoryLimitError
from core.models import MemoryAllocation

logger = get_logger(__name__)

CLEANUP_TIERS = ('light', 'aggressive')
LIGHT_CLEANUP_MAX_AGE = 300.0


def system_memory_usage() -> float:
    """Fraction of physical memory currently in use."""
    return psutil.virtual_memory().percent / 100.0


class MemoryManager:
    """Allocation tracking, buffer pools and tiered cleanup."""

    def __init__(
        self,
        warning_threshold: float = MEMORY_THRESHOLDS['warning'],
        critical_threshold: float = MEMORY_THRESHOLDS['critical'],
        emergency_threshold: float = MEMORY_THRESHOLDS['emergency'],
        max_tracked_bytes: int = 1024 * 1024 * 1024,
        usage_provider: Optional[Callable[[], float]] = None
    ):
        """
        Initialize memory manager.

        Args:
            warning_threshold: Usage ratio that triggers light cleanup
            critical_threshold: Usage ratio at which allocations are refused
            emergency_threshold: Usage ratio reported as emergency
            max_tracked_bytes: Hard ceiling on bytes tracked by this manager
            usage_provider: Callable returning the usage ratio; psutil when omitted
        """
        if not 0 < warning_threshold < critical_threshold <= 1:
            raise ValueError("Thresholds must satisfy 0 < warning < critical <= 1")
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.emergency_threshold = max(emergency_threshold, critical_threshold)
        self.max_tracked_bytes = max_tracked_bytes
        self.usage_provider = usage_provider or system_memory_usage

        self._allocations: Dict[str, MemoryAllocation] = {}
        self._pools: Dict[str, Dict[str, Any]] = {}
        self._callbacks: Dict[str, List[Callable[[], Any]]] = {tier: [] for tier in CLEANUP_TIERS}
        self._lock = threading.RLock()
        self._stats = {
            'allocations': 0,
            'releases': 0,
            'rejected': 0,
            'light_cleanups': 0,
            'aggressive_cleanups': 0,
            'bytes_freed': 0,
        }

    # Usage

    def get_memory_usage(self) -> float:
        return float(self.usage_provider())

    def get_memory_level(self, usage: Optional[float] = None) -> str:
        """'normal', 'warning', 'critical' or 'emergency' for a usage ratio."""
        usage = self.get_memory_usage() if usage is None else usage
        if usage >= self.emergency_threshold:
            return 'emergency'
        if usage >= self.critical_threshold:
            return 'critical'
        if usage >= self.warning_threshold:
            return 'warning'
        return 'normal'

    def check_memory_usage(self) -> Dict[str, Any]:
        """Read usage, run the cleanup tier it calls for and report status."""
        usage = self.get_memory_usage()
        level = self.get_memory_level(usage)
        if level == 'warning':
            self.perform_light_cleanup()
        elif level in ('critical', 'emergency'):
            logger.warning("Memory usage at %.0f%% (%s)", usage * 100, level)
            self.perform_aggressive_cleanup()
        return {
            'usage': usage,
            'level': level,
            'total_allocated': self.total_allocated,
            'allocation_count': len(self._allocations),
        }

    # Allocations

    @property
    def total_allocated(self) -> int:
        with self._lock:
            return sum(a.size for a in self._allocations.values())

    def allocate_memory(
        self,
        size: int,
        type: str = 'general',
        can_cleanup: bool = True,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Track an allocation of ``size`` bytes.

        Raises:
            MemoryLimitError: if memory stays critical after cleanup or the
                tracked total would exceed ``max_tracked_bytes``
        """
        if size < 0:
            raise ValueError("size cannot be negative")

        usage = self.get_memory_usage()
        if usage >= self.warning_threshold:
            self.perform_light_cleanup()
            usage = self.get_memory_usage()
        if usage >= self.critical_threshold:
            self.perform_aggressive_cleanup()
            usage = self.get_memory_usage()
        if usage >= self.critical_threshold:
            self._stats['rejected'] += 1
            raise MemoryLimitError(
                f"Cannot allocate {size} bytes: memory usage at {usage:.0%}"
            )

        with self._lock:
            if self.total_allocated + size > self.max_tracked_bytes:
                self.perform_light_cleanup(max_age_seconds=0)
            if self.total_allocated + size > self.max_tracked_bytes:
                self._stats['rejected'] += 1
                raise MemoryLimitError(
                    f"Cannot allocate {size} bytes: tracked limit of {self.max_tracked_bytes} bytes reached"
                )

            allocation_id = f"alloc_{uuid.uuid4().hex[:12]}"
            self._allocations[allocation_id] = MemoryAllocation(
                id=allocation_id,
                size=size,
                type=type,
                timestamp=time.time(),
                can_cleanup=can_cleanup,
                metadata=dict(metadata or {})
            )
            self._stats['allocations'] += 1
            return allocation_id

    def release_allocation(self, allocation_id: str) -> bool:
        with self._lock:
            allocation = self._allocations.pop(allocation_id, None)
            if allocation is None:
                return False
            self._stats['releases'] += 1
            return True

    def get_allocation(self, allocation_id: str) -> Optional[MemoryAllocation]:
        return self._allocations.get(allocation_id)

    @contextmanager
    def allocation(self, size: int, type: str = 'general', **kwargs) -> Iterator[str]:
        """Context manager tracking an allocation for the duration of a block."""
        allocation_id = self.allocate_memory(size, type, **kwargs)
        try:
            yield allocation_id
        finally:
            self.release_allocation(allocation_id)

    # Pools

    def create_memory_pool(self, name: str, buffer_size: int, pool_size: int) -> None:
        """Pre-allocate ``pool_size`` zeroed buffers of ``buffer_size`` bytes."""
        with self._lock:
            if name in self._pools:
                raise ValueError(f"Memory pool '{name}' already exists")
            self._pools[name] = {
                'buffer_size': buffer_size,
                'pool_size': pool_size,
                'available': [bytearray(buffer_size) for _ in range(pool_size)],
                'created': pool_size,
                'in_use': 0,
            }

    def get_pool_buffer(self, name: str) -> bytearray:
        """Take a buffer from a pool, growing it up to twice its initial size."""
        with self._lock:
            pool = self._get_pool(name)
            if pool['available']:
                buffer = pool['available'].pop()
            elif pool['created'] < pool['pool_size'] * 2:
                buffer = bytearray(pool['buffer_size'])
                pool['created'] += 1
            else:
                raise MemoryLimitError(f"Memory pool '{name}' exhausted")
            pool['in_use'] += 1
            return buffer

    def return_pool_buffer(self, name: str, buffer: bytearray) -> bool:
        """Zero a buffer and return it to its pool. False if the pool is gone."""
        with self._lock:
            pool = self._pools.get(name)
            if pool is None:
                logger.warning("Buffer returned to unknown memory pool '%s'; discarding it", name)
                return False
            if len(buffer) != pool['buffer_size']:
                raise ValueError(
                    f"Buffer of {len(buffer)} bytes does not belong to pool '{name}'"
                )
            buffer[:] = bytes(len(buffer))
            pool['available'].append(buffer)
            pool['in_use'] = max(0, pool['in_use'] - 1)
            return True

    def clear_memory_pools(self) -> None:
        with self._lock:
            self._pools.clear()

    def get_pool_stats(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {
                name: {
                    'buffer_size': pool['buffer_size'],
                    'pool_size': pool['pool_size'],
                    'available': len(pool['available']),
                    'in_use': pool['in_use'],
                    'created': pool['created'],
                }
                for name, pool in self._pools.items()
            }

    def _get_pool(self, name: str) -> Dict[str, Any]:
        pool = self._pools.get(name)
        if pool is None:
            raise KeyError(f"Unknown memory pool '{name}'")
        return pool

    # Cleanup

    def register_cleanup_callback(self, callback: Callable[[], Any], tier: str = 'light') -> None:
        if tier not in CLEANUP_TIERS:
            raise ValueError(f"Unknown cleanup tier '{tier}'")
        self._callbacks[tier].append(callback)

    def unregister_cleanup_callback(self, callback: Callable[[], Any]) -> bool:
        removed = False
        for callbacks in self._callbacks.values():
            if callback in callbacks:
                callbacks.remove(callback)
                removed = True
        return removed

    def _run_callbacks(self, tier: str) -> None:
        for callback in list(self._callbacks[tier]):
            try:
                callback()
            except Exception as e:
                logger.error("Cleanup callback %r failed: %s", callback, e)

    def perform_light_cleanup(self, max_age_seconds: Optional[float] = None) -> int:
        """Release cleanable allocations older than ``max_age_seconds``. Returns bytes freed."""
        max_age = LIGHT_CLEANUP_MAX_AGE if max_age_seconds is None else max_age_seconds
        cutoff = time.time() - max_age
        with self._lock:
            stale = [
                a for a in self._allocations.values()
                if a.can_cleanup and a.timestamp <= cutoff
            ]
            freed = self._drop(stale)
            self._stats['light_cleanups'] += 1
        self._run_callbacks('light')
        if freed:
            logger.info("Light cleanup freed %d bytes", freed)
        return freed

    def perform_aggressive_cleanup(self) -> int:
        """Release every cleanable allocation and idle pool buffers. Returns bytes freed."""
        with self._lock:
            cleanable = [a for a in self._allocations.values() if a.can_cleanup]
            freed = self._drop(cleanable)
            # Checked-out buffers stay with their callers; pools regrow on demand
            for pool in self._pools.values():
                idle = len(pool['available'])
                freed += idle * pool['buffer_size']
                pool['created'] -= idle
                pool['available'].clear()
            self._stats['aggressive_cleanups'] += 1
        self._run_callbacks('aggressive')
        logger.warning("Aggressive cleanup freed %d bytes", freed)
        return freed

    def _drop(self, allocations: List[MemoryAllocation]) -> int:
        freed = 0
        for allocation in allocations:
            self._allocations.pop(allocation.id, None)
            freed += allocation.size
        self._stats['bytes_freed'] += freed
        return freed

    async def wait_for_memory_recovery(self, timeout: float = 30.0, poll_interval: float = 0.5) -> bool:
        """Clean up and poll until usage drops below critical. False on timeout."""
        deadline = time.monotonic() + timeout
        self.perform_aggressive_cleanup()
        while self.get_memory_usage() >= self.critical_threshold:
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(poll_interval)
        return True

    # Chunked processing

    async def process_large_pdf(
        self,
        data: bytes,
        processor: Optional[Callable[[bytes, int], Any]] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_concurrent: int = 2,
        recovery_timeout: float = 30.0
    ) -> List[Any]:
        """
        Process a large buffer in chunks with bounded concurrency.

        Concurrency drops to one chunk at a time while memory is at warning
        level; at critical level processing waits for memory to recover.

        Args:
            data: Raw bytes
            processor: ``(chunk, index) -> result``, sync or async
            chunk_size: Chunk size in bytes
            max_concurrent: Maximum chunks in flight
            recovery_timeout: Seconds to wait for memory recovery

        Returns:
            Processor results in chunk order
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        processor = processor or _describe_chunk
        chunks = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]
        semaphore = asyncio.Semaphore(max(1, max_concurrent))
        serial = asyncio.Lock()

        async def run(index: int, chunk: bytes):
            async with semaphore:
                level = self.get_memory_level()
                if level in ('critical', 'emergency'):
                    if not await self.wait_for_memory_recovery(recovery_timeout):
                        raise MemoryLimitError("Memory did not recover while processing PDF")
                    level = self.get_memory_level()
                with self.allocation(len(chunk), 'pdf_chunk', metadata={'index': index}):
                    if level == 'warning':
                        async with serial:
                            return await _call(processor, chunk, index)
                    return await _call(processor, chunk, index)

        return list(await asyncio.gather(*(run(i, c) for i, c in enumerate(chunks))))

    def get_memory_stats(self) -> Dict[str, Any]:
        with self._lock:
            by_type: Dict[str, int] = {}
            for allocation in self._allocations.values():
                by_type[allocation.type] = by_type.get(allocation.type, 0) + allocation.size
            stats = dict(self._stats)
        usage = self.get_memory_usage()
        stats.update({
            'usage': usage,
            'level': self.get_memory_level(usage),
            'total_allocated': self.total_allocated,
            'allocation_count': len(self._allocations),
            'allocated_by_type': by_type,
            'pools': self.get_pool_stats(),
            'thresholds': {
                'warning': self.warning_threshold,
                'critical': self.critical_threshold,
                'emergency': self.emergency_threshold,
            },
        })
        return stats


async def _call(processor, chunk: bytes, index: int):
    result = processor(chunk, index)
    if inspect.isawaitable(result):
        result = await result
    return result


def _describe_chunk(chunk: bytes, index: int) -> Dict[str, Any]:
    return {
        'index': index,
        'size': len(chunk),
        'checksum': hashlib.sha256(chunk).hexdigest()[:16],
    }
