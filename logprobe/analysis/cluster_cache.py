"""
Sharded TTL cache for log clustering results.

Clustering a batch is the most expensive local step of an investigation, and
the same batch is often clustered more than once (retries, overlapping
investigations, the CLI re-rendering a report). Results are memoized by a
content fingerprint of the batch.

Concurrency contract:
    - The keyspace is split over a fixed number of shards, each a plain dict
      guarded by its own threading.Lock. get/set/clear_user may be called
      from any number of threads.
    - Statistics counters are guarded by a separate lock.
    - Capacity is enforced per shard, so the total number of resident entries
      can exceed max_size by up to one entry per shard. Treat max_size as an
      approximate bound.

Tenant scoping:
    When a tenant id is supplied it is mixed into the fingerprint. Identical
    batches cached for different tenants live under different keys and are
    never visible to each other.
"""

import hashlib
import math
import threading
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple, Callable

import structlog

from logprobe.analysis.clustering import LogCluster, cluster_logs
from logprobe.utils.events import event_level, event_message

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 300
DEFAULT_MAX_SIZE = 800
DEFAULT_SHARD_COUNT = 16
DEFAULT_MIN_BATCH_SIZE = 10

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193


def fnv1a_32(data: bytes) -> int:
    h = _FNV32_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h


def fingerprint_batch(events: List[Dict[str, Any]], tenant: Optional[str] = None) -> str:
    """Stable digest of a batch's content, salted with the tenant when given."""
    digest = hashlib.sha256()
    if tenant is not None:
        digest.update(f"tenant:{tenant}\n".encode("utf-8"))
    for event in events:
        digest.update(event_level(event).encode("utf-8"))
        digest.update(b"\x1f")
        digest.update(event_message(event).encode("utf-8"))
        digest.update(b"\x1e")
    digest.update(f"count:{len(events)}".encode("utf-8"))
    return digest.hexdigest()


@dataclass
class CacheEntry:
    fingerprint: str
    tenant: Optional[str]
    clusters: Tuple[LogCluster, ...]
    inserted_at: float
    hit_count: int = 0


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self):
        self.lock = threading.Lock()
        self.entries: Dict[str, CacheEntry] = {}


class ClusterCache:
    """Concurrency-safe, sharded, TTL-bounded store of clustering results."""

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        shard_count: int = DEFAULT_SHARD_COUNT,
        clock: Callable[[], float] = time.monotonic,
    ):
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.shard_count = shard_count
        self.shard_capacity = max(1, math.ceil(max_size / shard_count))
        self._clock = clock
        self._shards = [_Shard() for _ in range(shard_count)]

        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._evictions = 0
        self._expired = 0

    def _shard_for(self, fingerprint: str) -> _Shard:
        return self._shards[fnv1a_32(fingerprint.encode("utf-8")) % self.shard_count]

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at >= self.ttl_seconds

    def _count(self, **deltas: int):
        with self._stats_lock:
            self._hits += deltas.get("hits", 0)
            self._misses += deltas.get("misses", 0)
            self._sets += deltas.get("sets", 0)
            self._evictions += deltas.get("evictions", 0)
            self._expired += deltas.get("expired", 0)

    def get(
        self,
        events: List[Dict[str, Any]],
        tenant: Optional[str] = None,
    ) -> Tuple[Optional[List[LogCluster]], bool]:
        """
        Look up clusters for a batch.

        Returns:
            (clusters, found). An entry at or past its TTL is dropped and
            reported as a miss.
        """
        key = fingerprint_batch(events, tenant)
        shard = self._shard_for(key)
        now = self._clock()

        with shard.lock:
            entry = shard.entries.get(key)
            if entry is not None and self._is_expired(entry, now):
                del shard.entries[key]
                self._count(misses=1, expired=1)
                logger.debug("Cluster cache entry expired", key=key[:12])
                return None, False
            if entry is None:
                self._count(misses=1)
                return None, False
            entry.hit_count += 1
            clusters = list(entry.clusters)

        self._count(hits=1)
        logger.debug("Cluster cache hit", key=key[:12], tenant=tenant)
        return clusters, True

    def set(
        self,
        events: List[Dict[str, Any]],
        clusters: List[LogCluster],
        tenant: Optional[str] = None,
    ):
        """Insert or overwrite the clusters for a batch."""
        key = fingerprint_batch(events, tenant)
        shard = self._shard_for(key)
        now = self._clock()
        evicted = 0
        expired = 0

        with shard.lock:
            if key not in shard.entries and len(shard.entries) >= self.shard_capacity:
                for stale_key in [k for k, e in shard.entries.items() if self._is_expired(e, now)]:
                    del shard.entries[stale_key]
                    expired += 1
                if len(shard.entries) >= self.shard_capacity:
                    oldest_key = min(shard.entries, key=lambda k: shard.entries[k].inserted_at)
                    del shard.entries[oldest_key]
                    evicted += 1

            shard.entries[key] = CacheEntry(
                fingerprint=key,
                tenant=tenant,
                clusters=tuple(clusters),
                inserted_at=now,
            )

        self._count(sets=1, evictions=evicted, expired=expired)

    def hit_count(self, events: List[Dict[str, Any]], tenant: Optional[str] = None) -> int:
        """Hits recorded on the entry for this batch, 0 if absent."""
        key = fingerprint_batch(events, tenant)
        shard = self._shard_for(key)
        with shard.lock:
            entry = shard.entries.get(key)
            return entry.hit_count if entry is not None else 0

    def clear_user(self, tenant: str) -> int:
        """Remove every entry scoped to a tenant. Scans all shards."""
        removed = 0
        for shard in self._shards:
            with shard.lock:
                doomed = [k for k, e in shard.entries.items() if e.tenant == tenant]
                for key in doomed:
                    del shard.entries[key]
                removed += len(doomed)
        logger.info("Cleared tenant cache entries", tenant=tenant, removed=removed)
        return removed

    def clear(self):
        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()

    def cleanup_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                stale = [k for k, e in shard.entries.items() if self._is_expired(e, now)]
                for key in stale:
                    del shard.entries[key]
                removed += len(stale)
        self._count(expired=removed)
        return removed

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        size = 0
        tenants = set()
        for shard in self._shards:
            with shard.lock:
                size += len(shard.entries)
                tenants.update(e.tenant for e in shard.entries.values() if e.tenant is not None)

        with self._stats_lock:
            lookups = self._hits + self._misses
            return {
                "size": size,
                "max_size": self.max_size,
                "shard_count": self.shard_count,
                "hits": self._hits,
                "misses": self._misses,
                "sets": self._sets,
                "evictions": self._evictions,
                "expired": self._expired,
                "hit_rate": self._hits / lookups if lookups else 0.0,
                "tenant_count": len(tenants),
            }


def cluster_logs_with_cache(
    events: List[Dict[str, Any]],
    cache: Optional[ClusterCache] = None,
    tenant: Optional[str] = None,
    min_batch_size: int = DEFAULT_MIN_BATCH_SIZE,
) -> List[LogCluster]:
    """
    Cluster a batch, memoizing through the cache.

    Batches smaller than min_batch_size are clustered directly; fingerprinting
    them costs more than it saves.
    """
    if cache is None or len(events) < min_batch_size:
        return cluster_logs(events)

    clusters, found = cache.get(events, tenant)
    if found:
        return clusters

    clusters = cluster_logs(events)
    cache.set(events, clusters, tenant)
    return clusters
