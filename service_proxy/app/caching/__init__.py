"""
Proxy caching package.

Disk-backed cache primitives and the orchestration policy that decides
between serving, filling and refreshing an entry. Only the store touches
the filesystem; everything else receives it by injection.
"""

from .keys import ResourceKey
from .store import CacheEntry, CacheStore
from .orchestrator import CacheOrchestrator, CacheOutcome, CacheResult
from .refresh_queue import RefreshJob, RefreshQueue
from .single_flight import SingleFlight

__all__ = [
    "ResourceKey",
    "CacheEntry",
    "CacheStore",
    "CacheOrchestrator",
    "CacheOutcome",
    "CacheResult",
    "RefreshJob",
    "RefreshQueue",
    "SingleFlight",
]
