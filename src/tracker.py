"""
Dependency Tracker - Who depends on what, with automatic expiry.

A reconciliation that reads an object it does not own records a tracking
relationship ``tracker -> tracked``. When the tracked object changes, the
scheduler asks the tracker which parents to requeue. Relationships expire
unless renewed, so a reconciliation that stops reading an object stops being
triggered by it without any unsubscribe step.

The index is split into shards keyed by the tracked reference, each with its
own lock, so concurrent reconciliations of unrelated objects never contend
on a single lock.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from config import TrackerConfig
from resources import ResourceRef

logger = logging.getLogger(__name__)

DEFAULT_SHARDS = 32


@dataclass(frozen=True)
class TrackedRelationship:
    """A tracker's dependency on a tracked object, valid until expires_at."""

    tracker: ResourceRef
    tracked: ResourceRef
    expires_at: float


class _Shard:
    """One slice of the index: tracked ref -> {tracker ref: expires_at}."""

    __slots__ = ("lock", "index")

    def __init__(self):
        self.lock = threading.Lock()
        self.index: Dict[ResourceRef, Dict[ResourceRef, float]] = {}


class DependencyTracker:
    """
    Concurrent many-to-many index of tracking relationships with TTL expiry.

    One long-lived tracker is shared by every reconciliation in a process.
    Expired relationships are hidden from lookups immediately and removed
    by the background sweep started with :meth:`start`.
    """

    def __init__(
        self,
        ttl: float,
        sweep_interval: float = 60.0,
        shards: int = DEFAULT_SHARDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl <= 0:
            raise ValueError(f"Tracker ttl must be positive, got {ttl}")
        if sweep_interval <= 0:
            raise ValueError(
                f"Tracker sweep interval must be positive, got {sweep_interval}"
            )
        if shards < 1:
            raise ValueError(f"Tracker needs at least one shard, got {shards}")

        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._shards = [_Shard() for _ in range(shards)]

        self.running = False
        self._sweep_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls, config: TrackerConfig, clock: Callable[[], float] = time.monotonic
    ) -> "DependencyTracker":
        """Create a tracker from a TrackerConfig."""
        return cls(
            ttl=config.ttl,
            sweep_interval=config.sweep_interval,
            shards=config.shards,
            clock=clock,
        )

    def _shard_for(self, tracked: ResourceRef) -> _Shard:
        return self._shards[hash(tracked) % len(self._shards)]

    def track(
        self,
        tracker: ResourceRef,
        tracked: ResourceRef,
        ttl: Optional[float] = None,
    ) -> None:
        """
        Record that ``tracker`` depends on ``tracked``.

        Creates the relationship or refreshes its expiry. The most recent
        call decides the expiry, even when it is earlier than before.

        Args:
            tracker: The reconciled object that read ``tracked``.
            tracked: The object whose changes should requeue ``tracker``.
            ttl: Seconds until expiry; the tracker default when omitted.
        """
        if ttl is None or ttl <= 0:
            ttl = self.ttl
        expires_at = self._clock() + ttl

        shard = self._shard_for(tracked)
        with shard.lock:
            shard.index.setdefault(tracked, {})[tracker] = expires_at

        logger.debug(f"{tracker} tracks {tracked} for {ttl}s")

    def lookup(self, tracked: ResourceRef) -> Set[ResourceRef]:
        """
        Return the trackers of ``tracked`` whose relationship is still live.

        Args:
            tracked: The object that changed.

        Returns:
            Set of tracker references; empty for unknown objects.
        """
        now = self._clock()
        shard = self._shard_for(tracked)
        with shard.lock:
            trackers = shard.index.get(tracked)
            if not trackers:
                return set()
            return {tracker for tracker, expires in trackers.items() if expires > now}

    def lookup_object(self, obj: Dict[str, Any]) -> Set[ResourceRef]:
        """Return the trackers of an object dict, e.g. from a watch event."""
        return self.lookup(ResourceRef.from_object(obj))

    def relationships(self) -> List[TrackedRelationship]:
        """Snapshot of every live relationship."""
        now = self._clock()
        snapshot = []
        for shard in self._shards:
            with shard.lock:
                for tracked, trackers in shard.index.items():
                    for tracker, expires in trackers.items():
                        if expires > now:
                            snapshot.append(
                                TrackedRelationship(tracker, tracked, expires)
                            )
        return snapshot

    def sweep(self) -> int:
        """
        Remove expired relationships.

        Shards are swept one at a time, so lookups on other shards proceed
        while a sweep runs.

        Returns:
            Number of relationships removed.
        """
        now = self._clock()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                for tracked in list(shard.index):
                    trackers = shard.index[tracked]
                    expired = [t for t, expires in trackers.items() if expires <= now]
                    for tracker in expired:
                        del trackers[tracker]
                    removed += len(expired)
                    if not trackers:
                        del shard.index[tracked]

        if removed:
            logger.debug(f"Swept {removed} expired tracking relationships")
        return removed

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._sweep_task is not None:
            return
        logger.info(
            f"Starting dependency tracker sweep (ttl={self.ttl}s, "
            f"interval={self.sweep_interval}s)"
        )
        self.running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the background sweep task and wait for it to finish."""
        self.running = False
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped dependency tracker sweep")

    async def __aenter__(self) -> "DependencyTracker":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _sweep_loop(self) -> None:
        """Periodically remove expired relationships until stopped."""
        while self.running:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error in tracker sweep loop: {e}", exc_info=True)
