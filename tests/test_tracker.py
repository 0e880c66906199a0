"""Unit tests for tracker.py - Dependency tracking with expiry."""

import asyncio
import threading

import pytest

from config import TrackerConfig
from resources import ResourceRef
from tracker import DependencyTracker, TrackedRelationship

PARENT_A = ResourceRef("example.com", "Widget", "default", "a")
PARENT_B = ResourceRef("example.com", "Widget", "default", "b")
SECRET = ResourceRef("", "Secret", "default", "creds")
CONFIG_MAP = ResourceRef("", "ConfigMap", "default", "settings")


class TestDependencyTrackerInit:
    """Tests for tracker construction."""

    @pytest.mark.parametrize(
        "kwargs",
        [{"ttl": 0}, {"ttl": -1}, {"ttl": 10, "sweep_interval": 0}, {"ttl": 10, "shards": 0}],
    )
    def test_rejects_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            DependencyTracker(**kwargs)

    def test_from_config(self, clock):
        tracker = DependencyTracker.from_config(
            TrackerConfig(resync_interval=30, sweep_interval=5, shards=8), clock=clock
        )
        assert tracker.ttl == 60
        assert tracker.sweep_interval == 5
        assert len(tracker._shards) == 8


class TestTrackAndLookup:
    """Tests for track and lookup."""

    def test_lookup_unknown_is_empty(self, tracker):
        assert tracker.lookup(SECRET) == set()

    def test_track_then_lookup(self, tracker):
        tracker.track(PARENT_A, SECRET)
        tracker.track(PARENT_B, SECRET)
        assert tracker.lookup(SECRET) == {PARENT_A, PARENT_B}
        assert tracker.lookup(CONFIG_MAP) == set()

    def test_expired_relationship_hidden(self, tracker, clock):
        tracker.track(PARENT_A, SECRET, ttl=10)
        clock.advance(9)
        assert tracker.lookup(SECRET) == {PARENT_A}
        clock.advance(1)
        assert tracker.lookup(SECRET) == set()

    def test_default_ttl(self, tracker, clock):
        tracker.track(PARENT_A, SECRET)
        clock.advance(99)
        assert tracker.lookup(SECRET) == {PARENT_A}
        clock.advance(1)
        assert tracker.lookup(SECRET) == set()

    def test_retrack_extends(self, tracker, clock):
        tracker.track(PARENT_A, SECRET, ttl=10)
        clock.advance(8)
        tracker.track(PARENT_A, SECRET, ttl=10)
        clock.advance(8)
        assert tracker.lookup(SECRET) == {PARENT_A}

    def test_latest_track_wins_even_if_shorter(self, tracker, clock):
        tracker.track(PARENT_A, SECRET, ttl=50)
        tracker.track(PARENT_A, SECRET, ttl=5)
        clock.advance(5)
        assert tracker.lookup(SECRET) == set()

    def test_lookup_object(self, tracker):
        tracker.track(PARENT_A, SECRET)
        secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "creds", "namespace": "default"},
        }
        assert tracker.lookup_object(secret) == {PARENT_A}

    def test_relationships_snapshot(self, tracker, clock):
        tracker.track(PARENT_A, SECRET, ttl=10)
        tracker.track(PARENT_B, CONFIG_MAP, ttl=50)
        clock.advance(20)
        assert tracker.relationships() == [
            TrackedRelationship(PARENT_B, CONFIG_MAP, clock.now + 30)
        ]


class TestSweep:
    """Tests for removing expired relationships."""

    def test_sweep_removes_expired(self, tracker, clock):
        tracker.track(PARENT_A, SECRET, ttl=10)
        tracker.track(PARENT_B, SECRET, ttl=50)
        clock.advance(10)

        assert tracker.sweep() == 1
        assert tracker.lookup(SECRET) == {PARENT_B}

        clock.advance(50)
        assert tracker.sweep() == 1
        assert all(not shard.index for shard in tracker._shards)

    def test_sweep_nothing_expired(self, tracker):
        tracker.track(PARENT_A, SECRET)
        assert tracker.sweep() == 0

    def test_concurrent_track_and_lookup(self, clock):
        tracker = DependencyTracker(ttl=100, shards=4, clock=clock)
        tracked = [ResourceRef("", "Secret", "default", f"s{i}") for i in range(50)]

        def worker(index):
            parent = ResourceRef("example.com", "Widget", "default", f"p{index}")
            for ref in tracked:
                tracker.track(parent, ref)
                tracker.lookup(ref)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        for ref in tracked:
            assert len(tracker.lookup(ref)) == 8


@pytest.mark.asyncio
class TestSweepTask:
    """Tests for the background sweep."""

    async def test_start_and_stop(self, clock):
        tracker = DependencyTracker(ttl=10, sweep_interval=0.01, clock=clock)
        tracker.track(PARENT_A, SECRET)
        clock.advance(10)

        await tracker.start()
        assert tracker.running is True
        await asyncio.sleep(0.05)
        await tracker.stop()

        assert tracker.running is False
        assert tracker._sweep_task is None
        assert tracker.relationships() == []
        assert all(not shard.index for shard in tracker._shards)

    async def test_context_manager(self, clock):
        async with DependencyTracker(ttl=10, sweep_interval=60, clock=clock) as tracker:
            assert tracker.running is True
        assert tracker.running is False

    async def test_stop_without_start(self, tracker):
        await tracker.stop()
        assert tracker.running is False
