"""
Tests for CueTrack — Track Store & Lifecycle Manager
=====================================================
pytest tests/test_lifecycle.py -v
"""

import numpy as np
import pytest
import sys, os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cuetrack.cuetrack_config import LifecycleConfig, TrackerConfig
from cuetrack.cuetrack_models import (
    Association, AssociationContractError, Detection, MatchType,
    TrackNotFoundError, TrackStatus,
)
from cuetrack.cuetrack_tracks import LifecycleManager, TrackStore, assess_track_quality


@pytest.fixture
def store():
    return TrackStore(TrackerConfig())


@pytest.fixture
def life():
    return LifecycleManager()


def born(store, life, pos=(0.0, 0.0, 0.0), t=0.0, conf=0.8):
    track = store.create(t)
    life.initialize(track, Detection(np.array(pos, dtype=float), 0.9, t), t, conf)
    return track


# ============================================================
# TRACK STORE
# ============================================================

class TestTrackStore:
    """Id allocation, lookup and contract checks."""

    def test_ids_monotonic_from_one(self, store, life):
        """Ids start at 1 and increase."""
        ids = [born(store, life).track_id for _ in range(3)]
        assert ids == [1, 2, 3]

    def test_ids_not_reused(self, store, life):
        """Evicted ids are never handed out again."""
        a = born(store, life)
        store.evict([a.track_id])
        b = born(store, life)
        assert b.track_id == 2
        assert a.track_id not in store

    def test_clear_restarts_ids(self, store, life):
        """clear() forgets tracks and the id counter."""
        born(store, life)
        born(store, life)
        store.clear()
        assert len(store) == 0
        assert born(store, life).track_id == 1

    def test_get_unknown_raises(self, store):
        with pytest.raises(TrackNotFoundError):
            store.get(99)
        assert store.find(99) is None

    def test_capacity(self, life):
        """is_full once max_tracks tracks exist."""
        config = TrackerConfig()
        config.lifecycle.max_tracks = 2
        store = TrackStore(config)
        born(store, life)
        assert not store.is_full
        born(store, life)
        assert store.is_full

    def test_predict_all_skips_lost(self, store, life):
        """Lost tracks keep their last estimate."""
        moving = born(store, life)
        moving.filter.x[3] = 1.0
        lost = born(store, life, pos=(1.0, 0.0, 0.0))
        lost.filter.x[3] = 1.0
        lost.status = TrackStatus.LOST
        store.predict_all(0.1)
        assert moving.position[0] == pytest.approx(0.1)
        assert lost.position[0] == pytest.approx(1.0)
        assert moving.updated_at == pytest.approx(0.1)
        assert lost.updated_at == 0.0

    def test_contract_violation_strict(self, store, life):
        """Double claims raise in strict mode."""
        a = born(store, life)
        b = born(store, life)
        assocs = [Association(a.track_id, 0, 0.9, MatchType.DIRECT, (0,)),
                  Association(b.track_id, 0, 0.8, MatchType.DIRECT, (0,))]
        with pytest.raises(AssociationContractError):
            store.validate_associations(assocs)

    def test_contract_violation_lenient(self, life):
        """Double claims are dropped when strict_contracts is off."""
        config = TrackerConfig(strict_contracts=False)
        store = TrackStore(config)
        a = born(store, life)
        assocs = [Association(a.track_id, 0, 0.9, MatchType.DIRECT, (0,)),
                  Association(a.track_id, 1, 0.8, MatchType.DIRECT, (1,))]
        accepted = store.validate_associations(assocs)
        assert accepted == assocs[:1]

    def test_snapshot_is_copy(self, store, life):
        """Mutating a snapshot does not touch the track."""
        track = born(store, life, pos=(0.5, 0.5, 0.0))
        snap = store.snapshot(track, 0.0)
        snap.position[0] = 99.0
        assert track.position[0] == pytest.approx(0.5)


# ============================================================
# LIFECYCLE
# ============================================================

class TestLifecycle:
    """State machine, confidence decay and eviction."""

    def test_birth_is_active(self, store, life):
        """The creating detection is absorbed immediately."""
        track = born(store, life)
        assert track.status == TrackStatus.ACTIVE
        assert track.hit_count == 1
        assert track.is_detected

    def test_predicted_then_lost(self, store, life):
        """Misses up to the loss bound coast; one more loses the track."""
        track = born(store, life)
        for k in range(1, 6):
            life.record_miss(track, k * 0.033, 0.033)
            assert track.status == TrackStatus.PREDICTED
            assert track.miss_count == k
        life.record_miss(track, 6 * 0.033, 0.033)
        assert track.status == TrackStatus.LOST

    def test_long_gap_single_miss_is_predicted(self, store, life):
        """Loss depends on the miss count only, not on the frame gap."""
        track = born(store, life)
        life.record_miss(track, 0.6, 0.6)
        assert track.status == TrackStatus.PREDICTED
        assert track.miss_count == 1

    def test_confidence_decays_strictly(self, store, life):
        """Every miss lowers confidence, even when dt is zero."""
        track = born(store, life, conf=0.9)
        previous = track.confidence
        for k in range(10):
            life.record_miss(track, 0.0, 0.0)
            assert track.confidence < previous
            assert track.confidence >= 0.0
            previous = track.confidence

    def test_decay_factor(self, life):
        """Retention is decay_rate ** dt."""
        assert life.decay_factor(1.0) == pytest.approx(0.2)
        assert life.decay_factor(0.5) == pytest.approx(0.2 ** 0.5)
        assert life.decay_factor(0.0) == pytest.approx(0.2 ** (1 / 60))

    def test_hit_resets_misses(self, store, life):
        """A hit after coasting returns to ACTIVE with zero misses."""
        track = born(store, life)
        life.record_miss(track, 0.033, 0.033)
        life.record_hit(track, Detection([0.0, 0.0, 0.0], 0.9, 0.066), 0.066, 0.7)
        assert track.status == TrackStatus.ACTIVE
        assert track.miss_count == 0
        assert track.confidence == pytest.approx(0.7)

    def test_recovery_catches_filter_up(self, store, life):
        """A lost track is predicted across the gap before its update."""
        track = born(store, life)
        track.status = TrackStatus.LOST
        life.record_hit(track, Detection([0.2, 0.0, 0.0], 0.9, 0.4), 0.4, 0.7)
        assert track.updated_at == pytest.approx(0.4)
        assert track.status == TrackStatus.ACTIVE
        assert track.position[0] == pytest.approx(0.2, abs=1e-3)

    def test_history_bounded(self, store, life):
        """History never exceeds its capacity."""
        track = born(store, life)
        for k in range(1, 100):
            life.record_miss(track, k * 0.001, 0.001)
        assert len(track.history) == LifecycleConfig().history_capacity

    def test_eviction_after_grace(self, store, life):
        """Lost tracks are evicted once the grace window passes."""
        track = born(store, life)
        for k in range(1, 7):
            life.record_miss(track, k * 0.2, 0.2)
        assert track.status == TrackStatus.LOST
        assert life.sweep(store, 1.2) == []
        life.record_miss(track, 1.6, 0.4)
        assert life.sweep(store, 1.6) == [track.track_id]
        assert len(store) == 0
        assert store.evicted == 1

    def test_sparse_frames_evicted_after_grace(self, store, life):
        """A coasting track unseen beyond the grace window is evicted."""
        track = born(store, life)
        life.record_miss(track, 1.0, 1.0)
        assert track.status == TrackStatus.PREDICTED
        assert life.sweep(store, 1.0) == []
        life.record_miss(track, 1.6, 0.6)
        assert track.status == TrackStatus.PREDICTED
        assert life.sweep(store, 1.6) == [track.track_id]

    def test_weak_predicted_track_kept(self, store, life):
        """The confidence floor only applies to LOST tracks."""
        track = born(store, life, conf=0.005)
        life.record_miss(track, 0.033, 0.033)
        assert track.status == TrackStatus.PREDICTED
        assert not life.should_evict(track, 0.033)
        track.status = TrackStatus.LOST
        assert life.should_evict(track, 0.033)

    def test_active_never_evicted(self, store, life):
        """A track matched this frame is never swept."""
        track = born(store, life)
        assert not life.should_evict(track, 100.0)

    def test_trajectory(self, store, life):
        """Trajectory extrapolates along the velocity with decaying confidence."""
        track = born(store, life)
        track.filter.x[3] = 1.0
        points = life.trajectory(track, 0.0, duration=0.5, resolution=0.1)
        assert len(points) == 6
        assert points[-1].position[0] == pytest.approx(0.5)
        assert points[0].confidence == pytest.approx(track.confidence)
        assert points[-1].confidence < points[1].confidence

    def test_trajectory_bad_resolution(self, store, life):
        track = born(store, life)
        with pytest.raises(ValueError):
            life.trajectory(track, 0.0, 1.0, 0.0)


class TestTrackQuality:
    """Letter-grade quality report."""

    def test_steady_track_reliable(self, store, life):
        """A track hit every frame grades well."""
        track = born(store, life)
        for k in range(1, 30):
            t = k * 0.033
            life.record_hit(track, Detection([0.03 * k, 0.0, 0.0], 0.9, t), t, 0.8)
        report = assess_track_quality(track)
        assert report.hit_ratio == pytest.approx(1.0)
        assert report.is_reliable

    def test_coasting_track_degrades(self, store, life):
        """Misses lower the hit ratio."""
        track = born(store, life)
        for k in range(1, 5):
            life.record_miss(track, k * 0.033, 0.033)
        report = assess_track_quality(track)
        assert report.hit_ratio == pytest.approx(0.2)
        assert report.frames_observed == 5
