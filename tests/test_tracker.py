"""
Tests for CueTrack — MultiBallTracker end to end
=================================================
pytest tests/test_tracker.py -v
"""

import numpy as np
import pytest
import sys, os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cuetrack import (
    MultiBallTracker, TrackerConfig, Detection, TrackStatus, MatchType,
    TrackNotFoundError, SyntheticTableGenerator, MockDetector, ClusterType,
    EnvironmentConditions, Lighting,
)
from cuetrack.cuetrack_association import optimal_assign


DT = 0.033


def d(x, y=0.0, z=0.0, conf=0.9, t=0.0, tag=None):
    return Detection(np.array([x, y, z]), conf, t, appearance_tag=tag)


@pytest.fixture
def tracker():
    return MultiBallTracker()


# ============================================================
# REFERENCE SCENARIO
# ============================================================

class TestReferenceScenario:
    """Single ball: birth, match, coast, lose, evict."""

    def test_frame_by_frame(self, tracker):
        """Frame 1 births, frame 2 matches, 3-7 coast, 8 loses."""
        out = tracker.update([d(0.0)], 0.0)
        assert len(out) == 1
        assert out[0].track_id == 1
        assert out[0].status == TrackStatus.ACTIVE

        out = tracker.update([d(0.05, t=DT)], DT)
        assert len(out) == 1
        assert out[0].track_id == 1
        assert out[0].status == TrackStatus.ACTIVE
        np.testing.assert_allclose(out[0].velocity, [1.5, 0.0, 0.0], atol=0.05)

        previous_x = out[0].position[0]
        for k in range(2, 7):
            out = tracker.update([], k * DT)
            assert out[0].status == TrackStatus.PREDICTED
            assert not out[0].is_detected
            assert out[0].position[0] > previous_x
            previous_x = out[0].position[0]

        out = tracker.update([], 7 * DT)
        assert out[0].status == TrackStatus.LOST

    def test_eviction_after_grace(self, tracker):
        """No matches for longer than the grace window removes the track."""
        tracker.update([d(0.0)], 0.0)
        tracker.update([d(0.05, t=DT)], DT)
        t = 2 * DT
        while t < DT + 1.5:
            tracker.update([], t)
            t += 0.1
        assert len(tracker.tracks) == 1
        out = tracker.update([], DT + 1.51)
        assert out == []
        assert tracker.get_statistics().tracks_evicted == 1

    def test_single_long_gap_not_lost(self, tracker):
        """One miss after a long pause coasts; only the miss count loses a track."""
        tracker.update([d(0.0)], 0.0)
        out = tracker.update([], 0.6)
        assert out[0].status == TrackStatus.PREDICTED
        assert out[0].miss_count == 1

    def test_confidence_monotone_while_missing(self, tracker):
        """Confidence never rises without a match."""
        tracker.update([d(0.0)], 0.0)
        tracker.update([d(0.05, t=DT)], DT)
        before = tracker.tracks[0].confidence
        for k in range(2, 12):
            out = tracker.update([], k * DT)
            assert out[0].confidence < before
            before = out[0].confidence

    def test_recovery_from_lost(self, tracker):
        """A lost ball reappearing near its last estimate keeps its id."""
        tracker.update([d(1.0)], 0.0)
        for k in range(1, 8):
            tracker.update([], k * DT)
        assert tracker.tracks[0].status == TrackStatus.LOST
        report = tracker.process_frame([d(1.01, t=8 * DT)], 8 * DT)
        assert [a.match_type for a in report.associations] == [MatchType.RECOVERED]
        assert report.tracks[0].track_id == 1
        assert report.tracks[0].status == TrackStatus.ACTIVE
        assert report.born == []


# ============================================================
# PROPERTIES
# ============================================================

class TestTrackingProperties:
    """Identity persistence, exclusivity and determinism."""

    def test_identity_persistence(self, tracker):
        """Two balls rolling side by side keep their ids."""
        ids = None
        for k in range(40):
            t = k / 30
            frame = [d(0.2 + 1.0 * t, 0.3, t=t), d(0.2 + 0.8 * t, 0.6, t=t)]
            out = tracker.update(frame, t)
            by_y = {round(s.position[1], 1): s.track_id for s in out}
            if ids is None:
                ids = by_y
            assert by_y == ids
        assert tracker.get_statistics().tracks_created == 2

    def test_identity_near_gate_radius(self, tracker):
        """A ball stepping 0.9 × max_movement_distance per frame keeps one id."""
        step = 0.9 * tracker.config.association.max_movement_distance
        for k in range(8):
            t = k / 30
            out = tracker.update([d(0.2 + step * k, 0.5, t=t)], t)
            assert [s.track_id for s in out] == [1]
            assert out[0].status == TrackStatus.ACTIVE
        assert tracker.get_statistics().tracks_created == 1

    def test_predicted_track_near_expanded_gate(self, tracker):
        """A coasting track re-acquires a detection near its widened gate."""
        for k in range(3):
            tracker.update([d(1.0, 0.5, t=k / 30)], k / 30)
        out = tracker.update([], 3 / 30)
        assert out[0].status == TrackStatus.PREDICTED
        cfg = tracker.config.association
        jump = 0.9 * cfg.max_movement_distance * cfg.search_region_expansion
        report = tracker.process_frame([d(1.0 + jump, 0.5, t=4 / 30)], 4 / 30)
        assert [a.track_id for a in report.associations] == [1]
        assert report.associations[0].match_type == MatchType.PREDICTED
        assert report.born == []

    def test_no_birth_on_top_of_coasting_track(self, tracker):
        """An unmatched detection sitting on a coasting track does not spawn a twin."""
        tracker.update([Detection([1.0, 0.5, 0.0], 0.9, 0.0, appearance_tag="3",
                                  extent=[0.057, 0.057])], 0.0)
        odd = Detection([1.01, 0.5, 0.0], 0.9, 0.45, appearance_tag="5", extent=[0.2, 0.2])
        report = tracker.process_frame([odd], 0.45)
        assert report.associations == []
        assert report.born == []
        assert [s.track_id for s in report.tracks] == [1]
        assert report.tracks[0].status == TrackStatus.PREDICTED

    def test_no_double_assignment(self):
        """Every frame claims each track and detection at most once."""
        gen = SyntheticTableGenerator(seed=4, p_detection=0.9, clutter_rate=1.0,
                                      duplicate_rate=0.2)
        tracker = MultiBallTracker()
        for frame in gen.rolling_balls(n_balls=5, n_frames=60):
            report = tracker.process_frame(frame.detections, frame.timestamp)
            track_ids = [a.track_id for a in report.associations]
            members = [i for a in report.associations for i in a.member_indices]
            assert len(track_ids) == len(set(track_ids))
            assert len(members) == len(set(members))
            assert all(0 <= i < len(frame.detections) for i in members)

    def test_deterministic(self):
        """Identical inputs produce identical outputs."""
        frames = SyntheticTableGenerator(seed=8, clutter_rate=0.5).rolling_balls(4, 40)
        results = []
        for _ in range(2):
            tracker = MultiBallTracker()
            run = []
            for f in frames:
                out = tracker.update(f.detections, f.timestamp)
                run.append([(s.track_id, s.status, tuple(np.round(s.position, 9)),
                             round(s.confidence, 9)) for s in out])
            results.append(run)
        assert results[0] == results[1]

    def test_confidence_bounded(self):
        """Every reported confidence lies in [0, 1]."""
        tracker = MultiBallTracker()
        gen = SyntheticTableGenerator(seed=1, p_detection=0.8, clutter_rate=2.0)
        for f in gen.rolling_balls(4, 50):
            for s in tracker.update(f.detections, f.timestamp):
                assert 0.0 <= s.confidence <= 1.0


# ============================================================
# CLUSTERS & OVERLAPS
# ============================================================

class TestClusterHandling:
    """Cluster recall and duplicate suppression inside the pipeline."""

    def test_touching_pair_clustered(self, tracker):
        """Two touching balls form an overlapping cluster and two tracks."""
        report = tracker.process_frame([d(1.0, 0.5), d(1.05, 0.5)], 0.0)
        clusters = report.clustering.clusters
        assert len(clusters) == 1
        assert clusters[0].cluster_type == ClusterType.OVERLAPPING
        assert sorted(clusters[0].members) == [0, 1]
        assert len(report.born) == 2

    def test_duplicate_detections_one_track(self, tracker):
        """One ball reported twice yields one track."""
        report = tracker.process_frame([d(1.0, 0.5), d(1.008, 0.5, conf=0.7)], 0.0)
        assert len(report.born) == 1
        report = tracker.process_frame([d(1.03, 0.5, t=DT), d(1.036, 0.5, conf=0.7, t=DT)], DT)
        assert len(report.tracks) == 1
        assert report.associations[0].member_indices == (0, 1)

    def test_clustering_disabled(self):
        """Without clustering every detection is isolated."""
        config = TrackerConfig(enable_clustering=False)
        report = MultiBallTracker(config).process_frame([d(1.0), d(1.05)], 0.0)
        assert report.clustering.clusters == []
        assert report.clustering.isolated == [0, 1]

    def test_touching_pair_scenario(self):
        """Frozen balls keep separate ids over time."""
        tracker = MultiBallTracker()
        for f in SyntheticTableGenerator(seed=3, noise_std=0.002).touching_pair(n_frames=20):
            out = tracker.update(f.detections, f.timestamp)
        assert len(out) == 2
        assert {s.appearance_tag for s in out} == {"9", "10"}
        assert all(s.status == TrackStatus.ACTIVE for s in out)

    def test_break_shot(self):
        """A racked group scatters without spawning extra tracks."""
        tracker = MultiBallTracker()
        frames = SyntheticTableGenerator(seed=6, noise_std=0.002).break_shot(n_frames=40)
        for f in frames:
            tracker.update(f.detections, f.timestamp)
        stats = tracker.get_statistics()
        assert stats.tracks_created == 6
        assert stats.total_tracks == 6


# ============================================================
# INPUT ANOMALIES & COLLABORATORS
# ============================================================

class TestRobustness:
    """Degraded inputs never fail a frame."""

    def test_nan_detection_dropped(self, tracker):
        """Non-finite positions are dropped; indices refer to the caller's batch."""
        bad = d(float("nan"))
        report = tracker.process_frame([bad, d(0.5, 0.5)], 0.0)
        assert report.dropped_detections == 1
        assert len(report.tracks) == 1
        report = tracker.process_frame([bad, d(0.51, 0.5, t=DT)], DT)
        assert report.associations[0].detection_index == 1
        assert tracker.get_statistics().detections_dropped == 2

    def test_confidence_clamped(self, tracker):
        """Out-of-range confidence is clamped."""
        out = tracker.update([d(0.5, conf=1.7)], 0.0)
        assert len(out) == 1
        assert 0.0 <= out[0].confidence <= 1.0

    def test_backward_timestamp(self, tracker):
        """A timestamp earlier than the last frame acts as dt = 0."""
        tracker.update([d(0.0)], 0.0)
        tracker.update([d(0.05, t=DT)], DT)
        before = tracker.tracks[0].position.copy()
        out = tracker.update([], 0.0)
        np.testing.assert_allclose(out[0].position, before)
        assert out[0].status == TrackStatus.PREDICTED

    def test_low_confidence_no_birth(self, tracker):
        """Weak detections do not start tracks."""
        assert tracker.update([d(0.5, conf=0.3)], 0.0) == []

    def test_track_limit(self):
        """No more than max_tracks tracks are kept."""
        config = TrackerConfig()
        config.lifecycle.max_tracks = 2
        out = MultiBallTracker(config).update([d(0.0), d(0.5), d(1.0)], 0.0)
        assert [s.track_id for s in out] == [1, 2]

    def test_detection_failure_is_empty_frame(self, tracker):
        """DetectionFailed ages tracks instead of raising."""
        frames = SyntheticTableGenerator(seed=2).rolling_balls(n_balls=1, n_frames=3)
        detector = MockDetector(frames, fail_on={1})
        tracker.process(detector, 0, frames[0].timestamp)
        out = tracker.process(detector, 1, frames[1].timestamp)
        assert out[0].status == TrackStatus.PREDICTED
        out = tracker.process(detector, 2, frames[2].timestamp)
        assert out[0].status == TrackStatus.ACTIVE
        assert detector.calls == 3

    def test_occlusion_keeps_identity(self):
        """A ball hidden for four frames is re-acquired as a PREDICTED match."""
        tracker = MultiBallTracker()
        frames = SyntheticTableGenerator(seed=5).occlusion(hidden_from=10, hidden_frames=4)
        match_types = []
        for f in frames:
            report = tracker.process_frame(f.detections, f.timestamp)
            match_types.extend(a.match_type for a in report.associations)
        stats = tracker.get_statistics()
        assert stats.tracks_created == 1
        assert MatchType.PREDICTED in match_types

    def test_poor_conditions_lower_confidence(self):
        """Dark capture conditions reduce track confidence."""
        normal, dark = MultiBallTracker(), MultiBallTracker()
        cond = EnvironmentConditions(lighting=Lighting.DARK)
        a = normal.update([d(0.5)], 0.0)[0].confidence
        b = dark.update([d(0.5)], 0.0, conditions=cond)[0].confidence
        assert b == pytest.approx(a * 0.9)

    def test_two_dimensional_tracking(self):
        """dim=2 tracks image-plane detections."""
        tracker = MultiBallTracker(TrackerConfig(dim=2))
        tracker.update([Detection([0.0, 0.0], 0.9, 0.0)], 0.0)
        out = tracker.update([Detection([0.05, 0.0], 0.9, DT)], DT)
        assert out[0].position.shape == (2,)
        assert out[0].velocity[0] == pytest.approx(1.5, abs=0.05)

    def test_optimal_solver_injection(self):
        """A custom solver replaces the greedy default."""
        tracker = MultiBallTracker(solver=optimal_assign)
        tracker.update([d(0.0)], 0.0)
        out = tracker.update([d(0.05, t=DT)], DT)
        assert out[0].track_id == 1


# ============================================================
# QUERIES
# ============================================================

class TestQueries:
    """Read-only prediction, trajectories and statistics."""

    def _rolling(self, tracker):
        tracker.update([d(0.0)], 0.0)
        tracker.update([d(0.05, t=DT)], DT)

    def test_predict_is_read_only(self, tracker):
        """predict() extrapolates without changing tracker state."""
        self._rolling(tracker)
        before = tracker.tracks[0]
        future = tracker.predict(DT + 0.1)
        assert future[0].position[0] > before.position[0]
        assert future[0].confidence < before.confidence
        after = tracker.tracks[0]
        np.testing.assert_array_equal(after.position, before.position)
        assert after.confidence == before.confidence
        assert after.status == before.status

    def test_trajectory(self, tracker):
        """Trajectory starts at the current estimate and moves with the ball."""
        self._rolling(tracker)
        points = tracker.get_trajectory(1, duration=0.2, resolution=0.05)
        assert len(points) == 5
        assert points[0].timestamp == pytest.approx(DT)
        assert points[-1].position[0] > points[0].position[0]

    def test_unknown_track(self, tracker):
        with pytest.raises(TrackNotFoundError):
            tracker.get_trajectory(42)
        with pytest.raises(TrackNotFoundError):
            tracker.remove_track(42)
        assert tracker.get_track(42) is None
        assert not tracker.is_tracking(42)

    def test_remove_and_is_tracking(self, tracker):
        self._rolling(tracker)
        assert tracker.is_tracking(1)
        assert 0.0 < tracker.get_track_confidence(1) <= 1.0
        tracker.remove_track(1)
        assert tracker.tracks == []

    def test_statistics(self, tracker):
        """Statistics summarise the live tracks."""
        tracker.update([d(0.0), d(1.0)], 0.0)
        tracker.update([d(0.01, t=DT), d(1.0, t=DT)], DT)
        stats = tracker.get_statistics()
        assert stats.total_tracks == 2
        assert stats.active_tracks == 2
        assert 0.0 < stats.average_confidence <= 1.0
        assert stats.average_tracking_duration == pytest.approx(DT)
        assert stats.frames_processed == 2

    def test_reset(self, tracker):
        """reset() clears tracks and restarts ids."""
        self._rolling(tracker)
        tracker.reset()
        assert tracker.tracks == []
        assert tracker.get_statistics().frames_processed == 0
        out = tracker.update([d(2.0)], 10.0)
        assert out[0].track_id == 1

    def test_quality_and_summary(self, tracker):
        self._rolling(tracker)
        report = tracker.track_quality(1)
        assert report.track_id == 1
        assert report.quality_grade in "ABCDF"
        text = tracker.summary()
        assert "B01" in text
        assert "MultiBallTracker" in repr(tracker)
