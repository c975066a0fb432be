"""
Tests for CueTrack — Confidence Scorer
=======================================
pytest tests/test_confidence.py -v
"""

import numpy as np
import pytest
import sys, os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cuetrack.cuetrack_config import ConfidenceConfig, TrackerConfig
from cuetrack.cuetrack_models import (
    AppearanceResult, Detection, EnvironmentConditions, ImageQuality,
    Lighting, MotionBlur, SceneContext,
)
from cuetrack.cuetrack_confidence import ConfidenceScorer
from cuetrack.cuetrack_tracks import LifecycleManager, TrackStore


BALL = 0.057


def det(pos=(1.0, 0.5, 0.03), conf=0.9, t=0.0, extent=None, tag=None):
    return Detection(np.array(pos, dtype=float), conf, t, appearance_tag=tag, extent=extent)


def tracked(positions, dt=0.033, conf=0.9):
    """Track that has absorbed one detection per position."""
    store = TrackStore(TrackerConfig())
    life = LifecycleManager()
    track = store.create(0.0)
    for k, pos in enumerate(positions):
        t = k * dt
        if k:
            track.filter.predict(t - track.updated_at)
            track.updated_at = t
        life.record_hit(track, det(pos, conf, t), t, 0.8)
    return track


# ============================================================
# FACTORS
# ============================================================

class TestGeometric:
    """Confidence, size plausibility and aspect ratio."""

    def test_neutral_without_extent(self):
        """Missing extent scores size and aspect at neutral."""
        s = ConfidenceScorer()
        assert s.geometric_score(det(conf=0.9)) == pytest.approx(0.7 * 0.9 + 0.2 * 0.5 + 0.1 * 0.5)

    def test_perfect_ball(self):
        """Round, regulation-sized detection with full confidence scores 1."""
        s = ConfidenceScorer()
        assert s.geometric_score(det(conf=1.0, extent=[BALL, BALL])) == pytest.approx(1.0)

    def test_implausible_size(self):
        """Far too large or too small extents score zero size."""
        s = ConfidenceScorer()
        assert s.size_plausibility(BALL * 3) == 0.0
        assert s.size_plausibility(BALL * 0.2) == 0.0
        assert 0.0 < s.size_plausibility(BALL * 0.5) < 1.0
        assert s.size_plausibility(BALL) == 1.0

    def test_elongated_penalised(self):
        """Stretched boxes score lower than round ones."""
        s = ConfidenceScorer()
        round_ = s.geometric_score(det(extent=[BALL, BALL]))
        long_ = s.geometric_score(det(extent=[BALL * 1.3, BALL * 0.7]))
        assert long_ < round_


class TestTemporal:
    """Agreement with track history."""

    def test_no_history_neutral(self):
        """No track → 0.5."""
        assert ConfidenceScorer().temporal_score(det()) == 0.5

    def test_stale_history(self):
        """Last observation older than the window scores 0.3."""
        track = tracked([(1.0, 0.5, 0.03)])
        assert ConfidenceScorer().temporal_score(det(t=2.0), track) == pytest.approx(0.3)

    def test_consistent_beats_jump(self):
        """A small step scores higher than a large one."""
        track = tracked([(1.0, 0.5, 0.03), (1.01, 0.5, 0.03)])
        s = ConfidenceScorer()
        near = s.temporal_score(det((1.02, 0.5, 0.03), t=0.066), track)
        far = s.temporal_score(det((1.25, 0.5, 0.03), t=0.066), track)
        assert near > far


class TestColor:
    """Appearance confidence with identification and consistency bonuses."""

    def test_no_appearance_neutral(self):
        assert ConfidenceScorer().color_score(None) == 0.5

    def test_identified_bonus(self):
        """A known ball identity scores above the raw classifier confidence."""
        s = ConfidenceScorer()
        plain = s.color_score(AppearanceResult("blob", 0.8))
        known = s.color_score(AppearanceResult("8", 0.8, identified=True))
        assert plain == pytest.approx(0.8)
        assert known == pytest.approx(0.88)

    def test_consistency_from_track(self):
        """A track that always carried this tag adds the consistency bonus."""
        track = tracked([(1.0, 0.5, 0.03)])
        track.tag_history.extend(["8", "8", "8"])
        s = ConfidenceScorer()
        assert s.color_score(AppearanceResult("8", 0.8), track) == pytest.approx(0.84)

    def test_clamped(self):
        """Bonuses never push above 1."""
        s = ConfidenceScorer()
        assert s.color_score(AppearanceResult("8", 0.99, consistency=1.0, identified=True)) == 1.0


class TestContext:
    """Table placement and sibling consistency."""

    def test_unknown_scene(self):
        """No scene: region 0.6, no siblings 0.5."""
        s = ConfidenceScorer()
        assert s.context_score(det()) == pytest.approx(0.6 * 0.6 + 0.4 * 0.5)

    def test_inside_vs_outside_table(self):
        """On the cloth beats off the table."""
        s = ConfidenceScorer(scene=SceneContext())
        inside = s.context_score(det((1.0, 0.5, 0.03)))
        outside = s.context_score(det((5.0, 0.5, 0.03)))
        assert inside > outside

    def test_off_plane_penalised(self):
        """A ball floating above the cloth is less plausible."""
        s = ConfidenceScorer(scene=SceneContext(plane_height=0.0285))
        assert s.region_score([1.0, 0.5, 0.0285]) == 1.0
        assert s.region_score([1.0, 0.5, 0.2]) == 0.5

    def test_similar_siblings(self):
        """Two similar-sized neighbours raise the sibling term."""
        s = ConfidenceScorer()
        me = det(extent=[BALL, BALL])
        others = [det((0.2, 0.2, 0.03), extent=[BALL, BALL]),
                  det((0.4, 0.2, 0.03), extent=[BALL * 1.1, BALL])]
        assert s.context_score(me, [me] + others) == pytest.approx(0.6 * 0.6 + 0.4 * 1.0)


class TestMotion:
    """Velocity smoothness."""

    def test_no_track_neutral(self):
        assert ConfidenceScorer().motion_score(None) == 0.5

    def test_short_history(self):
        """Fewer than three velocity samples score 0.6."""
        track = tracked([(0, 0, 0), (0.03, 0, 0)])
        assert ConfidenceScorer().motion_score(track) == pytest.approx(0.6)

    def test_smooth_motion_scores_high(self):
        """A steady roll is smoother than a jittery one."""
        steady = tracked([(0.03 * k, 0, 0) for k in range(8)])
        rng = np.random.RandomState(2)
        jitter = tracked([(0.03 * k + rng.randn() * 0.02, rng.randn() * 0.02, 0)
                          for k in range(8)])
        s = ConfidenceScorer()
        assert s.motion_score(steady) > s.motion_score(jitter)


# ============================================================
# OVERALL
# ============================================================

class TestOverall:
    """Weighted blend, environment multipliers and thresholds."""

    def test_birth_score(self):
        """A lone, untagged 0.9 detection scores about 0.59."""
        b = ConfidenceScorer().score(det(conf=0.9))
        expected = (0.30 * 0.78 + 0.25 * 0.5 + 0.20 * 0.5
                    + 0.15 * (0.6 * 0.6 + 0.4 * 0.5) + 0.10 * 0.5)
        assert b.overall == pytest.approx(expected)
        assert b.is_valid_detection
        assert not b.is_high_confidence

    def test_environment_multipliers(self):
        """Poor conditions scale the score down."""
        s = ConfidenceScorer()
        normal = s.score(det()).overall
        bad = s.score(det(), conditions=EnvironmentConditions(
            Lighting.DARK, ImageQuality.POOR, MotionBlur.SEVERE)).overall
        assert bad == pytest.approx(normal * 0.9 * 0.85 * 0.8)

    def test_excellent_quality_clamped(self):
        """Boosts never exceed 1."""
        s = ConfidenceScorer()
        best = s.score(det(conf=1.0, extent=[BALL, BALL], tag="8"),
                       appearance=AppearanceResult("8", 1.0, 1.0, True),
                       conditions=EnvironmentConditions(image_quality=ImageQuality.EXCELLENT))
        assert 0.0 <= best.overall <= 1.0

    def test_bounds(self):
        """Overall always in [0, 1] across random inputs."""
        s = ConfidenceScorer(scene=SceneContext())
        rng = np.random.RandomState(9)
        for _ in range(50):
            d = det(rng.rand(3) * 3, conf=float(rng.rand()),
                    extent=rng.rand(2) * 0.2 + 1e-3)
            b = s.score(d, conditions=EnvironmentConditions(
                Lighting.BRIGHT, ImageQuality.EXCELLENT, MotionBlur.NONE))
            assert 0.0 <= b.overall <= 1.0

    def test_custom_weights(self):
        """Weights come from configuration."""
        cfg = ConfidenceConfig(geometric_weight=1.0, temporal_weight=0.0, color_weight=0.0,
                               context_weight=0.0, motion_weight=0.0)
        b = ConfidenceScorer(cfg).score(det(conf=1.0, extent=[BALL, BALL]))
        assert b.overall == pytest.approx(1.0)
