"""
CueTrack Confidence Scorer
==========================
Five-factor confidence for a detection, optionally in the context of the
track it was matched to.

    overall = 0.30·geometric + 0.25·temporal + 0.20·color
            + 0.15·context   + 0.10·motion

followed by environment multipliers (lighting, image quality, motion blur)
and a clamp to [0, 1]. Absent inputs score neutral rather than failing.

Used twice per frame: to validate a detection before it may start a track,
and to refresh a track's confidence after a successful match.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .cuetrack_config import ConfidenceConfig
from .cuetrack_models import (
    AppearanceResult, Detection, EnvironmentConditions, SceneContext,
)


@dataclass
class ConfidenceBreakdown:
    """Per-factor scores behind an overall confidence."""
    geometric: float
    temporal: float
    color: float
    context: float
    motion: float
    environment_factor: float
    overall: float
    high_threshold: float = 0.7
    valid_threshold: float = 0.3

    @property
    def is_high_confidence(self) -> bool:
        return self.overall > self.high_threshold

    @property
    def is_valid_detection(self) -> bool:
        return self.overall > self.valid_threshold


def _clip01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


class ConfidenceScorer:
    """Weighted combination of geometric, temporal, color, context and motion cues."""

    def __init__(self, config: Optional[ConfidenceConfig] = None,
                 scene: Optional[SceneContext] = None):
        self.config = config or ConfidenceConfig()
        self.scene = scene

    def score(self, detection: Detection, track=None,
              siblings: Sequence[Detection] = (),
              conditions: Optional[EnvironmentConditions] = None,
              appearance: Optional[AppearanceResult] = None,
              now: Optional[float] = None) -> ConfidenceBreakdown:
        """Score ``detection``.

        Args:
            detection: The detection being judged
            track: Matched track (its history drives the temporal/motion
                factors), or None for a candidate birth
            siblings: Other detections in the same frame
            conditions: Capture conditions for the frame
            appearance: Classifier output for this detection
            now: Frame time; defaults to the detection timestamp
        """
        cfg = self.config
        geometric = self.geometric_score(detection)
        temporal = self.temporal_score(detection, track, now)
        color = self.color_score(appearance, track)
        context = self.context_score(detection, siblings)
        motion = self.motion_score(track)

        weighted = (cfg.geometric_weight * geometric
                    + cfg.temporal_weight * temporal
                    + cfg.color_weight * color
                    + cfg.context_weight * context
                    + cfg.motion_weight * motion)
        env = self.environment_factor(conditions)

        return ConfidenceBreakdown(
            geometric=geometric,
            temporal=temporal,
            color=color,
            context=context,
            motion=motion,
            environment_factor=env,
            overall=_clip01(weighted * env),
            high_threshold=cfg.high_confidence_threshold,
            valid_threshold=cfg.valid_detection_threshold,
        )

    # ---- factors ----

    def size_plausibility(self, size: Optional[float]) -> float:
        """1 inside the ideal band around the ball diameter, linear to 0 at the valid limits."""
        cfg = self.config
        if size is None or not np.isfinite(size):
            return cfg.neutral_score
        ratio = size / cfg.ball_diameter
        ideal_lo, ideal_hi = cfg.ideal_size_range
        valid_lo, valid_hi = cfg.valid_size_range
        if ideal_lo <= ratio <= ideal_hi:
            return 1.0
        if ratio <= valid_lo or ratio >= valid_hi:
            return 0.0
        if ratio < ideal_lo:
            return (ratio - valid_lo) / (ideal_lo - valid_lo)
        return (valid_hi - ratio) / (valid_hi - ideal_hi)

    def geometric_score(self, detection: Detection) -> float:
        cfg = self.config
        extent = detection.extent
        if extent is not None and len(extent) >= 2 and min(extent[0], extent[1]) > 0:
            aspect = extent[0] / extent[1]
            aspect_score = 1.0 - min(1.0, abs(aspect - 1.0))
        else:
            aspect_score = cfg.neutral_score
        return _clip01(cfg.geometric_confidence_weight * detection.confidence
                       + cfg.geometric_size_weight * self.size_plausibility(detection.size)
                       + cfg.geometric_aspect_weight * aspect_score)

    def temporal_score(self, detection: Detection, track=None,
                       now: Optional[float] = None) -> float:
        """Agreement with the track's most recent matched observation."""
        cfg = self.config
        last = track.last_detection if track is not None else None
        if last is None:
            return cfg.neutral_score
        now = detection.timestamp if now is None else now
        if now - last.timestamp > cfg.temporal_window:
            return cfg.stale_history_score

        step = float(np.linalg.norm(detection.position[:len(last.position)]
                                    - last.position[:len(detection.position)]))
        position = max(0.0, 1.0 - step / cfg.max_step_distance)

        if detection.size and last.size:
            size = max(0.0, 1.0 - abs(np.log(detection.size / last.size)))
        else:
            size = cfg.neutral_score

        confidences = [e.confidence for e in track.history if e.detected]
        confidences = confidences[-cfg.trend_samples:] + [detection.confidence]
        if len(confidences) >= 2:
            slope = float(np.polyfit(np.arange(len(confidences)), confidences, 1)[0])
            trend = _clip01(0.5 + slope * 0.5)
        else:
            trend = cfg.neutral_score

        return _clip01(cfg.temporal_position_weight * position
                       + cfg.temporal_size_weight * size
                       + cfg.temporal_trend_weight * trend)

    def color_score(self, appearance: Optional[AppearanceResult], track=None) -> float:
        cfg = self.config
        if appearance is None or appearance.tag is None:
            return cfg.neutral_score
        score = appearance.confidence
        if appearance.identified:
            score *= cfg.identified_bonus
        consistency = appearance.consistency
        if track is not None and track.tag_history:
            agree = sum(1 for t in track.tag_history if t == appearance.tag)
            consistency = max(consistency, agree / len(track.tag_history))
        if consistency > cfg.consistency_threshold:
            score *= cfg.consistency_bonus
        return _clip01(score)

    def region_score(self, position) -> float:
        cfg = self.config
        if self.scene is None:
            return cfg.unknown_region_score
        if self.scene.contains(position):
            score = cfg.inside_region_score
        elif self.scene.contains(position, margin=self.scene.margin):
            score = cfg.margin_region_score
        else:
            score = cfg.outside_region_score
        if self.scene.plane_height is not None and len(position) >= 3:
            if abs(position[2] - self.scene.plane_height) > self.scene.plane_tolerance:
                score *= cfg.off_plane_factor
        return score

    def context_score(self, detection: Detection, siblings: Sequence[Detection] = ()) -> float:
        """Placement on the table plus how many similar-sized balls share the frame."""
        cfg = self.config
        lo, hi = cfg.sibling_size_ratio
        similar = 0
        for other in siblings:
            if other is detection:
                continue
            if detection.size and other.size:
                if lo <= other.size / detection.size <= hi:
                    similar += 1
            else:
                similar += 1
        if similar >= 2:
            sibling = 1.0
        elif similar == 1:
            sibling = 0.7
        else:
            sibling = cfg.neutral_score
        return _clip01(cfg.region_weight * self.region_score(detection.position)
                       + cfg.sibling_weight * sibling)

    def motion_score(self, track=None) -> float:
        """Smoothness of the track's recent velocity estimates."""
        cfg = self.config
        if track is None or not track.velocity_history:
            return cfg.neutral_score
        velocities = np.array(track.velocity_history)
        if len(velocities) < 3:
            return cfg.short_motion_score
        changes = np.linalg.norm(np.diff(velocities, axis=0), axis=1)
        jitter = float(np.sqrt(np.var(changes)))
        return _clip01(1.0 - jitter / cfg.motion_jitter_scale)

    def environment_factor(self, conditions: Optional[EnvironmentConditions]) -> float:
        if conditions is None:
            return 1.0
        cfg = self.config
        return (cfg.lighting_factors.get(conditions.lighting.value, 1.0)
                * cfg.image_quality_factors.get(conditions.image_quality.value, 1.0)
                * cfg.motion_blur_factors.get(conditions.motion_blur.value, 1.0))
