"""
CueTrack Configuration
======================
Named configuration sections for every tunable constant in the tracker.

Layout:
  TrackerConfig
    ├── KalmanConfig        (state estimator noise model)
    ├── AssociationConfig   (score weights, gates, match classification)
    ├── ClusteringConfig    (DBSCAN radius, topology thresholds)
    ├── LifecycleConfig     (loss / eviction / birth rules)
    └── ConfidenceConfig    (five-factor weights, environment multipliers)

Presets for common table games are available through ``TrackerConfig.preset``
and YAML files can be loaded with ``load_config``.

All distances are metres, all times seconds.
"""

import logging
import math
import warnings
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


# ===== ERRORS =====

class CueTrackError(Exception):
    """Base class for all tracker errors."""


class ConfigurationError(CueTrackError, ValueError):
    """Configuration value out of its valid range."""

    def __init__(self, section: str, name: str, value: Any, reason: str):
        self.section = section
        self.name = name
        self.value = value
        self.reason = reason
        super().__init__(f"{section}.{name}={value!r}: {reason}")


# ===== SECTIONS =====

# Regulation pool ball (57.15 mm)
POOL_BALL_DIAMETER = 0.057


@dataclass
class KalmanConfig:
    """Constant-velocity Kalman filter noise model."""
    process_noise: float = 0.5               # Acceleration spectral density [(m/s²)²·s]
    measurement_noise: float = 1e-4          # Position variance at confidence 1.0 [m²]
    initial_velocity_variance: float = 100.0  # [(m/s)²], unknown velocity at birth
    min_measurement_confidence: float = 0.01  # Floor when scaling R by 1/confidence


@dataclass
class AssociationConfig:
    """Detection-to-track scoring and assignment."""
    max_movement_distance: float = 0.3     # Hard gate per frame [m]
    max_time_interval: float = 0.5         # Recency falloff window [s]
    min_association_confidence: float = 0.6
    direct_match_threshold: float = 0.8

    # Score weights (sum to 1)
    position_weight: float = 0.5
    size_weight: float = 0.1
    color_weight: float = 0.2
    recency_weight: float = 0.2

    # Gate widening for tracks that were not seen last frame
    search_region_expansion: float = 1.5

    # Appearance agreement scores
    same_appearance_score: float = 1.0
    unknown_appearance_score: float = 0.7
    mismatched_appearance_score: float = 0.1
    missing_size_score: float = 1.0

    method: str = "greedy"                 # "greedy" or "optimal"


@dataclass
class ClusteringConfig:
    """Density-based grouping of nearby detections."""
    max_cluster_distance: float = 0.15     # Reachability radius [m]
    min_cluster_size: int = 2
    max_cluster_size: int = 8
    overlap_threshold: float = 0.08        # Avg spacing below this = overlapping [m]
    cluster_confidence_threshold: float = 0.6
    ball_diameter: float = POOL_BALL_DIAMETER

    # Cluster confidence blend
    detection_confidence_weight: float = 0.5
    coherence_weight: float = 0.3
    density_weight: float = 0.2

    coherence_scale: float = 0.5           # Avg distance at which coherence reaches 0 [m]
    tight_fraction: float = 0.6            # Of max_cluster_distance
    adjacent_fraction: float = 0.7         # Of max_cluster_distance
    linearity_tolerance: float = 0.15      # Minor/major principal axis ratio
    circularity_tolerance: float = 0.15    # Radial spread / mean radius

    # Members closer than this fraction of a diameter are one ball seen twice
    duplicate_distance_fraction: float = 0.5


@dataclass
class LifecycleConfig:
    """Track birth, loss and eviction rules."""
    loss_threshold: int = 5                # Misses tolerated before LOST
    loss_timeout: float = 0.5              # Base unseen window for eviction [s]
    eviction_grace_factor: float = 3.0     # × loss_timeout after last hit, then evicted
    max_track_age: float = 600.0           # Absolute age bound for LOST tracks [s]
    min_track_confidence: float = 0.01

    min_initialization_confidence: float = 0.4
    min_detection_score: float = 0.3
    max_tracks: int = 16

    confidence_decay_rate: float = 0.2     # Per-second retention while unseen
    min_decay_interval: float = 1.0 / 60.0  # Lower bound on decay exponent [s]

    history_capacity: int = 20
    velocity_history_capacity: int = 10

    @property
    def eviction_grace(self) -> float:
        return self.eviction_grace_factor * self.loss_timeout


def _default_lighting() -> Dict[str, float]:
    return {"normal": 1.0, "dark": 0.9, "bright": 0.95, "mixed": 0.85}


def _default_image_quality() -> Dict[str, float]:
    return {"excellent": 1.05, "good": 1.0, "fair": 0.95, "poor": 0.85}


def _default_motion_blur() -> Dict[str, float]:
    return {"none": 1.0, "slight": 0.98, "moderate": 0.9, "severe": 0.8}


@dataclass
class ConfidenceConfig:
    """Five-factor detection confidence model."""
    geometric_weight: float = 0.30
    temporal_weight: float = 0.25
    color_weight: float = 0.20
    context_weight: float = 0.15
    motion_weight: float = 0.10

    neutral_score: float = 0.5             # Used when an input is absent

    # Geometric: confidence terms + size plausibility + aspect ratio
    geometric_confidence_weight: float = 0.7
    geometric_size_weight: float = 0.2
    geometric_aspect_weight: float = 0.1
    ball_diameter: float = POOL_BALL_DIAMETER
    ideal_size_range: tuple = (0.75, 1.35)   # × diameter, full score
    valid_size_range: tuple = (0.35, 2.5)    # × diameter, zero outside

    # Temporal: agreement with the latest matched history entry
    temporal_position_weight: float = 0.5
    temporal_size_weight: float = 0.3
    temporal_trend_weight: float = 0.2
    temporal_window: float = 1.0           # History older than this is stale [s]
    stale_history_score: float = 0.3
    max_step_distance: float = 0.3         # Position delta at which score reaches 0 [m]
    trend_samples: int = 10

    # Color / appearance
    identified_bonus: float = 1.1
    consistency_bonus: float = 1.05
    consistency_threshold: float = 0.8

    # Context: placement on the table + similar-sized neighbours
    region_weight: float = 0.6
    sibling_weight: float = 0.4
    unknown_region_score: float = 0.6
    inside_region_score: float = 1.0
    margin_region_score: float = 0.6
    outside_region_score: float = 0.2
    off_plane_factor: float = 0.5
    sibling_size_ratio: tuple = (0.5, 2.0)

    # Motion smoothness
    short_motion_score: float = 0.6        # Fewer than 3 velocity samples
    motion_jitter_scale: float = 1.0       # Acceleration spread giving score 0 [m/s]

    high_confidence_threshold: float = 0.7
    valid_detection_threshold: float = 0.3

    lighting_factors: Dict[str, float] = field(default_factory=_default_lighting)
    image_quality_factors: Dict[str, float] = field(default_factory=_default_image_quality)
    motion_blur_factors: Dict[str, float] = field(default_factory=_default_motion_blur)

    def factor_weights(self) -> Dict[str, float]:
        return {
            "geometric": self.geometric_weight,
            "temporal": self.temporal_weight,
            "color": self.color_weight,
            "context": self.context_weight,
            "motion": self.motion_weight,
        }


# ===== TOP-LEVEL CONFIG =====

_SECTIONS = {
    "kalman": KalmanConfig,
    "association": AssociationConfig,
    "clustering": ClusteringConfig,
    "lifecycle": LifecycleConfig,
    "confidence": ConfidenceConfig,
}


@dataclass
class TrackerConfig:
    """Complete tracker configuration.

    Usage::

        config = TrackerConfig.preset("snooker")
        config.lifecycle.max_tracks = 22
        config.validate()
        tracker = MultiBallTracker(config)
    """
    dim: int = 3                           # 2 = image plane, 3 = table space
    strict_contracts: bool = True          # Raise on association contract violations
    enable_clustering: bool = True
    kalman: KalmanConfig = field(default_factory=KalmanConfig)
    association: AssociationConfig = field(default_factory=AssociationConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)

    @classmethod
    def preset(cls, name: Optional[str]) -> "TrackerConfig":
        """Table-game presets. Unknown names fall back to pool defaults."""
        config = cls()
        if name == "snooker":
            # 52.5 mm balls, 22 on the table, slower play
            config.clustering.ball_diameter = 0.0525
            config.confidence.ball_diameter = 0.0525
            config.clustering.overlap_threshold = 0.075
            config.lifecycle.max_tracks = 22
            config.association.max_movement_distance = 0.25
        elif name == "carom":
            # 61.5 mm balls, three on the table, long fast shots
            config.clustering.ball_diameter = 0.0615
            config.confidence.ball_diameter = 0.0615
            config.clustering.overlap_threshold = 0.09
            config.lifecycle.max_tracks = 3
            config.association.max_movement_distance = 0.4
        elif name not in (None, "pool"):
            logger.warning(f"Unknown preset '{name}', using pool defaults")
        return config

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackerConfig":
        """Build a config from nested dictionaries. Unknown keys are rejected."""
        config = cls()
        top_level = {f.name for f in fields(cls)} - set(_SECTIONS)
        for key, value in (data or {}).items():
            if key in _SECTIONS:
                section = getattr(config, key)
                if not isinstance(value, dict):
                    raise ConfigurationError(key, "*", value, "expected a mapping")
                valid = {f.name for f in fields(section)}
                for name, item in value.items():
                    if name not in valid:
                        raise ConfigurationError(key, name, item, "unknown option")
                    if isinstance(getattr(section, name), tuple) and isinstance(item, list):
                        item = tuple(item)
                    setattr(section, name, item)
            elif key in top_level:
                setattr(config, key, value)
            else:
                raise ConfigurationError("tracker", key, value, "unknown option")
        return config

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> "TrackerConfig":
        """Check ranges and normalise weight groups. Returns self."""
        if self.dim not in (2, 3):
            raise ConfigurationError("tracker", "dim", self.dim, "must be 2 or 3")

        k = self.kalman
        _positive("kalman", "measurement_noise", k.measurement_noise)
        _positive("kalman", "initial_velocity_variance", k.initial_velocity_variance)
        _non_negative("kalman", "process_noise", k.process_noise)
        _unit_interval("kalman", "min_measurement_confidence", k.min_measurement_confidence,
                       open_low=True)

        a = self.association
        _positive("association", "max_movement_distance", a.max_movement_distance)
        _positive("association", "max_time_interval", a.max_time_interval)
        _unit_interval("association", "min_association_confidence", a.min_association_confidence)
        _unit_interval("association", "direct_match_threshold", a.direct_match_threshold)
        if a.search_region_expansion < 1.0:
            raise ConfigurationError("association", "search_region_expansion",
                                     a.search_region_expansion, "must be >= 1")
        if a.method not in ("greedy", "optimal"):
            raise ConfigurationError("association", "method", a.method,
                                     "must be 'greedy' or 'optimal'")
        _normalise_weights(a, "association",
                           ("position_weight", "size_weight", "color_weight", "recency_weight"))

        c = self.clustering
        _positive("clustering", "max_cluster_distance", c.max_cluster_distance)
        _positive("clustering", "ball_diameter", c.ball_diameter)
        if c.min_cluster_size < 2:
            raise ConfigurationError("clustering", "min_cluster_size",
                                     c.min_cluster_size, "must be >= 2")
        if c.max_cluster_size < c.min_cluster_size:
            raise ConfigurationError("clustering", "max_cluster_size", c.max_cluster_size,
                                     "must be >= min_cluster_size")
        _unit_interval("clustering", "cluster_confidence_threshold",
                       c.cluster_confidence_threshold)
        _normalise_weights(c, "clustering",
                           ("detection_confidence_weight", "coherence_weight", "density_weight"))

        life = self.lifecycle
        if life.loss_threshold < 0:
            raise ConfigurationError("lifecycle", "loss_threshold",
                                     life.loss_threshold, "must be >= 0")
        if life.max_tracks < 1:
            raise ConfigurationError("lifecycle", "max_tracks", life.max_tracks, "must be >= 1")
        if life.history_capacity < 1:
            raise ConfigurationError("lifecycle", "history_capacity",
                                     life.history_capacity, "must be >= 1")
        _positive("lifecycle", "loss_timeout", life.loss_timeout)
        if life.eviction_grace_factor < 1.0:
            raise ConfigurationError("lifecycle", "eviction_grace_factor",
                                     life.eviction_grace_factor, "must be >= 1")
        _unit_interval("lifecycle", "confidence_decay_rate", life.confidence_decay_rate,
                       open_low=True, open_high=True)
        _positive("lifecycle", "min_decay_interval", life.min_decay_interval)
        _unit_interval("lifecycle", "min_initialization_confidence",
                       life.min_initialization_confidence)

        conf = self.confidence
        _normalise_weights(conf, "confidence",
                           ("geometric_weight", "temporal_weight", "color_weight",
                            "context_weight", "motion_weight"))
        _positive("confidence", "ball_diameter", conf.ball_diameter)
        for name in ("lighting_factors", "image_quality_factors", "motion_blur_factors"):
            for key, value in getattr(conf, name).items():
                if value < 0:
                    raise ConfigurationError("confidence", f"{name}[{key}]", value,
                                             "must be >= 0")
        return self


def _positive(section: str, name: str, value: float):
    if not (isinstance(value, (int, float)) and math.isfinite(value) and value > 0):
        raise ConfigurationError(section, name, value, "must be a positive number")


def _non_negative(section: str, name: str, value: float):
    if not (isinstance(value, (int, float)) and math.isfinite(value) and value >= 0):
        raise ConfigurationError(section, name, value, "must be >= 0")


def _unit_interval(section: str, name: str, value: float,
                   open_low: bool = False, open_high: bool = False):
    ok = isinstance(value, (int, float)) and math.isfinite(value)
    if ok:
        ok = (value > 0 if open_low else value >= 0) and (value < 1 if open_high else value <= 1)
    if not ok:
        raise ConfigurationError(section, name, value, "must lie in the unit interval")


def _normalise_weights(section_obj, section: str, names):
    """Weights must be non-negative; a sum other than 1 is rescaled with a warning."""
    values = [getattr(section_obj, n) for n in names]
    for n, v in zip(names, values):
        _non_negative(section, n, v)
    total = float(sum(values))
    if total <= 0:
        raise ConfigurationError(section, "weights", values, "must not all be zero")
    if abs(total - 1.0) > 1e-6:
        warnings.warn(
            f"{section} weights sum to {total:.3f}, rescaling to 1.0",
            RuntimeWarning, stacklevel=3,
        )
        for n, v in zip(names, values):
            setattr(section_obj, n, v / total)


def load_config(path: str, preset: Optional[str] = None) -> TrackerConfig:
    """Load a validated TrackerConfig from a YAML file.

    The file may contain a top-level ``preset`` key; explicit values in the
    file override the preset.

    Example YAML::

        preset: snooker
        lifecycle:
          loss_threshold: 8
        association:
          method: optimal
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError("tracker", "<root>", type(data).__name__,
                                 "YAML root must be a mapping")
    preset = data.pop("preset", preset)
    base = TrackerConfig.preset(preset).to_dict()
    for key, value in data.items():
        if key in _SECTIONS and isinstance(value, dict):
            base[key].update(value)
        else:
            base[key] = value
    config = TrackerConfig.from_dict(base)
    logger.debug(f"Loaded tracker config from {path} (preset={preset})")
    return config.validate()
