"""
CueTrack Data Model
===================
Value types exchanged between the tracker components and its callers.

Detection        — immutable per-frame observation from an external detector
TrackSnapshot    — read-only view of a track returned to callers
Association      — one accepted (track, detection) pairing for a frame
TrackStatistics  — aggregate tracker health
TrajectoryPoint  — one extrapolated point of a track's future path
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

import numpy as np

from .cuetrack_config import CueTrackError

if TYPE_CHECKING:
    from .cuetrack_cluster import ClusteringResult


# ===== ERRORS =====

class TrackNotFoundError(CueTrackError, KeyError):
    """Query for a track id that is not in the store."""

    def __init__(self, track_id: int):
        self.track_id = track_id
        super().__init__(f"No track with id {track_id}")

    def __str__(self):
        return self.args[0]


class AssociationContractError(CueTrackError, AssertionError):
    """An association claimed a track or detection twice in one frame."""


class DetectionFailed(CueTrackError):
    """Raised by a detector that could not produce a batch for a frame."""


# ===== ENUMS =====

class TrackStatus(Enum):
    NEW = auto()        # Created, not yet absorbed its first detection
    ACTIVE = auto()     # Matched this frame
    PREDICTED = auto()  # Coasting on the motion model
    LOST = auto()       # Missed beyond the loss bound, awaiting recovery or eviction


class MatchType(Enum):
    DIRECT = "direct"          # Active track, high score
    PREDICTED = "predicted"    # Track was coasting
    RECOVERED = "recovered"    # Track was lost
    APPEARANCE = "appearance"  # Driven by appearance rather than position


class Lighting(Enum):
    NORMAL = "normal"
    DARK = "dark"
    BRIGHT = "bright"
    MIXED = "mixed"


class ImageQuality(Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class MotionBlur(Enum):
    NONE = "none"
    SLIGHT = "slight"
    MODERATE = "moderate"
    SEVERE = "severe"


# ===== VALUE TYPES =====

def _frozen_vector(values) -> np.ndarray:
    arr = np.array(values, dtype=float).reshape(-1)
    arr.flags.writeable = False
    return arr


@dataclass(frozen=True, eq=False)
class Detection:
    """A single ball observation.

    Args:
        position: 2 or 3 components [m] (or image units for 2D tracking)
        confidence: Detector confidence in [0, 1]
        timestamp: Capture time [s]
        appearance_tag: Ball identity from the colour classifier, e.g. "8" or "cue"
        appearance_confidence: Classifier confidence for the tag
        extent: Bounding extent per axis [m]
        detection_id: Optional detector-side identifier
    """
    position: np.ndarray
    confidence: float
    timestamp: float = 0.0
    appearance_tag: Optional[str] = None
    appearance_confidence: Optional[float] = None
    extent: Optional[np.ndarray] = None
    detection_id: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "position", _frozen_vector(self.position))
        if self.extent is not None:
            object.__setattr__(self, "extent", _frozen_vector(self.extent))

    @property
    def size(self) -> Optional[float]:
        """Mean bounding extent, or None when the detector gave none."""
        if self.extent is None or len(self.extent) == 0:
            return None
        return float(np.mean(self.extent))

    def replace(self, **changes) -> "Detection":
        values = {
            "position": self.position,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "appearance_tag": self.appearance_tag,
            "appearance_confidence": self.appearance_confidence,
            "extent": self.extent,
            "detection_id": self.detection_id,
        }
        values.update(changes)
        return Detection(**values)


@dataclass
class HistoryEntry:
    """One record in a track's bounded history."""
    timestamp: float
    position: np.ndarray
    confidence: float
    size: Optional[float] = None
    detected: bool = True


@dataclass
class TrackSnapshot:
    """Caller-facing copy of a track's state at the end of a frame."""
    track_id: int
    position: np.ndarray
    velocity: np.ndarray
    confidence: float
    status: TrackStatus
    age: float                       # Seconds since creation
    is_detected: bool                # Matched in the frame that produced this snapshot
    miss_count: int = 0
    position_uncertainty: Optional[np.ndarray] = None
    appearance_tag: Optional[str] = None
    last_hit_at: float = 0.0

    @property
    def speed(self) -> float:
        return float(np.linalg.norm(self.velocity))

    def __repr__(self):
        pos = ", ".join(f"{p:.3f}" for p in self.position)
        return (f"TrackSnapshot(id={self.track_id}, {self.status.name}, "
                f"pos=({pos}), conf={self.confidence:.2f})")


@dataclass(frozen=True)
class Association:
    """Accepted pairing of a track with a (possibly merged) detection."""
    track_id: int
    detection_index: int             # Index into the caller's detection batch
    score: float
    match_type: MatchType
    member_indices: Tuple[int, ...] = ()   # All batch indices merged into this detection
    cluster_id: Optional[int] = None


@dataclass
class TrackStatistics:
    """Aggregate tracker statistics."""
    total_tracks: int = 0
    active_tracks: int = 0
    average_confidence: float = 0.0
    average_tracking_duration: float = 0.0
    tracks_created: int = 0
    tracks_evicted: int = 0
    frames_processed: int = 0
    detections_dropped: int = 0
    last_processing_time_ms: float = 0.0


@dataclass
class TrajectoryPoint:
    timestamp: float
    position: np.ndarray
    velocity: np.ndarray
    confidence: float


@dataclass
class EnvironmentConditions:
    """Per-frame capture conditions reported by the host."""
    lighting: Lighting = Lighting.NORMAL
    image_quality: ImageQuality = ImageQuality.GOOD
    motion_blur: MotionBlur = MotionBlur.NONE


@dataclass
class AppearanceResult:
    """Output of an appearance classifier for one detection."""
    tag: Optional[str]
    confidence: float
    consistency: float = 0.0         # Agreement with earlier calls for the same ball
    identified: bool = False         # Tag names a known ball


@dataclass
class SceneContext:
    """Known geometry of the playing surface.

    ``bounds_min`` / ``bounds_max`` are the planar (x, y) corners of the
    cloth. ``plane_height`` is the z coordinate of ball centres at rest;
    None disables the on-plane check.
    """
    bounds_min: Tuple[float, float] = (0.0, 0.0)
    bounds_max: Tuple[float, float] = (2.54, 1.27)
    margin: float = 0.05
    plane_height: Optional[float] = None
    plane_tolerance: float = 0.03

    def contains(self, position: Sequence[float], margin: float = 0.0) -> bool:
        x, y = float(position[0]), float(position[1])
        return (self.bounds_min[0] - margin <= x <= self.bounds_max[0] + margin and
                self.bounds_min[1] - margin <= y <= self.bounds_max[1] + margin)


@dataclass
class FrameReport:
    """Everything produced while processing one frame."""
    timestamp: float
    tracks: List[TrackSnapshot] = field(default_factory=list)
    associations: List[Association] = field(default_factory=list)
    clustering: Optional["ClusteringResult"] = None
    born: List[int] = field(default_factory=list)        # New track ids
    evicted: List[int] = field(default_factory=list)     # Evicted track ids
    dropped_detections: int = 0
    processing_time_ms: float = 0.0
