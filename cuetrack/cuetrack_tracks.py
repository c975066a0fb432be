"""
CueTrack Track Store & Lifecycle
================================
Owns every track and drives the state machine:

    NEW ──hit──▶ ACTIVE ──miss──▶ PREDICTED ──misses > loss bound──▶ LOST ──grace──▶ evicted
                   ▲                  │                               │
                   └──────hit─────────┴───────────hit (recovered)─────┘

Each Track holds its own Kalman filter and bounded histories inline. The
store hands out small integer ids that are never reused until ``clear()``.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, List, Optional, Sequence

import numpy as np

from .cuetrack_config import TrackerConfig, LifecycleConfig
from .cuetrack_kalman import ConstantVelocityKalman
from .cuetrack_models import (
    Association, AssociationContractError, Detection, HistoryEntry,
    TrackNotFoundError, TrackSnapshot, TrackStatus, TrajectoryPoint,
)

logger = logging.getLogger(__name__)


# ===== TRACK =====

@dataclass
class Track:
    """A persistent ball track. Mutated only by the store and lifecycle manager."""
    track_id: int
    filter: ConstantVelocityKalman
    created_at: float
    history: Deque[HistoryEntry]
    velocity_history: Deque[np.ndarray]
    status: TrackStatus = TrackStatus.NEW
    confidence: float = 0.0
    last_hit_at: float = 0.0
    updated_at: float = 0.0          # Time the filter was last advanced to
    miss_count: int = 0              # Consecutive
    total_misses: int = 0
    hit_count: int = 0
    appearance_tag: Optional[str] = None
    tag_history: Deque[str] = field(default_factory=lambda: deque(maxlen=10))
    is_detected: bool = False

    @property
    def position(self) -> np.ndarray:
        return self.filter.position

    @property
    def velocity(self) -> np.ndarray:
        return self.filter.velocity

    @property
    def last_detection(self) -> Optional[HistoryEntry]:
        for entry in reversed(self.history):
            if entry.detected:
                return entry
        return None

    def age(self, now: float) -> float:
        return max(0.0, now - self.created_at)

    def __repr__(self):
        pos = self.filter.position
        return (f"Track(id={self.track_id}, status={self.status.name}, "
                f"pos=({', '.join(f'{p:.3f}' for p in pos)}), "
                f"conf={self.confidence:.2f}, hits={self.hit_count}, misses={self.miss_count})")


# ===== TRACK STORE =====

class TrackStore:
    """Arena of tracks keyed by id, in creation order."""

    def __init__(self, config: Optional[TrackerConfig] = None):
        self.config = config or TrackerConfig()
        self._tracks: Dict[int, Track] = {}
        self._next_id = 1
        self.created = 0
        self.evicted = 0

    def __len__(self):
        return len(self._tracks)

    def __iter__(self) -> Iterator[Track]:
        return iter(list(self._tracks.values()))

    def __contains__(self, track_id: int) -> bool:
        return track_id in self._tracks

    @property
    def is_full(self) -> bool:
        return len(self._tracks) >= self.config.lifecycle.max_tracks

    def get(self, track_id: int) -> Track:
        try:
            return self._tracks[track_id]
        except KeyError:
            raise TrackNotFoundError(track_id) from None

    def find(self, track_id: int) -> Optional[Track]:
        return self._tracks.get(track_id)

    def create(self, timestamp: float) -> Track:
        """Allocate a NEW track with an uninitialised filter."""
        life = self.config.lifecycle
        track = Track(
            track_id=self._next_id,
            filter=ConstantVelocityKalman(self.config.dim, self.config.kalman),
            created_at=timestamp,
            history=deque(maxlen=life.history_capacity),
            velocity_history=deque(maxlen=life.velocity_history_capacity),
            last_hit_at=timestamp,
            updated_at=timestamp,
        )
        self._tracks[track.track_id] = track
        self._next_id += 1
        self.created += 1
        return track

    def remove(self, track_id: int) -> Track:
        track = self.get(track_id)
        del self._tracks[track_id]
        return track

    def evict(self, track_ids: Sequence[int]):
        for track_id in track_ids:
            if self._tracks.pop(track_id, None) is not None:
                self.evicted += 1

    def clear(self):
        self._tracks.clear()
        self._next_id = 1
        self.created = 0
        self.evicted = 0

    def predict_all(self, timestamp: float):
        """Advance every non-lost track's filter to ``timestamp``."""
        for track in self._tracks.values():
            track.is_detected = False
            if track.status == TrackStatus.LOST:
                continue
            track.filter.predict(timestamp - track.updated_at)
            track.updated_at = max(track.updated_at, timestamp)

    def validate_associations(self, associations: Sequence[Association]) -> List[Association]:
        """Enforce one detection per track and one track per detection.

        Violations raise AssociationContractError when ``strict_contracts``
        is set; otherwise the offending association is logged and dropped.
        """
        claimed_tracks = set()
        claimed_detections = set()
        accepted = []
        for assoc in associations:
            members = set(assoc.member_indices or (assoc.detection_index,))
            problem = None
            if assoc.track_id not in self._tracks:
                problem = f"unknown track {assoc.track_id}"
            elif assoc.track_id in claimed_tracks:
                problem = f"track {assoc.track_id} claimed twice"
            elif members & claimed_detections:
                problem = f"detection(s) {sorted(members & claimed_detections)} claimed twice"
            if problem is not None:
                if self.config.strict_contracts:
                    raise AssociationContractError(problem)
                logger.error(f"Association contract violation: {problem}, skipping")
                continue
            claimed_tracks.add(assoc.track_id)
            claimed_detections |= members
            accepted.append(assoc)
        return accepted

    # ---- reads ----

    def snapshot(self, track: Track, now: float) -> TrackSnapshot:
        return TrackSnapshot(
            track_id=track.track_id,
            position=track.filter.position,
            velocity=track.filter.velocity,
            confidence=track.confidence,
            status=track.status,
            age=track.age(now),
            is_detected=track.is_detected,
            miss_count=track.miss_count,
            position_uncertainty=track.filter.position_uncertainty,
            appearance_tag=track.appearance_tag,
            last_hit_at=track.last_hit_at,
        )

    def snapshots(self, now: float) -> List[TrackSnapshot]:
        return [self.snapshot(t, now) for t in self._tracks.values()]


# ===== LIFECYCLE MANAGER =====

class LifecycleManager:
    """Applies hits, misses and eviction to tracks."""

    def __init__(self, config: Optional[LifecycleConfig] = None):
        self.config = config or LifecycleConfig()

    def decay_factor(self, dt: float) -> float:
        """Confidence retention for ``dt`` seconds unseen (strictly below 1)."""
        dt = dt if np.isfinite(dt) else 0.0
        return self.config.confidence_decay_rate ** max(dt, self.config.min_decay_interval)

    def initialize(self, track: Track, detection: Detection, timestamp: float,
                   confidence: float, appearance_tag: Optional[str] = None):
        """Absorb the creating detection: NEW → ACTIVE."""
        self.record_hit(track, detection, timestamp, confidence, appearance_tag)
        logger.debug(f"Track {track.track_id} born at "
                     f"{np.round(track.position, 3).tolist()} conf={track.confidence:.2f}")

    def record_hit(self, track: Track, detection: Detection, timestamp: float,
                   confidence: float, appearance_tag: Optional[str] = None):
        """Update a track with its matched detection."""
        # Lost tracks were not predicted this frame; catch the filter up first
        if track.filter.initialized and timestamp > track.updated_at:
            track.filter.predict(timestamp - track.updated_at)
        track.filter.update(detection.position, detection.confidence)

        previous = track.status
        gap = timestamp - track.last_hit_at
        track.status = TrackStatus.ACTIVE
        track.miss_count = 0
        track.hit_count += 1
        track.last_hit_at = timestamp
        track.updated_at = max(track.updated_at, timestamp)
        track.confidence = float(np.clip(confidence, 0.0, 1.0))
        track.is_detected = True
        if appearance_tag is not None:
            track.appearance_tag = appearance_tag
            track.tag_history.append(appearance_tag)

        track.history.append(HistoryEntry(
            timestamp=timestamp,
            position=track.filter.position,
            confidence=float(detection.confidence),
            size=detection.size,
            detected=True,
        ))
        if track.hit_count > 1:
            track.velocity_history.append(track.filter.velocity)

        if previous == TrackStatus.LOST:
            logger.debug(f"Track {track.track_id} recovered after {gap:.3f}s unseen")
        elif previous not in (TrackStatus.ACTIVE, TrackStatus.NEW):
            logger.debug(f"Track {track.track_id} {previous.name} -> ACTIVE")

    def record_miss(self, track: Track, timestamp: float, dt: float):
        """No detection this frame: decay confidence, coast, possibly lose."""
        cfg = self.config
        track.miss_count += 1
        track.total_misses += 1
        track.is_detected = False
        track.confidence = float(np.clip(track.confidence * self.decay_factor(dt), 0.0, 1.0))
        track.history.append(HistoryEntry(
            timestamp=timestamp,
            position=track.filter.position,
            confidence=track.confidence,
            detected=False,
        ))

        previous = track.status
        unseen = timestamp - track.last_hit_at
        if track.miss_count > cfg.loss_threshold:
            track.status = TrackStatus.LOST
        elif track.status != TrackStatus.LOST:
            track.status = TrackStatus.PREDICTED
        if track.status != previous:
            logger.debug(f"Track {track.track_id} {previous.name} -> {track.status.name} "
                         f"(misses={track.miss_count}, unseen={unseen:.3f}s)")

    def should_evict(self, track: Track, timestamp: float) -> bool:
        """Unmatched past the grace window, or a LOST track too old or too weak."""
        cfg = self.config
        if track.status == TrackStatus.ACTIVE:
            return False
        if timestamp - track.last_hit_at > cfg.eviction_grace:
            return True
        return (track.status == TrackStatus.LOST
                and (track.age(timestamp) > cfg.max_track_age
                     or track.confidence < cfg.min_track_confidence))

    def sweep(self, store: TrackStore, timestamp: float) -> List[int]:
        """Evict expired tracks. Returns the evicted ids."""
        expired = [t.track_id for t in store if self.should_evict(t, timestamp)]
        if expired:
            store.evict(expired)
            logger.debug(f"Evicted tracks {expired} at t={timestamp:.3f}")
        return expired

    def trajectory(self, track: Track, start: float, duration: float,
                   resolution: float) -> List[TrajectoryPoint]:
        """Extrapolated path from ``start`` over ``duration`` seconds."""
        if resolution <= 0:
            raise ValueError(f"resolution must be positive, got {resolution}")
        n_steps = int(np.floor(max(duration, 0.0) / resolution + 1e-9))
        points = []
        for k in range(n_steps + 1):
            t = start + k * resolution
            dt = t - track.updated_at
            pos, vel, _ = track.filter.peek(dt)
            conf = track.confidence * (self.decay_factor(dt) if dt > 0 else 1.0)
            points.append(TrajectoryPoint(t, pos, vel, float(conf)))
        return points


# ===== TRACK QUALITY =====

@dataclass
class TrackQualityReport:
    """Track quality assessment with a letter grade."""
    track_id: int
    frames_observed: int
    hit_ratio: float             # Hits / frames observed
    last_nis: float              # Should sit near the measurement dimension
    position_uncertainty: float  # RSS of per-axis std [m]
    velocity_uncertainty: float  # [m/s]
    quality_grade: str           # 'A' (excellent) through 'F' (unreliable)
    is_reliable: bool


def assess_track_quality(track: Track, max_uncertainty: float = 0.05) -> TrackQualityReport:
    """Grade a track on hit ratio, covariance size and innovation consistency.

    Args:
        track: Track from the store
        max_uncertainty: Position std [m] at which the covariance term scores 0
    """
    total = track.hit_count + track.total_misses
    hit_ratio = track.hit_count / max(total, 1)
    nz = track.filter.dim

    pos_unc = float(np.linalg.norm(track.filter.position_uncertainty))
    vel_unc = float(np.linalg.norm(track.filter.velocity_uncertainty))
    nis = track.filter.last_nis if track.filter.last_nis is not None else float(nz)

    score = 0.0
    score += min(hit_ratio * 40, 40)                                # Max 40
    score += 30 * max(0.0, 1.0 - pos_unc / max_uncertainty)         # Max 30
    score += max(0.0, 30 - abs(nis - nz) * 5)                       # Max 30

    if score >= 85:
        grade = 'A'
    elif score >= 70:
        grade = 'B'
    elif score >= 55:
        grade = 'C'
    elif score >= 40:
        grade = 'D'
    else:
        grade = 'F'

    return TrackQualityReport(
        track_id=track.track_id,
        frames_observed=total,
        hit_ratio=hit_ratio,
        last_nis=float(nis),
        position_uncertainty=pos_unc,
        velocity_uncertainty=vel_unc,
        quality_grade=grade,
        is_reliable=grade in ('A', 'B', 'C'),
    )
