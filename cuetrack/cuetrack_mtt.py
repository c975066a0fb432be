"""
CueTrack Multi-Ball Tracker
===========================
Per-frame orchestration of the tracking pipeline.

Architecture:
  MultiBallTracker
    ├── Spatial Analyzer      (pairwise distances for the frame)
    ├── Clustering Engine     (groups, overlap resolution)
    ├── Track Store           (tracks keyed by id, Kalman filter inline)
    ├── Association Engine    (weighted scores, greedy or optimal solver)
    ├── Confidence Scorer     (five-factor detection confidence)
    └── Lifecycle Manager     (ACTIVE / PREDICTED / LOST / evicted)

Each call to ``update`` is one synchronous batch: the frame's detections in,
the current track list out. Nothing is cached across frames except the
tracks themselves.

Timestamps must be non-decreasing. A timestamp earlier than the previous
frame is treated as the previous frame's time (dt = 0); the tracker never
predicts backward.
"""

import logging
import time
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .cuetrack_association import AssignmentSolver, AssociationEngine
from .cuetrack_cluster import ClusteringEngine, ClusteringResult, Representative
from .cuetrack_collaborators import AppearanceClassifier, Detector, TagAppearanceClassifier
from .cuetrack_confidence import ConfidenceScorer
from .cuetrack_config import TrackerConfig
from .cuetrack_models import (
    Detection, DetectionFailed, EnvironmentConditions, FrameReport,
    SceneContext, TrackSnapshot, TrackStatistics, TrackStatus, TrajectoryPoint,
)
from .cuetrack_spatial import SpatialAnalyzer
from .cuetrack_tracks import (
    LifecycleManager, TrackQualityReport, TrackStore, assess_track_quality,
)

logger = logging.getLogger(__name__)


class MultiBallTracker:
    """Complete billiard-ball tracking engine.

    Usage::

        tracker = MultiBallTracker(TrackerConfig.preset("pool"))

        # Each frame:
        tracks = tracker.update(detections, timestamp)
        for t in tracks:
            print(f"Ball {t.track_id}: {t.status.name} pos={t.position}")
    """

    def __init__(self, config: Optional[TrackerConfig] = None,
                 classifier: Optional[AppearanceClassifier] = None,
                 scene: Optional[SceneContext] = None,
                 solver: Optional[AssignmentSolver] = None):
        """
        Args:
            config: Tracker configuration (validated here)
            classifier: Appearance classifier; defaults to trusting detector tags
            scene: Table geometry for context scoring; None scores neutral
            solver: Custom assignment solver replacing the configured method
        """
        self.config = (config or TrackerConfig()).validate()
        cfg = self.config

        self.spatial = SpatialAnalyzer(cfg.clustering)
        self.clusterer = ClusteringEngine(cfg.clustering)
        self.store = TrackStore(cfg)
        self.associator = AssociationEngine(cfg.association, solver)
        self.scorer = ConfidenceScorer(cfg.confidence, scene)
        self.lifecycle = LifecycleManager(cfg.lifecycle)
        self.classifier = classifier or TagAppearanceClassifier()

        self._timestamp = 0.0
        self._frames = 0
        self._dropped = 0
        self._last_processing_ms = 0.0

    # ===== PER-FRAME PIPELINE =====

    def update(self, detections: Sequence[Detection], timestamp: float,
               conditions: Optional[EnvironmentConditions] = None) -> List[TrackSnapshot]:
        """Process one frame. Returns every stored track after the update."""
        return self.process_frame(detections, timestamp, conditions).tracks

    def process(self, detector: Detector, frame, timestamp: float,
                conditions: Optional[EnvironmentConditions] = None) -> List[TrackSnapshot]:
        """Run ``detector`` on ``frame`` and track the result.

        A DetectionFailed from the detector is treated as an empty frame so
        existing tracks still coast and age.
        """
        try:
            detections = detector.detect(frame)
        except DetectionFailed as e:
            logger.warning(f"Detection failed at t={timestamp:.3f}: {e}")
            detections = []
        return self.update(detections, timestamp, conditions)

    def process_frame(self, detections: Sequence[Detection], timestamp: float,
                      conditions: Optional[EnvironmentConditions] = None) -> FrameReport:
        """Process one frame and report associations, clustering, births and evictions."""
        start = time.perf_counter()
        t, dt = self._advance_clock(timestamp)
        clean, dropped = self._sanitize(detections)
        batch = [d for _, d in clean]
        index_map = [i for i, _ in clean]

        # 1. SPATIAL ANALYSIS & CLUSTERING
        analysis = self.spatial.analyze([d.position for d in batch])
        if self.config.enable_clustering:
            clustering = self.clusterer.cluster(batch, analysis)
            reps = self.clusterer.representatives(batch, clustering, analysis)
        else:
            clustering = ClusteringResult(isolated=list(range(len(batch))))
            reps = [Representative(d, (i,)) for i, d in enumerate(batch)]
        if dropped:
            clustering = _remap_clustering(clustering, index_map)
            reps = [Representative(r.detection, tuple(index_map[i] for i in r.members),
                                   r.cluster_id) for r in reps]

        # 2. PREDICT all non-lost tracks to frame time
        self.store.predict_all(t)

        # 3. APPEARANCE
        appearances = [self.classifier.classify(r.detection) for r in reps]

        # 4. DATA ASSOCIATION
        tracks = list(self.store)
        associations, _, _ = self.associator.associate(tracks, reps, appearances, t)
        associations = self.store.validate_associations(associations)

        # 5. UPDATE matched tracks
        siblings = [r.detection for r in reps]
        by_index = {r.index: (r, a) for r, a in zip(reps, appearances)}
        matched = set()
        for assoc in associations:
            rep, appearance = by_index[assoc.detection_index]
            track = self.store.get(assoc.track_id)
            breakdown = self.scorer.score(rep.detection, track, siblings, conditions,
                                          appearance, now=t)
            self.lifecycle.record_hit(track, rep.detection, t, breakdown.overall,
                                      appearance.tag if appearance is not None else None)
            matched.add(track.track_id)

        # 6. MISS unmatched tracks
        for track in tracks:
            if track.track_id not in matched:
                self.lifecycle.record_miss(track, t, dt)

        # 7. INITIATE new tracks from unclaimed detections
        claimed = {a.detection_index for a in associations}
        occupied = [t.position for t in self.store if t.status != TrackStatus.LOST]
        born = []
        for rep, appearance in zip(reps, appearances):
            if rep.index in claimed:
                continue
            track_id = self._try_birth(rep, appearance, siblings, conditions, t, occupied)
            if track_id is not None:
                born.append(track_id)
                occupied.append(self.store.get(track_id).position)

        # 8. EVICT expired tracks
        evicted = self.lifecycle.sweep(self.store, t)

        # 9. STATISTICS
        self._frames += 1
        self._dropped += dropped
        self._last_processing_ms = (time.perf_counter() - start) * 1000.0

        return FrameReport(
            timestamp=t,
            tracks=self.store.snapshots(t),
            associations=associations,
            clustering=clustering,
            born=born,
            evicted=evicted,
            dropped_detections=dropped,
            processing_time_ms=self._last_processing_ms,
        )

    def _advance_clock(self, timestamp: float) -> Tuple[float, float]:
        """Returns (frame time, dt since previous frame) under the no-rewind policy."""
        if timestamp is None or not np.isfinite(timestamp):
            logger.warning(f"Non-finite timestamp {timestamp!r}, holding t={self._timestamp:.3f}")
            timestamp = self._timestamp
        timestamp = float(timestamp)
        if self._frames == 0:
            self._timestamp = timestamp
            return timestamp, 0.0
        if timestamp < self._timestamp:
            logger.warning(f"Timestamp went backward ({timestamp:.3f} < "
                           f"{self._timestamp:.3f}), clamping dt to 0")
            timestamp = self._timestamp
        dt = timestamp - self._timestamp
        self._timestamp = timestamp
        return timestamp, dt

    def _sanitize(self, detections: Sequence[Detection]) -> Tuple[List[Tuple[int, Detection]], int]:
        """Drop unusable detections, clamp confidences, coerce dimension.

        Returns ([(batch index, detection)], number dropped).
        """
        dim = self.config.dim
        clean = []
        dropped = 0
        for idx, det in enumerate(detections or ()):
            pos = det.position
            if len(pos) < 2 or not np.all(np.isfinite(pos)):
                logger.warning(f"Dropping detection {idx}: invalid position {pos.tolist()}")
                dropped += 1
                continue
            changes = {}
            conf = det.confidence
            if conf is None or not np.isfinite(conf):
                logger.warning(f"Detection {idx}: non-finite confidence, using 0")
                changes["confidence"] = 0.0
            elif not 0.0 <= conf <= 1.0:
                changes["confidence"] = float(np.clip(conf, 0.0, 1.0))
            if len(pos) != dim:
                fixed = np.zeros(dim)
                n = min(dim, len(pos))
                fixed[:n] = pos[:n]
                changes["position"] = fixed
            if det.extent is not None and not np.all(np.isfinite(det.extent)):
                changes["extent"] = None
            clean.append((idx, det.replace(**changes) if changes else det))
        return clean, dropped

    def _try_birth(self, rep: Representative, appearance, siblings: Sequence[Detection],
                   conditions: Optional[EnvironmentConditions], t: float,
                   occupied: Sequence[np.ndarray]) -> Optional[int]:
        det = rep.detection
        life = self.config.lifecycle
        if det.confidence <= life.min_initialization_confidence:
            logger.debug(f"Detection {rep.index} below initialization confidence "
                         f"({det.confidence:.2f})")
            return None

        # Two ball centres cannot be closer than a fraction of a diameter
        clustering = self.config.clustering
        limit = clustering.duplicate_distance_fraction * clustering.ball_diameter
        for pos in occupied:
            if np.linalg.norm(det.position - pos) < limit:
                logger.debug(f"Detection {rep.index} duplicates an existing track, not spawning")
                return None

        if self.store.is_full:
            logger.debug(f"Track limit {life.max_tracks} reached, "
                         f"ignoring detection {rep.index}")
            return None

        breakdown = self.scorer.score(det, None, siblings, conditions, appearance, now=t)
        if breakdown.overall < life.min_detection_score:
            logger.debug(f"Detection {rep.index} rejected, score {breakdown.overall:.2f}")
            return None

        track = self.store.create(t)
        self.lifecycle.initialize(track, det, t, breakdown.overall,
                                  appearance.tag if appearance is not None else None)
        return track.track_id

    # ===== QUERIES =====

    def predict(self, at: float) -> List[TrackSnapshot]:
        """Extrapolate every track to time ``at`` without changing any state."""
        snapshots = []
        for track in self.store:
            dt = at - track.updated_at
            pos, vel, P = track.filter.peek(dt)
            snap = self.store.snapshot(track, at)
            snap.position = pos
            snap.velocity = vel
            snap.position_uncertainty = np.sqrt(np.clip(np.diag(P)[:track.filter.dim], 0, None))
            if dt > 0:
                snap.confidence = track.confidence * self.lifecycle.decay_factor(dt)
            snap.is_detected = False
            snapshots.append(snap)
        return snapshots

    def get_trajectory(self, track_id: int, duration: float = 1.0,
                       resolution: float = 0.1) -> List[TrajectoryPoint]:
        """Future path of a track from the current frame time. Raises TrackNotFoundError."""
        track = self.store.get(track_id)
        return self.lifecycle.trajectory(track, self._timestamp, duration, resolution)

    def get_track(self, track_id: int) -> Optional[TrackSnapshot]:
        track = self.store.find(track_id)
        return self.store.snapshot(track, self._timestamp) if track is not None else None

    def remove_track(self, track_id: int) -> None:
        """Drop a track immediately. Raises TrackNotFoundError."""
        self.store.remove(track_id)
        logger.debug(f"Track {track_id} removed by caller")

    def is_tracking(self, track_id: int) -> bool:
        track = self.store.find(track_id)
        return track is not None and track.status != TrackStatus.LOST

    def get_track_confidence(self, track_id: int) -> float:
        return self.store.get(track_id).confidence

    def track_quality(self, track_id: int) -> TrackQualityReport:
        return assess_track_quality(self.store.get(track_id))

    def set_scene_context(self, scene: Optional[SceneContext]):
        self.scorer.scene = scene

    @property
    def tracks(self) -> List[TrackSnapshot]:
        return self.store.snapshots(self._timestamp)

    @property
    def active_tracks(self) -> List[TrackSnapshot]:
        return [s for s in self.tracks if s.status == TrackStatus.ACTIVE]

    def get_statistics(self) -> TrackStatistics:
        tracks = list(self.store)
        active = [t for t in tracks if t.status == TrackStatus.ACTIVE]
        return TrackStatistics(
            total_tracks=len(tracks),
            active_tracks=len(active),
            average_confidence=(float(np.mean([t.confidence for t in active]))
                                if active else 0.0),
            average_tracking_duration=(float(np.mean([t.age(self._timestamp) for t in tracks]))
                                       if tracks else 0.0),
            tracks_created=self.store.created,
            tracks_evicted=self.store.evicted,
            frames_processed=self._frames,
            detections_dropped=self._dropped,
            last_processing_time_ms=self._last_processing_ms,
        )

    def reset(self):
        """Forget every track and counter. Ids restart at 1."""
        self.store.clear()
        self._timestamp = 0.0
        self._frames = 0
        self._dropped = 0
        self._last_processing_ms = 0.0
        logger.info("Tracker reset")

    def summary(self) -> str:
        """Human-readable tracker summary."""
        lines = [f"MultiBallTracker — frame {self._frames} — t={self._timestamp:.3f}s — "
                 f"{len(self.store)} tracks"]
        for t in self.store:
            pos = t.position
            lines.append(
                f"  B{t.track_id:02d} [{t.status.name:9s}] "
                f"pos=({', '.join(f'{p:.3f}' for p in pos)}) "
                f"speed={np.linalg.norm(t.velocity):.2f}m/s "
                f"conf={t.confidence:.2f} hits={t.hit_count}"
                + (f" tag={t.appearance_tag}" if t.appearance_tag else "")
            )
        return "\n".join(lines)

    def __repr__(self):
        return (f"MultiBallTracker(tracks={len(self.store)}, "
                f"active={sum(1 for t in self.store if t.status == TrackStatus.ACTIVE)}, "
                f"frames={self._frames})")


def _remap_clustering(result: ClusteringResult, index_map: Sequence[int]) -> ClusteringResult:
    """Rewrite sanitized-batch indices as caller batch indices."""
    for cluster in result.clusters:
        cluster.members = [index_map[i] for i in cluster.members]
        for rel in cluster.relationships:
            rel.first = index_map[rel.first]
            rel.second = index_map[rel.second]
    result.isolated = [index_map[i] for i in result.isolated]
    return result
