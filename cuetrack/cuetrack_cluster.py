"""
CueTrack Clustering Engine
==========================
DBSCAN-style grouping of detections that sit close together on the table:
racks, balls frozen to each other, and one ball reported twice.

Algorithm:
  1. Seed at each unclustered detection, expand through every detection
     within ``max_cluster_distance`` of any member (reachability).
  2. Reject groups outside [min_cluster_size, max_cluster_size].
  3. Score the group: 0.5·mean confidence + 0.3·coherence + 0.2·density.
  4. Keep groups at or above ``cluster_confidence_threshold``; the rest
     fall back to isolated detections.
  5. Classify topology and pairwise relationships, then rate the scene.

Accepted clusters are also the unit of overlap resolution: members closer
than half a ball diameter cannot be two balls and are merged into one
representative detection before association.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .cuetrack_config import ClusteringConfig
from .cuetrack_models import Detection
from .cuetrack_spatial import Arrangement, SpatialAnalysis, SpatialAnalyzer

logger = logging.getLogger(__name__)


class ClusterType(Enum):
    OVERLAPPING = "overlapping"
    TIGHT = "tight"
    LINEAR = "linear"
    CIRCULAR = "circular"
    LOOSE = "loose"


class RelationshipType(Enum):
    TOUCHING = "touching"
    OVERLAPPING = "overlapping"
    ADJACENT = "adjacent"
    SEPARATED = "separated"


class SceneComplexity(Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    CHAOTIC = "chaotic"


@dataclass
class SpatialRelationship:
    first: int               # Batch index
    second: int
    distance: float
    relationship: RelationshipType


@dataclass
class BallCluster:
    """A group of nearby detections (indices into the frame batch)."""
    cluster_id: int
    members: List[int]
    centroid: np.ndarray
    bounds_min: np.ndarray
    bounds_max: np.ndarray
    cluster_type: ClusterType
    confidence: float
    average_distance: float
    max_distance: float
    relationships: List[SpatialRelationship] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.members)

    def __repr__(self):
        return (f"BallCluster(id={self.cluster_id}, n={self.size}, "
                f"{self.cluster_type.value}, conf={self.confidence:.2f})")


@dataclass
class ClusteringResult:
    clusters: List[BallCluster] = field(default_factory=list)
    isolated: List[int] = field(default_factory=list)
    complexity: SceneComplexity = SceneComplexity.SIMPLE
    rejected: int = 0

    def cluster_of(self, index: int) -> Optional[BallCluster]:
        for cluster in self.clusters:
            if index in cluster.members:
                return cluster
        return None

    @property
    def overlapping_count(self) -> int:
        return sum(1 for c in self.clusters if c.cluster_type == ClusterType.OVERLAPPING)


@dataclass
class Representative:
    """Detection handed to association, standing for one or more batch entries."""
    detection: Detection
    members: Tuple[int, ...]
    cluster_id: Optional[int] = None

    @property
    def index(self) -> int:
        return self.members[0]


class ClusteringEngine:
    """Groups a frame's detections and resolves duplicate observations."""

    def __init__(self, config: Optional[ClusteringConfig] = None):
        self.config = config or ClusteringConfig()
        self.analyzer = SpatialAnalyzer(self.config)

    # ---- clustering ----

    def cluster(self, detections: Sequence[Detection],
                analysis: Optional[SpatialAnalysis] = None) -> ClusteringResult:
        """Partition ``detections`` into accepted clusters and isolated indices."""
        cfg = self.config
        if analysis is None:
            analysis = self.analyzer.analyze([d.position for d in detections])
        n = len(detections)
        result = ClusteringResult()
        visited = [False] * n

        for seed in range(n):
            if visited[seed]:
                continue
            group = self._expand(seed, analysis, visited)
            if not (cfg.min_cluster_size <= len(group) <= cfg.max_cluster_size):
                if len(group) > cfg.max_cluster_size:
                    logger.debug(f"Group of {len(group)} exceeds max cluster size, isolating")
                    result.rejected += 1
                result.isolated.extend(group)
                continue

            confidence = self._cluster_confidence(group, detections, analysis)
            if confidence < cfg.cluster_confidence_threshold:
                logger.debug(f"Group {group} rejected (confidence {confidence:.2f})")
                result.rejected += 1
                result.isolated.extend(group)
                continue

            result.clusters.append(self._build(len(result.clusters), group, detections,
                                               analysis, confidence))

        result.isolated.sort()
        result.complexity = self.scene_complexity(n, result.clusters)
        return result

    def _expand(self, seed: int, analysis: SpatialAnalysis, visited: List[bool]) -> List[int]:
        visited[seed] = True
        group = [seed]
        queue = [seed]
        while queue:
            current = queue.pop(0)
            for j in analysis.neighbours(current, self.config.max_cluster_distance):
                if not visited[j]:
                    visited[j] = True
                    group.append(j)
                    queue.append(j)
        return sorted(group)

    def density(self, members: Sequence[int], analysis: SpatialAnalysis) -> float:
        """Ball footprint over the padded planar bounding area, capped at 1."""
        if len(members) < 2:
            return 1.0
        radius = self.config.ball_diameter / 2
        lo, hi = analysis.planar_bounds(members, padding=radius)
        area = float((hi[0] - lo[0]) * (hi[1] - lo[1]))
        if area <= 0:
            return 1.0
        footprint = len(members) * math.pi * radius**2
        return min(1.0, footprint / area)

    def _cluster_confidence(self, members: Sequence[int], detections: Sequence[Detection],
                            analysis: SpatialAnalysis) -> float:
        cfg = self.config
        avg_conf = float(np.mean([detections[i].confidence for i in members]))
        return (cfg.detection_confidence_weight * avg_conf
                + cfg.coherence_weight * analysis.coherence(members)
                + cfg.density_weight * self.density(members, analysis))

    def classify(self, members: Sequence[int], analysis: SpatialAnalysis) -> ClusterType:
        cfg = self.config
        avg = analysis.average_distance(members)
        if avg < cfg.overlap_threshold:
            return ClusterType.OVERLAPPING
        if analysis.max_distance(members) < cfg.max_cluster_distance * cfg.tight_fraction:
            return ClusterType.TIGHT
        shape = analysis.arrangement(members)
        if shape == Arrangement.LINEAR:
            return ClusterType.LINEAR
        if shape == Arrangement.CIRCULAR:
            return ClusterType.CIRCULAR
        return ClusterType.LOOSE

    def relationship(self, distance: float) -> RelationshipType:
        cfg = self.config
        if distance < cfg.ball_diameter:
            return RelationshipType.TOUCHING
        if distance < cfg.overlap_threshold:
            return RelationshipType.OVERLAPPING
        if distance < cfg.max_cluster_distance * cfg.adjacent_fraction:
            return RelationshipType.ADJACENT
        return RelationshipType.SEPARATED

    def _build(self, cluster_id: int, members: List[int], detections: Sequence[Detection],
               analysis: SpatialAnalysis, confidence: float) -> BallCluster:
        radius = self.config.ball_diameter / 2
        lo, hi = analysis.planar_bounds(members, padding=radius)
        relationships = []
        for a_pos, a in enumerate(members):
            for b in members[a_pos + 1:]:
                d = analysis.distance(a, b)
                relationships.append(SpatialRelationship(a, b, d, self.relationship(d)))
        weights = [detections[i].confidence for i in members]
        return BallCluster(
            cluster_id=cluster_id,
            members=list(members),
            centroid=analysis.centroid(members, weights),
            bounds_min=lo,
            bounds_max=hi,
            cluster_type=self.classify(members, analysis),
            confidence=confidence,
            average_distance=analysis.average_distance(members),
            max_distance=analysis.max_distance(members),
            relationships=relationships,
        )

    @staticmethod
    def scene_complexity(n_detections: int, clusters: Sequence[BallCluster]) -> SceneComplexity:
        overlapping = sum(1 for c in clusters if c.cluster_type == ClusterType.OVERLAPPING)
        largest = max((c.size for c in clusters), default=0)
        if n_detections <= 3 and not clusters:
            return SceneComplexity.SIMPLE
        if n_detections <= 8 and overlapping <= 1 and largest <= 4:
            return SceneComplexity.MODERATE
        if overlapping > 2 or largest > 6:
            return SceneComplexity.CHAOTIC
        return SceneComplexity.COMPLEX

    # ---- overlap resolution ----

    def representatives(self, detections: Sequence[Detection], result: ClusteringResult,
                        analysis: SpatialAnalysis) -> List[Representative]:
        """Collapse duplicate observations inside accepted clusters.

        Within each cluster, members linked by distances below
        ``duplicate_distance_fraction × ball_diameter`` form one ball. The
        merged detection takes the confidence-weighted mean position, the
        highest confidence, and the tag of its most confident member.
        Isolated detections pass through unchanged. Output is ordered by
        lowest member index.
        """
        limit = self.config.duplicate_distance_fraction * self.config.ball_diameter
        reps: List[Representative] = [
            Representative(detections[i], (i,)) for i in result.isolated
        ]
        for cluster in result.clusters:
            for group in _link_components(cluster.members, analysis, limit):
                if len(group) == 1:
                    reps.append(Representative(detections[group[0]], tuple(group),
                                               cluster.cluster_id))
                    continue
                reps.append(Representative(_merge(detections, group, analysis),
                                           tuple(group), cluster.cluster_id))
                logger.debug(f"Merged duplicate detections {group} in cluster "
                             f"{cluster.cluster_id}")
        reps.sort(key=lambda r: r.index)
        return reps


def _link_components(members: Sequence[int], analysis: SpatialAnalysis,
                     limit: float) -> List[List[int]]:
    """Connected components of ``members`` under distance < limit."""
    remaining = list(members)
    components = []
    while remaining:
        stack = [remaining.pop(0)]
        component = []
        while stack:
            current = stack.pop()
            component.append(current)
            linked = [j for j in remaining if analysis.distance(current, j) < limit]
            for j in linked:
                remaining.remove(j)
            stack.extend(linked)
        components.append(sorted(component))
    return components


def _merge(detections: Sequence[Detection], group: Sequence[int],
           analysis: SpatialAnalysis) -> Detection:
    members = [detections[i] for i in group]
    weights = [max(d.confidence, 1e-6) for d in members]
    best = max(members, key=lambda d: d.confidence)
    tagged = [d for d in members if d.appearance_tag is not None]
    tag_source = max(tagged, key=lambda d: d.confidence) if tagged else best
    return best.replace(
        position=analysis.centroid(group, weights),
        appearance_tag=tag_source.appearance_tag,
        appearance_confidence=tag_source.appearance_confidence,
    )

