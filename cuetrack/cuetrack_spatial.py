"""
CueTrack Spatial Analyzer
=========================
Pairwise geometry over one frame's detections.

The full distance matrix is computed once per frame with
``scipy.spatial.distance.cdist`` and every query reads from it.
"""

from enum import Enum
from typing import List, Optional, Sequence

import numpy as np
from scipy.spatial.distance import cdist

from .cuetrack_config import ClusteringConfig


class Arrangement(Enum):
    LINEAR = "linear"
    CIRCULAR = "circular"
    UNKNOWN = "unknown"


class SpatialAnalysis:
    """Distance matrix and derived measures for a set of positions."""

    def __init__(self, positions, config: Optional[ClusteringConfig] = None):
        self.config = config or ClusteringConfig()
        positions = np.asarray(positions, dtype=float)
        if positions.size == 0:
            positions = positions.reshape(0, 3)
        self.positions = positions
        self.distances = (cdist(positions, positions)
                          if len(positions) else np.zeros((0, 0)))

    def __len__(self):
        return len(self.positions)

    def distance(self, a: int, b: int) -> float:
        return float(self.distances[a, b])

    def _pairwise(self, indices: Sequence[int]) -> np.ndarray:
        idx = list(indices)
        if len(idx) < 2:
            return np.zeros(0)
        sub = self.distances[np.ix_(idx, idx)]
        return sub[np.triu_indices(len(idx), k=1)]

    def average_distance(self, indices: Sequence[int]) -> float:
        """Mean pairwise distance; 0 for fewer than two members."""
        pairs = self._pairwise(indices)
        return float(pairs.mean()) if len(pairs) else 0.0

    def max_distance(self, indices: Sequence[int]) -> float:
        pairs = self._pairwise(indices)
        return float(pairs.max()) if len(pairs) else 0.0

    def coherence(self, indices: Sequence[int]) -> float:
        """1 for a single ball, falling linearly to 0 at ``coherence_scale``."""
        if len(indices) < 2:
            return 1.0
        return max(0.0, 1.0 - self.average_distance(indices) / self.config.coherence_scale)

    def neighbours(self, index: int, radius: float) -> List[int]:
        """Indices within ``radius`` of ``index`` (excluding itself), nearest first."""
        row = self.distances[index]
        hits = [j for j in np.argsort(row, kind="stable")
                if j != index and row[j] <= radius]
        return [int(j) for j in hits]

    def centroid(self, indices: Sequence[int], weights: Optional[Sequence[float]] = None
                 ) -> np.ndarray:
        pts = self.positions[list(indices)]
        if weights is not None and float(np.sum(weights)) > 0:
            return np.average(pts, axis=0, weights=np.asarray(weights, dtype=float))
        return pts.mean(axis=0)

    def arrangement(self, indices: Sequence[int]) -> Arrangement:
        """Best-effort shape classification.

        LINEAR: the minor principal axis is small relative to the major one.
        CIRCULAR: four or more points at a near-constant radius around their
        centroid (a ring, e.g. balls around a pocket).
        """
        idx = list(indices)
        if len(idx) < 3:
            return Arrangement.UNKNOWN
        pts = self.positions[idx]
        centered = pts - pts.mean(axis=0)
        singular = np.linalg.svd(centered, compute_uv=False)
        if singular[0] <= 1e-12:
            return Arrangement.UNKNOWN
        if singular[1] / singular[0] < self.config.linearity_tolerance:
            return Arrangement.LINEAR
        if len(idx) >= 4:
            radii = np.linalg.norm(centered, axis=1)
            mean_r = radii.mean()
            if mean_r > 1e-9 and radii.std() / mean_r < self.config.circularity_tolerance:
                return Arrangement.CIRCULAR
        return Arrangement.UNKNOWN

    def planar_bounds(self, indices: Sequence[int], padding: float = 0.0):
        """Axis-aligned (min, max) corners over the members, padded on every side."""
        pts = self.positions[list(indices)]
        return pts.min(axis=0) - padding, pts.max(axis=0) + padding


class SpatialAnalyzer:
    """Factory for per-frame ``SpatialAnalysis`` objects."""

    def __init__(self, config: Optional[ClusteringConfig] = None):
        self.config = config or ClusteringConfig()

    def analyze(self, positions) -> SpatialAnalysis:
        return SpatialAnalysis(positions, self.config)
