"""
CueTrack Association Engine
===========================
Scores every (track, detection) pair and picks a one-to-one assignment.

    score = w_pos·position + w_size·size + w_color·color + w_time·recency

  position  linear falloff 1 − d/radius, hard gate at d > radius
  size      1 − |log(size ratio)|, neutral when either extent is missing
  color     same tag / unknown / different
  recency   1 − (time since last hit) / max_time_interval

Non-lost tracks are scored at their predicted position for the frame; lost
tracks at their last estimate, with a widened gate.

The score ranks candidate pairs. Whether a pair is admissible at all is
decided by the gate and by its acceptance score: the same weighted sum with
full position credit, compared against min_association_confidence. Any
detection inside the gate with plausible size, colour and recency can
therefore be matched, however close it sits to the gate edge.

Assignment sits behind ``AssignmentSolver``:
  GREEDY   (default) — sort pairs by score, accept unclaimed pairs.
           O(n·m·log(n·m)); a documented approximation of the optimum.
  OPTIMAL  — Hungarian algorithm via scipy.optimize.linear_sum_assignment.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import linear_sum_assignment

from .cuetrack_config import AssociationConfig
from .cuetrack_models import (
    AppearanceResult, Association, MatchType, TrackStatus,
)

logger = logging.getLogger(__name__)

# (row, col, score) triples
Assignment = List[Tuple[int, int, float]]
AssignmentSolver = Callable[[np.ndarray, float, Sequence[int]], Assignment]


class AssignmentMethod(Enum):
    GREEDY = "greedy"
    OPTIMAL = "optimal"


# ===== SOLVERS =====

def greedy_assign(scores: np.ndarray, min_score: float,
                  track_ids: Sequence[int]) -> Assignment:
    """Greedy best-first assignment.

    Pairs are taken in order of descending score; ties go to the lower
    track id, then the lower detection index. Pairs below ``min_score`` or
    marked NaN (gated out) are never accepted.

    Args:
        scores: (n_tracks, n_detections) score matrix, NaN = gated
        min_score: Minimum acceptable score
        track_ids: Track id per row, used for tie-breaking

    Returns:
        List of (row, col, score)
    """
    if scores.size == 0:
        return []
    rows, cols = np.nonzero(np.nan_to_num(scores, nan=-1.0) >= min_score)
    candidates = sorted(
        zip(rows.tolist(), cols.tolist()),
        key=lambda rc: (-scores[rc[0], rc[1]], track_ids[rc[0]], rc[1]),
    )
    used_rows, used_cols = set(), set()
    result = []
    for r, c in candidates:
        if r in used_rows or c in used_cols:
            continue
        used_rows.add(r)
        used_cols.add(c)
        result.append((r, c, float(scores[r, c])))
    return result


def optimal_assign(scores: np.ndarray, min_score: float,
                   track_ids: Sequence[int]) -> Assignment:
    """Maximum total-score assignment (Hungarian) over admissible pairs."""
    if scores.size == 0:
        return []
    admissible = np.nan_to_num(scores, nan=-1.0) >= min_score
    if not admissible.any():
        return []
    # Inadmissible pairs get zero profit and are filtered afterwards
    profit = np.where(admissible, scores, 0.0)
    row_ind, col_ind = linear_sum_assignment(profit, maximize=True)
    result = [(int(r), int(c), float(scores[r, c]))
              for r, c in zip(row_ind, col_ind) if admissible[r, c]]
    result.sort(key=lambda rcs: (-rcs[2], track_ids[rcs[0]], rcs[1]))
    return result


_SOLVERS = {
    AssignmentMethod.GREEDY: greedy_assign,
    AssignmentMethod.OPTIMAL: optimal_assign,
}


# ===== ENGINE =====

class AssociationEngine:
    """Builds the score matrix and classifies accepted matches."""

    def __init__(self, config: Optional[AssociationConfig] = None,
                 solver: Optional[AssignmentSolver] = None):
        self.config = config or AssociationConfig()
        self.solver = solver or _SOLVERS[AssignmentMethod(self.config.method)]

    def gate_radius(self, track) -> float:
        radius = self.config.max_movement_distance
        if track.status in (TrackStatus.PREDICTED, TrackStatus.LOST):
            radius *= self.config.search_region_expansion
        return radius

    def appearance_agreement(self, track_tag: Optional[str],
                             appearance: Optional[AppearanceResult]) -> float:
        cfg = self.config
        tag = appearance.tag if appearance is not None else None
        if tag is None or track_tag is None:
            return cfg.unknown_appearance_score
        if tag == track_tag:
            return cfg.same_appearance_score
        return cfg.mismatched_appearance_score

    def size_agreement(self, track, size: Optional[float]) -> float:
        last = track.last_detection
        if size is None or last is None or not last.size or size <= 0:
            return self.config.missing_size_score
        return max(0.0, 1.0 - abs(np.log(size / last.size)))

    def recency(self, track, timestamp: float) -> float:
        gap = max(0.0, timestamp - track.last_hit_at)
        return max(0.0, 1.0 - gap / self.config.max_time_interval)

    def pair_terms(self, track, detection, appearance: Optional[AppearanceResult],
                   timestamp: float) -> Optional[Tuple[float, float, float, float]]:
        """Weighted (position, size, color, recency) terms, or None if gated out."""
        cfg = self.config
        pos = detection.position
        est = track.position
        n = min(len(pos), len(est))
        d = float(np.linalg.norm(pos[:n] - est[:n]))
        radius = self.gate_radius(track)
        if d > radius:
            return None
        return (cfg.position_weight * (1.0 - d / radius),
                cfg.size_weight * self.size_agreement(track, detection.size),
                cfg.color_weight * self.appearance_agreement(track.appearance_tag, appearance),
                cfg.recency_weight * self.recency(track, timestamp))

    def acceptance(self, terms: Tuple[float, float, float, float]) -> float:
        """Weighted score of an in-gate pair with full position credit."""
        return self.config.position_weight + sum(terms[1:])

    def score_matrix(self, tracks: Sequence, detections: Sequence,
                     appearances: Sequence[Optional[AppearanceResult]],
                     timestamp: float) -> Tuple[np.ndarray, np.ndarray]:
        """Returns (scores, color_dominant); inadmissible pairs are NaN in ``scores``."""
        n, m = len(tracks), len(detections)
        scores = np.full((n, m), np.nan)
        color_dominant = np.zeros((n, m), dtype=bool)
        for i, track in enumerate(tracks):
            for j, det in enumerate(detections):
                terms = self.pair_terms(track, det, appearances[j], timestamp)
                if terms is None:
                    continue
                if self.acceptance(terms) < self.config.min_association_confidence:
                    continue
                scores[i, j] = sum(terms)
                color_dominant[i, j] = terms[2] > terms[0]
        return scores, color_dominant

    def classify(self, status: TrackStatus, score: float, color_dominant: bool) -> MatchType:
        if status == TrackStatus.LOST:
            return MatchType.RECOVERED
        if status == TrackStatus.PREDICTED:
            return MatchType.PREDICTED
        if not color_dominant and score >= self.config.direct_match_threshold:
            return MatchType.DIRECT
        return MatchType.APPEARANCE

    def associate(self, tracks: Sequence, representatives: Sequence,
                  appearances: Sequence[Optional[AppearanceResult]],
                  timestamp: float) -> Tuple[List[Association], List[int], List[int]]:
        """Match tracks to representatives.

        Args:
            tracks: Candidate tracks (already predicted to ``timestamp``)
            representatives: Objects with ``detection``, ``members``,
                ``cluster_id`` and ``index`` (see ClusteringEngine.representatives)
            appearances: Classifier output per representative
            timestamp: Frame time

        Returns:
            (associations, unassigned_track_rows, unassigned_rep_columns)
        """
        if not tracks or not representatives:
            return [], list(range(len(tracks))), list(range(len(representatives)))

        detections = [r.detection for r in representatives]
        scores, color_dominant = self.score_matrix(tracks, detections, appearances, timestamp)
        track_ids = [t.track_id for t in tracks]
        # Admissibility is already encoded as NaN; any finite score may be taken
        pairs = self.solver(scores, 0.0, track_ids)

        associations = []
        for row, col, score in pairs:
            track = tracks[row]
            rep = representatives[col]
            associations.append(Association(
                track_id=track.track_id,
                detection_index=rep.index,
                score=score,
                match_type=self.classify(track.status, score, bool(color_dominant[row, col])),
                member_indices=tuple(rep.members),
                cluster_id=rep.cluster_id,
            ))

        matched_rows = {r for r, _, _ in pairs}
        matched_cols = {c for _, c, _ in pairs}
        unassigned_tracks = [i for i in range(len(tracks)) if i not in matched_rows]
        unassigned_reps = [j for j in range(len(representatives)) if j not in matched_cols]
        logger.debug(f"Associated {len(associations)} of {len(tracks)} tracks / "
                     f"{len(representatives)} detections")
        return associations, unassigned_tracks, unassigned_reps
