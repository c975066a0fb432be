"""CueTrack v1.0.0: Multi-ball tracker for billiard tables.

Kalman-filtered ball tracks with weighted association, cluster-aware
overlap resolution and five-factor confidence scoring.

Quick Start::

    from cuetrack import MultiBallTracker, TrackerConfig, Detection
    tracker = MultiBallTracker(TrackerConfig.preset("pool"))
    for frame in frames:
        tracks = tracker.update(frame.detections, frame.timestamp)
"""

__version__ = "1.0.0"
__license__ = "AGPL-3.0-or-later"

# ---------------------------------------------------------------------------
# Primary API
# ---------------------------------------------------------------------------
from .cuetrack_mtt import MultiBallTracker

# ---------------------------------------------------------------------------
# Configuration & errors
# ---------------------------------------------------------------------------
from .cuetrack_config import (
    TrackerConfig,
    KalmanConfig,
    AssociationConfig,
    ClusteringConfig,
    LifecycleConfig,
    ConfidenceConfig,
    load_config,
    CueTrackError,
    ConfigurationError,
)

# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------
from .cuetrack_models import (
    Detection,
    TrackSnapshot,
    TrackStatus,
    Association,
    MatchType,
    TrackStatistics,
    TrajectoryPoint,
    FrameReport,
    EnvironmentConditions,
    Lighting,
    ImageQuality,
    MotionBlur,
    AppearanceResult,
    SceneContext,
    TrackNotFoundError,
    AssociationContractError,
    DetectionFailed,
)

# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------
from .cuetrack_kalman import ConstantVelocityKalman, make_cv_matrices
from .cuetrack_tracks import (
    Track,
    TrackStore,
    LifecycleManager,
    assess_track_quality,
    TrackQualityReport,
)
from .cuetrack_spatial import SpatialAnalyzer, SpatialAnalysis, Arrangement
from .cuetrack_cluster import (
    ClusteringEngine,
    ClusteringResult,
    BallCluster,
    ClusterType,
    RelationshipType,
    SceneComplexity,
)
from .cuetrack_association import (
    AssociationEngine,
    AssignmentMethod,
    greedy_assign,
    optimal_assign,
)
from .cuetrack_confidence import ConfidenceScorer, ConfidenceBreakdown
from .cuetrack_collaborators import Detector, AppearanceClassifier, TagAppearanceClassifier

# ---------------------------------------------------------------------------
# Synthetic data
# ---------------------------------------------------------------------------
from .cuetrack_datasets import SyntheticTableGenerator, MockDetector, TableFrame

__all__ = [
    "MultiBallTracker",
    # Config
    "TrackerConfig", "KalmanConfig", "AssociationConfig", "ClusteringConfig",
    "LifecycleConfig", "ConfidenceConfig", "load_config",
    # Errors
    "CueTrackError", "ConfigurationError", "TrackNotFoundError",
    "AssociationContractError", "DetectionFailed",
    # Model
    "Detection", "TrackSnapshot", "TrackStatus", "Association", "MatchType",
    "TrackStatistics", "TrajectoryPoint", "FrameReport",
    "EnvironmentConditions", "Lighting", "ImageQuality", "MotionBlur",
    "AppearanceResult", "SceneContext",
    # Components
    "ConstantVelocityKalman", "make_cv_matrices",
    "Track", "TrackStore", "LifecycleManager", "assess_track_quality", "TrackQualityReport",
    "SpatialAnalyzer", "SpatialAnalysis", "Arrangement",
    "ClusteringEngine", "ClusteringResult", "BallCluster", "ClusterType",
    "RelationshipType", "SceneComplexity",
    "AssociationEngine", "AssignmentMethod", "greedy_assign", "optimal_assign",
    "ConfidenceScorer", "ConfidenceBreakdown",
    "Detector", "AppearanceClassifier", "TagAppearanceClassifier",
    # Data
    "SyntheticTableGenerator", "MockDetector", "TableFrame",
]
