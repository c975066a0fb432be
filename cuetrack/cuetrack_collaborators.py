"""
CueTrack Collaborator Interfaces
================================
Capabilities the tracker consumes but does not implement. Hosts inject
concrete implementations at construction; the tracker only talks to these
abstract interfaces.

  Detector               — frame → List[Detection]   (may raise DetectionFailed)
  AppearanceClassifier   — Detection → AppearanceResult (ball identity by colour)
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from .cuetrack_models import AppearanceResult, Detection


class Detector(ABC):
    """Produces a detection batch for one captured frame."""

    @abstractmethod
    def detect(self, frame: Any) -> List[Detection]:
        """Return the frame's detections. Raise DetectionFailed when unusable."""


class AppearanceClassifier(ABC):
    """Assigns a ball identity to a detection."""

    @abstractmethod
    def classify(self, detection: Detection) -> Optional[AppearanceResult]:
        """Return the identity result, or None when nothing can be said."""


# Standard pool set: cue ball plus 1–15
POOL_BALL_TAGS = frozenset(["cue"] + [str(n) for n in range(1, 16)])


class TagAppearanceClassifier(AppearanceClassifier):
    """Trusts the tag the detector already attached.

    The detector's appearance confidence (or, failing that, its detection
    confidence) becomes the classification confidence. Consistency across
    frames is judged by the confidence scorer from the track's own tag
    history, so it is left at 0 here.
    """

    def __init__(self, known_tags=POOL_BALL_TAGS):
        self.known_tags = frozenset(known_tags)

    def is_identified(self, tag: Optional[str]) -> bool:
        return tag is not None and tag in self.known_tags

    def classify(self, detection: Detection) -> Optional[AppearanceResult]:
        tag = detection.appearance_tag
        if tag is None:
            return None
        confidence = detection.appearance_confidence
        if confidence is None:
            confidence = detection.confidence
        return AppearanceResult(tag=tag, confidence=float(confidence),
                                identified=self.is_identified(tag))
