"""
Distance engine for comparing face descriptors.

Descriptors are compared with the Euclidean distance; two descriptors are
considered the same identity when their distance is strictly below the
threshold. The confidence score is a display heuristic derived from the
distance and plays no part in the decision.
"""

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np

from faceauth.errors import DimensionMismatchError

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.55
DEFAULT_CONFIDENCE_SCALE = 0.8


class MatchDecision(str, Enum):
    MATCH = "match"
    NO_MATCH = "no_match"


@dataclass(frozen=True)
class Comparison:
    """Distance, decision and confidence for one descriptor pair."""

    distance: float
    decision: MatchDecision
    confidence: float

    @property
    def is_match(self) -> bool:
        return self.decision is MatchDecision.MATCH


def distance(a, b) -> float:
    """
    Compute the Euclidean distance between two descriptors.

    Args:
        a: First descriptor
        b: Second descriptor

    Returns:
        float: Non-negative distance

    Raises:
        DimensionMismatchError: If the descriptors have different lengths
    """
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()

    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(
            f"Descriptor dimensions don't match: {a.shape[0]} vs {b.shape[0]}"
        )

    return float(np.linalg.norm(a - b))


def decide(dist: float, threshold: float = DEFAULT_THRESHOLD) -> MatchDecision:
    """Match iff the distance is strictly below the threshold."""
    return MatchDecision.MATCH if dist < threshold else MatchDecision.NO_MATCH


def confidence_score(dist: float, scale: float = DEFAULT_CONFIDENCE_SCALE) -> float:
    """
    Map a distance to a 0-100 confidence for display.

    Args:
        dist: Descriptor distance
        scale: Distance at which confidence reaches 0

    Returns:
        float: (1 - dist/scale) * 100 clamped to [0, 100]
    """
    if scale <= 0.0:
        raise ValueError(f"Confidence scale must be positive, got: {scale}")
    return float(min(100.0, max(0.0, (1.0 - dist / scale) * 100.0)))


def compare(a, b, threshold: float = DEFAULT_THRESHOLD, scale: float = DEFAULT_CONFIDENCE_SCALE) -> Comparison:
    """Compute distance, decision and confidence for a descriptor pair."""
    dist = distance(a, b)
    comparison = Comparison(
        distance=dist,
        decision=decide(dist, threshold),
        confidence=confidence_score(dist, scale),
    )
    logger.debug(
        f"Descriptor comparison: distance={dist:.4f}, threshold={threshold}, decision={comparison.decision.value}"
    )
    return comparison


def validate_descriptor(descriptor) -> bool:
    """
    Check that a descriptor is a non-empty, finite 1-D vector.

    Returns:
        bool: True if the descriptor is usable, False otherwise
    """
    try:
        arr = np.asarray(descriptor, dtype=np.float64)
    except (TypeError, ValueError):
        return False

    if arr.ndim != 1 or arr.shape[0] == 0:
        return False

    return bool(np.isfinite(arr).all())
