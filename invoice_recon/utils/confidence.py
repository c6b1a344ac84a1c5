"""
Confidence scoring utilities.
Methods to calculate and combine confidence scores.

Match scores live on a 0-1 scale; OCR and final confidences on 0-100.
"""

from typing import List, Tuple

from invoice_recon.utils.logging import setup_logging


logger = setup_logging(__name__)


def combine_confidence_scores(scores: List[float], weights: List[float] = None) -> float:
    """
    Weighted mean of confidence scores.

    Args:
        scores: List of confidence scores (0-1); out-of-range values are clamped
        weights: Optional weights, normalized to sum to 1; equal when omitted

    Returns:
        Combined confidence score (0-1)
    """
    if not scores:
        return 0.0

    validated_scores = []
    for i, score in enumerate(scores):
        if score < 0.0 or score > 1.0:
            logger.warning(f"Confidence score {i} out of range: {score}. Clamping to [0,1]")
        validated_scores.append(max(0.0, min(1.0, score)))

    if weights is None:
        weights = [1.0] * len(validated_scores)
    if len(weights) != len(validated_scores):
        raise ValueError(f"Weights length ({len(weights)}) must match scores length ({len(scores)})")
    weights = [w / sum(weights) for w in weights]  # Normalize weights
    return sum(s * w for s, w in zip(validated_scores, weights))


def percent_to_unit(value: float) -> float:
    """Convert a 0-100 confidence to the 0-1 scale, clamped."""
    return max(0.0, min(1.0, float(value) / 100.0))


def unit_to_percent(value: float, digits: int = 2) -> float:
    """Convert a 0-1 confidence to the 0-100 scale, clamped and rounded."""
    return round(max(0.0, min(100.0, float(value) * 100.0)), digits)


def confidence_level_name(confidence: float) -> str:
    """Convert confidence score (0-1) to readable level name."""
    if confidence >= 0.95:
        return "VERY_HIGH"
    elif confidence >= 0.85:
        return "HIGH"
    elif confidence >= 0.70:
        return "ACCEPTABLE"
    elif confidence >= 0.50:
        return "LOW"
    else:
        return "VERY_LOW"


def interpret_confidence(confidence: float) -> Tuple[str, str]:
    """
    Get human-readable interpretation of confidence score.

    Returns:
        (level_name, description)
    """
    levels = {
        "VERY_HIGH": "Very high confidence in this reconciliation",
        "HIGH": "High confidence in this reconciliation",
        "ACCEPTABLE": "Acceptable confidence, queued for review",
        "LOW": "Low confidence, manual review required",
        "VERY_LOW": "Very low confidence, manual reconciliation required",
    }

    level = confidence_level_name(confidence)
    return level, levels.get(level, "Unknown confidence level")
