"""
Trust Classifier

Pure score -> TrustLevel mapping over half-open ranges:

    [0.0, 0.2) Unknown
    [0.2, 0.4) Low
    [0.4, 0.6) Medium
    [0.6, 0.8) High
    [0.8, 1.0] Trusted
"""

import math

from .models import TrustLevel


def classify(score: float) -> TrustLevel:
    """Map a score to its trust tier. Out-of-range scores are clamped."""
    if math.isnan(score):
        return TrustLevel.UNKNOWN
    score = max(0.0, min(1.0, score))

    if score >= 0.8:
        return TrustLevel.TRUSTED
    elif score >= 0.6:
        return TrustLevel.HIGH
    elif score >= 0.4:
        return TrustLevel.MEDIUM
    elif score >= 0.2:
        return TrustLevel.LOW
    else:
        return TrustLevel.UNKNOWN


class TrustClassifier:
    """Stateless wrapper so the classifier can be injected like other components."""

    def classify(self, score: float) -> TrustLevel:
        return classify(score)

    def meets(self, score: float, minimum: TrustLevel) -> bool:
        """True if `score` classifies at `minimum` tier or above."""
        return classify(score) >= minimum
