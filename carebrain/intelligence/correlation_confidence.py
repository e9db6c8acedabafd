"""
Evidence-Based Correlation Confidence.

Used when CONFIDENCE_MODE is "evidence"; the default "fixed" mode keeps
each rule's constant so historical events stay reproducible. Multi-factor
formula:

    confidence = (0.35 × component_completeness
                + 0.25 × evidence_strength
                + 0.20 × temporal_proximity
                + 0.20 × recurrence_factor)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from statistics import mean

from carebrain import clock

logger = logging.getLogger(__name__)

WEIGHTS = {
    "component_completeness": 0.35,
    "evidence_strength": 0.25,
    "temporal_proximity": 0.20,
    "recurrence_factor": 0.20,
}


@dataclass
class SignalEvidence:
    """One abnormal fact counted toward a rule."""

    fact_id: str
    signal_type: str
    signal_timestamp: datetime


@dataclass
class ConfidenceFactors:
    """Breakdown of confidence calculation for inspection."""

    component_completeness: float
    evidence_strength: float
    temporal_proximity: float
    recurrence_factor: float
    final_confidence: float

    def to_dict(self) -> dict:
        return {
            "component_completeness": round(self.component_completeness, 4),
            "evidence_strength": round(self.evidence_strength, 4),
            "temporal_proximity": round(self.temporal_proximity, 4),
            "recurrence_factor": round(self.recurrence_factor, 4),
            "final_confidence": round(self.final_confidence, 4),
        }


class CorrelationConfidenceCalculator:
    """Computes evidence-based confidence for a fired correlation rule."""

    def __init__(self, lookback_windows: int = 5):
        self.lookback_windows = lookback_windows

    def calculate(
        self,
        evidence: list[SignalEvidence],
        thresholds: dict[str, int],
        minimum_signals_count: int,
        window_hours: float,
        reference_time: datetime,
        prior_firings: int = 0,
    ) -> ConfidenceFactors:
        """
        Calculate confidence for one rule evaluation.

        Args:
            evidence: Abnormal facts counted for the rule.
            thresholds: Minimum abnormal count per required signal type.
            minimum_signals_count: Total abnormal facts the rule needs.
            window_hours: Length of the evaluated window.
            reference_time: End of the evaluated window.
            prior_firings: Events the same rule produced for the resident
                over the previous ``lookback_windows`` windows.

        Returns:
            ConfidenceFactors with final_confidence in [0.0, 1.0].
        """
        if not evidence:
            return ConfidenceFactors(0.0, 0.0, 0.0, 0.0, 0.0)

        comp = self._component_completeness(evidence, thresholds)
        strength = self._evidence_strength(evidence, minimum_signals_count)
        temp = self._temporal_proximity(evidence, reference_time, window_hours)
        rec = min(1.0, prior_firings / self.lookback_windows) if self.lookback_windows else 0.0

        final = (
            WEIGHTS["component_completeness"] * comp
            + WEIGHTS["evidence_strength"] * strength
            + WEIGHTS["temporal_proximity"] * temp
            + WEIGHTS["recurrence_factor"] * rec
        )
        return ConfidenceFactors(
            component_completeness=comp,
            evidence_strength=strength,
            temporal_proximity=temp,
            recurrence_factor=rec,
            final_confidence=round(min(1.0, max(0.0, final)), 4),
        )

    def _component_completeness(self, evidence: list[SignalEvidence], thresholds: dict[str, int]) -> float:
        """Mean over required types of how far each count reaches its threshold."""
        if not thresholds:
            return 1.0
        ratios = []
        for signal_type, minimum in thresholds.items():
            count = sum(1 for e in evidence if e.signal_type == signal_type)
            ratios.append(1.0 if minimum <= 0 else min(1.0, count / minimum))
        return mean(ratios)

    def _evidence_strength(self, evidence: list[SignalEvidence], minimum_signals_count: int) -> float:
        """Saturates at twice the rule's minimum signal count."""
        if minimum_signals_count <= 0:
            return 1.0
        return min(1.0, len(evidence) / (2 * minimum_signals_count))

    def _temporal_proximity(
        self,
        evidence: list[SignalEvidence],
        reference_time: datetime,
        window_hours: float,
    ) -> float:
        """
        1.0 for facts at the window end, decaying exponentially with age.

        Half-life = half the window.
        """
        half_life_hours = max(window_hours / 2, 1.0)
        proximities = []
        for item in evidence:
            hours_since = max(0.0, clock.hours_between(item.signal_timestamp, reference_time))
            proximities.append(2 ** (-hours_since / half_life_hours))
        return mean(proximities)
