"""
CareBrain intelligence layer.

- Signal normalization (signals)
- Correlation rules and compound events (rules, correlation_engine, persistence)
- Evidence-based confidence (correlation_confidence)
- Risk trajectory projection (trajectory)
- Computation log (audit_trail)

Usage:
    from carebrain.intelligence import CorrelationEngine, TrajectoryProjector

    events = CorrelationEngine(db_path).evaluate("res-1")
    projection = TrajectoryProjector(db_path).project("res-1", "VITAL_INSTABILITY")
"""

from .correlation_engine import AgencyEvaluation, CorrelationEngine
from .persistence import CompoundEvent, CompoundEventStore, SignalContribution
from .rules import CorrelationRule, RuleCatalog, Severity
from .signals import AbnormalityFlag, AbnormalityPolicy, SignalFact, SignalFactStore, SignalType, normalize
from .trajectory import DataSufficiency, Projection, ProjectionRuleStore, RuleSet, TrajectoryProjector

__all__ = [
    "AbnormalityFlag",
    "AbnormalityPolicy",
    "AgencyEvaluation",
    "CompoundEvent",
    "CompoundEventStore",
    "CorrelationEngine",
    "CorrelationRule",
    "DataSufficiency",
    "Projection",
    "ProjectionRuleStore",
    "RuleCatalog",
    "RuleSet",
    "Severity",
    "SignalContribution",
    "SignalFact",
    "SignalFactStore",
    "SignalType",
    "TrajectoryProjector",
    "normalize",
]
