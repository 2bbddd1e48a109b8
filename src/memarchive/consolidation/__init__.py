"""Consolidation components."""

from memarchive.consolidation.engine import ConsolidationEngine, ConsolidationReport
from memarchive.consolidation.plasticity import Plasticity, PlasticityResult, WriteDecision

__all__ = ["ConsolidationEngine", "ConsolidationReport", "Plasticity", "PlasticityResult", "WriteDecision"]
