"""Control Adoption Engine - Data Models"""
from .adoption import (
    EvidenceSignal, ControlFreshnessComputed, FreshnessSummary, ControlImpactForecast,
    ControlRef, ControlFreshnessBundle,
    BenchmarkComparison,
    RecommendationContext, RecommendationProposal,
    EvidenceCreateResult, LineageEdge, LineageMaps,
    GraphNode, GraphEdge, AdoptionGraph,
)

__all__ = [
    "EvidenceSignal", "ControlFreshnessComputed", "FreshnessSummary", "ControlImpactForecast",
    "ControlRef", "ControlFreshnessBundle",
    "BenchmarkComparison",
    "RecommendationContext", "RecommendationProposal",
    "EvidenceCreateResult", "LineageEdge", "LineageMaps",
    "GraphNode", "GraphEdge", "AdoptionGraph",
]
