"""
Control Adoption Engine - Computed Contracts

Plain dataclasses passed between the adoption services and the routers.
ORM rows never cross the service boundary for computed results.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .db_models import (
    EvidenceStatus, EvidenceType, FreshnessState, RecommendationType,
    RelationType, RiskLevel, RoleTrack,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# FRESHNESS
# =============================================================================

@dataclass
class EvidenceSignal:
    """The slice of an evidence record the freshness engine reads."""
    evidence_status: EvidenceStatus
    occurred_at: datetime  # timezone-aware UTC
    evidence_type: EvidenceType
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ControlFreshnessComputed:
    """Point-in-time health assessment for one control."""
    control_id: str
    state: FreshnessState
    score: int  # 0..100
    latest_evidence_at: Optional[datetime] = None
    last_policy_update_at: Optional[datetime] = None
    synced_count: int = 0
    stale_count: int = 0
    rejected_count: int = 0
    fresh_evidence_count: int = 0
    median_ack_hours: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "control_id": self.control_id,
            "state": self.state.value,
            "score": self.score,
            "latest_evidence_at": _iso(self.latest_evidence_at),
            "last_policy_update_at": _iso(self.last_policy_update_at),
            "synced_count": self.synced_count,
            "stale_count": self.stale_count,
            "rejected_count": self.rejected_count,
            "fresh_evidence_count": self.fresh_evidence_count,
            "median_ack_hours": self.median_ack_hours,
        }


@dataclass
class FreshnessSummary:
    total_controls: int
    fresh_controls: int
    fresh_coverage: float  # 0..1, rounded to 4 places
    stale_controls: int
    critical_controls: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_controls": self.total_controls,
            "fresh_controls": self.fresh_controls,
            "fresh_coverage": self.fresh_coverage,
            "stale_controls": self.stale_controls,
            "critical_controls": self.critical_controls,
        }


@dataclass
class ControlImpactForecast:
    """Projected freshness coverage if a campaign touching these controls is published."""
    total_mapped_controls: int
    fresh_controls: int
    stale_or_critical_controls: int
    projected_fresh_coverage: float
    risk: RiskLevel

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_mapped_controls": self.total_mapped_controls,
            "fresh_controls": self.fresh_controls,
            "stale_or_critical_controls": self.stale_or_critical_controls,
            "projected_fresh_coverage": self.projected_fresh_coverage,
            "risk": self.risk.value,
        }


@dataclass
class ControlRef:
    """Normalized control identity (never an ORM row, never a list)."""
    id: str
    code: str
    title: str
    risk_level: RiskLevel

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "risk_level": self.risk_level.value,
        }


@dataclass
class ControlFreshnessBundle:
    """Everything the freshness, recommendation and graph paths need for a set of controls."""
    controls: List[ControlRef] = field(default_factory=list)
    computed_by_control: Dict[str, ControlFreshnessComputed] = field(default_factory=dict)
    trend_by_control: Dict[str, List[float]] = field(default_factory=dict)
    campaign_ids_by_control: Dict[str, List[str]] = field(default_factory=dict)
    module_ids_by_control: Dict[str, List[str]] = field(default_factory=dict)
    compat_mode: bool = False


# =============================================================================
# BENCHMARKS
# =============================================================================

@dataclass
class BenchmarkComparison:
    cohort_code: str
    metric_name: str
    org_metric_value: Optional[float]
    cohort_metric_value: Optional[float]
    percentile_rank: Optional[float]
    delta: Optional[float]
    band: str
    snapshot_at: Optional[datetime] = None
    compat_mode: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cohort_code": self.cohort_code,
            "metric_name": self.metric_name,
            "org_metric_value": self.org_metric_value,
            "cohort_metric_value": self.cohort_metric_value,
            "percentile_rank": self.percentile_rank,
            "delta": self.delta,
            "band": self.band,
            "snapshot_at": _iso(self.snapshot_at),
            "compat_mode": self.compat_mode,
        }


# =============================================================================
# INTERVENTIONS
# =============================================================================

@dataclass
class RecommendationContext:
    """Input to the recommender for one control."""
    control_id: str
    control_code: str
    control_title: str
    risk_level: RiskLevel
    role_track: Optional[RoleTrack]
    freshness: ControlFreshnessComputed


@dataclass
class RecommendationProposal:
    recommendation_type: RecommendationType
    rationale: str
    expected_impact_pct: float
    confidence_score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# EVIDENCE + LINEAGE
# =============================================================================

@dataclass
class EvidenceCreateResult:
    created: int = 0
    control_ids: List[Optional[str]] = field(default_factory=list)
    evidence_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "control_ids": self.control_ids,
            "evidence_ids": self.evidence_ids,
        }


@dataclass
class LineageEdge:
    source_evidence_id: str
    target_evidence_id: str
    relation_type: RelationType
    created_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_evidence_id": self.source_evidence_id,
            "target_evidence_id": self.target_evidence_id,
            "relation_type": self.relation_type.value,
            "created_at": _iso(self.created_at),
            "metadata": self.metadata,
        }


@dataclass
class LineageMaps:
    """Forward (by_source) and backward (by_target) adjacency."""
    by_source: Dict[str, List[LineageEdge]] = field(default_factory=dict)
    by_target: Dict[str, List[LineageEdge]] = field(default_factory=dict)


# =============================================================================
# ADOPTION GRAPH
# =============================================================================

@dataclass
class GraphNode:
    id: str
    node_type: str
    label: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "node_type": self.node_type,
            "label": self.label,
            "metadata": self.metadata,
        }


@dataclass
class GraphEdge:
    id: str
    edge_type: str
    source: str
    target: str
    weight: float = 1.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "edge_type": self.edge_type,
            "source": self.source,
            "target": self.target,
            "weight": self.weight,
            "metadata": self.metadata,
        }


@dataclass
class AdoptionGraph:
    generated_at: datetime
    window_days: int
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)
    persisted_edges: List[Dict[str, Any]] = field(default_factory=list)
    filters: Dict[str, Any] = field(default_factory=dict)
    compat_mode: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "window_days": self.window_days,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "persisted_edges": self.persisted_edges,
            "filters": self.filters,
            "compat_mode": self.compat_mode,
        }
