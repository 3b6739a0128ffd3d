"""
Adoption Graph Builder

Read-only snapshot of obligation -> control -> campaign/module -> outcome ->
freshness relationships, for visualization and reporting.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ...models.adoption import AdoptionGraph, GraphEdge, GraphNode
from ...models.db_models import (
    AdoptionEdgeDB, EvidenceObjectDB, EvidenceStatus, FreshnessState, LearningCampaignDB,
    LearningModuleDB, MappingStrength, PolicyObligationDB, RoleTrack, as_utc, utc_now,
)
from .adoption_store import AdoptionRepository
from .capabilities import ADOPTION_EDGES

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30
PERSISTED_EDGE_LIMIT = 500

# (primary weight, supporting weight)
EDGE_WEIGHTS = {
    "obligation_control": (1.0, 0.7),
    "control_campaign": (1.0, 0.75),
    "control_module": (1.0, 0.8),
}


def _weight(edge_type: str, strength: MappingStrength) -> float:
    primary, supporting = EDGE_WEIGHTS[edge_type]
    return primary if strength == MappingStrength.PRIMARY else supporting


def _empty_outcome() -> Dict[str, int]:
    return {"total": 0, "stale": 0, "rejected": 0, "synced": 0}


class AdoptionGraphBuilder:
    """Assemble the adoption graph for an org."""

    def __init__(self, db: Session, repository: Optional[AdoptionRepository] = None):
        self.db = db
        self.repository = repository or AdoptionRepository(db)

    def build(
        self,
        org_id: str,
        control_id: Optional[str] = None,
        role_track: Optional[RoleTrack] = None,
        window_days: int = DEFAULT_WINDOW_DAYS,
        now: Optional[datetime] = None,
    ) -> AdoptionGraph:
        """
        Build nodes and edges for the org's controls.

        Args:
            org_id: Organization scope
            control_id: Restrict to one control
            role_track: Only include obligations/modules of this track
            window_days: Evidence window for outcome counts
            now: Reference time

        Returns:
            AdoptionGraph
        """
        now = as_utc(now) if now else utc_now()
        bundle = self.repository.load_control_freshness(org_id, [control_id] if control_id else None, now=now)
        control_ids = [c.id for c in bundle.controls]
        mappings = self.repository.active_mappings_for_controls(org_id, control_ids)

        obligation_ids = sorted({m.obligation_id for m in mappings if m.obligation_id})
        campaign_ids = sorted({m.campaign_id for m in mappings if m.campaign_id})
        module_ids = sorted({m.module_id for m in mappings if m.module_id})

        obligations = self._by_ids(PolicyObligationDB, org_id, obligation_ids)
        campaigns = self._by_ids(LearningCampaignDB, org_id, campaign_ids)
        modules = self._by_ids(LearningModuleDB, org_id, module_ids)
        if role_track is not None:
            obligations = [o for o in obligations if o.role_track == role_track]
            modules = [m for m in modules if m.role_track == role_track]

        outcomes: Dict[str, Dict[str, int]] = {cid: _empty_outcome() for cid in control_ids}
        if control_ids:
            since = now - timedelta(days=window_days)
            rows = (
                self.db.query(EvidenceObjectDB.control_id, EvidenceObjectDB.evidence_status)
                .filter(
                    EvidenceObjectDB.org_id == org_id,
                    EvidenceObjectDB.control_id.in_(control_ids),
                    EvidenceObjectDB.occurred_at >= since,
                )
                .all()
            )
            for cid, status in rows:
                counts = outcomes[cid]
                counts["total"] += 1
                if status == EvidenceStatus.STALE:
                    counts["stale"] += 1
                elif status == EvidenceStatus.REJECTED:
                    counts["rejected"] += 1
                elif status == EvidenceStatus.SYNCED:
                    counts["synced"] += 1

        graph = AdoptionGraph(
            generated_at=now,
            window_days=window_days,
            filters={"control_id": control_id, "role_track": role_track.value if role_track else None},
            compat_mode=bundle.compat_mode,
        )

        # Nodes
        for o in obligations:
            graph.nodes.append(GraphNode(
                id=f"obligation:{o.id}", node_type="obligation", label=o.title,
                metadata={"detail": o.detail, "role_track": o.role_track.value},
            ))
        for c in bundle.controls:
            graph.nodes.append(GraphNode(
                id=f"control:{c.id}", node_type="control", label=c.code,
                metadata={"title": c.title, "risk_level": c.risk_level.value},
            ))
        for c in campaigns:
            graph.nodes.append(GraphNode(
                id=f"campaign:{c.id}", node_type="campaign", label=c.name,
                metadata={"status": c.status.value},
            ))
        for m in modules:
            graph.nodes.append(GraphNode(
                id=f"module:{m.id}", node_type="module", label=m.title,
                metadata={"role_track": m.role_track.value if m.role_track else None},
            ))
        for c in bundle.controls:
            graph.nodes.append(GraphNode(
                id=f"outcome:{c.id}", node_type="outcome", label=c.code,
                metadata={"control_id": c.id, **outcomes[c.id]},
            ))
            freshness = bundle.computed_by_control.get(c.id)
            graph.nodes.append(GraphNode(
                id=f"freshness:{c.id}", node_type="freshness", label=c.code,
                metadata={
                    "control_id": c.id,
                    "state": freshness.state.value if freshness else FreshnessState.CRITICAL.value,
                    "score": freshness.score if freshness else 0,
                    "latest_evidence_at": (
                        freshness.latest_evidence_at.isoformat()
                        if freshness and freshness.latest_evidence_at else None
                    ),
                },
            ))

        # Edges; mappings to filtered-out obligations or modules have no endpoint node
        kept_obligations = {o.id for o in obligations}
        kept_modules = {m.id for m in modules}
        for m in mappings:
            if m.obligation_id in kept_obligations:
                graph.edges.append(GraphEdge(
                    id=f"edge-obligation-{m.id}", edge_type="obligation_control",
                    source=f"obligation:{m.obligation_id}", target=f"control:{m.control_id}",
                    weight=_weight("obligation_control", m.mapping_strength),
                    metadata={"mapping_strength": m.mapping_strength.value},
                ))
            if m.campaign_id:
                graph.edges.append(GraphEdge(
                    id=f"edge-campaign-{m.id}", edge_type="control_campaign",
                    source=f"control:{m.control_id}", target=f"campaign:{m.campaign_id}",
                    weight=_weight("control_campaign", m.mapping_strength),
                ))
            if m.module_id in kept_modules:
                graph.edges.append(GraphEdge(
                    id=f"edge-module-{m.id}", edge_type="control_module",
                    source=f"control:{m.control_id}", target=f"module:{m.module_id}",
                    weight=_weight("control_module", m.mapping_strength),
                ))
        for c in bundle.controls:
            freshness = bundle.computed_by_control.get(c.id)
            graph.edges.append(GraphEdge(
                id=f"edge-outcome-{c.id}", edge_type="control_outcome",
                source=f"control:{c.id}", target=f"outcome:{c.id}",
                weight=1.0, metadata=dict(outcomes[c.id]),
            ))
            graph.edges.append(GraphEdge(
                id=f"edge-freshness-{c.id}", edge_type="control_freshness",
                source=f"control:{c.id}", target=f"freshness:{c.id}",
                weight=1.0,
                metadata={
                    "state": freshness.state.value if freshness else FreshnessState.CRITICAL.value,
                    "score": freshness.score if freshness else 0,
                },
            ))

        if self.repository.capabilities.has(ADOPTION_EDGES):
            graph.persisted_edges = self._persisted_edges(org_id)

        logger.info(
            f"Adoption graph for org {org_id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges"
        )
        return graph

    def _by_ids(self, model, org_id: str, ids: List[str]) -> list:
        if not ids:
            return []
        return self.db.query(model).filter(model.org_id == org_id, model.id.in_(ids)).all()

    def _persisted_edges(self, org_id: str) -> List[Dict]:
        rows = (
            self.db.query(AdoptionEdgeDB)
            .filter(AdoptionEdgeDB.org_id == org_id)
            .order_by(AdoptionEdgeDB.created_at.desc())
            .limit(PERSISTED_EDGE_LIMIT)
            .all()
        )
        return [
            {
                "id": row.id,
                "edge_type": row.edge_type,
                "obligation_id": row.obligation_id,
                "control_id": row.control_id,
                "campaign_id": row.campaign_id,
                "module_id": row.module_id,
                "weight": float(row.weight),
                "metadata": row.metadata_json or {},
            }
            for row in rows
        ]
