"""
Adoption Intelligence API Routes

Read endpoints for control freshness, the adoption graph and peer benchmarks.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ..auth import Actor, require_org_role
from ..database import get_db
from ..models.db_models import BenchmarkMetric, RoleTrack
from ..services.adoption import (
    AdoptionGraphBuilder, AdoptionRepository, BenchmarkResolver, SchemaCapabilities,
    build_control_impact_forecast, summarize_freshness,
)
from .dependencies import audited, get_capabilities


router = APIRouter(prefix="/orgs/{org_id}", tags=["adoption"])

DEFAULT_WINDOW_DAYS = 30


# =============================================================================
# FRESHNESS
# =============================================================================

@router.get("/adoption/freshness", response_model=dict)
async def get_control_freshness(
    org_id: str,
    request: Request,
    window: int = Query(DEFAULT_WINDOW_DAYS, ge=1, le=365, description="Reporting window in days"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("manager")),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    """
    Per-control freshness with a 7-point trend, the org summary and the
    control_freshness benchmark.
    """
    with audited(db, request, actor, "adoption_freshness_view") as audit:
        bundle = AdoptionRepository(db, capabilities).load_control_freshness(org_id)
        computed = list(bundle.computed_by_control.values())
        benchmark = BenchmarkResolver(db, capabilities).resolve(org_id, BenchmarkMetric.CONTROL_FRESHNESS)
        audit.update({"controls": len(bundle.controls), "windowDays": window})

    items = []
    for control in bundle.controls:
        freshness = bundle.computed_by_control.get(control.id)
        items.append({
            **control.to_dict(),
            "mapped_campaign_ids": bundle.campaign_ids_by_control.get(control.id, []),
            "mapped_module_ids": bundle.module_ids_by_control.get(control.id, []),
            "freshness": freshness.to_dict() if freshness else None,
            "trend": bundle.trend_by_control.get(control.id, []),
        })

    return {
        "org_id": org_id,
        "window_days": window,
        "summary": summarize_freshness(computed).to_dict(),
        "forecast": build_control_impact_forecast(
            [c.id for c in bundle.controls], bundle.computed_by_control,
        ).to_dict(),
        "benchmark": benchmark.to_dict(),
        "compat_mode": bundle.compat_mode or benchmark.compat_mode,
        "items": items,
    }


# =============================================================================
# GRAPH
# =============================================================================

@router.get("/adoption/graph", response_model=dict)
async def get_adoption_graph(
    org_id: str,
    request: Request,
    control_id: Optional[str] = Query(None, description="Restrict to one control"),
    role_track: Optional[RoleTrack] = Query(None, description="Only obligations/modules of this track"),
    window: int = Query(DEFAULT_WINDOW_DAYS, ge=1, le=365, description="Evidence window in days"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("manager")),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    """Obligation → control → campaign/module → outcome → freshness graph."""
    with audited(db, request, actor, "adoption_graph_view") as audit:
        builder = AdoptionGraphBuilder(db, AdoptionRepository(db, capabilities))
        graph = builder.build(org_id, control_id=control_id, role_track=role_track, window_days=window)
        audit.update({"nodes": len(graph.nodes), "edges": len(graph.edges), "windowDays": window})

    return {"org_id": org_id, **graph.to_dict()}


# =============================================================================
# BENCHMARKS
# =============================================================================

@router.get("/benchmarks", response_model=dict)
async def get_benchmarks(
    org_id: str,
    request: Request,
    metric: BenchmarkMetric = Query(BenchmarkMetric.CONTROL_FRESHNESS, description="Metric to compare"),
    cohort: Optional[str] = Query(None, description="Cohort code (default configured cohort)"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("manager")),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
):
    """Org metric against the anonymized cohort, plus the selectable cohorts."""
    with audited(db, request, actor, "benchmark_view") as audit:
        resolver = BenchmarkResolver(db, capabilities)
        comparison = resolver.resolve(org_id, metric, cohort)
        cohorts = [] if comparison.compat_mode else resolver.list_cohorts()
        audit.update({
            "metric": metric.value,
            "cohort": comparison.cohort_code,
            "compatMode": comparison.compat_mode,
        })

    return {
        "org_id": org_id,
        "metric": metric.value,
        "selected_cohort": comparison.cohort_code,
        "cohorts": cohorts,
        "comparison": comparison.to_dict(),
        "compat_mode": comparison.compat_mode,
    }
