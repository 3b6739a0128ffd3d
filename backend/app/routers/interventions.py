"""
Intervention API Routes

Generate, review and execute remediation for controls whose evidence is
going stale. Generation is rate limited per actor; execution is idempotent
per (intervention, idempotency key).
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import Actor, require_org_role
from ..database import get_db
from ..models.db_models import InterventionStatus
from ..services.adoption import (
    AdoptionRepository, InterventionRecommender, InterventionWorkflow, RateLimiter,
    SchemaCapabilities, rate_limit_key,
)
from ..services.adoption.intervention_workflow import serialize_recommendation
from .dependencies import audited, get_capabilities, get_rate_limiter


router = APIRouter(prefix="/orgs/{org_id}/interventions", tags=["interventions"])

RECOMMEND_ACTION = "intervention_recommend"


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class RecommendInterventionsRequest(BaseModel):
    """Request to generate intervention proposals."""
    control_id: Optional[str] = Field(None, description="Restrict generation to one control")
    campaign_id: Optional[str] = Field(None, description="Campaign to attach to each proposal")
    module_id: Optional[str] = Field(None, description="Module to attach to each proposal")
    max_recommendations: int = Field(25, ge=1, le=100, description="Cap on proposals inserted")


class ApproveInterventionRequest(BaseModel):
    """Request to approve a proposed intervention."""
    note: Optional[str] = Field(None, max_length=500, description="Approval note")


class DismissInterventionRequest(BaseModel):
    """Request to dismiss a proposed intervention."""
    reason: Optional[str] = Field(None, max_length=500, description="Dismissal reason")


class ExecuteInterventionRequest(BaseModel):
    """Request to execute an approved intervention."""
    idempotency_key: Optional[str] = Field(
        None, min_length=8, max_length=120,
        description="Replay key; defaults to auto-<intervention_id>",
    )


# =============================================================================
# LIST / GENERATE
# =============================================================================

@router.get("", response_model=dict)
async def list_interventions(
    org_id: str,
    request: Request,
    status: Optional[InterventionStatus] = Query(None, description="Filter by status"),
    control_id: Optional[str] = Query(None, description="Filter by control"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("manager")),
):
    """Recommendations newest first, with status counts and latest execution."""
    with audited(db, request, actor, "interventions_view") as audit:
        listing = InterventionWorkflow(db).list_interventions(org_id, status=status, control_id=control_id)
        audit.update({
            "count": listing["summary"]["total"],
            "filters": {"status": status.value if status else None, "controlId": control_id},
        })

    return {"org_id": org_id, **listing}


@router.post("", response_model=dict, status_code=201)
async def recommend_interventions(
    org_id: str,
    request: Request,
    body: Optional[RecommendInterventionsRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("admin")),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    Compute freshness, snapshot it, and propose interventions.

    Controls that already have an active proposal of the same type are skipped.
    """
    body = body or RecommendInterventionsRequest()
    with audited(db, request, actor, RECOMMEND_ACTION, success_status=201) as audit:
        rate_limiter.enforce(rate_limit_key(org_id, actor.user_id, RECOMMEND_ACTION))
        recommender = InterventionRecommender(db, AdoptionRepository(db, capabilities))
        result = recommender.generate(
            org_id,
            proposed_by=actor.user_id,
            control_id=body.control_id,
            campaign_id=body.campaign_id,
            module_id=body.module_id,
            max_recommendations=body.max_recommendations,
        )
        audit.update({
            "created": len(result["created"]),
            "skipped": result["skipped"],
            "controlId": body.control_id,
        })

    return {
        "org_id": org_id,
        "created": len(result["created"]),
        "skipped": result["skipped"],
        "snapshots_recorded": result["snapshots_recorded"],
        "compat_mode": result["compat_mode"],
        "items": [serialize_recommendation(row) for row in result["created"]],
    }


# =============================================================================
# STATE TRANSITIONS
# =============================================================================

@router.post("/{intervention_id}/approve", response_model=dict)
async def approve_intervention(
    org_id: str,
    intervention_id: str,
    request: Request,
    body: Optional[ApproveInterventionRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("admin")),
):
    """Approve a proposed intervention (proposed → approved)."""
    note = body.note if body else None
    with audited(db, request, actor, "intervention_approve") as audit:
        audit["interventionId"] = intervention_id
        recommendation = InterventionWorkflow(db).approve(org_id, intervention_id, actor.user_id, note=note)

    return {"org_id": org_id, "intervention": serialize_recommendation(recommendation)}


@router.post("/{intervention_id}/dismiss", response_model=dict)
async def dismiss_intervention(
    org_id: str,
    intervention_id: str,
    request: Request,
    body: Optional[DismissInterventionRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("admin")),
):
    """Dismiss a proposed intervention (terminal)."""
    reason = body.reason if body else None
    with audited(db, request, actor, "intervention_dismiss") as audit:
        audit["interventionId"] = intervention_id
        recommendation = InterventionWorkflow(db).dismiss(org_id, intervention_id, actor.user_id, reason=reason)

    return {"org_id": org_id, "intervention": serialize_recommendation(recommendation)}


@router.post("/{intervention_id}/execute", response_model=dict)
async def execute_intervention(
    org_id: str,
    intervention_id: str,
    request: Request,
    body: Optional[ExecuteInterventionRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("admin")),
):
    """
    Execute an approved intervention.

    Replaying the same idempotency key returns the stored execution with
    reused=true and performs no side effects.
    """
    key = body.idempotency_key if body else None
    with audited(db, request, actor, "intervention_execute") as audit:
        audit["interventionId"] = intervention_id
        outcome = InterventionWorkflow(db).execute(org_id, intervention_id, actor.user_id, idempotency_key=key)
        audit.update({"idempotencyKey": outcome.idempotency_key, "reused": outcome.reused})

    return {"org_id": org_id, **outcome.to_dict()}
