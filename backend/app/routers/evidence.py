"""
Evidence API Routes

Entry point for evidence producers (learning events, attestations, exports)
and the evidence listing used by auditors.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import Actor, require_org_role
from ..database import get_db
from ..models.db_models import EvidenceStatus, EvidenceType
from ..services.adoption import EvidenceLineageService, EvidenceStore
from ..services.adoption.evidence_store import serialize_evidence
from .dependencies import audited


router = APIRouter(prefix="/orgs/{org_id}/evidence", tags=["evidence"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CreateEvidenceRequest(BaseModel):
    """Request to record an evidence event."""
    evidence_type: EvidenceType = Field(..., description="Kind of event")
    source_table: str = Field(..., min_length=1, max_length=120, description="Table of the originating record")
    source_id: str = Field(..., min_length=1, max_length=120, description="Id of the originating record")
    control_id: Optional[str] = Field(None, description="Explicit control; otherwise resolved from mappings")
    campaign_id: Optional[str] = Field(None, description="Campaign the event belongs to")
    module_id: Optional[str] = Field(None, description="Module the event belongs to")
    assignment_id: Optional[str] = Field(None, description="Learner assignment")
    user_id: Optional[str] = Field(None, description="Learner")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Event metadata (part of the checksum)")
    occurred_at: Optional[datetime] = Field(None, description="Event time (default now)")
    confidence_score: float = Field(0.8, ge=0, le=1, description="0..1")
    quality_score: float = Field(80, ge=0, le=100, description="0..100")
    force_new_version: bool = Field(default=False, description="Append a new version superseding prior ones")


class TransitionEvidenceRequest(BaseModel):
    """Request to move evidence to a new status."""
    status: EvidenceStatus = Field(..., description="Target status")


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict, status_code=201)
async def create_evidence(
    org_id: str,
    request: Request,
    body: CreateEvidenceRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("admin")),
):
    """
    Record evidence for every control mapped to the event's campaign/module.

    Campaign exports are also linked (exported_in) from every other evidence
    row of the campaign.
    """
    with audited(db, request, actor, "evidence_create", success_status=201) as audit:
        audit.update({
            "evidenceType": body.evidence_type.value,
            "source": f"{body.source_table}:{body.source_id}",
        })
        result = EvidenceStore(db).create_evidence_objects(
            org_id,
            body.evidence_type,
            body.source_table,
            body.source_id,
            control_id=body.control_id,
            campaign_id=body.campaign_id,
            module_id=body.module_id,
            assignment_id=body.assignment_id,
            user_id=body.user_id,
            metadata=body.metadata,
            occurred_at=body.occurred_at,
            confidence_score=body.confidence_score,
            quality_score=body.quality_score,
            force_new_version=body.force_new_version,
            created_by=actor.user_id,
        )
        linked = 0
        if body.evidence_type == EvidenceType.CAMPAIGN_EXPORT and body.campaign_id and result.evidence_ids:
            linked = EvidenceLineageService(db).link_export_evidence(
                org_id, body.campaign_id, result.evidence_ids, created_by=actor.user_id,
            )
        db.commit()
        audit.update({"created": result.created, "exportLinks": linked})

    return {"org_id": org_id, **result.to_dict(), "export_links": linked}


@router.get("", response_model=dict)
async def list_evidence(
    org_id: str,
    request: Request,
    control_id: Optional[str] = Query(None, description="Filter by control"),
    campaign_id: Optional[str] = Query(None, description="Filter by campaign"),
    status: Optional[EvidenceStatus] = Query(None, description="Filter by status"),
    limit: int = Query(200, ge=1, le=500, description="Max rows"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("manager")),
):
    """Evidence newest first."""
    with audited(db, request, actor, "evidence_view") as audit:
        rows = EvidenceStore(db).list_evidence(
            org_id, control_id=control_id, campaign_id=campaign_id, status=status, limit=limit,
        )
        items = [serialize_evidence(row) for row in rows]
        audit.update({
            "count": len(items),
            "filters": {
                "controlId": control_id,
                "campaignId": campaign_id,
                "status": status.value if status else None,
            },
        })

    return {"org_id": org_id, "total": len(items), "items": items}


@router.post("/{evidence_id}/status", response_model=dict)
async def transition_evidence(
    org_id: str,
    evidence_id: str,
    request: Request,
    body: TransitionEvidenceRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("admin")),
):
    """queued → synced, or any → rejected/stale/superseded."""
    with audited(db, request, actor, "evidence_status_update") as audit:
        audit.update({"evidenceId": evidence_id, "status": body.status.value})
        row = EvidenceStore(db).transition_evidence_status(org_id, evidence_id, body.status)
        db.commit()

    return {"org_id": org_id, "evidence": serialize_evidence(row)}
