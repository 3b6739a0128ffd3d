"""
Control API Routes

Evidence lineage timeline and mapping replacement for a single control.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import Actor, require_org_role
from ..database import get_db
from ..models.db_models import MappingStrength
from ..services.adoption import (
    AdoptionRepository, EvidenceLineageService, MappingInput, NotFoundError, replace_control_mappings,
)
from .dependencies import audited


router = APIRouter(prefix="/orgs/{org_id}/controls", tags=["controls"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class ControlMappingItem(BaseModel):
    """One control → campaign/module/policy/obligation link."""
    campaign_id: Optional[str] = Field(None, description="Mapped learning campaign")
    module_id: Optional[str] = Field(None, description="Mapped learning module")
    policy_id: Optional[str] = Field(None, description="Source policy document")
    obligation_id: Optional[str] = Field(None, description="Policy obligation")
    mapping_strength: MappingStrength = Field(default=MappingStrength.PRIMARY, description="primary or supporting")
    active: bool = Field(default=True, description="Inactive rows are kept for history")


class ReplaceMappingsRequest(BaseModel):
    """Request to replace a control's mapping set."""
    mappings: List[ControlMappingItem] = Field(..., max_length=200, description="Complete new mapping set")


# =============================================================================
# LINEAGE
# =============================================================================

@router.get("/{control_id}/lineage", response_model=dict)
async def get_control_lineage(
    org_id: str,
    control_id: str,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("manager")),
):
    """Evidence for the control in occurrence order, with versions and lineage links."""
    with audited(db, request, actor, "control_lineage_view") as audit:
        audit["controlId"] = control_id
        control = AdoptionRepository(db).get_control(org_id, control_id)
        if control is None:
            raise NotFoundError("Control not found")
        timeline = EvidenceLineageService(db).control_timeline(org_id, control_id)
        audit["evidenceCount"] = timeline["summary"]["evidence_count"]

    return {
        "org_id": org_id,
        "control": {"id": control.id, "code": control.code, "title": control.title},
        **timeline,
    }


# =============================================================================
# MAPPINGS
# =============================================================================

@router.put("/{control_id}/mappings", response_model=dict)
async def replace_mappings(
    org_id: str,
    control_id: str,
    request: Request,
    body: ReplaceMappingsRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_org_role("admin")),
):
    """
    Replace the control's active mappings.

    The previous active set is deactivated, not deleted.
    """
    with audited(db, request, actor, "control_mapping_update") as audit:
        audit.update({"controlId": control_id, "mappingCount": len(body.mappings)})
        inserted = replace_control_mappings(
            db,
            org_id,
            control_id,
            [MappingInput(**item.model_dump()) for item in body.mappings],
            created_by=actor.user_id,
        )
        db.commit()

    return {
        "ok": True,
        "org_id": org_id,
        "control_id": control_id,
        "mapping_count": len(inserted),
    }
