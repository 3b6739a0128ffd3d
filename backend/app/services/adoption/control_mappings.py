"""
Control Mapping Replacement

Replaces the active mapping set of a control in one transaction. Duplicate
active (campaign, module, obligation) tuples are rejected up front and by
the partial unique index on active mappings.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import ControlMappingDB, MappingStrength
from .adoption_store import AdoptionRepository
from .errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class MappingInput:
    campaign_id: Optional[str] = None
    module_id: Optional[str] = None
    policy_id: Optional[str] = None
    obligation_id: Optional[str] = None
    mapping_strength: MappingStrength = MappingStrength.PRIMARY
    active: bool = True


def replace_control_mappings(
    db: Session,
    org_id: str,
    control_id: str,
    mappings: List[MappingInput],
    created_by: Optional[str] = None,
) -> List[ControlMappingDB]:
    """
    Deactivate the control's active mappings and insert the new set.

    Args:
        db: Session (flushed, not committed)
        org_id: Organization scope
        control_id: Control being remapped
        mappings: New mapping set
        created_by: Acting user id

    Returns:
        The inserted mapping rows
    """
    if AdoptionRepository(db).get_control(org_id, control_id) is None:
        raise NotFoundError("Control not found")

    seen = set()
    for mapping in mappings:
        if not mapping.active:
            continue
        key = (mapping.campaign_id, mapping.module_id, mapping.obligation_id)
        if key in seen:
            raise ConflictError("Duplicate active mapping for this control")
        seen.add(key)

    active_rows = (
        db.query(ControlMappingDB)
        .filter(
            ControlMappingDB.org_id == org_id,
            ControlMappingDB.control_id == control_id,
            ControlMappingDB.active.is_(True),
        )
        .all()
    )
    for row in active_rows:
        row.active = False

    inserted = []
    try:
        with db.begin_nested():
            db.flush()
            for mapping in mappings:
                row = ControlMappingDB(
                    id=str(uuid4()),
                    org_id=org_id,
                    control_id=control_id,
                    campaign_id=mapping.campaign_id,
                    module_id=mapping.module_id,
                    policy_id=mapping.policy_id,
                    obligation_id=mapping.obligation_id,
                    mapping_strength=mapping.mapping_strength,
                    active=mapping.active,
                    metadata_json={},
                    created_by=created_by,
                )
                db.add(row)
                inserted.append(row)
    except IntegrityError:
        raise ConflictError("Duplicate active mapping for this control")

    logger.info(
        f"Replaced mappings for control {control_id}: "
        f"{len(active_rows)} deactivated, {len(inserted)} inserted"
    )
    return inserted
