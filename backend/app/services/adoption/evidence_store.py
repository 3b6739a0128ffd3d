"""
Evidence Store

Append-only records of compliance-relevant events.

Core Principles:
1. Evidence is never updated except for status transitions, never deleted.
2. Checksums are SHA-256 over canonical JSON, reproducible from the same inputs.
3. (org, type, source_table, source_id, control) identifies one logical record;
   the store's unique (org_id, dedup_key, version) constraint decides races.
4. force_new_version appends version N+1, supersedes the prior versions and
   links new -> old with a `supersedes` edge.
5. lineage_hash chains each version to the one it replaced.

Writes flush; the caller owns the commit.
"""
import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.adoption import EvidenceCreateResult
from ...models.db_models import (
    EvidenceObjectDB, EvidenceStatus, EvidenceType, RelationType, as_utc, utc_now,
)
from .adoption_store import AdoptionRepository
from .errors import ConflictError, NotFoundError, ValidationError
from .evidence_lineage import EvidenceLineageService

logger = logging.getLogger(__name__)

NULL_CONTROL_KEY = "__NULL__"
DEFAULT_CONFIDENCE = 0.8
DEFAULT_QUALITY = 80


# =============================================================================
# HASHING
# =============================================================================

def _canonical_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def build_evidence_checksum(
    org_id: str,
    evidence_type: EvidenceType,
    source_table: str,
    source_id: str,
    control_id: Optional[str],
    occurred_at: datetime,
    metadata: Dict[str, Any],
) -> str:
    """SHA-256 of the canonical content. Deterministic for identical inputs."""
    payload = {
        "orgId": org_id,
        "evidenceType": EvidenceType(evidence_type).value,
        "sourceTable": source_table,
        "sourceId": source_id,
        "controlId": control_id,
        "occurredAt": as_utc(occurred_at).isoformat(),
        "metadata": metadata,
    }
    return hashlib.sha256(_canonical_json(payload).encode("utf-8")).hexdigest()


def build_dedup_key(
    org_id: str,
    evidence_type: EvidenceType,
    source_table: str,
    source_id: str,
    control_id: Optional[str],
) -> str:
    """Identity of one logical evidence record across versions."""
    parts = [org_id, EvidenceType(evidence_type).value, source_table, source_id, control_id or NULL_CONTROL_KEY]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def build_lineage_hash(checksum: str, previous_lineage_hash: Optional[str]) -> str:
    return hashlib.sha256(f"{checksum}{previous_lineage_hash or ''}".encode("utf-8")).hexdigest()


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

# Any status may move to these
UNIVERSAL_TARGETS = (EvidenceStatus.REJECTED, EvidenceStatus.STALE, EvidenceStatus.SUPERSEDED)


def can_transition_evidence(from_status: EvidenceStatus, to_status: EvidenceStatus) -> bool:
    if from_status == to_status:
        return False
    if to_status in UNIVERSAL_TARGETS:
        return True
    return from_status == EvidenceStatus.QUEUED and to_status == EvidenceStatus.SYNCED


class EvidenceStore:
    """Evidence producer entry point plus the status transitions evidence allows."""

    def __init__(
        self,
        db: Session,
        repository: Optional[AdoptionRepository] = None,
        lineage: Optional[EvidenceLineageService] = None,
    ):
        self.db = db
        self.repository = repository or AdoptionRepository(db)
        self.lineage = lineage or EvidenceLineageService(db)

    def _versions(self, org_id: str, dedup_key: str) -> List[EvidenceObjectDB]:
        return (
            self.db.query(EvidenceObjectDB)
            .filter(EvidenceObjectDB.org_id == org_id, EvidenceObjectDB.dedup_key == dedup_key)
            .order_by(EvidenceObjectDB.version.desc())
            .all()
        )

    def create_evidence_objects(
        self,
        org_id: str,
        evidence_type: EvidenceType,
        source_table: str,
        source_id: str,
        control_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        module_id: Optional[str] = None,
        assignment_id: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
        confidence_score: float = DEFAULT_CONFIDENCE,
        quality_score: float = DEFAULT_QUALITY,
        status: EvidenceStatus = EvidenceStatus.QUEUED,
        force_new_version: bool = False,
        created_by: Optional[str] = None,
    ) -> EvidenceCreateResult:
        """
        Record evidence for every control mapped to the campaign/module.

        With an explicit control_id only that control is targeted; with no
        mapped controls a single control-less row is written.

        Args:
            org_id: Organization scope
            evidence_type: Kind of event
            source_table: Table of the originating record
            source_id: Id of the originating record
            control_id: Explicit control target (skips mapping resolution)
            campaign_id: Campaign the event belongs to
            module_id: Module the event belongs to
            assignment_id: Learner assignment reference
            user_id: Learner reference
            metadata: Arbitrary event metadata (part of the checksum)
            occurred_at: Event time (default: now)
            confidence_score: 0..1
            quality_score: 0..100
            status: Initial status
            force_new_version: Append a new version and supersede prior ones
            created_by: Acting user id

        Returns:
            EvidenceCreateResult with created count, targeted controls and inserted ids
        """
        if not source_table or not source_id:
            raise ValidationError("source_table and source_id are required")
        if not 0 <= confidence_score <= 1:
            raise ValidationError("confidence_score must be between 0 and 1")
        if not 0 <= quality_score <= 100:
            raise ValidationError("quality_score must be between 0 and 100")

        evidence_type = EvidenceType(evidence_type)
        metadata = metadata or {}
        occurred_at = as_utc(occurred_at) if occurred_at else utc_now()

        if control_id:
            mapped: List[str] = [control_id]
        else:
            mapped = self.repository.resolve_mapped_control_ids(org_id, campaign_id, module_id)
        targets: List[Optional[str]] = list(mapped) if mapped else [None]

        result = EvidenceCreateResult(control_ids=list(mapped))
        for target in targets:
            dedup_key = build_dedup_key(org_id, evidence_type, source_table, source_id, target)
            versions = self._versions(org_id, dedup_key)
            if versions and not force_new_version:
                continue

            latest = versions[0] if versions else None
            checksum = build_evidence_checksum(
                org_id, evidence_type, source_table, source_id, target, occurred_at, metadata,
            )
            row = EvidenceObjectDB(
                id=str(uuid4()),
                org_id=org_id,
                control_id=target,
                campaign_id=campaign_id,
                module_id=module_id,
                assignment_id=assignment_id,
                user_id=user_id,
                evidence_type=evidence_type,
                evidence_status=status,
                confidence_score=confidence_score,
                quality_score=quality_score,
                checksum=checksum,
                lineage_hash=build_lineage_hash(checksum, latest.lineage_hash if latest else None),
                dedup_key=dedup_key,
                version=(latest.version + 1) if latest else 1,
                source_table=source_table,
                source_id=source_id,
                metadata_json=metadata,
                created_by=created_by,
                occurred_at=occurred_at,
            )

            try:
                with self.db.begin_nested():
                    self.db.add(row)
                    self.db.flush()
                    superseded = [v for v in versions if v.evidence_status != EvidenceStatus.SUPERSEDED]
                    for prior in superseded:
                        prior.evidence_status = EvidenceStatus.SUPERSEDED
                        prior.superseded_by_evidence_id = row.id
                    if superseded:
                        self.lineage.create_lineage_links(
                            org_id, row.id, [p.id for p in superseded], RelationType.SUPERSEDES,
                            created_by=created_by, metadata={"reason": "force_new_version"},
                        )
            except IntegrityError:
                # A concurrent request wrote this version first
                logger.info(f"Evidence {source_table}:{source_id} already recorded for control {target}")
                continue

            result.created += 1
            result.evidence_ids.append(row.id)

        logger.info(
            f"Evidence {evidence_type.value} {source_table}:{source_id} for org {org_id}: "
            f"created {result.created}, controls mapped {len(mapped)}"
        )
        return result

    def mark_campaign_evidence_stale(self, org_id: str, campaign_id: str) -> int:
        """Mark all queued/synced evidence of a campaign stale (policy changed)."""
        rows = (
            self.db.query(EvidenceObjectDB)
            .filter(
                EvidenceObjectDB.org_id == org_id,
                EvidenceObjectDB.campaign_id == campaign_id,
                EvidenceObjectDB.evidence_status.in_([EvidenceStatus.QUEUED, EvidenceStatus.SYNCED]),
            )
            .all()
        )
        for row in rows:
            row.evidence_status = EvidenceStatus.STALE
        self.db.flush()
        logger.info(f"Marked {len(rows)} evidence rows stale for campaign {campaign_id}")
        return len(rows)

    def transition_evidence_status(
        self,
        org_id: str,
        evidence_id: str,
        to_status: EvidenceStatus,
    ) -> EvidenceObjectDB:
        """queued -> synced, or any -> rejected/stale/superseded. Anything else is a CONFLICT."""
        row = (
            self.db.query(EvidenceObjectDB)
            .filter(EvidenceObjectDB.org_id == org_id, EvidenceObjectDB.id == evidence_id)
            .first()
        )
        if row is None:
            raise NotFoundError("Evidence not found")
        if not can_transition_evidence(row.evidence_status, to_status):
            raise ConflictError(
                f"Cannot transition evidence from {row.evidence_status.value} to {to_status.value}"
            )
        row.evidence_status = to_status
        self.db.flush()
        return row

    def list_evidence(
        self,
        org_id: str,
        control_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        status: Optional[EvidenceStatus] = None,
        limit: int = 200,
    ) -> List[EvidenceObjectDB]:
        query = self.db.query(EvidenceObjectDB).filter(EvidenceObjectDB.org_id == org_id)
        if control_id:
            query = query.filter(EvidenceObjectDB.control_id == control_id)
        if campaign_id:
            query = query.filter(EvidenceObjectDB.campaign_id == campaign_id)
        if status is not None:
            query = query.filter(EvidenceObjectDB.evidence_status == status)
        return query.order_by(EvidenceObjectDB.occurred_at.desc()).limit(limit).all()


def serialize_evidence(row: EvidenceObjectDB) -> Dict[str, Any]:
    return {
        "id": row.id,
        "control_id": row.control_id,
        "campaign_id": row.campaign_id,
        "module_id": row.module_id,
        "assignment_id": row.assignment_id,
        "user_id": row.user_id,
        "evidence_type": row.evidence_type.value,
        "evidence_status": row.evidence_status.value,
        "confidence_score": float(row.confidence_score),
        "quality_score": float(row.quality_score),
        "checksum": row.checksum,
        "lineage_hash": row.lineage_hash,
        "version": row.version,
        "superseded_by_evidence_id": row.superseded_by_evidence_id,
        "source_table": row.source_table,
        "source_id": row.source_id,
        "metadata": row.metadata_json or {},
        "occurred_at": as_utc(row.occurred_at).isoformat(),
    }
