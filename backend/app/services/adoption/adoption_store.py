"""
Adoption Repository

Normalized read/write layer over the adoption tables. Every method returns
a consistent shape: a list of rows, a dict, or Optional[row]. Optional
analytics tables are gated by SchemaCapabilities; callers receive a typed
SchemaMissingError instead of a driver error when one is absent.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.adoption import ControlFreshnessBundle, ControlFreshnessComputed, ControlRef
from ...models.db_models import (
    ControlDB, ControlMappingDB, ControlFreshnessSnapshotDB, EvidenceObjectDB,
    LearningCampaignDB, LearningModuleDB, RoleTrack, as_utc,
)
from .capabilities import FRESHNESS_SNAPSHOTS, SchemaCapabilities
from .errors import DatabaseError, SchemaMissingError
from .freshness_engine import (
    TREND_POINTS, build_trend, compute_control_freshness, evidence_signal_from_row,
)

logger = logging.getLogger(__name__)


class AdoptionRepository:
    """
    Typed access to controls, mappings, evidence and freshness history.

    Reads never return array-or-object ambiguity: single lookups are
    Optional[row], multi lookups are lists or dicts keyed by id.
    """

    def __init__(self, db: Session, capabilities: Optional[SchemaCapabilities] = None):
        self.db = db
        self.capabilities = capabilities or SchemaCapabilities.all_available()

    def _query_failed(self, what: str, exc: SQLAlchemyError) -> DatabaseError:
        logger.error(f"Adoption query failed ({what}): {exc}")
        return DatabaseError(f"Failed to load {what}")

    # =========================================================================
    # CONTROLS + MAPPINGS
    # =========================================================================

    def get_control(self, org_id: str, control_id: str) -> Optional[ControlDB]:
        try:
            return (
                self.db.query(ControlDB)
                .filter(ControlDB.org_id == org_id, ControlDB.id == control_id)
                .first()
            )
        except SQLAlchemyError as e:
            raise self._query_failed("control", e)

    def list_controls(self, org_id: str, control_ids: Optional[List[str]] = None) -> List[ControlDB]:
        """Controls for an org ordered by code, optionally restricted to ids."""
        try:
            query = self.db.query(ControlDB).filter(ControlDB.org_id == org_id)
            if control_ids:
                query = query.filter(ControlDB.id.in_(control_ids))
            return query.order_by(ControlDB.code.asc()).all()
        except SQLAlchemyError as e:
            raise self._query_failed("controls", e)

    def active_mappings_for_controls(self, org_id: str, control_ids: List[str]) -> List[ControlMappingDB]:
        if not control_ids:
            return []
        try:
            return (
                self.db.query(ControlMappingDB)
                .filter(
                    ControlMappingDB.org_id == org_id,
                    ControlMappingDB.active.is_(True),
                    ControlMappingDB.control_id.in_(control_ids),
                )
                .order_by(ControlMappingDB.created_at.asc())
                .all()
            )
        except SQLAlchemyError as e:
            raise self._query_failed("control mappings", e)

    def resolve_mapped_control_ids(
        self,
        org_id: str,
        campaign_id: Optional[str] = None,
        module_id: Optional[str] = None,
    ) -> List[str]:
        """
        Active control ids mapped to a campaign or module.

        Used to fan evidence out to every relevant control.
        """
        predicates = []
        if module_id:
            predicates.append(ControlMappingDB.module_id == module_id)
        if campaign_id:
            predicates.append(ControlMappingDB.campaign_id == campaign_id)
        if not predicates:
            return []

        try:
            rows = (
                self.db.query(ControlMappingDB.control_id)
                .filter(
                    ControlMappingDB.org_id == org_id,
                    ControlMappingDB.active.is_(True),
                    or_(*predicates),
                )
                .order_by(ControlMappingDB.control_id.asc())
                .all()
            )
        except SQLAlchemyError as e:
            raise self._query_failed("mapped controls", e)

        seen: List[str] = []
        for (control_id,) in rows:
            if control_id and control_id not in seen:
                seen.append(control_id)
        return seen

    # =========================================================================
    # POLICY TIMESTAMPS
    # =========================================================================

    def campaign_updated_at(self, org_id: str, campaign_ids: Iterable[str]) -> Dict[str, datetime]:
        ids = sorted(set(campaign_ids))
        if not ids:
            return {}
        try:
            rows = (
                self.db.query(LearningCampaignDB.id, LearningCampaignDB.updated_at)
                .filter(LearningCampaignDB.org_id == org_id, LearningCampaignDB.id.in_(ids))
                .all()
            )
        except SQLAlchemyError as e:
            raise self._query_failed("campaign timestamps", e)
        return {campaign_id: as_utc(updated_at) for campaign_id, updated_at in rows if updated_at}

    def last_policy_update_at(self, org_id: str, campaign_ids: Iterable[str]) -> Optional[datetime]:
        """Most recent updated_at among the mapped campaigns (proxy for 'policy last changed')."""
        timestamps = list(self.campaign_updated_at(org_id, campaign_ids).values())
        return max(timestamps) if timestamps else None

    # =========================================================================
    # EVIDENCE + HISTORY
    # =========================================================================

    def evidence_for_controls(self, org_id: str, control_ids: List[str]) -> Dict[str, List[EvidenceObjectDB]]:
        grouped: Dict[str, List[EvidenceObjectDB]] = {cid: [] for cid in control_ids}
        if not control_ids:
            return grouped
        try:
            rows = (
                self.db.query(EvidenceObjectDB)
                .filter(EvidenceObjectDB.org_id == org_id, EvidenceObjectDB.control_id.in_(control_ids))
                .all()
            )
        except SQLAlchemyError as e:
            raise self._query_failed("evidence", e)
        for row in rows:
            grouped.setdefault(row.control_id, []).append(row)
        return grouped

    def recent_freshness_scores(
        self,
        org_id: str,
        control_ids: List[str],
        per_control: int = TREND_POINTS,
    ) -> Dict[str, List[float]]:
        """Up to `per_control` snapshot scores per control, newest first."""
        if not self.capabilities.has(FRESHNESS_SNAPSHOTS):
            raise SchemaMissingError(FRESHNESS_SNAPSHOTS)
        if not control_ids:
            return {}
        try:
            rows = (
                self.db.query(ControlFreshnessSnapshotDB.control_id, ControlFreshnessSnapshotDB.freshness_score)
                .filter(
                    ControlFreshnessSnapshotDB.org_id == org_id,
                    ControlFreshnessSnapshotDB.control_id.in_(control_ids),
                )
                .order_by(ControlFreshnessSnapshotDB.computed_at.desc())
                .limit(2000)
                .all()
            )
        except SQLAlchemyError as e:
            raise self._query_failed("freshness snapshots", e)

        scores: Dict[str, List[float]] = defaultdict(list)
        for control_id, score in rows:
            if len(scores[control_id]) < per_control:
                scores[control_id].append(float(score))
        return dict(scores)

    def record_freshness_snapshots(self, org_id: str, computed: List[ControlFreshnessComputed]) -> int:
        """Append one history row per computed control. Flushes, never commits."""
        if not computed:
            return 0
        if not self.capabilities.has(FRESHNESS_SNAPSHOTS):
            raise SchemaMissingError(FRESHNESS_SNAPSHOTS)
        for item in computed:
            self.db.add(ControlFreshnessSnapshotDB(
                id=str(uuid4()),
                org_id=org_id,
                control_id=item.control_id,
                freshness_state=item.state,
                freshness_score=round(float(item.score), 2),
                fresh_evidence_count=item.fresh_evidence_count,
                stale_evidence_count=item.stale_count,
                rejected_evidence_count=item.rejected_count,
                synced_evidence_count=item.synced_count,
                median_ack_hours=item.median_ack_hours,
                last_policy_update_at=item.last_policy_update_at,
                latest_evidence_at=item.latest_evidence_at,
                metadata_json={},
            ))
        try:
            self.db.flush()
        except SQLAlchemyError as e:
            raise self._query_failed("freshness snapshot insert", e)
        return len(computed)

    def module_role_tracks(self, org_id: str, module_ids: Iterable[str]) -> Dict[str, Optional[RoleTrack]]:
        ids = sorted(set(module_ids))
        if not ids:
            return {}
        try:
            rows = (
                self.db.query(LearningModuleDB.id, LearningModuleDB.role_track)
                .filter(LearningModuleDB.org_id == org_id, LearningModuleDB.id.in_(ids))
                .all()
            )
        except SQLAlchemyError as e:
            raise self._query_failed("module role tracks", e)
        return {module_id: role_track for module_id, role_track in rows}

    # =========================================================================
    # FRESHNESS BUNDLE
    # =========================================================================

    def load_control_freshness(
        self,
        org_id: str,
        control_ids: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> ControlFreshnessBundle:
        """
        Compute freshness for an org's controls.

        Args:
            org_id: Organization scope
            control_ids: Optional subset of controls
            now: Reference time for age calculations

        Returns:
            ControlFreshnessBundle; compat_mode is set when snapshot history is unavailable
        """
        controls = self.list_controls(org_id, control_ids)
        if not controls:
            return ControlFreshnessBundle()

        ids = [c.id for c in controls]
        campaigns_by_control: Dict[str, List[str]] = {cid: [] for cid in ids}
        modules_by_control: Dict[str, List[str]] = {cid: [] for cid in ids}
        for mapping in self.active_mappings_for_controls(org_id, ids):
            if mapping.campaign_id and mapping.campaign_id not in campaigns_by_control[mapping.control_id]:
                campaigns_by_control[mapping.control_id].append(mapping.campaign_id)
            if mapping.module_id and mapping.module_id not in modules_by_control[mapping.control_id]:
                modules_by_control[mapping.control_id].append(mapping.module_id)

        campaign_updated = self.campaign_updated_at(
            org_id, [cid for campaign_ids in campaigns_by_control.values() for cid in campaign_ids],
        )
        evidence_by_control = self.evidence_for_controls(org_id, ids)

        compat_mode = False
        try:
            history = self.recent_freshness_scores(org_id, ids)
        except SchemaMissingError as e:
            logger.warning(f"Freshness trend unavailable for org {org_id}: {e.message}")
            compat_mode = True
            history = {}

        bundle = ControlFreshnessBundle(
            campaign_ids_by_control=campaigns_by_control,
            module_ids_by_control=modules_by_control,
            compat_mode=compat_mode,
        )
        for control in controls:
            timestamps = [
                campaign_updated[cid] for cid in campaigns_by_control[control.id] if cid in campaign_updated
            ]
            computed = compute_control_freshness(
                control.id,
                [evidence_signal_from_row(row) for row in evidence_by_control.get(control.id, [])],
                max(timestamps) if timestamps else None,
                now=now,
            )
            bundle.controls.append(ControlRef(
                id=control.id,
                code=control.code,
                title=control.title,
                risk_level=control.risk_level,
            ))
            bundle.computed_by_control[control.id] = computed
            bundle.trend_by_control[control.id] = build_trend(computed.score, history.get(control.id, []))

        return bundle
