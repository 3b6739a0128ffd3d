"""
Intervention Recommender

Derives remediation proposals from a control's freshness snapshot and
persists the ones that are not already active.

Rules are cumulative, evaluated in a fixed order:
- aging/stale/critical            -> reminder_cadence
- stale/critical                  -> attestation_refresh
- critical OR >=2 rejected rows   -> manager_escalation, role_refresher_module

Only the first three proposals in that order are kept.
"""
import logging
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.adoption import RecommendationContext, RecommendationProposal
from ...models.db_models import (
    ACTIVE_INTERVENTION_STATUSES, FreshnessState, InterventionRecommendationDB,
    InterventionStatus, RecommendationType,
)
from .adoption_store import AdoptionRepository
from .errors import DatabaseError, NotFoundError, SchemaMissingError

logger = logging.getLogger(__name__)

MAX_PROPOSALS_PER_CONTROL = 3
DEFAULT_MAX_RECOMMENDATIONS = 25


# =============================================================================
# PROPOSAL RULES
# =============================================================================

RATIONALES = {
    RecommendationType.REMINDER_CADENCE: (
        "Learner evidence freshness is declining. Increase reminder cadence for "
        "pending assignments tied to this control."
    ),
    RecommendationType.ATTESTATION_REFRESH: (
        "Control evidence is stale relative to policy expectations. Trigger attestation "
        "refresh to re-establish current control intent."
    ),
    RecommendationType.MANAGER_ESCALATION: (
        "Critical freshness and rejection signals indicate operational control risk. "
        "Escalate to role managers for remediation ownership."
    ),
    RecommendationType.ROLE_REFRESHER_MODULE: (
        "Role-level behavior appears drifted from policy. Publish a focused refresher "
        "module for the impacted cohort."
    ),
}


def recommend_interventions(context: RecommendationContext) -> List[RecommendationProposal]:
    """
    Proposals for one control, most urgent first, at most three.

    The cutoff is positional: when all four apply, role_refresher_module
    (appended last) is dropped.
    """
    freshness = context.freshness
    state = freshness.state
    role_track = context.role_track.value if context.role_track else None
    proposals: List[RecommendationProposal] = []

    if state in (FreshnessState.AGING, FreshnessState.STALE, FreshnessState.CRITICAL):
        aging = state == FreshnessState.AGING
        proposals.append(RecommendationProposal(
            recommendation_type=RecommendationType.REMINDER_CADENCE,
            rationale=RATIONALES[RecommendationType.REMINDER_CADENCE],
            expected_impact_pct=8 if aging else 14,
            confidence_score=0.68 if aging else 0.76,
            metadata={"state": state.value, "controlCode": context.control_code},
        ))

    if state in (FreshnessState.STALE, FreshnessState.CRITICAL):
        proposals.append(RecommendationProposal(
            recommendation_type=RecommendationType.ATTESTATION_REFRESH,
            rationale=RATIONALES[RecommendationType.ATTESTATION_REFRESH],
            expected_impact_pct=11,
            confidence_score=0.73,
            metadata={
                "staleCount": freshness.stale_count,
                "rejectedCount": freshness.rejected_count,
            },
        ))

    if state == FreshnessState.CRITICAL or freshness.rejected_count >= 2:
        proposals.append(RecommendationProposal(
            recommendation_type=RecommendationType.MANAGER_ESCALATION,
            rationale=RATIONALES[RecommendationType.MANAGER_ESCALATION],
            expected_impact_pct=18,
            confidence_score=0.81,
            metadata={"riskLevel": context.risk_level.value, "roleTrack": role_track},
        ))
        proposals.append(RecommendationProposal(
            recommendation_type=RecommendationType.ROLE_REFRESHER_MODULE,
            rationale=RATIONALES[RecommendationType.ROLE_REFRESHER_MODULE],
            expected_impact_pct=21,
            confidence_score=0.79,
            metadata={"roleTrack": role_track},
        ))

    return proposals[:MAX_PROPOSALS_PER_CONTROL]


# =============================================================================
# GENERATION SERVICE
# =============================================================================

class InterventionRecommender:
    """
    Generates and stores recommendations for an org.

    Active (proposed/approved/executing) recommendations are never duplicated
    per (control, type): checked at generation time and enforced by a
    partial unique index.
    """

    def __init__(self, db: Session, repository: Optional[AdoptionRepository] = None):
        self.db = db
        self.repository = repository or AdoptionRepository(db)

    def _active_pairs(self, org_id: str, control_ids: List[str]) -> Set[Tuple[str, RecommendationType]]:
        if not control_ids:
            return set()
        rows = (
            self.db.query(InterventionRecommendationDB.control_id, InterventionRecommendationDB.recommendation_type)
            .filter(
                InterventionRecommendationDB.org_id == org_id,
                InterventionRecommendationDB.control_id.in_(control_ids),
                InterventionRecommendationDB.status.in_(ACTIVE_INTERVENTION_STATUSES),
            )
            .all()
        )
        return {(control_id, rec_type) for control_id, rec_type in rows}

    def generate(
        self,
        org_id: str,
        proposed_by: Optional[str],
        control_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        module_id: Optional[str] = None,
        max_recommendations: int = DEFAULT_MAX_RECOMMENDATIONS,
    ) -> Dict[str, Any]:
        """
        Compute freshness, persist snapshots, and insert new proposals.

        Args:
            org_id: Organization scope
            proposed_by: Acting user id
            control_id: Restrict to one control
            campaign_id: Override the mapped campaign recorded on each recommendation
            module_id: Override the mapped module recorded on each recommendation
            max_recommendations: Cap on inserted rows across all controls

        Returns:
            Dict with created rows, skipped count and snapshot count
        """
        if control_id and self.repository.get_control(org_id, control_id) is None:
            raise NotFoundError("Control not found")

        bundle = self.repository.load_control_freshness(org_id, [control_id] if control_id else None)

        snapshots_recorded = 0
        try:
            snapshots_recorded = self.repository.record_freshness_snapshots(
                org_id, list(bundle.computed_by_control.values()),
            )
        except SchemaMissingError as e:
            logger.warning(f"Skipping freshness snapshots for org {org_id}: {e.message}")

        all_module_ids = [m for ids in bundle.module_ids_by_control.values() for m in ids]
        role_tracks = self.repository.module_role_tracks(org_id, all_module_ids)
        active = self._active_pairs(org_id, [c.id for c in bundle.controls])

        created: List[InterventionRecommendationDB] = []
        skipped = 0
        for control in bundle.controls:
            freshness = bundle.computed_by_control[control.id]
            module_ids = bundle.module_ids_by_control.get(control.id, [])
            role_track = next((role_tracks[m] for m in module_ids if role_tracks.get(m)), None)

            proposals = recommend_interventions(RecommendationContext(
                control_id=control.id,
                control_code=control.code,
                control_title=control.title,
                risk_level=control.risk_level,
                role_track=role_track,
                freshness=freshness,
            ))

            for proposal in proposals:
                if len(created) >= max_recommendations:
                    break
                if (control.id, proposal.recommendation_type) in active:
                    skipped += 1
                    continue

                row = InterventionRecommendationDB(
                    id=str(uuid4()),
                    org_id=org_id,
                    control_id=control.id,
                    campaign_id=campaign_id or next(iter(bundle.campaign_ids_by_control.get(control.id, [])), None),
                    module_id=module_id or next(iter(module_ids), None),
                    recommendation_type=proposal.recommendation_type,
                    status=InterventionStatus.PROPOSED,
                    rationale=proposal.rationale,
                    expected_impact_pct=proposal.expected_impact_pct,
                    confidence_score=proposal.confidence_score,
                    metadata_json={
                        **proposal.metadata,
                        "freshnessState": freshness.state.value,
                        "freshnessScore": freshness.score,
                    },
                    proposed_by=proposed_by,
                )
                try:
                    with self.db.begin_nested():
                        self.db.add(row)
                except IntegrityError:
                    # A concurrent run inserted the same active pair first
                    skipped += 1
                    continue
                active.add((control.id, proposal.recommendation_type))
                created.append(row)

        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store recommendations for org {org_id}: {e}")
            raise DatabaseError("Failed to store recommendations")

        logger.info(
            f"Generated {len(created)} interventions for org {org_id} "
            f"(skipped {skipped}, snapshots {snapshots_recorded})"
        )
        return {
            "created": created,
            "skipped": skipped,
            "snapshots_recorded": snapshots_recorded,
            "compat_mode": bundle.compat_mode,
        }
