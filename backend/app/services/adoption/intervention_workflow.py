"""
Intervention Execution Workflow

State machine for remediation recommendations:

    proposed -> approved -> executing -> completed
        |                      |
        v                      v (action failed)
    dismissed               approved

Execution is idempotent per (org, intervention, idempotency_key): the
execution row is claimed under a unique constraint before any side effect
runs, so a replayed key returns the stored result and never re-enqueues
reminders or re-marks evidence.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import (
    ACTIVE_INTERVENTION_STATUSES, AssignmentDB, AssignmentState, ControlDB, EvidenceObjectDB,
    EvidenceStatus, EvidenceType, ExecutionStatus, InterventionExecutionDB, InterventionRecommendationDB,
    InterventionStatus, LearningCampaignDB, LearningModuleDB, RecommendationType, utc_now,
)
from .errors import ConflictError, DatabaseError, NotFoundError
from .notifications import NotificationDispatcher, NotificationJobQueue, ReminderRequest

logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG = {
    InterventionStatus.PROPOSED: {
        "description": "Generated by the recommender, awaiting review",
        "allowed_transitions": [InterventionStatus.APPROVED, InterventionStatus.DISMISSED],
        "active": True,
    },
    InterventionStatus.APPROVED: {
        "description": "Approved by an admin, ready to execute",
        "allowed_transitions": [InterventionStatus.EXECUTING],
        "active": True,
    },
    InterventionStatus.EXECUTING: {
        "description": "Action running (or interrupted and retryable)",
        "allowed_transitions": [InterventionStatus.COMPLETED, InterventionStatus.APPROVED],
        "active": True,
    },
    InterventionStatus.COMPLETED: {
        "description": "Action performed; a new idempotency key replays it",
        "allowed_transitions": [InterventionStatus.EXECUTING],
        "active": False,
    },
    InterventionStatus.DISMISSED: {
        "description": "Rejected by an admin",
        "allowed_transitions": [],
        "active": False,
    },
}

EXECUTABLE_STATUSES = (
    InterventionStatus.APPROVED,
    InterventionStatus.EXECUTING,
    InterventionStatus.COMPLETED,
)

REMINDER_BATCH_LIMIT = 200
ESCALATION_OWNER = "security-grc"
REFRESHER_NOTE = "Create a role-specific refresher module in campaign drafts."


@dataclass
class ExecutionOutcome:
    intervention_id: str
    idempotency_key: str
    execution: InterventionExecutionDB
    reused: bool

    def to_dict(self) -> Dict[str, Any]:
        execution = self.execution
        return {
            "intervention_id": self.intervention_id,
            "idempotency_key": self.idempotency_key,
            "execution": serialize_execution(execution),
            "reused": self.reused,
        }


def serialize_execution(execution: InterventionExecutionDB) -> Dict[str, Any]:
    return {
        "id": execution.id,
        "status": execution.execution_status.value,
        "result": execution.result_json or {},
        "error_message": execution.error_message,
        "started_at": execution.started_at.isoformat() if execution.started_at else None,
        "finished_at": execution.finished_at.isoformat() if execution.finished_at else None,
        "created_at": execution.created_at.isoformat() if execution.created_at else None,
    }


def serialize_recommendation(row: InterventionRecommendationDB) -> Dict[str, Any]:
    return {
        "id": row.id,
        "control_id": row.control_id,
        "campaign_id": row.campaign_id,
        "module_id": row.module_id,
        "recommendation_type": row.recommendation_type.value,
        "status": row.status.value,
        "rationale": row.rationale,
        "expected_impact_pct": float(row.expected_impact_pct),
        "confidence_score": float(row.confidence_score),
        "metadata": row.metadata_json or {},
        "proposed_by": row.proposed_by,
        "approved_by": row.approved_by,
        "approved_at": row.approved_at.isoformat() if row.approved_at else None,
        "dismissed_at": row.dismissed_at.isoformat() if row.dismissed_at else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


class InterventionWorkflow:
    """
    Approve, dismiss and execute intervention recommendations.

    Core Principles:
    - Transitions follow STATE_CONFIG; anything else is a CONFLICT
    - One execution row per idempotency key, claimed before side effects
    - A failed action reverts the recommendation to approved, never leaves it executing
    - Failures are recorded on the execution row and re-raised
    """

    def __init__(self, db: Session, dispatcher: Optional[NotificationDispatcher] = None):
        self.db = db
        self.dispatcher = dispatcher or NotificationJobQueue(db)
        self.action_handlers: Dict[RecommendationType, Callable[[str, InterventionRecommendationDB], Dict[str, Any]]] = {
            RecommendationType.REMINDER_CADENCE: self._reminder_cadence,
            RecommendationType.ATTESTATION_REFRESH: self._attestation_refresh,
            RecommendationType.MANAGER_ESCALATION: self._manager_escalation,
            RecommendationType.ROLE_REFRESHER_MODULE: self._role_refresher_module,
        }

    # =========================================================================
    # STATE HELPERS
    # =========================================================================

    def can_transition(self, from_state: InterventionStatus, to_state: InterventionStatus) -> Tuple[bool, str]:
        """Returns (allowed, reason)"""
        allowed = STATE_CONFIG.get(from_state, {}).get("allowed_transitions", [])
        if to_state in allowed:
            return True, "Transition allowed"
        return False, f"Cannot transition from {from_state.value} to {to_state.value}"

    def is_terminal_state(self, state: InterventionStatus) -> bool:
        return len(STATE_CONFIG.get(state, {}).get("allowed_transitions", [])) == 0

    def get_recommendation(self, org_id: str, intervention_id: str) -> InterventionRecommendationDB:
        recommendation = (
            self.db.query(InterventionRecommendationDB)
            .filter(
                InterventionRecommendationDB.org_id == org_id,
                InterventionRecommendationDB.id == intervention_id,
            )
            .first()
        )
        if recommendation is None:
            raise NotFoundError("Intervention recommendation not found")
        return recommendation

    def _commit(self, what: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Commit failed ({what}): {e}")
            raise DatabaseError(f"{what} failed")

    # =========================================================================
    # APPROVE / DISMISS
    # =========================================================================

    def approve(
        self,
        org_id: str,
        intervention_id: str,
        approved_by: str,
        note: Optional[str] = None,
    ) -> InterventionRecommendationDB:
        """
        Approve a proposed recommendation.

        Args:
            org_id: Organization scope
            intervention_id: Recommendation id
            approved_by: Approving user id
            note: Optional approval note stored in metadata

        Returns:
            The updated recommendation
        """
        recommendation = self.get_recommendation(org_id, intervention_id)
        allowed, _ = self.can_transition(recommendation.status, InterventionStatus.APPROVED)
        if not allowed:
            raise ConflictError("Only proposed interventions can be approved")

        recommendation.status = InterventionStatus.APPROVED
        recommendation.approved_by = approved_by
        recommendation.approved_at = utc_now()
        recommendation.metadata_json = {**(recommendation.metadata_json or {}), "approvalNote": note}
        self._commit("Approval")

        logger.info(f"Intervention {intervention_id} approved by {approved_by}")
        return recommendation

    def dismiss(
        self,
        org_id: str,
        intervention_id: str,
        dismissed_by: str,
        reason: Optional[str] = None,
    ) -> InterventionRecommendationDB:
        """Dismiss a proposed recommendation (terminal)."""
        recommendation = self.get_recommendation(org_id, intervention_id)
        allowed, _ = self.can_transition(recommendation.status, InterventionStatus.DISMISSED)
        if not allowed:
            raise ConflictError("Only proposed interventions can be dismissed")

        recommendation.status = InterventionStatus.DISMISSED
        recommendation.dismissed_by = dismissed_by
        recommendation.dismissed_at = utc_now()
        recommendation.metadata_json = {**(recommendation.metadata_json or {}), "dismissalReason": reason}
        self._commit("Dismissal")

        logger.info(f"Intervention {intervention_id} dismissed by {dismissed_by}")
        return recommendation

    # =========================================================================
    # EXECUTE
    # =========================================================================

    def _find_execution(self, org_id: str, intervention_id: str, key: str) -> Optional[InterventionExecutionDB]:
        return (
            self.db.query(InterventionExecutionDB)
            .filter(
                InterventionExecutionDB.org_id == org_id,
                InterventionExecutionDB.intervention_id == intervention_id,
                InterventionExecutionDB.idempotency_key == key,
            )
            .first()
        )

    def _has_active_sibling(self, recommendation: InterventionRecommendationDB) -> bool:
        """Another active recommendation of the same (control, type) holds the active slot."""
        sibling = (
            self.db.query(InterventionRecommendationDB.id)
            .filter(
                InterventionRecommendationDB.org_id == recommendation.org_id,
                InterventionRecommendationDB.control_id == recommendation.control_id,
                InterventionRecommendationDB.recommendation_type == recommendation.recommendation_type,
                InterventionRecommendationDB.status.in_(ACTIVE_INTERVENTION_STATUSES),
                InterventionRecommendationDB.id != recommendation.id,
            )
            .first()
        )
        return sibling is not None

    def execute(
        self,
        org_id: str,
        intervention_id: str,
        executed_by: str,
        idempotency_key: Optional[str] = None,
    ) -> ExecutionOutcome:
        """
        Execute an approved recommendation at most once per idempotency key.

        Args:
            org_id: Organization scope
            intervention_id: Recommendation id
            executed_by: Acting user id
            idempotency_key: Caller key (default: auto-<intervention_id>)

        Returns:
            ExecutionOutcome; reused=True when the key was already executed

        Raises:
            ConflictError: recommendation is not approved/executing/completed
            Exception: whatever the action raised, after recording the failure
        """
        recommendation = self.get_recommendation(org_id, intervention_id)
        if recommendation.status not in EXECUTABLE_STATUSES:
            raise ConflictError("Intervention must be approved before execution")

        key = idempotency_key or f"auto-{intervention_id}"
        existing = self._find_execution(org_id, intervention_id, key)
        if existing is not None:
            logger.info(f"Intervention {intervention_id} replayed with key {key}")
            return ExecutionOutcome(intervention_id, key, existing, reused=True)

        # A completed row re-entering executing would take the active slot of a newer proposal
        if recommendation.status == InterventionStatus.COMPLETED and self._has_active_sibling(recommendation):
            raise ConflictError("Another active intervention of this type exists for the control")

        # Claim: the unique (org, intervention, key) constraint decides concurrent winners
        execution = InterventionExecutionDB(
            id=str(uuid4()),
            org_id=org_id,
            intervention_id=intervention_id,
            execution_status=ExecutionStatus.RUNNING,
            idempotency_key=key,
            result_json={},
            executed_by=executed_by,
            started_at=utc_now(),
        )
        self.db.add(execution)
        recommendation.status = InterventionStatus.EXECUTING
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._find_execution(org_id, intervention_id, key)
            if existing is None:
                if self._has_active_sibling(recommendation):
                    raise ConflictError("Another active intervention of this type exists for the control")
                raise DatabaseError("Failed to record intervention execution")
            return ExecutionOutcome(intervention_id, key, existing, reused=True)

        try:
            with self.db.begin_nested():
                result = self.perform_action(org_id, recommendation)
        except Exception as e:
            execution.execution_status = ExecutionStatus.FAILED
            execution.error_message = str(e) or "Execution failed"
            execution.finished_at = utc_now()
            recommendation.status = InterventionStatus.APPROVED
            self._commit("Execution failure record")
            logger.error(f"Intervention {intervention_id} execution failed: {e}")
            raise

        execution.execution_status = ExecutionStatus.COMPLETED
        execution.result_json = result
        execution.finished_at = utc_now()
        recommendation.status = InterventionStatus.COMPLETED
        self._commit("Execution finalize")

        logger.info(f"Intervention {intervention_id} executed with key {key}: {result}")
        return ExecutionOutcome(intervention_id, key, execution, reused=False)

    # =========================================================================
    # ACTIONS
    # =========================================================================

    def perform_action(self, org_id: str, recommendation: InterventionRecommendationDB) -> Dict[str, Any]:
        """Run the type-specific action and return its structured result."""
        handler = self.action_handlers[recommendation.recommendation_type]
        return handler(org_id, recommendation)

    def _reminder_cadence(self, org_id: str, recommendation: InterventionRecommendationDB) -> Dict[str, Any]:
        query = self.db.query(AssignmentDB).filter(
            AssignmentDB.org_id == org_id,
            AssignmentDB.state != AssignmentState.COMPLETED,
        )
        if recommendation.campaign_id:
            query = query.filter(AssignmentDB.campaign_id == recommendation.campaign_id)
        if recommendation.module_id:
            query = query.filter(AssignmentDB.module_id == recommendation.module_id)
        assignments = query.order_by(AssignmentDB.created_at.asc()).limit(REMINDER_BATCH_LIMIT).all()

        queued = self.dispatcher.dispatch(org_id, [
            ReminderRequest(
                recipient=assignment.user_id,
                assignment_id=assignment.id,
                campaign_id=assignment.campaign_id,
            )
            for assignment in assignments
        ])
        return {"action": RecommendationType.REMINDER_CADENCE.value, "remindersQueued": queued}

    def _attestation_refresh(self, org_id: str, recommendation: InterventionRecommendationDB) -> Dict[str, Any]:
        rows = (
            self.db.query(EvidenceObjectDB)
            .filter(
                EvidenceObjectDB.org_id == org_id,
                EvidenceObjectDB.control_id == recommendation.control_id,
                EvidenceObjectDB.evidence_type == EvidenceType.ATTESTATION,
                EvidenceObjectDB.evidence_status.in_([EvidenceStatus.QUEUED, EvidenceStatus.SYNCED]),
            )
            .all()
        )
        for row in rows:
            row.evidence_status = EvidenceStatus.STALE
        self.db.flush()
        return {"action": RecommendationType.ATTESTATION_REFRESH.value, "evidenceMarkedStale": len(rows)}

    def _manager_escalation(self, org_id: str, recommendation: InterventionRecommendationDB) -> Dict[str, Any]:
        # Recorded intent only; no ticketing integration
        return {
            "action": RecommendationType.MANAGER_ESCALATION.value,
            "escalationCreated": True,
            "owner": ESCALATION_OWNER,
        }

    def _role_refresher_module(self, org_id: str, recommendation: InterventionRecommendationDB) -> Dict[str, Any]:
        role_track = (recommendation.metadata_json or {}).get("roleTrack")
        return {
            "action": RecommendationType.ROLE_REFRESHER_MODULE.value,
            "recommendedRoleTrack": role_track if isinstance(role_track, str) else "general",
            "note": REFRESHER_NOTE,
        }

    # =========================================================================
    # LISTING
    # =========================================================================

    def list_interventions(
        self,
        org_id: str,
        status: Optional[InterventionStatus] = None,
        control_id: Optional[str] = None,
        limit: int = 300,
    ) -> Dict[str, Any]:
        """Recommendations newest first, with status counts and the latest execution of each."""
        query = self.db.query(InterventionRecommendationDB).filter(InterventionRecommendationDB.org_id == org_id)
        if status is not None:
            query = query.filter(InterventionRecommendationDB.status == status)
        if control_id:
            query = query.filter(InterventionRecommendationDB.control_id == control_id)
        rows: List[InterventionRecommendationDB] = (
            query.order_by(InterventionRecommendationDB.created_at.desc()).limit(limit).all()
        )

        ids = [row.id for row in rows]
        latest_execution: Dict[str, InterventionExecutionDB] = {}
        if ids:
            executions = (
                self.db.query(InterventionExecutionDB)
                .filter(InterventionExecutionDB.org_id == org_id, InterventionExecutionDB.intervention_id.in_(ids))
                .order_by(InterventionExecutionDB.created_at.desc())
                .all()
            )
            for execution in executions:
                latest_execution.setdefault(execution.intervention_id, execution)

        controls = self._lookup(ControlDB, org_id, {row.control_id for row in rows})
        campaigns = self._lookup(LearningCampaignDB, org_id, {row.campaign_id for row in rows if row.campaign_id})
        modules = self._lookup(LearningModuleDB, org_id, {row.module_id for row in rows if row.module_id})

        status_counts = {s.value: 0 for s in InterventionStatus}
        items = []
        for row in rows:
            status_counts[row.status.value] += 1
            item = serialize_recommendation(row)
            control = controls.get(row.control_id)
            campaign = campaigns.get(row.campaign_id)
            module = modules.get(row.module_id)
            item["control"] = (
                {"id": control.id, "code": control.code, "title": control.title,
                 "risk_level": control.risk_level.value}
                if control else None
            )
            item["campaign"] = {"id": campaign.id, "name": campaign.name} if campaign else None
            item["module"] = (
                {"id": module.id, "title": module.title,
                 "role_track": module.role_track.value if module.role_track else None}
                if module else None
            )
            execution = latest_execution.get(row.id)
            item["latest_execution"] = serialize_execution(execution) if execution else None
            items.append(item)

        return {
            "summary": {"total": len(rows), "status_counts": status_counts},
            "items": items,
        }

    def _lookup(self, model, org_id: str, ids) -> Dict[str, Any]:
        if not ids:
            return {}
        rows = self.db.query(model).filter(model.org_id == org_id, model.id.in_(list(ids))).all()
        return {row.id: row for row in rows}
