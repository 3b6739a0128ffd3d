"""
Control Adoption Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum,
    Boolean, Index, UniqueConstraint, func,
)
from ..database import Base


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC (SQLite hands back naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum(enum_cls):
    """Store enum values (not member names) as plain VARCHAR."""
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


# =============================================================================
# ENUMS
# =============================================================================

class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RoleTrack(str, Enum):
    EXEC = "exec"
    BUILDER = "builder"
    GENERAL = "general"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class AssignmentState(str, Enum):
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class MappingStrength(str, Enum):
    PRIMARY = "primary"
    SUPPORTING = "supporting"


class EvidenceType(str, Enum):
    """Compliance-relevant events that produce evidence."""
    MATERIAL_ACKNOWLEDGMENT = "material_acknowledgment"
    QUIZ_ATTEMPT = "quiz_attempt"
    QUIZ_PASS = "quiz_pass"
    ATTESTATION = "attestation"
    CAMPAIGN_EXPORT = "campaign_export"


class EvidenceStatus(str, Enum):
    QUEUED = "queued"
    SYNCED = "synced"
    REJECTED = "rejected"
    STALE = "stale"
    SUPERSEDED = "superseded"


class RelationType(str, Enum):
    """Directed lineage relation between two evidence records."""
    DERIVED_FROM = "derived_from"
    SUPERSEDES = "supersedes"
    EXPORTED_IN = "exported_in"


class FreshnessState(str, Enum):
    FRESH = "fresh"
    AGING = "aging"
    STALE = "stale"
    CRITICAL = "critical"


class RecommendationType(str, Enum):
    REMINDER_CADENCE = "reminder_cadence"
    ROLE_REFRESHER_MODULE = "role_refresher_module"
    MANAGER_ESCALATION = "manager_escalation"
    ATTESTATION_REFRESH = "attestation_refresh"


class InterventionStatus(str, Enum):
    """States in the intervention execution workflow."""
    PROPOSED = "proposed"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    DISMISSED = "dismissed"


ACTIVE_INTERVENTION_STATUSES = (
    InterventionStatus.PROPOSED,
    InterventionStatus.APPROVED,
    InterventionStatus.EXECUTING,
)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BenchmarkMetric(str, Enum):
    CONTROL_FRESHNESS = "control_freshness"
    TIME_TO_ACK_HOURS = "time_to_ack_hours"
    STALE_CONTROLS_RATIO = "stale_controls_ratio"


# =============================================================================
# TRAINING CATALOG (owned by the campaign pipeline, read here)
# =============================================================================

class ControlDB(Base):
    """A named compliance requirement, e.g. SOC2:CC2.2."""
    __tablename__ = "controls"
    __table_args__ = (UniqueConstraint("org_id", "code", name="uq_controls_org_code"),)

    id = Column(String(36), primary_key=True)  # UUID
    org_id = Column(String(36), nullable=False, index=True)
    code = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    risk_level = Column(_enum(RiskLevel), nullable=False, default=RiskLevel.MEDIUM)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class PolicyObligationDB(Base):
    """Obligation extracted from an uploaded policy document."""
    __tablename__ = "policy_obligations"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    policy_id = Column(String(36), nullable=True)
    title = Column(String(255), nullable=False)
    detail = Column(Text, nullable=True)
    severity = Column(_enum(RiskLevel), nullable=False, default=RiskLevel.MEDIUM)
    role_track = Column(_enum(RoleTrack), nullable=False, default=RoleTrack.GENERAL)

    created_at = Column(DateTime(timezone=True), default=utc_now)


class LearningCampaignDB(Base):
    """Training campaign. Its updated_at is the proxy for 'policy last changed'."""
    __tablename__ = "learning_campaigns"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    name = Column(String(160), nullable=False)
    status = Column(_enum(CampaignStatus), nullable=False, default=CampaignStatus.DRAFT)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class LearningModuleDB(Base):
    __tablename__ = "learning_modules"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    campaign_id = Column(String(36), ForeignKey("learning_campaigns.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(120), nullable=False)
    role_track = Column(_enum(RoleTrack), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)


class AssignmentDB(Base):
    """A learner's assignment to a module."""
    __tablename__ = "assignments"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    campaign_id = Column(String(36), ForeignKey("learning_campaigns.id", ondelete="CASCADE"), nullable=False)
    module_id = Column(String(36), ForeignKey("learning_modules.id", ondelete="CASCADE"), nullable=True)
    user_id = Column(String(36), nullable=False)
    state = Column(_enum(AssignmentState), nullable=False, default=AssignmentState.ASSIGNED)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    due_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class ControlMappingDB(Base):
    """
    Maps a control to the campaign/module/obligation that trains it.
    Only one active mapping per (control, campaign, module, obligation).
    """
    __tablename__ = "control_mappings"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    control_id = Column(String(36), ForeignKey("controls.id", ondelete="CASCADE"), nullable=False, index=True)
    campaign_id = Column(String(36), nullable=True)
    module_id = Column(String(36), nullable=True)
    policy_id = Column(String(36), nullable=True)
    obligation_id = Column(String(36), nullable=True)
    mapping_strength = Column(_enum(MappingStrength), nullable=False, default=MappingStrength.PRIMARY)
    active = Column(Boolean, nullable=False, default=True)
    metadata_json = Column(JSON, nullable=True, default=dict)
    created_by = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


Index(
    "uq_control_mappings_active",
    ControlMappingDB.org_id,
    ControlMappingDB.control_id,
    func.coalesce(ControlMappingDB.campaign_id, ""),
    func.coalesce(ControlMappingDB.module_id, ""),
    func.coalesce(ControlMappingDB.obligation_id, ""),
    unique=True,
    postgresql_where=ControlMappingDB.active.is_(True),
    sqlite_where=ControlMappingDB.active.is_(True),
)


# =============================================================================
# EVIDENCE STORE (append-only)
# =============================================================================

class EvidenceObjectDB(Base):
    """
    Immutable fact describing a compliance-relevant event.
    Only evidence_status (and superseded_by_evidence_id) ever change after insert.

    dedup_key identifies (org, type, source_table, source_id, control);
    (org_id, dedup_key, version) is unique so concurrent identical inserts collide in the store.
    """
    __tablename__ = "evidence_objects"
    __table_args__ = (
        UniqueConstraint("org_id", "dedup_key", "version", name="uq_evidence_dedup_version"),
        Index("idx_evidence_org_control", "org_id", "control_id"),
    )

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False)
    control_id = Column(String(36), ForeignKey("controls.id", ondelete="SET NULL"), nullable=True)
    campaign_id = Column(String(36), nullable=True, index=True)
    module_id = Column(String(36), nullable=True)
    assignment_id = Column(String(36), nullable=True)
    user_id = Column(String(36), nullable=True)

    evidence_type = Column(_enum(EvidenceType), nullable=False)
    evidence_status = Column(_enum(EvidenceStatus), nullable=False, default=EvidenceStatus.QUEUED)
    confidence_score = Column(Float, nullable=False, default=0.8)  # 0..1
    quality_score = Column(Float, nullable=False, default=80)  # 0..100

    # Integrity
    checksum = Column(String(64), nullable=False)  # SHA-256 of canonical content
    lineage_hash = Column(String(64), nullable=False)  # SHA-256 chained over superseded versions
    dedup_key = Column(String(64), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    superseded_by_evidence_id = Column(String(36), nullable=True)

    source_table = Column(String(64), nullable=False)
    source_id = Column(String(64), nullable=False)
    metadata_json = Column(JSON, nullable=True, default=dict)
    created_by = Column(String(36), nullable=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class EvidenceLineageLinkDB(Base):
    """Directed edge between two evidence records. Upserted with ignore-duplicates."""
    __tablename__ = "evidence_lineage_links"
    __table_args__ = (
        UniqueConstraint(
            "org_id", "source_evidence_id", "target_evidence_id", "relation_type",
            name="uq_evidence_lineage_edge",
        ),
    )

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    source_evidence_id = Column(String(36), ForeignKey("evidence_objects.id"), nullable=False, index=True)
    target_evidence_id = Column(String(36), ForeignKey("evidence_objects.id"), nullable=False, index=True)
    relation_type = Column(_enum(RelationType), nullable=False)
    metadata_json = Column(JSON, nullable=True, default=dict)
    created_by = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)


# =============================================================================
# ADOPTION ANALYTICS (optional capability tables)
# =============================================================================

class ControlFreshnessSnapshotDB(Base):
    """Append-only history of computed freshness, for trend charts."""
    __tablename__ = "control_freshness_snapshots"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    control_id = Column(String(36), ForeignKey("controls.id", ondelete="CASCADE"), nullable=False, index=True)

    freshness_state = Column(_enum(FreshnessState), nullable=False)
    freshness_score = Column(Float, nullable=False)
    fresh_evidence_count = Column(Integer, default=0)
    stale_evidence_count = Column(Integer, default=0)
    rejected_evidence_count = Column(Integer, default=0)
    synced_evidence_count = Column(Integer, default=0)
    median_ack_hours = Column(Float, nullable=True)
    last_policy_update_at = Column(DateTime(timezone=True), nullable=True)
    latest_evidence_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column(JSON, nullable=True, default=dict)

    computed_at = Column(DateTime(timezone=True), default=utc_now, index=True)


class AdoptionEdgeDB(Base):
    """Curated adoption edges persisted by analysts."""
    __tablename__ = "adoption_edges"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    edge_type = Column(String(32), nullable=False)
    obligation_id = Column(String(36), nullable=True)
    control_id = Column(String(36), nullable=True)
    campaign_id = Column(String(36), nullable=True)
    module_id = Column(String(36), nullable=True)
    weight = Column(Float, nullable=False, default=1.0)
    metadata_json = Column(JSON, nullable=True, default=dict)

    created_at = Column(DateTime(timezone=True), default=utc_now)


class BenchmarkCohortDB(Base):
    __tablename__ = "benchmark_cohorts"

    id = Column(String(36), primary_key=True)
    code = Column(String(64), unique=True, nullable=False)
    label = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    min_sample_size = Column(Integer, nullable=False, default=5)
    active = Column(Boolean, nullable=False, default=True)


class BenchmarkMetricSnapshotDB(Base):
    """
    Org rows carry the org's metric and percentile.
    Cohort rows have org_id NULL and anonymized = true.
    """
    __tablename__ = "benchmark_metric_snapshots"
    __table_args__ = (
        Index("idx_benchmark_lookup", "cohort_id", "metric_name", "snapshot_at"),
    )

    id = Column(String(36), primary_key=True)
    cohort_id = Column(String(36), ForeignKey("benchmark_cohorts.id", ondelete="CASCADE"), nullable=False)
    org_id = Column(String(36), nullable=True)
    metric_name = Column(_enum(BenchmarkMetric), nullable=False)
    metric_value = Column(Float, nullable=False)
    percentile_rank = Column(Float, nullable=True)
    anonymized = Column(Boolean, nullable=False, default=False)

    snapshot_at = Column(DateTime(timezone=True), default=utc_now)


# =============================================================================
# INTERVENTION WORKFLOW
# =============================================================================

class InterventionRecommendationDB(Base):
    """
    A proposed remediation action tied to one control.
    At most one active (proposed/approved/executing) row per (control, type).
    """
    __tablename__ = "intervention_recommendations"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    control_id = Column(String(36), ForeignKey("controls.id", ondelete="CASCADE"), nullable=False, index=True)
    campaign_id = Column(String(36), nullable=True)
    module_id = Column(String(36), nullable=True)

    recommendation_type = Column(_enum(RecommendationType), nullable=False)
    status = Column(_enum(InterventionStatus), nullable=False, default=InterventionStatus.PROPOSED)
    rationale = Column(Text, nullable=False)
    expected_impact_pct = Column(Float, nullable=False)
    confidence_score = Column(Float, nullable=False)
    metadata_json = Column(JSON, nullable=True, default=dict)

    proposed_by = Column(String(36), nullable=True)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    dismissed_by = Column(String(36), nullable=True)
    dismissed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


Index(
    "uq_intervention_active_per_type",
    InterventionRecommendationDB.org_id,
    InterventionRecommendationDB.control_id,
    InterventionRecommendationDB.recommendation_type,
    unique=True,
    postgresql_where=InterventionRecommendationDB.status.in_(
        [s.value for s in ACTIVE_INTERVENTION_STATUSES]
    ),
    sqlite_where=InterventionRecommendationDB.status.in_(
        [s.value for s in ACTIVE_INTERVENTION_STATUSES]
    ),
)


class InterventionExecutionDB(Base):
    """
    A single attempt to carry out an approved recommendation.
    (org_id, intervention_id, idempotency_key) is unique.
    """
    __tablename__ = "intervention_executions"
    __table_args__ = (
        UniqueConstraint(
            "org_id", "intervention_id", "idempotency_key",
            name="uq_intervention_execution_key",
        ),
    )

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False)
    intervention_id = Column(
        String(36), ForeignKey("intervention_recommendations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    execution_status = Column(_enum(ExecutionStatus), nullable=False, default=ExecutionStatus.RUNNING)
    idempotency_key = Column(String(128), nullable=False)
    result_json = Column(JSON, nullable=True, default=dict)
    error_message = Column(Text, nullable=True)
    executed_by = Column(String(36), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class NotificationJobDB(Base):
    """Queued reminder for the email dispatcher."""
    __tablename__ = "notification_jobs"

    id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    campaign_id = Column(String(36), nullable=True)
    assignment_id = Column(String(36), nullable=True)
    recipient = Column(String(255), nullable=False)
    notification_type = Column(String(32), nullable=False, default="reminder")
    status = Column(String(20), nullable=False, default="queued")

    created_at = Column(DateTime(timezone=True), default=utc_now)


class RequestAuditLogDB(Base):
    """
    One row per mutating or sensitive request.
    Append-only.
    """
    __tablename__ = "request_audit_logs"

    id = Column(String(36), primary_key=True)
    request_id = Column(String(64), nullable=False, index=True)
    org_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=True)
    route = Column(String(255), nullable=False)
    action = Column(String(64), nullable=False)
    status_code = Column(Integer, nullable=False)
    error_code = Column(String(32), nullable=True)
    metadata_json = Column(JSON, nullable=True, default=dict)

    created_at = Column(DateTime(timezone=True), default=utc_now)
