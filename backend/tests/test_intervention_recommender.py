"""
Tests for intervention recommendation.

1. Proposal rules per freshness state (pure)
2. Generation: snapshots, active-pair dedup, caps, compat mode
3. Store-enforced uniqueness of active recommendations
"""
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from app.models.adoption import EvidenceSignal, RecommendationContext
from app.models.db_models import (
    ControlFreshnessSnapshotDB, EvidenceStatus, EvidenceType, InterventionRecommendationDB,
    InterventionStatus, RecommendationType, RiskLevel, RoleTrack, utc_now,
)
from app.services.adoption import (
    AdoptionRepository, InterventionRecommender, NotFoundError, SchemaCapabilities,
    compute_control_freshness, recommend_interventions,
)
from app.services.adoption.intervention_recommender import RATIONALES

from factories import NOW, ORG_ID, days_ago


def context_for(evidence, role_track=None, risk_level=RiskLevel.HIGH):
    freshness = compute_control_freshness("c1", evidence, None, now=NOW)
    return RecommendationContext(
        control_id="c1",
        control_code="SOC2:CC2.2",
        control_title="Security awareness training",
        risk_level=risk_level,
        role_track=role_track,
        freshness=freshness,
    )


def signal(days, status=EvidenceStatus.SYNCED):
    return EvidenceSignal(
        evidence_status=status, occurred_at=days_ago(days), evidence_type=EvidenceType.ATTESTATION,
    )


def types_of(proposals):
    return [p.recommendation_type for p in proposals]


# =============================================================================
# PROPOSAL RULES
# =============================================================================

class TestRecommendInterventions:

    def test_fresh_control_gets_nothing(self):
        assert recommend_interventions(context_for([signal(1)])) == []

    def test_aging_control_gets_light_reminder(self):
        proposals = recommend_interventions(context_for([signal(10)]))
        assert types_of(proposals) == [RecommendationType.REMINDER_CADENCE]
        assert proposals[0].expected_impact_pct == 8
        assert proposals[0].confidence_score == 0.68
        assert proposals[0].metadata == {"state": "aging", "controlCode": "SOC2:CC2.2"}

    def test_stale_control_gets_reminder_and_attestation(self):
        proposals = recommend_interventions(context_for([signal(20)]))
        assert types_of(proposals) == [
            RecommendationType.REMINDER_CADENCE,
            RecommendationType.ATTESTATION_REFRESH,
        ]
        assert proposals[0].expected_impact_pct == 14
        assert proposals[0].confidence_score == 0.76
        assert proposals[1].metadata == {"staleCount": 0, "rejectedCount": 0}

    def test_critical_control_keeps_first_three(self):
        proposals = recommend_interventions(context_for([], role_track=RoleTrack.BUILDER))
        assert types_of(proposals) == [
            RecommendationType.REMINDER_CADENCE,
            RecommendationType.ATTESTATION_REFRESH,
            RecommendationType.MANAGER_ESCALATION,
        ]
        assert proposals[2].metadata == {"riskLevel": "high", "roleTrack": "builder"}
        assert proposals[2].rationale == RATIONALES[RecommendationType.MANAGER_ESCALATION]

    def test_repeated_rejections_escalate_fresh_control(self):
        evidence = [signal(1), signal(2, EvidenceStatus.REJECTED), signal(3, EvidenceStatus.REJECTED)]
        proposals = recommend_interventions(context_for(evidence))
        assert types_of(proposals) == [
            RecommendationType.MANAGER_ESCALATION,
            RecommendationType.ROLE_REFRESHER_MODULE,
        ]
        assert proposals[1].expected_impact_pct == 21
        assert proposals[1].metadata == {"roleTrack": None}


# =============================================================================
# GENERATION
# =============================================================================

class TestInterventionRecommender:

    def test_generates_for_critical_control(self, db, seed):
        control = seed.control()
        campaign = seed.campaign()
        module = seed.module(campaign, role_track=RoleTrack.BUILDER)
        seed.mapping(control, campaign=campaign, module=module)

        result = InterventionRecommender(db).generate(ORG_ID, proposed_by="admin-1")

        assert len(result["created"]) == 3
        assert result["skipped"] == 0
        assert result["snapshots_recorded"] == 1
        assert result["compat_mode"] is False

        rows = db.query(InterventionRecommendationDB).all()
        assert {r.status for r in rows} == {InterventionStatus.PROPOSED}
        escalation = next(r for r in rows if r.recommendation_type == RecommendationType.MANAGER_ESCALATION)
        assert escalation.campaign_id == campaign.id
        assert escalation.module_id == module.id
        assert escalation.metadata_json["roleTrack"] == "builder"
        assert escalation.metadata_json["freshnessState"] == "critical"
        assert escalation.proposed_by == "admin-1"

    def test_fresh_control_produces_no_proposals(self, db, seed):
        control = seed.control()
        seed.evidence(control, utc_now() - timedelta(days=1))

        result = InterventionRecommender(db).generate(ORG_ID, proposed_by="admin-1")

        assert result["created"] == []
        assert result["snapshots_recorded"] == 1

    def test_second_run_skips_active_pairs(self, db, seed):
        seed.control()
        recommender = InterventionRecommender(db)
        recommender.generate(ORG_ID, proposed_by="admin-1")

        second = recommender.generate(ORG_ID, proposed_by="admin-1")

        assert second["created"] == []
        assert second["skipped"] == 3
        assert db.query(InterventionRecommendationDB).count() == 3
        assert db.query(ControlFreshnessSnapshotDB).count() == 2

    def test_closed_recommendations_allow_new_proposals(self, db, seed):
        control = seed.control()
        seed.recommendation(control, RecommendationType.REMINDER_CADENCE, status=InterventionStatus.COMPLETED)
        seed.recommendation(control, RecommendationType.ATTESTATION_REFRESH, status=InterventionStatus.DISMISSED)
        seed.recommendation(control, RecommendationType.MANAGER_ESCALATION, status=InterventionStatus.APPROVED)

        result = InterventionRecommender(db).generate(ORG_ID, proposed_by="admin-1")

        assert sorted(r.recommendation_type.value for r in result["created"]) == [
            "attestation_refresh", "reminder_cadence",
        ]
        assert result["skipped"] == 1

    def test_max_recommendations_caps_across_controls(self, db, seed):
        seed.control(code="A-1")
        seed.control(code="B-1")

        result = InterventionRecommender(db).generate(ORG_ID, proposed_by="admin-1", max_recommendations=4)

        assert len(result["created"]) == 4

    def test_control_scope(self, db, seed):
        target = seed.control(code="A-1")
        seed.control(code="B-1")

        result = InterventionRecommender(db).generate(ORG_ID, proposed_by="admin-1", control_id=target.id)

        assert {r.control_id for r in result["created"]} == {target.id}
        assert result["snapshots_recorded"] == 1

    def test_unknown_control_is_not_found(self, db, seed):
        with pytest.raises(NotFoundError):
            InterventionRecommender(db).generate(ORG_ID, proposed_by="admin-1", control_id="missing")

    def test_missing_snapshot_table_degrades_to_compat(self, db, seed):
        seed.control()
        repository = AdoptionRepository(db, SchemaCapabilities.from_tables([]))

        result = InterventionRecommender(db, repository).generate(ORG_ID, proposed_by="admin-1")

        assert result["compat_mode"] is True
        assert result["snapshots_recorded"] == 0
        assert len(result["created"]) == 3
        assert db.query(ControlFreshnessSnapshotDB).count() == 0

    def test_other_org_controls_are_ignored(self, db, seed):
        seed.control(org_id="org-other")

        result = InterventionRecommender(db).generate(ORG_ID, proposed_by="admin-1")

        assert result["created"] == []


class TestActiveRecommendationUniqueness:
    """The partial unique index rejects a second active row of the same type."""

    def test_duplicate_active_pair_rejected_by_store(self, db, seed):
        control = seed.control()
        seed.recommendation(control, RecommendationType.REMINDER_CADENCE)

        with pytest.raises(IntegrityError):
            seed.recommendation(control, RecommendationType.REMINDER_CADENCE, status=InterventionStatus.APPROVED)
        db.rollback()

    def test_inactive_duplicates_allowed(self, db, seed):
        control = seed.control()
        seed.recommendation(control, RecommendationType.REMINDER_CADENCE, status=InterventionStatus.COMPLETED)
        seed.recommendation(control, RecommendationType.REMINDER_CADENCE, status=InterventionStatus.DISMISSED)
        seed.recommendation(control, RecommendationType.REMINDER_CADENCE)

        assert db.query(InterventionRecommendationDB).count() == 3
