"""
Tests for the evidence store.

Test Coverage:
1. Checksum and dedup key determinism
2. Fan-out to mapped controls and idempotent re-delivery
3. force_new_version: supersession, lineage link, hash chain
4. Validation and status transitions
"""
import pytest

from app.models.db_models import (
    EvidenceLineageLinkDB, EvidenceObjectDB, EvidenceStatus, EvidenceType, RelationType,
)
from app.services.adoption import ConflictError, EvidenceStore, NotFoundError, ValidationError
from app.services.adoption.evidence_store import (
    NULL_CONTROL_KEY, build_dedup_key, build_evidence_checksum, build_lineage_hash,
    can_transition_evidence, serialize_evidence,
)

from factories import NOW, ORG_ID, days_ago


@pytest.fixture
def store(db):
    return EvidenceStore(db)


# =============================================================================
# HASHING
# =============================================================================

class TestHashing:

    def test_checksum_is_deterministic(self):
        args = (ORG_ID, EvidenceType.QUIZ_PASS, "quiz_attempts", "qa-1", "c1", NOW, {"score": 90})
        assert build_evidence_checksum(*args) == build_evidence_checksum(*args)
        assert len(build_evidence_checksum(*args)) == 64

    def test_checksum_ignores_metadata_key_order(self):
        first = build_evidence_checksum(
            ORG_ID, EvidenceType.QUIZ_PASS, "quiz_attempts", "qa-1", "c1", NOW, {"a": 1, "b": 2},
        )
        second = build_evidence_checksum(
            ORG_ID, EvidenceType.QUIZ_PASS, "quiz_attempts", "qa-1", "c1", NOW, {"b": 2, "a": 1},
        )
        assert first == second

    def test_checksum_changes_with_content(self):
        base = build_evidence_checksum(ORG_ID, EvidenceType.QUIZ_PASS, "t", "1", "c1", NOW, {})
        other = build_evidence_checksum(ORG_ID, EvidenceType.QUIZ_PASS, "t", "1", "c2", NOW, {})
        assert base != other

    def test_dedup_key_uses_null_placeholder(self):
        without = build_dedup_key(ORG_ID, EvidenceType.ATTESTATION, "t", "1", None)
        explicit = build_dedup_key(ORG_ID, EvidenceType.ATTESTATION, "t", "1", NULL_CONTROL_KEY)
        assert without == explicit
        assert without != build_dedup_key(ORG_ID, EvidenceType.ATTESTATION, "t", "1", "c1")

    def test_lineage_hash_chains(self):
        assert build_lineage_hash("abc", None) == build_lineage_hash("abc", "")
        assert build_lineage_hash("abc", "prev") != build_lineage_hash("abc", None)


# =============================================================================
# CREATION
# =============================================================================

class TestCreateEvidence:

    def test_fans_out_to_mapped_controls(self, db, seed, store):
        first, second = seed.control(code="A-1"), seed.control(code="B-1")
        unmapped = seed.control(code="C-1")
        campaign = seed.campaign()
        module = seed.module(campaign)
        seed.mapping(first, campaign=campaign)
        seed.mapping(second, module=module)
        seed.mapping(unmapped, campaign=campaign, active=False)

        result = store.create_evidence_objects(
            ORG_ID, EvidenceType.QUIZ_PASS, "quiz_attempts", "qa-1",
            campaign_id=campaign.id, module_id=module.id, metadata={"score": 92}, occurred_at=days_ago(1),
        )
        db.commit()

        assert result.created == 2
        assert sorted(result.control_ids) == sorted([first.id, second.id])
        rows = db.query(EvidenceObjectDB).all()
        assert {r.control_id for r in rows} == {first.id, second.id}
        assert {r.version for r in rows} == {1}
        assert {r.evidence_status for r in rows} == {EvidenceStatus.QUEUED}
        for row in rows:
            assert row.lineage_hash == build_lineage_hash(row.checksum, None)

    def test_redelivery_creates_nothing(self, db, seed, store):
        control = seed.control()
        campaign = seed.campaign()
        seed.mapping(control, campaign=campaign)
        kwargs = dict(campaign_id=campaign.id, occurred_at=days_ago(1))

        store.create_evidence_objects(ORG_ID, EvidenceType.ATTESTATION, "attestations", "at-1", **kwargs)
        db.commit()
        again = store.create_evidence_objects(ORG_ID, EvidenceType.ATTESTATION, "attestations", "at-1", **kwargs)

        assert again.created == 0
        assert again.evidence_ids == []
        assert db.query(EvidenceObjectDB).count() == 1

    def test_force_new_version_supersedes_prior(self, db, seed, store):
        control = seed.control()
        first = store.create_evidence_objects(
            ORG_ID, EvidenceType.ATTESTATION, "attestations", "at-1",
            control_id=control.id, occurred_at=days_ago(5),
        )
        db.commit()

        second = store.create_evidence_objects(
            ORG_ID, EvidenceType.ATTESTATION, "attestations", "at-1",
            control_id=control.id, occurred_at=days_ago(1), force_new_version=True, created_by="admin-1",
        )
        db.commit()

        assert second.created == 1
        old = db.query(EvidenceObjectDB).filter_by(id=first.evidence_ids[0]).one()
        new = db.query(EvidenceObjectDB).filter_by(id=second.evidence_ids[0]).one()
        assert new.version == 2
        assert new.dedup_key == old.dedup_key
        assert old.evidence_status == EvidenceStatus.SUPERSEDED
        assert old.superseded_by_evidence_id == new.id
        assert new.lineage_hash == build_lineage_hash(new.checksum, old.lineage_hash)

        link = db.query(EvidenceLineageLinkDB).one()
        assert link.source_evidence_id == new.id
        assert link.target_evidence_id == old.id
        assert link.relation_type == RelationType.SUPERSEDES
        assert link.metadata_json == {"reason": "force_new_version"}

    def test_third_version_only_supersedes_active_rows(self, db, seed, store):
        control = seed.control()
        for _ in range(3):
            store.create_evidence_objects(
                ORG_ID, EvidenceType.ATTESTATION, "attestations", "at-1",
                control_id=control.id, occurred_at=days_ago(1), force_new_version=True,
            )
            db.commit()

        rows = db.query(EvidenceObjectDB).order_by(EvidenceObjectDB.version).all()
        assert [r.version for r in rows] == [1, 2, 3]
        assert [r.evidence_status for r in rows] == [
            EvidenceStatus.SUPERSEDED, EvidenceStatus.SUPERSEDED, EvidenceStatus.QUEUED,
        ]
        assert rows[0].superseded_by_evidence_id == rows[1].id
        assert db.query(EvidenceLineageLinkDB).count() == 2

    def test_no_mapping_writes_controlless_row(self, db, seed, store):
        campaign = seed.campaign()

        result = store.create_evidence_objects(
            ORG_ID, EvidenceType.MATERIAL_ACKNOWLEDGMENT, "acknowledgments", "ack-1", campaign_id=campaign.id,
        )
        db.commit()

        assert result.created == 1
        assert result.control_ids == []
        row = db.query(EvidenceObjectDB).one()
        assert row.control_id is None
        assert row.dedup_key == build_dedup_key(
            ORG_ID, EvidenceType.MATERIAL_ACKNOWLEDGMENT, "acknowledgments", "ack-1", None,
        )

    def test_explicit_control_skips_mappings(self, db, seed, store):
        mapped, explicit = seed.control(code="A-1"), seed.control(code="B-1")
        campaign = seed.campaign()
        seed.mapping(mapped, campaign=campaign)

        result = store.create_evidence_objects(
            ORG_ID, EvidenceType.ATTESTATION, "attestations", "at-9",
            control_id=explicit.id, campaign_id=campaign.id,
        )

        assert result.control_ids == [explicit.id]
        assert db.query(EvidenceObjectDB).one().control_id == explicit.id

    @pytest.mark.parametrize("kwargs,message", [
        ({"confidence_score": 1.5}, "confidence_score"),
        ({"confidence_score": -0.1}, "confidence_score"),
        ({"quality_score": 101}, "quality_score"),
    ])
    def test_score_ranges_validated(self, store, kwargs, message):
        with pytest.raises(ValidationError, match=message):
            store.create_evidence_objects(ORG_ID, EvidenceType.ATTESTATION, "attestations", "at-1", **kwargs)

    def test_source_reference_required(self, store):
        with pytest.raises(ValidationError):
            store.create_evidence_objects(ORG_ID, EvidenceType.ATTESTATION, "", "at-1")

    def test_serialize_evidence(self, db, seed, store):
        control = seed.control()
        result = store.create_evidence_objects(
            ORG_ID, EvidenceType.ATTESTATION, "attestations", "at-1",
            control_id=control.id, occurred_at=NOW, metadata={"signedBy": "ciso"},
        )
        db.commit()

        payload = serialize_evidence(db.query(EvidenceObjectDB).filter_by(id=result.evidence_ids[0]).one())

        assert payload["evidence_status"] == "queued"
        assert payload["metadata"] == {"signedBy": "ciso"}
        assert payload["occurred_at"] == NOW.isoformat()
        assert payload["version"] == 1


# =============================================================================
# STATUS
# =============================================================================

class TestEvidenceStatus:

    @pytest.mark.parametrize("from_status,to_status,allowed", [
        (EvidenceStatus.QUEUED, EvidenceStatus.SYNCED, True),
        (EvidenceStatus.SYNCED, EvidenceStatus.QUEUED, False),
        (EvidenceStatus.STALE, EvidenceStatus.SYNCED, False),
        (EvidenceStatus.SYNCED, EvidenceStatus.STALE, True),
        (EvidenceStatus.SUPERSEDED, EvidenceStatus.REJECTED, True),
        (EvidenceStatus.STALE, EvidenceStatus.STALE, False),
    ])
    def test_can_transition(self, from_status, to_status, allowed):
        assert can_transition_evidence(from_status, to_status) is allowed

    def test_transition_updates_row(self, db, seed, store):
        row = seed.evidence(seed.control(), days_ago(1), status=EvidenceStatus.QUEUED)

        updated = store.transition_evidence_status(ORG_ID, row.id, EvidenceStatus.SYNCED)

        assert updated.evidence_status == EvidenceStatus.SYNCED

    def test_invalid_transition_conflicts(self, seed, store):
        row = seed.evidence(seed.control(), days_ago(1), status=EvidenceStatus.SYNCED)

        with pytest.raises(ConflictError):
            store.transition_evidence_status(ORG_ID, row.id, EvidenceStatus.QUEUED)

    def test_unknown_evidence_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.transition_evidence_status(ORG_ID, "missing", EvidenceStatus.STALE)

    def test_mark_campaign_evidence_stale(self, db, seed, store):
        control = seed.control()
        campaign = seed.campaign()
        seed.evidence(control, days_ago(1), status=EvidenceStatus.QUEUED, campaign=campaign)
        seed.evidence(control, days_ago(2), status=EvidenceStatus.SYNCED, campaign=campaign)
        seed.evidence(control, days_ago(3), status=EvidenceStatus.REJECTED, campaign=campaign)
        seed.evidence(control, days_ago(1), status=EvidenceStatus.SYNCED)

        marked = store.mark_campaign_evidence_stale(ORG_ID, campaign.id)

        assert marked == 2
        assert db.query(EvidenceObjectDB).filter_by(evidence_status=EvidenceStatus.STALE).count() == 2

    def test_list_evidence_filters(self, seed, store):
        control = seed.control()
        seed.evidence(control, days_ago(1), status=EvidenceStatus.SYNCED)
        seed.evidence(control, days_ago(3), status=EvidenceStatus.STALE)
        seed.evidence(None, days_ago(2))

        assert len(store.list_evidence(ORG_ID)) == 3
        assert len(store.list_evidence(ORG_ID, control_id=control.id)) == 2
        only_stale = store.list_evidence(ORG_ID, status=EvidenceStatus.STALE)
        assert [r.evidence_status for r in only_stale] == [EvidenceStatus.STALE]
