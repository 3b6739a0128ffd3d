"""
Tests for control mapping replacement.
"""
import pytest
from sqlalchemy.exc import IntegrityError

from app.models.db_models import ControlMappingDB, MappingStrength
from app.services.adoption import ConflictError, MappingInput, NotFoundError, replace_control_mappings

from factories import ORG_ID, OTHER_ORG_ID


class TestReplaceControlMappings:

    def test_replaces_active_set(self, db, seed):
        control = seed.control()
        old_campaign, new_campaign = seed.campaign(name="Old"), seed.campaign(name="New")
        module = seed.module(new_campaign)
        previous = seed.mapping(control, campaign=old_campaign)

        inserted = replace_control_mappings(db, ORG_ID, control.id, [
            MappingInput(campaign_id=new_campaign.id),
            MappingInput(module_id=module.id, mapping_strength=MappingStrength.SUPPORTING),
        ], created_by="admin-1")
        db.commit()

        assert len(inserted) == 2
        db.refresh(previous)
        assert previous.active is False
        active = db.query(ControlMappingDB).filter_by(control_id=control.id, active=True).all()
        assert {(m.campaign_id, m.module_id) for m in active} == {(new_campaign.id, None), (None, module.id)}
        assert {m.created_by for m in active} == {"admin-1"}

    def test_same_set_can_be_reapplied(self, db, seed):
        control = seed.control()
        campaign = seed.campaign()
        seed.mapping(control, campaign=campaign)

        replace_control_mappings(db, ORG_ID, control.id, [MappingInput(campaign_id=campaign.id)])
        db.commit()

        assert db.query(ControlMappingDB).filter_by(active=True).count() == 1
        assert db.query(ControlMappingDB).count() == 2

    def test_empty_set_deactivates_everything(self, db, seed):
        control = seed.control()
        seed.mapping(control, campaign=seed.campaign())

        assert replace_control_mappings(db, ORG_ID, control.id, []) == []
        db.commit()

        assert db.query(ControlMappingDB).filter_by(active=True).count() == 0

    def test_duplicate_active_tuple_conflicts(self, db, seed):
        control = seed.control()
        campaign = seed.campaign()

        with pytest.raises(ConflictError):
            replace_control_mappings(db, ORG_ID, control.id, [
                MappingInput(campaign_id=campaign.id),
                MappingInput(campaign_id=campaign.id, mapping_strength=MappingStrength.SUPPORTING),
            ])

    def test_inactive_duplicates_allowed(self, db, seed):
        control = seed.control()
        campaign = seed.campaign()

        inserted = replace_control_mappings(db, ORG_ID, control.id, [
            MappingInput(campaign_id=campaign.id),
            MappingInput(campaign_id=campaign.id, active=False),
        ])

        assert len(inserted) == 2

    def test_control_of_other_org_not_found(self, db, seed):
        control = seed.control(org_id=OTHER_ORG_ID)

        with pytest.raises(NotFoundError):
            replace_control_mappings(db, ORG_ID, control.id, [MappingInput(campaign_id="c")])


class TestActiveMappingUniqueness:

    def test_store_rejects_second_active_mapping(self, db, seed):
        control = seed.control()
        campaign = seed.campaign()
        seed.mapping(control, campaign=campaign)

        with pytest.raises(IntegrityError):
            seed.mapping(control, campaign=campaign, strength=MappingStrength.SUPPORTING)
        db.rollback()
