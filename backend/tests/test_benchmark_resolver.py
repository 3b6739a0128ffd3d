"""
Tests for benchmark resolution and percentile bands.
"""
from uuid import uuid4

import pytest

from app.models.db_models import BenchmarkCohortDB, BenchmarkMetric, BenchmarkMetricSnapshotDB
from app.services.adoption import BenchmarkResolver, SchemaCapabilities
from app.services.adoption.benchmark_resolver import (
    BENCHMARK_DEFAULT_COHORT, FALLBACK_COHORT_VALUES, benchmark_band,
)

from factories import ORG_ID, OTHER_ORG_ID, days_ago


def add_cohort(db, code="mid_market_saas", label="Mid-market SaaS", active=True):
    cohort = BenchmarkCohortDB(id=str(uuid4()), code=code, label=label, min_sample_size=5, active=active)
    db.add(cohort)
    db.commit()
    return cohort


def add_snapshot(db, cohort, value, org_id=None, percentile=None, metric=BenchmarkMetric.CONTROL_FRESHNESS,
                 snapshot_at=None):
    db.add(BenchmarkMetricSnapshotDB(
        id=str(uuid4()), cohort_id=cohort.id, org_id=org_id, metric_name=metric,
        metric_value=value, percentile_rank=percentile, anonymized=org_id is None,
        snapshot_at=snapshot_at or days_ago(1),
    ))
    db.commit()


class TestBenchmarkBand:

    @pytest.mark.parametrize("percentile,band", [
        (95, "top"),
        (80, "top"),
        (79.9, "strong"),
        (60, "strong"),
        (45, "average"),
        (20, "watch"),
        (19, "at-risk"),
        (0, "at-risk"),
        (None, "insufficient-data"),
        (float("nan"), "insufficient-data"),
    ])
    def test_bands(self, percentile, band):
        assert benchmark_band(percentile) == band


class TestBenchmarkResolver:

    def test_org_vs_cohort(self, db):
        cohort = add_cohort(db)
        add_snapshot(db, cohort, 0.70, snapshot_at=days_ago(10))
        add_snapshot(db, cohort, 0.75, snapshot_at=days_ago(1))
        add_snapshot(db, cohort, 0.81, org_id=ORG_ID, percentile=67.0)
        add_snapshot(db, cohort, 0.40, org_id=OTHER_ORG_ID, percentile=10.0)

        result = BenchmarkResolver(db).resolve(ORG_ID, BenchmarkMetric.CONTROL_FRESHNESS, "mid_market_saas")

        assert result.org_metric_value == 0.81
        assert result.cohort_metric_value == 0.75
        assert result.delta == 0.06
        assert result.percentile_rank == 67.0
        assert result.band == "strong"
        assert result.compat_mode is False
        assert result.snapshot_at == days_ago(1)

    def test_cohort_without_snapshot_uses_fallback_value(self, db):
        cohort = add_cohort(db)
        add_snapshot(db, cohort, 12.0, org_id=ORG_ID, percentile=30.0, metric=BenchmarkMetric.TIME_TO_ACK_HOURS)

        result = BenchmarkResolver(db).resolve(ORG_ID, BenchmarkMetric.TIME_TO_ACK_HOURS, "mid_market_saas")

        assert result.cohort_metric_value == 18.0
        assert result.delta == -6.0
        assert result.band == "watch"
        assert result.compat_mode is False

    def test_org_without_snapshot(self, db):
        cohort = add_cohort(db)
        add_snapshot(db, cohort, 0.7)

        result = BenchmarkResolver(db).resolve(ORG_ID)

        assert result.cohort_code == BENCHMARK_DEFAULT_COHORT
        assert result.org_metric_value is None
        assert result.delta is None
        assert result.band == "insufficient-data"

    def test_unknown_cohort_still_answers(self, db):
        result = BenchmarkResolver(db).resolve(ORG_ID, BenchmarkMetric.STALE_CONTROLS_RATIO, "nope")

        assert result.cohort_code == "nope"
        assert result.cohort_metric_value == FALLBACK_COHORT_VALUES[BenchmarkMetric.STALE_CONTROLS_RATIO]
        assert result.compat_mode is False

    def test_missing_tables_is_compat_mode(self, db):
        resolver = BenchmarkResolver(db, SchemaCapabilities.from_tables(["benchmark_cohorts"]))

        result = resolver.resolve(ORG_ID, BenchmarkMetric.CONTROL_FRESHNESS)

        assert result.compat_mode is True
        assert result.cohort_metric_value == 0.72
        assert result.band == "insufficient-data"
        assert result.to_dict()["compat_mode"] is True

    def test_list_cohorts(self, db):
        add_cohort(db, code="enterprise", label="Enterprise")
        add_cohort(db, code="smb", label="Small business")
        add_cohort(db, code="retired", label="Retired", active=False)

        cohorts = BenchmarkResolver(db).list_cohorts()

        assert [c["code"] for c in cohorts] == ["enterprise", "smb"]
        assert cohorts[0]["min_sample_size"] == 5

    def test_list_cohorts_without_schema(self, db):
        add_cohort(db)
        assert BenchmarkResolver(db, SchemaCapabilities.from_tables([])).list_cohorts() == []
