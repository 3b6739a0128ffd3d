"""
Benchmark Resolver

Places an org's metric against an anonymized peer cohort.
When the benchmark tables are not provisioned the resolver degrades to a
fixed per-metric cohort value and says so with compat_mode=True.
"""
import logging
import os
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.adoption import BenchmarkComparison
from ...models.db_models import (
    BenchmarkCohortDB, BenchmarkMetric, BenchmarkMetricSnapshotDB, as_utc,
)
from .capabilities import BENCHMARK_COHORTS, SchemaCapabilities
from .errors import DatabaseError, SchemaMissingError

logger = logging.getLogger(__name__)

BENCHMARK_DEFAULT_COHORT = os.getenv("BENCHMARK_DEFAULT_COHORT", "mid_market_saas")

# Used when the cohort has no anonymized snapshot yet, or the schema is missing
FALLBACK_COHORT_VALUES = {
    BenchmarkMetric.CONTROL_FRESHNESS: 0.72,
    BenchmarkMetric.TIME_TO_ACK_HOURS: 18.0,
    BenchmarkMetric.STALE_CONTROLS_RATIO: 0.21,
}

BAND_THRESHOLDS = (
    (80, "top"),
    (60, "strong"),
    (40, "average"),
    (20, "watch"),
)


def benchmark_band(percentile: Optional[float]) -> str:
    """Bucket a percentile rank; missing rank is 'insufficient-data'."""
    if percentile is None or percentile != percentile:  # NaN
        return "insufficient-data"
    for threshold, band in BAND_THRESHOLDS:
        if percentile >= threshold:
            return band
    return "at-risk"


class BenchmarkResolver:
    """Resolve org vs cohort metric deltas."""

    def __init__(self, db: Session, capabilities: Optional[SchemaCapabilities] = None):
        self.db = db
        self.capabilities = capabilities or SchemaCapabilities.all_available()

    def _compat(self, cohort_code: str, metric: BenchmarkMetric) -> BenchmarkComparison:
        return BenchmarkComparison(
            cohort_code=cohort_code,
            metric_name=metric.value,
            org_metric_value=None,
            cohort_metric_value=FALLBACK_COHORT_VALUES[metric],
            percentile_rank=None,
            delta=None,
            band=benchmark_band(None),
            compat_mode=True,
        )

    def _require_schema(self) -> None:
        if not self.capabilities.benchmarks:
            raise SchemaMissingError(BENCHMARK_COHORTS)

    def _latest_snapshot(self, cohort_id: str, metric: BenchmarkMetric, org_id: Optional[str]):
        query = self.db.query(BenchmarkMetricSnapshotDB).filter(
            BenchmarkMetricSnapshotDB.cohort_id == cohort_id,
            BenchmarkMetricSnapshotDB.metric_name == metric,
        )
        if org_id is None:
            query = query.filter(
                BenchmarkMetricSnapshotDB.org_id.is_(None),
                BenchmarkMetricSnapshotDB.anonymized.is_(True),
            )
        else:
            query = query.filter(BenchmarkMetricSnapshotDB.org_id == org_id)
        return query.order_by(BenchmarkMetricSnapshotDB.snapshot_at.desc()).first()

    def resolve(
        self,
        org_id: str,
        metric: BenchmarkMetric = BenchmarkMetric.CONTROL_FRESHNESS,
        cohort_code: Optional[str] = None,
    ) -> BenchmarkComparison:
        """
        Compare the org's latest metric snapshot with the cohort's latest anonymized one.

        Args:
            org_id: Organization being compared
            metric: Metric name
            cohort_code: Cohort identifier (default BENCHMARK_DEFAULT_COHORT)

        Returns:
            BenchmarkComparison (compat_mode=True when benchmark tables are unavailable)
        """
        code = cohort_code or BENCHMARK_DEFAULT_COHORT
        try:
            self._require_schema()
        except SchemaMissingError as e:
            logger.warning(f"Benchmark lookup in compat mode for org {org_id}: {e.message}")
            return self._compat(code, metric)

        try:
            cohort = (
                self.db.query(BenchmarkCohortDB)
                .filter(BenchmarkCohortDB.code == code, BenchmarkCohortDB.active.is_(True))
                .first()
            )
            org_snapshot = self._latest_snapshot(cohort.id, metric, org_id) if cohort else None
            cohort_snapshot = self._latest_snapshot(cohort.id, metric, None) if cohort else None
        except SQLAlchemyError as e:
            logger.error(f"Benchmark lookup failed for org {org_id}: {e}")
            raise DatabaseError("Benchmark lookup failed")

        org_value = float(org_snapshot.metric_value) if org_snapshot else None
        cohort_value = (
            float(cohort_snapshot.metric_value) if cohort_snapshot else FALLBACK_COHORT_VALUES[metric]
        )
        percentile = (
            float(org_snapshot.percentile_rank)
            if org_snapshot is not None and org_snapshot.percentile_rank is not None
            else None
        )
        delta = round(org_value - cohort_value, 4) if org_value is not None else None

        return BenchmarkComparison(
            cohort_code=cohort.code if cohort else code,
            metric_name=metric.value,
            org_metric_value=org_value,
            cohort_metric_value=cohort_value,
            percentile_rank=percentile,
            delta=delta,
            band=benchmark_band(percentile),
            snapshot_at=as_utc(org_snapshot.snapshot_at) if org_snapshot else None,
            compat_mode=False,
        )

    def list_cohorts(self) -> List[Dict[str, Any]]:
        """Active cohorts ordered by label; empty when benchmarks are not provisioned."""
        if not self.capabilities.benchmarks:
            return []
        try:
            rows = (
                self.db.query(BenchmarkCohortDB)
                .filter(BenchmarkCohortDB.active.is_(True))
                .order_by(BenchmarkCohortDB.label.asc())
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Cohort listing failed: {e}")
            raise DatabaseError("Failed to load benchmark cohorts")
        return [
            {
                "code": row.code,
                "label": row.label,
                "description": row.description,
                "min_sample_size": row.min_sample_size,
            }
            for row in rows
        ]
