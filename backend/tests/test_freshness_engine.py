"""
Tests for the freshness engine.

Pure functions, evaluated against a fixed reference time:
1. State rules in precedence order
2. Additive score with clamping
3. Evidence counts and acknowledgment latency
4. Summary, impact forecast and trend
"""
import math
from datetime import timedelta

import pytest

from app.models.adoption import EvidenceSignal
from app.models.db_models import EvidenceStatus, EvidenceType, FreshnessState, RiskLevel
from app.services.adoption.freshness_engine import (
    build_control_impact_forecast, build_trend, compute_control_freshness, days_since,
    hours_between, infer_freshness_state, score_to_trend_sparkline, summarize_freshness,
)

from factories import NOW, days_ago


def signal(days, status=EvidenceStatus.SYNCED, evidence_type=EvidenceType.ATTESTATION, metadata=None):
    return EvidenceSignal(
        evidence_status=status,
        occurred_at=days_ago(days),
        evidence_type=evidence_type,
        metadata=metadata or {},
    )


# =============================================================================
# STATE RULES
# =============================================================================

class TestFreshnessState:
    """Ordered state rules."""

    def test_no_evidence_is_critical(self):
        result = compute_control_freshness("c1", [], None, now=NOW)
        assert result.state == FreshnessState.CRITICAL
        assert result.score == 0
        assert result.latest_evidence_at is None

    @pytest.mark.parametrize("age_days,expected", [
        (1, FreshnessState.FRESH),
        (7, FreshnessState.FRESH),
        (10, FreshnessState.AGING),
        (20, FreshnessState.STALE),
        (40, FreshnessState.CRITICAL),
    ])
    def test_age_thresholds(self, age_days, expected):
        result = compute_control_freshness("c1", [signal(age_days)], None, now=NOW)
        assert result.state == expected

    def test_rejection_with_aging_evidence_is_critical(self):
        evidence = [signal(8, EvidenceStatus.REJECTED)]
        result = compute_control_freshness("c1", evidence, None, now=NOW)
        assert result.state == FreshnessState.CRITICAL

    def test_recent_rejection_is_not_critical(self):
        evidence = [signal(2, EvidenceStatus.REJECTED)]
        result = compute_control_freshness("c1", evidence, None, now=NOW)
        assert result.state == FreshnessState.FRESH

    def test_policy_change_after_grace_is_stale(self):
        result = compute_control_freshness("c1", [signal(5)], days_ago(3), now=NOW)
        assert result.state == FreshnessState.STALE
        # 52 base - 5 age - floor(3/2) policy + 2 synced
        assert result.score == 48

    def test_policy_change_within_grace_keeps_age_state(self):
        result = compute_control_freshness("c1", [signal(5)], days_ago(1), now=NOW)
        assert result.state == FreshnessState.FRESH

    def test_policy_older_than_evidence_is_ignored_for_state(self):
        result = compute_control_freshness("c1", [signal(2)], days_ago(10), now=NOW)
        assert result.state == FreshnessState.FRESH

    def test_three_stale_rows_is_critical(self):
        evidence = [signal(1)] + [signal(2, EvidenceStatus.STALE) for _ in range(3)]
        result = compute_control_freshness("c1", evidence, None, now=NOW)
        assert result.state == FreshnessState.CRITICAL

    def test_one_stale_row_is_stale(self):
        evidence = [signal(1), signal(2, EvidenceStatus.STALE)]
        result = compute_control_freshness("c1", evidence, None, now=NOW)
        assert result.state == FreshnessState.STALE

    def test_infer_state_directly(self):
        assert infer_freshness_state(None, None, 0, 0, NOW) == FreshnessState.CRITICAL
        assert infer_freshness_state(days_ago(1), None, 0, 0, NOW) == FreshnessState.FRESH


# =============================================================================
# SCORE
# =============================================================================

class TestFreshnessScore:

    def test_fresh_score_with_synced_boost(self):
        result = compute_control_freshness("c1", [signal(1)], None, now=NOW)
        # 92 base - 1 age + 2 synced
        assert result.score == 93

    def test_aging_score(self):
        result = compute_control_freshness("c1", [signal(10, EvidenceStatus.QUEUED)], None, now=NOW)
        assert result.score == 65

    def test_synced_boost_is_capped(self):
        evidence = [signal(0) for _ in range(15)]
        result = compute_control_freshness("c1", evidence, None, now=NOW)
        assert result.score == 100

    def test_old_rejection_behind_policy(self):
        result = compute_control_freshness(
            "c1", [signal(10, EvidenceStatus.REJECTED)], days_ago(20), now=NOW,
        )
        assert result.state == FreshnessState.CRITICAL
        assert result.score < 60

    @pytest.mark.parametrize("field", ["age", "stale", "rejected"])
    def test_score_non_increasing(self, field):
        def score(n):
            evidence = [signal(1 + n if field == "age" else 1)]
            if field == "stale":
                evidence += [signal(2, EvidenceStatus.STALE) for _ in range(n)]
            if field == "rejected":
                evidence += [signal(2, EvidenceStatus.REJECTED) for _ in range(n)]
            return compute_control_freshness("c1", evidence, None, now=NOW).score

        scores = [score(n) for n in range(6)]
        assert scores == sorted(scores, reverse=True)

    def test_score_never_negative(self):
        evidence = [signal(40, EvidenceStatus.REJECTED) for _ in range(5)]
        result = compute_control_freshness("c1", evidence, days_ago(5), now=NOW)
        assert result.score == 0


# =============================================================================
# COUNTS + ACK LATENCY
# =============================================================================

class TestEvidenceCounts:

    def test_status_counts_and_fresh_count(self):
        evidence = [
            signal(1, EvidenceStatus.SYNCED),
            signal(3, EvidenceStatus.QUEUED),
            signal(20, EvidenceStatus.SYNCED),
            signal(2, EvidenceStatus.STALE),
            signal(4, EvidenceStatus.REJECTED),
        ]
        result = compute_control_freshness("c1", evidence, None, now=NOW)
        assert result.synced_count == 2
        assert result.stale_count == 1
        assert result.rejected_count == 1
        assert result.fresh_evidence_count == 2
        assert result.latest_evidence_at == days_ago(1)

    def test_median_ack_hours_from_started_at(self):
        evidence = [
            signal(1, evidence_type=EvidenceType.MATERIAL_ACKNOWLEDGMENT,
                   metadata={"startedAt": (days_ago(1) - timedelta(hours=10)).isoformat()}),
            signal(2, evidence_type=EvidenceType.MATERIAL_ACKNOWLEDGMENT,
                   metadata={"startedAt": (days_ago(2) - timedelta(hours=20)).isoformat()}),
        ]
        result = compute_control_freshness("c1", evidence, None, now=NOW)
        assert result.median_ack_hours == 15.0

    def test_pending_ack_measured_to_now(self):
        evidence = [signal(1, evidence_type=EvidenceType.MATERIAL_ACKNOWLEDGMENT)]
        result = compute_control_freshness("c1", evidence, None, now=NOW)
        assert result.median_ack_hours == 24.0

    def test_no_acknowledgments_has_no_median(self):
        result = compute_control_freshness("c1", [signal(1)], None, now=NOW)
        assert result.median_ack_hours is None

    def test_time_helpers(self):
        assert math.isinf(days_since(None, NOW))
        assert days_since(NOW + timedelta(days=1), NOW) == 0.0
        assert hours_between(NOW, NOW - timedelta(hours=3)) == 0.0
        assert hours_between(NOW - timedelta(hours=3), NOW) == 3.0


# =============================================================================
# AGGREGATES
# =============================================================================

class TestAggregates:

    def _computed(self, states):
        ages = {
            FreshnessState.FRESH: 1,
            FreshnessState.AGING: 10,
            FreshnessState.STALE: 20,
            FreshnessState.CRITICAL: 40,
        }
        return {
            f"c{i}": compute_control_freshness(f"c{i}", [signal(ages[state])], None, now=NOW)
            for i, state in enumerate(states)
        }

    def test_summary_counts_and_coverage(self):
        computed = self._computed([
            FreshnessState.FRESH, FreshnessState.FRESH, FreshnessState.STALE,
        ])
        summary = summarize_freshness(computed.values())
        assert summary.total_controls == 3
        assert summary.fresh_controls == 2
        assert summary.fresh_coverage == 0.6667
        assert summary.stale_controls == 1
        assert summary.critical_controls == 0

    def test_empty_summary(self):
        summary = summarize_freshness([])
        assert summary.total_controls == 0
        assert summary.fresh_coverage == 0.0

    def test_forecast_counts_missing_snapshot_as_behind(self):
        computed = self._computed([FreshnessState.FRESH, FreshnessState.FRESH, FreshnessState.STALE])
        forecast = build_control_impact_forecast(["c0", "c1", "c2", "missing"], computed)
        assert forecast.total_mapped_controls == 4
        assert forecast.fresh_controls == 2
        assert forecast.stale_or_critical_controls == 2
        assert forecast.projected_fresh_coverage == 0.825
        assert forecast.risk == RiskLevel.HIGH

    def test_forecast_risk_levels(self):
        computed = self._computed([
            FreshnessState.FRESH, FreshnessState.FRESH, FreshnessState.FRESH, FreshnessState.CRITICAL,
        ])
        assert build_control_impact_forecast(["c0", "c1", "c2"], computed).risk == RiskLevel.LOW
        medium = build_control_impact_forecast(["c0", "c1", "c2", "c3"], computed)
        assert medium.risk == RiskLevel.MEDIUM
        assert medium.projected_fresh_coverage == 0.9125

    def test_forecast_aging_counts_neither_fresh_nor_behind(self):
        computed = self._computed([FreshnessState.AGING])
        forecast = build_control_impact_forecast(["c0"], computed)
        assert forecast.fresh_controls == 0
        assert forecast.stale_or_critical_controls == 0
        assert forecast.projected_fresh_coverage == 0.0
        assert forecast.risk == RiskLevel.LOW

    def test_forecast_empty(self):
        forecast = build_control_impact_forecast([], {})
        assert forecast.projected_fresh_coverage == 0.0
        assert forecast.risk == RiskLevel.LOW


# =============================================================================
# TREND
# =============================================================================

class TestTrend:

    def test_sparkline_ramps_to_score(self):
        assert score_to_trend_sparkline(50) == [34.0, 37.0, 40.0, 46.0, 48.0, 49.0, 50.0]

    def test_sparkline_clamps_input(self):
        points = score_to_trend_sparkline(150)
        assert len(points) == 7
        assert points[-1] == 100.0

    def test_sparkline_for_zero_score_is_flat(self):
        assert score_to_trend_sparkline(0) == [0.0] * 7

    def test_sparkline_for_low_score_stays_in_range(self):
        points = score_to_trend_sparkline(5)
        assert points == [2.0, 5.0, 5.0, 5.0, 5.0, 5.0, 5.0]

    @pytest.mark.parametrize("score", [0, 3, 5, 12, 18, 25, 50, 99, 100])
    def test_sparkline_is_monotonic_and_bounded(self, score):
        points = score_to_trend_sparkline(score)
        assert len(points) == 7
        assert points == sorted(points)
        assert all(0.0 <= p <= score for p in points)
        assert points[-1] == float(score)

    def test_trend_prefers_history_oldest_first(self):
        assert build_trend(80, [70.0, 60.0, 55.0]) == [55.0, 60.0, 70.0]

    def test_trend_keeps_last_seven(self):
        history = [float(90 - i) for i in range(10)]
        trend = build_trend(90, history)
        assert trend == [84.0, 85.0, 86.0, 87.0, 88.0, 89.0, 90.0]

    def test_trend_without_history_uses_sparkline(self):
        assert build_trend(50, []) == score_to_trend_sparkline(50)
