"""
Freshness Computation Engine

Turns the evidence history of one control into a classified state and a
0-100 score. Pure: no database access, `now` is always injectable.

State rules are ordered; first match wins:
1. No evidence                                        -> critical
2. Any rejected AND latest evidence older than 7 days -> critical
3. Policy changed after latest evidence, >2 days ago  -> stale
4. >=3 stale rows OR latest evidence older than 30d   -> critical
5. >=1 stale row OR latest evidence older than 14d    -> stale
6. Latest evidence older than 7 days                  -> aging
7. Otherwise                                          -> fresh
"""
import math
from datetime import datetime
from statistics import median
from typing import Any, Dict, Iterable, List, Mapping, Optional

from dateutil import parser as date_parser

from ...models.adoption import (
    ControlFreshnessComputed, ControlImpactForecast, EvidenceSignal, FreshnessSummary,
)
from ...models.db_models import (
    EvidenceStatus, EvidenceType, FreshnessState, RiskLevel, as_utc, utc_now,
)


# =============================================================================
# CONSTANTS
# =============================================================================

STATE_BASE_SCORE = {
    FreshnessState.FRESH: 92,
    FreshnessState.AGING: 75,
    FreshnessState.STALE: 52,
    FreshnessState.CRITICAL: 28,
}

AGING_AFTER_DAYS = 7
STALE_AFTER_DAYS = 14
CRITICAL_AFTER_DAYS = 30
POLICY_GRACE_DAYS = 2
CRITICAL_STALE_COUNT = 3

MAX_AGE_PENALTY = 35
MAX_POLICY_LAG_PENALTY = 25
STALE_PENALTY = 6
REJECTED_PENALTY = 8
SYNCED_BOOST = 2
MAX_SYNCED_BOOST = 20

FRESH_EVIDENCE_STATUSES = (EvidenceStatus.QUEUED, EvidenceStatus.SYNCED)
PUBLISH_RECOVERY_FACTOR = 0.65
TREND_POINTS = 7


# =============================================================================
# HELPERS
# =============================================================================

def days_since(value: Optional[datetime], now: datetime) -> float:
    """Days elapsed since `value`; infinite when there is no timestamp."""
    if value is None:
        return math.inf
    return max(0.0, (now - as_utc(value)).total_seconds() / 86400)


def hours_between(older: Optional[datetime], newer: Optional[datetime]) -> float:
    """Non-negative hours from `older` to `newer`; 0 for invalid or reversed spans."""
    if older is None or newer is None:
        return 0.0
    delta = (as_utc(newer) - as_utc(older)).total_seconds()
    if delta <= 0:
        return 0.0
    return delta / 3600


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str):
        return None
    try:
        return as_utc(date_parser.isoparse(raw))
    except (ValueError, OverflowError):
        return None


def _median_hours(values: List[float]) -> Optional[float]:
    if not values:
        return None
    return round(median(values), 2)


# =============================================================================
# STATE + SCORE
# =============================================================================

def infer_freshness_state(
    latest_evidence_at: Optional[datetime],
    last_policy_update_at: Optional[datetime],
    stale_count: int,
    rejected_count: int,
    now: datetime,
) -> FreshnessState:
    """Apply the ordered state rules."""
    if latest_evidence_at is None:
        return FreshnessState.CRITICAL

    evidence_age = days_since(latest_evidence_at, now)
    policy_age = days_since(last_policy_update_at, now)
    policy_changed_since = (
        last_policy_update_at is not None
        and as_utc(last_policy_update_at) > as_utc(latest_evidence_at)
    )

    if rejected_count > 0 and evidence_age > AGING_AFTER_DAYS:
        return FreshnessState.CRITICAL
    if policy_changed_since and policy_age > POLICY_GRACE_DAYS:
        return FreshnessState.STALE
    if stale_count >= CRITICAL_STALE_COUNT or evidence_age > CRITICAL_AFTER_DAYS:
        return FreshnessState.CRITICAL
    if stale_count >= 1 or evidence_age > STALE_AFTER_DAYS:
        return FreshnessState.STALE
    if evidence_age > AGING_AFTER_DAYS:
        return FreshnessState.AGING
    return FreshnessState.FRESH


def infer_freshness_score(
    state: FreshnessState,
    synced_count: int,
    stale_count: int,
    rejected_count: int,
    latest_evidence_at: Optional[datetime],
    last_policy_update_at: Optional[datetime],
    now: datetime,
) -> int:
    """
    Additive score clamped to [0, 100].

    Staleness and rejection are penalized independently since they call
    for different remediations (re-engage vs. re-validate).
    """
    evidence_age = days_since(latest_evidence_at, now)
    age_penalty = MAX_AGE_PENALTY if math.isinf(evidence_age) else min(MAX_AGE_PENALTY, math.floor(evidence_age))

    policy_penalty = 0
    if last_policy_update_at is not None:
        policy_penalty = min(MAX_POLICY_LAG_PENALTY, math.floor(days_since(last_policy_update_at, now) / 2))

    score = (
        STATE_BASE_SCORE[state]
        - age_penalty
        - policy_penalty
        - stale_count * STALE_PENALTY
        - rejected_count * REJECTED_PENALTY
        + min(MAX_SYNCED_BOOST, synced_count * SYNCED_BOOST)
    )
    return max(0, min(100, score))


def compute_control_freshness(
    control_id: str,
    evidence: Iterable[EvidenceSignal],
    last_policy_update_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> ControlFreshnessComputed:
    """
    Classify one control from its full evidence history.

    Args:
        control_id: Control being assessed
        evidence: Every evidence row mapped to the control
        last_policy_update_at: Most recent policy change among mapped campaigns
        now: Reference time (default: current UTC)

    Returns:
        ControlFreshnessComputed with state, score, counts and ack latency
    """
    now = as_utc(now) if now else utc_now()
    last_policy_update_at = as_utc(last_policy_update_at)

    latest_evidence_at: Optional[datetime] = None
    synced = stale = rejected = fresh = 0
    ack_hours: List[float] = []

    for row in evidence:
        occurred_at = as_utc(row.occurred_at)
        if latest_evidence_at is None or occurred_at > latest_evidence_at:
            latest_evidence_at = occurred_at

        if row.evidence_status == EvidenceStatus.SYNCED:
            synced += 1
        elif row.evidence_status == EvidenceStatus.STALE:
            stale += 1
        elif row.evidence_status == EvidenceStatus.REJECTED:
            rejected += 1

        if (
            days_since(occurred_at, now) <= STALE_AFTER_DAYS
            and row.evidence_status in FRESH_EVIDENCE_STATUSES
        ):
            fresh += 1

        if row.evidence_type == EvidenceType.MATERIAL_ACKNOWLEDGMENT:
            started_at = _parse_timestamp((row.metadata or {}).get("startedAt"))
            if started_at is not None:
                ack_hours.append(hours_between(started_at, occurred_at))
            else:
                # Still pending: measure up to now
                ack_hours.append(hours_between(occurred_at, now))

    state = infer_freshness_state(latest_evidence_at, last_policy_update_at, stale, rejected, now)
    score = infer_freshness_score(
        state, synced, stale, rejected, latest_evidence_at, last_policy_update_at, now,
    )

    return ControlFreshnessComputed(
        control_id=control_id,
        state=state,
        score=score,
        latest_evidence_at=latest_evidence_at,
        last_policy_update_at=last_policy_update_at,
        synced_count=synced,
        stale_count=stale,
        rejected_count=rejected,
        fresh_evidence_count=fresh,
        median_ack_hours=_median_hours(ack_hours),
    )


# =============================================================================
# AGGREGATES
# =============================================================================

def summarize_freshness(computed: Iterable[ControlFreshnessComputed]) -> FreshnessSummary:
    items = list(computed)
    total = len(items)
    fresh = sum(1 for c in items if c.state == FreshnessState.FRESH)
    return FreshnessSummary(
        total_controls=total,
        fresh_controls=fresh,
        fresh_coverage=round(fresh / total, 4) if total else 0.0,
        stale_controls=sum(1 for c in items if c.state == FreshnessState.STALE),
        critical_controls=sum(1 for c in items if c.state == FreshnessState.CRITICAL),
    )


def build_control_impact_forecast(
    mapped_control_ids: List[str],
    freshness_by_control: Mapping[str, ControlFreshnessComputed],
) -> ControlImpactForecast:
    """
    Project fresh coverage if a campaign touching these controls is published.

    Controls with no computed snapshot count as stale/critical.
    """
    total = len(mapped_control_ids)
    fresh = 0
    behind = 0
    for control_id in mapped_control_ids:
        snapshot = freshness_by_control.get(control_id)
        if snapshot is None or snapshot.state in (FreshnessState.STALE, FreshnessState.CRITICAL):
            behind += 1
        elif snapshot.state == FreshnessState.FRESH:
            fresh += 1

    projected = (fresh + behind * PUBLISH_RECOVERY_FACTOR) / total if total else 0.0

    if behind == 0:
        risk = RiskLevel.LOW
    elif behind / max(1, total) >= 0.5:
        risk = RiskLevel.HIGH
    else:
        risk = RiskLevel.MEDIUM

    return ControlImpactForecast(
        total_mapped_controls=total,
        fresh_controls=fresh,
        stale_or_critical_controls=behind,
        projected_fresh_coverage=round(projected, 4),
        risk=risk,
    )


# =============================================================================
# TREND
# =============================================================================

def score_to_trend_sparkline(score: float) -> List[float]:
    """
    Placeholder 7-point ramp toward the current score.

    Display only; never an input to state, score or recommendations.
    """
    bounded = max(0.0, min(100.0, float(score)))
    floor = max(0.0, bounded - 18)
    offsets = [floor + 2, floor + 5, floor + 8, bounded - 4, bounded - 2, bounded - 1, bounded]

    points: List[float] = []
    previous = 0.0
    for value in offsets:
        # Non-decreasing, within [0, bounded]
        previous = max(previous, min(bounded, max(0.0, value)))
        points.append(round(previous, 1))
    return points


def build_trend(current_score: float, history_newest_first: List[float]) -> List[float]:
    """Chronological trend from stored snapshots, or the placeholder ramp when none exist."""
    if history_newest_first:
        return [round(float(s), 1) for s in reversed(history_newest_first[:TREND_POINTS])]
    return score_to_trend_sparkline(current_score)


def evidence_signal_from_row(row: Any) -> EvidenceSignal:
    """Project an evidence ORM row (or any object with the same attributes) into a signal."""
    metadata: Dict[str, Any] = getattr(row, "metadata_json", None) or {}
    return EvidenceSignal(
        evidence_status=row.evidence_status,
        occurred_at=as_utc(row.occurred_at),
        evidence_type=row.evidence_type,
        metadata=metadata,
    )
