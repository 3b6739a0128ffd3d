"""
Control Adoption Freshness & Intervention Engine

Computes per-control evidence freshness, benchmarks it against peer
cohorts, proposes remediation, executes approved remediation
idempotently, and keeps a lineage graph over immutable evidence.
"""
from .errors import (
    AdoptionError, ValidationError, NotFoundError, ConflictError,
    DatabaseError, RateLimitedError, SchemaMissingError,
)
from .capabilities import SchemaCapabilities, probe_capabilities
from .freshness_engine import (
    compute_control_freshness, summarize_freshness, build_control_impact_forecast,
    score_to_trend_sparkline,
)
from .adoption_store import AdoptionRepository
from .benchmark_resolver import BenchmarkResolver, benchmark_band
from .intervention_recommender import InterventionRecommender, recommend_interventions
from .intervention_workflow import InterventionWorkflow, ExecutionOutcome, STATE_CONFIG
from .evidence_store import EvidenceStore, build_evidence_checksum
from .evidence_lineage import EvidenceLineageService
from .adoption_graph import AdoptionGraphBuilder
from .control_mappings import MappingInput, replace_control_mappings
from .audit_log import write_request_audit_log
from .rate_limiter import RateLimiter, InMemoryRateLimiter, rate_limit_key
from .notifications import NotificationDispatcher, NotificationJobQueue, ReminderRequest

__all__ = [
    # Errors
    "AdoptionError", "ValidationError", "NotFoundError", "ConflictError",
    "DatabaseError", "RateLimitedError", "SchemaMissingError",
    # Capabilities
    "SchemaCapabilities", "probe_capabilities",
    # Freshness
    "compute_control_freshness", "summarize_freshness", "build_control_impact_forecast",
    "score_to_trend_sparkline", "AdoptionRepository",
    # Benchmarks
    "BenchmarkResolver", "benchmark_band",
    # Interventions
    "InterventionRecommender", "recommend_interventions",
    "InterventionWorkflow", "ExecutionOutcome", "STATE_CONFIG",
    # Evidence
    "EvidenceStore", "build_evidence_checksum", "EvidenceLineageService",
    # Graph + mappings
    "AdoptionGraphBuilder", "MappingInput", "replace_control_mappings",
    # Ambient
    "write_request_audit_log", "RateLimiter", "InMemoryRateLimiter", "rate_limit_key",
    "NotificationDispatcher", "NotificationJobQueue", "ReminderRequest",
]
