"""
Schema Capability Negotiation

Analytics tables are optional: a deployment may run the evidence and
intervention paths before snapshots, edges or benchmarks are provisioned.
Availability is probed once at startup and passed to the services,
instead of pattern-matching driver errors on every call.
"""
import logging
from dataclasses import dataclass
from typing import FrozenSet, Iterable

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

FRESHNESS_SNAPSHOTS = "control_freshness_snapshots"
ADOPTION_EDGES = "adoption_edges"
BENCHMARK_COHORTS = "benchmark_cohorts"
BENCHMARK_METRIC_SNAPSHOTS = "benchmark_metric_snapshots"

OPTIONAL_TABLES = (
    FRESHNESS_SNAPSHOTS,
    ADOPTION_EDGES,
    BENCHMARK_COHORTS,
    BENCHMARK_METRIC_SNAPSHOTS,
)


@dataclass(frozen=True)
class SchemaCapabilities:
    available_tables: FrozenSet[str] = frozenset(OPTIONAL_TABLES)

    @classmethod
    def all_available(cls) -> "SchemaCapabilities":
        return cls(frozenset(OPTIONAL_TABLES))

    @classmethod
    def from_tables(cls, tables: Iterable[str]) -> "SchemaCapabilities":
        return cls(frozenset(t for t in tables if t in OPTIONAL_TABLES))

    def has(self, table: str) -> bool:
        return table in self.available_tables

    @property
    def freshness_snapshots(self) -> bool:
        return self.has(FRESHNESS_SNAPSHOTS)

    @property
    def adoption_edges(self) -> bool:
        return self.has(ADOPTION_EDGES)

    @property
    def benchmarks(self) -> bool:
        return self.has(BENCHMARK_COHORTS) and self.has(BENCHMARK_METRIC_SNAPSHOTS)


def probe_capabilities(engine: Engine) -> SchemaCapabilities:
    """Inspect the live schema once and record which optional tables exist."""
    existing = set(inspect(engine).get_table_names())
    capabilities = SchemaCapabilities.from_tables(existing)
    missing = sorted(set(OPTIONAL_TABLES) - capabilities.available_tables)
    if missing:
        logger.warning(f"Adoption analytics running in compat mode, missing tables: {missing}")
    else:
        logger.info("All adoption analytics tables available")
    return capabilities
