"""
Migration: Add Adoption Intelligence tables.

Creates the evidence store, intervention workflow and the optional
analytics tables:
1. evidence_objects - immutable, versioned evidence
2. evidence_lineage_links - directed edges between evidence rows
3. control_freshness_snapshots - freshness history (optional capability)
4. adoption_edges - curated graph edges (optional capability)
5. benchmark_cohorts / benchmark_metric_snapshots - peer benchmarks (optional capability)
6. intervention_recommendations / intervention_executions - remediation workflow
7. notification_jobs - reminder queue
8. request_audit_logs - one row per mutating or sensitive request

Also adds the partial unique index on active control mappings.
Safe to re-run: every table and index is checked first.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/control_adoption"
)


def table_exists(conn, table_name: str) -> bool:
    """Check if a table exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = :table_name
        )
    """), {"table_name": table_name})
    return result.fetchone()[0]


def index_exists(conn, index_name: str) -> bool:
    """Check if an index exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM pg_indexes
            WHERE indexname = :index_name
        )
    """), {"index_name": index_name})
    return result.fetchone()[0]


def create_table(conn, table_name: str, ddl: str, indexes=()):
    if table_exists(conn, table_name):
        print(f"{table_name} table already exists")
        return
    conn.execute(text(ddl))
    for statement in indexes:
        conn.execute(text(statement))
    print(f"Created {table_name} table")


def run_migration():
    """Create all adoption intelligence tables."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        # =================================================================
        # CONTROL MAPPINGS: one active row per (control, campaign, module, obligation)
        # =================================================================
        if index_exists(conn, "uq_control_mappings_active"):
            print("uq_control_mappings_active index already exists")
        else:
            conn.execute(text("""
                CREATE UNIQUE INDEX uq_control_mappings_active ON control_mappings (
                    org_id, control_id,
                    COALESCE(campaign_id, ''), COALESCE(module_id, ''), COALESCE(obligation_id, '')
                ) WHERE active = true
            """))
            print("Created uq_control_mappings_active index")

        # =================================================================
        # TABLE 1: evidence_objects
        # =================================================================
        create_table(conn, "evidence_objects", """
            CREATE TABLE evidence_objects (
                id VARCHAR(36) PRIMARY KEY,
                org_id VARCHAR(36) NOT NULL,
                control_id VARCHAR(36) REFERENCES controls(id) ON DELETE SET NULL,
                campaign_id VARCHAR(36),
                module_id VARCHAR(36),
                assignment_id VARCHAR(36),
                user_id VARCHAR(36),
                evidence_type VARCHAR(32) NOT NULL,
                evidence_status VARCHAR(32) NOT NULL DEFAULT 'queued',
                confidence_score FLOAT NOT NULL DEFAULT 0.8
                    CHECK (confidence_score >= 0 AND confidence_score <= 1),
                quality_score FLOAT NOT NULL DEFAULT 80
                    CHECK (quality_score >= 0 AND quality_score <= 100),
                checksum VARCHAR(64) NOT NULL,
                lineage_hash VARCHAR(64) NOT NULL,
                dedup_key VARCHAR(64) NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                superseded_by_evidence_id VARCHAR(36),
                source_table VARCHAR(64) NOT NULL,
                source_id VARCHAR(64) NOT NULL,
                metadata_json JSONB DEFAULT '{}'::jsonb,
                created_by VARCHAR(36),
                occurred_at TIMESTAMPTZ NOT NULL,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                CONSTRAINT uq_evidence_dedup_version UNIQUE (org_id, dedup_key, version)
            )
        """, indexes=(
            "CREATE INDEX idx_evidence_org_control ON evidence_objects(org_id, control_id)",
            "CREATE INDEX idx_evidence_campaign ON evidence_objects(campaign_id)",
        ))

        # =================================================================
        # TABLE 2: evidence_lineage_links
        # =================================================================
        create_table(conn, "evidence_lineage_links", """
            CREATE TABLE evidence_lineage_links (
                id VARCHAR(36) PRIMARY KEY,
                org_id VARCHAR(36) NOT NULL,
                source_evidence_id VARCHAR(36) NOT NULL REFERENCES evidence_objects(id),
                target_evidence_id VARCHAR(36) NOT NULL REFERENCES evidence_objects(id),
                relation_type VARCHAR(32) NOT NULL,
                metadata_json JSONB DEFAULT '{}'::jsonb,
                created_by VARCHAR(36),
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                CONSTRAINT uq_evidence_lineage_edge
                    UNIQUE (org_id, source_evidence_id, target_evidence_id, relation_type),
                CHECK (source_evidence_id <> target_evidence_id)
            )
        """, indexes=(
            "CREATE INDEX idx_lineage_source ON evidence_lineage_links(source_evidence_id)",
            "CREATE INDEX idx_lineage_target ON evidence_lineage_links(target_evidence_id)",
        ))

        # =================================================================
        # TABLE 3: control_freshness_snapshots (optional)
        # =================================================================
        create_table(conn, "control_freshness_snapshots", """
            CREATE TABLE control_freshness_snapshots (
                id VARCHAR(36) PRIMARY KEY,
                org_id VARCHAR(36) NOT NULL,
                control_id VARCHAR(36) NOT NULL REFERENCES controls(id) ON DELETE CASCADE,
                freshness_state VARCHAR(32) NOT NULL,
                freshness_score FLOAT NOT NULL,
                fresh_evidence_count INTEGER DEFAULT 0,
                stale_evidence_count INTEGER DEFAULT 0,
                rejected_evidence_count INTEGER DEFAULT 0,
                synced_evidence_count INTEGER DEFAULT 0,
                median_ack_hours FLOAT,
                last_policy_update_at TIMESTAMPTZ,
                latest_evidence_at TIMESTAMPTZ,
                metadata_json JSONB DEFAULT '{}'::jsonb,
                computed_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """, indexes=(
            "CREATE INDEX idx_freshness_org_control ON control_freshness_snapshots(org_id, control_id, computed_at DESC)",
        ))

        # =================================================================
        # TABLE 4: adoption_edges (optional)
        # =================================================================
        create_table(conn, "adoption_edges", """
            CREATE TABLE adoption_edges (
                id VARCHAR(36) PRIMARY KEY,
                org_id VARCHAR(36) NOT NULL,
                edge_type VARCHAR(32) NOT NULL,
                obligation_id VARCHAR(36),
                control_id VARCHAR(36),
                campaign_id VARCHAR(36),
                module_id VARCHAR(36),
                weight FLOAT NOT NULL DEFAULT 1.0,
                metadata_json JSONB DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """, indexes=(
            "CREATE INDEX idx_adoption_edges_org ON adoption_edges(org_id, created_at DESC)",
        ))

        # =================================================================
        # TABLE 5: benchmark_cohorts / benchmark_metric_snapshots (optional)
        # =================================================================
        create_table(conn, "benchmark_cohorts", """
            CREATE TABLE benchmark_cohorts (
                id VARCHAR(36) PRIMARY KEY,
                code VARCHAR(64) NOT NULL UNIQUE,
                label VARCHAR(120) NOT NULL,
                description TEXT,
                min_sample_size INTEGER NOT NULL DEFAULT 5,
                active BOOLEAN NOT NULL DEFAULT true
            )
        """)
        create_table(conn, "benchmark_metric_snapshots", """
            CREATE TABLE benchmark_metric_snapshots (
                id VARCHAR(36) PRIMARY KEY,
                cohort_id VARCHAR(36) NOT NULL REFERENCES benchmark_cohorts(id) ON DELETE CASCADE,
                org_id VARCHAR(36),
                metric_name VARCHAR(32) NOT NULL,
                metric_value FLOAT NOT NULL,
                percentile_rank FLOAT CHECK (percentile_rank >= 0 AND percentile_rank <= 100),
                anonymized BOOLEAN NOT NULL DEFAULT false,
                snapshot_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """, indexes=(
            "CREATE INDEX idx_benchmark_lookup ON benchmark_metric_snapshots(cohort_id, metric_name, snapshot_at)",
        ))

        # =================================================================
        # TABLE 6: intervention_recommendations / intervention_executions
        # =================================================================
        create_table(conn, "intervention_recommendations", """
            CREATE TABLE intervention_recommendations (
                id VARCHAR(36) PRIMARY KEY,
                org_id VARCHAR(36) NOT NULL,
                control_id VARCHAR(36) NOT NULL REFERENCES controls(id) ON DELETE CASCADE,
                campaign_id VARCHAR(36),
                module_id VARCHAR(36),
                recommendation_type VARCHAR(32) NOT NULL,
                status VARCHAR(32) NOT NULL DEFAULT 'proposed',
                rationale TEXT NOT NULL,
                expected_impact_pct FLOAT NOT NULL,
                confidence_score FLOAT NOT NULL,
                metadata_json JSONB DEFAULT '{}'::jsonb,
                proposed_by VARCHAR(36),
                approved_by VARCHAR(36),
                approved_at TIMESTAMPTZ,
                dismissed_by VARCHAR(36),
                dismissed_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """, indexes=(
            "CREATE INDEX idx_interventions_org_created ON intervention_recommendations(org_id, created_at DESC)",
            """
            CREATE UNIQUE INDEX uq_intervention_active_per_type
                ON intervention_recommendations(org_id, control_id, recommendation_type)
                WHERE status IN ('proposed', 'approved', 'executing')
            """,
        ))
        create_table(conn, "intervention_executions", """
            CREATE TABLE intervention_executions (
                id VARCHAR(36) PRIMARY KEY,
                org_id VARCHAR(36) NOT NULL,
                intervention_id VARCHAR(36) NOT NULL
                    REFERENCES intervention_recommendations(id) ON DELETE CASCADE,
                execution_status VARCHAR(32) NOT NULL DEFAULT 'running',
                idempotency_key VARCHAR(128) NOT NULL,
                result_json JSONB DEFAULT '{}'::jsonb,
                error_message TEXT,
                executed_by VARCHAR(36),
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                CONSTRAINT uq_intervention_execution_key UNIQUE (org_id, intervention_id, idempotency_key)
            )
        """, indexes=(
            "CREATE INDEX idx_executions_intervention ON intervention_executions(intervention_id)",
        ))

        # =================================================================
        # TABLE 7: notification_jobs
        # =================================================================
        create_table(conn, "notification_jobs", """
            CREATE TABLE notification_jobs (
                id VARCHAR(36) PRIMARY KEY,
                org_id VARCHAR(36) NOT NULL,
                campaign_id VARCHAR(36),
                assignment_id VARCHAR(36),
                recipient VARCHAR(255) NOT NULL,
                notification_type VARCHAR(32) NOT NULL DEFAULT 'reminder',
                status VARCHAR(20) NOT NULL DEFAULT 'queued',
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """, indexes=(
            "CREATE INDEX idx_notification_jobs_org ON notification_jobs(org_id)",
        ))

        # =================================================================
        # TABLE 8: request_audit_logs
        # =================================================================
        create_table(conn, "request_audit_logs", """
            CREATE TABLE request_audit_logs (
                id VARCHAR(36) PRIMARY KEY,
                request_id VARCHAR(64) NOT NULL,
                org_id VARCHAR(36),
                user_id VARCHAR(36),
                route VARCHAR(255) NOT NULL,
                action VARCHAR(64) NOT NULL,
                status_code INTEGER NOT NULL,
                error_code VARCHAR(32),
                metadata_json JSONB DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """, indexes=(
            "CREATE INDEX idx_audit_request ON request_audit_logs(request_id)",
            "CREATE INDEX idx_audit_org ON request_audit_logs(org_id, created_at DESC)",
        ))

        conn.commit()
        print("\nAdoption Intelligence migration completed successfully!")


if __name__ == "__main__":
    run_migration()
