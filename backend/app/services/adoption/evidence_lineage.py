"""
Evidence Lineage Graph

Directed edges between evidence records:
- supersedes:   newer version -> the version it replaced
- derived_from: derived evidence -> its input
- exported_in:  evidence -> the export evidence that packaged it

(org, source, target, relation) is unique; creation ignores duplicates.
"""
import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.adoption import LineageEdge, LineageMaps
from ...models.db_models import (
    EvidenceLineageLinkDB, EvidenceObjectDB, EvidenceType, RelationType, as_utc,
)
from .errors import DatabaseError

logger = logging.getLogger(__name__)


class EvidenceLineageService:
    """Create and traverse lineage links. Writes flush; the caller owns the commit."""

    def __init__(self, db: Session):
        self.db = db

    def create_lineage_links(
        self,
        org_id: str,
        source_evidence_id: str,
        target_evidence_ids: List[str],
        relation_type: RelationType,
        created_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Link one source to many targets, ignoring edges that already exist.

        Returns:
            Number of edges newly inserted
        """
        targets = list(dict.fromkeys(target_evidence_ids))
        if not targets:
            return 0

        existing = {
            target for (target,) in self.db.query(EvidenceLineageLinkDB.target_evidence_id).filter(
                EvidenceLineageLinkDB.org_id == org_id,
                EvidenceLineageLinkDB.source_evidence_id == source_evidence_id,
                EvidenceLineageLinkDB.target_evidence_id.in_(targets),
                EvidenceLineageLinkDB.relation_type == relation_type,
            )
        }

        inserted = 0
        for target in targets:
            if target in existing:
                continue
            try:
                with self.db.begin_nested():
                    self.db.add(EvidenceLineageLinkDB(
                        id=str(uuid4()),
                        org_id=org_id,
                        source_evidence_id=source_evidence_id,
                        target_evidence_id=target,
                        relation_type=relation_type,
                        metadata_json=metadata or {},
                        created_by=created_by,
                    ))
            except IntegrityError:
                # Inserted concurrently; the edge exists either way
                continue
            inserted += 1
        return inserted

    def fetch_lineage_for_ids(self, org_id: str, evidence_ids: List[str]) -> LineageMaps:
        """
        Forward and backward adjacency for every edge touching the given ids.

        Edges are matched as source and as target, then merged so an edge
        between two requested ids is reported once in each map.
        """
        maps = LineageMaps()
        if not evidence_ids:
            return maps

        try:
            as_source = (
                self.db.query(EvidenceLineageLinkDB)
                .filter(EvidenceLineageLinkDB.org_id == org_id,
                        EvidenceLineageLinkDB.source_evidence_id.in_(evidence_ids))
                .order_by(EvidenceLineageLinkDB.created_at.asc())
                .all()
            )
            as_target = (
                self.db.query(EvidenceLineageLinkDB)
                .filter(EvidenceLineageLinkDB.org_id == org_id,
                        EvidenceLineageLinkDB.target_evidence_id.in_(evidence_ids))
                .order_by(EvidenceLineageLinkDB.created_at.asc())
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Lineage lookup failed for org {org_id}: {e}")
            raise DatabaseError("Lineage lookup failed")

        seen = set()
        for link in as_source + as_target:
            dedupe_key = (
                link.source_evidence_id, link.target_evidence_id,
                link.relation_type, link.created_at,
            )
            if dedupe_key in seen:
                continue
            seen.add(dedupe_key)

            edge = LineageEdge(
                source_evidence_id=link.source_evidence_id,
                target_evidence_id=link.target_evidence_id,
                relation_type=link.relation_type,
                created_at=as_utc(link.created_at),
                metadata=link.metadata_json or {},
            )
            maps.by_source.setdefault(link.source_evidence_id, []).append(edge)
            maps.by_target.setdefault(link.target_evidence_id, []).append(edge)
        return maps

    def control_timeline(self, org_id: str, control_id: str) -> Dict[str, Any]:
        """Evidence for a control in occurrence order, with its lineage classified per item."""
        evidence = (
            self.db.query(EvidenceObjectDB)
            .filter(EvidenceObjectDB.org_id == org_id, EvidenceObjectDB.control_id == control_id)
            .order_by(EvidenceObjectDB.occurred_at.asc(), EvidenceObjectDB.version.asc())
            .all()
        )
        lineage = self.fetch_lineage_for_ids(org_id, [item.id for item in evidence])

        def targets(evidence_id: str, relation: RelationType) -> List[str]:
            return [
                e.target_evidence_id for e in lineage.by_source.get(evidence_id, [])
                if e.relation_type == relation
            ]

        timeline = []
        for item in evidence:
            timeline.append({
                "id": item.id,
                "occurred_at": as_utc(item.occurred_at).isoformat(),
                "created_at": as_utc(item.created_at).isoformat() if item.created_at else None,
                "evidence_type": item.evidence_type.value,
                "status": item.evidence_status.value,
                "version": item.version,
                "checksum": item.checksum,
                "lineage_hash": item.lineage_hash,
                "source": {"table": item.source_table, "id": item.source_id},
                "superseded_by_evidence_id": item.superseded_by_evidence_id,
                "supersedes_evidence_ids": targets(item.id, RelationType.SUPERSEDES),
                "derived_from_evidence_ids": targets(item.id, RelationType.DERIVED_FROM),
                "exported_in_evidence_ids": targets(item.id, RelationType.EXPORTED_IN),
                "derived_by_evidence_ids": [
                    e.source_evidence_id for e in lineage.by_target.get(item.id, [])
                    if e.relation_type == RelationType.DERIVED_FROM
                ],
            })

        return {
            "summary": {
                "evidence_count": len(evidence),
                "lineage_links": sum(len(edges) for edges in lineage.by_source.values()),
            },
            "timeline": timeline,
        }

    def link_export_evidence(
        self,
        org_id: str,
        campaign_id: str,
        export_evidence_ids: List[str],
        created_by: Optional[str] = None,
    ) -> int:
        """Link every non-export evidence row of a campaign to the export evidence (exported_in)."""
        if not export_evidence_ids:
            return 0
        sources = (
            self.db.query(EvidenceObjectDB.id)
            .filter(
                EvidenceObjectDB.org_id == org_id,
                EvidenceObjectDB.campaign_id == campaign_id,
                EvidenceObjectDB.evidence_type != EvidenceType.CAMPAIGN_EXPORT,
                EvidenceObjectDB.id.notin_(export_evidence_ids),
            )
            .all()
        )
        linked = 0
        for (source_id,) in sources:
            linked += self.create_lineage_links(
                org_id, source_id, export_evidence_ids, RelationType.EXPORTED_IN, created_by,
            )
        logger.info(f"Linked {len(sources)} evidence rows of campaign {campaign_id} to export")
        return linked
