"""
BigQuery mirror for migration records.

Appends every audit record to a BigQuery table with insert_rows_json so the
replacement history can be queried next to other warehouse events. The local
job store stays the durable record; this is a secondary sink.

Expected table columns match MigrationRecord.to_dict() plus mirrored_at:

    record_id, job_id, rule_id, project_id, entity_id, entity_kind,
    source_version, target_version, status, error, actor, created_at,
    mirrored_at

Usage:
    from google.cloud import bigquery
    from compswap.stores.bigquery import BigQueryAuditMirror

    mirror = BigQueryAuditMirror("my-project.ops.replace_history", bigquery.Client())
    AuditTrail(job_store, mirrors=[mirror])
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from compswap.errors import TransientError
from compswap.schemas import MigrationRecord

logger = logging.getLogger(__name__)


class BigQueryAuditMirror:
    """Streams MigrationRecords into one BigQuery table."""

    def __init__(self, table_ref: str, bq_client):
        if not table_ref or table_ref.count(".") != 2:
            raise ValueError(f"table_ref must be 'project.dataset.table', got: {table_ref!r}")
        self.table_ref = table_ref
        self._client = bq_client

    @classmethod
    def create(cls, table_ref: str, project: Optional[str] = None) -> "BigQueryAuditMirror":
        """Build a mirror with a default google.cloud.bigquery client."""
        from google.cloud import bigquery

        return cls(table_ref, bigquery.Client(project=project))

    def publish(self, record: MigrationRecord) -> None:
        row = record.to_dict()
        row.setdefault("error", None)
        row["mirrored_at"] = datetime.now(timezone.utc).isoformat()

        errors = self._client.insert_rows_json(self.table_ref, [row], row_ids=[record.record_id])
        if errors:
            raise TransientError(f"{self.table_ref} insert failed: {errors}")
        logger.debug(f"Mirrored record {record.record_id} to {self.table_ref}")
