"""
Wiring from CompswapConfig to a ready JobOrchestrator.

    runtime = build_runtime(config)
    report = runtime.orchestrator.tick()

Everything persistent lives in the SQLite database named by sqlite_path;
components come from the catalog directory; audit records are mirrored to
BigQuery when bigquery_audit_table is set.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from compswap.config import CompswapConfig
from compswap.orchestrator import JobOrchestrator
from compswap.registry import FileComponentRegistry
from compswap.replacement import AuditTrail, ReplacementPass
from compswap.scheduler import TickScheduler
from compswap.scope import ScopeIterator
from compswap.stores.base import AuditMirror
from compswap.stores.sqlite import (
    SqliteCheckpointStore,
    SqliteDatabase,
    SqliteDefinitionStore,
    SqliteJobStore,
    SqliteLockService,
    SqliteProjectDirectory,
    SqliteTemplateStore,
)

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Collaborators built from one config."""
    config: CompswapConfig
    db: SqliteDatabase
    job_store: SqliteJobStore
    checkpoints: SqliteCheckpointStore
    lock: SqliteLockService
    directory: SqliteProjectDirectory
    definitions: SqliteDefinitionStore
    templates: SqliteTemplateStore
    registry: FileComponentRegistry
    orchestrator: JobOrchestrator
    mirrors: list[AuditMirror] = field(default_factory=list)

    def scheduler(self, interval_s: Optional[float] = None) -> TickScheduler:
        return TickScheduler(self.orchestrator, interval_s or self.config.tick_interval_s)


def _build_mirrors(config: CompswapConfig) -> list[AuditMirror]:
    if not config.bigquery_audit_table:
        return []
    from compswap.stores.bigquery import BigQueryAuditMirror

    logger.info(f"Mirroring audit records to {config.bigquery_audit_table}")
    return [BigQueryAuditMirror.create(config.bigquery_audit_table, project=config.bigquery_project)]


def build_runtime(config: CompswapConfig, mirrors: Optional[list[AuditMirror]] = None) -> Runtime:
    """
    Build every collaborator for config and initialize the database.

    Args:
        config: Loaded configuration
        mirrors: Audit mirrors to use instead of the configured ones

    Returns:
        Runtime with a ready orchestrator
    """
    db = SqliteDatabase(config.sqlite_file)
    db.initialize()

    job_store = SqliteJobStore(db)
    checkpoints = SqliteCheckpointStore(db)
    lock = SqliteLockService(db)
    directory = SqliteProjectDirectory(db)
    definitions = SqliteDefinitionStore(db)
    templates = SqliteTemplateStore(db)
    registry = FileComponentRegistry(config.catalog_dir)
    if mirrors is None:
        mirrors = _build_mirrors(config)

    replacement = ReplacementPass(
        job_store,
        definitions,
        templates,
        registry,
        audit=AuditTrail(job_store, mirrors),
        page_size=config.page_size,
        modifier=config.actor,
    )
    orchestrator = JobOrchestrator(
        job_store,
        lock,
        checkpoints,
        ScopeIterator(directory, checkpoints, page_size=config.page_size),
        replacement,
        lock_key=config.lock_key,
        lease_ms=config.lock_lease_ms,
        modifier=config.actor,
        honor_succeeded_rules=config.honor_succeeded_rules,
    )
    return Runtime(
        config=config,
        db=db,
        job_store=job_store,
        checkpoints=checkpoints,
        lock=lock,
        directory=directory,
        definitions=definitions,
        templates=templates,
        registry=registry,
        orchestrator=orchestrator,
        mirrors=list(mirrors),
    )
