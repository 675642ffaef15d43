"""
compswap.stores - collaborators of the replacement engine.

Contracts live in base; memory and sqlite provide implementations.
The BigQuery mirror is imported from compswap.stores.bigquery directly.
"""

from .base import (
    AuditMirror,
    CheckpointStore,
    DefinitionStore,
    JobStore,
    LockService,
    ProjectDirectory,
    ProjectRef,
    RegistryClient,
    TemplateStore,
)
from .memory import (
    InMemoryCheckpointStore,
    InMemoryComponentRegistry,
    InMemoryDefinitionStore,
    InMemoryJobStore,
    InMemoryLockService,
    InMemoryProjectDirectory,
    InMemoryTemplateStore,
)
from .sqlite import (
    SqliteCheckpointStore,
    SqliteDatabase,
    SqliteDefinitionStore,
    SqliteJobStore,
    SqliteLockService,
    SqliteProjectDirectory,
    SqliteTemplateStore,
)

__all__ = [
    # Contracts
    "AuditMirror",
    "CheckpointStore",
    "DefinitionStore",
    "JobStore",
    "LockService",
    "ProjectDirectory",
    "ProjectRef",
    "RegistryClient",
    "TemplateStore",
    # In-memory
    "InMemoryCheckpointStore",
    "InMemoryComponentRegistry",
    "InMemoryDefinitionStore",
    "InMemoryJobStore",
    "InMemoryLockService",
    "InMemoryProjectDirectory",
    "InMemoryTemplateStore",
    # SQLite
    "SqliteCheckpointStore",
    "SqliteDatabase",
    "SqliteDefinitionStore",
    "SqliteJobStore",
    "SqliteLockService",
    "SqliteProjectDirectory",
    "SqliteTemplateStore",
]
