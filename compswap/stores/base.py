"""Protocols for the collaborators the replacement engine talks to.

This module defines the narrow contracts compswap depends on:
- LockService: fleet-wide mutual exclusion with a bounded lease
- CheckpointStore: key/value store for the sweep cursor and in-progress marker
- JobStore: jobs, rules and the audit trail
- ProjectDirectory: projects by primary key and the pipelines they own
- DefinitionStore / TemplateStore: versioned definition bodies
- RegistryClient: component descriptors and installation checks
- AuditMirror: optional secondary sink for audit records

Implementations live in stores.memory (tests, dry runs), stores.sqlite
(single-host deployments), stores.bigquery and compswap.registry.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Sequence, runtime_checkable

from compswap.schemas import (
    ComponentDescriptor,
    Definition,
    MigrationRecord,
    ReplacementJob,
    ReplacementRule,
    StoredDefinition,
    StoredTemplate,
    TaskStatus,
)


@dataclass(frozen=True)
class ProjectRef:
    """A project and its primary key."""

    project_id: str
    key: int


@runtime_checkable
class LockService(Protocol):
    """Protocol for the fleet-wide lock.

    A lock whose lease has expired may be taken by another owner. Releasing
    only removes a lock still held by the caller.
    """

    def try_acquire(self, key: str, lease_ms: int) -> bool:
        """Try to take the lock without blocking.

        Args:
            key: Lock name
            lease_ms: Lease length in milliseconds

        Returns:
            True if the caller now holds the lock
        """
        ...

    def release(self, key: str) -> None:
        """Release the lock if the caller holds it."""
        ...


@runtime_checkable
class CheckpointStore(Protocol):
    """Protocol for small persistent string values keyed by name."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


@runtime_checkable
class JobStore(Protocol):
    """Protocol for job, rule and audit persistence.

    Reads are deterministic: jobs oldest first, rules by ordinal. Status
    updates are single-row and refuse to move a status backwards.
    """

    def create_job(self, job: ReplacementJob, rules: Sequence[ReplacementRule]) -> None:
        ...

    def get_job(self, job_id: str) -> Optional[ReplacementJob]:
        ...

    def next_pending_job(self) -> Optional[ReplacementJob]:
        """Oldest job in INIT or HANDING, or None."""
        ...

    def list_jobs(
        self,
        statuses: Optional[Iterable[TaskStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ReplacementJob]:
        ...

    def count_rules(self, job_id: str, statuses: Optional[Iterable[TaskStatus]] = None) -> int:
        ...

    def list_rules(
        self,
        job_id: str,
        statuses: Optional[Iterable[TaskStatus]] = None,
        after_ordinal: Optional[int] = None,
        limit: int = 100,
    ) -> list[ReplacementRule]:
        """Rules ordered by ordinal, strictly after after_ordinal when given."""
        ...

    def get_rule(self, rule_id: str) -> Optional[ReplacementRule]:
        ...

    def update_job_status(self, job_id: str, status: TaskStatus, modifier: str) -> None:
        """Raises InvalidTransitionError on regression, KeyError if unknown."""
        ...

    def update_rule_status(self, rule_id: str, status: TaskStatus, modifier: str) -> None:
        """Raises InvalidTransitionError on regression, KeyError if unknown."""
        ...

    def add_migration_record(self, record: MigrationRecord) -> None:
        ...

    def list_migration_records(
        self,
        job_id: str,
        rule_id: Optional[str] = None,
    ) -> list[MigrationRecord]:
        ...


@runtime_checkable
class ProjectDirectory(Protocol):
    """Protocol for project and pipeline ownership lookups."""

    def list_pipeline_ids(self, project_id: str) -> set[str]:
        ...

    def list_projects_by_key_range(self, min_key: int, max_key: int) -> list[ProjectRef]:
        """Projects with min_key <= key <= max_key, ascending by key."""
        ...

    def min_key(self) -> Optional[int]:
        ...

    def max_key(self) -> Optional[int]:
        ...


@runtime_checkable
class DefinitionStore(Protocol):
    """Protocol for versioned pipeline definitions."""

    def load_latest(self, pipeline_ids: Iterable[str]) -> list[StoredDefinition]:
        """Latest version of each known pipeline; unknown ids are skipped."""
        ...

    def persist_new_version(self, pipeline_id: str, definition: Definition, actor: str) -> int:
        """Store definition as the next version and return that version."""
        ...


@runtime_checkable
class TemplateStore(Protocol):
    """Protocol for a project's custom templates."""

    def list_templates(self, project_id: str, offset: int = 0, limit: int = 100) -> list[StoredTemplate]:
        ...

    def update_template(
        self,
        project_id: str,
        template_id: str,
        definition: Definition,
        actor: str,
    ) -> int:
        ...


@runtime_checkable
class RegistryClient(Protocol):
    """Protocol for the component registry."""

    def get_component_descriptor(self, code: str, version: str) -> ComponentDescriptor:
        """Raises ComponentNotFoundError or TransientError."""
        ...

    def install_component(self, actor: str, projects: Sequence[str], code: str) -> bool:
        """Make code available to projects; False when that is not allowed."""
        ...


@runtime_checkable
class AuditMirror(Protocol):
    """Protocol for forwarding audit records to a secondary sink."""

    def publish(self, record: MigrationRecord) -> None:
        ...
