"""
MigrationRecord schema - the append-only audit trail.

One record is written for every definition where a substitution was
attempted, successful or not. Definitions with no matching component never
get a record. Records are the sole durable evidence of what happened to a
specific pipeline or template.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .status import TaskStatus

# Longest error text kept on a record
MAX_ERROR_LENGTH = 127


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def truncate_error(message: Optional[str]) -> Optional[str]:
    """Clip error text to MAX_ERROR_LENGTH characters."""
    if message is None:
        return None
    if len(message) > MAX_ERROR_LENGTH:
        return message[:MAX_ERROR_LENGTH]
    return message


class EntityKind(str, Enum):
    """Kind of definition a record refers to."""
    PIPELINE = "PIPELINE"
    TEMPLATE = "TEMPLATE"


@dataclass(frozen=True)
class MigrationRecord:
    """
    Audit record of one substitution attempt.

    Attributes:
        record_id: Unique identifier
        job_id: Job the rule belongs to
        rule_id: Rule that was applied
        project_id: Project owning the entity (None when unknown)
        entity_id: Pipeline or template id
        entity_kind: PIPELINE or TEMPLATE
        source_version: Version the substitution started from
        target_version: New version on success, None on failure
        status: SUCCESS or FAIL
        error: Truncated error text on failure
        actor: Identity the change was made as
        created_at: When the record was written
    """
    record_id: str
    job_id: str
    rule_id: str
    entity_id: str
    entity_kind: EntityKind
    source_version: int
    status: TaskStatus
    actor: str
    project_id: Optional[str] = None
    target_version: Optional[int] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if self.status not in (TaskStatus.SUCCESS, TaskStatus.FAIL):
            raise ValueError(f"MigrationRecord status must be SUCCESS or FAIL, got {self.status}")
        if self.status == TaskStatus.SUCCESS and self.target_version is None:
            raise ValueError("Successful MigrationRecord requires target_version")
        if self.error is not None and len(self.error) > MAX_ERROR_LENGTH:
            object.__setattr__(self, "error", truncate_error(self.error))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "record_id": self.record_id,
            "job_id": self.job_id,
            "rule_id": self.rule_id,
            "project_id": self.project_id,
            "entity_id": self.entity_id,
            "entity_kind": self.entity_kind.value,
            "source_version": self.source_version,
            "target_version": self.target_version,
            "status": self.status.value,
            "actor": self.actor,
            "created_at": self.created_at.isoformat(),
        }
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MigrationRecord":
        """Deserialize from dictionary."""
        return cls(
            record_id=data["record_id"],
            job_id=data["job_id"],
            rule_id=data["rule_id"],
            project_id=data.get("project_id"),
            entity_id=data["entity_id"],
            entity_kind=EntityKind(data["entity_kind"]),
            source_version=data["source_version"],
            target_version=data.get("target_version"),
            status=TaskStatus(data["status"]),
            error=data.get("error"),
            actor=data["actor"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )
