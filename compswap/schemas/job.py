"""
ReplacementJob schema - a batch of rules applied across a scope.

A job is created by an external request, mutated only by the orchestrator,
and never deleted. Its scope says which definitions the rules touch:

- PIPELINES: an explicit set of pipeline ids
- PROJECT: every pipeline (and custom template) owned by one project
- ALL_PROJECTS: every project, swept page by page across ticks
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .status import TaskStatus


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ScopeKind(str, Enum):
    """Which population of definitions a job covers."""
    PIPELINES = "pipelines"
    PROJECT = "project"
    ALL_PROJECTS = "all_projects"


@dataclass(frozen=True)
class JobScope:
    """
    Scope descriptor for a replacement job.

    Attributes:
        kind: Scope kind
        pipeline_ids: Explicit pipeline ids (PIPELINES only)
        project_id: Owning project (PROJECT only)
    """
    kind: ScopeKind
    pipeline_ids: frozenset[str] = field(default_factory=frozenset)
    project_id: Optional[str] = None

    def __post_init__(self):
        if self.kind == ScopeKind.PIPELINES and not self.pipeline_ids:
            raise ValueError("PIPELINES scope requires at least one pipeline id")
        if self.kind == ScopeKind.PROJECT and not self.project_id:
            raise ValueError("PROJECT scope requires a project_id")

    @classmethod
    def pipelines(cls, pipeline_ids) -> "JobScope":
        return cls(kind=ScopeKind.PIPELINES, pipeline_ids=frozenset(pipeline_ids))

    @classmethod
    def project(cls, project_id: str) -> "JobScope":
        return cls(kind=ScopeKind.PROJECT, project_id=project_id)

    @classmethod
    def all_projects(cls) -> "JobScope":
        return cls(kind=ScopeKind.ALL_PROJECTS)

    @classmethod
    def from_fields(cls, pipeline_id_info: Optional[str], project_id: Optional[str]) -> "JobScope":
        """
        Derive a scope from the two nullable columns a job row carries.

        pipeline_id_info is a JSON array of pipeline ids. When both columns
        are blank the job covers every project.
        """
        if pipeline_id_info and pipeline_id_info.strip():
            ids = json.loads(pipeline_id_info)
            if not isinstance(ids, list):
                raise ValueError(f"pipeline_id_info must be a JSON array, got: {pipeline_id_info}")
            return cls.pipelines(str(i) for i in ids)
        if project_id and project_id.strip():
            return cls.project(project_id)
        return cls.all_projects()

    def to_fields(self) -> tuple[Optional[str], Optional[str]]:
        """Inverse of from_fields: (pipeline_id_info, project_id)."""
        if self.kind == ScopeKind.PIPELINES:
            return json.dumps(sorted(self.pipeline_ids)), None
        if self.kind == ScopeKind.PROJECT:
            return None, self.project_id
        return None, None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind.value}
        if self.pipeline_ids:
            result["pipeline_ids"] = sorted(self.pipeline_ids)
        if self.project_id:
            result["project_id"] = self.project_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobScope":
        return cls(
            kind=ScopeKind(data["kind"]),
            pipeline_ids=frozenset(data.get("pipeline_ids", ())),
            project_id=data.get("project_id"),
        )


@dataclass
class ReplacementJob:
    """
    A replacement job.

    Attributes:
        job_id: Unique identifier
        scope: Which definitions the job's rules apply to
        status: INIT, HANDING, SUCCESS or FAIL
        creator: Identity of whoever requested the job; used as the actor
            for registry installs and audit records
        created_at: Creation time, used for oldest-first scheduling
        updated_at: Last status change
        modifier: Who made the last status change
    """
    job_id: str
    scope: JobScope
    creator: str
    status: TaskStatus = TaskStatus.INIT
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    modifier: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result = {
            "job_id": self.job_id,
            "scope": self.scope.to_dict(),
            "creator": self.creator,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.modifier:
            result["modifier"] = self.modifier
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplacementJob":
        """Deserialize from dictionary."""
        return cls(
            job_id=data["job_id"],
            scope=JobScope.from_dict(data["scope"]),
            creator=data["creator"],
            status=TaskStatus(data.get("status", TaskStatus.INIT.value)),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            modifier=data.get("modifier"),
        )
