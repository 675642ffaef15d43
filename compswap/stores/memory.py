"""
In-memory collaborators for testing and dry runs.

All data is lost when the instance is garbage collected. Objects handed out
are copies, so callers cannot mutate stored state behind the store's back.
"""

import copy
import dataclasses
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from compswap.errors import ComponentNotFoundError, InvalidTransitionError
from compswap.schemas import (
    ComponentDescriptor,
    Definition,
    MigrationRecord,
    ReplacementJob,
    ReplacementRule,
    StoredDefinition,
    StoredTemplate,
    TaskStatus,
    can_transition,
    decode_definition,
)

from .base import ProjectRef


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class InMemoryLockService:
    """
    Lease-based lock shared between "instances" in one process.

    Each instance has its own owner token; use for_owner() to get a second
    view onto the same lock table, e.g. to simulate another scheduler node.
    """

    def __init__(
        self,
        owner: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        _table: Optional[dict[str, tuple[str, float]]] = None,
    ):
        self.owner = owner or uuid.uuid4().hex
        self._clock = clock
        self._locks = _table if _table is not None else {}

    def for_owner(self, owner: str) -> "InMemoryLockService":
        return InMemoryLockService(owner=owner, clock=self._clock, _table=self._locks)

    def try_acquire(self, key: str, lease_ms: int) -> bool:
        now = self._clock()
        held = self._locks.get(key)
        if held is not None:
            holder, expires_at = held
            if holder != self.owner and expires_at > now:
                return False
        self._locks[key] = (self.owner, now + lease_ms / 1000.0)
        return True

    def release(self, key: str) -> None:
        held = self._locks.get(key)
        if held is not None and held[0] == self.owner:
            del self._locks[key]

    def holder(self, key: str) -> Optional[str]:
        held = self._locks.get(key)
        if held is None or held[1] <= self._clock():
            return None
        return held[0]


class InMemoryCheckpointStore:
    """Dict-backed CheckpointStore."""

    def __init__(self):
        self._values: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = str(value)

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._values)


class InMemoryJobStore:
    """Dict-backed JobStore."""

    def __init__(self):
        self._jobs: dict[str, ReplacementJob] = {}
        self._rules: dict[str, ReplacementRule] = {}
        self._records: list[MigrationRecord] = []

    def create_job(self, job: ReplacementJob, rules: Sequence[ReplacementRule]) -> None:
        if job.job_id in self._jobs:
            raise ValueError(f"Job already exists: {job.job_id}")
        ordinals = [r.ordinal for r in rules]
        if len(set(ordinals)) != len(ordinals):
            raise ValueError(f"Job {job.job_id} has duplicate rule ordinals")
        self._jobs[job.job_id] = dataclasses.replace(job)
        for rule in rules:
            if rule.job_id != job.job_id:
                raise ValueError(f"Rule {rule.rule_id} belongs to job {rule.job_id}, not {job.job_id}")
            self._rules[rule.rule_id] = dataclasses.replace(rule)

    def get_job(self, job_id: str) -> Optional[ReplacementJob]:
        job = self._jobs.get(job_id)
        return dataclasses.replace(job) if job else None

    def next_pending_job(self) -> Optional[ReplacementJob]:
        pending = self.list_jobs(statuses=(TaskStatus.INIT, TaskStatus.HANDING), limit=1)
        return pending[0] if pending else None

    def list_jobs(
        self,
        statuses: Optional[Iterable[TaskStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ReplacementJob]:
        wanted = set(statuses) if statuses is not None else None
        jobs = [j for j in self._jobs.values() if wanted is None or j.status in wanted]
        jobs.sort(key=lambda j: (j.created_at, j.job_id))
        return [dataclasses.replace(j) for j in jobs[offset:offset + limit]]

    def count_rules(self, job_id: str, statuses: Optional[Iterable[TaskStatus]] = None) -> int:
        wanted = set(statuses) if statuses is not None else None
        return sum(
            1 for r in self._rules.values()
            if r.job_id == job_id and (wanted is None or r.status in wanted)
        )

    def list_rules(
        self,
        job_id: str,
        statuses: Optional[Iterable[TaskStatus]] = None,
        after_ordinal: Optional[int] = None,
        limit: int = 100,
    ) -> list[ReplacementRule]:
        wanted = set(statuses) if statuses is not None else None
        rules = [
            r for r in self._rules.values()
            if r.job_id == job_id
            and (wanted is None or r.status in wanted)
            and (after_ordinal is None or r.ordinal > after_ordinal)
        ]
        rules.sort(key=lambda r: (r.ordinal, r.rule_id))
        return [dataclasses.replace(r) for r in rules[:limit]]

    def get_rule(self, rule_id: str) -> Optional[ReplacementRule]:
        rule = self._rules.get(rule_id)
        return dataclasses.replace(rule) if rule else None

    def update_job_status(self, job_id: str, status: TaskStatus, modifier: str) -> None:
        job = self._jobs[job_id]
        if not can_transition(job.status, status):
            raise InvalidTransitionError(f"Job {job_id}: {job.status.value} -> {status.value}")
        job.status = status
        job.modifier = modifier
        job.updated_at = _utcnow()

    def update_rule_status(self, rule_id: str, status: TaskStatus, modifier: str) -> None:
        rule = self._rules[rule_id]
        if not can_transition(rule.status, status):
            raise InvalidTransitionError(f"Rule {rule_id}: {rule.status.value} -> {status.value}")
        rule.status = status
        rule.modifier = modifier
        rule.updated_at = _utcnow()

    def add_migration_record(self, record: MigrationRecord) -> None:
        self._records.append(record)

    def list_migration_records(
        self,
        job_id: str,
        rule_id: Optional[str] = None,
    ) -> list[MigrationRecord]:
        return [
            r for r in self._records
            if r.job_id == job_id and (rule_id is None or r.rule_id == rule_id)
        ]


class InMemoryProjectDirectory:
    """Projects keyed by an integer primary key, each owning pipelines."""

    def __init__(self):
        self._project_keys: dict[str, int] = {}
        self._pipelines: dict[str, set[str]] = {}

    def add_project(self, project_id: str, key: int) -> None:
        self._project_keys[project_id] = key
        self._pipelines.setdefault(project_id, set())

    def add_pipeline(self, project_id: str, pipeline_id: str) -> None:
        if project_id not in self._project_keys:
            raise KeyError(f"Unknown project: {project_id}")
        self._pipelines[project_id].add(pipeline_id)

    def list_pipeline_ids(self, project_id: str) -> set[str]:
        return set(self._pipelines.get(project_id, ()))

    def list_projects_by_key_range(self, min_key: int, max_key: int) -> list[ProjectRef]:
        refs = [
            ProjectRef(project_id=pid, key=key)
            for pid, key in self._project_keys.items()
            if min_key <= key <= max_key
        ]
        return sorted(refs, key=lambda r: r.key)

    def min_key(self) -> Optional[int]:
        return min(self._project_keys.values(), default=None)

    def max_key(self) -> Optional[int]:
        return max(self._project_keys.values(), default=None)


def _serialize(definition: Union[Definition, Any]) -> Any:
    """Definitions are stored as dicts; anything else is kept as given."""
    if isinstance(definition, Definition):
        return definition.to_dict()
    return copy.deepcopy(definition)


class InMemoryDefinitionStore:
    """Pipeline definitions with full version history, stored serialized."""

    def __init__(self):
        self._versions: dict[str, list[tuple[int, Any, Optional[str]]]] = {}
        self._owners: dict[str, Optional[str]] = {}

    def add_pipeline(
        self,
        pipeline_id: str,
        definition: Union[Definition, Any],
        project_id: Optional[str] = None,
        version: int = 1,
        modifier: Optional[str] = None,
    ) -> None:
        self._versions[pipeline_id] = [(version, _serialize(definition), modifier)]
        self._owners[pipeline_id] = project_id

    def latest_version(self, pipeline_id: str) -> int:
        return self._versions[pipeline_id][-1][0]

    def get_version(self, pipeline_id: str, version: int) -> Definition:
        for v, body, _ in self._versions[pipeline_id]:
            if v == version:
                return decode_definition(body)
        raise KeyError(f"{pipeline_id} has no version {version}")

    def load_latest(self, pipeline_ids: Iterable[str]) -> list[StoredDefinition]:
        result = []
        for pipeline_id in sorted(set(pipeline_ids)):
            versions = self._versions.get(pipeline_id)
            if not versions:
                continue
            version, body, modifier = versions[-1]
            result.append(StoredDefinition(
                pipeline_id=pipeline_id,
                project_id=self._owners.get(pipeline_id),
                version=version,
                body=copy.deepcopy(body),
                last_modifier=modifier,
            ))
        return result

    def persist_new_version(self, pipeline_id: str, definition: Definition, actor: str) -> int:
        versions = self._versions[pipeline_id]
        new_version = versions[-1][0] + 1
        versions.append((new_version, definition.to_dict(), actor))
        return new_version


class InMemoryTemplateStore:
    """Custom templates per project, latest version only plus a counter."""

    def __init__(self):
        self._templates: dict[str, dict[str, StoredTemplate]] = {}

    def add_template(
        self,
        project_id: str,
        template_id: str,
        definition: Union[Definition, Any],
        version: int = 1,
        version_name: str = "init",
        creator: Optional[str] = None,
    ) -> None:
        self._templates.setdefault(project_id, {})[template_id] = StoredTemplate(
            template_id=template_id,
            project_id=project_id,
            version=version,
            version_name=version_name,
            body=_serialize(definition),
            creator=creator,
        )

    def get_template(self, project_id: str, template_id: str) -> StoredTemplate:
        stored = self._templates[project_id][template_id]
        return dataclasses.replace(stored, body=copy.deepcopy(stored.body))

    def list_templates(self, project_id: str, offset: int = 0, limit: int = 100) -> list[StoredTemplate]:
        templates = sorted(self._templates.get(project_id, {}).values(), key=lambda t: t.template_id)
        return [
            dataclasses.replace(t, body=copy.deepcopy(t.body))
            for t in templates[offset:offset + limit]
        ]

    def update_template(
        self,
        project_id: str,
        template_id: str,
        definition: Definition,
        actor: str,
    ) -> int:
        stored = self._templates[project_id][template_id]
        self._templates[project_id][template_id] = dataclasses.replace(
            stored,
            version=stored.version + 1,
            body=definition.to_dict(),
        )
        return stored.version + 1


class InMemoryComponentRegistry:
    """
    Registry backed by a dict of descriptors.

    Installation is granted per component to a set of projects, or to every
    project when grant() is called without projects.
    """

    def __init__(self):
        self._descriptors: dict[tuple[str, str], ComponentDescriptor] = {}
        self._grants: dict[str, Optional[set[str]]] = {}
        self.install_calls: list[tuple[str, tuple[str, ...], str]] = []

    def add(self, descriptor: ComponentDescriptor) -> None:
        self._descriptors[(descriptor.code, descriptor.version)] = descriptor

    def grant(self, code: str, projects: Optional[Iterable[str]] = None) -> None:
        self._grants[code] = set(projects) if projects is not None else None

    def get_component_descriptor(self, code: str, version: str) -> ComponentDescriptor:
        descriptor = self._descriptors.get((code, version))
        if descriptor is None:
            raise ComponentNotFoundError(code, version)
        return descriptor

    def install_component(self, actor: str, projects: Sequence[str], code: str) -> bool:
        self.install_calls.append((actor, tuple(projects), code))
        if code not in self._grants:
            return False
        allowed = self._grants[code]
        if allowed is None:
            return True
        return bool(projects) and all(p in allowed for p in projects)
