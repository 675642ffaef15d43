import json
from datetime import datetime, timedelta, timezone

import pytest

from compswap.orchestrator import JobOrchestrator
from compswap.replacement import AuditTrail, ReplacementPass
from compswap.schemas import (
    ComponentDescriptor,
    ComponentElement,
    Container,
    Definition,
    ExecutionKind,
    ExecutionMetadata,
    JobScope,
    ReplacementJob,
    ReplacementRule,
    Stage,
)
from compswap.scope import ScopeIterator
from compswap.stores.memory import (
    InMemoryCheckpointStore,
    InMemoryComponentRegistry,
    InMemoryDefinitionStore,
    InMemoryJobStore,
    InMemoryLockService,
    InMemoryProjectDirectory,
    InMemoryTemplateStore,
)

LOCK_KEY = "compswap:replace:lock"
EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _make_element(code, inputs=None, element_id=None, *, version="1", namespace=None, cls=ComponentElement, **meta):
    data = {"input": dict(inputs or {})}
    if namespace is not None:
        data["namespace"] = namespace
    return cls(
        name=f"{code} step",
        component_code=code,
        version=version,
        meta=ExecutionMetadata(element_id=element_id or f"e-{code}", **meta),
        data=data,
    )


def _make_definition(*elements, name="pipe"):
    return Definition(
        name=name,
        stages=[Stage(stage_id="s1", containers=[Container(container_id="c1", name="build", elements=list(elements))])],
    )


@pytest.fixture
def make_element():
    """Factory for marketplace component elements."""
    return _make_element


@pytest.fixture
def make_definition():
    """Factory for a one-stage, one-container definition."""
    return _make_definition


@pytest.fixture
def descriptor_b():
    """Target component B@2 declaring inputs path and mode."""
    return ComponentDescriptor(
        code="B",
        name="B step",
        version="2",
        input_param_names=("path", "mode"),
        output_schema={"result": {"type": "string"}},
        execution_kind=ExecutionKind.AGENT,
    )


class World:
    """In-memory collaborators wired into a ready orchestrator."""

    def __init__(self, page_size=100, honor_succeeded_rules=True):
        self.now = 0.0
        self.jobs = InMemoryJobStore()
        self.checkpoints = InMemoryCheckpointStore()
        self.lock = InMemoryLockService(owner="node-a", clock=lambda: self.now)
        self.directory = InMemoryProjectDirectory()
        self.definitions = InMemoryDefinitionStore()
        self.templates = InMemoryTemplateStore()
        self.registry = InMemoryComponentRegistry()
        self.mirrors = []
        self.replacement = ReplacementPass(
            self.jobs,
            self.definitions,
            self.templates,
            self.registry,
            audit=AuditTrail(self.jobs, self.mirrors),
            page_size=page_size,
        )
        self.scope = ScopeIterator(self.directory, self.checkpoints, page_size=page_size)
        self.orchestrator = JobOrchestrator(
            self.jobs,
            self.lock,
            self.checkpoints,
            self.scope,
            self.replacement,
            lock_key=LOCK_KEY,
            lease_ms=60_000,
            honor_succeeded_rules=honor_succeeded_rules,
        )
        self._job_count = 0

    def register_b(self, descriptor, projects=None):
        self.registry.add(descriptor)
        self.registry.grant(descriptor.code, projects)

    def add_project(self, project_id, key, pipelines=()):
        self.directory.add_project(project_id, key)
        for pipeline_id, definition in pipelines:
            self.directory.add_pipeline(project_id, pipeline_id)
            self.definitions.add_pipeline(pipeline_id, definition, project_id=project_id)

    def add_job(self, scope, rules=(("A", "1", "B", "2", None),), creator="alice"):
        self._job_count += 1
        job = ReplacementJob(
            job_id=f"job-{self._job_count}",
            scope=scope,
            creator=creator,
            created_at=EPOCH + timedelta(minutes=self._job_count),
        )
        built = []
        for ordinal, (src, src_v, tgt, tgt_v, remap) in enumerate(rules):
            built.append(ReplacementRule(
                rule_id=f"{job.job_id}-r{ordinal}",
                job_id=job.job_id,
                ordinal=ordinal,
                source_code=src,
                source_version=src_v,
                target_code=tgt,
                target_version=tgt_v,
                param_remap_info=json.dumps(remap) if isinstance(remap, list) else remap,
            ))
        self.jobs.create_job(job, built)
        return job, built


@pytest.fixture
def world():
    return World()


@pytest.fixture
def make_world():
    """Factory for worlds with non-default page size or requeue policy."""
    return World


@pytest.fixture
def all_projects_scope():
    return JobScope.all_projects()
