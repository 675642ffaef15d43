"""
compswap.schemas - Data structures for the replacement engine.

ReplacementJob -> ReplacementRule -> MigrationRecord

Lifecycle:
1. ReplacementJob: created by a request, scoped to pipelines/project/all projects
2. ReplacementRule: one source -> target substitution with remap directives
3. MigrationRecord: immutable audit entry per attempted definition

Definitions (pipeline and template bodies) and ComponentDescriptors come
from external stores and the component registry.
"""

from .status import TaskStatus, PENDING_STATUSES, can_transition
from .job import ReplacementJob, JobScope, ScopeKind
from .rule import ReplacementRule, ParamRemap, decode_param_remaps
from .record import MigrationRecord, EntityKind, truncate_error, MAX_ERROR_LENGTH
from .component import ComponentDescriptor, ExecutionKind
from .definition import (
    Definition,
    Stage,
    Container,
    Element,
    ComponentElement,
    AgentlessComponentElement,
    BuiltinElement,
    OpaqueElement,
    ExecutionMetadata,
    HasParameterPayload,
    StoredDefinition,
    StoredTemplate,
    decode_definition,
    element_from_dict,
)

__all__ = [
    # Status
    "TaskStatus",
    "PENDING_STATUSES",
    "can_transition",
    # Job
    "ReplacementJob",
    "JobScope",
    "ScopeKind",
    # Rule
    "ReplacementRule",
    "ParamRemap",
    "decode_param_remaps",
    # Audit
    "MigrationRecord",
    "EntityKind",
    "truncate_error",
    "MAX_ERROR_LENGTH",
    # Registry
    "ComponentDescriptor",
    "ExecutionKind",
    # Definitions
    "Definition",
    "Stage",
    "Container",
    "Element",
    "ComponentElement",
    "AgentlessComponentElement",
    "BuiltinElement",
    "OpaqueElement",
    "ExecutionMetadata",
    "HasParameterPayload",
    "StoredDefinition",
    "StoredTemplate",
    "decode_definition",
    "element_from_dict",
]
