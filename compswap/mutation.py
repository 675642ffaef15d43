"""
Mutation engine - substitute one component for another inside a definition.

substitute() walks a definition's stages, containers and elements in order
and replaces every element of the rule's source component with a freshly
built element of the target component:

1. Matching elements trigger an installation check for the owning project
2. The source element's inputs are read through HasParameterPayload
3. Every parameter the target declares is resolved (resolve_parameters)
4. Partial coverage aborts the whole definition (all-or-nothing)
5. The new element gets the target's name/code/version, resolved inputs,
   the target's output schema and the source namespace; execution metadata
   is carried over untouched so the element id never changes

The input definition is never modified. The outcome is returned as an
explicit variant instead of being signalled through exceptions:

    Skipped()                      no element matched
    Mutated(definition, count)     working copy with count replacements
    Failed(reason)                 definition-fatal problem, nothing changed
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from compswap.errors import (
    ComponentUnavailableError,
    DefinitionError,
    ParameterMappingError,
    UnsupportedElementError,
)
from compswap.schemas import (
    AgentlessComponentElement,
    ComponentDescriptor,
    ComponentElement,
    Definition,
    Element,
    ExecutionKind,
    HasParameterPayload,
    OpaqueElement,
    ParamRemap,
    ReplacementRule,
)
from compswap.schemas.definition import DATA_INPUT, DATA_NAMESPACE, DATA_OUTPUT

logger = logging.getLogger(__name__)

# (actor, projects, component_code) -> installed?
Installer = Callable[[str, Sequence[str], str], bool]


@dataclass(frozen=True)
class Skipped:
    """No element in the definition uses the rule's source component."""


@dataclass(frozen=True)
class Mutated:
    """Substitution succeeded; definition is the mutated working copy."""
    definition: Definition
    replaced_count: int


@dataclass(frozen=True)
class Failed:
    """Substitution aborted for this definition; nothing was changed."""
    reason: str
    error: Optional[Exception] = field(default=None, compare=False)


MutationResult = Union[Skipped, Mutated, Failed]


def resolve_parameters(
    target_names: Iterable[str],
    source_inputs: Mapping[str, Any],
    remaps: Sequence[ParamRemap] = (),
) -> dict[str, Any]:
    """
    Resolve a value for each declared target parameter.

    Precedence per target parameter:
    1. A directive naming it: its literal value, else the value of its
       source parameter
    2. A same-named source input, carried over verbatim
    3. Left unresolved (absent from the result)

    None counts as "no value" at every step, so a directive pointing at a
    missing source parameter falls through to the same-named input.

    Args:
        target_names: Parameter names declared by the target component
        source_inputs: Input map read from the source element
        remaps: Decoded remap directives

    Returns:
        Mapping of resolved target parameter names to values
    """
    by_target: dict[str, ParamRemap] = {}
    for remap in remaps:
        # First directive for a parameter wins
        by_target.setdefault(remap.target_param, remap)

    resolved: dict[str, Any] = {}
    for name in target_names:
        value = None
        remap = by_target.get(name)
        if remap is not None:
            if remap.value is not None:
                value = remap.value
            elif remap.source_param is not None:
                value = source_inputs.get(remap.source_param)
        if value is None:
            value = source_inputs.get(name)
        if value is not None:
            resolved[name] = value
    return resolved


def build_replacement_element(
    descriptor: ComponentDescriptor,
    source: Element,
    inputs: dict[str, Any],
    namespace: Optional[str],
) -> Element:
    """Build the target element, carrying the source's execution metadata."""
    data: dict[str, Any] = {DATA_INPUT: inputs}
    if descriptor.output_schema is not None:
        data[DATA_OUTPUT] = descriptor.output_schema
    if namespace is not None:
        data[DATA_NAMESPACE] = namespace

    if descriptor.execution_kind == ExecutionKind.AGENT:
        cls = ComponentElement
    else:
        cls = AgentlessComponentElement
    return cls(
        name=descriptor.name,
        component_code=descriptor.code,
        version=descriptor.version,
        meta=source.meta,
        data=data,
    )


def _replace_element(
    element: Element,
    rule: ReplacementRule,
    descriptor: ComponentDescriptor,
    remaps: Sequence[ParamRemap],
    entity_id: str,
) -> Element:
    if not isinstance(element, HasParameterPayload):
        kind = element.kind if isinstance(element, OpaqueElement) else type(element).__name__
        raise UnsupportedElementError(
            f"[{entity_id}] element {element.element_id} of kind '{kind}' does not expose parameters"
        )

    source_inputs = element.get_inputs()
    target_names = descriptor.input_param_names
    resolved = resolve_parameters(target_names, source_inputs, remaps)
    if len(resolved) != len(target_names):
        missing = [n for n in target_names if n not in resolved]
        message = (
            f"[{entity_id}] {rule.source_code}:{rule.source_version} cannot be replaced by "
            f"{rule.target_code}:{rule.target_version}, parameter mapping error (missing: {', '.join(missing)})"
        )
        raise ParameterMappingError(message)

    return build_replacement_element(descriptor, element, resolved, element.get_namespace())


def substitute(
    definition: Definition,
    rule: ReplacementRule,
    descriptor: ComponentDescriptor,
    *,
    project_id: Optional[str],
    actor: str,
    installer: Installer,
    remaps: Optional[Sequence[ParamRemap]] = None,
    entity_id: str = "",
) -> MutationResult:
    """
    Replace the rule's source component throughout one definition.

    Args:
        definition: Definition to inspect (left unmodified)
        rule: Rule naming source and target components
        descriptor: Resolved descriptor of the target component version
        project_id: Project owning the definition, for the install check
        actor: Identity used for the install check
        installer: Registry installation check
        remaps: Decoded remap directives (decoded from the rule when omitted)
        entity_id: Pipeline/template id, used in messages only

    Returns:
        Skipped, Mutated or Failed
    """
    if remaps is None:
        remaps = rule.remaps()

    working = definition.copy()
    replaced = 0
    installed = False
    try:
        for stage in working.stages:
            for container in stage.containers:
                final_elements: list[Element] = []
                for element in container.elements:
                    if element.component_code != rule.source_code:
                        final_elements.append(element)
                        continue
                    if not installed:
                        projects = [project_id] if project_id else []
                        if not installer(actor, projects, rule.target_code):
                            raise ComponentUnavailableError(rule.target_code, project_id)
                        installed = True
                    final_elements.append(
                        _replace_element(element, rule, descriptor, remaps, entity_id)
                    )
                    replaced += 1
                container.elements = final_elements
    except DefinitionError as e:
        logger.warning(f"Substitution aborted: {e}")
        return Failed(reason=str(e), error=e)

    if not replaced:
        return Skipped()
    return Mutated(definition=working, replaced_count=replaced)
