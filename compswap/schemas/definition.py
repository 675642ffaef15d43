"""
Definition model - stages -> containers -> elements.

A definition is the stored body of a pipeline or template. Each element is
one configured usage of a component. Elements are serialized with a "@type"
discriminator:

    component            agent-bound marketplace component, data={input, output, namespace}
    agentless-component  agentless marketplace component, same data layout
    builtin              legacy built-in element with flat params
    <anything else>      kept verbatim as OpaqueElement

Every element carries ExecutionMetadata which substitution must carry over
unchanged. Variants that can be substituted implement HasParameterPayload;
OpaqueElement deliberately does not, so a rule targeting one fails loudly
instead of guessing at its structure.
"""

import copy
import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterator, Optional, Protocol, runtime_checkable

from compswap.errors import DefinitionFormatError

# Keys inside a component element's data payload
DATA_INPUT = "input"
DATA_OUTPUT = "output"
DATA_NAMESPACE = "namespace"

# ExecutionMetadata attribute -> serialized key
_META_KEYS = {
    "element_id": "id",
    "status": "status",
    "can_retry": "canRetry",
    "elapsed": "elapsed",
    "start_epoch": "startEpoch",
    "template_modify": "templateModify",
    "additional_options": "additionalOptions",
    "error_type": "errorType",
    "error_code": "errorCode",
    "error_msg": "errorMsg",
    "execute_count": "executeCount",
}


@runtime_checkable
class HasParameterPayload(Protocol):
    """Capability of elements whose input parameters can be read."""

    def get_inputs(self) -> dict[str, Any]:
        ...

    def get_namespace(self) -> Optional[str]:
        ...


@dataclass(frozen=True)
class ExecutionMetadata:
    """
    Execution state of an element.

    None of this belongs to the component; substitution copies the whole
    object across so execution history keeps pointing at the same element.
    """
    element_id: Optional[str] = None
    status: Optional[str] = None
    can_retry: Optional[bool] = None
    elapsed: Optional[int] = None
    start_epoch: Optional[int] = None
    template_modify: Optional[bool] = None
    additional_options: Optional[dict[str, Any]] = None
    error_type: Optional[str] = None
    error_code: Optional[int] = None
    error_msg: Optional[str] = None
    execute_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        result = {}
        for attr, key in _META_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionMetadata":
        kwargs = {attr: data[key] for attr, key in _META_KEYS.items() if key in data}
        return cls(**kwargs)


@dataclass
class Element:
    """Base element. Subclasses set TYPE and serialize their payload."""
    TYPE: ClassVar[str] = ""

    name: str
    component_code: str
    version: str = ""
    meta: ExecutionMetadata = field(default_factory=ExecutionMetadata)

    @property
    def element_id(self) -> Optional[str]:
        return self.meta.element_id

    def _payload_dict(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "@type": self.TYPE,
            "name": self.name,
            "componentCode": self.component_code,
            "version": self.version,
        }
        result.update(self._payload_dict())
        result.update(self.meta.to_dict())
        return result


@dataclass
class _MarketElement(Element):
    data: dict[str, Any] = field(default_factory=dict)

    def get_inputs(self) -> dict[str, Any]:
        inputs = self.data.get(DATA_INPUT)
        return dict(inputs) if isinstance(inputs, dict) else {}

    def get_namespace(self) -> Optional[str]:
        namespace = self.data.get(DATA_NAMESPACE)
        return namespace if isinstance(namespace, str) else None

    def _payload_dict(self) -> dict[str, Any]:
        return {"data": self.data}


@dataclass
class ComponentElement(_MarketElement):
    """Agent-bound marketplace component."""
    TYPE: ClassVar[str] = "component"


@dataclass
class AgentlessComponentElement(_MarketElement):
    """Marketplace component that runs without a build agent."""
    TYPE: ClassVar[str] = "agentless-component"


@dataclass
class BuiltinElement(Element):
    """Legacy built-in element whose parameters sit flat on the element."""
    TYPE: ClassVar[str] = "builtin"

    params: dict[str, Any] = field(default_factory=dict)
    namespace: Optional[str] = None

    def get_inputs(self) -> dict[str, Any]:
        return dict(self.params)

    def get_namespace(self) -> Optional[str]:
        return self.namespace

    def _payload_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"params": self.params}
        if self.namespace is not None:
            result["namespace"] = self.namespace
        return result


@dataclass
class OpaqueElement(Element):
    """An element kind this engine does not model; round-trips unchanged."""
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return str(self.raw.get("@type", "unknown"))

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.raw)


ELEMENT_TYPES: dict[str, type[Element]] = {
    ComponentElement.TYPE: ComponentElement,
    AgentlessComponentElement.TYPE: AgentlessComponentElement,
    BuiltinElement.TYPE: BuiltinElement,
}


def element_from_dict(data: dict[str, Any]) -> Element:
    """
    Parse one element.

    Raises:
        DefinitionFormatError: If the element has no "@type"
    """
    if not isinstance(data, dict) or "@type" not in data:
        raise DefinitionFormatError(f"Element missing '@type': {data!r}")
    element_type = data["@type"]
    code = data.get("componentCode") or element_type
    common = {
        "name": data.get("name", ""),
        "component_code": code,
        "version": str(data.get("version", "")),
        "meta": ExecutionMetadata.from_dict(data),
    }
    cls = ELEMENT_TYPES.get(element_type)
    if cls is None:
        return OpaqueElement(raw=copy.deepcopy(data), **common)
    if issubclass(cls, _MarketElement):
        return cls(data=copy.deepcopy(data.get("data") or {}), **common)
    return BuiltinElement(
        params=copy.deepcopy(data.get("params") or {}),
        namespace=data.get("namespace"),
        **common,
    )


@dataclass
class Container:
    """An ordered group of elements (a job in CI terms)."""
    container_id: str
    name: str = ""
    elements: list[Element] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.container_id,
            "name": self.name,
            "elements": [e.to_dict() for e in self.elements],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Container":
        return cls(
            container_id=str(data.get("id", "")),
            name=data.get("name", ""),
            elements=[element_from_dict(e) for e in data.get("elements", [])],
        )


@dataclass
class Stage:
    """An ordered group of containers."""
    stage_id: str
    containers: list[Container] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.stage_id,
            "containers": [c.to_dict() for c in self.containers],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Stage":
        return cls(
            stage_id=str(data.get("id", "")),
            containers=[Container.from_dict(c) for c in data.get("containers", [])],
        )


@dataclass
class Definition:
    """A pipeline or template body."""
    name: str
    stages: list[Stage] = field(default_factory=list)

    def iter_elements(self) -> Iterator[Element]:
        """Yield every element in stage, container, element order."""
        for stage in self.stages:
            for container in stage.containers:
                yield from container.elements

    def copy(self) -> "Definition":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "stages": [s.to_dict() for s in self.stages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Definition":
        if not isinstance(data, dict):
            raise DefinitionFormatError(f"Definition must be an object, got: {type(data).__name__}")
        return cls(
            name=data.get("name", ""),
            stages=[Stage.from_dict(s) for s in data.get("stages", [])],
        )


def decode_definition(body: Any) -> Definition:
    """Decode a stored body (JSON text or an already-decoded object)."""
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except json.JSONDecodeError as e:
            raise DefinitionFormatError(f"Definition body is not valid JSON: {e}") from e
    return Definition.from_dict(body)


@dataclass
class StoredDefinition:
    """
    Latest stored version of a pipeline.

    body holds the row as stored (JSON text or a decoded object); decode()
    parses it and raises DefinitionFormatError when it is unreadable.
    """
    pipeline_id: str
    project_id: Optional[str]
    version: int
    body: Any
    last_modifier: Optional[str] = None

    def decode(self) -> Definition:
        return decode_definition(self.body)

    @property
    def definition(self) -> Definition:
        return self.decode()


@dataclass
class StoredTemplate:
    """Latest stored version of a project's custom template."""
    template_id: str
    project_id: str
    version: int
    body: Any
    version_name: str = ""
    creator: Optional[str] = None

    def decode(self) -> Definition:
        return decode_definition(self.body)

    @property
    def definition(self) -> Definition:
        return self.decode()
