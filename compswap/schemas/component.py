"""ComponentDescriptor - what the registry says about a component version."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ExecutionKind(str, Enum):
    """Whether a component needs a build agent."""
    AGENT = "AGENT"
    AGENTLESS = "AGENTLESS"


@dataclass(frozen=True)
class ComponentDescriptor:
    """
    Declared schema of one component version.

    Attributes:
        code: Component identifier
        name: Display name used for new elements
        version: Component version
        input_param_names: Declared input parameter names, in declaration order
        output_schema: Declared output schema, copied into new elements as-is
        execution_kind: AGENT or AGENTLESS, decides the element variant
    """
    code: str
    name: str
    version: str
    input_param_names: tuple[str, ...] = field(default_factory=tuple)
    output_schema: Optional[dict[str, Any]] = None
    execution_kind: ExecutionKind = ExecutionKind.AGENT

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.code,
            "name": self.name,
            "version": self.version,
            "input": list(self.input_param_names),
            "execution_kind": self.execution_kind.value,
        }
        if self.output_schema is not None:
            result["output"] = self.output_schema
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ComponentDescriptor":
        """
        Build a descriptor from a registry payload.

        The declared inputs may be a list of names or a mapping of
        name -> parameter definition (only the keys matter here).
        """
        inputs = data.get("input") or ()
        if isinstance(inputs, dict):
            names = tuple(inputs.keys())
        else:
            names = tuple(inputs)
        kind = data.get("execution_kind", data.get("job_type", ExecutionKind.AGENT.value))
        return cls(
            code=data["code"],
            name=data.get("name", data["code"]),
            version=str(data["version"]),
            input_param_names=names,
            output_schema=data.get("output"),
            execution_kind=ExecutionKind(str(kind).upper()),
        )
