"""
ReplacementRule schema - one source -> target component substitution.

Rules belong to a job and follow the same status machine, scoped to the
rule. Parameter remap directives are stored as raw JSON text and decoded
when a pass picks the rule up, so a malformed directive list fails only
that rule.

Directive shapes (JSON):
    {"toParamName": "path", "fromParamName": "srcPath"}   rename
    {"toParamName": "mode", "toParamValue": "fast"}       literal override

snake_case keys (target_param / source_param / value) are accepted too.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from compswap.errors import RemapDecodeError

from .status import TaskStatus


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ParamRemap:
    """
    A single parameter remap directive.

    Attributes:
        target_param: Parameter name declared by the target component
        source_param: Source parameter whose value is carried over (rename)
        value: Literal value to use instead (override); wins over source_param
    """
    target_param: str
    source_param: Optional[str] = None
    value: Any = None

    @property
    def is_override(self) -> bool:
        return self.value is not None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"toParamName": self.target_param}
        if self.source_param is not None:
            result["fromParamName"] = self.source_param
        if self.value is not None:
            result["toParamValue"] = self.value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParamRemap":
        if not isinstance(data, dict):
            raise RemapDecodeError(f"Remap directive must be an object, got: {data!r}")
        target = data.get("toParamName", data.get("target_param"))
        source = data.get("fromParamName", data.get("source_param"))
        value = data.get("toParamValue", data.get("value"))
        if not target or not isinstance(target, str):
            raise RemapDecodeError(f"Remap directive missing target parameter: {data!r}")
        if source is None and value is None:
            raise RemapDecodeError(
                f"Remap directive for '{target}' needs a source parameter or a literal value"
            )
        return cls(target_param=target, source_param=source, value=value)


def decode_param_remaps(raw: Any) -> tuple[ParamRemap, ...]:
    """
    Decode a rule's remap directives.

    Args:
        raw: JSON text, an already-decoded list, or None

    Returns:
        Tuple of directives in declaration order (empty when absent)

    Raises:
        RemapDecodeError: If the directives are malformed
    """
    if raw is None:
        return ()
    if isinstance(raw, str):
        if not raw.strip():
            return ()
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise RemapDecodeError(f"Invalid remap JSON: {e}") from e
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise RemapDecodeError(f"Remap directives must be a list, got: {type(raw).__name__}")
    return tuple(ParamRemap.from_dict(item) for item in raw)


@dataclass
class ReplacementRule:
    """
    A rule within a replacement job.

    Attributes:
        rule_id: Unique identifier
        job_id: Parent job
        ordinal: Position within the job; rules are processed in this order
        source_code: Component identifier to replace
        source_version: Source component version (informational, recorded in logs)
        target_code: Replacement component identifier
        target_version: Replacement component version resolved via the registry
        param_remap_info: Raw remap directives (JSON text) or None
        status: INIT, HANDING, SUCCESS or FAIL
    """
    rule_id: str
    job_id: str
    source_code: str
    source_version: str
    target_code: str
    target_version: str
    ordinal: int = 0
    param_remap_info: Optional[str] = None
    status: TaskStatus = TaskStatus.INIT
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    modifier: Optional[str] = None

    def remaps(self) -> tuple[ParamRemap, ...]:
        """Decode this rule's directives (see decode_param_remaps)."""
        return decode_param_remaps(self.param_remap_info)

    def describe(self) -> str:
        return f"{self.source_code}@{self.source_version} -> {self.target_code}@{self.target_version}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result = {
            "rule_id": self.rule_id,
            "job_id": self.job_id,
            "ordinal": self.ordinal,
            "source_code": self.source_code,
            "source_version": self.source_version,
            "target_code": self.target_code,
            "target_version": self.target_version,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.param_remap_info is not None:
            result["param_remap_info"] = self.param_remap_info
        if self.modifier:
            result["modifier"] = self.modifier
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplacementRule":
        """Deserialize from dictionary."""
        return cls(
            rule_id=data["rule_id"],
            job_id=data["job_id"],
            ordinal=data.get("ordinal", 0),
            source_code=data["source_code"],
            source_version=data["source_version"],
            target_code=data["target_code"],
            target_version=data["target_version"],
            param_remap_info=data.get("param_remap_info"),
            status=TaskStatus(data.get("status", TaskStatus.INIT.value)),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            modifier=data.get("modifier"),
        )
