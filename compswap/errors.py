"""
Error classes for compswap.

Two axes matter when something goes wrong during a replacement sweep:

- Retry classification (kept from the execution boundary contract):
  - TransientError: safe to retry later (registry timeout, lock contention)
  - PermanentError: retrying will not help (unknown component, bad directives)

- Blast radius, which decides what gets marked failed:
  - rule-fatal: descriptor lookup or directive decoding failed for a rule
  - definition-fatal: DefinitionError subclasses, isolated to one pipeline
    or template and recorded as a Fail audit entry
  - job-fatal: anything else escaping the replacement pass while the
    in-progress marker is set

The mutation engine never lets DefinitionError escape; it converts them to
a Failed result. They are still exceptions so helpers can abort deep inside
the walk without threading return values through every level.
"""


class CompswapError(Exception):
    """Base exception for compswap."""
    pass


class TransientError(CompswapError):
    """
    Transient error - safe to retry.

    Examples:
    - Registry service temporarily unavailable
    - Storage connection reset
    """
    pass


class PermanentError(CompswapError):
    """
    Permanent error - do not retry.

    Examples:
    - Component or version not found in the registry
    - Malformed parameter remap directives
    - Status regression attempted on a job or rule
    """
    pass


class ComponentNotFoundError(PermanentError):
    """Raised when the registry has no descriptor for a component version."""

    def __init__(self, code: str, version: str):
        self.code = code
        self.version = version
        super().__init__(f"Component not found: {code}@{version}")


class RemapDecodeError(PermanentError):
    """Raised when a rule's parameter remap directives cannot be decoded."""
    pass


class InvalidTransitionError(PermanentError):
    """Raised when a status update would move a job or rule backwards."""
    pass


class DefinitionFormatError(PermanentError):
    """Raised when a stored definition cannot be parsed."""
    pass


class DefinitionError(PermanentError):
    """Base for failures isolated to a single definition."""
    pass


class ComponentUnavailableError(DefinitionError):
    """The target component is not installed for the owning project."""

    def __init__(self, code: str, project_id: str | None):
        self.code = code
        self.project_id = project_id
        super().__init__(f"Component {code} is not available for project {project_id}")


class ParameterMappingError(DefinitionError):
    """Resolved target parameters do not cover every declared parameter."""
    pass


class UnsupportedElementError(DefinitionError):
    """A matching element does not expose its parameter payload."""
    pass
