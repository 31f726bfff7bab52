"""
Resource declarations and graph nodes.

Declarations (ResourceSpec, DataSpec, OutputSpec, VariableSpec) are what
the project file says. ResourceNode is what the graph builder produces
from them for one environment: variables substituted, references kept
as explicit Reference objects, conditional nodes already filtered out.

Attribute values may be literals or one of two single-key mappings::

    memory: {var: lambda_memory}
    bucket: {ref: bucket.memory.name}
    account: {ref: data.identity.current.account_id}

References are resolved against producer attributes at execution time,
never by text substitution.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

DATA_PREFIX = "data."


class Reference(BaseModel):
    """A pointer from one attribute to a producer attribute or a variable."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["resource", "data", "var"]
    target: str          # node id, or variable name for kind="var"
    attribute: str = ""  # dotted attribute path inside the producer

    @classmethod
    def parse_ref(cls, raw: str) -> Reference:
        """Parse ``type.name.attr`` or ``data.type.name.attr``.

        Raises:
            ValueError: If the string is not a well-formed reference.
        """
        parts = [p for p in str(raw).strip().split(".")]
        if any(not p for p in parts):
            raise ValueError(f"malformed reference '{raw}'")
        if parts[0] == "data":
            if len(parts) < 4:
                raise ValueError(f"data reference '{raw}' needs data.<type>.<name>.<attr>")
            return cls(kind="data", target=".".join(parts[:3]), attribute=".".join(parts[3:]))
        if len(parts) < 3:
            raise ValueError(f"reference '{raw}' needs <type>.<name>.<attr>")
        return cls(kind="resource", target=".".join(parts[:2]), attribute=".".join(parts[2:]))

    @property
    def path(self) -> str:
        if self.kind == "var":
            return f"var.{self.target}"
        return f"{self.target}.{self.attribute}" if self.attribute else self.target

    def __str__(self) -> str:
        return self.path


def as_reference(value: Any) -> Reference | None:
    """Recognise the ``{ref: ...}`` / ``{var: ...}`` mapping forms."""
    if isinstance(value, Reference):
        return value
    if isinstance(value, dict) and len(value) == 1:
        if "ref" in value:
            return Reference.parse_ref(value["ref"])
        if "var" in value:
            return Reference(kind="var", target=str(value["var"]))
    return None


class VariableSpec(BaseModel):
    """A declared input variable."""

    default: Any = None
    type: Literal["string", "number", "bool", "list", "map"] | None = None
    description: str = ""
    required: bool = False


class ResourceSpec(BaseModel):
    """A declared infrastructure unit."""

    type: str
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    when: str | None = None        # "<var>" or "!<var>"
    stateful: bool = False         # holds externally-durable data
    artifact: str | None = None    # deployable produced outside the engine
    description: str = ""

    @property
    def id(self) -> str:
        return f"{self.type}.{self.name}"


class DataSpec(BaseModel):
    """A read-only data lookup."""

    type: str
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    when: str | None = None

    @property
    def id(self) -> str:
        return f"{DATA_PREFIX}{self.type}.{self.name}"


class OutputSpec(BaseModel):
    """A value exported after a successful apply."""

    value: Any = None
    description: str = ""
    sensitive: bool = False
    when: str | None = None


class ResourceNode(BaseModel):
    """One node of a built resource graph."""

    type: str
    local_name: str
    kind: Literal["resource", "data"] = "resource"
    attributes: dict[str, Any] = Field(default_factory=dict)
    explicit_dependencies: set[str] = Field(default_factory=set)
    stateful: bool = False
    artifact: str | None = None
    external_name: str = ""
    declaration_index: int = 0

    @property
    def id(self) -> str:
        if self.kind == "data":
            return f"{DATA_PREFIX}{self.type}.{self.local_name}"
        return f"{self.type}.{self.local_name}"

    @property
    def is_data(self) -> bool:
        return self.kind == "data"

    def references(self) -> list[Reference]:
        """All node references found anywhere in the attributes."""
        return [r for r in iter_references(self.attributes) if r.kind != "var"]


def iter_references(value: Any):
    """Yield every Reference nested inside a value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)
