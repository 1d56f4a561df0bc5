"""Descriptor types produced by the model reader and consumed by the compiler."""

from dataclasses import dataclass, field
from enum import StrEnum


class Domain(StrEnum):
    """Protocol partition a command belongs to.

    Unknown domains are allowed by the model reader and kept as plain strings;
    the members below are the ones the classifier and fingerprint care about.
    """

    CORE = "Core"
    TRANSPORT = "Transport"
    DWM = "DWM"
    REDIRECTION = "Redirection"
    RENDER_DATA = "RenderData"


class Origin(StrEnum):
    """Where a command comes from on the producer side."""

    RESOURCE = "Resource"
    RENDER_DATA_INSTRUCTION = "RenderDataInstruction"
    OTHER = "Other"


class CodeSection(StrEnum):
    """Generation directives a command or resource may request."""

    NATIVE_DUCE = "NativeDuce"
    NATIVE_REDIRECTION = "NativeRedirection"
    MANAGED = "Managed"
    MANAGED_CLASS = "ManagedClass"


# Sections that place an item in different, incompatible target partitions
EXCLUSIVE_SECTIONS: tuple[frozenset[CodeSection], ...] = (
    frozenset([CodeSection.NATIVE_DUCE, CodeSection.NATIVE_REDIRECTION]),
)

# Secondary-partition domains; everything else feeds the primary fingerprint
SECONDARY_DOMAINS = frozenset([Domain.DWM, Domain.REDIRECTION])

HANDLE_SIZE = 4
HANDLE_TYPE = "ResourceHandle"


@dataclass(frozen=True, slots=True)
class FieldDescriptor:
    """A resolved field of a command or resource.

    `size` is the marshaled size in bytes. Handle fields are always 4 bytes,
    whatever the host pointer width is.
    """

    name: str
    type_name: str
    size: int
    is_handle: bool = False
    is_animation: bool = False
    is_value_type: bool = True
    alignment: int | None = None  # explicit marshaled alignment, if declared
    resource_type: str | None = None  # referenced resource, if any
    is_collection: bool = False
    is_animatable: bool = False

    @property
    def needs_handle_check(self) -> bool:
        """True when the field addresses a typed, non-value, non-collection resource."""
        return (
            self.is_handle
            and self.resource_type is not None
            and not self.is_value_type
            and not self.is_collection
        )


@dataclass(frozen=True, slots=True)
class ResourceDescriptor:
    """A stateful object addressable by handle on the consuming side."""

    name: str
    fields: tuple[FieldDescriptor, ...] = ()
    is_value_type: bool = False
    is_abstract: bool = False
    can_introduce_cycles: bool = False
    has_unmanaged_resource: bool = False
    is_collection: bool = False
    sections: frozenset[CodeSection] = field(default_factory=frozenset)


@dataclass(frozen=True, slots=True)
class CommandDescriptor:
    """One protocol instruction; maps to exactly one generated struct."""

    name: str
    domain: str
    origin: Origin
    target: str = ""
    fields: tuple[FieldDescriptor, ...] = ()
    has_payload: bool = False
    fail_if_transport_denied: bool = True
    is_security_critical: bool = True
    is_unmanaged_only: bool = False
    sections: frozenset[CodeSection] = field(default_factory=frozenset)

    @property
    def struct_name(self) -> str:
        """Structural name of the generated struct, e.g. CMD_CORE_VISUAL_SETOFFSET."""
        parts = (self.domain, self.target, self.name)
        return "CMD_" + "_".join(p.upper() for p in parts if p)

    @property
    def is_secondary(self) -> bool:
        return self.domain in SECONDARY_DOMAINS

    @property
    def handle_field(self) -> FieldDescriptor | None:
        """The field addressing the command's target resource.

        A field literally named `Handle` wins; otherwise the first handle
        field that is not an animation handle.
        """
        for f in self.fields:
            if f.name == "Handle" and f.is_handle:
                return f
        for f in self.fields:
            if f.is_handle and not f.is_animation:
                return f
        return None


@dataclass(frozen=True, slots=True)
class ProtocolModel:
    """Everything the model reader hands to the compiler, in schema order."""

    commands: tuple[CommandDescriptor, ...]
    resources: tuple[ResourceDescriptor, ...] = ()

    def find_resource(self, name: str) -> ResourceDescriptor | None:
        for resource in self.resources:
            if resource.name == name:
                return resource
        return None
