"""Model reader: turn a model document into resolved, immutable descriptors.

The document is the already-parsed form of a protocol schema (JSON), with
three ordered lists: value `types`, `resources` and `commands`. Reading is
two-phase: every resource is first allocated in a `ResourceArena`, then
fields are resolved and resource references wired by handle, so resource
graphs may contain cycles without any object owning another.
"""

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from dataclasses_json import DataClassJsonMixin

from .errors import ModelError, SchemaConflict, UnresolvedType
from .packer import PaddedLayout, StructPacker
from .types import (
    EXCLUSIVE_SECTIONS,
    HANDLE_SIZE,
    HANDLE_TYPE,
    CodeSection,
    CommandDescriptor,
    Domain,
    FieldDescriptor,
    Origin,
    ProtocolModel,
    ResourceDescriptor,
)

logger = logging.getLogger(__name__)

# Primitive type sizes in bytes
PRIMITIVE_SIZES: dict[str, int] = {
    "bool": 1,
    "int8": 1,
    "uint8": 1,
    "int16": 2,
    "uint16": 2,
    "int32": 4,
    "uint32": 4,
    "int64": 8,
    "uint64": 8,
    "float32": 4,
    "float64": 8,
}

MANAGED_SECTIONS = frozenset([CodeSection.MANAGED, CodeSection.MANAGED_CLASS])


@dataclass
class SchemaField(DataClassJsonMixin):
    """A field as it appears in the model document."""

    name: str
    type: str
    animation: bool = False  # the field itself is an animation handle
    animate: bool = False  # the field gets an animation handle in update commands


@dataclass
class SchemaType(DataClassJsonMixin):
    """A named fixed-size value type (Point, Rect, Matrix...)."""

    name: str
    size: int
    alignment: int | None = None


@dataclass
class SchemaResource(DataClassJsonMixin):
    name: str
    fields: list[SchemaField] = field(default_factory=list)
    value_type: bool = False
    abstract: bool = False
    can_introduce_cycles: bool = False
    has_unmanaged_resource: bool = False
    collection: bool = False
    sections: list[str] = field(default_factory=list)


@dataclass
class SchemaCommand(DataClassJsonMixin):
    name: str
    domain: str = Domain.CORE.value
    origin: str = Origin.OTHER.value
    target: str = ""
    fields: list[SchemaField] = field(default_factory=list)
    has_payload: bool = False
    fail_if_transport_denied: bool = True
    is_security_critical: bool = True
    unmanaged_only: bool = False
    sections: list[str] = field(default_factory=list)


@dataclass
class ModelDocument(DataClassJsonMixin):
    """Root of the model document."""

    types: list[SchemaType] = field(default_factory=list)
    resources: list[SchemaResource] = field(default_factory=list)
    commands: list[SchemaCommand] = field(default_factory=list)


class ResourceArena:
    """Resources addressed by stable integer handles.

    Construction is two-phase: `allocate` every resource, then `wire` the
    references between them. References are handles, never objects.
    """

    def __init__(self) -> None:
        self._names: list[str] = []
        self._handles: dict[str, int] = {}
        self._refs: list[tuple[int, ...]] = []

    def __len__(self) -> int:
        return len(self._names)

    def allocate(self, name: str) -> int:
        if name in self._handles:
            raise SchemaConflict(f"Resource {name} declared more than once")
        handle = len(self._names)
        self._names.append(name)
        self._handles[name] = handle
        self._refs.append(())
        return handle

    def handle_of(self, name: str) -> int | None:
        return self._handles.get(name)

    def name_of(self, handle: int) -> str:
        return self._names[handle]

    def wire(self, handle: int, references: Iterable[int]) -> None:
        self._refs[handle] = tuple(dict.fromkeys(references))

    def references(self, handle: int) -> tuple[int, ...]:
        return self._refs[handle]

    def cycles(self) -> list[list[int]]:
        """Return one handle path per back edge found by a depth-first walk."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = [WHITE] * len(self._names)
        stack: list[int] = []
        found: list[list[int]] = []

        def visit(handle: int) -> None:
            color[handle] = GREY
            stack.append(handle)
            for ref in self._refs[handle]:
                if color[ref] == GREY:
                    found.append(stack[stack.index(ref) :])
                elif color[ref] == WHITE:
                    visit(ref)
            stack.pop()
            color[handle] = BLACK

        for handle in range(len(self._names)):
            if color[handle] == WHITE:
                visit(handle)
        return found


def _sections(owner: str, names: Iterable[str]) -> frozenset[CodeSection]:
    sections = set()
    for name in names:
        try:
            sections.add(CodeSection(name))
        except ValueError:
            raise ModelError(f"{owner}: unknown code section '{name}'") from None
    return frozenset(sections)


def _require_name(kind: str, name: object) -> None:
    if not isinstance(name, str) or not name:
        raise ModelError(f"{kind} without a name")


def check_sections(owner: str, sections: frozenset[CodeSection]) -> None:
    """Raise SchemaConflict if sections request incompatible target partitions."""
    for exclusive in EXCLUSIVE_SECTIONS:
        if exclusive <= sections:
            names = ", ".join(sorted(s.value for s in exclusive))
            raise SchemaConflict(f"{owner} requests mutually exclusive sections: {names}")


def update_command(resource: ResourceDescriptor) -> CommandDescriptor:
    """The command a resource uses to push its state to the consumer.

    A leading `Handle` addresses the resource; animatable fields are each
    followed by the handle of their animation.
    """
    fields = [
        FieldDescriptor(
            name="Handle",
            type_name=HANDLE_TYPE,
            size=HANDLE_SIZE,
            is_handle=True,
            is_value_type=False,
            resource_type=resource.name,
        )
    ]
    for f in resource.fields:
        fields.append(f)
        if f.is_animatable:
            fields.append(
                FieldDescriptor(
                    name=f"h{f.name}Animations",
                    type_name=HANDLE_TYPE,
                    size=HANDLE_SIZE,
                    is_handle=True,
                    is_animation=True,
                    is_value_type=False,
                )
            )
    return CommandDescriptor(
        name="Update",
        domain=Domain.CORE.value,
        origin=Origin.RESOURCE,
        target=resource.name,
        fields=tuple(fields),
        sections=frozenset([CodeSection.NATIVE_DUCE]),
    )


class ModelReader:
    """Resolve a model document into a ProtocolModel."""

    def __init__(self, document: ModelDocument, packer: StructPacker | None = None):
        self.document = document
        self.packer = packer or StructPacker()
        self.arena = ResourceArena()
        self._types: dict[str, SchemaType] = {}
        self._schema_resources: dict[str, SchemaResource] = {}
        self._resources: dict[str, ResourceDescriptor] = {}
        self._value_layouts: dict[str, PaddedLayout] = {}
        self._resolving: set[str] = set()

    def _declare(self) -> None:
        for t in self.document.types:
            _require_name("Type", t.name)
            if t.name in PRIMITIVE_SIZES or t.name == HANDLE_TYPE or t.name in self._types:
                raise SchemaConflict(f"Type {t.name} declared more than once")
            if not isinstance(t.size, int) or t.size < 1:
                raise ModelError(f"Type {t.name} must have a positive size")
            if t.alignment is not None and t.alignment < 1:
                raise ModelError(f"Type {t.name} must have a positive alignment")
            self._types[t.name] = t

        for r in self.document.resources:
            _require_name("Resource", r.name)
            if r.name in self._types or r.name in PRIMITIVE_SIZES:
                raise SchemaConflict(f"Resource {r.name} shadows a type of the same name")
            self.arena.allocate(r.name)
            self._schema_resources[r.name] = r

    def _value_layout(self, name: str) -> PaddedLayout:
        """Packed layout of a value-type resource embedded by value."""
        if name in self._value_layouts:
            return self._value_layouts[name]
        if name in self._resolving:
            raise SchemaConflict(f"Value type {name} contains itself")

        self._resolving.add(name)
        resource = self._resource(name)
        self._resolving.discard(name)

        layout = self.packer.pack(resource.fields)
        self._value_layouts[name] = layout
        return layout

    def resolve_field(self, owner: str, sf: SchemaField) -> FieldDescriptor:
        type_name = sf.type
        if type_name in PRIMITIVE_SIZES:
            fd = FieldDescriptor(sf.name, type_name, PRIMITIVE_SIZES[type_name])
        elif type_name == HANDLE_TYPE:
            fd = FieldDescriptor(
                sf.name, type_name, HANDLE_SIZE, is_handle=True, is_value_type=False
            )
        elif type_name in self._types:
            t = self._types[type_name]
            fd = FieldDescriptor(sf.name, type_name, t.size, alignment=t.alignment)
        elif type_name in self._schema_resources:
            target = self._schema_resources[type_name]
            if target.value_type:
                layout = self._value_layout(type_name)
                fd = FieldDescriptor(
                    sf.name,
                    type_name,
                    layout.total_size,
                    alignment=layout.max_alignment,
                    resource_type=type_name,
                )
            else:
                fd = FieldDescriptor(
                    sf.name,
                    type_name,
                    HANDLE_SIZE,
                    is_handle=True,
                    is_value_type=False,
                    resource_type=type_name,
                    is_collection=target.collection,
                )
        else:
            raise UnresolvedType(owner, sf.name, type_name)

        if sf.animation and not fd.is_handle:
            raise SchemaConflict(f"{owner}.{sf.name}: animation fields must be handles")
        if sf.animation or sf.animate:
            fd = replace(fd, is_animation=sf.animation, is_animatable=sf.animate)
        return fd

    def _resource(self, name: str) -> ResourceDescriptor:
        if name in self._resources:
            return self._resources[name]

        r = self._schema_resources[name]
        sections = _sections(name, r.sections)
        check_sections(name, sections)
        if r.value_type and (r.abstract or r.collection):
            raise SchemaConflict(f"Value type {name} cannot be abstract or a collection")

        resource = ResourceDescriptor(
            name=name,
            fields=tuple(self.resolve_field(name, sf) for sf in r.fields),
            is_value_type=r.value_type,
            is_abstract=r.abstract,
            can_introduce_cycles=r.can_introduce_cycles,
            has_unmanaged_resource=r.has_unmanaged_resource,
            is_collection=r.collection,
            sections=sections,
        )
        self._resources[name] = resource
        return resource

    def _wire(self) -> None:
        for name, resource in self._resources.items():
            handle = self.arena.handle_of(name)
            assert handle is not None
            refs = [
                self.arena.handle_of(f.resource_type)
                for f in resource.fields
                if f.resource_type is not None
            ]
            self.arena.wire(handle, (r for r in refs if r is not None))

        for cycle in self.arena.cycles():
            members = [self._resources[self.arena.name_of(h)] for h in cycle]
            if not any(m.can_introduce_cycles for m in members):
                path = " -> ".join(m.name for m in members + members[:1])
                raise SchemaConflict(f"Resource cycle not allowed: {path}")

    def _command(self, sc: SchemaCommand) -> CommandDescriptor:
        _require_name("Command", sc.name)
        owner = f"{sc.domain}.{sc.target}.{sc.name}" if sc.target else f"{sc.domain}.{sc.name}"
        try:
            origin = Origin(sc.origin)
        except ValueError:
            raise ModelError(f"{owner}: unknown origin '{sc.origin}'") from None

        sections = _sections(owner, sc.sections)
        check_sections(owner, sections)
        if sc.unmanaged_only and sections & MANAGED_SECTIONS:
            raise SchemaConflict(f"{owner} is unmanaged only but requests managed code")
        if sc.domain == Domain.REDIRECTION and CodeSection.NATIVE_DUCE in sections:
            raise SchemaConflict(f"{owner} is a redirection command but requests NativeDuce")

        return CommandDescriptor(
            name=sc.name,
            domain=sc.domain,
            origin=origin,
            target=sc.target,
            fields=tuple(self.resolve_field(owner, sf) for sf in sc.fields),
            has_payload=sc.has_payload,
            fail_if_transport_denied=sc.fail_if_transport_denied,
            is_security_critical=sc.is_security_critical,
            is_unmanaged_only=sc.unmanaged_only,
            sections=sections,
        )

    def read(self) -> ProtocolModel:
        self._declare()
        resources = tuple(self._resource(r.name) for r in self.document.resources)
        self._wire()

        commands = [self._command(sc) for sc in self.document.commands]
        for resource in resources:
            if (
                CodeSection.NATIVE_DUCE in resource.sections
                and not resource.is_value_type
                and not resource.is_abstract
            ):
                commands.append(update_command(resource))

        seen: set[str] = set()
        for command in commands:
            if command.struct_name in seen:
                raise SchemaConflict(f"Command {command.struct_name} declared more than once")
            seen.add(command.struct_name)

        logger.debug("Read %d commands and %d resources", len(commands), len(resources))
        return ProtocolModel(commands=tuple(commands), resources=resources)


def read_model(data: dict[str, Any], packer: StructPacker | None = None) -> ProtocolModel:
    """Resolve an already-loaded model document."""
    try:
        document = ModelDocument.from_dict(data)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ModelError(f"Malformed model document: {e}") from e
    return ModelReader(document, packer).read()


def load_model(path: str | Path, packer: StructPacker | None = None) -> ProtocolModel:
    """Read and resolve a model document from a JSON file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ModelError(f"Cannot read model {path}: {e}") from e
    if not isinstance(data, dict):
        raise ModelError(f"Model {path} must be a JSON object")
    return read_model(data, packer)
