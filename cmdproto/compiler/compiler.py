"""Single-pass protocol compilation.

`compile_protocol` runs the packer, the classifier and the fingerprint
calculator over a resolved model and returns one `CompiledProtocol`. Any
error aborts the whole run; nothing partial is ever returned.
"""

import logging
from dataclasses import dataclass

from dataclasses_json import DataClassJsonMixin

from .classifier import DEFAULT_TABLES, ClassifierTables, CommandClassifier, Dispatch
from .errors import ConfigurationError, LayoutInvariantViolation, ModelError
from .fingerprint import FINGERPRINT_SEED, Fingerprint, ProtocolRevision, fingerprint
from .packer import (
    EMPTY_STRUCT_SIZE,
    POINTER_WIDTHS,
    PaddedLayout,
    StructPacker,
    assert_same_layout,
    check_layout,
    managed_view,
    native_view,
)
from .types import CommandDescriptor, FieldDescriptor, ProtocolModel, ResourceDescriptor

logger = logging.getLogger(__name__)


@dataclass
class CompilerOptions(DataClassJsonMixin):
    """Settings for one compiler run."""

    pointer_width: int = 8
    empty_struct_size: int = EMPTY_STRUCT_SIZE
    diagnostic_build: bool = True
    seed: int = FINGERPRINT_SEED

    def validate(self) -> None:
        if self.pointer_width not in POINTER_WIDTHS:
            raise ConfigurationError(
                f"pointer_width must be one of {', '.join(map(str, POINTER_WIDTHS))}"
            )
        if self.empty_struct_size < 1:
            raise ConfigurationError("empty_struct_size must be at least 1")


@dataclass(frozen=True)
class CompiledCommand:
    command: CommandDescriptor
    layout: PaddedLayout
    dispatch: Dispatch

    def to_dict(self, options: CompilerOptions) -> dict:
        dispatch = self.dispatch.to_dict()
        denial = self.dispatch.denial_action(options.diagnostic_build)
        dispatch["generated_denial"] = denial.value if denial else None
        dispatch["validation_compiled"] = (
            self.dispatch.validation is not None and options.diagnostic_build
        )
        return {
            "name": self.command.name,
            "struct_name": self.command.struct_name,
            "domain": self.command.domain,
            "origin": self.command.origin.value,
            "target": self.command.target,
            "has_payload": self.command.has_payload,
            "layout": self.layout.to_dict(),
            "dispatch": dispatch,
        }


@dataclass(frozen=True)
class CompiledResource:
    resource: ResourceDescriptor
    layout: PaddedLayout

    def to_dict(self) -> dict:
        return {
            "name": self.resource.name,
            "value_type": self.resource.is_value_type,
            "layout": self.layout.to_dict(),
        }


@dataclass(frozen=True)
class CompiledProtocol:
    """Everything the emitters need from one run."""

    options: CompilerOptions
    commands: tuple[CompiledCommand, ...]
    resources: tuple[CompiledResource, ...]
    fingerprint: Fingerprint

    def command(self, struct_name: str) -> CompiledCommand:
        for compiled in self.commands:
            if compiled.command.struct_name == struct_name:
                return compiled
        raise KeyError(struct_name)

    def to_dict(self) -> dict:
        return {
            "options": self.options.to_dict(),
            "fingerprint": self.fingerprint.to_dict(),
            "commands": [c.to_dict(self.options) for c in self.commands],
            "resources": [r.to_dict() for r in self.resources],
        }


def _checked_layout(packer: StructPacker, owner: str, fields) -> PaddedLayout:
    layout = packer.pack(fields)
    check_layout(layout, owner)
    assert_same_layout(layout, packer.pack(fields), owner)

    native = native_view(layout)
    managed = managed_view(layout)
    shapes = {tuple((e.name, e.offset, e.size) for e in view) for view in (native, managed)}
    if len(shapes) != 1:
        raise LayoutInvariantViolation(f"{owner}: emitter views disagree")
    return layout


def _check_embedded(
    owner: str, fields: tuple[FieldDescriptor, ...], value_layouts: dict[str, PaddedLayout]
) -> None:
    """Raise ConfigurationError if an embedded value type was sized by a different packer."""
    for f in fields:
        layout = value_layouts.get(f.resource_type or "")
        if layout is None or f.is_handle:
            continue
        if f.size != layout.total_size or f.alignment != layout.max_alignment:
            raise ConfigurationError(
                f"{owner}.{f.name} embeds {f.resource_type} as {f.size} bytes "
                f"(align {f.alignment}), but it packs to {layout.total_size} bytes "
                f"(align {layout.max_alignment}); read the model with the same pointer width"
            )


def compile_protocol(
    model: ProtocolModel,
    options: CompilerOptions | None = None,
    revisions: ProtocolRevision | None = None,
    tables: ClassifierTables = DEFAULT_TABLES,
) -> CompiledProtocol:
    """Pack, classify and fingerprint a resolved model."""
    options = options or CompilerOptions()
    options.validate()

    packer = StructPacker(options.pointer_width, options.empty_struct_size)
    classifier = CommandClassifier(tables)

    resources = tuple(
        CompiledResource(r, _checked_layout(packer, r.name, r.fields)) for r in model.resources
    )
    value_layouts = {r.resource.name: r.layout for r in resources if r.resource.is_value_type}
    for r in resources:
        _check_embedded(r.resource.name, r.resource.fields, value_layouts)

    compiled: list[CompiledCommand] = []
    for command in model.commands:
        _check_embedded(command.struct_name, command.fields, value_layouts)
        layout = _checked_layout(packer, command.struct_name, command.fields)
        dispatch = classifier.classify(command)
        if not dispatch.is_addressable:
            raise ModelError(
                f"{command.struct_name} is dispatched by resource but has no handle field "
                "or no target"
            )
        compiled.append(CompiledCommand(command, layout, dispatch))

    layouts = {c.command.struct_name: c.layout for c in compiled}
    fp = fingerprint(model.commands, layouts, revisions, seed=options.seed)

    logger.debug(
        "Compiled %d commands (%d dispatched) and %d resources",
        len(compiled),
        sum(1 for c in compiled if c.dispatch.is_dispatched),
        len(resources),
    )
    return CompiledProtocol(options, tuple(compiled), resources, fp)
