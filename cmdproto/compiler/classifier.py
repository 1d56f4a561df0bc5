"""Command classification: dispatch route, transport-denial policy and validation."""

from dataclasses import dataclass
from enum import StrEnum, auto

from .types import CommandDescriptor, Domain, Origin


class DispatchRoute(StrEnum):
    """How the consumer dispatches a command."""

    EXCLUDED = auto()
    SPECIAL_HANDLER = auto()
    RESOURCE_ROUTED = auto()


class TransportDenial(StrEnum):
    """What happens when a marshal channel does not support a command."""

    HARD_FAIL = auto()  # abort this message and propagate an error
    SILENT_NOOP = auto()


class ExclusionReason(StrEnum):
    RENDER_DATA = auto()
    SEPARATE_TRANSPORT = auto()
    RENDER_DATA_INSTRUCTION = auto()
    LEGACY = auto()


# Commands interpreted by the embedded render data interpreter
RENDER_DATA_DOMAINS = frozenset([Domain.RENDER_DATA])

# Commands carried over a different transport
SEPARATE_TRANSPORT_DOMAINS = frozenset([Domain.DWM, Domain.REDIRECTION])

# Targets whose commands are all handled by bespoke code
SPECIAL_TARGETS = frozenset(["Partition", "Channel", "Sprite"])

# (target, name) pairs that need bespoke setup before dispatch
SPECIAL_COMMANDS = frozenset(
    [
        ("HwndTarget", "Create"),
        ("GenericTarget", "Create"),
        ("VisualTarget", "Create"),
        ("GlyphRun", "Create"),
        ("Target", "CaptureBits"),
        ("BitmapVisualManager", "Capture"),
    ]
)

# (target, name) pairs kept out of dispatch for earlier protocol generations
LEGACY_EXCLUSIONS = frozenset(
    [
        ("Bitmap", "SourceModified"),
        ("DoubleBufferedBitmap", "SetSourceBitmap"),
        ("DoubleBufferedBitmap", "CopyForward"),
        ("Visual", "SetRenderOptions"),
        ("GlyphRun", "Destroy"),
    ]
)


@dataclass(frozen=True)
class ClassifierTables:
    """The data sets classification is checked against."""

    render_data_domains: frozenset[str] = RENDER_DATA_DOMAINS
    separate_transport_domains: frozenset[str] = SEPARATE_TRANSPORT_DOMAINS
    special_targets: frozenset[str] = SPECIAL_TARGETS
    special_commands: frozenset[tuple[str, str]] = SPECIAL_COMMANDS
    legacy_exclusions: frozenset[tuple[str, str]] = LEGACY_EXCLUSIONS


DEFAULT_TABLES = ClassifierTables()


@dataclass(frozen=True)
class ValidationBlock:
    """Field handle checks generated for a command.

    Checks are compiled only under a diagnostic build configuration.
    """

    fields: tuple[str, ...]
    resource_types: tuple[str, ...]
    diagnostic_only: bool = True


@dataclass(frozen=True)
class Dispatch:
    """Classification result for one command."""

    command: str
    route: DispatchRoute
    handler: str | None = None
    handle_field: str | None = None
    resource_type: str | None = None
    exclusion: ExclusionReason | None = None
    transport_denial: TransportDenial | None = None
    validation: ValidationBlock | None = None

    @property
    def is_dispatched(self) -> bool:
        return self.route != DispatchRoute.EXCLUDED

    @property
    def is_addressable(self) -> bool:
        """False for a resource-routed command with no handle field or no target."""
        if self.route != DispatchRoute.RESOURCE_ROUTED:
            return True
        return self.handle_field is not None and self.resource_type is not None

    def denial_action(self, diagnostic_build: bool) -> TransportDenial | None:
        """The denial behaviour actually generated for a build configuration."""
        if self.transport_denial is None:
            return None
        if self.transport_denial == TransportDenial.HARD_FAIL and diagnostic_build:
            return TransportDenial.HARD_FAIL
        return TransportDenial.SILENT_NOOP

    def to_dict(self) -> dict:
        return {
            "route": self.route.value,
            "handler": self.handler,
            "handle_field": self.handle_field,
            "resource_type": self.resource_type,
            "exclusion": self.exclusion.value if self.exclusion else None,
            "transport_denial": self.transport_denial.value if self.transport_denial else None,
            "validation": list(self.validation.fields) if self.validation else None,
        }


class CommandClassifier:
    """Assign each command exactly one dispatch route."""

    def __init__(self, tables: ClassifierTables = DEFAULT_TABLES):
        self.tables = tables

    def exclusion_reason(self, command: CommandDescriptor) -> ExclusionReason | None:
        t = self.tables
        if command.domain in t.render_data_domains:
            return ExclusionReason.RENDER_DATA
        if command.domain in t.separate_transport_domains:
            return ExclusionReason.SEPARATE_TRANSPORT
        if command.origin == Origin.RENDER_DATA_INSTRUCTION:
            return ExclusionReason.RENDER_DATA_INSTRUCTION
        if (command.target, command.name) in t.legacy_exclusions:
            return ExclusionReason.LEGACY
        return None

    def is_special(self, command: CommandDescriptor) -> bool:
        return (
            command.domain == Domain.TRANSPORT
            or command.target in self.tables.special_targets
            or (command.target, command.name) in self.tables.special_commands
        )

    @staticmethod
    def handler_name(command: CommandDescriptor) -> str:
        prefix = command.domain if command.domain == Domain.TRANSPORT else command.target
        return f"{prefix}{command.name}"

    @staticmethod
    def validation_block(command: CommandDescriptor) -> ValidationBlock | None:
        """Handle checks for commands not already validated at a resource update boundary."""
        if command.origin == Origin.RESOURCE:
            return None
        checked = [f for f in command.fields if f.needs_handle_check]
        return ValidationBlock(
            fields=tuple(f.name for f in checked),
            resource_types=tuple(f.resource_type or "" for f in checked),
        )

    def classify(self, command: CommandDescriptor) -> Dispatch:
        reason = self.exclusion_reason(command)
        if reason is not None:
            return Dispatch(command.struct_name, DispatchRoute.EXCLUDED, exclusion=reason)

        denial = (
            TransportDenial.HARD_FAIL
            if command.fail_if_transport_denied
            else TransportDenial.SILENT_NOOP
        )
        validation = self.validation_block(command)

        if self.is_special(command):
            return Dispatch(
                command.struct_name,
                DispatchRoute.SPECIAL_HANDLER,
                handler=self.handler_name(command),
                transport_denial=denial,
                validation=validation,
            )

        handle = command.handle_field
        return Dispatch(
            command.struct_name,
            DispatchRoute.RESOURCE_ROUTED,
            handle_field=handle.name if handle else None,
            resource_type=command.target or None,
            transport_denial=denial,
            validation=validation,
        )


def classify(command: CommandDescriptor, tables: ClassifierTables = DEFAULT_TABLES) -> Dispatch:
    """Classify a single command."""
    return CommandClassifier(tables).classify(command)
