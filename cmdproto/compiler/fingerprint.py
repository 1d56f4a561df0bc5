"""Protocol fingerprints.

Two 32-bit constants summarize the shape of the protocol: one for the
primary partition and one for the secondary (DWM/Redirection) partition.
Independently built binaries compare them before talking to each other.

Each partition is folded by its own pass with its own generator, seeded with
the same constant, so edits to one partition never move the other's value.
"""

import json
import logging
import random
import zlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

from dataclasses_json import DataClassJsonMixin

from .errors import ConfigurationError, SchemaConflict
from .packer import AlignmentEntry, PaddedLayout, StructPacker
from .types import CommandDescriptor

logger = logging.getLogger(__name__)

MASK32 = 0xFFFFFFFF

FINGERPRINT_SEED = 0x2B7E1516

# Folded in for entries carrying the corresponding flag
ANIMATION_BITS = 0x40000000
PAD_BITS = 0x00200000
HANDLE_BITS = 0x00000800

# Odd multipliers for the manual revision counters, one per partition
PRIMARY_REVISION_MULTIPLIER = 0x9E3779B1
SECONDARY_REVISION_MULTIPLIER = 0x85EBCA77


def name_hash(text: str) -> int:
    """Stable 32-bit string hash (independent of PYTHONHASHSEED)."""
    return zlib.crc32(text.encode("utf-8")) & MASK32


def rotate_right(value: int, bits: int = 1) -> int:
    value &= MASK32
    return ((value >> bits) | (value << (32 - bits))) & MASK32


@dataclass
class ProtocolRevision(DataClassJsonMixin):
    """Manually bumped revision counters, one per partition."""

    primary: int = 0
    secondary: int = 0


def load_revisions(path: str | Path) -> ProtocolRevision:
    """Read the revision record from a JSON file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read revision record {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Revision record {path} must be a JSON object")
    revision = ProtocolRevision.from_dict(data)
    for name in ("primary", "secondary"):
        value = getattr(revision, name)
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ConfigurationError(f"Revision '{name}' must be a non-negative integer")
    return revision


class Fingerprint(NamedTuple):
    primary: int
    secondary: int

    def to_dict(self) -> dict:
        return {"primary": self.primary, "secondary": self.secondary}


class FingerprintPass:
    """Fold one partition's commands into a 32-bit accumulator."""

    def __init__(self, seed: int = FINGERPRINT_SEED):
        self._random = random.Random(seed)
        self.value = self._next()

    def _next(self) -> int:
        return self._random.getrandbits(32)

    def _mix(self, value: int) -> int:
        return ((value + self._next()) & MASK32) * self._next() & MASK32

    def fold_entry(self, entry: AlignmentEntry) -> None:
        contribution = (
            self._mix(name_hash(entry.name))
            ^ self._mix(entry.size)
            ^ (ANIMATION_BITS if entry.is_animation else 0)
            ^ (PAD_BITS if entry.is_pad else 0)
            ^ (HANDLE_BITS if entry.is_handle else 0)
            ^ self._mix(entry.offset)
        )
        self.value ^= contribution
        if entry.field is not None:
            self.value ^= self._mix(name_hash(entry.field.type_name))
        self.value = rotate_right(self.value)

    def fold_command(self, command: CommandDescriptor, layout: PaddedLayout) -> None:
        for entry in layout.entries:
            self.fold_entry(entry)
        self.value ^= self._mix(name_hash(command.struct_name))

    def finish(self, revision: int, multiplier: int) -> int:
        self.value ^= (revision * multiplier) & MASK32
        self.value = rotate_right(self.value)
        return self.value


def partition(
    commands: Iterable[CommandDescriptor],
) -> tuple[list[CommandDescriptor], list[CommandDescriptor]]:
    """Split commands into (primary, secondary), keeping relative order."""
    primary: list[CommandDescriptor] = []
    secondary: list[CommandDescriptor] = []
    for command in commands:
        (secondary if command.is_secondary else primary).append(command)
    return primary, secondary


def _fold_partition(
    commands: list[CommandDescriptor],
    layouts: Mapping[str, PaddedLayout],
    revision: int,
    multiplier: int,
    seed: int,
) -> int:
    fp = FingerprintPass(seed)
    for command in commands:
        fp.fold_command(command, layouts[command.struct_name])
    return fp.finish(revision, multiplier)


def fingerprint(
    commands: Iterable[CommandDescriptor],
    layouts: Mapping[str, PaddedLayout] | None = None,
    revisions: ProtocolRevision | None = None,
    *,
    seed: int = FINGERPRINT_SEED,
) -> Fingerprint:
    """Compute the (primary, secondary) fingerprint of a command sequence.

    `layouts` maps struct names to packed layouts; commands missing from it
    are packed with the default packer. Struct names must be unique.
    """
    commands = list(commands)
    revisions = revisions or ProtocolRevision()

    resolved: dict[str, PaddedLayout] = dict(layouts or {})
    packer: StructPacker | None = None
    seen: set[str] = set()
    for command in commands:
        if command.struct_name in seen:
            raise SchemaConflict(f"Command {command.struct_name} declared more than once")
        seen.add(command.struct_name)
        if command.struct_name not in resolved:
            packer = packer or StructPacker()
            resolved[command.struct_name] = packer.pack(command.fields)

    primary, secondary = partition(commands)
    result = Fingerprint(
        _fold_partition(primary, resolved, revisions.primary, PRIMARY_REVISION_MULTIPLIER, seed),
        _fold_partition(
            secondary, resolved, revisions.secondary, SECONDARY_REVISION_MULTIPLIER, seed
        ),
    )
    logger.debug(
        "Fingerprint primary=0x%08X (%d commands) secondary=0x%08X (%d commands)",
        result.primary,
        len(primary),
        result.secondary,
        len(secondary),
    )
    return result
