"""Struct packing for command and resource layouts.

Both struct emitters (native and managed) render the same `PaddedLayout`
object, so there is exactly one packing decision per struct.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum, auto

from .errors import ConfigurationError, LayoutInvariantViolation
from .types import HANDLE_SIZE, FieldDescriptor

# Size of a struct with no fields (the C++ minimum struct size)
EMPTY_STRUCT_SIZE = 1

POINTER_WIDTHS = (4, 8)

# Target type names used by the emitter views
NATIVE_TYPE_MAP: dict[str, str] = {
    "bool": "BOOL",
    "int8": "INT8",
    "uint8": "BYTE",
    "int16": "INT16",
    "uint16": "UINT16",
    "int32": "INT32",
    "uint32": "UINT32",
    "int64": "INT64",
    "uint64": "UINT64",
    "float32": "FLOAT",
    "float64": "DOUBLE",
}

MANAGED_TYPE_MAP: dict[str, str] = {
    "bool": "bool",
    "int8": "sbyte",
    "uint8": "byte",
    "int16": "short",
    "uint16": "ushort",
    "int32": "int",
    "uint32": "uint",
    "int64": "long",
    "uint64": "ulong",
    "float32": "float",
    "float64": "double",
}

NATIVE_HANDLE_TYPE = "HMIL_RESOURCE"
MANAGED_HANDLE_TYPE = "ResourceHandle"


class EntryKind(StrEnum):
    """What an alignment entry holds."""

    FIELD = auto()
    PAD = auto()


@dataclass(frozen=True)
class AlignmentEntry:
    """One slot of a padded layout: a field or explicit padding."""

    name: str
    offset: int
    size: int
    is_pad: bool = False
    is_handle: bool = False
    is_animation: bool = False
    field: FieldDescriptor | None = None

    @property
    def kind(self) -> EntryKind:
        return EntryKind.PAD if self.is_pad else EntryKind.FIELD

    @property
    def end(self) -> int:
        return self.offset + self.size


@dataclass(frozen=True)
class PaddedLayout:
    """Ordered, gap-free entries covering exactly `[0, total_size)`."""

    entries: tuple[AlignmentEntry, ...]
    total_size: int
    max_alignment: int

    @property
    def fields(self) -> tuple[AlignmentEntry, ...]:
        return tuple(e for e in self.entries if not e.is_pad)

    @property
    def pads(self) -> tuple[AlignmentEntry, ...]:
        return tuple(e for e in self.entries if e.is_pad)

    def as_tuples(self) -> list[tuple[str, int, int, str]]:
        """The `(name, offset, size, kind)` list handed to both emitters."""
        return [(e.name, e.offset, e.size, e.kind.value) for e in self.entries]

    def to_dict(self) -> dict:
        return {
            "total_size": self.total_size,
            "max_alignment": self.max_alignment,
            "entries": [
                {
                    "name": e.name,
                    "offset": e.offset,
                    "size": e.size,
                    "kind": e.kind.value,
                    "is_handle": e.is_handle,
                    "is_animation": e.is_animation,
                    "type": e.field.type_name if e.field else None,
                }
                for e in self.entries
            ],
        }


def _floor_pow2(value: int) -> int:
    return 1 << (value.bit_length() - 1)


class StructPacker:
    """Pack field sequences into padded layouts.

    Native alignment rules mirror the host (`pointer_width` caps the
    alignment of any field), except handles, which are 4 bytes and 4-aligned
    on every architecture.
    """

    def __init__(self, pointer_width: int = 8, empty_struct_size: int = EMPTY_STRUCT_SIZE):
        if pointer_width not in POINTER_WIDTHS:
            raise ConfigurationError(f"Unsupported pointer width: {pointer_width}")
        if empty_struct_size < 1:
            raise ConfigurationError("Empty struct size must be at least 1 byte")
        self.pointer_width = pointer_width
        self.empty_struct_size = empty_struct_size

    def field_size(self, f: FieldDescriptor) -> int:
        return HANDLE_SIZE if f.is_handle else f.size

    def alignment_of(self, f: FieldDescriptor) -> int:
        """Required alignment: min(size, pointer width), as a power of two."""
        if f.is_handle:
            return HANDLE_SIZE
        natural = f.alignment if f.alignment is not None else f.size
        natural = min(natural, self.pointer_width)
        return _floor_pow2(max(natural, 1))

    def pack(self, fields: Iterable[FieldDescriptor]) -> PaddedLayout:
        """Lay out fields in order, inserting pad entries where alignment requires."""
        entries: list[AlignmentEntry] = []
        offset = 0
        max_alignment = 1
        pad_count = 0

        def add_pad(size: int) -> None:
            nonlocal offset, pad_count
            entries.append(AlignmentEntry(f"padAlignment{pad_count}", offset, size, is_pad=True))
            pad_count += 1
            offset += size

        for f in fields:
            alignment = self.alignment_of(f)
            max_alignment = max(max_alignment, alignment)

            gap = -offset % alignment
            if gap:
                add_pad(gap)

            size = self.field_size(f)
            entries.append(
                AlignmentEntry(
                    name=f.name,
                    offset=offset,
                    size=size,
                    is_handle=f.is_handle,
                    is_animation=f.is_animation,
                    field=f,
                )
            )
            offset += size

        if not entries:
            return PaddedLayout((), self.empty_struct_size, 1)

        tail = -offset % max_alignment
        if tail:
            add_pad(tail)

        return PaddedLayout(tuple(entries), offset, max_alignment)


def pack(
    fields: Iterable[FieldDescriptor],
    *,
    pointer_width: int = 8,
    empty_struct_size: int = EMPTY_STRUCT_SIZE,
) -> PaddedLayout:
    """Pack a field sequence into a padded layout."""
    return StructPacker(pointer_width, empty_struct_size).pack(fields)


def check_layout(layout: PaddedLayout, owner: str = "<layout>") -> None:
    """Raise LayoutInvariantViolation if entries leave a gap, overlap, or misalign the total."""
    offset = 0
    for entry in layout.entries:
        if entry.size <= 0:
            raise LayoutInvariantViolation(f"{owner}: entry {entry.name} has size {entry.size}")
        if entry.offset != offset:
            kind = "gap" if entry.offset > offset else "overlap"
            raise LayoutInvariantViolation(
                f"{owner}: {kind} before {entry.name} "
                f"(expected offset {offset}, got {entry.offset})"
            )
        if entry.is_pad != (entry.field is None):
            raise LayoutInvariantViolation(f"{owner}: entry {entry.name} has inconsistent pad flag")
        offset = entry.end

    if layout.entries and offset != layout.total_size:
        raise LayoutInvariantViolation(
            f"{owner}: entries cover {offset} bytes, total size is {layout.total_size}"
        )
    if layout.total_size % layout.max_alignment:
        raise LayoutInvariantViolation(
            f"{owner}: size {layout.total_size} is not a multiple of {layout.max_alignment}"
        )


def assert_same_layout(first: PaddedLayout, second: PaddedLayout, owner: str = "<layout>") -> None:
    """Raise LayoutInvariantViolation unless two layouts for one struct agree exactly."""
    if first.total_size != second.total_size or first.as_tuples() != second.as_tuples():
        raise LayoutInvariantViolation(f"{owner}: computed layouts disagree")


def payload_size(message_size: int, layout: PaddedLayout) -> int:
    """Size of the variable-length payload trailing a fixed-size command."""
    if message_size < layout.total_size:
        raise ValueError(
            f"Message of {message_size} bytes is smaller than its {layout.total_size} byte prefix"
        )
    return message_size - layout.total_size


@dataclass(frozen=True)
class ViewEntry:
    """An entry as one emitter renders it."""

    name: str
    offset: int
    size: int
    type_name: str


def _view(
    layout: PaddedLayout, type_map: dict[str, str], handle_type: str, pad_type: str
) -> list[ViewEntry]:
    view: list[ViewEntry] = []
    for entry in layout.entries:
        if entry.is_pad:
            type_name = pad_type if entry.size == 4 else f"BYTE[{entry.size}]"
        elif entry.is_handle:
            type_name = handle_type
        else:
            if entry.field is None:
                raise LayoutInvariantViolation(f"entry {entry.name} has inconsistent pad flag")
            type_name = type_map.get(entry.field.type_name, entry.field.type_name)
        view.append(ViewEntry(entry.name, entry.offset, entry.size, type_name))
    return view


def native_view(layout: PaddedLayout) -> list[ViewEntry]:
    """The layout as the native struct emitter sees it."""
    return _view(layout, NATIVE_TYPE_MAP, NATIVE_HANDLE_TYPE, "UINT32")


def managed_view(layout: PaddedLayout) -> list[ViewEntry]:
    """The layout as the managed struct emitter sees it."""
    return _view(layout, MANAGED_TYPE_MAP, MANAGED_HANDLE_TYPE, "uint")
