"""
Shared type definitions for structure sheets.

A sheet is a 2-D grid on which typed regions ("structures") are placed.
Structures form a closed union of four frozen dataclasses; every consumer
dispatches over them with ``match`` and rejects anything else.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, ClassVar, Iterator


class ArrayDirection(Enum):
    """Layout direction of an array structure."""

    HORIZONTAL = "horizontal"  # One row, items run left to right
    VERTICAL = "vertical"  # One column, items run top to bottom


@dataclass(frozen=True)
class SheetRules:
    """Limits and defaults governing structure placement."""

    max_rows: int = 1000
    max_cols: int = 26
    col_header_levels: int = 1  # Header rows given to new tables
    row_header_levels: int = 0  # Header columns given to new tables


# =============================================================================
# Coordinates
# =============================================================================


@dataclass(frozen=True)
class Position:
    """A 0-based grid coordinate."""

    row: int
    col: int


@dataclass(frozen=True)
class Dimensions:
    """Size of a structure in cells."""

    rows: int
    cols: int


_POSITION_KEY = re.compile(r"^(-?\d+)-(-?\d+)$")


def position_key(row: int, col: int) -> str:
    """Key used by the position index and by cell data maps."""
    return f"{row}-{col}"


def parse_position_key(key: str) -> Position:
    """Inverse of position_key. Accepts negative components."""
    match = _POSITION_KEY.match(key)
    if match is None:
        raise ValueError(f"Invalid position key: '{key}' (expected 'row-col')")
    return Position(int(match.group(1)), int(match.group(2)))


def end_position(start: Position, dimensions: Dimensions) -> Position:
    """Bottom-right cell of a rectangle (inclusive)."""
    return Position(start.row + dimensions.rows - 1, start.col + dimensions.cols - 1)


def is_within_bounds(start: Position, dimensions: Dimensions, rules: SheetRules) -> bool:
    end = end_position(start, dimensions)
    return (
        start.row >= 0
        and start.col >= 0
        and end.row < rules.max_rows
        and end.col < rules.max_cols
    )


# =============================================================================
# Overrides
# =============================================================================


@dataclass(frozen=True)
class TemplateOverrides:
    """
    Local divergence of a template instance from its source template.

    Attributes:
        structures: instance structure id -> partial patch keyed by field name
        cell_data: relative position key -> overridden value
        deleted_structures: ids removed locally (never restored by propagation)
        added_structures: ids that exist only in this instance
    """

    structures: dict[str, dict[str, Any]] = field(default_factory=dict)
    cell_data: dict[str, str] = field(default_factory=dict)
    deleted_structures: tuple[str, ...] = ()
    added_structures: tuple[str, ...] = ()


# =============================================================================
# Structures
# =============================================================================


@dataclass(frozen=True)
class CellStructure:
    """A single value, possibly merged over several grid cells."""

    type: ClassVar[str] = "cell"

    id: str
    start_position: Position
    dimensions: Dimensions
    value: str = ""
    name: str | None = None
    formula: str | None = None
    formula_error: str | None = None

    @property
    def is_merged(self) -> bool:
        return self.dimensions.rows > 1 or self.dimensions.cols > 1


@dataclass(frozen=True)
class ArrayStructure:
    """A one-dimensional run of item slots."""

    type: ClassVar[str] = "array"

    id: str
    start_position: Position
    dimensions: Dimensions
    direction: ArrayDirection = ArrayDirection.HORIZONTAL
    item_ids: tuple[str | None, ...] = ()
    name: str | None = None
    formula: str | None = None
    formula_error: str | None = None

    @property
    def length(self) -> int:
        if self.direction == ArrayDirection.HORIZONTAL:
            return self.dimensions.cols
        return self.dimensions.rows

    def index_of(self, row: int, col: int) -> int:
        """Slot index for an absolute position inside the array."""
        if self.direction == ArrayDirection.HORIZONTAL:
            return col - self.start_position.col
        return row - self.start_position.row


@dataclass(frozen=True)
class TableStructure:
    """A 2-D block of item slots with optional header rows and columns."""

    type: ClassVar[str] = "table"

    id: str
    start_position: Position
    dimensions: Dimensions
    item_ids: tuple[tuple[str | None, ...], ...] = ()
    col_header_levels: int = 1
    row_header_levels: int = 0
    col_groups: dict[str, tuple[int, ...]] = field(default_factory=dict)
    row_groups: dict[str, tuple[int, ...]] = field(default_factory=dict)
    name: str | None = None
    formula: str | None = None
    formula_error: str | None = None

    def item_at(self, row: int, col: int) -> str | None:
        """Item id for an absolute position, None for an empty or missing slot."""
        r = row - self.start_position.row
        c = col - self.start_position.col
        if 0 <= r < len(self.item_ids) and 0 <= c < len(self.item_ids[r]):
            return self.item_ids[r][c]
        return None


@dataclass(frozen=True)
class TemplateInstance:
    """A live copy of a template placed on the sheet."""

    type: ClassVar[str] = "template"

    id: str
    start_position: Position
    dimensions: Dimensions
    template_id: str
    source_template_version: int = 0  # 0 = never merged
    overrides: TemplateOverrides | None = None
    name: str | None = None
    formula: str | None = None
    formula_error: str | None = None


Structure = CellStructure | ArrayStructure | TableStructure | TemplateInstance

StructureMap = dict[str, Structure]
PositionMap = dict[str, tuple[str, ...]]

# Sink for resolved cell values: (row, col, value)
CellUpdateFn = Callable[[int, int, str], None]

STRUCTURE_CLASSES: dict[str, type] = {
    CellStructure.type: CellStructure,
    ArrayStructure.type: ArrayStructure,
    TableStructure.type: TableStructure,
    TemplateInstance.type: TemplateInstance,
}


def is_array_or_table(structure: Structure) -> bool:
    return isinstance(structure, (ArrayStructure, TableStructure))


def covered_positions(structure: Structure) -> Iterator[Position]:
    """Every grid cell inside a structure's bounding rectangle, row-major."""
    start = structure.start_position
    for row in range(start.row, start.row + structure.dimensions.rows):
        for col in range(start.col, start.col + structure.dimensions.cols):
            yield Position(row, col)


def covers(structure: Structure, row: int, col: int) -> bool:
    start = structure.start_position
    end = end_position(start, structure.dimensions)
    return start.row <= row <= end.row and start.col <= col <= end.col


def referenced_item_ids(structure: Structure) -> list[str]:
    """Non-empty item ids of an array or table, in slot order."""
    match structure:
        case ArrayStructure(item_ids=item_ids):
            return [item_id for item_id in item_ids if item_id]
        case TableStructure(item_ids=item_ids):
            return [item_id for row in item_ids for item_id in row if item_id]
        case CellStructure() | TemplateInstance():
            return []
        case _:
            raise ValueError(f"Unknown structure type: {structure}")


def structure_field_names(structure: Structure) -> set[str]:
    return {f.name for f in fields(structure)}


def apply_patch(structure: Structure, patch: dict[str, Any]) -> Structure:
    """
    Overlay a partial patch onto a structure (patch wins per field).

    The id is never patched, and fields the variant does not have are ignored
    so a patch recorded against one variant cannot corrupt another.
    """
    known = structure_field_names(structure) - {"id"}
    changes = {name: value for name, value in patch.items() if name in known}
    return replace(structure, **changes) if changes else structure


# =============================================================================
# Templates
# =============================================================================


@dataclass(frozen=True)
class Template:
    """A catalog entry for a reusable, versioned layout."""

    id: str
    name: str
    dimensions: Dimensions
    version: int = 1
    created_at: datetime = field(default_factory=datetime.now)


# =============================================================================
# Serialization
# =============================================================================

# Python field name -> persisted (camelCase) name
_PERSISTED_NAMES = {
    "start_position": "startPosition",
    "item_ids": "itemIds",
    "col_header_levels": "colHeaderLevels",
    "row_header_levels": "rowHeaderLevels",
    "col_groups": "colGroups",
    "row_groups": "rowGroups",
    "template_id": "templateId",
    "source_template_version": "sourceTemplateVersion",
    "formula_error": "formulaError",
}
_FIELD_NAMES = {persisted: name for name, persisted in _PERSISTED_NAMES.items()}


def _persisted_name(name: str) -> str:
    return _PERSISTED_NAMES.get(name, name)


def field_name(persisted: str) -> str:
    """Python field name for a persisted (camelCase) key."""
    return _FIELD_NAMES.get(persisted, persisted)


def overrides_to_dict(overrides: TemplateOverrides) -> dict[str, Any]:
    return {
        "structures": {
            structure_id: patch_to_dict(patch)
            for structure_id, patch in overrides.structures.items()
        },
        "cellData": dict(overrides.cell_data),
        "deletedStructures": list(overrides.deleted_structures),
        "addedStructures": list(overrides.added_structures),
    }


def overrides_from_dict(data: dict[str, Any]) -> TemplateOverrides:
    return TemplateOverrides(
        structures={
            structure_id: patch_from_dict(patch)
            for structure_id, patch in data.get("structures", {}).items()
        },
        cell_data=dict(data.get("cellData", {})),
        deleted_structures=tuple(data.get("deletedStructures", ())),
        added_structures=tuple(data.get("addedStructures", ())),
    )


def encode_field(name: str, value: Any) -> Any:
    """JSON-compatible form of one structure field."""
    match name:
        case "start_position":
            return {"row": value.row, "col": value.col}
        case "dimensions":
            return {"rows": value.rows, "cols": value.cols}
        case "direction":
            return value.value
        case "item_ids":
            return [list(row) if isinstance(row, tuple) else row for row in value]
        case "col_groups" | "row_groups":
            return {group: list(indices) for group, indices in value.items()}
        case "overrides":
            return overrides_to_dict(value)
        case _:
            return value


def decode_field(name: str, raw: Any) -> Any:
    """Inverse of encode_field."""
    match name:
        case "start_position":
            return Position(raw["row"], raw["col"])
        case "dimensions":
            return Dimensions(raw["rows"], raw["cols"])
        case "direction":
            return ArrayDirection(raw)
        case "item_ids":
            return tuple(tuple(row) if isinstance(row, list) else row for row in raw)
        case "col_groups" | "row_groups":
            return {group: tuple(indices) for group, indices in raw.items()}
        case "overrides":
            return overrides_from_dict(raw)
        case _:
            return raw


def patch_to_dict(patch: dict[str, Any]) -> dict[str, Any]:
    return {_persisted_name(name): encode_field(name, value) for name, value in patch.items()}


def patch_from_dict(data: dict[str, Any]) -> dict[str, Any]:
    decoded: dict[str, Any] = {}
    for persisted, raw in data.items():
        name = field_name(persisted)
        decoded[name] = decode_field(name, raw)
    return decoded


def structure_to_dict(structure: Structure) -> dict[str, Any]:
    """
    Serialize a structure to its persisted form.

    Optional fields that are unset (None) are omitted, so two structures are
    equal in serialized form exactly when their set fields agree.
    """
    data: dict[str, Any] = {"type": structure.type}
    for f in fields(structure):
        value = getattr(structure, f.name)
        if value is None:
            continue
        data[_persisted_name(f.name)] = encode_field(f.name, value)
    return data


def structure_from_dict(data: dict[str, Any]) -> Structure:
    """Deserialize a structure from its persisted form."""
    type_tag = data.get("type")
    cls = STRUCTURE_CLASSES.get(type_tag)  # type: ignore[arg-type]
    if cls is None:
        raise ValueError(
            f"Unknown structure type: '{type_tag}'\n"
            f"  Record id: {data.get('id')!r}\n"
            f"  Valid types: {', '.join(sorted(STRUCTURE_CLASSES))}"
        )

    known = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for persisted, raw in data.items():
        if persisted == "type":
            continue
        name = field_name(persisted)
        if name not in known:
            # Tolerate extra keys written by other producers
            continue
        kwargs[name] = decode_field(name, raw)

    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ValueError(f"Malformed {type_tag} record {data.get('id')!r}: {e}") from e
