"""
Position index: reverse mapping from grid cell to occupying structure ids.

The index is a plain dict keyed by "row-col" whose values are tuples of
structure ids. Every function here returns a new dict and leaves its input
untouched, so a caller holding an older index never observes a half-applied
update.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Mapping

from sheet_types import (
    CellStructure,
    Position,
    PositionMap,
    SheetRules,
    Structure,
    TemplateInstance,
    covered_positions,
    covers,
    end_position,
    is_array_or_table,
    is_within_bounds,
    position_key,
    referenced_item_ids,
)

logger = logging.getLogger(__name__)


class PlacementFailureReason(Enum):
    """Reason a structure could not be placed."""

    OUT_OF_BOUNDS = "out_of_bounds"  # Footprint leaves the grid
    OVERLAP = "overlap"  # Footprint hits an incompatible occupant
    VALUE_CONFLICT = "value_conflict"  # Overwritable cells hold different values


class ConflictResolution(Enum):
    """Caller's decision for cells reported in a VALUE_CONFLICT."""

    KEEP_EXISTING = "keep_existing"
    REPLACE_WITH_NEW = "replace_with_new"
    CANCEL = "cancel"


@dataclass(frozen=True)
class CellConflict:
    """A target cell whose existing value would be overwritten by a move."""

    row: int
    col: int
    existing_value: str
    new_value: str


@dataclass(frozen=True)
class PlacementFailure:
    """Result of a rejected insert or move. The index was not modified."""

    reason: PlacementFailureReason
    structure_id: str
    blocked: tuple[Position, ...] = ()
    conflicts: tuple[CellConflict, ...] = ()
    details: str = ""


@dataclass(frozen=True)
class MoveCheck:
    """
    Outcome of validating a move target.

    Attributes:
        out_of_bounds: the translated footprint leaves the grid
        blocked: target cells holding an incompatible occupant
        conflicts: overwritable cells whose value differs from the incoming one
        absorbed_ids: plain cells the mover would overwrite (conflicting or not)
    """

    out_of_bounds: bool = False
    blocked: tuple[Position, ...] = ()
    conflicts: tuple[CellConflict, ...] = ()
    absorbed_ids: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.out_of_bounds and not self.blocked


# =============================================================================
# Basic index maintenance
# =============================================================================


def _index_structure(positions: PositionMap, structure: Structure) -> None:
    for pos in covered_positions(structure):
        key = position_key(pos.row, pos.col)
        existing = positions.get(key, ())
        if structure.id not in existing:
            positions[key] = existing + (structure.id,)


def _unindex_structure(positions: PositionMap, structure: Structure) -> None:
    for pos in covered_positions(structure):
        key = position_key(pos.row, pos.col)
        remaining = tuple(sid for sid in positions.get(key, ()) if sid != structure.id)
        if remaining:
            positions[key] = remaining
        else:
            positions.pop(key, None)


def add_structure_to_positions(positions: PositionMap, structure: Structure) -> PositionMap:
    """Add a structure id to every cell it covers (no overlap checks)."""
    new_positions = positions.copy()
    _index_structure(new_positions, structure)
    return new_positions


def remove_structure_from_positions(positions: PositionMap, structure: Structure) -> PositionMap:
    """Remove a structure id from every cell it covers; empty entries are dropped."""
    new_positions = positions.copy()
    _unindex_structure(new_positions, structure)
    return new_positions


def apply_index_changes(
    positions: PositionMap,
    removed: Iterable[Structure] = (),
    added: Iterable[Structure] = (),
) -> PositionMap:
    """Remove then add several structures against a single copy of the index."""
    new_positions = positions.copy()
    for structure in removed:
        _unindex_structure(new_positions, structure)
    for structure in added:
        _index_structure(new_positions, structure)
    return new_positions


def build_position_map(structures: Mapping[str, Structure]) -> PositionMap:
    positions: PositionMap = {}
    for structure in structures.values():
        _index_structure(positions, structure)
    return positions


def query(positions: PositionMap, position: Position) -> tuple[str, ...]:
    """Ordered ids at a cell; the last entry is the most specific."""
    return positions.get(position_key(position.row, position.col), ())


def structures_at(
    positions: PositionMap, structures: Mapping[str, Structure], row: int, col: int
) -> list[Structure]:
    """Live structures at a cell, in index order. Dangling ids are skipped."""
    found = []
    for structure_id in positions.get(position_key(row, col), ()):
        structure = structures.get(structure_id)
        if structure is not None:
            found.append(structure)
    return found


# =============================================================================
# Checked insertion and moves
# =============================================================================


def insert(
    positions: PositionMap,
    structures: Mapping[str, Structure],
    structure: Structure,
    rules: SheetRules = SheetRules(),
) -> PositionMap | PlacementFailure:
    """
    Index a structure, refusing footprints that break placement invariants.

    An array or table may not cover a cell already held by another array or
    table, or by a named or formula cell it does not hold as an item.
    Out-of-bounds footprints are refused for every variant.
    """
    if not is_within_bounds(structure.start_position, structure.dimensions, rules):
        logger.debug("insert rejected: %s out of bounds", structure.id)
        return PlacementFailure(
            PlacementFailureReason.OUT_OF_BOUNDS,
            structure.id,
            details=f"footprint ends at {end_position(structure.start_position, structure.dimensions)}",
        )

    if is_array_or_table(structure):
        items = set(referenced_item_ids(structure))
        blocked = []
        for pos in covered_positions(structure):
            for other in structures_at(positions, structures, pos.row, pos.col):
                if other.id == structure.id or other.id in items:
                    continue
                if is_array_or_table(other) or (
                    isinstance(other, CellStructure) and not is_plain_cell(other)
                ):
                    blocked.append(pos)
                    break
        if blocked:
            logger.debug("insert rejected: %s overlaps %d cells", structure.id, len(blocked))
            return PlacementFailure(
                PlacementFailureReason.OVERLAP, structure.id, blocked=tuple(blocked)
            )

    return add_structure_to_positions(positions, structure)


def is_plain_cell(structure: Structure) -> bool:
    """An unnamed, formula-less cell: simple content that may be overwritten."""
    return (
        isinstance(structure, CellStructure)
        and structure.name is None
        and structure.formula is None
    )


def check_move_target(
    positions: PositionMap,
    structures: Mapping[str, Structure],
    structure: Structure,
    target: Position,
    moving_ids: frozenset[str] = frozenset(),
    incoming_values: Mapping[tuple[int, int], str] | None = None,
    rules: SheetRules = SheetRules(),
) -> MoveCheck:
    """
    Validate the translated footprint of a structure at a new start position.

    Each occupant of each target cell must be one of the moving structures,
    absent, or (when the mover is an array or table) a plain cell. Plain cells
    whose non-empty value differs from the incoming value at the same offset
    are reported as conflicts rather than resolved here.

    Additional placement rules:
    - a cell cannot be dropped onto another cell
    - arrays and tables never overlap each other
    - a template instance cannot be dropped onto any structure
    - nothing can be dropped onto a template instance, except a structure
      already inside that instance moving within it

    Args:
        positions: The position index
        structures: The structure store
        structure: The structure being moved (at its current position)
        target: Proposed new start position
        moving_ids: Ids moving together with the structure (always includes it)
        incoming_values: Values the mover brings, keyed by (row, col) offset
        rules: Grid limits
    """
    if not is_within_bounds(target, structure.dimensions, rules):
        return MoveCheck(out_of_bounds=True)

    moving = moving_ids | {structure.id}
    incoming = incoming_values or {}
    blocked: list[Position] = []
    conflicts: list[CellConflict] = []
    absorbed: list[str] = []

    for offset_row in range(structure.dimensions.rows):
        for offset_col in range(structure.dimensions.cols):
            row = target.row + offset_row
            col = target.col + offset_col
            for other in structures_at(positions, structures, row, col):
                if other.id in moving:
                    continue

                allowed = True
                match structure, other:
                    case TemplateInstance(), _:
                        allowed = False
                    case _, TemplateInstance():
                        allowed = covers(
                            other, structure.start_position.row, structure.start_position.col
                        ) and covers(other, row, col)
                    case CellStructure(), CellStructure():
                        allowed = False
                    case (_, _) if is_array_or_table(structure) and is_array_or_table(other):
                        allowed = False
                    case (_, CellStructure()) if is_array_or_table(structure):
                        if not is_plain_cell(other):
                            allowed = False
                        elif other.id not in absorbed:
                            absorbed.append(other.id)
                            new_value = incoming.get((offset_row, offset_col), "")
                            if other.value and other.value != new_value:
                                conflicts.append(CellConflict(row, col, other.value, new_value))

                if not allowed:
                    blocked.append(Position(row, col))
                    break

    return MoveCheck(
        blocked=tuple(blocked),
        conflicts=tuple(conflicts),
        absorbed_ids=tuple(absorbed),
    )


def move_structure_in_index(
    positions: PositionMap,
    structures: Mapping[str, Structure],
    structure: Structure,
    target: Position,
    rules: SheetRules = SheetRules(),
) -> PositionMap | PlacementFailure:
    """
    Re-index a single structure at a new start position, atomically.

    Any failed check (bounds, blocking occupant, unresolved value conflict)
    returns a PlacementFailure and no index is produced.
    """
    check = check_move_target(positions, structures, structure, target, rules=rules)
    failure = failure_from_check(structure.id, check)
    if failure is not None:
        return failure

    moved = _translated(structure, target)
    return apply_index_changes(positions, removed=[structure], added=[moved])


def failure_from_check(structure_id: str, check: MoveCheck) -> PlacementFailure | None:
    if check.out_of_bounds:
        return PlacementFailure(PlacementFailureReason.OUT_OF_BOUNDS, structure_id)
    if check.blocked:
        return PlacementFailure(
            PlacementFailureReason.OVERLAP, structure_id, blocked=check.blocked
        )
    if check.conflicts:
        return PlacementFailure(
            PlacementFailureReason.VALUE_CONFLICT, structure_id, conflicts=check.conflicts
        )
    return None


def _translated(structure: Structure, target: Position) -> Structure:
    return replace(structure, start_position=target)
