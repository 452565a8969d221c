"""
Structure store: the sheet snapshot and every operation that edits it.

A Sheet pairs the structure records with their position index. Operations
never mutate a Sheet. They copy the maps they touch and return a new Sheet,
or a PlacementFailure when the edit would break a placement rule; the input
snapshot is always left as it was.

Edits made inside a template instance are recorded on the innermost instance
that contains the edited structure, so propagation can later tell local
changes apart from template content.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable

from position_index import (
    ConflictResolution,
    PlacementFailure,
    PlacementFailureReason,
    apply_index_changes,
    build_position_map,
    check_move_target,
    failure_from_check,
    insert,
    structures_at,
)
from sheet_types import (
    ArrayDirection,
    ArrayStructure,
    CellStructure,
    Dimensions,
    Position,
    PositionMap,
    SheetRules,
    Structure,
    StructureMap,
    TableStructure,
    TemplateInstance,
    covered_positions,
    covers,
    end_position,
    is_array_or_table,
    is_within_bounds,
    parse_position_key,
    position_key,
    referenced_item_ids,
    structure_field_names,
)
from template_overrides import (
    clear_cell_override,
    convert_to_relative_position,
    get_cell_override,
    mark_cell_override,
    mark_structure_added,
    mark_structure_deleted,
    mark_structure_override,
)

logger = logging.getLogger(__name__)

# Tie-break for structures of equal area and position: outermost first
_TYPE_ORDER = {"template": 0, "array": 1, "table": 2, "cell": 3}


@dataclass(frozen=True)
class Sheet:
    """Immutable snapshot of the structure store and its position index."""

    structures: StructureMap = field(default_factory=dict)
    positions: PositionMap = field(default_factory=dict)

    @classmethod
    def from_structures(cls, structures: Iterable[Structure]) -> Sheet:
        structure_map: StructureMap = {s.id: s for s in structures}
        return cls(structure_map, build_position_map(structure_map))

    def get(self, structure_id: str) -> Structure | None:
        return self.structures.get(structure_id)

    def at(self, row: int, col: int) -> list[Structure]:
        return structures_at(self.positions, self.structures, row, col)


def new_structure_id(kind: str) -> str:
    return f"{kind}-{uuid.uuid4()}"


# =============================================================================
# Snapshot plumbing
# =============================================================================


def _same_footprint(a: Structure | None, b: Structure | None) -> bool:
    return (
        a is not None
        and b is not None
        and a.start_position == b.start_position
        and a.dimensions == b.dimensions
    )


def apply_structure_changes(
    sheet: Sheet, removed: Iterable[Structure] = (), added: Iterable[Structure] = ()
) -> Sheet:
    """
    Build the next snapshot from removed (old records) and added (new records).

    A record replaced by one with the same id and footprint keeps its place in
    the index.
    """
    removed = list(removed)
    added = list(added)
    removed_by_id = {s.id: s for s in removed}
    unchanged = {s.id for s in added if _same_footprint(removed_by_id.get(s.id), s)}

    structures = dict(sheet.structures)
    for structure in removed:
        structures.pop(structure.id, None)
    for structure in added:
        structures[structure.id] = structure

    positions = apply_index_changes(
        sheet.positions,
        removed=[s for s in removed if s.id not in unchanged],
        added=[s for s in added if s.id not in unchanged],
    )
    return Sheet(structures, positions)


def _record(
    instances: dict[str, TemplateInstance],
    instance: TemplateInstance,
    mark: Callable[..., TemplateInstance],
    *args: Any,
) -> None:
    current = instances.get(instance.id, instance)
    instances[instance.id] = mark(current, *args)


def _install_instances(sheet: Sheet, instances: dict[str, TemplateInstance]) -> Sheet:
    if not instances:
        return sheet
    return apply_structure_changes(
        sheet,
        removed=[sheet.structures[instance_id] for instance_id in instances],
        added=instances.values(),
    )


def _area(structure: Structure) -> int:
    return structure.dimensions.rows * structure.dimensions.cols


def _shift(structure: Structure, d_row: int, d_col: int) -> Structure:
    start = structure.start_position
    return replace(structure, start_position=Position(start.row + d_row, start.col + d_col))


def _relative_key(instance: TemplateInstance, row: int, col: int) -> str:
    relative = convert_to_relative_position(Position(row, col), instance.start_position)
    return position_key(relative.row, relative.col)


# =============================================================================
# Lookup and hierarchy
# =============================================================================


def get_structures_at(sheet: Sheet, row: int, col: int) -> list[Structure]:
    return sheet.at(row, col)


def get_structure_at(sheet: Sheet, row: int, col: int) -> Structure | None:
    """
    The structure a click at (row, col) refers to.

    Content inside a template instance wins over the instance itself; among
    several candidates the most recently indexed one is the most specific.
    """
    occupants = sheet.at(row, col)
    if not occupants:
        return None
    content = [s for s in occupants if not isinstance(s, TemplateInstance)]
    if content:
        return content[-1]
    return occupants[-1]


def is_structure_contained_in(inner: Structure, outer: Structure) -> bool:
    """True when outer's rectangle fully contains inner's (and they differ)."""
    if inner.id == outer.id:
        return False
    inner_end = end_position(inner.start_position, inner.dimensions)
    outer_end = end_position(outer.start_position, outer.dimensions)
    return (
        inner.start_position.row >= outer.start_position.row
        and inner.start_position.col >= outer.start_position.col
        and inner_end.row <= outer_end.row
        and inner_end.col <= outer_end.col
    )


def sort_structures_by_containment(structures: Iterable[Structure]) -> list[Structure]:
    """Outermost to innermost: larger area first, then top-left, then type."""
    return sorted(
        structures,
        key=lambda s: (
            -_area(s),
            s.start_position.row,
            s.start_position.col,
            _TYPE_ORDER.get(s.type, len(_TYPE_ORDER)),
        ),
    )


def get_structure_hierarchy(sheet: Sheet, row: int, col: int) -> list[Structure]:
    return sort_structures_by_containment(sheet.at(row, col))


def find_template_instance_at(sheet: Sheet, row: int, col: int) -> TemplateInstance | None:
    """Innermost template instance covering a cell."""
    instances = [s for s in sheet.at(row, col) if isinstance(s, TemplateInstance)]
    if not instances:
        return None
    return min(instances, key=_area)


def owning_instance(sheet: Sheet, structure: Structure) -> TemplateInstance | None:
    """Innermost template instance (other than the structure) that fully contains it."""
    start = structure.start_position
    owners = [
        other
        for other in sheet.at(start.row, start.col)
        if isinstance(other, TemplateInstance) and is_structure_contained_in(structure, other)
    ]
    if not owners:
        return None
    return min(owners, key=_area)


def get_all_nested_structures(sheet: Sheet, parent: Structure) -> list[Structure]:
    """Every structure whose rectangle lies fully inside the parent's."""
    nested: dict[str, Structure] = {}
    for pos in covered_positions(parent):
        for other in sheet.at(pos.row, pos.col):
            if other.id not in nested and is_structure_contained_in(other, parent):
                nested[other.id] = other
    return list(nested.values())


def _cell_id_at(sheet: Sheet, row: int, col: int) -> str | None:
    cells = [s for s in sheet.at(row, col) if isinstance(s, CellStructure)]
    return cells[-1].id if cells else None


def initialize_item_ids(
    sheet: Sheet, kind: str, start: Position, dimensions: Dimensions
) -> tuple[str | None, ...] | tuple[tuple[str | None, ...], ...]:
    """Slot ids for a new array or table, taken from cells already in the range."""
    if kind == ArrayStructure.type:
        if dimensions.rows == 1:
            cells = [Position(start.row, start.col + i) for i in range(dimensions.cols)]
        else:
            cells = [Position(start.row + i, start.col) for i in range(dimensions.rows)]
        return tuple(_cell_id_at(sheet, pos.row, pos.col) for pos in cells)
    if kind == TableStructure.type:
        return tuple(
            tuple(
                _cell_id_at(sheet, start.row + r, start.col + c) for c in range(dimensions.cols)
            )
            for r in range(dimensions.rows)
        )
    raise ValueError(f"Structure kind '{kind}' has no item slots")


# =============================================================================
# Item slots
# =============================================================================


def _array_slots(array: ArrayStructure) -> list[str | None]:
    slots = list(array.item_ids[: array.length])
    return slots + [None] * (array.length - len(slots))


def _table_slots(table: TableStructure) -> list[list[str | None]]:
    slots = []
    for r in range(table.dimensions.rows):
        row = list(table.item_ids[r][: table.dimensions.cols]) if r < len(table.item_ids) else []
        slots.append(row + [None] * (table.dimensions.cols - len(row)))
    return slots


def _item_at(container: Structure, row: int, col: int) -> str | None:
    match container:
        case ArrayStructure():
            index = container.index_of(row, col)
            return container.item_ids[index] if 0 <= index < len(container.item_ids) else None
        case TableStructure():
            return container.item_at(row, col)
        case CellStructure() | TemplateInstance():
            return None
        case _:
            raise ValueError(f"Unknown structure type: {container}")


def _set_slot(container: Structure, row: int, col: int, item_id: str | None) -> tuple[Structure, str | None]:
    """Point the slot covering (row, col) at item_id. Returns (container, previous id)."""
    match container:
        case ArrayStructure():
            slots = _array_slots(container)
            index = container.index_of(row, col)
            previous = slots[index]
            slots[index] = item_id
            return replace(container, item_ids=tuple(slots)), previous
        case TableStructure():
            table_slots = _table_slots(container)
            r = row - container.start_position.row
            c = col - container.start_position.col
            previous = table_slots[r][c]
            table_slots[r][c] = item_id
            return replace(container, item_ids=tuple(tuple(s) for s in table_slots)), previous
        case _:
            raise ValueError(f"Structure {container.id} has no item slots")


def _clear_items(container: Structure, item_ids: set[str]) -> Structure:
    match container:
        case ArrayStructure():
            return replace(
                container,
                item_ids=tuple(None if i in item_ids else i for i in container.item_ids),
            )
        case TableStructure():
            return replace(
                container,
                item_ids=tuple(
                    tuple(None if i in item_ids else i for i in row) for row in container.item_ids
                ),
            )
        case _:
            return container


# =============================================================================
# Creation and deletion
# =============================================================================


def create_structure(
    kind: str,
    start: Position,
    dimensions: Dimensions,
    sheet: Sheet,
    name: str | None = None,
    rules: SheetRules = SheetRules(),
) -> Structure | None:
    """
    Build a new structure record over a selected range (not yet installed).

    Returns None when the range cannot hold the structure: non-positive
    dimensions, a footprint outside the grid, or an array that is neither a
    single row nor a single column.

    Raises:
        ValueError: kind is not "cell", "array" or "table"
    """
    if kind not in (CellStructure.type, ArrayStructure.type, TableStructure.type):
        raise ValueError(
            f"Unknown structure kind: '{kind}'\n"
            f"  Valid kinds: {CellStructure.type}, {ArrayStructure.type}, {TableStructure.type}"
        )
    if dimensions.rows < 1 or dimensions.cols < 1:
        logger.debug("create_structure: invalid dimensions %s", dimensions)
        return None
    if not is_within_bounds(start, dimensions, rules):
        logger.debug("create_structure: %s at %s out of bounds", kind, start)
        return None

    structure_id = new_structure_id(kind)
    if kind == CellStructure.type:
        return CellStructure(structure_id, start, dimensions, name=name)

    if kind == ArrayStructure.type:
        if dimensions.rows != 1 and dimensions.cols != 1:
            logger.debug("create_structure: array must be one row or one column, got %s", dimensions)
            return None
        direction = ArrayDirection.HORIZONTAL if dimensions.rows == 1 else ArrayDirection.VERTICAL
        return ArrayStructure(
            structure_id,
            start,
            dimensions,
            direction=direction,
            item_ids=initialize_item_ids(sheet, kind, start, dimensions),  # type: ignore[arg-type]
            name=name,
        )

    return TableStructure(
        structure_id,
        start,
        dimensions,
        item_ids=initialize_item_ids(sheet, kind, start, dimensions),  # type: ignore[arg-type]
        col_header_levels=rules.col_header_levels,
        row_header_levels=rules.row_header_levels,
        name=name,
    )


def create_structure_from_range(
    kind: str,
    start: Position,
    end: Position,
    sheet: Sheet,
    name: str | None = None,
    rules: SheetRules = SheetRules(),
) -> Structure | None:
    """create_structure for a selection given by two corners, in any order."""
    top = min(start.row, end.row)
    left = min(start.col, end.col)
    dimensions = Dimensions(abs(end.row - start.row) + 1, abs(end.col - start.col) + 1)
    return create_structure(kind, Position(top, left), dimensions, sheet, name, rules)


def add_structure(
    sheet: Sheet, structure: Structure, rules: SheetRules = SheetRules()
) -> Sheet | PlacementFailure:
    """
    Install a structure record, checking bounds and array/table overlap.

    A structure added inside a template instance is recorded as instance-only
    content. Re-adding an existing id replaces the old record.
    """
    existing = sheet.get(structure.id)
    base = apply_structure_changes(sheet, removed=[existing]) if existing is not None else sheet

    positions = insert(base.positions, base.structures, structure, rules)
    if isinstance(positions, PlacementFailure):
        return positions

    result = Sheet({**base.structures, structure.id: structure}, positions)
    owner = owning_instance(result, structure)
    if owner is None or existing is not None:
        return result
    return _install_instances(result, {owner.id: mark_structure_added(owner, structure.id)})


def delete_structure(sheet: Sheet, structure_id: str) -> Sheet:
    """
    Remove a structure and its index entries.

    Deleting a template instance also removes the content inside it. Slots of
    arrays and tables that referenced a removed id are emptied. A deletion
    inside a template instance is recorded so propagation will not restore it.
    """
    structure = sheet.get(structure_id)
    if structure is None:
        logger.debug("delete_structure: no structure %s", structure_id)
        return sheet

    removed = [structure]
    if isinstance(structure, TemplateInstance):
        removed.extend(get_all_nested_structures(sheet, structure))
    removed_ids = {s.id for s in removed}

    added: list[Structure] = []
    for container in sheet.structures.values():
        if container.id in removed_ids or not is_array_or_table(container):
            continue
        if removed_ids.intersection(referenced_item_ids(container)):
            removed.append(container)
            added.append(_clear_items(container, removed_ids))

    owner = owning_instance(sheet, structure)
    if owner is not None:
        removed.append(owner)
        added.append(mark_structure_deleted(owner, structure.id))

    return apply_structure_changes(sheet, removed, added)


# =============================================================================
# Moves
# =============================================================================


def _moving_group(sheet: Sheet, structure: Structure) -> list[Structure]:
    """The structure plus everything that travels with it."""
    match structure:
        case TemplateInstance():
            return [structure, *get_all_nested_structures(sheet, structure)]
        case ArrayStructure() | TableStructure():
            items: dict[str, Structure] = {}
            for item_id in referenced_item_ids(structure):
                item = sheet.get(item_id)
                if item is not None and item_id != structure.id:
                    items[item_id] = item
            return [structure, *items.values()]
        case CellStructure():
            return [structure]
        case _:
            raise ValueError(f"Unknown structure type: {structure}")


def move_structure(
    sheet: Sheet,
    structure_id: str,
    target: Position,
    resolution: ConflictResolution | None = None,
    rules: SheetRules = SheetRules(),
) -> Sheet | PlacementFailure:
    """
    Move a structure to a new start position, together with its items or content.

    Plain cells under an array or table's new footprint are absorbed. When one
    of them holds a value different from the one being moved in, the move is
    refused with a VALUE_CONFLICT failure unless a resolution is supplied:

    - REPLACE_WITH_NEW: the existing cells are deleted
    - KEEP_EXISTING: the existing cells stay and take over the slot at their
      position; the moved item for that slot is dropped
    - CANCEL: the move is refused, as with no resolution

    Args:
        sheet: Current snapshot
        structure_id: Structure to move
        target: New start position
        resolution: How to settle value conflicts
        rules: Grid limits

    Returns:
        The new snapshot, or a PlacementFailure (the input snapshot is unchanged)
    """
    structure = sheet.get(structure_id)
    if structure is None:
        logger.debug("move_structure: no structure %s", structure_id)
        return sheet
    if target == structure.start_position:
        return sheet

    group = _moving_group(sheet, structure)
    moving_ids = frozenset(s.id for s in group)
    start = structure.start_position
    incoming = {
        (r, c): get_cell_value(sheet, start.row + r, start.col + c)
        for r in range(structure.dimensions.rows)
        for c in range(structure.dimensions.cols)
    }

    check = check_move_target(
        sheet.positions, sheet.structures, structure, target, moving_ids, incoming, rules
    )
    failure = failure_from_check(structure.id, check)
    if failure is not None and (
        failure.reason != PlacementFailureReason.VALUE_CONFLICT
        or resolution in (None, ConflictResolution.CANCEL)
    ):
        logger.debug("move_structure: %s rejected (%s)", structure.id, failure.reason.value)
        return failure

    d_row = target.row - start.row
    d_col = target.col - start.col
    moved = {s.id: _shift(s, d_row, d_col) for s in group}

    kept: set[str] = set()
    dropped: set[str] = set()
    if check.conflicts and resolution == ConflictResolution.KEEP_EXISTING:
        container = moved[structure.id]
        for conflict in check.conflicts:
            existing_id = next(
                s.id
                for s in sheet.at(conflict.row, conflict.col)
                if s.id in check.absorbed_ids
            )
            container, previous = _set_slot(container, conflict.row, conflict.col, existing_id)
            kept.add(existing_id)
            if previous is not None and previous in moved and previous != structure.id:
                dropped.add(previous)
        moved[structure.id] = container

    overwritten = [
        sheet.structures[cell_id] for cell_id in check.absorbed_ids if cell_id not in kept
    ]

    instances: dict[str, TemplateInstance] = {}
    for cell in overwritten:
        owner = owning_instance(sheet, cell)
        if owner is not None and owner.id not in moving_ids:
            _record(instances, owner, mark_structure_deleted, cell.id)

    result = apply_structure_changes(
        sheet,
        removed=[*group, *overwritten],
        added=[s for s in moved.values() if s.id not in dropped],
    )

    tracked = [structure] if isinstance(structure, TemplateInstance) else group
    for member in tracked:
        if member.id in dropped:
            continue
        before = owning_instance(sheet, member)
        after = owning_instance(result, result.structures[member.id])
        if before is not None and before.id not in moving_ids:
            if after is not None and after.id == before.id:
                relative = convert_to_relative_position(
                    moved[member.id].start_position, before.start_position
                )
                _record(instances, before, mark_structure_override, member.id, {"start_position": relative})
            else:
                _record(instances, before, mark_structure_deleted, member.id)
        if after is not None and after.id not in moving_ids and (before is None or before.id != after.id):
            _record(instances, after, mark_structure_added, member.id)

    logger.debug("move_structure: %s -> %s (%d structures)", structure.id, target, len(moved))
    return _install_instances(result, instances)


# =============================================================================
# Field updates
# =============================================================================


def _record_patch(sheet: Sheet, owner: TemplateInstance, structure_id: str, patch: dict[str, Any]) -> Sheet:
    if "start_position" in patch:
        patch = {
            **patch,
            "start_position": convert_to_relative_position(
                patch["start_position"], owner.start_position
            ),
        }
    current = sheet.structures[owner.id]
    return _install_instances(
        sheet, {owner.id: mark_structure_override(current, structure_id, patch)}  # type: ignore[arg-type]
    )


def update_structure(
    sheet: Sheet, structure_id: str, rules: SheetRules = SheetRules(), **changes: Any
) -> Sheet | PlacementFailure:
    """
    Change fields of a structure (any field but its id).

    A changed footprint is re-checked for bounds and array/table overlap. Inside
    a template instance the changed fields are recorded as a structure patch,
    with start_position stored relative to the instance.
    """
    structure = sheet.get(structure_id)
    if structure is None:
        logger.debug("update_structure: no structure %s", structure_id)
        return sheet

    known = structure_field_names(structure) - {"id"}
    patch = {name: value for name, value in changes.items() if name in known}
    updated = replace(structure, **patch) if patch else structure
    if updated == structure:
        return sheet

    if _same_footprint(structure, updated):
        result = apply_structure_changes(sheet, [structure], [updated])
    else:
        without = apply_structure_changes(sheet, removed=[structure])
        positions = insert(without.positions, without.structures, updated, rules)
        if isinstance(positions, PlacementFailure):
            logger.debug("update_structure: %s rejected (%s)", structure.id, positions.reason.value)
            return positions
        result = Sheet({**without.structures, updated.id: updated}, positions)

    owner = owning_instance(sheet, structure)
    if owner is None:
        return result
    return _record_patch(result, owner, structure.id, patch)


def _update_fields(sheet: Sheet, structure_id: str, **changes: Any) -> Sheet:
    """update_structure for fields that never move the footprint."""
    structure = sheet.get(structure_id)
    if structure is None:
        logger.debug("update: no structure %s", structure_id)
        return sheet
    updated = replace(structure, **changes)
    if updated == structure:
        return sheet
    result = apply_structure_changes(sheet, [structure], [updated])
    owner = owning_instance(sheet, structure)
    if owner is None:
        return result
    return _record_patch(result, owner, structure.id, changes)


def rename_structure(sheet: Sheet, structure_id: str, name: str | None) -> Sheet:
    """Set or clear (empty name) the name of a structure."""
    return _update_fields(sheet, structure_id, name=name or None)


def set_structure_formula(sheet: Sheet, structure_id: str, formula: str | None) -> Sheet:
    """Attach a formula to a structure. Any previous formula error is cleared."""
    return _update_fields(sheet, structure_id, formula=formula or None, formula_error=None)


# =============================================================================
# Cell values
# =============================================================================


def get_cell_value(sheet: Sheet, row: int, col: int) -> str:
    """
    The value displayed at a cell.

    A cell override on the innermost template instance wins. Otherwise the
    most specific occupant provides it: a cell's own value (a merged cell only
    at its top-left), or the value of the item in an array or table slot.
    """
    instance = find_template_instance_at(sheet, row, col)
    if instance is not None:
        override = get_cell_override(instance, _relative_key(instance, row, col))
        if override is not None:
            return override

    for structure in reversed(sheet.at(row, col)):
        match structure:
            case CellStructure():
                if structure.is_merged and Position(row, col) != structure.start_position:
                    return ""
                return structure.value
            case ArrayStructure() | TableStructure():
                item_id = _item_at(structure, row, col)
                item = sheet.get(item_id) if item_id else None
                if isinstance(item, CellStructure):
                    return item.value
            case TemplateInstance():
                continue
            case _:
                raise ValueError(f"Unknown structure type: {structure}")
    return ""


def set_cell_value(sheet: Sheet, row: int, col: int, value: str) -> Sheet:
    """
    Write a value at a cell.

    The value goes into the cell held by the array or table slot at the
    position, else into the standalone cell there, else into a new 1x1 cell
    (which also fills an empty slot). Inside a template instance the write is
    recorded as a cell override, and a new cell as instance-only content.
    """
    occupants = sheet.at(row, col)
    container = next((s for s in reversed(occupants) if is_array_or_table(s)), None)
    item_id = _item_at(container, row, col) if container is not None else None
    item = sheet.get(item_id) if item_id else None

    removed: list[Structure] = []
    added: list[Structure] = []
    new_cell: CellStructure | None = None
    updated_container: Structure | None = None

    if isinstance(item, CellStructure):
        removed.append(item)
        added.append(replace(item, value=value))
    else:
        cell = next((s for s in reversed(occupants) if isinstance(s, CellStructure)), None)
        if cell is not None:
            removed.append(cell)
            added.append(replace(cell, value=value))
        elif value:
            new_cell = CellStructure(
                new_structure_id(CellStructure.type), Position(row, col), Dimensions(1, 1), value=value
            )
            added.append(new_cell)
            if container is not None:
                updated_container, _ = _set_slot(container, row, col, new_cell.id)
                removed.append(container)
                added.append(updated_container)

    result = apply_structure_changes(sheet, removed, added)

    instance = find_template_instance_at(sheet, row, col)
    if instance is None:
        return result

    recorded = mark_cell_override(instance, _relative_key(instance, row, col), value)
    if new_cell is not None:
        recorded = mark_structure_added(recorded, new_cell.id)
    if updated_container is not None and container is not None:
        container_owner = owning_instance(sheet, container)
        if container_owner is not None and container_owner.id == instance.id:
            recorded = mark_structure_override(
                recorded, container.id, {"item_ids": updated_container.item_ids}  # type: ignore[union-attr]
            )
    return _install_instances(result, {instance.id: recorded})


# =============================================================================
# Merging cells
# =============================================================================


def _merged_cell_at(sheet: Sheet, row: int, col: int) -> CellStructure | None:
    for structure in reversed(sheet.at(row, col)):
        if isinstance(structure, CellStructure) and structure.is_merged:
            return structure
    return None


def _range_positions(start: Position, end: Position) -> list[Position]:
    return [
        Position(row, col)
        for row in range(min(start.row, end.row), max(start.row, end.row) + 1)
        for col in range(min(start.col, end.col), max(start.col, end.col) + 1)
    ]


def can_merge_cells(sheet: Sheet, start: Position, end: Position) -> bool:
    """A range can be merged when it spans more than one cell and touches no merged cell."""
    positions = _range_positions(start, end)
    if len(positions) < 2:
        return False
    return all(_merged_cell_at(sheet, pos.row, pos.col) is None for pos in positions)


def can_unmerge_cells(sheet: Sheet, row: int, col: int) -> bool:
    return _merged_cell_at(sheet, row, col) is not None


def merge_cells(
    sheet: Sheet, start: Position, end: Position, rules: SheetRules = SheetRules()
) -> Sheet | PlacementFailure | None:
    """
    Merge the range between two corners into a single cell.

    The merged cell takes the first non-empty value found reading the range
    row by row. The 1x1 cells it covers are deleted, and cell overrides in the
    range are dropped from the owning template instance, which records the
    merged cell as instance-only content.

    Returns None when the range is a single cell, overlaps a merged cell or
    leaves the grid.
    """
    if not can_merge_cells(sheet, start, end):
        logger.debug("merge_cells: range %s:%s cannot be merged", start, end)
        return None
    cell = create_structure_from_range(CellStructure.type, start, end, sheet, rules=rules)
    if cell is None:
        return None

    positions = list(covered_positions(cell))
    values = (get_cell_value(sheet, pos.row, pos.col) for pos in positions)
    merged = replace(cell, value=next((value for value in values if value), ""))

    result = sheet
    for pos in positions:
        for absorbed in [s for s in result.at(pos.row, pos.col) if isinstance(s, CellStructure)]:
            result = delete_structure(result, absorbed.id)

    owner = owning_instance(result, merged)
    if owner is not None:
        cleared = owner
        for pos in positions:
            cleared = clear_cell_override(cleared, _relative_key(owner, pos.row, pos.col))
        result = _install_instances(result, {owner.id: cleared})

    logger.debug("merge_cells: %s over %d cells", merged.id, len(positions))
    return add_structure(result, merged, rules)


def unmerge_cells(sheet: Sheet, row: int, col: int) -> Sheet | PlacementFailure:
    """Shrink the merged cell covering (row, col) back to its top-left cell, keeping its value."""
    merged = _merged_cell_at(sheet, row, col)
    if merged is None:
        logger.debug("unmerge_cells: no merged cell at %d-%d", row, col)
        return sheet
    return update_structure(sheet, merged.id, dimensions=Dimensions(1, 1))


# =============================================================================
# Growing arrays and tables
# =============================================================================


def _shift_groups(groups: dict[str, tuple[int, ...]]) -> dict[str, tuple[int, ...]]:
    return {name: tuple(i + 1 for i in indices) for name, indices in groups.items()}


def add_table_row(
    sheet: Sheet, table_id: str, where: str = "bottom", rules: SheetRules = SheetRules()
) -> Sheet | PlacementFailure:
    """Grow a table by one row at the top or bottom. Existing cells there become items."""
    table = sheet.get(table_id)
    if not isinstance(table, TableStructure):
        logger.debug("add_table_row: %s is not a table", table_id)
        return sheet
    if where not in ("top", "bottom"):
        raise ValueError(f"Invalid row insertion point: '{where}' (expected 'top' or 'bottom')")

    slots = _table_slots(table)
    start = table.start_position
    changes: dict[str, Any] = {"dimensions": Dimensions(table.dimensions.rows + 1, table.dimensions.cols)}
    if where == "top":
        start = Position(start.row - 1, start.col)
        new_row = start.row
        changes["start_position"] = start
        if table.row_groups:
            changes["row_groups"] = _shift_groups(table.row_groups)
    else:
        new_row = start.row + table.dimensions.rows
    row_ids = [_cell_id_at(sheet, new_row, start.col + c) for c in range(table.dimensions.cols)]
    if where == "top":
        slots.insert(0, row_ids)
    else:
        slots.append(row_ids)
    changes["item_ids"] = tuple(tuple(row) for row in slots)
    return update_structure(sheet, table_id, rules, **changes)


def add_table_column(
    sheet: Sheet, table_id: str, where: str = "right", rules: SheetRules = SheetRules()
) -> Sheet | PlacementFailure:
    """Grow a table by one column on the left or right. Existing cells there become items."""
    table = sheet.get(table_id)
    if not isinstance(table, TableStructure):
        logger.debug("add_table_column: %s is not a table", table_id)
        return sheet
    if where not in ("left", "right"):
        raise ValueError(f"Invalid column insertion point: '{where}' (expected 'left' or 'right')")

    slots = _table_slots(table)
    start = table.start_position
    changes: dict[str, Any] = {"dimensions": Dimensions(table.dimensions.rows, table.dimensions.cols + 1)}
    if where == "left":
        start = Position(start.row, start.col - 1)
        new_col = start.col
        changes["start_position"] = start
        if table.col_groups:
            changes["col_groups"] = _shift_groups(table.col_groups)
    else:
        new_col = start.col + table.dimensions.cols
    for r, row in enumerate(slots):
        item_id = _cell_id_at(sheet, start.row + r, new_col)
        if where == "left":
            row.insert(0, item_id)
        else:
            row.append(item_id)
    changes["item_ids"] = tuple(tuple(row) for row in slots)
    return update_structure(sheet, table_id, rules, **changes)


def add_array_item(
    sheet: Sheet, array_id: str, where: str = "end", rules: SheetRules = SheetRules()
) -> Sheet | PlacementFailure:
    """Grow an array by one slot at its start or end, along its direction."""
    array = sheet.get(array_id)
    if not isinstance(array, ArrayStructure):
        logger.debug("add_array_item: %s is not an array", array_id)
        return sheet
    if where not in ("start", "end"):
        raise ValueError(f"Invalid array insertion point: '{where}' (expected 'start' or 'end')")

    horizontal = array.direction == ArrayDirection.HORIZONTAL
    start = array.start_position
    if horizontal:
        dimensions = Dimensions(array.dimensions.rows, array.dimensions.cols + 1)
        before = Position(start.row, start.col - 1)
        after = Position(start.row, start.col + array.dimensions.cols)
    else:
        dimensions = Dimensions(array.dimensions.rows + 1, array.dimensions.cols)
        before = Position(start.row - 1, start.col)
        after = Position(start.row + array.dimensions.rows, start.col)

    slots = _array_slots(array)
    changes: dict[str, Any] = {"dimensions": dimensions}
    if where == "start":
        slots.insert(0, _cell_id_at(sheet, before.row, before.col))
        changes["start_position"] = before
    else:
        slots.append(_cell_id_at(sheet, after.row, after.col))
    changes["item_ids"] = tuple(slots)
    return update_structure(sheet, array_id, rules, **changes)


# =============================================================================
# Consistency
# =============================================================================


def check_index_consistency(sheet: Sheet) -> list[str]:
    """
    List every violation of the index invariants (empty when consistent).

    Checked both ways: each structure appears exactly once at every cell it
    covers, and each indexed id names a live structure covering that cell.
    Array and table footprints must not share a cell.
    """
    problems: list[str] = []

    for structure in sheet.structures.values():
        for pos in covered_positions(structure):
            key = position_key(pos.row, pos.col)
            count = sheet.positions.get(key, ()).count(structure.id)
            if count == 0:
                problems.append(f"{structure.id} missing from index at {key}")
            elif count > 1:
                problems.append(f"{structure.id} indexed {count} times at {key}")

    for key, ids in sheet.positions.items():
        pos = parse_position_key(key)
        containers = 0
        for structure_id in ids:
            structure = sheet.structures.get(structure_id)
            if structure is None:
                problems.append(f"dangling id {structure_id} at {key}")
                continue
            if not covers(structure, pos.row, pos.col):
                problems.append(f"{structure_id} indexed at {key} outside its footprint")
            if is_array_or_table(structure):
                containers += 1
        if containers > 1:
            problems.append(f"arrays/tables overlap at {key}")

    return problems
