"""
Override tracking for template instances.

Every function here is pure: it takes a TemplateInstance and returns a new
one. Overrides are instance-local deltas and never touch template content.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from sheet_types import (
    Position,
    TemplateInstance,
    TemplateOverrides,
    covers,
)


def _overrides(instance: TemplateInstance) -> TemplateOverrides:
    return instance.overrides if instance.overrides is not None else TemplateOverrides()


def _with_overrides(instance: TemplateInstance, overrides: TemplateOverrides) -> TemplateInstance:
    return replace(instance, overrides=overrides)


# =============================================================================
# Recording divergence
# =============================================================================


def mark_structure_override(
    instance: TemplateInstance, structure_id: str, patch: dict[str, Any]
) -> TemplateInstance:
    """Merge a field patch into the existing patch for a structure (last write wins)."""
    current = _overrides(instance)
    merged = {**current.structures.get(structure_id, {}), **patch}
    return _with_overrides(
        instance,
        replace(current, structures={**current.structures, structure_id: merged}),
    )


def mark_cell_override(instance: TemplateInstance, key: str, value: str) -> TemplateInstance:
    """Set or replace the override for a relative position key."""
    current = _overrides(instance)
    return _with_overrides(
        instance, replace(current, cell_data={**current.cell_data, key: value})
    )


def mark_structure_deleted(instance: TemplateInstance, structure_id: str) -> TemplateInstance:
    """Record a local deletion. Any patch or earlier re-add of the structure is dropped."""
    current = _overrides(instance)
    remaining = {sid: patch for sid, patch in current.structures.items() if sid != structure_id}
    deleted = tuple(sid for sid in current.deleted_structures if sid != structure_id)
    added = tuple(sid for sid in current.added_structures if sid != structure_id)
    return _with_overrides(
        instance,
        replace(
            current,
            structures=remaining,
            deleted_structures=deleted + (structure_id,),
            added_structures=added,
        ),
    )


def mark_structure_added(instance: TemplateInstance, structure_id: str) -> TemplateInstance:
    """Record a structure that exists only in this instance, or is re-added after deletion."""
    current = _overrides(instance)
    added = tuple(sid for sid in current.added_structures if sid != structure_id)
    deleted = tuple(sid for sid in current.deleted_structures if sid != structure_id)
    return _with_overrides(
        instance,
        replace(current, added_structures=added + (structure_id,), deleted_structures=deleted),
    )


# =============================================================================
# Queries
# =============================================================================


def is_structure_overridden(instance: TemplateInstance, structure_id: str) -> bool:
    if instance.overrides is None:
        return False
    return structure_id in instance.overrides.structures


def is_cell_overridden(instance: TemplateInstance, key: str) -> bool:
    if instance.overrides is None:
        return False
    return key in instance.overrides.cell_data


def is_structure_deleted(instance: TemplateInstance, structure_id: str) -> bool:
    if instance.overrides is None:
        return False
    return structure_id in instance.overrides.deleted_structures


def is_structure_added(instance: TemplateInstance, structure_id: str) -> bool:
    if instance.overrides is None:
        return False
    return structure_id in instance.overrides.added_structures


def get_structure_override(instance: TemplateInstance, structure_id: str) -> dict[str, Any] | None:
    if instance.overrides is None:
        return None
    return instance.overrides.structures.get(structure_id)


def get_cell_override(instance: TemplateInstance, key: str) -> str | None:
    if instance.overrides is None:
        return None
    return instance.overrides.cell_data.get(key)


# =============================================================================
# Reverting divergence
# =============================================================================


def clear_structure_override(instance: TemplateInstance, structure_id: str) -> TemplateInstance:
    current = _overrides(instance)
    remaining = {sid: patch for sid, patch in current.structures.items() if sid != structure_id}
    return _with_overrides(instance, replace(current, structures=remaining))


def clear_cell_override(instance: TemplateInstance, key: str) -> TemplateInstance:
    current = _overrides(instance)
    remaining = {k: v for k, v in current.cell_data.items() if k != key}
    return _with_overrides(instance, replace(current, cell_data=remaining))


def clear_all_overrides(instance: TemplateInstance) -> TemplateInstance:
    """Reset to an empty override record (discard all local divergence)."""
    return _with_overrides(instance, TemplateOverrides())


# =============================================================================
# Coordinates
# =============================================================================


def convert_to_absolute_position(relative: Position, origin: Position) -> Position:
    """Relative position inside a template -> absolute sheet position."""
    return Position(origin.row + relative.row, origin.col + relative.col)


def convert_to_relative_position(absolute: Position, origin: Position) -> Position:
    """Absolute sheet position -> position relative to a template origin."""
    return Position(absolute.row - origin.row, absolute.col - origin.col)


def is_position_in_template(position: Position, instance: TemplateInstance) -> bool:
    return covers(instance, position.row, position.col)


# =============================================================================
# Summaries
# =============================================================================


@dataclass(frozen=True)
class OverrideInfo:
    """Summary of an instance's divergence, for inspection panels and logs."""

    overridden_structures: tuple[str, ...] = ()
    overridden_cells: tuple[str, ...] = ()
    deleted_structures: tuple[str, ...] = ()
    added_structures: tuple[str, ...] = ()

    @property
    def total_override_count(self) -> int:
        return (
            len(self.overridden_structures)
            + len(self.overridden_cells)
            + len(self.deleted_structures)
            + len(self.added_structures)
        )

    @property
    def has_overrides(self) -> bool:
        return self.total_override_count > 0


def get_override_info(instance: TemplateInstance) -> OverrideInfo:
    if instance.overrides is None:
        return OverrideInfo()
    overrides = instance.overrides
    return OverrideInfo(
        overridden_structures=tuple(overrides.structures),
        overridden_cells=tuple(overrides.cell_data),
        deleted_structures=overrides.deleted_structures,
        added_structures=overrides.added_structures,
    )
