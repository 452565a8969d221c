"""
Propagation of template edits into live template instances.

Every instance whose source_template_version is behind its template gets the
template content re-applied. Local divergence recorded in the instance's
overrides always wins: patched structures keep their patched fields, deleted
structures stay deleted, instance-only structures are left alone and
overridden cells keep their value. Where an override disagrees with the
template, a PropagationConflict is reported with resolution keep_instance.

All deltas are computed against the snapshot as it was before propagation
and installed together once the walk has finished.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

from sheet_types import (
    ArrayStructure,
    CellStructure,
    CellUpdateFn,
    Structure,
    StructureMap,
    TableStructure,
    Template,
    TemplateInstance,
    apply_patch,
    parse_position_key,
    position_key,
    structure_field_names,
)
from structure_store import Sheet, apply_structure_changes
from template_overrides import (
    convert_to_absolute_position,
    convert_to_relative_position,
    get_cell_override,
    get_override_info,
    get_structure_override,
    is_structure_added,
    is_structure_deleted,
)
from template_store import TemplatePersistence

logger = logging.getLogger(__name__)


class Resolution(Enum):
    """Which side a reported conflict was settled for."""

    KEEP_INSTANCE = "keep_instance"
    USE_TEMPLATE = "use_template"


class ConflictKind(Enum):
    STRUCTURE = "structure"
    CELL = "cell"


@dataclass(frozen=True)
class PropagationConflict:
    """
    An override that disagrees with the propagated template content.

    identifier is the instance structure id for structure conflicts and the
    relative "row-col" key for cell conflicts. For structures the two values
    are dicts of the disagreeing fields only.
    """

    instance_id: str
    kind: ConflictKind
    identifier: str
    template_value: Any
    instance_value: Any
    resolution: Resolution = Resolution.KEEP_INSTANCE


@dataclass(frozen=True)
class InstanceDelta:
    """Changes propagation makes for one instance (old records out, new records in)."""

    instance_id: str
    removed: dict[str, Structure] = field(default_factory=dict)
    added: dict[str, Structure] = field(default_factory=dict)
    cell_updates: dict[str, str] = field(default_factory=dict)  # absolute key -> value
    conflicts: tuple[PropagationConflict, ...] = ()


@dataclass(frozen=True)
class PropagationResult:
    sheet: Sheet
    cell_updates: dict[str, str] = field(default_factory=dict)
    conflicts: tuple[PropagationConflict, ...] = ()
    updated_instances: tuple[str, ...] = ()


@dataclass(frozen=True)
class PropagationCheck:
    is_valid: bool
    issues: tuple[str, ...] = ()


def instance_structure_id(instance_id: str, template_structure_id: str) -> str:
    """Id of a template structure materialized inside an instance."""
    return f"{instance_id}-{template_structure_id}"


def find_instances_needing_update(
    template_id: str, version: int, sheet: Sheet
) -> list[TemplateInstance]:
    return [
        s
        for s in sheet.structures.values()
        if isinstance(s, TemplateInstance)
        and s.template_id == template_id
        and s.source_template_version < version
    ]


# =============================================================================
# Materialization
# =============================================================================


def _remap_item(instance_id: str, item_id: str | None) -> str | None:
    return instance_structure_id(instance_id, item_id) if item_id else item_id


def _joined(template_structure: Structure, instance_id: str) -> Structure:
    """Template structure under its joined id, still in relative coordinates."""
    joined_id = instance_structure_id(instance_id, template_structure.id)
    match template_structure:
        case ArrayStructure(item_ids=item_ids):
            return replace(
                template_structure,
                id=joined_id,
                item_ids=tuple(_remap_item(instance_id, i) for i in item_ids),
            )
        case TableStructure(item_ids=item_ids):
            return replace(
                template_structure,
                id=joined_id,
                item_ids=tuple(tuple(_remap_item(instance_id, i) for i in row) for row in item_ids),
            )
        case CellStructure() | TemplateInstance():
            return replace(template_structure, id=joined_id)
        case _:
            raise ValueError(f"Unknown structure type: {template_structure}")


def materialize_structure(
    template_structure: Structure,
    instance: TemplateInstance,
    patch: Mapping[str, Any] | None = None,
) -> Structure:
    """
    Copy a template structure into an instance.

    The copy gets the joined id (item ids are joined the same way), the
    instance's patch for it laid over the template fields, and a start
    position translated from template-relative to absolute coordinates.
    """
    structure = _joined(template_structure, instance.id)
    if patch:
        structure = apply_patch(structure, dict(patch))
    return replace(
        structure,
        start_position=convert_to_absolute_position(
            structure.start_position, instance.start_position
        ),
    )


def _patch_conflict(
    instance: TemplateInstance,
    structure_id: str,
    template_structure: Structure,
    patch: Mapping[str, Any],
) -> PropagationConflict | None:
    template_side = _joined(template_structure, instance.id)
    known = structure_field_names(template_side) - {"id"}
    template_value: dict[str, Any] = {}
    instance_value: dict[str, Any] = {}
    for name, value in patch.items():
        if name in known and getattr(template_side, name) != value:
            template_value[name] = getattr(template_side, name)
            instance_value[name] = value
    if not instance_value:
        return None
    return PropagationConflict(
        instance.id, ConflictKind.STRUCTURE, structure_id, template_value, instance_value
    )


# =============================================================================
# Per-instance delta
# =============================================================================


def compute_instance_delta(
    instance: TemplateInstance,
    template: Template,
    template_structures: StructureMap,
    template_cell_data: Mapping[str, str],
    snapshot: Sheet,
) -> InstanceDelta:
    """
    What propagating the template into one instance changes.

    Args:
        instance: The instance as it is in the snapshot
        template: Catalog entry (its version is written back to the instance)
        template_structures: Template content, relative coordinates
        template_cell_data: Template cell values keyed by relative "row-col"
        snapshot: Pre-propagation sheet

    Returns:
        The records to remove and add, the resolved cell values and any
        conflicts. Nothing is applied.
    """
    removed: dict[str, Structure] = {}
    added: dict[str, Structure] = {}
    conflicts: list[PropagationConflict] = []
    written: set[str] = set()
    nested_instances: list[str] = []
    template_values: dict[str, str] = {}

    for template_structure_id, template_structure in template_structures.items():
        structure_id = instance_structure_id(instance.id, template_structure_id)
        if is_structure_deleted(instance, structure_id) and not is_structure_added(
            instance, structure_id
        ):
            continue

        patch = get_structure_override(instance, structure_id)
        structure = materialize_structure(template_structure, instance, patch)
        existing = snapshot.get(structure_id)

        if isinstance(structure, CellStructure):
            relative = convert_to_relative_position(
                structure.start_position, instance.start_position
            )
            template_values[position_key(relative.row, relative.col)] = structure.value

        if isinstance(structure, TemplateInstance):
            nested_instances.append(structure_id)
            if isinstance(existing, TemplateInstance):
                # A nested instance keeps its own divergence and merge state
                structure = replace(
                    structure,
                    overrides=existing.overrides,
                    source_template_version=existing.source_template_version,
                )

        if patch:
            conflict = _patch_conflict(instance, structure_id, template_structure, patch)
            if conflict is not None:
                conflicts.append(conflict)

        written.add(structure_id)
        if existing == structure:
            continue
        if existing is not None:
            removed[structure_id] = existing
        added[structure_id] = structure

    prefix = f"{instance.id}-"
    nested_prefixes = tuple(f"{w}-" for w in nested_instances)
    for structure in snapshot.structures.values():
        if (
            structure.id.startswith(prefix)
            and structure.id not in written
            and not is_structure_added(instance, structure.id)
            and not structure.id.startswith(nested_prefixes)
        ):
            removed[structure.id] = structure

    # Explicit cell data wins over the value a template cell holds
    template_values.update(template_cell_data)
    cell_updates: dict[str, str] = {}
    for key, template_value in template_values.items():
        absolute = convert_to_absolute_position(parse_position_key(key), instance.start_position)
        override = get_cell_override(instance, key)
        if override is None:
            value = template_value
        else:
            value = override
            if override != template_value:
                conflicts.append(
                    PropagationConflict(
                        instance.id, ConflictKind.CELL, key, template_value, override
                    )
                )
        cell_updates[position_key(absolute.row, absolute.col)] = value

    removed[instance.id] = instance
    added[instance.id] = replace(instance, source_template_version=template.version)

    return InstanceDelta(instance.id, removed, added, cell_updates, tuple(conflicts))


# =============================================================================
# Propagation
# =============================================================================


def _apply_deltas(
    sheet: Sheet, deltas: list[InstanceDelta], on_cell_update: CellUpdateFn | None
) -> PropagationResult:
    removed: dict[str, Structure] = {}
    added: dict[str, Structure] = {}
    cell_updates: dict[str, str] = {}
    conflicts: list[PropagationConflict] = []
    for delta in deltas:
        removed.update(delta.removed)
        added.update(delta.added)
        cell_updates.update(delta.cell_updates)
        conflicts.extend(delta.conflicts)

    new_sheet = apply_structure_changes(sheet, removed.values(), added.values())

    if on_cell_update is not None:
        for key, value in cell_updates.items():
            pos = parse_position_key(key)
            on_cell_update(pos.row, pos.col, value)

    for conflict in conflicts:
        logger.warning(
            "Propagation conflict in %s: %s %s kept instance value %r (template %r)",
            conflict.instance_id,
            conflict.kind.value,
            conflict.identifier,
            conflict.instance_value,
            conflict.template_value,
        )

    return PropagationResult(
        new_sheet,
        cell_updates,
        tuple(conflicts),
        tuple(delta.instance_id for delta in deltas),
    )


def apply_template_changes_to_instance(
    instance: TemplateInstance,
    template: Template,
    sheet: Sheet,
    store: TemplatePersistence,
    on_cell_update: CellUpdateFn | None = None,
) -> PropagationResult:
    """Re-apply a template to a single instance, whatever its version."""
    delta = compute_instance_delta(
        instance,
        template,
        store.load_template_structures(template.id),
        store.load_template_cell_data(template.id),
        sheet,
    )
    return _apply_deltas(sheet, [delta], on_cell_update)


def propagate_template_changes(
    template: Template,
    sheet: Sheet,
    store: TemplatePersistence,
    on_cell_update: CellUpdateFn | None = None,
) -> PropagationResult:
    """
    Bring every out-of-date instance of a template up to its current version.

    Cell values are delivered to on_cell_update after the walk, once per
    absolute cell, and are also returned in the result. Instances already at
    the template's version are untouched, so a repeated call is a no-op.
    """
    instances = find_instances_needing_update(template.id, template.version, sheet)
    if not instances:
        logger.debug("propagate: no instances of %s behind version %d", template.id, template.version)
        return PropagationResult(sheet)

    template_structures = store.load_template_structures(template.id)
    template_cell_data = store.load_template_cell_data(template.id)
    deltas = [
        compute_instance_delta(
            instance, template, template_structures, template_cell_data, sheet
        )
        for instance in instances
    ]
    result = _apply_deltas(sheet, deltas, on_cell_update)

    logger.info(
        "Propagated %s v%d to %d instances: %d cell updates, %d conflicts",
        template.name,
        template.version,
        len(deltas),
        len(result.cell_updates),
        len(result.conflicts),
    )
    return result


def validate_template_propagation(template: Template, sheet: Sheet) -> PropagationCheck:
    """Report instances whose overrides may conflict with the next propagation."""
    issues: list[str] = []
    instances = find_instances_needing_update(template.id, template.version, sheet)
    if not instances:
        issues.append("No instances found to update")

    for instance in instances:
        info = get_override_info(instance)
        count = len(info.overridden_structures) + len(info.overridden_cells)
        if count > 0:
            issues.append(f"Instance {instance.id} has {count} overrides that may conflict")

    return PropagationCheck(not issues, tuple(issues))
