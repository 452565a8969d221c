"""
Template workflows: placing instances, committing template edits, resetting
instances.

These tie the catalog, the persistence store, the sheet snapshot and
propagation together. Like the rest of the code base they return new
snapshots rather than editing one in place.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Mapping

from position_index import PlacementFailure, PlacementFailureReason
from sheet_types import (
    CellStructure,
    CellUpdateFn,
    Position,
    SheetRules,
    Structure,
    StructureMap,
    Template,
    TemplateInstance,
    covered_positions,
    end_position,
    is_within_bounds,
    parse_position_key,
    position_key,
)
from structure_store import Sheet, apply_structure_changes
from template_diff import TemplateChanges, compute_template_changes
from template_overrides import clear_all_overrides, convert_to_absolute_position
from template_propagation import (
    PropagationResult,
    apply_template_changes_to_instance,
    materialize_structure,
    propagate_template_changes,
)
from template_store import TemplateCatalog, TemplatePersistence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateInstantiation:
    """A new instance and its materialized content, not yet on a sheet."""

    instance: TemplateInstance
    structures: tuple[Structure, ...] = ()
    cell_values: dict[str, str] = field(default_factory=dict)  # absolute key -> value


@dataclass(frozen=True)
class TemplatePlacement:
    sheet: Sheet
    instance: TemplateInstance


@dataclass(frozen=True)
class TemplateCommit:
    template: Template
    changes: TemplateChanges
    propagation: PropagationResult


def instantiate_template(
    template: Template, target: Position, store: TemplatePersistence
) -> TemplateInstantiation:
    """Build a new instance of a template at target, already at the template's version."""
    instance = TemplateInstance(
        id=f"template-instance-{uuid.uuid4()}",
        start_position=target,
        dimensions=template.dimensions,
        template_id=template.id,
        source_template_version=template.version,
        name=template.name,
    )
    structures = tuple(
        materialize_structure(s, instance)
        for s in store.load_template_structures(template.id).values()
    )
    cell_values = {
        position_key(s.start_position.row, s.start_position.col): s.value
        for s in structures
        if isinstance(s, CellStructure)
    }
    for key, value in store.load_template_cell_data(template.id).items():
        absolute = convert_to_absolute_position(parse_position_key(key), target)
        cell_values[position_key(absolute.row, absolute.col)] = value
    return TemplateInstantiation(instance, structures, cell_values)


def validate_template_instantiation(
    template: Template, target: Position, sheet: Sheet, rules: SheetRules = SheetRules()
) -> PlacementFailure | None:
    """A template can only be placed inside the grid, on cells nothing occupies."""
    if not is_within_bounds(target, template.dimensions, rules):
        return PlacementFailure(
            PlacementFailureReason.OUT_OF_BOUNDS,
            template.id,
            details=f"footprint ends at {end_position(target, template.dimensions)}",
        )
    probe = TemplateInstance("", target, template.dimensions, template.id)
    blocked = tuple(pos for pos in covered_positions(probe) if sheet.at(pos.row, pos.col))
    if blocked:
        return PlacementFailure(PlacementFailureReason.OVERLAP, template.id, blocked=blocked)
    return None


def add_instantiated_template(
    sheet: Sheet,
    instantiation: TemplateInstantiation,
    on_cell_update: CellUpdateFn | None = None,
) -> Sheet:
    """Install an instantiation (unchecked) and emit its non-empty cell values."""
    result = apply_structure_changes(
        sheet, added=[instantiation.instance, *instantiation.structures]
    )
    if on_cell_update is not None:
        for key, value in instantiation.cell_values.items():
            if value:
                pos = parse_position_key(key)
                on_cell_update(pos.row, pos.col, value)
    return result


def place_template(
    template: Template,
    target: Position,
    sheet: Sheet,
    store: TemplatePersistence,
    on_cell_update: CellUpdateFn | None = None,
    rules: SheetRules = SheetRules(),
) -> TemplatePlacement | PlacementFailure:
    """Validate, instantiate and install a template in one step."""
    failure = validate_template_instantiation(template, target, sheet, rules)
    if failure is not None:
        logger.debug("place_template: %s at %s rejected (%s)", template.id, target, failure.reason.value)
        return failure
    instantiation = instantiate_template(template, target, store)
    return TemplatePlacement(
        add_instantiated_template(sheet, instantiation, on_cell_update), instantiation.instance
    )


def commit_template_edit(
    catalog: TemplateCatalog,
    store: TemplatePersistence,
    template_id: str,
    structures: StructureMap,
    cell_data: Mapping[str, str],
    sheet: Sheet,
    on_cell_update: CellUpdateFn | None = None,
) -> TemplateCommit | None:
    """
    Save edited template content and push it into every instance.

    The diff is taken against the stored content before it is overwritten.
    The template's version is bumped, so every instance becomes eligible for
    propagation. Returns None when the template is not in the catalog.
    """
    if catalog.get(template_id) is None:
        logger.debug("commit_template_edit: no template %s", template_id)
        return None

    changes = compute_template_changes(template_id, structures, cell_data, store)
    store.save_template_data(template_id, structures, dict(cell_data))
    template = catalog.bump_version(template_id)
    if template is None:
        return None

    propagation = propagate_template_changes(template, sheet, store, on_cell_update)
    logger.info("Committed %s v%d (%s)", template.name, template.version, changes.summary())
    return TemplateCommit(template, changes, propagation)


def delete_template(
    catalog: TemplateCatalog, store: TemplatePersistence, template_id: str
) -> Template | None:
    """
    Remove a template from the catalog and its content from the store.

    Instances already on a sheet keep their materialized content.
    """
    store.delete_template_data(template_id)
    removed = catalog.delete(template_id)
    if removed is None:
        logger.debug("delete_template: no template %s", template_id)
    return removed


def reset_instance_to_template(
    sheet: Sheet,
    instance_id: str,
    catalog: TemplateCatalog,
    store: TemplatePersistence,
    on_cell_update: CellUpdateFn | None = None,
) -> PropagationResult:
    """
    Discard all local divergence of an instance.

    Overrides are cleared, instance-only structures removed, and the template
    content re-materialized. Cells that were only overridden (no template
    value) are cleared through on_cell_update.
    """
    instance = sheet.get(instance_id)
    if not isinstance(instance, TemplateInstance):
        logger.debug("reset: %s is not a template instance", instance_id)
        return PropagationResult(sheet)
    template = catalog.get(instance.template_id)
    if template is None:
        logger.debug("reset: template %s of %s not found", instance.template_id, instance_id)
        return PropagationResult(sheet)

    overrides = instance.overrides
    instance_only = [
        sheet.structures[sid]
        for sid in (overrides.added_structures if overrides else ())
        if sid in sheet.structures
    ]
    cleared = clear_all_overrides(instance)
    base = apply_structure_changes(sheet, removed=[*instance_only, instance], added=[cleared])
    result = apply_template_changes_to_instance(cleared, template, base, store, on_cell_update)

    stale: dict[str, str] = {}
    for key in (overrides.cell_data if overrides else {}):
        absolute = convert_to_absolute_position(parse_position_key(key), instance.start_position)
        absolute_key = position_key(absolute.row, absolute.col)
        if absolute_key not in result.cell_updates:
            stale[absolute_key] = ""
    if on_cell_update is not None:
        for key in stale:
            pos = parse_position_key(key)
            on_cell_update(pos.row, pos.col, "")

    logger.info(
        "Reset %s to %s v%d (%d instance-only structures removed)",
        instance_id,
        template.name,
        template.version,
        len(instance_only),
    )
    return replace(result, cell_updates={**result.cell_updates, **stale})
