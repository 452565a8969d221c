"""
Differences between the stored content of a template and an edited version.

The result is informational: propagation re-applies the whole template and
does not consume it, but it is what commit summaries and logs report.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from sheet_types import Structure, StructureMap, decode_field, field_name, structure_to_dict
from template_store import TemplatePersistence


@dataclass(frozen=True)
class StructureChanges:
    added: tuple[Structure, ...] = ()
    modified: dict[str, dict[str, Any]] = field(default_factory=dict)  # id -> field patch
    deleted: tuple[str, ...] = ()


@dataclass(frozen=True)
class CellDataChanges:
    added: dict[str, str] = field(default_factory=dict)
    modified: dict[str, str] = field(default_factory=dict)  # key -> new value
    deleted: tuple[str, ...] = ()


@dataclass(frozen=True)
class TemplateChanges:
    structures: StructureChanges = field(default_factory=StructureChanges)
    cell_data: CellDataChanges = field(default_factory=CellDataChanges)

    @property
    def is_empty(self) -> bool:
        return not (
            self.structures.added
            or self.structures.modified
            or self.structures.deleted
            or self.cell_data.added
            or self.cell_data.modified
            or self.cell_data.deleted
        )

    def summary(self) -> str:
        return (
            f"structures +{len(self.structures.added)} ~{len(self.structures.modified)} "
            f"-{len(self.structures.deleted)}, cells +{len(self.cell_data.added)} "
            f"~{len(self.cell_data.modified)} -{len(self.cell_data.deleted)}"
        )


def structures_equal(a: Structure, b: Structure) -> bool:
    """Deep equality of the serialized forms."""
    return structure_to_dict(a) == structure_to_dict(b)


def structure_differences(old: Structure, new: Structure) -> dict[str, Any]:
    """
    Field patch turning old into new.

    Only fields whose serialized value differs are included, with the new
    value. Fields present in old but unset in new are reported as None.
    """
    old_data = structure_to_dict(old)
    new_data = structure_to_dict(new)
    patch: dict[str, Any] = {}
    for persisted in new_data.keys() | old_data.keys():
        if persisted == "type" or old_data.get(persisted) == new_data.get(persisted):
            continue
        name = field_name(persisted)
        raw = new_data.get(persisted)
        patch[name] = decode_field(name, raw) if raw is not None else None
    return patch


def compute_template_changes(
    old_template_id: str,
    new_structures: StructureMap,
    new_cell_data: Mapping[str, str],
    store: TemplatePersistence,
) -> TemplateChanges:
    """Compare the stored content of a template with an edited version of it."""
    old_structures = store.load_template_structures(old_template_id)
    old_cell_data = store.load_template_cell_data(old_template_id)

    modified: dict[str, dict[str, Any]] = {}
    for structure_id, old in old_structures.items():
        new = new_structures.get(structure_id)
        if new is not None and not structures_equal(old, new):
            modified[structure_id] = structure_differences(old, new)

    return TemplateChanges(
        structures=StructureChanges(
            added=tuple(s for sid, s in new_structures.items() if sid not in old_structures),
            modified=modified,
            deleted=tuple(sid for sid in old_structures if sid not in new_structures),
        ),
        cell_data=CellDataChanges(
            added={k: v for k, v in new_cell_data.items() if k not in old_cell_data},
            modified={
                k: v
                for k, v in new_cell_data.items()
                if k in old_cell_data and old_cell_data[k] != v
            },
            deleted=tuple(k for k in old_cell_data if k not in new_cell_data),
        ),
    )
