"""
Scripted walk-through of structure sheets and template propagation.
"""

import logging

from ascii_render import render_sheet, render_structure_list
from position_index import ConflictResolution, PlacementFailure
from sheet_types import (
    CellStructure,
    Dimensions,
    Position,
    TableStructure,
    position_key,
)
from structure_store import (
    Sheet,
    add_structure,
    create_structure,
    move_structure,
    set_cell_value,
)
from template_operations import commit_template_edit, place_template, reset_instance_to_template
from template_propagation import validate_template_propagation
from template_store import InMemoryTemplateStore, TemplateCatalog


def show(title: str, sheet: Sheet, values: dict[str, str] | None = None, highlight_id: str | None = None) -> None:
    print(f"\n=== {title} ===")
    print(render_sheet(sheet, cell_values=values, highlight_id=highlight_id))


def demo_structures() -> None:
    """Place structures and resolve a move conflict."""
    sheet = Sheet()
    for row, col, value in [(0, 0, "Name"), (0, 1, "Qty"), (1, 0, "Pen"), (1, 1, "3")]:
        sheet = set_cell_value(sheet, row, col, value)

    table = create_structure("table", Position(0, 0), Dimensions(2, 2), sheet, name="Stock")
    array = create_structure("array", Position(4, 0), Dimensions(1, 2), sheet, name="Totals")
    if table is None or array is None:
        return
    for structure in (table, array):
        placed = add_structure(sheet, structure)
        if isinstance(placed, PlacementFailure):
            print(f"Could not place {structure.type}: {placed.reason.value}")
            return
        sheet = placed
    sheet = set_cell_value(sheet, 4, 0, "7")
    sheet = set_cell_value(sheet, 6, 1, "old")
    show("Table, array and a loose cell", sheet, highlight_id=array.id)

    result = move_structure(sheet, array.id, Position(6, 0))
    if isinstance(result, PlacementFailure):
        for conflict in result.conflicts:
            print(
                f"Conflict at {conflict.row},{conflict.col}: "
                f"'{conflict.existing_value}' vs incoming '{conflict.new_value}'"
            )
        result = move_structure(sheet, array.id, Position(6, 0), ConflictResolution.REPLACE_WITH_NEW)
    if isinstance(result, Sheet):
        sheet = result
    show("After moving the array (replace with new)", sheet, highlight_id=array.id)
    print(render_structure_list(sheet))


def demo_templates() -> None:
    """Stamp out a template twice, diverge one instance, then edit the template."""
    catalog = TemplateCatalog()
    store = InMemoryTemplateStore()
    template = catalog.create("Invoice", Dimensions(3, 3))
    header = TableStructure(
        "lines",
        Position(1, 0),
        Dimensions(2, 3),
        item_ids=((None, None, None), (None, None, None)),
    )
    title = CellStructure("title", Position(0, 0), Dimensions(1, 3), value="Invoice")
    store.save_template_data(
        template.id,
        {title.id: title, header.id: header},
        {"1-0": "Item", "1-1": "Qty", "1-2": "Price"},
    )

    values: dict[str, str] = {}

    def on_cell_update(row: int, col: int, value: str) -> None:
        values[position_key(row, col)] = value

    sheet = Sheet()
    instance_ids = []
    for target in (Position(0, 0), Position(0, 4)):
        placement = place_template(template, target, sheet, store, on_cell_update)
        if isinstance(placement, PlacementFailure):
            print(f"Could not place template at {target}: {placement.reason.value}")
            return
        sheet = placement.sheet
        instance_ids.append(placement.instance.id)
    show("Two instances", sheet, values)

    # Local edit in the second instance: relative cell 1-1
    sheet = set_cell_value(sheet, 1, 5, "Count")
    values[position_key(1, 5)] = "Count"

    commit = commit_template_edit(
        catalog,
        store,
        template.id,
        {title.id: title, header.id: header},
        {"1-0": "Item", "1-1": "Quantity", "1-2": "Price"},
        sheet,
        on_cell_update,
    )
    if commit is None:
        return
    print(f"\nCommitted v{commit.template.version}: {commit.changes.summary()}")
    for conflict in commit.propagation.conflicts:
        print(f"  kept {conflict.instance_value!r} over {conflict.template_value!r} in {conflict.instance_id}")
    sheet = commit.propagation.sheet
    show("After committing the template edit", sheet, values)

    check = validate_template_propagation(commit.template, sheet)
    print(f"Pending propagation: {', '.join(check.issues)}")

    reset = reset_instance_to_template(sheet, instance_ids[1], catalog, store, on_cell_update)
    sheet = reset.sheet
    show("After resetting the second instance", sheet, values)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
    demo_structures()
    demo_templates()
