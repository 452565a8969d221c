"""
Interactive demo for structure sheets.
Select a structure, move it around with the keyboard and edit its template.
"""

import logging
import sys

import readchar
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from ascii_render import describe_structure, render_sheet
from position_index import ConflictResolution, PlacementFailure
from sheet_types import (
    ArrayStructure,
    CellStructure,
    Dimensions,
    Position,
    TableStructure,
    TemplateInstance,
    covered_positions,
    position_key,
)
from structure_store import Sheet, add_structure, move_structure, set_cell_value
from template_operations import commit_template_edit, place_template, reset_instance_to_template
from template_overrides import get_override_info
from template_propagation import apply_template_changes_to_instance
from template_store import InMemoryTemplateStore, TemplateCatalog

MOVES = {
    "w": (-1, 0),
    "s": (1, 0),
    "a": (0, -1),
    "d": (0, 1),
}


class InteractiveDemo:
    """Keyboard-driven editing of a small sheet."""

    def __init__(self, sheet: Sheet, catalog: TemplateCatalog, store: InMemoryTemplateStore,
                 values: dict[str, str]) -> None:
        self.sheet = sheet
        self.catalog = catalog
        self.store = store
        self.values = values
        self.console = Console()
        self.selected = 0
        self.pending_move: Position | None = None
        self.status_message = "Ready"

    def on_cell_update(self, row: int, col: int, value: str) -> None:
        self.values[position_key(row, col)] = value

    @property
    def top_level_ids(self) -> list[str]:
        """Selectable structures: everything not materialized inside an instance."""
        instance_ids = [s.id for s in self.sheet.structures.values() if isinstance(s, TemplateInstance)]
        return sorted(
            sid for sid in self.sheet.structures
            if not any(sid.startswith(f"{iid}-") for iid in instance_ids)
        )

    @property
    def selected_id(self) -> str | None:
        ids = self.top_level_ids
        if not ids:
            return None
        return ids[self.selected % len(ids)]

    def generate_display(self) -> Panel:
        """Generate the current display with sheet and status."""
        selected_id = self.selected_id
        grid_text = render_sheet(
            self.sheet, rows=10, cols=10, highlight_id=selected_id, cell_values=self.values
        )

        status = Text()
        status.append(Text.from_ansi(grid_text))
        status.append("\n\n")
        status.append("Selected: ", style="bold")
        structure = self.sheet.get(selected_id) if selected_id else None
        status.append(describe_structure(structure) if structure else "nothing")
        status.append("\n")
        if isinstance(structure, TemplateInstance):
            info = get_override_info(structure)
            status.append(
                f"Version {structure.source_template_version}, {info.total_override_count} overrides\n"
            )

        status.append("\nKeys:\n", style="bold cyan")
        status.append("  Tab  - Select next structure\n")
        status.append("  WASD - Move selection\n")
        status.append("  K/O/C - Keep existing / overwrite / cancel on conflict\n")
        status.append("  E - Edit the template (toggle a header)\n")
        status.append("  X - Reset selected instance to its template\n")
        status.append("  Q - Quit\n\n")

        status.append("─" * 40 + "\n", style="dim")
        status.append("Status: ", style="bold")
        status.append(self.status_message)

        return Panel(status, title="Structure Sheet Demo", border_style="green", width=80)

    def attempt_move(self, d_row: int, d_col: int) -> None:
        structure = self.sheet.get(self.selected_id) if self.selected_id else None
        if structure is None:
            self.status_message = "Nothing selected"
            return
        target = Position(structure.start_position.row + d_row, structure.start_position.col + d_col)
        self.move_to(target, None)

    def move_to(self, target: Position, resolution: ConflictResolution | None) -> None:
        selected_id = self.selected_id
        if selected_id is None:
            return
        result = move_structure(self.sheet, selected_id, target, resolution)
        if isinstance(result, PlacementFailure):
            self.pending_move = target if result.conflicts else None
            self.status_message = f"✗ Move failed: {result.reason.value}"
            if result.conflicts:
                cells = ", ".join(
                    f"({c.row},{c.col}) '{c.existing_value}'->'{c.new_value}'" for c in result.conflicts
                )
                self.status_message += f" {cells}; press K, O or C"
            return
        before = self.sheet.get(selected_id)
        self.sheet = result
        self.pending_move = None
        self.status_message = f"✓ Moved to ({target.row}, {target.col})"
        after = self.sheet.get(selected_id)
        if isinstance(before, TemplateInstance) and isinstance(after, TemplateInstance):
            self.refresh_instance_values(before, after)

    def refresh_instance_values(self, before: TemplateInstance, after: TemplateInstance) -> None:
        """Re-emit template cell values at a moved instance's new position."""
        for pos in covered_positions(before):
            self.values.pop(position_key(pos.row, pos.col), None)
        template = self.catalog.get(after.template_id)
        if template is not None:
            result = apply_template_changes_to_instance(
                after, template, self.sheet, self.store, self.on_cell_update
            )
            self.sheet = result.sheet

    def resolve(self, resolution: ConflictResolution) -> None:
        if self.pending_move is None:
            self.status_message = "No conflict to resolve"
            return
        if resolution == ConflictResolution.CANCEL:
            self.pending_move = None
            self.status_message = "Move cancelled"
            return
        self.move_to(self.pending_move, resolution)

    def edit_template(self) -> None:
        template = self.catalog.templates[0] if len(self.catalog) else None
        if template is None:
            self.status_message = "No template"
            return
        structures = self.store.load_template_structures(template.id)
        cell_data = self.store.load_template_cell_data(template.id)
        cell_data["1-1"] = "Quantity" if cell_data.get("1-1") == "Qty" else "Qty"
        commit = commit_template_edit(
            self.catalog, self.store, template.id, structures, cell_data, self.sheet, self.on_cell_update
        )
        if commit is None:
            self.status_message = "Template missing"
            return
        self.sheet = commit.propagation.sheet
        self.status_message = (
            f"✓ {template.name} v{commit.template.version}: "
            f"{len(commit.propagation.updated_instances)} instances, "
            f"{len(commit.propagation.conflicts)} conflicts"
        )

    def reset_instance(self) -> None:
        selected_id = self.selected_id
        if not isinstance(self.sheet.get(selected_id or ""), TemplateInstance):
            self.status_message = "Select a template instance first"
            return
        result = reset_instance_to_template(
            self.sheet, selected_id, self.catalog, self.store, self.on_cell_update  # type: ignore[arg-type]
        )
        self.sheet = result.sheet
        self.status_message = "✓ Instance reset to template"

    def run(self) -> None:
        """Run the interactive demo."""
        with Live(self.generate_display(), console=self.console, refresh_per_second=4) as live:
            try:
                while True:
                    live.update(self.generate_display())
                    key = readchar.readkey()

                    if key.lower() == 'q':
                        self.status_message = "Quitting..."
                        live.update(self.generate_display())
                        break
                    elif key == readchar.key.TAB:
                        self.selected += 1
                        self.pending_move = None
                        self.status_message = "Selection changed"
                    elif key.lower() in MOVES:
                        self.attempt_move(*MOVES[key.lower()])
                    elif key.lower() == 'k':
                        self.resolve(ConflictResolution.KEEP_EXISTING)
                    elif key.lower() == 'o':
                        self.resolve(ConflictResolution.REPLACE_WITH_NEW)
                    elif key.lower() == 'c':
                        self.resolve(ConflictResolution.CANCEL)
                    elif key.lower() == 'e':
                        self.edit_template()
                    elif key.lower() == 'x':
                        self.reset_instance()
                    else:
                        self.status_message = f"Unknown key: {repr(key)}"

            except KeyboardInterrupt:
                self.status_message = "Interrupted by user"
                live.update(self.generate_display())


def build_sample() -> InteractiveDemo:
    """A sheet with a loose cell, an array and one template instance."""
    catalog = TemplateCatalog()
    store = InMemoryTemplateStore()
    values: dict[str, str] = {}

    template = catalog.create("Card", Dimensions(3, 3))
    title = CellStructure("title", Position(0, 0), Dimensions(1, 3), value="Card")
    body = TableStructure("body", Position(1, 0), Dimensions(2, 3), item_ids=((None,) * 3,) * 2)
    store.save_template_data(
        template.id, {title.id: title, body.id: body}, {"1-0": "Item", "1-1": "Qty", "1-2": "Price"}
    )

    sheet = Sheet()
    sheet = set_cell_value(sheet, 0, 0, "old")
    array = ArrayStructure("totals", Position(5, 0), Dimensions(1, 2), item_ids=(None, None))
    placed = add_structure(sheet, array)
    if isinstance(placed, Sheet):
        sheet = placed
        sheet = set_cell_value(sheet, 5, 0, "1")
        sheet = set_cell_value(sheet, 5, 1, "2")

    demo = InteractiveDemo(sheet, catalog, store, values)
    placement = place_template(template, Position(1, 5), sheet, store, demo.on_cell_update)
    if isinstance(placement, PlacementFailure):
        demo.status_message = f"Template not placed: {placement.reason.value}"
    else:
        demo.sheet = placement.sheet
    return demo


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
    demo = build_sample()
    if len(sys.argv) > 1 and sys.argv[1] == 'sublime':
        # Running from IDE - just render the initial state
        print(render_sheet(demo.sheet, rows=10, cols=10, cell_values=demo.values))
    else:
        demo.run()
