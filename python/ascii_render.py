"""
ASCII rendering of a sheet region, for logs, demos and debugging.

Each grid cell is drawn as a fixed-width column showing its value. Colours
follow the most specific container at the cell:
cells white, arrays blue, tables green, template instances magenta. A
highlighted structure is drawn in bright yellow.
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping

import simple_chalk as chalk  # type: ignore[import-untyped]

from sheet_types import (
    ArrayStructure,
    CellStructure,
    Position,
    Structure,
    TableStructure,
    TemplateInstance,
    covers,
    end_position,
    position_key,
)
from structure_store import Sheet, get_cell_value, get_structure_hierarchy

logger = logging.getLogger(__name__)

EMPTY_MARK = "."  # No structure at the cell
UNSET_MARK = "_"  # Covered by a structure but holding no value


def column_label(col: int) -> str:
    """Spreadsheet column letters: 0 -> A, 25 -> Z, 26 -> AA."""
    label = ""
    col += 1
    while col > 0:
        col, remainder = divmod(col - 1, 26)
        label = chr(ord("A") + remainder) + label
    return label


def structure_color(structure: Structure) -> Callable[[str], str]:
    match structure:
        case CellStructure():
            return chalk.white
        case ArrayStructure():
            return chalk.blue
        case TableStructure():
            return chalk.green
        case TemplateInstance():
            return chalk.magenta
        case _:
            raise ValueError(f"Unknown structure type: {structure}")


def _cell_colorizer(hierarchy: list[Structure]) -> Callable[[str], str]:
    """Colour of the innermost container, or of the cell when it stands alone."""
    for structure in reversed(hierarchy):
        if not isinstance(structure, CellStructure):
            return structure_color(structure)
    return structure_color(hierarchy[-1])


def sheet_extent(sheet: Sheet) -> tuple[int, int]:
    """(rows, cols) needed to show every structure from the origin."""
    rows = cols = 1
    for structure in sheet.structures.values():
        end = end_position(structure.start_position, structure.dimensions)
        rows = max(rows, end.row + 1)
        cols = max(cols, end.col + 1)
    return rows, cols


def render_sheet(
    sheet: Sheet,
    rows: int | None = None,
    cols: int | None = None,
    origin: Position = Position(0, 0),
    cell_width: int = 6,
    highlight_id: str | None = None,
    cell_values: Mapping[str, str] | None = None,
    color: bool = True,
) -> str:
    """
    Render a rectangular region of a sheet.

    Args:
        sheet: Snapshot to draw
        rows: Number of rows to draw (default: enough to show every structure)
        cols: Number of columns to draw (default: as for rows)
        origin: Top-left cell of the region
        cell_width: Characters per column; longer values are truncated
        highlight_id: Structure to draw in bright yellow
        cell_values: Extra values keyed by "row-col", used where the sheet has none
            (e.g. values delivered through a cell-update sink)
        color: Emit ANSI colours

    Returns:
        The region as text, with column letters on top and 1-based row numbers
    """
    if rows is None or cols is None:
        extent_rows, extent_cols = sheet_extent(sheet)
        rows = rows if rows is not None else max(1, extent_rows - origin.row)
        cols = cols if cols is not None else max(1, extent_cols - origin.col)

    highlighted = sheet.get(highlight_id) if highlight_id else None
    values = cell_values or {}
    gutter = len(str(origin.row + rows)) + 1

    lines = [
        " " * gutter
        + "".join(column_label(origin.col + c).ljust(cell_width) for c in range(cols))
    ]
    for r in range(rows):
        row = origin.row + r
        parts = [str(row + 1).rjust(gutter - 1) + " "]
        for c in range(cols):
            col = origin.col + c
            hierarchy = get_structure_hierarchy(sheet, row, col)
            value = get_cell_value(sheet, row, col) or values.get(position_key(row, col), "")
            if value:
                text = value
            elif hierarchy:
                text = UNSET_MARK
            else:
                text = EMPTY_MARK
            text = text[: cell_width - 1].ljust(cell_width)

            if color and highlighted is not None and covers(highlighted, row, col):
                text = chalk.yellowBright(text)
            elif color and hierarchy:
                text = _cell_colorizer(hierarchy)(text)
            parts.append(text)
        lines.append("".join(parts))

    logger.debug("render_sheet: %dx%d from %s", rows, cols, origin)
    return "\n".join(lines)


def describe_structure(structure: Structure) -> str:
    """One-line description: type, id, name, range."""
    start = structure.start_position
    end = end_position(start, structure.dimensions)
    cell_range = (
        f"{column_label(start.col)}{start.row + 1}:{column_label(end.col)}{end.row + 1}"
    )
    name = f" '{structure.name}'" if structure.name else ""
    return f"{structure.type} {structure.id}{name} {cell_range}"


def render_structure_list(sheet: Sheet) -> str:
    """Every structure on the sheet, outermost first, one per line."""
    ordered = sorted(
        sheet.structures.values(),
        key=lambda s: (s.start_position.row, s.start_position.col, -s.dimensions.rows * s.dimensions.cols),
    )
    return "\n".join(describe_structure(s) for s in ordered)
