"""
Tests for the shared sheet data model and its serialization.
"""

import pytest

from sheet_types import (
    ArrayDirection,
    ArrayStructure,
    CellStructure,
    Dimensions,
    Position,
    SheetRules,
    TableStructure,
    TemplateInstance,
    TemplateOverrides,
    apply_patch,
    covered_positions,
    covers,
    end_position,
    is_array_or_table,
    is_within_bounds,
    parse_position_key,
    position_key,
    referenced_item_ids,
    structure_from_dict,
    structure_to_dict,
)


# =============================================================================
# Test Coordinates
# =============================================================================


class TestCoordinates:
    """Tests for position keys and rectangle helpers."""

    def test_position_key_format(self) -> None:
        """Keys are 'row-col'."""
        assert position_key(3, 12) == "3-12"

    def test_parse_position_key(self) -> None:
        """Parsing inverts position_key, including negative components."""
        assert parse_position_key("3-12") == Position(3, 12)
        assert parse_position_key("-1--2") == Position(-1, -2)

    def test_parse_invalid_key_raises(self) -> None:
        """Malformed keys are rejected."""
        with pytest.raises(ValueError, match="Invalid position key"):
            parse_position_key("a-b")
        with pytest.raises(ValueError):
            parse_position_key("3")

    def test_end_position_is_inclusive(self) -> None:
        """A 1x1 rectangle ends where it starts."""
        assert end_position(Position(2, 3), Dimensions(1, 1)) == Position(2, 3)
        assert end_position(Position(2, 3), Dimensions(3, 2)) == Position(4, 4)

    def test_bounds_use_rules(self) -> None:
        """Footprints must lie inside the configured grid."""
        rules = SheetRules(max_rows=10, max_cols=5)
        assert is_within_bounds(Position(0, 0), Dimensions(10, 5), rules)
        assert not is_within_bounds(Position(0, 1), Dimensions(10, 5), rules)
        assert not is_within_bounds(Position(-1, 0), Dimensions(1, 1), rules)

    def test_default_rules(self) -> None:
        """Default grid is 1000 rows by 26 columns."""
        rules = SheetRules()
        assert is_within_bounds(Position(999, 25), Dimensions(1, 1), rules)
        assert not is_within_bounds(Position(0, 26), Dimensions(1, 1), rules)

    def test_covered_positions_row_major(self) -> None:
        """Every cell of the rectangle, row by row."""
        cell = CellStructure("c", Position(1, 1), Dimensions(2, 2))
        assert list(covered_positions(cell)) == [
            Position(1, 1),
            Position(1, 2),
            Position(2, 1),
            Position(2, 2),
        ]

    def test_covers(self) -> None:
        cell = CellStructure("c", Position(1, 1), Dimensions(2, 2))
        assert covers(cell, 2, 2)
        assert not covers(cell, 3, 2)
        assert not covers(cell, 0, 1)


# =============================================================================
# Test Structures
# =============================================================================


class TestStructures:
    """Tests for the structure variants."""

    def test_type_tags(self) -> None:
        """Each variant carries its type tag."""
        assert CellStructure.type == "cell"
        assert ArrayStructure.type == "array"
        assert TableStructure.type == "table"
        assert TemplateInstance.type == "template"

    def test_merged_cell(self) -> None:
        assert CellStructure("c", Position(0, 0), Dimensions(1, 2)).is_merged
        assert not CellStructure("c", Position(0, 0), Dimensions(1, 1)).is_merged

    def test_array_length_and_index(self) -> None:
        """Length follows the direction; index is relative to the start."""
        horizontal = ArrayStructure("a", Position(2, 3), Dimensions(1, 4))
        vertical = ArrayStructure(
            "v", Position(2, 3), Dimensions(5, 1), direction=ArrayDirection.VERTICAL
        )
        assert horizontal.length == 4
        assert horizontal.index_of(2, 5) == 2
        assert vertical.length == 5
        assert vertical.index_of(6, 3) == 4

    def test_table_item_at(self) -> None:
        """Missing slots read as None."""
        table = TableStructure(
            "t", Position(1, 1), Dimensions(2, 2), item_ids=(("a", None), ("b",))
        )
        assert table.item_at(1, 1) == "a"
        assert table.item_at(1, 2) is None
        assert table.item_at(2, 1) == "b"
        assert table.item_at(2, 2) is None

    def test_referenced_item_ids(self) -> None:
        """Empty slots are skipped."""
        array = ArrayStructure("a", Position(0, 0), Dimensions(1, 3), item_ids=("x", None, "y"))
        table = TableStructure(
            "t", Position(0, 0), Dimensions(2, 2), item_ids=(("p", None), (None, "q"))
        )
        assert referenced_item_ids(array) == ["x", "y"]
        assert referenced_item_ids(table) == ["p", "q"]
        assert referenced_item_ids(CellStructure("c", Position(0, 0), Dimensions(1, 1))) == []

    def test_referenced_item_ids_rejects_unknown(self) -> None:
        with pytest.raises(ValueError, match="Unknown structure type"):
            referenced_item_ids("not a structure")  # type: ignore[arg-type]

    def test_is_array_or_table(self) -> None:
        assert is_array_or_table(ArrayStructure("a", Position(0, 0), Dimensions(1, 1)))
        assert is_array_or_table(TableStructure("t", Position(0, 0), Dimensions(1, 1)))
        assert not is_array_or_table(CellStructure("c", Position(0, 0), Dimensions(1, 1)))
        assert not is_array_or_table(
            TemplateInstance("i", Position(0, 0), Dimensions(1, 1), "tpl")
        )

    def test_apply_patch(self) -> None:
        """Patched fields win; the id and unknown fields are ignored."""
        cell = CellStructure("c", Position(0, 0), Dimensions(1, 1), value="a")
        patched = apply_patch(cell, {"value": "b", "id": "other", "item_ids": ("x",)})
        assert patched == CellStructure("c", Position(0, 0), Dimensions(1, 1), value="b")

    def test_apply_empty_patch_returns_same(self) -> None:
        cell = CellStructure("c", Position(0, 0), Dimensions(1, 1))
        assert apply_patch(cell, {}) is cell


# =============================================================================
# Test Serialization
# =============================================================================


class TestSerialization:
    """Tests for the persisted (camelCase) form."""

    def test_cell_omits_unset_fields(self) -> None:
        """None-valued optional fields are not written."""
        cell = CellStructure("c", Position(1, 2), Dimensions(1, 1), value="v")
        assert structure_to_dict(cell) == {
            "type": "cell",
            "id": "c",
            "startPosition": {"row": 1, "col": 2},
            "dimensions": {"rows": 1, "cols": 1},
            "value": "v",
        }

    def test_table_round_trip(self) -> None:
        table = TableStructure(
            "t",
            Position(0, 0),
            Dimensions(2, 2),
            item_ids=(("a", None), (None, "b")),
            col_header_levels=2,
            col_groups={"g": (0, 1)},
            name="Table",
        )
        data = structure_to_dict(table)
        assert data["itemIds"] == [["a", None], [None, "b"]]
        assert data["colGroups"] == {"g": [0, 1]}
        assert structure_from_dict(data) == table

    def test_array_round_trip(self) -> None:
        array = ArrayStructure(
            "a",
            Position(3, 0),
            Dimensions(3, 1),
            direction=ArrayDirection.VERTICAL,
            item_ids=("x", None, "y"),
        )
        data = structure_to_dict(array)
        assert data["direction"] == "vertical"
        assert structure_from_dict(data) == array

    def test_instance_with_overrides_round_trip(self) -> None:
        """Override patches are written with persisted field names."""
        instance = TemplateInstance(
            "i",
            Position(5, 5),
            Dimensions(3, 3),
            "tpl",
            source_template_version=2,
            overrides=TemplateOverrides(
                structures={"i-c": {"start_position": Position(1, 1), "name": "n"}},
                cell_data={"0-0": "X"},
                deleted_structures=("i-d",),
                added_structures=("cell-1",),
            ),
        )
        data = structure_to_dict(instance)
        assert data["templateId"] == "tpl"
        assert data["sourceTemplateVersion"] == 2
        assert data["overrides"]["structures"]["i-c"]["startPosition"] == {"row": 1, "col": 1}
        assert data["overrides"]["deletedStructures"] == ["i-d"]
        assert structure_from_dict(data) == instance

    def test_unknown_type_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown structure type"):
            structure_from_dict({"type": "chart", "id": "x"})

    def test_malformed_record_raises(self) -> None:
        """A record missing required fields is rejected."""
        with pytest.raises(ValueError, match="Malformed cell record"):
            structure_from_dict({"type": "cell", "id": "c"})

    def test_extra_keys_ignored(self) -> None:
        data = structure_to_dict(CellStructure("c", Position(0, 0), Dimensions(1, 1)))
        data["contentType"] = "cells"
        assert structure_from_dict(data) == CellStructure("c", Position(0, 0), Dimensions(1, 1))
