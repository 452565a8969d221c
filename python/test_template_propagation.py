"""
Tests for pushing template edits into template instances.
"""

from sheet_types import (
    ArrayStructure,
    CellStructure,
    Dimensions,
    Position,
    Template,
    TemplateInstance,
    TemplateOverrides,
)
from structure_store import Sheet, check_index_consistency, get_cell_value
from template_overrides import mark_structure_added, mark_structure_deleted
from template_propagation import (
    ConflictKind,
    PropagationConflict,
    Resolution,
    apply_template_changes_to_instance,
    find_instances_needing_update,
    instance_structure_id,
    materialize_structure,
    propagate_template_changes,
    validate_template_propagation,
)
from template_store import InMemoryTemplateStore


TEMPLATE = Template("T1", "Card", Dimensions(3, 3), version=2)


def make_store(cell_data=None) -> InMemoryTemplateStore:
    """Template T1: one cell at the relative position 1-1."""
    store = InMemoryTemplateStore()
    store.save_template_data(
        "T1",
        {"c": CellStructure("c", Position(1, 1), Dimensions(1, 1), value="v")},
        cell_data if cell_data is not None else {"0-0": "B"},
    )
    return store


def make_instance(
    instance_id: str = "I1", row: int = 5, col: int = 5, version: int = 1, **overrides
) -> TemplateInstance:
    return TemplateInstance(
        instance_id,
        Position(row, col),
        Dimensions(3, 3),
        "T1",
        source_template_version=version,
        overrides=TemplateOverrides(**overrides) if overrides else None,
    )


class Recorder:
    """Collects values sent to a cell-update sink."""

    def __init__(self) -> None:
        self.calls: list[tuple[int, int, str]] = []

    def __call__(self, row: int, col: int, value: str) -> None:
        self.calls.append((row, col, value))


# =============================================================================
# Test Materialization
# =============================================================================


class TestMaterialize:
    """Tests for copying template structures into an instance."""

    def test_joined_id(self) -> None:
        assert instance_structure_id("I1", "c") == "I1-c"

    def test_position_translated(self) -> None:
        template_cell = CellStructure("c", Position(1, 2), Dimensions(1, 1), value="v")
        structure = materialize_structure(template_cell, make_instance())
        assert structure.id == "I1-c"
        assert structure.start_position == Position(6, 7)
        assert structure.value == "v"

    def test_item_ids_joined(self) -> None:
        template_array = ArrayStructure(
            "a", Position(0, 0), Dimensions(1, 3), item_ids=("x", None, "y")
        )
        structure = materialize_structure(template_array, make_instance())
        assert structure.item_ids == ("I1-x", None, "I1-y")

    def test_patch_laid_over_template(self) -> None:
        """A patched start position is relative to the instance."""
        template_cell = CellStructure("c", Position(1, 1), Dimensions(1, 1), value="v")
        structure = materialize_structure(
            template_cell,
            make_instance(),
            {"value": "local", "start_position": Position(2, 0)},
        )
        assert structure.value == "local"
        assert structure.start_position == Position(7, 5)


# =============================================================================
# Test Propagation
# =============================================================================


class TestPropagation:
    """Tests for propagate_template_changes."""

    def test_out_of_date_instances(self) -> None:
        sheet = Sheet.from_structures([
            make_instance("old", 0, 0, version=1),
            make_instance("current", 0, 4, version=2),
            TemplateInstance("other", Position(4, 0), Dimensions(1, 1), "T2"),
        ])
        assert [i.id for i in find_instances_needing_update("T1", 2, sheet)] == ["old"]

    def test_template_value_reaches_sink(self) -> None:
        sink = Recorder()
        sheet = Sheet.from_structures([make_instance()])
        result = propagate_template_changes(TEMPLATE, sheet, make_store(), sink)
        assert sink.calls == [(6, 6, "v"), (5, 5, "B")]
        assert result.cell_updates == {"6-6": "v", "5-5": "B"}
        assert result.conflicts == ()
        assert result.updated_instances == ("I1",)
        assert result.sheet.get("I1").source_template_version == 2
        assert result.sheet.get("I1-c").start_position == Position(6, 6)
        assert check_index_consistency(result.sheet) == []

    def test_cell_override_kept_with_conflict(self) -> None:
        sink = Recorder()
        sheet = Sheet.from_structures([make_instance(cell_data={"0-0": "X"})])
        result = propagate_template_changes(TEMPLATE, sheet, make_store(), sink)
        assert sink.calls == [(6, 6, "v"), (5, 5, "X")]
        assert result.conflicts == (
            PropagationConflict("I1", ConflictKind.CELL, "0-0", "B", "X", Resolution.KEEP_INSTANCE),
        )

    def test_matching_override_is_not_a_conflict(self) -> None:
        sheet = Sheet.from_structures([make_instance(cell_data={"0-0": "B"})])
        result = propagate_template_changes(TEMPLATE, sheet, make_store())
        assert result.conflicts == ()

    def test_deleted_structure_stays_deleted(self) -> None:
        sheet = Sheet.from_structures([make_instance(deleted_structures=("I1-c",))])
        result = propagate_template_changes(TEMPLATE, sheet, make_store())
        assert result.sheet.get("I1-c") is None

    def test_re_added_structure_restored(self) -> None:
        instance = mark_structure_added(mark_structure_deleted(make_instance(), "I1-c"), "I1-c")
        result = propagate_template_changes(TEMPLATE, Sheet.from_structures([instance]), make_store())
        assert result.sheet.get("I1-c").value == "v"

    def test_deleted_again_after_re_add_stays_deleted(self) -> None:
        """The last of several deletes and re-adds decides."""
        instance = mark_structure_deleted(make_instance(), "I1-c")
        instance = mark_structure_added(instance, "I1-c")
        instance = mark_structure_deleted(instance, "I1-c")
        sink = Recorder()
        result = propagate_template_changes(
            TEMPLATE, Sheet.from_structures([instance]), make_store(), sink
        )
        assert result.sheet.get("I1-c") is None
        assert sink.calls == [(5, 5, "B")]

    def test_structure_patch_kept_with_conflict(self) -> None:
        sheet = Sheet.from_structures([make_instance(structures={"I1-c": {"value": "local"}})])
        result = propagate_template_changes(TEMPLATE, sheet, make_store())
        assert result.sheet.get("I1-c").value == "local"
        assert get_cell_value(result.sheet, 6, 6) == "local"
        (conflict,) = result.conflicts
        assert conflict.kind == ConflictKind.STRUCTURE
        assert conflict.identifier == "I1-c"
        assert conflict.template_value == {"value": "v"}
        assert conflict.instance_value == {"value": "local"}

    def test_stale_content_pruned_but_local_content_kept(self) -> None:
        sheet = Sheet.from_structures([
            make_instance(added_structures=("I1-mine",)),
            CellStructure("I1-gone", Position(5, 5), Dimensions(1, 1), value="old"),
            CellStructure("I1-mine", Position(7, 7), Dimensions(1, 1), value="mine"),
        ])
        result = propagate_template_changes(TEMPLATE, sheet, make_store())
        assert result.sheet.get("I1-gone") is None
        assert result.sheet.get("I1-mine").value == "mine"
        assert check_index_consistency(result.sheet) == []

    def test_nested_instance_keeps_its_state(self) -> None:
        """A nested instance and its content survive re-materialization."""
        store = InMemoryTemplateStore()
        store.save_template_data(
            "T1",
            {"inner": TemplateInstance("inner", Position(0, 0), Dimensions(2, 2), "T2")},
            {},
        )
        nested = TemplateInstance(
            "I1-inner",
            Position(5, 5),
            Dimensions(2, 2),
            "T2",
            source_template_version=3,
            overrides=TemplateOverrides(cell_data={"0-0": "n"}),
        )
        sheet = Sheet.from_structures([
            make_instance(),
            nested,
            CellStructure("I1-inner-c", Position(5, 5), Dimensions(1, 1), value="z"),
        ])
        result = propagate_template_changes(TEMPLATE, sheet, store)
        assert result.sheet.get("I1-inner") == nested
        assert result.sheet.get("I1-inner-c") is not None

    def test_every_instance_updated_from_one_snapshot(self) -> None:
        sink = Recorder()
        sheet = Sheet.from_structures([make_instance("I1", 0, 0), make_instance("I2", 0, 4)])
        result = propagate_template_changes(TEMPLATE, sheet, make_store(), sink)
        assert set(result.updated_instances) == {"I1", "I2"}
        assert sorted(sink.calls) == [(0, 0, "B"), (0, 4, "B"), (1, 1, "v"), (1, 5, "v")]
        assert result.sheet.get("I2-c").start_position == Position(1, 5)

    def test_repeat_is_noop(self) -> None:
        sheet = Sheet.from_structures([make_instance()])
        once = propagate_template_changes(TEMPLATE, sheet, make_store())
        sink = Recorder()
        twice = propagate_template_changes(TEMPLATE, once.sheet, make_store(), sink)
        assert twice.sheet is once.sheet
        assert twice.updated_instances == ()
        assert sink.calls == []

    def test_input_snapshot_untouched(self) -> None:
        sheet = Sheet.from_structures([make_instance()])
        propagate_template_changes(TEMPLATE, sheet, make_store())
        assert sheet.get("I1").source_template_version == 1
        assert sheet.get("I1-c") is None

    def test_single_instance_regardless_of_version(self) -> None:
        instance = make_instance(version=2)
        sheet = Sheet.from_structures([instance])
        result = apply_template_changes_to_instance(instance, TEMPLATE, sheet, make_store())
        assert result.sheet.get("I1-c") is not None
        assert result.updated_instances == ("I1",)


def cell_template_store(cell_data=None) -> InMemoryTemplateStore:
    """Template T1 whose only value lives in a cell structure at 0-0."""
    store = InMemoryTemplateStore()
    store.save_template_data(
        "T1",
        {"c": CellStructure("c", Position(0, 0), Dimensions(1, 1), value="B")},
        cell_data if cell_data is not None else {},
    )
    return store


class TestCellStructureValues:
    """Tests for values carried by template cell structures."""

    def test_cell_structure_value_reaches_sink(self) -> None:
        sink = Recorder()
        sheet = Sheet.from_structures([make_instance()])
        result = propagate_template_changes(TEMPLATE, sheet, cell_template_store(), sink)
        assert sink.calls == [(5, 5, "B")]
        assert result.cell_updates == {"5-5": "B"}
        assert result.conflicts == ()

    def test_cell_data_wins_over_structure_value(self) -> None:
        sink = Recorder()
        sheet = Sheet.from_structures([make_instance()])
        propagate_template_changes(TEMPLATE, sheet, cell_template_store({"0-0": "C"}), sink)
        assert sink.calls == [(5, 5, "C")]

    def test_cell_override_beats_structure_value(self) -> None:
        sink = Recorder()
        sheet = Sheet.from_structures([make_instance(cell_data={"0-0": "mine"})])
        result = propagate_template_changes(TEMPLATE, sheet, cell_template_store(), sink)
        assert sink.calls == [(5, 5, "mine")]
        assert result.conflicts == (
            PropagationConflict("I1", ConflictKind.CELL, "0-0", "B", "mine", Resolution.KEEP_INSTANCE),
        )

    def test_moved_cell_structure_sends_value_to_new_position(self) -> None:
        sink = Recorder()
        sheet = Sheet.from_structures([
            make_instance(structures={"I1-c": {"start_position": Position(2, 1)}})
        ])
        propagate_template_changes(TEMPLATE, sheet, cell_template_store(), sink)
        assert sink.calls == [(7, 6, "B")]

    def test_deleted_cell_structure_sends_nothing(self) -> None:
        sink = Recorder()
        sheet = Sheet.from_structures([make_instance(deleted_structures=("I1-c",))])
        propagate_template_changes(TEMPLATE, sheet, cell_template_store(), sink)
        assert sink.calls == []


class TestValidation:
    """Tests for validate_template_propagation."""

    def test_nothing_to_update(self) -> None:
        check = validate_template_propagation(TEMPLATE, Sheet())
        assert not check.is_valid
        assert check.issues == ("No instances found to update",)

    def test_clean_instance(self) -> None:
        check = validate_template_propagation(TEMPLATE, Sheet.from_structures([make_instance()]))
        assert check.is_valid

    def test_overrides_reported(self) -> None:
        sheet = Sheet.from_structures([
            make_instance(cell_data={"0-0": "X"}, structures={"I1-c": {"value": "w"}})
        ])
        check = validate_template_propagation(TEMPLATE, sheet)
        assert check.issues == ("Instance I1 has 2 overrides that may conflict",)
