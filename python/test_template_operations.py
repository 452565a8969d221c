"""
Tests for placing templates, committing template edits and resetting instances.
"""

from position_index import PlacementFailure, PlacementFailureReason
from sheet_types import CellStructure, Dimensions, Position, TemplateOverrides
from structure_store import (
    Sheet,
    check_index_consistency,
    delete_structure,
    get_cell_value,
    set_cell_value,
)
from template_operations import (
    TemplatePlacement,
    commit_template_edit,
    delete_template,
    instantiate_template,
    place_template,
    reset_instance_to_template,
    validate_template_instantiation,
)
from template_store import InMemoryTemplateStore, TemplateCatalog


class Recorder:
    """Collects values sent to a cell-update sink."""

    def __init__(self) -> None:
        self.calls: list[tuple[int, int, str]] = []

    def __call__(self, row: int, col: int, value: str) -> None:
        self.calls.append((row, col, value))


def setup_template():
    """A catalog and store holding a 3x3 template with one cell at its top-left."""
    catalog = TemplateCatalog()
    store = InMemoryTemplateStore()
    template = catalog.create("Card", Dimensions(3, 3))
    store.save_template_data(
        template.id,
        {"c": CellStructure("c", Position(0, 0), Dimensions(1, 1), value="A")},
        {"0-0": "A", "0-1": ""},
    )
    return catalog, store, template


def place(template, target, sheet, store, sink=None) -> TemplatePlacement:
    placement = place_template(template, target, sheet, store, sink)
    assert isinstance(placement, TemplatePlacement)
    return placement


# =============================================================================
# Test Placement
# =============================================================================


class TestPlacement:
    """Tests for instantiating and placing templates."""

    def test_instantiate(self) -> None:
        _, store, template = setup_template()
        instantiation = instantiate_template(template, Position(2, 3), store)
        instance = instantiation.instance
        assert instance.id.startswith("template-instance-")
        assert instance.name == "Card"
        assert instance.source_template_version == template.version
        assert instance.dimensions == Dimensions(3, 3)
        (cell,) = instantiation.structures
        assert cell.id == f"{instance.id}-c"
        assert cell.start_position == Position(2, 3)
        assert instantiation.cell_values == {"2-3": "A", "2-4": ""}

    def test_place_emits_non_empty_values(self) -> None:
        _, store, template = setup_template()
        sink = Recorder()
        placement = place(template, Position(2, 3), Sheet(), store, sink)
        assert sink.calls == [(2, 3, "A")]
        assert placement.sheet.get(placement.instance.id) == placement.instance
        assert get_cell_value(placement.sheet, 2, 3) == "A"
        assert check_index_consistency(placement.sheet) == []

    def test_place_emits_cell_structure_values(self) -> None:
        catalog = TemplateCatalog()
        store = InMemoryTemplateStore()
        template = catalog.create("Label", Dimensions(1, 2))
        store.save_template_data(
            template.id,
            {"c": CellStructure("c", Position(0, 1), Dimensions(1, 1), value="B")},
            {},
        )
        sink = Recorder()
        place(template, Position(4, 4), Sheet(), store, sink)
        assert sink.calls == [(4, 5, "B")]

    def test_occupied_target_refused(self) -> None:
        _, store, template = setup_template()
        sheet = Sheet.from_structures([CellStructure("c", Position(1, 1), Dimensions(1, 1))])
        failure = validate_template_instantiation(template, Position(0, 0), sheet)
        assert failure.reason == PlacementFailureReason.OVERLAP
        assert failure.blocked == (Position(1, 1),)
        assert isinstance(place_template(template, Position(0, 0), sheet, store), PlacementFailure)

    def test_out_of_bounds_refused(self) -> None:
        _, _, template = setup_template()
        failure = validate_template_instantiation(template, Position(0, 24), Sheet())
        assert failure.reason == PlacementFailureReason.OUT_OF_BOUNDS

    def test_free_target_accepted(self) -> None:
        _, _, template = setup_template()
        assert validate_template_instantiation(template, Position(0, 0), Sheet()) is None


# =============================================================================
# Test Commit
# =============================================================================


class TestCommit:
    """Tests for saving a template edit and propagating it."""

    def test_commit_updates_every_instance(self) -> None:
        catalog, store, template = setup_template()
        sheet = place(template, Position(0, 0), Sheet(), store).sheet
        sheet = place(template, Position(0, 4), sheet, store).sheet
        sink = Recorder()
        commit = commit_template_edit(
            catalog,
            store,
            template.id,
            {"c": CellStructure("c", Position(0, 0), Dimensions(1, 1), value="B")},
            {"0-0": "B"},
            sheet,
            sink,
        )
        assert commit.template.version == 2
        assert catalog.get(template.id).version == 2
        assert commit.changes.cell_data.modified == {"0-0": "B"}
        assert commit.changes.cell_data.deleted == ("0-1",)
        assert commit.changes.structures.modified == {"c": {"value": "B"}}
        assert len(commit.propagation.updated_instances) == 2
        assert sorted(sink.calls) == [(0, 0, "B"), (0, 4, "B")]
        assert get_cell_value(commit.propagation.sheet, 0, 4) == "B"
        assert store.load_template_cell_data(template.id) == {"0-0": "B"}

    def test_local_edit_survives_commit(self) -> None:
        catalog, store, template = setup_template()
        placement = place(template, Position(0, 0), Sheet(), store)
        sheet = set_cell_value(placement.sheet, 0, 0, "mine")
        sink = Recorder()
        commit = commit_template_edit(
            catalog, store, template.id, store.load_template_structures(template.id),
            {"0-0": "B"}, sheet, sink,
        )
        assert sink.calls == [(0, 0, "mine")]
        assert get_cell_value(commit.propagation.sheet, 0, 0) == "mine"
        assert len(commit.propagation.conflicts) == 1

    def test_commit_missing_template(self) -> None:
        catalog = TemplateCatalog()
        store = InMemoryTemplateStore()
        assert commit_template_edit(catalog, store, "nope", {}, {}, Sheet()) is None

    def test_delete_template_keeps_instances(self) -> None:
        catalog, store, template = setup_template()
        placement = place(template, Position(0, 0), Sheet(), store)
        assert delete_template(catalog, store, template.id) == template
        assert template.id not in catalog
        assert store.load_template_structures(template.id) == {}
        assert placement.sheet.get(placement.instance.id) is not None

    def test_delete_missing_template(self) -> None:
        catalog = TemplateCatalog()
        store = InMemoryTemplateStore()
        assert delete_template(catalog, store, "nope") is None


# =============================================================================
# Test Reset
# =============================================================================


class TestReset:
    """Tests for discarding an instance's local divergence."""

    def test_reset_restores_template_content(self) -> None:
        catalog, store, template = setup_template()
        placement = place(template, Position(0, 0), Sheet(), store)
        instance_id = placement.instance.id
        sheet = delete_structure(placement.sheet, f"{instance_id}-c")
        sheet = set_cell_value(sheet, 1, 1, "Z")
        added = sheet.get(instance_id).overrides.added_structures
        assert len(added) == 1

        sink = Recorder()
        result = reset_instance_to_template(sheet, instance_id, catalog, store, sink)

        assert result.sheet.get(instance_id).overrides == TemplateOverrides()
        assert result.sheet.get(f"{instance_id}-c").value == "A"
        assert result.sheet.get(added[0]) is None
        assert sink.calls == [(0, 0, "A"), (0, 1, ""), (1, 1, "")]
        assert result.cell_updates == {"0-0": "A", "0-1": "", "1-1": ""}
        assert check_index_consistency(result.sheet) == []

    def test_reset_non_instance_is_noop(self) -> None:
        catalog = TemplateCatalog()
        store = InMemoryTemplateStore()
        sheet = Sheet.from_structures([CellStructure("c", Position(0, 0), Dimensions(1, 1))])
        assert reset_instance_to_template(sheet, "c", catalog, store).sheet is sheet

    def test_reset_without_template_is_noop(self) -> None:
        catalog, store, template = setup_template()
        placement = place(template, Position(0, 0), Sheet(), store)
        catalog.delete(template.id)
        result = reset_instance_to_template(
            placement.sheet, placement.instance.id, catalog, store
        )
        assert result.sheet is placement.sheet
