"""
Template persistence and the template catalog.

Template content (structures and cell values, in coordinates relative to the
template's top-left) is kept behind the TemplatePersistence protocol. The
catalog holds the Template entries themselves, whose version drives
propagation.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import replace
from typing import Any, Iterator, Protocol

from sheet_types import (
    Dimensions,
    StructureMap,
    Template,
    structure_from_dict,
    structure_to_dict,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_DIMENSIONS = Dimensions(10, 8)


class TemplatePersistence(Protocol):
    """Storage for template content. A missing template reads as empty."""

    def load_template_structures(self, template_id: str) -> StructureMap: ...

    def load_template_cell_data(self, template_id: str) -> dict[str, str]: ...

    def save_template_data(
        self, template_id: str, structures: StructureMap, cell_data: dict[str, str]
    ) -> None: ...

    def delete_template_data(self, template_id: str) -> None: ...


class InMemoryTemplateStore:
    """
    TemplatePersistence kept in a dict, in the persisted layout:

        template id -> {"structures": [[id, structure dict], ...],
                        "cellData": {"row-col": value}}

    Records are serialized on save and deserialized on load, so callers never
    share structure objects with the store.
    """

    def __init__(self, data: dict[str, dict[str, Any]] | None = None) -> None:
        self._data: dict[str, dict[str, Any]] = dict(data or {})

    def load_template_structures(self, template_id: str) -> StructureMap:
        entry = self._data.get(template_id)
        if entry is None:
            return {}
        return {
            structure_id: structure_from_dict(record)
            for structure_id, record in entry.get("structures", [])
        }

    def load_template_cell_data(self, template_id: str) -> dict[str, str]:
        entry = self._data.get(template_id)
        if entry is None:
            return {}
        return dict(entry.get("cellData", {}))

    def save_template_data(
        self, template_id: str, structures: StructureMap, cell_data: dict[str, str]
    ) -> None:
        self._data[template_id] = {
            "structures": [
                [structure_id, structure_to_dict(structure)]
                for structure_id, structure in structures.items()
            ],
            "cellData": dict(cell_data),
        }
        logger.debug(
            "saved template %s: %d structures, %d cells",
            template_id,
            len(structures),
            len(cell_data),
        )

    def delete_template_data(self, template_id: str) -> None:
        self._data.pop(template_id, None)

    def template_ids(self) -> list[str]:
        return list(self._data)

    def to_json(self) -> str:
        return json.dumps(self._data, indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> InMemoryTemplateStore:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Template store JSON must be an object keyed by template id")
        return cls(data)


class TemplateCatalog:
    """Ordered collection of Template entries."""

    def __init__(self, templates: list[Template] | None = None) -> None:
        self._templates: dict[str, Template] = {t.id: t for t in templates or []}

    def __iter__(self) -> Iterator[Template]:
        return iter(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    @property
    def templates(self) -> list[Template]:
        return list(self._templates.values())

    def create(
        self, name: str | None = None, dimensions: Dimensions = DEFAULT_TEMPLATE_DIMENSIONS
    ) -> Template:
        template = Template(
            id=f"template-{uuid.uuid4()}",
            name=name or f"Template {len(self._templates) + 1}",
            dimensions=dimensions,
        )
        self._templates[template.id] = template
        logger.debug("created template %s (%s)", template.id, template.name)
        return template

    def add(self, template: Template) -> Template:
        self._templates[template.id] = template
        return template

    def get(self, template_id: str) -> Template | None:
        return self._templates.get(template_id)

    def update(self, template_id: str, **changes: Any) -> Template | None:
        """Replace fields of a template entry (the id cannot change)."""
        template = self._templates.get(template_id)
        if template is None:
            logger.debug("update: no template %s", template_id)
            return None
        changes.pop("id", None)
        updated = replace(template, **changes)
        self._templates[template_id] = updated
        return updated

    def bump_version(self, template_id: str) -> Template | None:
        template = self._templates.get(template_id)
        if template is None:
            logger.debug("bump_version: no template %s", template_id)
            return None
        return self.update(template_id, version=template.version + 1)

    def delete(self, template_id: str) -> Template | None:
        return self._templates.pop(template_id, None)
