"""Shared dataclasses for BigQuery schema and job representations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

Record = dict[str, str | int | float | bool | None]


@dataclass(frozen=True)
class TableField:
    """One column of a table schema, as found in a schema descriptor file."""

    name: str
    type: str
    mode: str = ""
    fields: tuple[TableField, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TableField:
        """Build a ``TableField`` from its JSON object form.

        Args:
            raw: Mapping with ``name`` and ``type`` keys and optional
                ``mode`` and ``fields``.

        Returns:
            Parsed ``TableField``, children included.

        Raises:
            KeyError: If ``name`` or ``type`` is missing.
        """
        return cls(
            name=raw["name"],
            type=raw["type"],
            mode=raw.get("mode") or "",
            fields=tuple(cls.from_dict(child) for child in raw.get("fields") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON object form used by the REST API."""
        return {
            "name": self.name,
            "type": self.type,
            "mode": self.mode,
            "fields": [child.to_dict() for child in self.fields],
        }


@dataclass(frozen=True)
class Destination:
    """Fully qualified destination table of a load job."""

    project_id: str
    dataset_id: str
    table_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "projectId": self.project_id,
            "datasetId": self.dataset_id,
            "tableId": self.table_id,
        }


@dataclass(frozen=True)
class LoadJobConfig:
    """Configuration sent as the body of a resumable upload initiation."""

    source_format: str
    schema: tuple[TableField, ...]
    destination: Destination

    def to_dict(self) -> dict[str, Any]:
        return {
            "configuration": {
                "load": {
                    "sourceFormat": self.source_format,
                    "schema": {"fields": [f.to_dict() for f in self.schema]},
                    "destinationTable": self.destination.to_dict(),
                }
            }
        }


@dataclass(frozen=True)
class FieldType:
    """A result column with its flattened dotted name.

    For ``RECORD`` columns, ``fields`` holds the children, already
    carrying their ``parent.child`` names.
    """

    name: str
    type: str
    mode: str = ""
    fields: tuple[FieldType, ...] = ()

    def leaves(self) -> list[FieldType]:
        """Return the primitive columns under this field, in schema order."""
        if self.type != "RECORD":
            return [self]
        out: list[FieldType] = []
        for child in self.fields:
            out.extend(child.leaves())
        return out
