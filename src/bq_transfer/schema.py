"""Schema descriptor parsing, schema flattening and cell decoding.

Query results arrive from the REST API as rows of untyped cells::

    {"f": [{"v": "1"}, {"v": null}, {"v": {"f": [{"v": "x"}]}}]}

Each cell is decoded positionally against the field types derived from
the response schema.  ``RECORD`` cells nest another ``{"f": [...]}`` and
are flattened into ``parent.child`` keys.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from bq_transfer.errors import DecodeError, SchemaError, UnsupportedTypeError
from bq_transfer.resources import FieldType, Record, TableField

logger = logging.getLogger(__name__)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def load_schema_file(path: Path) -> list[TableField]:
    """Read a schema descriptor (JSON array of field objects).

    Args:
        path: Path to the schema JSON file.

    Returns:
        Ordered list of ``TableField``.

    Raises:
        FileNotFoundError: If *path* does not exist.
        SchemaError: If the file is not a JSON array of field objects.
    """
    data = path.read_bytes()
    try:
        raw = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SchemaError(f"Error reading schema {path} - {exc}") from exc

    if not isinstance(raw, list):
        raise SchemaError(f"Error reading schema {path} - expected a JSON array")

    try:
        return [TableField.from_dict(item) for item in raw]
    except (KeyError, TypeError, AttributeError) as exc:
        raise SchemaError(
            f"Error reading schema {path} - invalid field: {exc}"
        ) from exc


def _walk(prefix: str, raw: dict[str, Any]) -> FieldType:
    name = f"{prefix}.{raw['name']}" if prefix else raw["name"]
    children = tuple(_walk(name, child) for child in raw.get("fields") or ())
    return FieldType(
        name=name,
        type=raw["type"],
        mode=raw.get("mode") or "",
        fields=children,
    )


def field_types(schema_fields: list[dict[str, Any]]) -> list[FieldType]:
    """Derive the field-type list from a response schema.

    Every child of a ``RECORD`` is kept, recursively, with its dotted
    name (``a.b.c``).

    Args:
        schema_fields: The ``schema.fields`` array of a query response.

    Returns:
        One ``FieldType`` per top-level column, in response order.
    """
    return [_walk("", raw) for raw in schema_fields]


def column_names(types: list[FieldType]) -> list[str]:
    """Return every flattened leaf name, sorted lexicographically."""
    return sorted(leaf.name for ft in types for leaf in ft.leaves())


def decode_value(ft: FieldType, value: Any) -> str | int | float | bool | None:
    """Decode a single primitive cell value.

    Args:
        ft: Field type the cell belongs to.
        value: Raw ``v`` of the cell (a string, or ``None``).

    Returns:
        The decoded scalar.

    Raises:
        DecodeError: If the value does not parse as the declared type.
        UnsupportedTypeError: For types other than STRING, INTEGER,
            TIMESTAMP, FLOAT and BOOLEAN.
    """
    if value is None:
        return None

    if ft.type == "STRING":
        return value

    if not isinstance(value, str):
        raise DecodeError(ft.name, value, "expected a string cell")

    if ft.type in ("INTEGER", "TIMESTAMP"):
        if not _INTEGER_RE.fullmatch(value):
            raise DecodeError(ft.name, value, "not a base-10 integer")
        ival = int(value)
        if not _INT64_MIN <= ival <= _INT64_MAX:
            raise DecodeError(ft.name, value, "out of int64 range")
        return ival

    if ft.type == "FLOAT":
        if value != value.strip() or "_" in value:
            raise DecodeError(ft.name, value, "not a float")
        try:
            return float(value)
        except ValueError as exc:
            raise DecodeError(ft.name, value, str(exc)) from exc

    if ft.type == "BOOLEAN":
        if value in _TRUE_VALUES:
            return True
        if value in _FALSE_VALUES:
            return False
        raise DecodeError(ft.name, value, "not a boolean")

    raise UnsupportedTypeError(ft.name, ft.type)


def _decode_cells(
    types: tuple[FieldType, ...] | list[FieldType],
    cells: list[dict[str, Any]],
    record: Record,
    where: str,
) -> None:
    if len(cells) != len(types):
        raise DecodeError(
            where,
            len(cells),
            f"row has {len(cells)} cells but schema has {len(types)} fields",
        )

    for ft, cell in zip(types, cells):
        value = cell.get("v") if isinstance(cell, dict) else None

        if ft.mode == "REPEATED":
            raise UnsupportedTypeError(ft.name, f"{ft.type} (REPEATED)")

        if ft.type != "RECORD":
            record[ft.name] = decode_value(ft, value)
            continue

        # A null RECORD nulls out every leaf under it.
        if value is None:
            for leaf in ft.leaves():
                record[leaf.name] = None
            continue

        if not isinstance(value, dict) or "f" not in value:
            raise DecodeError(ft.name, value, "expected a nested row")
        _decode_cells(ft.fields, value["f"], record, ft.name)


def decode_row(types: list[FieldType], row: dict[str, Any]) -> Record:
    """Decode one result row into a flat record.

    Args:
        types: Field types from ``field_types``.
        row: A ``{"f": [...]}`` row from a query response.

    Returns:
        Record keyed by flattened field name.
    """
    record: Record = {}
    _decode_cells(types, row.get("f") or [], record, "row")
    return record


def to_records(
    schema_fields: list[dict[str, Any]],
    rows: list[dict[str, Any]],
) -> tuple[list[FieldType], list[Record]]:
    """Convert a response schema and its rows into records.

    Args:
        schema_fields: The ``schema.fields`` array of a query response.
        rows: All accumulated result rows.

    Returns:
        Tuple of (field types, records).
    """
    types = field_types(schema_fields)
    logger.debug(
        "Decoding %d rows across %d columns", len(rows), len(column_names(types))
    )
    return types, [decode_row(types, row) for row in rows]
