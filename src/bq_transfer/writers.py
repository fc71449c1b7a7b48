"""Write decoded query records to the local filesystem (dump mode).

Both formats are written to a temporary file next to the destination
and renamed into place once complete, so a failed write never leaves a
partial output behind.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import polars as pl

from bq_transfer.errors import EncodeError, ParameterError
from bq_transfer.resources import FieldType, Record

logger = logging.getLogger(__name__)

TAB_ALIAS = "tab"

_POLARS_TYPES: dict[str, type[pl.DataType]] = {
    "STRING": pl.String,
    "INTEGER": pl.Int64,
    "TIMESTAMP": pl.Int64,
    "FLOAT": pl.Float64,
    "BOOLEAN": pl.Boolean,
}


def _ensure_parent(path: Path) -> None:
    """Create parent directories if they do not exist."""
    path.parent.mkdir(parents=True, exist_ok=True)


@contextlib.contextmanager
def atomic_path(path: Path) -> Iterator[Path]:
    """Yield a temporary sibling of *path*, renamed onto it on success.

    The temporary file is removed if the body raises.
    """
    _ensure_parent(path)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        yield tmp
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def resolve_delimiter(delimiter: str | None) -> str:
    """Normalize a CSV delimiter argument.

    Args:
        delimiter: ``""``/``None`` for the default comma, the word
            ``tab`` for a tab character, or any string whose first
            character is used.

    Returns:
        A single-character separator.

    Raises:
        ParameterError: If the separator is not a single-byte character.
    """
    if not delimiter:
        return ","
    if delimiter == TAB_ALIAS:
        return "\t"
    sep = delimiter[0]
    if len(sep.encode("utf-8")) != 1:
        raise ParameterError(f"Unsupported CSV delimiter {delimiter!r}")
    return sep


def write_json(path: Path, records: list[Record], *, pretty: bool = False) -> None:
    """Write *records* as a JSON array.

    Args:
        path: Target ``.json`` file path.
        records: Decoded records.
        pretty: Indent with tabs instead of writing compact JSON.

    Raises:
        EncodeError: If a record holds a NaN or infinite float.
    """
    kwargs: dict[str, Any] = (
        {"indent": "\t"} if pretty else {"separators": (",", ":")}
    )
    with atomic_path(path) as tmp:
        with tmp.open("w", encoding="utf-8") as fh:
            try:
                json.dump(records, fh, sort_keys=True, allow_nan=False, **kwargs)
            except ValueError as exc:
                raise EncodeError(f"Cannot write {path} as JSON - {exc}") from exc
            fh.write("\n")
    logger.debug("Wrote %d records to %s", len(records), path)


def write_csv(
    path: Path,
    records: list[Record],
    types: list[FieldType],
    *,
    delimiter: str | None = ",",
    print_header: bool = False,
) -> None:
    """Write *records* as CSV with columns in lexicographic order.

    Column names and types come from the query schema, not from the
    records, so every row has the same columns even when empty.

    Args:
        path: Target ``.csv`` file path.
        records: Decoded records.
        types: Field types derived from the query schema.
        delimiter: Field separator (see ``resolve_delimiter``).
        print_header: Write the column names as the first line.
    """
    sep = resolve_delimiter(delimiter)
    leaves = {leaf.name: leaf for ft in types for leaf in ft.leaves()}
    columns = sorted(leaves)

    frame = pl.DataFrame(
        {name: [record.get(name) for record in records] for name in columns},
        schema={
            name: _POLARS_TYPES.get(leaves[name].type, pl.String) for name in columns
        },
    )

    with atomic_path(path) as tmp:
        frame.write_csv(tmp, separator=sep, include_header=print_header)
    logger.debug("Wrote %d records to %s", len(records), path)
