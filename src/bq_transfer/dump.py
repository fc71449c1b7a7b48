"""Dump orchestrator: run a query and write every result row to a file."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from google.auth.transport.requests import AuthorizedSession

from bq_transfer import bq_client
from bq_transfer.errors import NoDataError, ParameterError, TransportError
from bq_transfer.schema import to_records
from bq_transfer.writers import resolve_delimiter, write_csv, write_json

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("json", "csv")


def normalize_format(fmt: str) -> str:
    """Lower-case and validate an output format name.

    Raises:
        ParameterError: For formats other than ``json`` and ``csv``.
    """
    normalized = fmt.lower()
    if normalized not in OUTPUT_FORMATS:
        raise ParameterError(f"Unsupported output file format: {fmt}")
    return normalized


def fetch_all_rows(
    session: AuthorizedSession,
    project: str,
    first: dict[str, Any],
) -> list[dict[str, Any]]:
    """Collect every result row, following page tokens.

    Args:
        session: Authenticated session.
        project: GCP project ID the query ran in.
        first: The initial ``jobs.query`` response.

    Returns:
        All rows, in result order.
    """
    total = int(first.get("totalRows") or 0)
    rows: list[dict[str, Any]] = list(first.get("rows") or [])
    if len(rows) >= total:
        return rows

    reference = first.get("jobReference") or {}
    job_id = reference.get("jobId")
    location = reference.get("location")
    token = first.get("pageToken")

    while len(rows) < total:
        logger.debug("Fetching rows from index %d of %d", len(rows), total)
        page = bq_client.get_query_results(
            session,
            project,
            job_id,
            page_token=token,
            start_index=len(rows),
            location=location,
        )
        page_rows = page.get("rows") or []
        if not page_rows:
            raise TransportError(
                f"Empty result page at row {len(rows)} of {total} for job {job_id}"
            )
        rows.extend(page_rows)
        token = page.get("pageToken")

    return rows


def dump_query(
    project: str,
    credentials_path: str,
    output_path: str,
    fmt: str,
    delimiter: str,
    query: str,
    proxy: str | None = None,
    *,
    pretty: bool = False,
    print_header: bool = False,
    timeout_ms: int = 0,
    no_cache: bool = False,
) -> int:
    """Run *query* and write the full result to *output_path*.

    Args:
        project: GCP project ID billed for the query.
        credentials_path: Service-account JSON key file.
        output_path: Destination file.
        fmt: ``json`` or ``csv`` (case-insensitive).
        delimiter: CSV separator; empty for ``,``, ``tab`` for a tab.
        query: Standard SQL text.
        proxy: Optional proxy URL for this dump's HTTP session.
        pretty: Indent JSON output.
        print_header: Write column names as the first CSV line.
        timeout_ms: Server-side query wait in milliseconds; ``0`` keeps
            the service default.
        no_cache: Bypass cached query results.

    Returns:
        Number of records written.

    Raises:
        ParameterError: On missing arguments or unsupported options.
        CredentialError: If the key file is unusable.
        TransportError: On HTTP failures.
        JobError: If the query or a result page reports errors.
        NoDataError: If the response carries no schema.
        DecodeError: If a cell does not match its declared type.
        UnsupportedTypeError: If a column type cannot be decoded.
    """
    params = {
        "project": project,
        "credentials_path": credentials_path,
        "output_path": output_path,
        "fmt": fmt,
        "query": query,
    }
    missing = [name for name, value in params.items() if not value]
    if missing:
        raise ParameterError(f"Missing params: {', '.join(missing)}")

    fmt = normalize_format(fmt)
    if fmt == "csv":
        delimiter = resolve_delimiter(delimiter)

    session = bq_client.build_session(credentials_path, proxy)

    logger.info("Running query in project %s", project)
    first = bq_client.run_query(
        session, project, query, timeout_ms=timeout_ms, use_cache=not no_cache
    )

    schema = first.get("schema")
    if not schema:
        raise NoDataError("Error getting reply, no schema data returned")

    rows = fetch_all_rows(session, project, first)
    types, records = to_records(schema.get("fields") or [], rows)

    dest = Path(output_path)
    if fmt == "json":
        write_json(dest, records, pretty=pretty)
    else:
        write_csv(
            dest, records, types, delimiter=delimiter, print_header=print_header
        )

    logger.info("Wrote %d records to %s", len(records), dest)
    return len(records)
