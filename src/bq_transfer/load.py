"""Load orchestrator: upload a local JSON or CSV file into a table.

The upload uses the two-request resumable protocol: the first request
carries the load job configuration and returns a session URI, the
second carries the file bytes.  The resulting job is then polled until
it reaches a terminal state.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from google.cloud import bigquery

from bq_transfer import bq_client
from bq_transfer.config import DEFAULT_POLL_INTERVAL
from bq_transfer.errors import ConsistencyError, LoadTimeoutError, ParameterError
from bq_transfer.resources import Destination, LoadJobConfig
from bq_transfer.schema import load_schema_file

logger = logging.getLogger(__name__)

SOURCE_FORMATS = {
    ".json": "NEWLINE_DELIMITED_JSON",
    ".csv": "CSV",
}


def source_format(source_path: str) -> str:
    """Infer the BigQuery source format from a file extension.

    Raises:
        ParameterError: For extensions other than ``.json`` and ``.csv``.
    """
    for suffix, fmt in SOURCE_FORMATS.items():
        if source_path.endswith(suffix):
            return fmt
    raise ParameterError(f"Unsupported source file format: {source_path}")


def wait_for_job(
    client: bigquery.Client,
    project: str,
    job_id: str,
    *,
    location: str | None = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Block until a job is ``DONE``.

    The status is checked every *poll_interval* seconds, starting one
    interval after the call.

    Args:
        client: BigQuery client.
        project: GCP project ID owning the job.
        job_id: Job identifier.
        location: Job location, when known.
        poll_interval: Seconds between status checks.
        timeout: Give up after this many seconds; ``None`` waits forever.
        sleep: Sleep function (injectable for tests).
        clock: Monotonic clock (injectable for tests).

    Raises:
        LoadTimeoutError: If *timeout* elapses before the job finishes.
    """
    deadline = None if timeout is None else clock() + timeout
    while True:
        sleep(poll_interval)
        if bq_client.job_done(client, project, job_id, location=location):
            return
        if deadline is not None and clock() >= deadline:
            raise LoadTimeoutError(
                f"Job {job_id} did not finish within {timeout:g} seconds"
            )


def load_table(
    project: str,
    dataset: str,
    table: str,
    credentials_path: str,
    schema_path: str,
    source_path: str,
    proxy: str | None = None,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float | None = None,
) -> str:
    """Load *source_path* into ``project.dataset.table``.

    Args:
        project: GCP project ID.
        dataset: Target dataset ID, created when missing.
        table: Target table ID.
        credentials_path: Service-account JSON key file.
        schema_path: JSON schema descriptor for the table.
        source_path: Newline-delimited ``.json`` or ``.csv`` data file.
        proxy: Optional proxy URL for this load's HTTP session.
        poll_interval: Seconds between job status checks.
        timeout: Maximum seconds to wait for the job; ``None`` waits
            forever.

    Returns:
        The ID of the completed load job.

    Raises:
        ParameterError: On empty arguments or an unknown source format.
        CredentialError: If the key file is unusable.
        SchemaError: If the schema descriptor is malformed.
        TransportError: On HTTP failures.
        ConsistencyError: If the job is reported under another project.
        JobError: If the job finishes with errors.
        UnknownJobStateError: If the job reports an unexpected state.
        LoadTimeoutError: If *timeout* elapses first.
    """
    params = {
        "project": project,
        "dataset": dataset,
        "table": table,
        "credentials_path": credentials_path,
        "schema_path": schema_path,
        "source_path": source_path,
    }
    missing = [name for name, value in params.items() if not value]
    if missing:
        raise ParameterError(f"Missing params: {', '.join(missing)}")

    fmt = source_format(source_path)

    session = bq_client.build_session(credentials_path, proxy)
    client = bq_client.build_client(project, session)

    bq_client.ensure_dataset(client, project, dataset)

    fields = load_schema_file(Path(schema_path))
    config = LoadJobConfig(
        source_format=fmt,
        schema=tuple(fields),
        destination=Destination(
            project_id=project, dataset_id=dataset, table_id=table
        ),
    )

    data = Path(source_path).read_bytes()

    logger.info(
        "Uploading %s (%d bytes, %s) to %s.%s.%s",
        source_path,
        len(data),
        fmt,
        project,
        dataset,
        table,
    )
    upload_uri = bq_client.start_resumable_upload(session, config, len(data))
    job = bq_client.upload_payload(session, upload_uri, data)

    reference = job.get("jobReference") or {}
    if reference.get("projectId") != project:
        raise ConsistencyError(
            f"Returned ProjectID {reference.get('projectId')} != "
            f"configured ID {project}"
        )
    job_id = reference.get("jobId")
    if not job_id:
        raise ConsistencyError("Upload response carries no job ID")

    logger.info("Waiting for load job %s", job_id)
    wait_for_job(
        client,
        project,
        job_id,
        location=reference.get("location"),
        poll_interval=poll_interval,
        timeout=timeout,
    )
    logger.info("Load job %s done", job_id)
    return job_id
