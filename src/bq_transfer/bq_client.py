"""BigQuery API wrapper for load and dump operations.

Dataset and job metadata go through ``google.cloud.bigquery.Client``;
query pagination and the resumable upload go straight to the REST API
over the same ``AuthorizedSession`` so that raw cells and upload
headers stay under our control.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import google.auth.exceptions
import requests
from google.api_core import exceptions as api_exceptions
from google.auth.transport.requests import AuthorizedSession, Request
from google.cloud import bigquery
from google.oauth2 import service_account

from bq_transfer.errors import (
    CredentialError,
    JobError,
    TransportError,
    UnknownJobStateError,
)
from bq_transfer.resources import LoadJobConfig

logger = logging.getLogger(__name__)

BIGQUERY_SCOPE = "https://www.googleapis.com/auth/bigquery"
API_ROOT = "https://bigquery.googleapis.com/bigquery/v2"
UPLOAD_ROOT = "https://bigquery.googleapis.com/upload/bigquery/v2"


def build_session(credentials_path: str, proxy: str | None = None) -> AuthorizedSession:
    """Create an authenticated HTTP session from a service-account key.

    Args:
        credentials_path: Path to a service-account JSON key file.
        proxy: Optional proxy URL. It is applied to both the API session
            and the token-refresh session, and overrides any proxy set
            in the environment.

    Returns:
        ``AuthorizedSession`` scoped to BigQuery read/write.

    Raises:
        CredentialError: If the key file cannot be read or parsed.
    """
    try:
        credentials = service_account.Credentials.from_service_account_file(
            credentials_path, scopes=[BIGQUERY_SCOPE]
        )
    except (OSError, ValueError, google.auth.exceptions.GoogleAuthError) as exc:
        raise CredentialError(
            f"Error loading credentials from {credentials_path} - {exc}"
        ) from exc

    if not proxy:
        return AuthorizedSession(credentials)

    proxies = {"http": proxy, "https": proxy}
    token_session = requests.Session()
    token_session.proxies = dict(proxies)
    token_session.trust_env = False
    session = AuthorizedSession(
        credentials, auth_request=Request(session=token_session)
    )
    session.proxies = dict(proxies)
    session.trust_env = False
    logger.debug("Routing requests through proxy %s", proxy)
    return session


def build_client(project: str, session: AuthorizedSession) -> bigquery.Client:
    """Create a BigQuery client sharing *session* for its transport."""
    return bigquery.Client(
        project=project,
        credentials=session.credentials,
        _http=session,
    )


def error_message(response: requests.Response) -> str:
    """Best-effort extraction of ``error.message`` from an error body."""
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            return str(err.get("message", ""))
        if isinstance(err, str):
            return err
    return ""


def _check(
    response: requests.Response,
    what: str,
    ok: tuple[int, ...] = (200,),
) -> None:
    if response.status_code in ok:
        return
    message = error_message(response)
    raise TransportError(
        f"{what}: did not get OK, got {response.status_code} {response.reason} "
        f"({message})",
        status=response.status_code,
    )


def _request(
    session: AuthorizedSession,
    method: str,
    url: str,
    what: str,
    **kwargs: Any,
) -> requests.Response:
    try:
        return session.request(method, url, **kwargs)
    except requests.RequestException as exc:
        raise TransportError(f"{what}: {exc}") from exc


def ensure_dataset(client: bigquery.Client, project: str, dataset: str) -> bool:
    """Create *dataset* under *project* unless it already exists.

    The dataset listing iterator follows page tokens on its own.

    Args:
        client: BigQuery client.
        project: GCP project ID.
        dataset: BigQuery dataset ID.

    Returns:
        ``True`` if the dataset was created, ``False`` if it was present.
    """
    try:
        for item in client.list_datasets(project=project):
            if item.dataset_id == dataset:
                logger.debug("Dataset %s.%s already exists", project, dataset)
                return False

        client.create_dataset(bigquery.Dataset(f"{project}.{dataset}"))
    except api_exceptions.GoogleAPICallError as exc:
        raise TransportError(
            f"Error checking/creating dataset - {exc}", status=exc.code
        ) from exc

    logger.info("Created dataset %s.%s", project, dataset)
    return True


def job_done(
    client: bigquery.Client,
    project: str,
    job_id: str,
    location: str | None = None,
) -> bool:
    """Check the status of a job.

    Args:
        client: BigQuery client.
        project: GCP project ID owning the job.
        job_id: Job identifier.
        location: Job location, when known.

    Returns:
        ``True`` once the job is ``DONE``, ``False`` while it is
        ``PENDING`` or ``RUNNING``.

    Raises:
        JobError: If the job reports errors.
        UnknownJobStateError: For any other state.
    """
    try:
        job = client.get_job(job_id, project=project, location=location)
    except api_exceptions.GoogleAPICallError as exc:
        raise TransportError(
            f"Error getting job {job_id} - {exc}", status=exc.code
        ) from exc

    errors = list(job.errors or [])
    if job.error_result and not errors:
        errors = [job.error_result]
    if errors:
        raise JobError(
            f"{len(errors)} errors returned for job {job_id}: "
            f"{errors[0].get('message', '')}",
            errors=errors,
        )

    state = job.state
    logger.debug("Job %s state: %s", job_id, state)
    if state in ("PENDING", "RUNNING"):
        return False
    if state == "DONE":
        return True
    raise UnknownJobStateError(str(state), project, job_id)


def start_resumable_upload(
    session: AuthorizedSession,
    config: LoadJobConfig,
    payload_size: int,
) -> str:
    """Open a resumable upload session for a load job.

    Args:
        session: Authenticated session.
        config: Load job configuration sent as the request body.
        payload_size: Size in bytes of the data that will follow.

    Returns:
        The upload session URI taken from the ``Location`` header.
    """
    project = config.destination.project_id
    body = json.dumps(config.to_dict()).encode("utf-8")
    url = f"{UPLOAD_ROOT}/projects/{project}/jobs?uploadType=resumable"
    headers = {
        "Content-Type": "application/json; charset=UTF-8",
        "X-Upload-Content-Type": "application/octet-stream",
        "X-Upload-Content-Length": str(payload_size),
    }

    response = _request(
        session, "POST", url, "Error in initial request", data=body, headers=headers
    )
    _check(response, "Error in initial request")

    location = response.headers.get("Location")
    if not location:
        raise TransportError("Error getting Location header - header missing")
    return location


def upload_payload(
    session: AuthorizedSession,
    location: str,
    data: bytes,
) -> dict[str, Any]:
    """Send the file bytes to an upload session URI.

    Returns:
        The job resource returned by the service.
    """
    response = _request(
        session,
        "PUT",
        location,
        "Error uploading data",
        data=data,
        headers={"Content-Type": "application/octet-stream"},
    )
    _check(response, "Error uploading data", ok=(200, 201))
    try:
        return response.json()
    except ValueError as exc:
        raise TransportError(f"Error decoding response - {exc}") from exc


def run_query(
    session: AuthorizedSession,
    project: str,
    query: str,
    *,
    timeout_ms: int = 0,
    use_cache: bool = True,
) -> dict[str, Any]:
    """Submit a query through ``jobs.query``.

    Args:
        session: Authenticated session.
        project: GCP project ID billed for the query.
        query: Standard SQL text.
        timeout_ms: Server-side wait in milliseconds; ``0`` keeps the
            service default.
        use_cache: When ``False``, bypass cached results.

    Returns:
        The decoded query response.
    """
    body: dict[str, Any] = {
        "kind": "bigquery#queryRequest",
        "query": query,
        "useLegacySql": False,
        "formatOptions": {"useInt64Timestamp": True},
    }
    if timeout_ms:
        body["timeoutMs"] = timeout_ms
    if not use_cache:
        body["useQueryCache"] = False

    response = _request(
        session,
        "POST",
        f"{API_ROOT}/projects/{project}/queries",
        "Error sending request",
        json=body,
    )
    _check(response, "Error sending request")
    result = response.json()
    _raise_for_errors(result)
    return result


def get_query_results(
    session: AuthorizedSession,
    project: str,
    job_id: str,
    *,
    page_token: str | None,
    start_index: int,
    location: str | None = None,
) -> dict[str, Any]:
    """Fetch one page of results through ``jobs.getQueryResults``."""
    params: dict[str, Any] = {
        "startIndex": start_index,
        "formatOptions.useInt64Timestamp": "true",
    }
    if page_token:
        params["pageToken"] = page_token
    if location:
        params["location"] = location

    response = _request(
        session,
        "GET",
        f"{API_ROOT}/projects/{project}/queries/{job_id}",
        "Error getting query results",
        params=params,
    )
    _check(response, "Error getting query results")
    result = response.json()
    _raise_for_errors(result)
    return result


def _raise_for_errors(result: dict[str, Any]) -> None:
    errors = result.get("errors") or []
    if errors:
        raise JobError(f"{len(errors)} errors returned", errors=errors)
