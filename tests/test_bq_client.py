"""Tests for ``bq_transfer.bq_client``."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests
from google.api_core import exceptions as api_exceptions

from bq_transfer import bq_client
from bq_transfer.errors import (
    CredentialError,
    JobError,
    TransportError,
    UnknownJobStateError,
)
from bq_transfer.resources import Destination, LoadJobConfig, TableField


def _response(
    status: int = 200,
    payload: Any = None,
    headers: dict[str, str] | None = None,
) -> MagicMock:
    """Build a mock ``requests.Response``."""
    response = MagicMock()
    response.status_code = status
    response.reason = "OK" if status == 200 else "Error"
    response.headers = headers or {}
    if payload is None:
        response.json.side_effect = ValueError("no JSON")
        response.text = ""
    else:
        response.json.return_value = payload
        response.text = json.dumps(payload)
    return response


def _dataset_item(dataset_id: str) -> MagicMock:
    item = MagicMock()
    item.dataset_id = dataset_id
    return item


class FakeDatasetClient:
    """Minimal stand-in for ``bigquery.Client`` dataset calls."""

    def __init__(self, existing: list[str]) -> None:
        self.datasets = list(existing)
        self.create_calls = 0

    def list_datasets(self, project: str | None = None) -> list[MagicMock]:
        return [_dataset_item(d) for d in self.datasets]

    def create_dataset(self, dataset: Any) -> Any:
        self.create_calls += 1
        self.datasets.append(dataset.dataset_id)
        return dataset


def _job(state: str, errors: Any = None, error_result: Any = None) -> MagicMock:
    job = MagicMock()
    job.state = state
    job.errors = errors
    job.error_result = error_result
    return job


LOAD_CONFIG = LoadJobConfig(
    source_format="CSV",
    schema=(TableField("id", "INTEGER", "REQUIRED"),),
    destination=Destination("proj", "ds", "tbl"),
)


class TestBuildSession:
    """Tests for ``build_session``."""

    def test_missing_key_file(self, tmp_path: Path) -> None:
        """A missing key file raises ``CredentialError``."""
        with pytest.raises(CredentialError, match="absent.json"):
            bq_client.build_session(str(tmp_path / "absent.json"))

    def test_malformed_key_file(self, tmp_path: Path) -> None:
        """A key file missing required fields raises ``CredentialError``."""
        key = tmp_path / "key.json"
        key.write_text('{"type": "service_account"}')

        with pytest.raises(CredentialError):
            bq_client.build_session(str(key))

    @patch("bq_transfer.bq_client.service_account.Credentials")
    def test_scoped_credentials(self, mock_creds_cls: MagicMock) -> None:
        """Credentials are requested with the BigQuery scope."""
        session = bq_client.build_session("key.json")

        mock_creds_cls.from_service_account_file.assert_called_once_with(
            "key.json", scopes=[bq_client.BIGQUERY_SCOPE]
        )
        creds = mock_creds_cls.from_service_account_file.return_value
        assert session.credentials is creds

    @patch("bq_transfer.bq_client.service_account.Credentials")
    def test_proxy_on_session(self, mock_creds_cls: MagicMock) -> None:
        """A proxy is set on the session for both schemes."""
        session = bq_client.build_session("key.json", proxy="http://proxy:3128")

        assert session.proxies == {
            "http": "http://proxy:3128",
            "https": "http://proxy:3128",
        }

    @patch("bq_transfer.bq_client.service_account.Credentials")
    def test_proxy_on_token_refresh(self, mock_creds_cls: MagicMock) -> None:
        """Token refresh requests go through the same proxy."""
        session = bq_client.build_session("key.json", proxy="http://proxy:3128")

        token_session = session._auth_request.session
        assert token_session is not session
        assert token_session.proxies == {
            "http": "http://proxy:3128",
            "https": "http://proxy:3128",
        }

    @patch("bq_transfer.bq_client.service_account.Credentials")
    def test_proxy_wins_over_environment(
        self, mock_creds_cls: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """``HTTPS_PROXY`` in the environment does not override the proxy."""
        monkeypatch.setenv("HTTPS_PROXY", "http://env:1")
        monkeypatch.setenv("https_proxy", "http://env:1")
        session = bq_client.build_session("key.json", proxy="http://proxy:3128")

        for http in (session, session._auth_request.session):
            settings = http.merge_environment_settings(
                bq_client.API_ROOT, {}, None, None, None
            )
            assert settings["proxies"]["https"] == "http://proxy:3128"

    @patch("bq_transfer.bq_client.service_account.Credentials")
    def test_proxy_not_in_environment(
        self, mock_creds_cls: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """The process environment is left untouched."""
        monkeypatch.delenv("HTTP_PROXY", raising=False)
        bq_client.build_session("key.json", proxy="http://proxy:3128")

        assert "HTTP_PROXY" not in os.environ

    @patch("bq_transfer.bq_client.service_account.Credentials")
    def test_no_proxy(self, mock_creds_cls: MagicMock) -> None:
        """Without a proxy the session has none configured."""
        session = bq_client.build_session("key.json")

        assert not session.proxies


class TestEnsureDataset:
    """Tests for ``ensure_dataset``."""

    def test_existing_dataset_is_noop(self) -> None:
        """No creation when the dataset is listed."""
        client = FakeDatasetClient(["other", "ds"])

        assert bq_client.ensure_dataset(client, "proj", "ds") is False
        assert client.create_calls == 0

    def test_missing_dataset_created(self) -> None:
        """The dataset is created when absent."""
        client = FakeDatasetClient(["other"])

        assert bq_client.ensure_dataset(client, "proj", "ds") is True
        assert client.create_calls == 1
        assert "ds" in client.datasets

    def test_idempotent(self) -> None:
        """Two calls create the dataset at most once."""
        client = FakeDatasetClient([])

        bq_client.ensure_dataset(client, "proj", "ds")
        bq_client.ensure_dataset(client, "proj", "ds")

        assert client.create_calls == 1

    def test_api_error_wrapped(self) -> None:
        """API failures surface as ``TransportError``."""
        client = MagicMock()
        client.list_datasets.side_effect = api_exceptions.Forbidden("denied")

        with pytest.raises(TransportError, match="checking/creating") as excinfo:
            bq_client.ensure_dataset(client, "proj", "ds")
        assert excinfo.value.status == 403


class TestJobDone:
    """Tests for ``job_done``."""

    @pytest.mark.parametrize("state", ["PENDING", "RUNNING"])
    def test_in_progress(self, state: str) -> None:
        """PENDING and RUNNING keep polling."""
        client = MagicMock()
        client.get_job.return_value = _job(state)

        assert bq_client.job_done(client, "proj", "job1") is False

    def test_done(self) -> None:
        """DONE without errors is terminal success."""
        client = MagicMock()
        client.get_job.return_value = _job("DONE")

        assert bq_client.job_done(client, "proj", "job1", location="EU") is True
        client.get_job.assert_called_once_with("job1", project="proj", location="EU")

    def test_done_with_errors(self) -> None:
        """An error list raises ``JobError``."""
        client = MagicMock()
        client.get_job.return_value = _job(
            "DONE", errors=[{"message": "bad row"}, {"message": "bad row 2"}]
        )

        with pytest.raises(JobError, match="2 errors") as excinfo:
            bq_client.job_done(client, "proj", "job1")
        assert len(excinfo.value.errors) == 2

    def test_error_result_only(self) -> None:
        """An error result without an error list still fails."""
        client = MagicMock()
        client.get_job.return_value = _job(
            "DONE", error_result={"message": "quota exceeded"}
        )

        with pytest.raises(JobError, match="quota exceeded"):
            bq_client.job_done(client, "proj", "job1")

    def test_unknown_state(self) -> None:
        """Unexpected states raise ``UnknownJobStateError``."""
        client = MagicMock()
        client.get_job.return_value = _job("EXPLODED")

        with pytest.raises(UnknownJobStateError, match="EXPLODED") as excinfo:
            bq_client.job_done(client, "proj", "job1")
        assert excinfo.value.state == "EXPLODED"

    def test_api_error_wrapped(self) -> None:
        """API failures surface as ``TransportError``."""
        client = MagicMock()
        client.get_job.side_effect = api_exceptions.NotFound("no job")

        with pytest.raises(TransportError) as excinfo:
            bq_client.job_done(client, "proj", "job1")
        assert excinfo.value.status == 404


class TestResumableUpload:
    """Tests for ``start_resumable_upload`` and ``upload_payload``."""

    def test_initiation_request(self) -> None:
        """The job configuration is posted with upload headers."""
        session = MagicMock()
        session.request.return_value = _response(
            headers={"Location": "https://upload/session/1"}
        )

        location = bq_client.start_resumable_upload(session, LOAD_CONFIG, 1234)

        assert location == "https://upload/session/1"
        args, kwargs = session.request.call_args
        assert args[0] == "POST"
        assert args[1] == (
            "https://bigquery.googleapis.com/upload/bigquery/v2/projects/proj/jobs"
            "?uploadType=resumable"
        )
        assert kwargs["headers"]["X-Upload-Content-Length"] == "1234"
        body = json.loads(kwargs["data"])
        load = body["configuration"]["load"]
        assert load["sourceFormat"] == "CSV"
        assert load["destinationTable"] == {
            "projectId": "proj",
            "datasetId": "ds",
            "tableId": "tbl",
        }
        assert load["schema"]["fields"][0]["name"] == "id"

    def test_initiation_error_message(self) -> None:
        """The service error message is embedded in the exception."""
        session = MagicMock()
        session.request.return_value = _response(
            400, {"error": {"message": "Invalid schema"}}
        )

        with pytest.raises(TransportError, match="Invalid schema") as excinfo:
            bq_client.start_resumable_upload(session, LOAD_CONFIG, 10)
        assert excinfo.value.status == 400

    def test_initiation_without_location(self) -> None:
        """A missing ``Location`` header raises ``TransportError``."""
        session = MagicMock()
        session.request.return_value = _response()

        with pytest.raises(TransportError, match="Location"):
            bq_client.start_resumable_upload(session, LOAD_CONFIG, 10)

    def test_network_error_wrapped(self) -> None:
        """Connection failures surface as ``TransportError``."""
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(TransportError, match="refused"):
            bq_client.start_resumable_upload(session, LOAD_CONFIG, 10)

    @pytest.mark.parametrize("status", [200, 201])
    def test_payload_returns_job(self, status: int) -> None:
        """The upload returns the job resource."""
        session = MagicMock()
        job = {"jobReference": {"projectId": "proj", "jobId": "j1"}}
        session.request.return_value = _response(status, job)

        assert bq_client.upload_payload(session, "https://upload/1", b"a,b\n") == job
        args, kwargs = session.request.call_args
        assert args[:2] == ("PUT", "https://upload/1")
        assert kwargs["data"] == b"a,b\n"

    def test_payload_error(self) -> None:
        """Non-success statuses raise ``TransportError``."""
        session = MagicMock()
        session.request.return_value = _response(503)

        with pytest.raises(TransportError) as excinfo:
            bq_client.upload_payload(session, "https://upload/1", b"")
        assert excinfo.value.status == 503


class TestQuery:
    """Tests for ``run_query`` and ``get_query_results``."""

    def test_query_body(self) -> None:
        """Timeout and cache options are sent when set."""
        session = MagicMock()
        session.request.return_value = _response(payload={"totalRows": "0"})

        bq_client.run_query(
            session, "proj", "SELECT 1", timeout_ms=5000, use_cache=False
        )

        args, kwargs = session.request.call_args
        assert args[1].endswith("/projects/proj/queries")
        body = kwargs["json"]
        assert body["query"] == "SELECT 1"
        assert body["timeoutMs"] == 5000
        assert body["useQueryCache"] is False
        assert body["formatOptions"] == {"useInt64Timestamp": True}

    def test_query_defaults_omit_options(self) -> None:
        """Zero timeout and cache use leave the service defaults."""
        session = MagicMock()
        session.request.return_value = _response(payload={"totalRows": "0"})

        bq_client.run_query(session, "proj", "SELECT 1")

        body = session.request.call_args.kwargs["json"]
        assert "timeoutMs" not in body
        assert "useQueryCache" not in body

    def test_query_errors(self) -> None:
        """An error list in the response raises ``JobError``."""
        session = MagicMock()
        session.request.return_value = _response(
            payload={"errors": [{"message": "x"}, {"message": "y"}]}
        )

        with pytest.raises(JobError, match="2 errors"):
            bq_client.run_query(session, "proj", "SELECT 1")

    def test_page_params(self) -> None:
        """Page token, start index and location are passed along."""
        session = MagicMock()
        session.request.return_value = _response(payload={"rows": []})

        bq_client.get_query_results(
            session, "proj", "job1", page_token="tok", start_index=10, location="EU"
        )

        args, kwargs = session.request.call_args
        assert args[0] == "GET"
        assert args[1].endswith("/projects/proj/queries/job1")
        assert kwargs["params"]["pageToken"] == "tok"
        assert kwargs["params"]["startIndex"] == 10
        assert kwargs["params"]["location"] == "EU"

    def test_page_http_error(self) -> None:
        """A failed page request raises ``TransportError``."""
        session = MagicMock()
        session.request.return_value = _response(
            500, {"error": {"message": "backend"}}
        )

        with pytest.raises(TransportError, match="backend"):
            bq_client.get_query_results(
                session, "proj", "job1", page_token=None, start_index=0
            )
