"""Exception hierarchy for load and dump operations."""

from __future__ import annotations

from typing import Any


class BqTransferError(Exception):
    """Base class for every error raised by ``bq_transfer``."""


class ParameterError(BqTransferError, ValueError):
    """A required argument is empty or has an unsupported value."""


class CredentialError(BqTransferError):
    """The service-account key could not be turned into credentials."""


class SchemaError(BqTransferError):
    """The schema descriptor file is malformed."""


class TransportError(BqTransferError):
    """An HTTP call failed or returned an unexpected status."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class JobError(BqTransferError):
    """The service reported errors for a job or query."""

    def __init__(
        self, message: str, errors: list[dict[str, Any]] | None = None
    ) -> None:
        super().__init__(message)
        self.errors = errors or []


class NoDataError(BqTransferError):
    """A query response came back without a schema."""


class DecodeError(BqTransferError):
    """A cell value could not be coerced to its declared type."""

    def __init__(self, field: str, value: Any, reason: str = "") -> None:
        msg = f"Invalid {field} value ({value!r})"
        if reason:
            msg = f"{msg} - {reason}"
        super().__init__(msg)
        self.field = field
        self.value = value


class UnsupportedTypeError(BqTransferError):
    """A result column has a type or mode that cannot be decoded."""

    def __init__(self, field: str, field_type: str) -> None:
        super().__init__(f"Unsupported field type {field_type} on {field}")
        self.field = field
        self.field_type = field_type


class ConsistencyError(BqTransferError):
    """The service echoed back an identifier that does not match the request."""


class UnknownJobStateError(BqTransferError):
    """A job reported a state outside PENDING, RUNNING and DONE."""

    def __init__(self, state: str, project: str, job_id: str) -> None:
        super().__init__(f"Unknown job status returned - {state} ({project},{job_id})")
        self.state = state


class LoadTimeoutError(BqTransferError):
    """A load job did not finish before the polling deadline."""


class EncodeError(BqTransferError, ValueError):
    """Decoded records cannot be represented in the output format."""
