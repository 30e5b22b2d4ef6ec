"""
Custom exceptions for service layer.

Provides specific exception types for business logic errors
that can be translated to appropriate HTTP responses.
"""

from typing import TYPE_CHECKING, Any, List, Optional

if TYPE_CHECKING:
    from backend.src.utils.batch_runner import PassReport


class ServiceError(Exception):
    """Base exception for service layer errors."""
    pass


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class ConflictError(ServiceError):
    """Raised when a version-guarded write lost against a concurrent writer.

    Carries the state observed after the failed write so the caller can
    refresh and retry.
    """

    def __init__(
        self,
        message: str,
        current_version: Optional[int] = None,
        expected_version: Optional[int] = None,
        current_status: Optional[str] = None,
        last_modified_by: Optional[str] = None,
    ):
        self.message = message
        self.current_version = current_version
        self.expected_version = expected_version
        self.current_status = current_status
        self.last_modified_by = last_modified_by
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "current_version": self.current_version,
            "expected_version": self.expected_version,
            "current_status": self.current_status,
            "last_modified_by": self.last_modified_by,
        }


class ValidationError(ServiceError):
    """Raised when input validation fails."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class AmbiguousMatchError(ServiceError):
    """Raised when more than one record is equally plausible for a candidate."""

    def __init__(self, key: str, candidate_guids: List[str]):
        self.key = key
        self.candidate_guids = list(candidate_guids)
        self.message = (
            f"Ambiguous match for '{key}': "
            f"{len(self.candidate_guids)} candidates ({', '.join(self.candidate_guids)})"
        )
        super().__init__(self.message)


class PartialBatchFailure(ServiceError):
    """Raised when a batch pass finished with failed items or chunks."""

    def __init__(self, report: "PassReport"):
        self.report = report
        self.message = (
            f"Batch pass '{report.name}' finished with "
            f"{report.failed} failed item(s) and {report.failed_chunks} failed chunk(s)"
        )
        super().__init__(self.message)


class ProviderError(ServiceError):
    """Raised when communication with the calendar provider fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)
