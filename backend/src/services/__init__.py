"""
Service layer for business logic.

Service classes are imported from their modules directly
(e.g. ``from backend.src.services.status_workflow import StatusWorkflowService``);
this package only re-exports the shared exception types.
"""

from backend.src.services.exceptions import (
    ServiceError,
    NotFoundError,
    ConflictError,
    ValidationError,
    AmbiguousMatchError,
    PartialBatchFailure,
    ProviderError,
)

__all__ = [
    "ServiceError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "AmbiguousMatchError",
    "PartialBatchFailure",
    "ProviderError",
]
