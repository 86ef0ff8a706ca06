from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class DocumentControlError(Exception):
    pass


class NotFoundError(DocumentControlError):
    pass


class AlreadyAcknowledgedError(DocumentControlError):
    def __init__(self, message: str = "Document already acknowledged and acknowledgment is still valid"):
        super().__init__(message)


class ValidationError(DocumentControlError):
    pass


class VersionConflictError(ValidationError):
    """The document changed between read and write (optimistic version check)."""

    def __init__(self, document_id: int, expected_version: int, actual_version: int):
        self.document_id = document_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Document {document_id} is at version {actual_version}, expected {expected_version}. Reload and retry."
        )


class StorageError(DocumentControlError):
    pass


class CascadeStepError(StorageError):
    """
    A step of the invalidation cascade failed after the version committed.
    Carries what is needed to replay the remaining steps.
    """

    def __init__(self, *, document_id: int, version_number: int, step: str, user_ids: list[int] | None = None):
        self.document_id = document_id
        self.version_number = version_number
        self.step = step
        self.user_ids = list(user_ids or [])
        super().__init__(
            f"Invalidation cascade failed at step {step!r} (document_id={document_id} version={version_number})"
        )


@contextmanager
def storage_errors(action: str, **context: object) -> Iterator[None]:
    """Log and re-raise persistence failures as StorageError."""
    try:
        yield
    except SQLAlchemyError as e:
        ctx = " ".join(f"{k}={v}" for k, v in context.items())
        logger.error("Failed to %s (%s): %s", action, ctx, e)
        raise StorageError(f"Failed to {action}") from e
