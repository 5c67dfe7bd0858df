"""Error types raised by the meter backend."""
from __future__ import annotations


class MeterError(Exception):
    """Base error carrying the HTTP status the API layer should answer with."""

    status_code = 400

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(MeterError):
    status_code = 404


class InvalidInputError(MeterError):
    status_code = 400


class ConflictError(MeterError):
    """Raised when a write raced another writer; the operation may be retried."""

    status_code = 409


class StorageError(MeterError):
    """Raised when the store could not persist a change. Nothing was committed."""

    status_code = 500
