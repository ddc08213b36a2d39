"""
Custom exceptions for the formsync store client and delivery pipeline.

Store failures are mapped from psycopg errors; integration failures carry the
remote status code so the recovery engine can classify them.
"""

from __future__ import annotations

from typing import Optional


class FormSyncError(Exception):
    """Base error for formsync."""

    pass


class ValidationError(FormSyncError):
    """Bad caller input. Never retried."""

    pass


class StoreError(FormSyncError):
    """Backing store failure."""

    pass


class RetryableStoreError(StoreError):
    """Temporary store errors (serialization, deadlock, lost connection)."""

    pass


class ConstraintViolation(StoreError):
    """Database constraint violations (unique, foreign key, etc.)."""

    pass


class SchemaMissing(StoreError):
    """A table the operation needs has not been provisioned yet."""

    pass


class StoreTimeout(StoreError):
    """Query or connection timeout errors."""

    pass


class IntegrationError(FormSyncError):
    """Failure reported by (or while talking to) an external integration."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code or 0


class TransientIntegrationError(IntegrationError):
    """Integration failure classified as recoverable."""

    pass


class FatalIntegrationError(IntegrationError):
    """Integration failure that will not be retried."""

    pass


def map_db_error(e: Exception) -> StoreError:
    import psycopg
    import psycopg.errors as E

    if isinstance(e, E.UndefinedTable):
        return SchemaMissing(str(e))
    if isinstance(e, (E.UniqueViolation, E.CheckViolation, E.ForeignKeyViolation)):
        return ConstraintViolation(str(e))
    if isinstance(e, E.QueryCanceled):
        return StoreTimeout(str(e))
    if isinstance(e, (E.SerializationFailure, E.DeadlockDetected, psycopg.OperationalError)):
        return RetryableStoreError(str(e))
    return StoreError(str(e))
