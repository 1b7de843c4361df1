"""Error taxonomy for tag query synchronisation.

Every error carries a ``retryable`` flag. Retryable errors send a query's state
machine into backoff; everything else disables the query until an operator
corrects the configuration.
"""

from __future__ import annotations

from sqlalchemy import exc as sa_exc


class SyncError(Exception):
    """Base class for all tag sync errors."""

    retryable: bool = False


class UnsupportedDialect(SyncError):
    """Raised when a dialect identifier is not in the dialect table."""


class SchemaError(SyncError):
    """Raised when a query's result schema cannot be discovered."""


class UnsupportedQueryShape(SchemaError):
    """Raised when a statement falls outside the subset the probe rewriter understands.

    The query is never executed in this case; guessing at the semantics of an
    unparsed statement is not attempted.
    """


class DisallowedStatementKind(SchemaError):
    """Raised for statements that are not plain SELECTs (DML, DDL, SELECT INTO)."""


class MissingColumn(SchemaError):
    """Raised when the probed schema lacks a key column or the tag id column."""


class SchemaMismatch(SyncError):
    """Raised when fetched rows no longer agree with the cached schema."""


class FetchError(SyncError):
    """Base class for database errors while probing or fetching."""


class TransientFetchError(FetchError):
    """Connection loss, timeouts and pool exhaustion. Safe to retry."""

    retryable = True


class PermanentFetchError(FetchError):
    """Malformed SQL or schema problems that need operator intervention."""


class StaleCursor(SyncError):
    """Raised when a cursor commit's base watermark no longer matches the stored one."""


class CursorRegression(SyncError):
    """Raised when a commit would move a watermark backwards."""


def from_database_error(exc: Exception, action: str) -> FetchError:
    """Classify a SQLAlchemy/DBAPI failure as transient or permanent."""
    if isinstance(exc, FetchError):
        return exc
    if isinstance(exc, sa_exc.TimeoutError):
        return TransientFetchError(f"Timed out waiting for a pooled connection while {action}")
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return TransientFetchError(f"Connection lost while {action}: {exc.orig}")
    if isinstance(exc, (sa_exc.InterfaceError, sa_exc.DisconnectionError)):
        return TransientFetchError(f"Database unavailable while {action}: {exc}")
    if isinstance(exc, sa_exc.OperationalError) and _is_transient_operational(exc.orig):
        return TransientFetchError(f"Database unavailable while {action}: {exc.orig}")
    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        return TransientFetchError(f"Database unreachable while {action}: {exc}")
    return PermanentFetchError(f"Query failed while {action}: {exc}")


# MySQL server/client error numbers for lost connections, lock timeouts and deadlocks
_MYSQL_TRANSIENT = {1040, 1053, 1205, 1213, 2002, 2003, 2005, 2006, 2013, 2055, 3024}
# ODBC SQLSTATEs outside the 08xxx connection class that are still retryable
_ODBC_TRANSIENT = {"HYT00", "HYT01", "40001"}
_TRANSIENT_MARKERS = ("database is locked", "timeout", "timed out", "could not connect", "server closed", "connection")


def _is_transient_operational(orig: object) -> bool:
    args = getattr(orig, "args", ()) or ()
    code = args[0] if args else None
    if isinstance(code, int):
        return code in _MYSQL_TRANSIENT
    if isinstance(code, str) and len(code) == 5 and code.isalnum() and code.isupper():
        return code.startswith("08") or code in _ODBC_TRANSIENT
    message = str(orig).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)
