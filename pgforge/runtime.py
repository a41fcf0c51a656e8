"""
Shared runtime support for generated repositories.

This file is copied verbatim into every generated package as
``runtime.py``; repositories import it as ``from . import runtime``.
It contains:

- cursor pagination (``PaginationParams``, ``Page``, cursor codec, limit
  clamp and the ``paginate`` driver);
- the error taxonomy (``RepositoryError`` and its subclasses) and
  ``classify_error``, which turns driver exceptions into it;
- the retry policy (``RetryConfig``, ``is_retryable``, ``retry_operation``);
- small query helpers that apply the classification to every call.

Pagination contract: rows are walked in ascending primary-key order, keyed
by UUIDs whose ordering follows insertion time.  Under that precondition
consecutive pages never overlap and never skip rows.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Sequence,
    TypeVar,
    Union,
)
from uuid import UUID

from psycopg.rows import dict_row
from psycopg.types.json import Json, Jsonb
from pydantic import BaseModel, ConfigDict, Field

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

DEFAULT_LIMIT: int = 20
MAX_LIMIT: int = 100


class InvalidCursorError(ValueError):
    """A pagination cursor could not be decoded."""

    def __init__(self, cursor: str, reason: str) -> None:
        self.cursor: str = cursor
        self.reason: str = reason
        super().__init__(f"invalid cursor {cursor!r}: {reason}")


class PaginationParams(BaseModel):
    """Request for one page.  ``cursor=None`` asks for the first page."""

    model_config = ConfigDict(frozen=True)

    cursor: Optional[str] = None
    limit: int = DEFAULT_LIMIT


class Page(BaseModel, Generic[T]):
    """One page of results; ``next_cursor`` is set only when ``has_more``."""

    model_config = ConfigDict(frozen=True)

    items: List[T] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None


def clamp_limit(limit: Optional[int]) -> int:
    """Non-positive or missing limits become 20; anything above 100 becomes 100."""
    if limit is None or limit <= 0:
        return DEFAULT_LIMIT
    return min(limit, MAX_LIMIT)


def encode_cursor(key: UUID) -> str:
    """URL-safe base64 of the key's 16 bytes, without padding."""
    return base64.urlsafe_b64encode(key.bytes).rstrip(b"=").decode("ascii")


def decode_cursor(cursor: str) -> UUID:
    """Inverse of ``encode_cursor``.  Anything malformed raises ``InvalidCursorError``."""
    if not isinstance(cursor, str) or not cursor:
        raise InvalidCursorError(str(cursor), "empty cursor")
    padded: str = cursor + "=" * (-len(cursor) % 4)
    try:
        raw: bytes = base64.b64decode(padded, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidCursorError(cursor, "not base64") from exc
    if len(raw) != 16:
        raise InvalidCursorError(cursor, f"expected 16 bytes, got {len(raw)}")
    return UUID(bytes=raw)


def build_page(rows: Sequence[T], limit: int, key: Callable[[T], UUID]) -> Page[T]:
    """Turn up to ``limit + 1`` fetched rows into a page."""
    has_more: bool = len(rows) > limit
    items: List[T] = list(rows[:limit])
    next_cursor: Optional[str] = None
    if has_more and items:
        last_key: Optional[UUID] = key(items[-1])
        if last_key is None:
            raise ValueError("the last row of a page has a NULL key; it cannot be used as a cursor")
        next_cursor = encode_cursor(last_key)
    return Page(items=items, has_more=has_more, next_cursor=next_cursor)


async def paginate(
    fetch: Callable[[Optional[UUID], int], Awaitable[Sequence[T]]],
    params: Optional[PaginationParams],
    key: Callable[[T], UUID],
) -> Page[T]:
    """
    Run one step of keyset pagination.

    *fetch(after, n)* must return at most *n* rows with key greater than
    *after* (all rows when *after* is None), ordered by key ascending.
    """
    params = params or PaginationParams()
    limit: int = clamp_limit(params.limit)
    after: Optional[UUID] = decode_cursor(params.cursor) if params.cursor else None
    rows: Sequence[T] = await fetch(after, limit + 1)
    return build_page(rows, limit, key)


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    INVALID_REFERENCE = "invalid_reference"
    VALIDATION_FAILED = "validation_failed"
    REQUIRED_FIELD_MISSING = "required_field_missing"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    UNKNOWN = "unknown"


class RepositoryError(Exception):
    """
    Structured failure of a repository operation.

    The driver exception, when there is one, is available as ``__cause__``
    (and ``cause``).
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        operation: str,
        entity: str,
        detail: str = "",
        *,
        cause: Optional[BaseException] = None,
        sqlstate: Optional[str] = None,
    ) -> None:
        self.operation: str = operation
        self.entity: str = entity
        self.detail: str = detail
        self.cause: Optional[BaseException] = cause
        self.sqlstate: Optional[str] = sqlstate
        message: str = f"{operation} {entity}: {self.kind.value}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause


class NotFoundError(RepositoryError):
    kind = ErrorKind.NOT_FOUND


class AlreadyExistsError(RepositoryError):
    kind = ErrorKind.ALREADY_EXISTS


class InvalidReferenceError(RepositoryError):
    kind = ErrorKind.INVALID_REFERENCE


class ValidationFailedError(RepositoryError):
    kind = ErrorKind.VALIDATION_FAILED


class RequiredFieldMissingError(RepositoryError):
    kind = ErrorKind.REQUIRED_FIELD_MISSING

    def __init__(
        self,
        operation: str,
        entity: str,
        column: str = "",
        *,
        cause: Optional[BaseException] = None,
        sqlstate: Optional[str] = None,
    ) -> None:
        self.column: str = column
        detail: str = f"column {column!r} is required" if column else "a required column is null"
        super().__init__(operation, entity, detail, cause=cause, sqlstate=sqlstate)


class QueryTimeoutError(RepositoryError):
    kind = ErrorKind.TIMEOUT


class RepositoryConnectionError(RepositoryError):
    kind = ErrorKind.CONNECTION


class UnclassifiedError(RepositoryError):
    kind = ErrorKind.UNKNOWN


_SQLSTATE_KINDS: Dict[str, type] = {
    "23505": AlreadyExistsError,
    "23503": InvalidReferenceError,
    "23514": ValidationFailedError,
    "23502": RequiredFieldMissingError,
    "57014": QueryTimeoutError,  # query_canceled (statement_timeout)
}

_CONNECTION_KEYWORDS: tuple = (
    "connection refused",
    "connection reset",
    "connection closed",
    "connection timed out",
    "server closed the connection",
    "broken pipe",
    "no route to host",
    "network is unreachable",
    "could not connect",
    "the connection is lost",
    "connection is closed",
    "terminating connection",
)

_NOT_NULL_COLUMN_RE: re.Pattern = re.compile(r'null value in column "([^"]+)"')


def _sqlstate(exc: BaseException) -> Optional[str]:
    code = getattr(exc, "sqlstate", None)
    if isinstance(code, str) and code:
        return code
    return None


def _is_connection_failure(exc: BaseException, sqlstate: Optional[str]) -> bool:
    if sqlstate is not None and sqlstate.startswith("08"):
        return True
    if isinstance(exc, (ConnectionError, BrokenPipeError)):
        return True
    message: str = str(exc).lower()
    return any(keyword in message for keyword in _CONNECTION_KEYWORDS)


def _missing_column(exc: BaseException) -> str:
    diag = getattr(exc, "diag", None)
    column = getattr(diag, "column_name", None) if diag is not None else None
    if column:
        return str(column)
    match = _NOT_NULL_COLUMN_RE.search(str(exc))
    return match.group(1) if match else ""


def classify_error(exc: BaseException, operation: str, entity: str) -> RepositoryError:
    """
    Map any exception raised while talking to the database onto the taxonomy.

    Already-classified errors are returned unchanged.  The original exception
    becomes the cause of the returned error.
    """
    if isinstance(exc, RepositoryError):
        return exc

    sqlstate: Optional[str] = _sqlstate(exc)
    if sqlstate == "23502":
        return RequiredFieldMissingError(
            operation, entity, _missing_column(exc), cause=exc, sqlstate=sqlstate
        )
    if sqlstate in _SQLSTATE_KINDS:
        return _SQLSTATE_KINDS[sqlstate](
            operation, entity, str(exc), cause=exc, sqlstate=sqlstate
        )
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return QueryTimeoutError(operation, entity, "deadline exceeded", cause=exc)
    if _is_connection_failure(exc, sqlstate):
        return RepositoryConnectionError(
            operation, entity, str(exc), cause=exc, sqlstate=sqlstate
        )
    return UnclassifiedError(operation, entity, str(exc), cause=exc, sqlstate=sqlstate)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

# serialization_failure, deadlock_detected, insufficient_resources,
# disk_full, out_of_memory, too_many_connections
RETRYABLE_SQLSTATES: frozenset = frozenset(
    {"40001", "40P01", "53000", "53100", "53200", "53300"}
)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff is ``base_delay * 2 ** (attempt - 1)`` seconds, capped at ``max_delay``."""

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Sleep before retrying after failed *attempt* (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


DEFAULT_RETRY_CONFIG: RetryConfig = RetryConfig()


class RetryExhaustedError(Exception):
    """Every allowed attempt failed with a retryable error."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        self.operation: str = operation
        self.attempts: int = attempts
        self.last_error: BaseException = last_error
        super().__init__(f"{operation}: gave up after {attempts} attempt(s): {last_error}")
        self.__cause__ = last_error


def is_retryable(exc: BaseException) -> bool:
    """Only serialization failures, deadlocks, resource exhaustion and lost connections."""
    sqlstate: Optional[str] = (
        exc.sqlstate if isinstance(exc, RepositoryError) else _sqlstate(exc)
    )
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    if isinstance(exc, RepositoryError):
        return exc.kind is ErrorKind.CONNECTION
    return _is_connection_failure(exc, sqlstate)


async def retry_operation(
    operation: str,
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await ``fn()`` until it succeeds, fails with a non-retryable error, or
    ``config.max_attempts`` attempts have been made.

    Non-retryable errors propagate unchanged after a single attempt.
    Cancellation (``asyncio.CancelledError``) propagates immediately, also
    while sleeping between attempts.
    """
    attempt: int = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt >= config.max_attempts:
                raise RetryExhaustedError(operation, attempt, exc) from exc
            delay: float = config.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.3fs: %s",
                operation,
                attempt,
                config.max_attempts,
                delay,
                exc,
            )
            await sleep(delay)


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------

QueryArgs = Union[Sequence[Any], Dict[str, Any]]


def json_param(value: Any, binary: bool = True, array: bool = False) -> Any:
    """
    Wrap a JSON document so psycopg sends it as json / jsonb.

    Unwrapped, a ``dict`` cannot be adapted and a ``list`` would become a
    PostgreSQL array.  ``None`` stays SQL NULL.  With *array* every element
    is wrapped instead, for ``json[]`` / ``jsonb[]`` values.
    """
    if value is None:
        return None
    wrapper = Jsonb if binary else Json
    if array:
        return [None if item is None else wrapper(item) for item in value]
    return wrapper(value)


async def fetch_one(
    conn: Any, query: str, args: QueryArgs, *, operation: str, entity: str
) -> Optional[Dict[str, Any]]:
    try:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(query, args)
            return await cur.fetchone()
    except Exception as exc:
        raise classify_error(exc, operation, entity) from exc


async def fetch_all(
    conn: Any, query: str, args: QueryArgs, *, operation: str, entity: str
) -> List[Dict[str, Any]]:
    try:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(query, args)
            return await cur.fetchall()
    except Exception as exc:
        raise classify_error(exc, operation, entity) from exc


async def execute(
    conn: Any, query: str, args: QueryArgs, *, operation: str, entity: str
) -> int:
    """Run a statement and return the number of affected rows."""
    try:
        async with conn.cursor() as cur:
            await cur.execute(query, args)
            return cur.rowcount
    except Exception as exc:
        raise classify_error(exc, operation, entity) from exc


__all__: List[str] = [
    "DEFAULT_LIMIT",
    "MAX_LIMIT",
    "InvalidCursorError",
    "PaginationParams",
    "Page",
    "clamp_limit",
    "encode_cursor",
    "decode_cursor",
    "build_page",
    "paginate",
    "ErrorKind",
    "RepositoryError",
    "NotFoundError",
    "AlreadyExistsError",
    "InvalidReferenceError",
    "ValidationFailedError",
    "RequiredFieldMissingError",
    "QueryTimeoutError",
    "RepositoryConnectionError",
    "UnclassifiedError",
    "classify_error",
    "RETRYABLE_SQLSTATES",
    "RetryConfig",
    "DEFAULT_RETRY_CONFIG",
    "RetryExhaustedError",
    "is_retryable",
    "retry_operation",
    "json_param",
    "fetch_one",
    "fetch_all",
    "execute",
]
