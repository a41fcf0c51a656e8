"""
tests/test_runtime.py
Unit tests for pgforge/runtime.py, the support module shipped inside every
generated package.

Tests cover:
- Limit clamping and the cursor codec
- Keyset pagination completeness over a full walk
- Error classification by SQLSTATE, diagnostics and exception type
- Retry allow-list, backoff schedule and cancellation
- Query helpers wrapping driver failures
"""

from __future__ import annotations

import asyncio
import base64
import uuid
from typing import Any, List, Optional, Sequence
from uuid import UUID

import pytest
from psycopg.adapt import PyFormat, Transformer
from psycopg.types.json import Json, Jsonb

from conftest import FakeAsyncConnection, FakeDriverError
from pgforge import runtime
from pgforge.runtime import (
    AlreadyExistsError,
    InvalidCursorError,
    InvalidReferenceError,
    NotFoundError,
    PaginationParams,
    QueryTimeoutError,
    RepositoryConnectionError,
    RequiredFieldMissingError,
    RetryConfig,
    RetryExhaustedError,
    UnclassifiedError,
    ValidationFailedError,
    build_page,
    clamp_limit,
    classify_error,
    decode_cursor,
    encode_cursor,
    is_retryable,
    paginate,
    retry_operation,
)


# ===========================================================================
# Pagination
# ===========================================================================


class TestClampLimit:
    @pytest.mark.parametrize(
        "given, expected",
        [(None, 20), (0, 20), (-5, 20), (1, 1), (20, 20), (100, 100), (101, 100), (500, 100)],
    )
    def test_clamp(self, given: Optional[int], expected: int) -> None:
        assert clamp_limit(given) == expected


class TestCursor:
    def test_round_trip(self) -> None:
        key = uuid.uuid4()
        cursor = encode_cursor(key)
        assert "=" not in cursor
        assert decode_cursor(cursor) == key

    def test_url_safe(self) -> None:
        key = UUID(bytes=b"\xfb\xff" * 8)
        cursor = encode_cursor(key)
        assert "+" not in cursor and "/" not in cursor
        assert decode_cursor(cursor) == key

    @pytest.mark.parametrize("cursor", ["", "not a cursor!", "%%%%"])
    def test_malformed(self, cursor: str) -> None:
        with pytest.raises(InvalidCursorError):
            decode_cursor(cursor)

    def test_wrong_length(self) -> None:
        short = base64.urlsafe_b64encode(b"x" * 15).decode("ascii").rstrip("=")
        with pytest.raises(InvalidCursorError, match="expected 16 bytes"):
            decode_cursor(short)

    def test_tampered_cursor(self) -> None:
        cursor = encode_cursor(uuid.uuid4())
        with pytest.raises(InvalidCursorError):
            decode_cursor(cursor + "A")

    def test_invalid_cursor_is_value_error(self) -> None:
        assert issubclass(InvalidCursorError, ValueError)


class TestBuildPage:
    def test_extra_row_sets_has_more(self) -> None:
        keys = sorted(uuid.uuid4() for _ in range(4))
        page = build_page(keys, 3, key=lambda k: k)
        assert page.items == keys[:3]
        assert page.has_more is True
        assert decode_cursor(page.next_cursor) == keys[2]

    def test_last_page(self) -> None:
        keys = sorted(uuid.uuid4() for _ in range(2))
        page = build_page(keys, 3, key=lambda k: k)
        assert page.has_more is False
        assert page.next_cursor is None

    def test_empty(self) -> None:
        page = build_page([], 20, key=lambda k: k)
        assert page.items == []
        assert page.has_more is False

    def test_null_key_on_last_row_is_rejected(self) -> None:
        rows = [uuid.uuid4(), None, None]
        with pytest.raises(ValueError, match="NULL key"):
            build_page(rows, 2, key=lambda k: k)

    def test_null_key_before_the_last_row_is_fine(self) -> None:
        last = uuid.uuid4()
        page = build_page([None, last, uuid.uuid4()], 2, key=lambda k: k)
        assert decode_cursor(page.next_cursor) == last


def _table_fetch(rows: Sequence[UUID], calls: List[Any]):
    async def fetch(after: Optional[UUID], limit: int) -> List[UUID]:
        calls.append((after, limit))
        eligible = [r for r in rows if after is None or r > after]
        return eligible[:limit]

    return fetch


class TestPaginate:
    def test_full_walk_is_complete_and_disjoint(self) -> None:
        rows = sorted(uuid.uuid4() for _ in range(25))
        calls: List[Any] = []
        fetch = _table_fetch(rows, calls)

        async def walk() -> List[List[UUID]]:
            pages: List[List[UUID]] = []
            params = PaginationParams(limit=10)
            while True:
                page = await paginate(fetch, params, key=lambda k: k)
                pages.append(list(page.items))
                if not page.has_more:
                    assert page.next_cursor is None
                    return pages
                params = PaginationParams(cursor=page.next_cursor, limit=10)

        pages = asyncio.run(walk())
        assert [len(p) for p in pages] == [10, 10, 5]
        assert [k for p in pages for k in p] == rows
        assert [limit for _, limit in calls] == [11, 11, 11]

    def test_defaults_when_params_missing(self) -> None:
        rows = sorted(uuid.uuid4() for _ in range(30))
        calls: List[Any] = []
        page = asyncio.run(paginate(_table_fetch(rows, calls), None, key=lambda k: k))
        assert len(page.items) == 20
        assert calls == [(None, 21)]

    def test_limit_is_clamped(self) -> None:
        calls: List[Any] = []
        asyncio.run(paginate(_table_fetch([], calls), PaginationParams(limit=1000), key=lambda k: k))
        asyncio.run(paginate(_table_fetch([], calls), PaginationParams(limit=-1), key=lambda k: k))
        assert [limit for _, limit in calls] == [101, 21]

    def test_invalid_cursor_raises_before_fetching(self) -> None:
        calls: List[Any] = []
        with pytest.raises(InvalidCursorError):
            asyncio.run(
                paginate(_table_fetch([], calls), PaginationParams(cursor="bogus!"), key=lambda k: k)
            )
        assert calls == []


# ===========================================================================
# Error classification
# ===========================================================================


class TestClassifyError:
    @pytest.mark.parametrize(
        "sqlstate, expected",
        [
            ("23505", AlreadyExistsError),
            ("23503", InvalidReferenceError),
            ("23514", ValidationFailedError),
            ("23502", RequiredFieldMissingError),
            ("57014", QueryTimeoutError),
            ("08006", RepositoryConnectionError),
            ("42P01", UnclassifiedError),
        ],
    )
    def test_by_sqlstate(self, sqlstate: str, expected: type) -> None:
        exc = FakeDriverError("boom", sqlstate=sqlstate)
        error = classify_error(exc, "create", "users")
        assert type(error) is expected
        assert error.operation == "create"
        assert error.entity == "users"
        assert error.sqlstate == sqlstate
        assert error.__cause__ is exc
        assert error.cause is exc

    def test_required_field_from_diagnostics(self) -> None:
        exc = FakeDriverError("null value", sqlstate="23502", column="email")
        error = classify_error(exc, "create", "users")
        assert isinstance(error, RequiredFieldMissingError)
        assert error.column == "email"
        assert "'email'" in str(error)

    def test_required_field_from_message(self) -> None:
        exc = FakeDriverError(
            'null value in column "title" of relation "posts" violates not-null constraint',
            sqlstate="23502",
        )
        assert classify_error(exc, "create", "posts").column == "title"

    def test_timeout_exception(self) -> None:
        error = classify_error(TimeoutError(), "list", "users")
        assert isinstance(error, QueryTimeoutError)
        assert error.kind == runtime.ErrorKind.TIMEOUT

    @pytest.mark.parametrize(
        "exc",
        [
            ConnectionRefusedError("refused"),
            OSError("server closed the connection unexpectedly"),
            RuntimeError("the connection is lost"),
        ],
    )
    def test_connection_failures(self, exc: BaseException) -> None:
        assert isinstance(classify_error(exc, "get", "users"), RepositoryConnectionError)

    def test_anything_else_is_unclassified(self) -> None:
        error = classify_error(ValueError("weird"), "get", "users")
        assert isinstance(error, UnclassifiedError)
        assert error.kind == runtime.ErrorKind.UNKNOWN
        assert str(error) == "get users: unknown: weird"

    def test_already_classified_passes_through(self) -> None:
        original = NotFoundError("get", "users", "no row")
        assert classify_error(original, "other", "thing") is original


# ===========================================================================
# Retry
# ===========================================================================


class TestRetryPolicy:
    @pytest.mark.parametrize("sqlstate", ["40001", "40P01", "53000", "53100", "53200", "53300"])
    def test_retryable_sqlstates(self, sqlstate: str) -> None:
        assert is_retryable(FakeDriverError("x", sqlstate=sqlstate))

    @pytest.mark.parametrize("sqlstate", ["23505", "23503", "23502", "57014", "42601"])
    def test_not_retryable_sqlstates(self, sqlstate: str) -> None:
        assert not is_retryable(FakeDriverError("x", sqlstate=sqlstate))

    def test_classified_errors(self) -> None:
        assert is_retryable(RepositoryConnectionError("get", "users"))
        assert is_retryable(UnclassifiedError("get", "users", sqlstate="40001"))
        assert not is_retryable(NotFoundError("get", "users"))
        assert not is_retryable(QueryTimeoutError("get", "users"))

    def test_backoff_schedule(self) -> None:
        config = RetryConfig(max_attempts=6, base_delay=0.1, max_delay=0.5)
        assert [config.delay_for(n) for n in range(1, 6)] == pytest.approx(
            [0.1, 0.2, 0.4, 0.5, 0.5]
        )

    @pytest.mark.parametrize(
        "kwargs", [{"max_attempts": 0}, {"base_delay": -1.0}, {"max_delay": -0.5}]
    )
    def test_invalid_config(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)


class _Flaky:
    """Raises the queued errors in order, then returns ``result``."""

    def __init__(self, *errors: BaseException, result: Any = "ok") -> None:
        self.errors: List[BaseException] = list(errors)
        self.result: Any = result
        self.calls: int = 0

    async def __call__(self) -> Any:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class _Sleeps:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestRetryOperation:
    def test_success_first_time(self) -> None:
        fn, sleep = _Flaky(), _Sleeps()
        assert asyncio.run(retry_operation("get", fn, sleep=sleep)) == "ok"
        assert fn.calls == 1
        assert sleep.delays == []

    def test_recovers_after_transient_errors(self) -> None:
        fn = _Flaky(FakeDriverError("deadlock", "40P01"), RepositoryConnectionError("get", "users"))
        sleep = _Sleeps()
        assert asyncio.run(retry_operation("get", fn, sleep=sleep)) == "ok"
        assert fn.calls == 3
        assert sleep.delays == pytest.approx([0.1, 0.2])

    def test_exhausts_exactly_max_attempts(self) -> None:
        errors = [FakeDriverError("serialization", "40001") for _ in range(10)]
        fn, sleep = _Flaky(*errors), _Sleeps()
        with pytest.raises(RetryExhaustedError) as excinfo:
            asyncio.run(retry_operation("update", fn, RetryConfig(max_attempts=3), sleep=sleep))
        assert fn.calls == 3
        assert sleep.delays == pytest.approx([0.1, 0.2])
        assert excinfo.value.attempts == 3
        assert excinfo.value.operation == "update"
        assert excinfo.value.last_error.sqlstate == "40001"
        assert excinfo.value.__cause__ is excinfo.value.last_error

    def test_single_attempt_config(self) -> None:
        fn, sleep = _Flaky(FakeDriverError("busy", "53300")), _Sleeps()
        with pytest.raises(RetryExhaustedError):
            asyncio.run(retry_operation("get", fn, RetryConfig(max_attempts=1), sleep=sleep))
        assert fn.calls == 1
        assert sleep.delays == []

    def test_non_retryable_propagates_unchanged(self) -> None:
        error = AlreadyExistsError("create", "users", "duplicate key", sqlstate="23505")
        fn, sleep = _Flaky(error), _Sleeps()
        with pytest.raises(AlreadyExistsError) as excinfo:
            asyncio.run(retry_operation("create", fn, sleep=sleep))
        assert excinfo.value is error
        assert fn.calls == 1

    def test_cancellation_propagates(self) -> None:
        fn, sleep = _Flaky(asyncio.CancelledError()), _Sleeps()

        async def scenario() -> None:
            with pytest.raises(asyncio.CancelledError):
                await retry_operation("get", fn, sleep=sleep)

        asyncio.run(scenario())
        assert fn.calls == 1
        assert sleep.delays == []

    def test_cancellation_while_sleeping(self) -> None:
        fn = _Flaky(FakeDriverError("deadlock", "40P01"))

        async def cancelled_sleep(delay: float) -> None:
            raise asyncio.CancelledError()

        async def scenario() -> None:
            with pytest.raises(asyncio.CancelledError):
                await retry_operation("get", fn, sleep=cancelled_sleep)

        asyncio.run(scenario())
        assert fn.calls == 1


# ===========================================================================
# Query helpers
# ===========================================================================


class TestQueryHelpers:
    def test_fetch_one(self) -> None:
        conn = FakeAsyncConnection(lambda q, a: [{"id": 1}, {"id": 2}])
        row = asyncio.run(runtime.fetch_one(conn, "SELECT", (1,), operation="get", entity="t"))
        assert row == {"id": 1}
        assert conn.executed == [("SELECT", (1,))]

    def test_fetch_one_empty(self) -> None:
        conn = FakeAsyncConnection(lambda q, a: [])
        assert asyncio.run(runtime.fetch_one(conn, "SELECT", (), operation="get", entity="t")) is None

    def test_fetch_all(self) -> None:
        conn = FakeAsyncConnection(lambda q, a: [{"n": 1}, {"n": 2}])
        rows = asyncio.run(runtime.fetch_all(conn, "SELECT", {}, operation="list", entity="t"))
        assert rows == [{"n": 1}, {"n": 2}]

    def test_execute_returns_rowcount(self) -> None:
        conn = FakeAsyncConnection(lambda q, a: 3)
        assert asyncio.run(runtime.execute(conn, "DELETE", (), operation="delete", entity="t")) == 3

    def test_driver_errors_are_classified(self) -> None:
        driver_error = FakeDriverError("duplicate key", sqlstate="23505")
        conn = FakeAsyncConnection(lambda q, a: driver_error)
        with pytest.raises(AlreadyExistsError) as excinfo:
            asyncio.run(runtime.fetch_one(conn, "INSERT", (), operation="create", entity="users"))
        assert excinfo.value.operation == "create"
        assert excinfo.value.entity == "users"
        assert excinfo.value.__cause__ is driver_error


class TestJsonParam:
    def test_dict_is_wrapped_as_jsonb(self) -> None:
        wrapped = runtime.json_param({"a": 1})
        assert isinstance(wrapped, Jsonb)
        assert wrapped.obj == {"a": 1}

    def test_plain_json(self) -> None:
        wrapped = runtime.json_param([1, 2], binary=False)
        assert type(wrapped) is Json

    def test_none_stays_null(self) -> None:
        assert runtime.json_param(None) is None
        assert runtime.json_param(None, array=True) is None

    def test_array_wraps_each_element(self) -> None:
        wrapped = runtime.json_param([{"a": 1}, None], array=True)
        assert isinstance(wrapped[0], Jsonb)
        assert wrapped[1] is None

    def test_psycopg_can_dump_wrapped_values(self) -> None:
        values = [runtime.json_param({"a": [1, 2]}), runtime.json_param([1], binary=False)]
        dumped = Transformer().dump_sequence(values, [PyFormat.TEXT, PyFormat.TEXT])
        assert bytes(dumped[0]) == b'{"a": [1, 2]}'
        assert bytes(dumped[1]) == b"[1]"
