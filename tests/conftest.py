"""
tests/conftest.py
Shared fixtures for the pgforge test suite.

No live PostgreSQL is needed: ``FakeDatabase`` answers the catalog queries
issued by ``Introspector`` and ``QueryAnalyzer`` from in-memory data, and
``FakeAsyncConnection`` stands in for psycopg's ``AsyncConnection`` when
generated repositories are imported and exercised.  Real file I/O happens
inside pytest's ``tmp_path``.
"""

from __future__ import annotations

import copy
import importlib
import pathlib
import sys
import textwrap
import threading
import uuid
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import pytest

from pgforge.database import FieldDescription, StatementDescription
from pgforge.errors import GenerationCancelledError, QueryPrepareError
from pgforge.introspect import COLUMNS_SQL, PRIMARY_KEY_SQL, TABLES_SQL
from pgforge.models import GenerationConfig
from pgforge.query_parser import NOT_NULL_SQL, TYPE_LOOKUP_SQL


# ---------------------------------------------------------------------------
# Catalog data
# ---------------------------------------------------------------------------

UUID_OID: int = 2950
TEXT_OID: int = 25
INT4_OID: int = 23
INT8_OID: int = 20
BOOL_OID: int = 16
TIMESTAMPTZ_OID: int = 1184
TEXT_ARRAY_OID: int = 1009
POINT_OID: int = 600

USERS_OID: int = 16401
POSTS_OID: int = 16420

# oid -> (typname, typcategory, element typname)
TYPE_CATALOG: Dict[int, Tuple[str, str, Optional[str]]] = {
    UUID_OID: ("uuid", "U", None),
    TEXT_OID: ("text", "S", None),
    INT4_OID: ("int4", "N", None),
    INT8_OID: ("int8", "N", None),
    BOOL_OID: ("bool", "B", None),
    TIMESTAMPTZ_OID: ("timestamptz", "D", None),
    TEXT_ARRAY_OID: ("_text", "A", "text"),
    POINT_OID: ("point", "G", None),
}

# table oid -> {attnum: attnotnull}
ATTRIBUTE_CATALOG: Dict[int, Dict[int, bool]] = {
    USERS_OID: {1: True, 2: True, 3: False, 4: True, 5: False},
    POSTS_OID: {1: True, 2: True, 3: True, 4: False, 5: True},
}


def column_row(
    name: str,
    data_type: str,
    position: int,
    *,
    udt_name: Optional[str] = None,
    nullable: bool = False,
    default: Optional[str] = None,
    identity: bool = False,
    generated: bool = False,
    max_length: Optional[int] = None,
) -> Dict[str, Any]:
    """One ``information_schema.columns`` row."""
    return {
        "column_name": name,
        "data_type": data_type,
        "udt_name": udt_name or data_type,
        "is_nullable": "YES" if nullable else "NO",
        "column_default": default,
        "is_identity": "YES" if identity else "NO",
        "is_generated": "ALWAYS" if generated else "NEVER",
        "ordinal_position": position,
        "character_maximum_length": max_length,
    }


SAMPLE_CATALOG: Dict[str, Dict[str, Any]] = {
    "users": {
        "primary_key": ["id"],
        "columns": [
            column_row("id", "uuid", 1, default="gen_random_uuid()"),
            column_row("email", "text", 2),
            column_row(
                "name", "character varying", 3,
                udt_name="varchar", nullable=True, max_length=120,
            ),
            column_row(
                "created_at", "timestamp with time zone", 4,
                udt_name="timestamptz", default="now()",
            ),
            column_row("tags", "ARRAY", 5, udt_name="_text", nullable=True),
        ],
    },
    "posts": {
        "primary_key": ["id"],
        "columns": [
            column_row("id", "uuid", 1, default="gen_random_uuid()"),
            column_row("author_id", "uuid", 2),
            column_row("title", "text", 3),
            column_row("body", "text", 4, nullable=True),
            column_row("published", "boolean", 5, udt_name="bool", default="false"),
        ],
    },
    "audit_log": {
        "primary_key": ["id"],
        "columns": [
            column_row("id", "bigint", 1, udt_name="int8", identity=True),
            column_row("message", "text", 2),
        ],
    },
}


# Document and network columns; kept apart so the main catalog stays small.
DEVICES_CATALOG: Dict[str, Dict[str, Any]] = {
    "devices": {
        "primary_key": ["id"],
        "columns": [
            column_row("id", "uuid", 1, default="gen_random_uuid()"),
            column_row("meta", "jsonb", 2),
            column_row("addr", "inet", 3, nullable=True),
            column_row("subnet", "cidr", 4, nullable=True),
            column_row("labels", "ARRAY", 5, udt_name="_jsonb", nullable=True),
        ],
    },
}

def _field(name: str, oid: int, table_oid: int = 0, attnum: int = 0) -> FieldDescription:
    return FieldDescription(name=name, type_oid=oid, table_oid=table_oid, column_number=attnum)


SAMPLE_DESCRIPTIONS: Dict[str, StatementDescription] = {
    "GetUserByEmail": StatementDescription(
        param_oids=(TEXT_OID,),
        fields=(
            _field("id", UUID_OID, USERS_OID, 1),
            _field("email", TEXT_OID, USERS_OID, 2),
            _field("name", TEXT_OID, USERS_OID, 3),
        ),
    ),
    "ListRecentUsers": StatementDescription(
        param_oids=(TIMESTAMPTZ_OID,),
        fields=(
            _field("id", UUID_OID, USERS_OID, 1),
            _field("email", TEXT_OID, USERS_OID, 2),
            _field("tags", TEXT_ARRAY_OID, USERS_OID, 5),
        ),
    ),
    "CountUsers": StatementDescription(
        param_oids=(),
        fields=(_field("total", INT8_OID),),
    ),
    "DeleteUser": StatementDescription(param_oids=(UUID_OID,), fields=()),
    "ListPostsByAuthor": StatementDescription(
        param_oids=(UUID_OID,),
        fields=(
            _field("id", UUID_OID, POSTS_OID, 1),
            _field("title", TEXT_OID, POSTS_OID, 3),
        ),
    ),
}

USERS_SQL: str = textwrap.dedent(
    """\
    -- Queries over the users table.

    -- name: GetUserByEmail :one
    SELECT id, email, name FROM users WHERE email = $1;

    -- name: ListRecentUsers :many
    -- newest first
    SELECT id, email, tags
    FROM users
    WHERE created_at > $1
    ORDER BY created_at DESC;

    -- name: CountUsers :one
    SELECT count(*) AS total FROM users;

    -- name: DeleteUser :exec
    DELETE FROM users WHERE id = $1;

    -- name: ListPostsByAuthor :paginated
    SELECT id, title FROM posts WHERE author_id = $1
    """
)


# ---------------------------------------------------------------------------
# Fake synchronous database (introspection + describe)
# ---------------------------------------------------------------------------


class FakeDatabase:
    """
    In-memory stand-in for ``pgforge.database.Database``.

    ``describe`` answers from *descriptions* by query name; unknown names
    are rejected like a server would reject bad SQL.  Every call is
    recorded in ``calls``.
    """

    def __init__(
        self,
        catalog: Optional[Dict[str, Dict[str, Any]]] = None,
        descriptions: Optional[Dict[str, StatementDescription]] = None,
        *,
        schema: str = "public",
        cancel_event: Optional[threading.Event] = None,
        on_fetch: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.catalog: Dict[str, Dict[str, Any]] = copy.deepcopy(
            SAMPLE_CATALOG if catalog is None else catalog
        )
        self.descriptions: Dict[str, StatementDescription] = dict(
            SAMPLE_DESCRIPTIONS if descriptions is None else descriptions
        )
        self.schema: str = schema
        self.cancel_event: Optional[threading.Event] = cancel_event
        self.on_fetch: Optional[Callable[[str], None]] = on_fetch
        self.calls: List[Tuple[str, Any]] = []
        self.described_sql: Dict[str, str] = {}

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise GenerationCancelledError("Generation was cancelled.")

    def fetch_all(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        self.check_cancelled()
        self.calls.append(("fetch_all", sql))
        if self.on_fetch is not None:
            self.on_fetch(sql)

        if sql == TABLES_SQL:
            if params[0] != self.schema:
                return []
            return [{"table_name": name} for name in sorted(self.catalog)]
        if sql == PRIMARY_KEY_SQL:
            return [{"column_name": c} for c in self.catalog[params[1]]["primary_key"]]
        if sql == COLUMNS_SQL:
            return copy.deepcopy(self.catalog[params[1]]["columns"])
        if sql == TYPE_LOOKUP_SQL:
            rows: List[Dict[str, Any]] = []
            for oid in params[0]:
                if oid in TYPE_CATALOG:
                    typname, category, element = TYPE_CATALOG[oid]
                    rows.append({
                        "oid": oid,
                        "typname": typname,
                        "typcategory": category,
                        "element_name": element,
                    })
            return rows
        if sql == NOT_NULL_SQL:
            return [
                {"table_oid": table_oid, "column_number": attnum, "attnotnull": notnull}
                for table_oid in params[0]
                for attnum, notnull in sorted(ATTRIBUTE_CATALOG.get(table_oid, {}).items())
            ]
        raise AssertionError(f"Unexpected catalog query: {sql!r}")

    def describe(self, sql: str, query_name: str) -> StatementDescription:
        self.check_cancelled()
        self.calls.append(("describe", query_name))
        self.described_sql[query_name] = sql
        if query_name not in self.descriptions:
            raise QueryPrepareError(query_name, 'syntax error at or near "FROM"')
        return self.descriptions[query_name]


# ---------------------------------------------------------------------------
# Fake async connection (generated code)
# ---------------------------------------------------------------------------

Responder = Callable[[str, Any], Any]


class FakeAsyncCursor:
    def __init__(self, conn: "FakeAsyncConnection") -> None:
        self._conn = conn
        self._rows: List[Dict[str, Any]] = []
        self.rowcount: int = -1

    async def __aenter__(self) -> "FakeAsyncCursor":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def execute(self, query: str, args: Any = None) -> None:
        self._conn.executed.append((query, args))
        result: Any = self._conn.responder(query, args)
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, int):
            self.rowcount = result
            self._rows = []
        else:
            self._rows = list(result or [])
            self.rowcount = len(self._rows)

    async def fetchone(self) -> Optional[Dict[str, Any]]:
        return self._rows[0] if self._rows else None

    async def fetchall(self) -> List[Dict[str, Any]]:
        return list(self._rows)


class FakeAsyncConnection:
    """
    ``responder(query, args)`` returns rows (list of dicts), an affected-row
    count (int) or an exception instance to raise.
    """

    def __init__(self, responder: Responder) -> None:
        self.responder: Responder = responder
        self.executed: List[Tuple[str, Any]] = []

    def cursor(self, row_factory: Any = None) -> FakeAsyncCursor:
        return FakeAsyncCursor(self)


class FakeDriverError(Exception):
    """Mimics a psycopg error: ``sqlstate`` plus an optional ``diag``."""

    def __init__(self, message: str, sqlstate: Optional[str] = None, column: Optional[str] = None) -> None:
        super().__init__(message)
        self.sqlstate: Optional[str] = sqlstate
        self.diag = type("Diag", (), {"column_name": column})()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture()
def queries_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    """Directory holding ``users.sql`` with one query of every mode."""
    directory = tmp_path / "queries"
    directory.mkdir()
    (directory / "users.sql").write_text(USERS_SQL, encoding="utf-8")
    return directory


@pytest.fixture()
def make_config(tmp_path: pathlib.Path) -> Callable[..., GenerationConfig]:
    """Factory for configs writing into ``tmp_path/out/<package>``."""

    def _make(
        queries: Optional[pathlib.Path] = None,
        output: Optional[pathlib.Path] = None,
        **extra: Any,
    ) -> GenerationConfig:
        raw: Dict[str, Any] = {
            "database": {"dsn": "postgresql://fake/db"},
            "output": {"directory": str(output or tmp_path / "out")},
        }
        if queries is not None:
            raw["queries"] = {"directory": str(queries)}
        raw.update(extra)
        return GenerationConfig.model_validate(raw)

    return _make


@pytest.fixture()
def import_generated(monkeypatch: pytest.MonkeyPatch) -> Iterator[Callable[[pathlib.Path], Any]]:
    """
    Import a generated package from disk.

    Tests should give each package a unique name; the modules are dropped
    from ``sys.modules`` afterwards.
    """
    imported: List[str] = []

    def _import(package_dir: pathlib.Path) -> Any:
        monkeypatch.syspath_prepend(str(package_dir.parent))
        importlib.invalidate_caches()
        module = importlib.import_module(package_dir.name)
        imported.append(package_dir.name)
        return module

    yield _import

    for name in list(sys.modules):
        if any(name == pkg or name.startswith(pkg + ".") for pkg in imported):
            del sys.modules[name]


def unique_package() -> str:
    return f"repos_{uuid.uuid4().hex[:10]}"
