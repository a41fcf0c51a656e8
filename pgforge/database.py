# File: pgforge/database.py
"""
pgforge - Database Access
==========================
Thin synchronous wrapper around a psycopg 3 connection, used by the
introspector and the query analyzer.

Responsibilities:
    1. Open the connection (autocommit, read-only use) and translate
       connectivity failures into ``DatabaseConnectionError``.
    2. Run catalog queries and return rows as dictionaries.
    3. Perform the describe/prepare round-trip for annotated queries via
       libpq's ``PQprepare`` / ``PQdescribePrepared``, without executing
       anything.
    4. Honour a caller-supplied cancellation ``threading.Event`` before every
       round-trip.

Anything that needs a database goes through this class, which keeps the
rest of the pipeline testable against an in-memory fake exposing the same
three methods: ``fetch_all``, ``describe`` and ``check_cancelled``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psycopg
from psycopg import pq
from psycopg.rows import dict_row

from pgforge.errors import (
    DatabaseConnectionError,
    DatabaseQueryError,
    GenerationCancelledError,
    QueryPrepareError,
)

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.database")


# ---------------------------------------------------------------------------
# Describe results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FieldDescription:
    """One result column of a prepared statement."""

    name: str
    type_oid: int
    table_oid: int = 0  # 0 when the column is computed
    column_number: int = 0


@dataclass(frozen=True, slots=True)
class StatementDescription:
    """Parameter and result shape of a prepared statement."""

    param_oids: Tuple[int, ...] = ()
    fields: Tuple[FieldDescription, ...] = ()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class Database:
    """
    Usage::

        with Database(dsn) as db:
            rows = db.fetch_all("SELECT 1 AS one")
            shape = db.describe("SELECT * FROM users WHERE id = $1", "GetUser")
    """

    def __init__(
        self,
        dsn: str,
        *,
        connect_timeout: int = 10,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._dsn: str = dsn
        self._connect_timeout: int = connect_timeout
        self._cancel_event: Optional[threading.Event] = cancel_event
        self._conn: Optional[psycopg.Connection] = None
        self._statement_seq: int = 0

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def connect(self) -> None:
        self.check_cancelled()
        if self._conn is not None:
            return
        try:
            self._conn = psycopg.connect(
                self._dsn,
                autocommit=True,
                connect_timeout=self._connect_timeout,
            )
        except psycopg.Error as exc:
            raise DatabaseConnectionError(f"Cannot connect to database: {exc}") from exc
        logger.info(
            "Connected to %s (server version %s).",
            self._conn.info.dbname,
            self._conn.info.server_version,
        )

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Database connection closed.")

    def __enter__(self) -> "Database":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.closed

    def _require(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed:
            raise DatabaseConnectionError("Database connection is not open.")
        return self._conn

    # -----------------------------------------------------------------
    # Cancellation
    # -----------------------------------------------------------------

    def check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise GenerationCancelledError("Generation was cancelled.")

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def fetch_all(
        self, query: str, params: Optional[Sequence[Any]] = None
    ) -> List[Dict[str, Any]]:
        """Run a read-only catalog query and return its rows as dicts."""
        self.check_cancelled()
        conn: psycopg.Connection = self._require()
        try:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params)
                rows: List[Dict[str, Any]] = cur.fetchall()
        except psycopg.OperationalError as exc:
            raise DatabaseConnectionError(f"Lost connection to database: {exc}") from exc
        except psycopg.Error as exc:
            raise DatabaseQueryError(f"Catalog query failed: {exc}") from exc
        return rows

    def describe(self, sql: str, query_name: str) -> StatementDescription:
        """
        Ask the server for the parameter and result types of *sql*.

        The statement is prepared under a throwaway name, described, then
        deallocated.  It is never executed.
        """
        self.check_cancelled()
        conn: psycopg.Connection = self._require()
        pgconn = conn.pgconn
        encoding: str = conn.info.encoding

        self._statement_seq += 1
        name: bytes = f"pgforge_describe_{self._statement_seq}".encode("ascii")

        try:
            prepared = pgconn.prepare(name, sql.encode(encoding))
            if prepared.status != pq.ExecStatus.COMMAND_OK:
                message: str = (prepared.error_message or b"").decode(encoding, "replace")
                raise QueryPrepareError(query_name, message.strip())

            try:
                described = pgconn.describe_prepared(name)
                if described.status != pq.ExecStatus.COMMAND_OK:
                    message = (described.error_message or b"").decode(encoding, "replace")
                    raise QueryPrepareError(query_name, message.strip())

                param_oids: Tuple[int, ...] = tuple(
                    described.param_type(i) for i in range(described.nparams)
                )
                fields: List[FieldDescription] = []
                for i in range(described.nfields):
                    raw_name: Optional[bytes] = described.fname(i)
                    fields.append(
                        FieldDescription(
                            name=raw_name.decode(encoding) if raw_name else "?column?",
                            type_oid=described.ftype(i),
                            table_oid=described.ftable(i),
                            column_number=described.ftablecol(i),
                        )
                    )
            finally:
                # Prepared names live until the session ends.
                pgconn.exec_(b"DEALLOCATE " + name)
        except psycopg.OperationalError as exc:
            raise DatabaseConnectionError(f"Lost connection to database: {exc}") from exc

        logger.debug(
            "Described %s: %d parameter(s), %d column(s).",
            query_name,
            len(param_oids),
            len(fields),
        )
        return StatementDescription(param_oids=param_oids, fields=tuple(fields))


__all__: List[str] = [
    "Database",
    "FieldDescription",
    "StatementDescription",
]

logger.debug("pgforge.database loaded.")
