# File: pgforge/introspect.py
"""
pgforge - Catalog Introspection
================================
Reads tables, columns and primary keys of one schema from the live
database through ``information_schema``.

The introspector never decides whether a table is usable; it returns every
matching table faithfully and leaves the primary-key checks to
``pgforge.validators.validate_primary_key``.
"""

from __future__ import annotations

import fnmatch
import logging
from typing import Any, Dict, List, Sequence, Set, Tuple

from pgforge.errors import SchemaNotFoundError
from pgforge.models import Column, Table

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.introspect")

# ---------------------------------------------------------------------------
# Catalog queries
# ---------------------------------------------------------------------------

TABLES_SQL: str = """
SELECT table_name
FROM information_schema.tables
WHERE table_schema = %s
  AND table_type = 'BASE TABLE'
ORDER BY table_name
""".strip()

COLUMNS_SQL: str = """
SELECT column_name,
       data_type,
       udt_name,
       is_nullable,
       column_default,
       is_identity,
       is_generated,
       ordinal_position,
       character_maximum_length
FROM information_schema.columns
WHERE table_schema = %s
  AND table_name = %s
ORDER BY ordinal_position
""".strip()

PRIMARY_KEY_SQL: str = """
SELECT kcu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name
 AND tc.table_schema = kcu.table_schema
 AND tc.table_name = kcu.table_name
WHERE tc.constraint_type = 'PRIMARY KEY'
  AND tc.table_schema = %s
  AND tc.table_name = %s
ORDER BY kcu.ordinal_position
""".strip()

# information_schema spellings -> short pg_type spellings
_DATA_TYPE_ALIASES: Dict[str, str] = {
    "character varying": "varchar",
    "character": "char",
    "timestamp with time zone": "timestamptz",
    "timestamp without time zone": "timestamp",
    "time with time zone": "timetz",
    "time without time zone": "time",
}


def normalize_column_type(data_type: str, udt_name: str) -> Tuple[str, bool]:
    """
    Reduce an ``information_schema.columns`` type to (type name, is_array).

    Arrays report ``ARRAY`` with the element type in ``udt_name`` prefixed by
    an underscore; domains, enums and extension types report
    ``USER-DEFINED``.
    """
    if data_type == "ARRAY":
        return udt_name.lstrip("_").lower(), True
    if data_type == "USER-DEFINED":
        return udt_name.lower(), False
    lowered: str = data_type.lower()
    return _DATA_TYPE_ALIASES.get(lowered, lowered), False


def _has_default(row: Dict[str, Any]) -> bool:
    """Identity and generated columns are filled by the server like DEFAULTs."""
    return (
        row["column_default"] is not None
        or row.get("is_identity") == "YES"
        or row.get("is_generated") == "ALWAYS"
    )


def matches_filters(
    name: str,
    include: Sequence[str] = (),
    exclude: Sequence[str] = (),
) -> bool:
    """Shell-style filtering; an empty include list admits every table."""
    if include and not any(fnmatch.fnmatchcase(name, p) for p in include):
        return False
    return not any(fnmatch.fnmatchcase(name, p) for p in exclude)


class Introspector:
    """
    Builds ``Table`` models from the catalog.

    *db* is anything with ``fetch_all(sql, params)`` and
    ``check_cancelled()``; in production a ``pgforge.database.Database``.
    """

    def __init__(self, db: Any) -> None:
        self._db = db

    def list_tables(
        self,
        schema: str,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
    ) -> List[Table]:
        """
        All base tables of *schema* passing the filters, ordered by name.

        Raises ``SchemaNotFoundError`` when nothing matches.
        """
        rows: List[Dict[str, Any]] = self._db.fetch_all(TABLES_SQL, (schema,))
        all_names: List[str] = [r["table_name"] for r in rows]
        names: List[str] = [n for n in all_names if matches_filters(n, include, exclude)]

        if not all_names:
            raise SchemaNotFoundError(schema, "the schema is empty or does not exist")
        if not names:
            raise SchemaNotFoundError(
                schema,
                f"{len(all_names)} table(s) found but none passed the include/exclude filters",
            )

        logger.info(
            "Introspecting %d of %d table(s) in schema '%s'.",
            len(names),
            len(all_names),
            schema,
        )
        return [self.get_table(schema, name) for name in names]

    def get_table(self, schema: str, name: str) -> Table:
        self._db.check_cancelled()
        pk_rows: List[Dict[str, Any]] = self._db.fetch_all(PRIMARY_KEY_SQL, (schema, name))
        primary_key: List[str] = [r["column_name"] for r in pk_rows]
        pk_set: Set[str] = set(primary_key)

        col_rows: List[Dict[str, Any]] = self._db.fetch_all(COLUMNS_SQL, (schema, name))
        columns: List[Column] = []
        for row in col_rows:
            data_type, is_array = normalize_column_type(row["data_type"], row["udt_name"])
            columns.append(
                Column(
                    name=row["column_name"],
                    data_type=data_type,
                    nullable=(row["is_nullable"] == "YES"),
                    has_default=_has_default(row),
                    ordinal_position=int(row["ordinal_position"]),
                    is_array=is_array,
                    max_length=row.get("character_maximum_length"),
                    is_primary_key=row["column_name"] in pk_set,
                )
            )

        table: Table = Table(
            name=name,
            schema_name=schema,
            columns=columns,
            primary_key=primary_key,
        )
        logger.debug(
            "Table %s.%s: %d column(s), primary key %s.",
            schema,
            name,
            len(columns),
            primary_key or "(none)",
        )
        return table


__all__: List[str] = [
    "TABLES_SQL",
    "COLUMNS_SQL",
    "PRIMARY_KEY_SQL",
    "Introspector",
    "matches_filters",
    "normalize_column_type",
]

logger.debug("pgforge.introspect loaded.")
