# File: pgforge/validators.py
"""
pgforge - Metadata & Configuration Validators
==============================================
Pure-function checks run between introspection/analysis and rendering.

Pydantic validates the *shape* of each model; this module adds the
semantic rules the generator relies on:

- every table used for CRUD and pagination has exactly one primary-key
  column, NOT NULL and of type ``uuid``;
- every analyzed query is consistent with its declared mode;
- generated identifiers never collide (module names, exported classes,
  method and field names);
- configuration values make sense beyond their field constraints.

Each function returns a ``ValidationResult``.  Whether an error is fatal
(naming, configuration) or skips a single unit (tables, queries) is decided
by ``pgforge.generator``.
"""

from __future__ import annotations

import keyword
import logging
import re
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from pgforge.introspect import matches_filters
from pgforge.models import GeneratedUnit, GenerationConfig, Query, QueryMode, ResultColumn, Table
from pgforge.query_parser import statement_kind
from pgforge.type_mapping import is_uuid_type, map_type
from pgforge.utils import field_identifier

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.validators")

# ---------------------------------------------------------------------------
# Validation result container
# ---------------------------------------------------------------------------


class ValidationIssue:
    """Lightweight issue descriptor (no Pydantic overhead)."""

    __slots__ = ("level", "code", "message", "context")

    def __init__(
        self,
        level: str,
        code: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.level: str = level  # "error" | "warning"
        self.code: str = code
        self.message: str = message
        self.context: Dict[str, Any] = context or {}

    @property
    def is_error(self) -> bool:
        return self.level == "error"

    @property
    def is_warning(self) -> bool:
        return self.level == "warning"

    def __repr__(self) -> str:
        return f"[{self.level.upper()}] {self.code}: {self.message}"

    def __str__(self) -> str:
        return self.__repr__()


class ValidationResult:
    """Accumulates ``ValidationIssue`` instances; truthy when there are no errors."""

    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: List[ValidationIssue] = []

    def add_error(
        self, code: str, message: str, context: Optional[Dict[str, Any]] = None
    ) -> None:
        self._items.append(ValidationIssue("error", code, message, context))

    def add_warning(
        self, code: str, message: str, context: Optional[Dict[str, Any]] = None
    ) -> None:
        self._items.append(ValidationIssue("warning", code, message, context))

    def merge(self, other: "ValidationResult") -> None:
        self._items.extend(other._items)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self._items if i.is_error]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self._items if i.is_warning]

    @property
    def codes(self) -> List[str]:
        return [i.code for i in self._items]

    @property
    def has_errors(self) -> bool:
        return any(i.is_error for i in self._items)

    @property
    def is_valid(self) -> bool:
        return not self.has_errors

    def summary(self) -> str:
        return (
            f"Validation: {len(self.errors)} error(s), "
            f"{len(self.warnings)} warning(s)."
        )

    def format_report(self) -> str:
        lines: List[str] = [self.summary()]
        for item in self._items:
            lines.append(f"  [{item.level.upper()}] {item.code}: {item.message}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"<ValidationResult {self.summary()}>"

    def __bool__(self) -> bool:
        return self.is_valid

    def __len__(self) -> int:
        return len(self._items)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DOTTED_NAME_RE: re.Pattern[str] = re.compile(
    r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$"
)

# Names every generated module imports; no generated class may take one.
RESERVED_CLASS_NAMES: FrozenSet[str] = frozenset(
    {
        "Any", "AsyncConnection", "BaseModel", "ConfigDict", "Decimal",
        "Field", "List", "Optional", "UUID", "date", "datetime", "runtime",
        "time", "timedelta",
    }
)

# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


def validate_primary_key(table: Table) -> ValidationResult:
    """
    Check the primary-key shape required by CRUD and cursor pagination.

    Every failure is an error; the generator turns it into a skip-with-warning
    for this table only.
    """
    result: ValidationResult = ValidationResult()
    ctx: Dict[str, Any] = {"table": table.name, "primary_key": list(table.primary_key)}

    if not table.primary_key:
        result.add_error(
            "MISSING_PRIMARY_KEY",
            f"Table '{table.name}' has no primary key.",
            ctx,
        )
        return result

    if len(table.primary_key) > 1:
        result.add_error(
            "COMPOSITE_PRIMARY_KEY",
            f"Table '{table.name}' has a composite primary key "
            f"({', '.join(table.primary_key)}); a single uuid column is required.",
            ctx,
        )
        return result

    column = table.primary_key_column
    if column is None:
        result.add_error(
            "PK_COLUMN_NOT_FOUND",
            f"Primary key column '{table.primary_key[0]}' of table "
            f"'{table.name}' is not among its columns.",
            ctx,
        )
        return result

    if column.is_array or not is_uuid_type(column.data_type):
        result.add_error(
            "NON_UUID_PRIMARY_KEY",
            f"Primary key '{column.name}' of table '{table.name}' has type "
            f"'{column.data_type}{'[]' if column.is_array else ''}'; uuid is required.",
            ctx,
        )

    if column.nullable:
        result.add_error(
            "NULLABLE_PRIMARY_KEY",
            f"Primary key '{column.name}' of table '{table.name}' is nullable.",
            ctx,
        )

    return result


def validate_column_names(table: Table) -> ValidationResult:
    """Warn about columns whose generated field name differs from the column name."""
    result: ValidationResult = ValidationResult()
    for col in table.columns:
        field: str = field_identifier(col.name)
        if field != col.name:
            result.add_warning(
                "COLUMN_FIELD_RENAMED",
                f"Column '{col.name}' of table '{table.name}' is exposed as "
                f"field '{field}' (aliased to the column name).",
                {"table": table.name, "column": col.name, "field": field},
            )
    return result


def validate_tables(
    tables: Sequence[Table],
) -> Tuple[List[Table], List[Tuple[Table, ValidationResult]]]:
    """
    Split *tables* into (valid, rejected); each rejected table comes with
    the result explaining why.
    """
    valid: List[Table] = []
    rejected: List[Tuple[Table, ValidationResult]] = []
    for table in tables:
        result: ValidationResult = validate_primary_key(table)
        if result.has_errors:
            rejected.append((table, result))
        else:
            valid.append(table)
    logger.debug(
        "validate_tables: %d valid, %d rejected.", len(valid), len(rejected)
    )
    return valid, rejected


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def pagination_key_column(query: Query) -> Optional[ResultColumn]:
    """
    The result column that keys a ``:paginated`` query.

    Only NOT NULL scalar uuid columns qualify, since a NULL key can neither
    be ordered past nor encoded as a cursor.  A column named ``id`` wins;
    otherwise the first qualifying column.
    """
    candidates: List[ResultColumn] = [
        c
        for c in query.columns
        if is_uuid_type(c.data_type)
        and map_type(c.data_type, c.nullable, c.is_array).pagination_key
    ]
    for col in candidates:
        if col.name == "id":
            return col
    return candidates[0] if candidates else None


def validate_query(query: Query) -> ValidationResult:
    """
    Check an analyzed query against its declared mode.

    Errors make the generator skip the query; warnings are only reported.
    """
    result: ValidationResult = ValidationResult()
    ctx: Dict[str, Any] = {
        "query": query.name,
        "source_file": query.source_file,
        "line": query.line,
    }
    mode: str = query.mode

    if mode == QueryMode.EXEC:
        if query.columns:
            result.add_error(
                "EXEC_RETURNS_ROWS",
                f"Query '{query.name}' is declared :exec but returns "
                f"{len(query.columns)} column(s); use :one or :many.",
                ctx,
            )
    elif not query.columns:
        result.add_error(
            "NO_RESULT_COLUMNS",
            f"Query '{query.name}' is declared :{mode} but returns no columns; "
            f"use :exec.",
            ctx,
        )

    if mode == QueryMode.PAGINATED:
        if statement_kind(query.sql) not in ("select", "with"):
            result.add_error(
                "PAGINATED_NOT_SELECT",
                f"Query '{query.name}' is declared :paginated but is not a SELECT.",
                ctx,
            )
        if query.columns and pagination_key_column(query) is None:
            result.add_error(
                "PAGINATION_KEY_MISSING",
                f"Query '{query.name}' is declared :paginated but returns no "
                f"NOT NULL uuid column to page by.",
                ctx,
            )

    counts: Counter = Counter(field_identifier(c.name) for c in query.columns)
    duplicates: List[str] = sorted(name for name, n in counts.items() if n > 1)
    if duplicates:
        result.add_error(
            "DUPLICATE_RESULT_COLUMN",
            f"Query '{query.name}' returns several columns named "
            f"{', '.join(duplicates)}; alias them apart.",
            {**ctx, "columns": duplicates},
        )

    if query.analyzed and len(query.parameters) != query.placeholder_count:
        result.add_warning(
            "PARAMETER_COUNT_MISMATCH",
            f"Query '{query.name}' uses ${query.placeholder_count} as highest "
            f"placeholder but the server reports {len(query.parameters)} parameter(s).",
            ctx,
        )

    return result


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


def find_field_collisions(owner: str, column_names: Iterable[str]) -> List[str]:
    """Distinct columns of *owner* that map onto the same generated field."""
    by_field: Dict[str, List[str]] = defaultdict(list)
    for name in column_names:
        by_field[field_identifier(name)].append(name)
    return [
        f"{owner}: columns {', '.join(repr(n) for n in names)} all map to field '{field}'"
        for field, names in sorted(by_field.items())
        if len(names) > 1
    ]


def find_naming_collisions(units: Sequence[GeneratedUnit]) -> List[str]:
    """
    Every identifier clash across rendered units, as readable messages.

    Checks module names, classes re-exported from the package (against each
    other and against names imported into generated modules) and method
    names within one unit.
    """
    collisions: List[str] = []

    modules: Dict[str, List[str]] = defaultdict(list)
    exports: Dict[str, List[str]] = defaultdict(list)
    for unit in units:
        if unit.module_name:
            modules[unit.module_name].append(unit.entity_name)
        for name in unit.exported_names:
            exports[name].append(unit.entity_name)

        seen: Set[str] = set()
        for op in unit.operations:
            if op in seen:
                collisions.append(
                    f"method '{op}' is generated twice for {unit.entity_name}"
                )
            seen.add(op)

    for module, owners in sorted(modules.items()):
        if len(owners) > 1:
            collisions.append(
                f"module '{module}' would be generated for {', '.join(owners)}"
            )
    for name, owners in sorted(exports.items()):
        if len(owners) > 1:
            collisions.append(
                f"class '{name}' would be generated for {', '.join(owners)}"
            )
        if name in RESERVED_CLASS_NAMES:
            collisions.append(
                f"class '{name}' generated for {owners[0]} shadows an imported name"
            )

    return collisions


def validate_naming(
    units: Sequence[GeneratedUnit], tables: Sequence[Table] = ()
) -> ValidationResult:
    """Field clashes within *tables* plus identifier clashes across *units*."""
    result: ValidationResult = ValidationResult()
    for table in tables:
        for message in find_field_collisions(
            f"table '{table.name}'", [c.name for c in table.columns]
        ):
            result.add_error("FIELD_COLLISION", message, {"table": table.name})
    for message in find_naming_collisions(units):
        result.add_error("NAMING_COLLISION", message)
    return result


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def validate_config(config: GenerationConfig) -> ValidationResult:
    """
    Semantic configuration checks beyond what Pydantic field constraints
    enforce.  Paths are resolved relative to the current directory.
    """
    result: ValidationResult = ValidationResult()

    if not config.database.dsn.strip():
        result.add_error(
            "EMPTY_DSN",
            "database.dsn is empty and DATABASE_URL is not set.",
        )

    if keyword.iskeyword(config.output.package):
        result.add_error(
            "INVALID_OUTPUT_PACKAGE",
            f"Output package '{config.output.package}' is a Python keyword.",
            {"package": config.output.package},
        )

    out_dir: Path = Path(config.output.directory)
    if out_dir.exists() and not out_dir.is_dir():
        result.add_error(
            "OUTPUT_DIR_NOT_A_DIRECTORY",
            f"Output directory '{out_dir}' exists and is not a directory.",
            {"directory": str(out_dir)},
        )

    if config.queries.directory is not None:
        query_dir: Path = Path(config.queries.directory)
        if not query_dir.is_dir():
            result.add_error(
                "QUERIES_DIR_NOT_FOUND",
                f"Queries directory '{query_dir}' does not exist.",
                {"directory": str(query_dir)},
            )
        else:
            for name in config.queries.files:
                if not (query_dir / name).is_file():
                    result.add_error(
                        "QUERY_FILE_NOT_FOUND",
                        f"Query file '{name}' does not exist in '{query_dir}'.",
                        {"directory": str(query_dir), "file": name},
                    )
    elif config.queries.files:
        result.add_error(
            "QUERY_FILES_WITHOUT_DIRECTORY",
            "queries.files is set but queries.directory is not.",
            {"files": list(config.queries.files)},
        )

    if not config.generate_tables and config.queries.directory is None:
        result.add_error(
            "NOTHING_TO_GENERATE",
            "Table generation is disabled and no queries directory is configured.",
        )

    for db_type, python_type in sorted(config.types.mappings.items()):
        if not _DOTTED_NAME_RE.match(python_type.strip()):
            result.add_error(
                "INVALID_TYPE_OVERRIDE",
                f"Type override for '{db_type}' must be a name or "
                f"'module.Name', got '{python_type}'.",
                {"db_type": db_type, "python_type": python_type},
            )

    for table_name in sorted(config.tables):
        if not matches_filters(table_name, exclude=config.exclude):
            result.add_warning(
                "CONFIGURED_TABLE_EXCLUDED",
                f"Table '{table_name}' has settings but is matched by an "
                f"exclude pattern.",
                {"table": table_name},
            )

    if result.has_errors:
        logger.error("Config validation FAILED. %s", result.summary())
    else:
        logger.debug("Config validation passed. %s", result.summary())
    return result


__all__: List[str] = [
    "ValidationIssue",
    "ValidationResult",
    "RESERVED_CLASS_NAMES",
    "validate_primary_key",
    "validate_column_names",
    "validate_tables",
    "pagination_key_column",
    "validate_query",
    "find_field_collisions",
    "find_naming_collisions",
    "validate_naming",
    "validate_config",
]

logger.debug("pgforge.validators loaded.")
