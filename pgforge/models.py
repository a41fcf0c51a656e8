# File: pgforge/models.py
"""
pgforge - Core Data Models
===========================
Pydantic V2 models shared by every stage of the pipeline:

    Introspection / Query Parsing -> Validation -> Rendering -> Export

Metadata models (``Column``, ``Table``, ``Query`` ...) are frozen: they are
built fresh on every run, never mutated, and thrown away once their unit has
been rendered.  The analyzer enriches a parsed ``Query`` through
``model_copy(update=...)`` rather than by assignment.

``GenerationConfig`` is the validated form of ``pgforge.yaml``; loading and
environment fallbacks live in ``pgforge.config``.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Dict, List, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.models")

_IDENTIFIER_RE: re.Pattern[str] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class QueryMode(str, Enum):
    """Result cardinality declared by a ``-- name: X :mode`` annotation."""

    ONE = "one"
    MANY = "many"
    EXEC = "exec"
    PAGINATED = "paginated"


class TableFunction(str, Enum):
    """Repository operations that can be enabled per table."""

    CREATE = "create"
    GET = "get"
    UPDATE = "update"
    DELETE = "delete"
    LIST = "list"
    PAGINATE = "paginate"


# Canonical emission order for table operations.
ALL_TABLE_FUNCTIONS: Tuple[str, ...] = tuple(f.value for f in TableFunction)


# ---------------------------------------------------------------------------
# Shared model configuration
# ---------------------------------------------------------------------------

_SHARED_CONFIG: ConfigDict = ConfigDict(
    strict=False,
    populate_by_name=True,
    validate_assignment=True,
    use_enum_values=True,
    frozen=False,
    extra="forbid",
)

_FROZEN_CONFIG: ConfigDict = ConfigDict(
    strict=False,
    populate_by_name=True,
    use_enum_values=True,
    frozen=True,
    extra="forbid",
)


# ---------------------------------------------------------------------------
# Catalog metadata
# ---------------------------------------------------------------------------


class Column(BaseModel):
    """
    One column of an introspected table.

    ``data_type`` is the normalized PostgreSQL type name.  For array columns
    it is the *element* type and ``is_array`` is set.
    """

    model_config = _FROZEN_CONFIG

    name: str = Field(..., min_length=1, description="Column name as stored in the catalog.")
    data_type: str = Field(..., min_length=1, description="Normalized database type name.")
    nullable: bool = Field(default=True, description="Whether the column accepts NULL.")
    has_default: bool = Field(default=False, description="True when the column has a DEFAULT.")
    ordinal_position: int = Field(..., ge=1, description="1-based position in the table.")
    is_array: bool = Field(default=False, description="True for array columns.")
    max_length: Optional[int] = Field(
        default=None, ge=1, description="Declared length for varchar/char columns."
    )
    is_primary_key: bool = Field(default=False, description="Part of the primary key?")

    @field_validator("data_type")
    @classmethod
    def _lower_type(cls, v: str) -> str:
        return v.strip().lower()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def insertable(self) -> bool:
        """Supplied by callers on insert (everything without a default, except the key)."""
        return not self.is_primary_key and not self.has_default

    @computed_field  # type: ignore[prop-decorator]
    @property
    def updatable(self) -> bool:
        return not self.is_primary_key

    @computed_field  # type: ignore[prop-decorator]
    @property
    def selectable(self) -> bool:
        return True

    def __repr__(self) -> str:
        suffix: str = "[]" if self.is_array else ""
        null: str = "NULL" if self.nullable else "NOT NULL"
        return f"<Column {self.name} {self.data_type}{suffix} {null}>"


class Table(BaseModel):
    """A table with its columns in ordinal order and its primary-key column names."""

    model_config = _FROZEN_CONFIG

    name: str = Field(..., min_length=1, description="Table name.")
    schema_name: str = Field(default="public", description="Owning schema.")
    columns: List[Column] = Field(default_factory=list, description="Columns by ordinal.")
    primary_key: List[str] = Field(
        default_factory=list, description="Primary-key column names, in key order."
    )

    @model_validator(mode="after")
    def _columns_in_ordinal_order(self) -> "Table":
        positions: List[int] = [c.ordinal_position for c in self.columns]
        if positions != sorted(positions):
            raise ValueError(f"Columns of table '{self.name}' are not in ordinal order.")
        return self

    @property
    def primary_key_column(self) -> Optional[Column]:
        """The key column when the key is a single column, otherwise None."""
        if len(self.primary_key) != 1:
            return None
        return self.get_column(self.primary_key[0])

    @property
    def insertable_columns(self) -> List[Column]:
        return [c for c in self.columns if c.insertable]

    @property
    def updatable_columns(self) -> List[Column]:
        return [c for c in self.columns if c.updatable]

    def get_column(self, name: str) -> Optional[Column]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def __repr__(self) -> str:
        return f"<Table {self.schema_name}.{self.name} ({len(self.columns)} columns)>"


# ---------------------------------------------------------------------------
# Query metadata
# ---------------------------------------------------------------------------


class Parameter(BaseModel):
    """A positional ``$n`` parameter, typed by the server."""

    model_config = _FROZEN_CONFIG

    position: int = Field(..., ge=1, description="1-based placeholder index.")
    data_type: str = Field(..., min_length=1, description="Database type name.")
    is_array: bool = Field(default=False)


class ResultColumn(BaseModel):
    """A column of a query's result set as reported by the server."""

    model_config = _FROZEN_CONFIG

    name: str = Field(..., min_length=1)
    data_type: str = Field(..., min_length=1)
    nullable: bool = Field(
        default=True,
        description="False only when the value maps straight to a NOT NULL table column.",
    )
    is_array: bool = Field(default=False)


class Query(BaseModel):
    """
    One annotated block of an SQL file.

    Right after parsing, ``parameters`` and ``columns`` are empty and only
    ``placeholder_count`` is known; ``QueryAnalyzer.analyze`` fills them in.
    """

    model_config = _FROZEN_CONFIG

    name: str = Field(..., description="Identifier from the annotation.")
    mode: QueryMode = Field(..., description="Declared cardinality.")
    sql: str = Field(..., min_length=1, description="Trimmed SQL body.")
    source_file: str = Field(default="", description="File the block came from.")
    line: int = Field(default=0, ge=0, description="Line of the annotation (1-based).")
    placeholder_count: int = Field(default=0, ge=0, description="Highest $n index.")
    parameters: List[Parameter] = Field(default_factory=list)
    columns: List[ResultColumn] = Field(default_factory=list)
    analyzed: bool = Field(default=False, description="Set once describe has run.")

    @field_validator("name")
    @classmethod
    def _identifier(cls, v: str) -> str:
        if not _IDENTIFIER_RE.match(v):
            raise ValueError(f"Query name '{v}' is not a valid identifier.")
        return v

    def __repr__(self) -> str:
        return f"<Query {self.name} :{self.mode} ({self.placeholder_count} params)>"


# ---------------------------------------------------------------------------
# Type mapping
# ---------------------------------------------------------------------------


class TypeDescriptor(BaseModel):
    """
    Result of mapping a database type to a Python annotation.

    ``annotation`` is the full text used in generated code, e.g.
    ``Optional[List[str]]``; ``imports`` lists ``(module, name)`` pairs it
    needs.
    """

    model_config = _FROZEN_CONFIG

    db_type: str
    base_type: str
    annotation: str
    imports: Tuple[Tuple[str, str], ...] = ()
    nullable: bool = False
    is_array: bool = False
    pagination_key: bool = False
    known: bool = True
    # "json" or "jsonb" when bound values must go through runtime.json_param.
    adapter: Optional[str] = None


# ---------------------------------------------------------------------------
# Generation output
# ---------------------------------------------------------------------------


class GeneratedFile(BaseModel):
    """A rendered artifact: path relative to the output package plus its text."""

    model_config = _FROZEN_CONFIG

    path: str = Field(..., min_length=1)
    content: str

    @property
    def size_bytes(self) -> int:
        return len(self.content.encode("utf-8"))


class GeneratedUnit(BaseModel):
    """Everything rendered for one table, one query file, or the package itself."""

    model_config = _FROZEN_CONFIG

    kind: Literal["table", "queries", "package"]
    entity_name: str
    module_name: str = Field(default="", description="Python module name, if any.")
    files: List[GeneratedFile] = Field(default_factory=list)
    operations: List[str] = Field(default_factory=list, description="Method names emitted.")
    exported_names: List[str] = Field(
        default_factory=list, description="Classes re-exported from the package."
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class DatabaseSettings(BaseModel):
    """Where to introspect."""

    model_config = _SHARED_CONFIG

    dsn: str = Field(default="", description="libpq connection string or URL.")
    schema_name: str = Field(default="public", alias="schema", min_length=1)
    connect_timeout: int = Field(default=10, ge=1, description="Seconds.")


class OutputSettings(BaseModel):
    """Where generated files go: ``<directory>/<package>/``."""

    model_config = _SHARED_CONFIG

    directory: str = Field(default=".", min_length=1)
    package: str = Field(default="repositories")

    @field_validator("package")
    @classmethod
    def _package_identifier(cls, v: str) -> str:
        if not _IDENTIFIER_RE.match(v):
            raise ValueError(f"Output package '{v}' is not a valid Python identifier.")
        return v


class TableSettings(BaseModel):
    """Per-table overrides."""

    model_config = _SHARED_CONFIG

    functions: Optional[List[TableFunction]] = Field(
        default=None, description="Operations to emit; falls back to default_functions."
    )


class QuerySettings(BaseModel):
    model_config = _SHARED_CONFIG

    directory: Optional[str] = Field(default=None, description="Directory of *.sql files.")
    files: List[str] = Field(
        default_factory=list,
        description="Only these files of the directory, in order; empty means every *.sql file.",
    )


class TypeSettings(BaseModel):
    model_config = _SHARED_CONFIG

    mappings: Dict[str, str] = Field(
        default_factory=dict,
        description="Database type -> Python type ('str' or 'module.Name').",
    )


class RetrySettings(BaseModel):
    """Defaults baked into generated repositories' ``RETRY_CONFIG``."""

    model_config = _SHARED_CONFIG

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.1, ge=0)
    max_delay: float = Field(default=5.0, ge=0)

    @model_validator(mode="after")
    def _delays_ordered(self) -> "RetrySettings":
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"retry.max_delay ({self.max_delay}) is smaller than "
                f"retry.base_delay ({self.base_delay})."
            )
        return self


class GenerationConfig(BaseModel):
    """
    Validated ``pgforge.yaml``.

    ``tables`` doubles as an include list: when it names any table, only
    those tables (plus ``include`` patterns) are generated.  ``tables: false``
    is shorthand for ``generate_tables: false`` (queries only).
    """

    model_config = _SHARED_CONFIG

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    output: OutputSettings = Field(default_factory=OutputSettings)
    generate_tables: bool = Field(default=True, description="Introspect and render tables.")
    tables: Dict[str, TableSettings] = Field(default_factory=dict)
    include: List[str] = Field(default_factory=list, description="fnmatch patterns.")
    exclude: List[str] = Field(default_factory=list, description="fnmatch patterns.")
    queries: QuerySettings = Field(default_factory=QuerySettings)
    types: TypeSettings = Field(default_factory=TypeSettings)
    default_functions: Union[Literal["all"], List[TableFunction]] = Field(default="all")
    retry: RetrySettings = Field(default_factory=RetrySettings)
    verbose: bool = Field(default=False)

    @model_validator(mode="before")
    @classmethod
    def _tables_switch(cls, data: object) -> object:
        if isinstance(data, dict) and isinstance(data.get("tables"), bool):
            data = dict(data)
            enabled: bool = data.pop("tables")
            data.setdefault("generate_tables", enabled)
        return data

    @field_validator("tables", mode="before")
    @classmethod
    def _empty_table_entries(cls, v: object) -> object:
        # ``posts:`` with no body loads as None.
        if isinstance(v, dict):
            return {k: ({} if val is None else val) for k, val in v.items()}
        return v

    @property
    def include_patterns(self) -> List[str]:
        return list(self.tables.keys()) + list(self.include)

    def functions_for(self, table_name: str) -> List[str]:
        """Operations to emit for *table_name*, in canonical order."""
        selected: Optional[List[str]] = None
        settings: Optional[TableSettings] = self.tables.get(table_name)
        if settings is not None and settings.functions:
            selected = list(settings.functions)
        elif self.default_functions != "all" and self.default_functions:
            selected = list(self.default_functions)

        if selected is None:
            return list(ALL_TABLE_FUNCTIONS)
        wanted: set = {TableFunction(f).value for f in selected}
        return [f for f in ALL_TABLE_FUNCTIONS if f in wanted]


__all__: List[str] = [
    "QueryMode",
    "TableFunction",
    "ALL_TABLE_FUNCTIONS",
    "Column",
    "Table",
    "Parameter",
    "ResultColumn",
    "Query",
    "TypeDescriptor",
    "GeneratedFile",
    "GeneratedUnit",
    "DatabaseSettings",
    "OutputSettings",
    "TableSettings",
    "QuerySettings",
    "TypeSettings",
    "RetrySettings",
    "GenerationConfig",
]

logger.debug("pgforge.models loaded.")
