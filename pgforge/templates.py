# File: pgforge/templates.py
"""
pgforge - Code Template Engine
===============================
Turns ``Table`` and ``Query`` metadata into Python source for one output
package:

    1. ``<table>_repository.py``: record model, ``Create``/``Update``
       params models and an async repository (CRUD, list, keyset
       pagination and ``*_with_retry`` variants).
    2. ``<file>_queries.py``: one row model per returning query and a
       queries class with one method per annotated block.
    3. ``__init__.py`` re-exporting every generated class.
    4. ``runtime.py``: the shared pagination / error / retry support,
       copied byte for byte from ``pgforge/runtime.py``.

Generated code targets psycopg 3 ``AsyncConnection`` and pydantic v2.

**Determinism contract:**
    - Fields follow column ordinal position, methods follow a fixed
      operation order, queries follow declaration order.
    - Imports are sorted; nothing depends on dict or set iteration order,
      timestamps or absolute paths.
    - All string assembly uses ``List[str]`` + ``"\\n".join()``.

Template methods keep no per-call state, so one ``TemplateGenerator`` can
render every unit of a run.
"""

from __future__ import annotations

import logging
from importlib import resources
from typing import Dict, List, Optional, Sequence, Set, Tuple

from pgforge.models import (
    Column,
    GeneratedFile,
    GeneratedUnit,
    GenerationConfig,
    Query,
    QueryMode,
    ResultColumn,
    Table,
    TableFunction,
    TypeDescriptor,
)
from pgforge.query_parser import rewrite_placeholders
from pgforge.type_mapping import TypeMapper
from pgforge.utils import (
    build_import_block,
    escape_percent,
    field_identifier,
    merge_imports,
    python_string_lines,
    query_class_name,
    query_module_name,
    quote_ident,
    record_class_name,
    row_class_name,
    safe_identifier,
    table_module_name,
)
from pgforge.validators import pagination_key_column

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.templates")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_INDENT: str = "    "
_DOUBLE_INDENT: str = _INDENT * 2
_TRIPLE_INDENT: str = _INDENT * 3
_QUAD_INDENT: str = _INDENT * 4

GENERATED_NOTICE: str = "Generated by pgforge. Do not edit."
RUNTIME_MODULE: str = "runtime"

_STDLIB_MODULES: frozenset = frozenset(
    {"datetime", "decimal", "ipaddress", "typing", "uuid"}
)

# Table operation -> method names emitted for it.
_TABLE_METHODS: Dict[str, Tuple[str, ...]] = {
    TableFunction.CREATE.value: ("create", "create_with_retry"),
    TableFunction.GET.value: ("get", "get_with_retry"),
    TableFunction.UPDATE.value: ("update", "update_with_retry"),
    TableFunction.DELETE.value: ("delete", "delete_with_retry"),
    TableFunction.LIST.value: ("list", "list_with_retry"),
    TableFunction.PAGINATE.value: ("list_paginated", "list_paginated_with_retry"),
}


def _ident(name: str) -> str:
    """Quoted identifier, safe inside a psycopg query string."""
    return escape_percent(quote_ident(name))


def _qualified_name(table: Table) -> str:
    return f"{_ident(table.schema_name)}.{_ident(table.name)}"


def _sql_constant(name: str, sql: str) -> List[str]:
    lines: List[str] = [f"{name} = ("]
    lines.extend(python_string_lines(sql, _INDENT))
    lines.append(")")
    return lines


def _split_imports(imports: Dict[str, Set[str]]) -> str:
    """Stdlib block, blank line, third-party block, blank line, runtime import."""
    stdlib: Dict[str, Set[str]] = {}
    third_party: Dict[str, Set[str]] = {}
    for module, names in imports.items():
        root: str = module.split(".")[0]
        target: Dict[str, Set[str]] = stdlib if root in _STDLIB_MODULES else third_party
        target.setdefault(module, set()).update(names)

    blocks: List[str] = []
    if stdlib:
        blocks.append(build_import_block(stdlib))
    if third_party:
        blocks.append(build_import_block(third_party))
    blocks.append(f"from . import {RUNTIME_MODULE}")
    return "\n\n".join(blocks)


def _bound_value(expr: str, descriptor: TypeDescriptor) -> str:
    """Expression passed to psycopg for a value of *descriptor*'s type."""
    if descriptor.adapter is None:
        return expr
    args: List[str] = [expr]
    if descriptor.adapter == "json":
        args.append("binary=False")
    if descriptor.is_array:
        args.append("array=True")
    return f"{RUNTIME_MODULE}.json_param({', '.join(args)})"


def _doc_safe(text: str) -> str:
    """Make catalog-supplied text safe inside a generated docstring."""
    return text.replace("\\", "/").replace('"""', "'''")


def _module_header(title: str) -> List[str]:
    return [
        '"""',
        _doc_safe(title),
        "",
        GENERATED_NOTICE,
        '"""',
        "",
        "from __future__ import annotations",
        "",
    ]


# ---------------------------------------------------------------------------
# TemplateGenerator class
# ---------------------------------------------------------------------------


class TemplateGenerator:
    """
    Renders ``GeneratedUnit`` objects from metadata.

    The configuration contributes the retry defaults baked into table
    modules and the user type overrides.
    """

    def __init__(
        self,
        config: Optional[GenerationConfig] = None,
        type_mapper: Optional[TypeMapper] = None,
    ) -> None:
        self._config: GenerationConfig = config or GenerationConfig()
        self._types: TypeMapper = type_mapper or TypeMapper(self._config.types.mappings)
        logger.debug(
            "TemplateGenerator initialised (package=%s).", self._config.output.package
        )

    @property
    def type_mapper(self) -> TypeMapper:
        return self._types

    # ===================================================================
    # Shared helpers
    # ===================================================================

    def _field_line(
        self,
        column_name: str,
        descriptor: TypeDescriptor,
        default_none: bool = False,
    ) -> Tuple[str, bool]:
        """One pydantic field declaration; second item tells whether ``Field`` is used."""
        name: str = field_identifier(column_name)
        annotation: str = descriptor.annotation
        if name == column_name:
            if default_none:
                return f"{_INDENT}{name}: {annotation} = None", False
            return f"{_INDENT}{name}: {annotation}", False
        args: List[str] = []
        if default_none:
            args.append("default=None")
        args.append(f"alias={column_name!r}")
        return f"{_INDENT}{name}: {annotation} = Field({', '.join(args)})", True

    def _model_class(
        self,
        class_name: str,
        docstring: str,
        fields: Sequence[Tuple[str, TypeDescriptor, bool]],
        frozen: bool,
        imports: Dict[str, Set[str]],
    ) -> List[str]:
        """A pydantic model; *fields* are (column name, descriptor, default_none)."""
        lines: List[str] = [f"class {class_name}(BaseModel):"]
        lines.append(f'{_INDENT}"""{_doc_safe(docstring)}"""')
        lines.append("")
        config_args: str = "frozen=True, populate_by_name=True" if frozen else "populate_by_name=True"
        lines.append(f"{_INDENT}model_config = ConfigDict({config_args})")
        if fields:
            lines.append("")
        for column_name, descriptor, default_none in fields:
            line, uses_field = self._field_line(column_name, descriptor, default_none)
            lines.append(line)
            merge_imports(imports, descriptor.imports)
            if uses_field:
                merge_imports(imports, [("pydantic", "Field")])
        return lines

    def _column_type(self, col: Column) -> TypeDescriptor:
        return self._types.map_type(col.data_type, col.nullable, col.is_array)

    # ===================================================================
    # 1. Table repository module
    # ===================================================================

    def render_table(
        self,
        table: Table,
        functions: Optional[Sequence[str]] = None,
    ) -> GeneratedUnit:
        """
        Render the repository module of one table.

        *table* must already satisfy ``validate_primary_key``.  *functions*
        defaults to ``config.functions_for(table.name)``.
        """
        pk: Optional[Column] = table.primary_key_column
        if pk is None:
            raise ValueError(f"Table '{table.name}' has no single-column primary key.")

        enabled: List[str] = list(
            functions if functions is not None else self._config.functions_for(table.name)
        )
        if TableFunction.UPDATE.value in enabled and not table.updatable_columns:
            logger.info(
                "Table '%s' has no updatable columns; skipping update.", table.name
            )
            enabled.remove(TableFunction.UPDATE.value)

        record: str = record_class_name(table.name)
        create_params: str = f"Create{record}Params"
        update_params: str = f"Update{record}Params"
        repository: str = f"{record}Repository"
        module: str = table_module_name(table.name)

        pk_field: str = field_identifier(pk.name)
        pk_type: TypeDescriptor = self._column_type(pk)

        imports: Dict[str, Set[str]] = {
            "typing": {"Any"},
            "psycopg": {"AsyncConnection"},
            "pydantic": {"BaseModel", "ConfigDict"},
        }
        merge_imports(imports, pk_type.imports)

        body: List[str] = []

        # --- SQL constants ---
        select_list: str = ", ".join(_ident(c.name) for c in table.columns)
        source: str = _qualified_name(table)
        pk_ident: str = _ident(pk.name)
        body.extend(self._table_sql(table, enabled, select_list, source, pk_ident))

        # --- Models ---
        body.append("")
        body.append("")
        body.extend(
            self._model_class(
                record,
                f"Row of {source.replace('%%', '%')}.",
                [(c.name, self._column_type(c), False) for c in table.columns],
                True,
                imports,
            )
        )
        exported: List[str] = [record]

        if TableFunction.CREATE.value in enabled:
            body.append("")
            body.append("")
            body.extend(
                self._model_class(
                    create_params,
                    f"Values for inserting a {record}; columns with defaults are left to the database.",
                    [
                        (c.name, self._column_type(c), c.nullable)
                        for c in table.insertable_columns
                    ],
                    False,
                    imports,
                )
            )
            exported.append(create_params)

        if TableFunction.UPDATE.value in enabled:
            body.append("")
            body.append("")
            body.extend(
                self._model_class(
                    update_params,
                    f"Full replacement values for every non-key column of a {record}.",
                    [
                        (c.name, self._column_type(c), False)
                        for c in table.updatable_columns
                    ],
                    False,
                    imports,
                )
            )
            exported.append(update_params)

        # --- Repository ---
        body.append("")
        body.append("")
        body.extend(
            self._repository_class(
                table, enabled, record, create_params, update_params, repository,
                pk_field, pk_type, imports,
            )
        )
        exported.append(repository)

        operations: List[str] = []
        for function in enabled:
            operations.extend(_TABLE_METHODS[function])

        lines: List[str] = _module_header(
            f"Repository for table {source.replace('%%', '%')}."
        )
        lines.append(_split_imports(imports))
        lines.append("")
        lines.append(f"ENTITY = {table.name!r}")
        lines.append("")
        retry = self._config.retry
        lines.append(
            f"RETRY_CONFIG = runtime.RetryConfig("
            f"max_attempts={retry.max_attempts!r}, "
            f"base_delay={float(retry.base_delay)!r}, "
            f"max_delay={float(retry.max_delay)!r})"
        )
        lines.append("")
        lines.extend(body)
        content: str = "\n".join(lines) + "\n"

        logger.debug(
            "Rendered table '%s' -> %s.py (%d operations).",
            table.name,
            module,
            len(operations),
        )
        return GeneratedUnit(
            kind="table",
            entity_name=table.name,
            module_name=module,
            files=[GeneratedFile(path=f"{module}.py", content=content)],
            operations=operations,
            exported_names=exported,
        )

    def _table_sql(
        self,
        table: Table,
        enabled: Sequence[str],
        select_list: str,
        source: str,
        pk_ident: str,
    ) -> List[str]:
        out: List[str] = []

        def add(name: str, sql: str) -> None:
            out.append("")
            out.extend(_sql_constant(name, sql))

        if TableFunction.CREATE.value in enabled:
            insertable: List[Column] = table.insertable_columns
            if insertable:
                names: str = ", ".join(_ident(c.name) for c in insertable)
                values: str = ", ".join("%s" for _ in insertable)
                sql: str = (
                    f"INSERT INTO {source} ({names})\n"
                    f"VALUES ({values})\n"
                    f"RETURNING {select_list}"
                )
            else:
                sql = f"INSERT INTO {source}\nDEFAULT VALUES\nRETURNING {select_list}"
            add("_CREATE_SQL", sql)

        if TableFunction.GET.value in enabled:
            add(
                "_GET_SQL",
                f"SELECT {select_list}\nFROM {source}\nWHERE {pk_ident} = %s",
            )

        if TableFunction.UPDATE.value in enabled:
            assignments: str = ", ".join(
                f"{_ident(c.name)} = %s" for c in table.updatable_columns
            )
            add(
                "_UPDATE_SQL",
                f"UPDATE {source}\nSET {assignments}\n"
                f"WHERE {pk_ident} = %s\nRETURNING {select_list}",
            )

        if TableFunction.DELETE.value in enabled:
            add("_DELETE_SQL", f"DELETE FROM {source}\nWHERE {pk_ident} = %s")

        if TableFunction.LIST.value in enabled:
            add(
                "_LIST_SQL",
                f"SELECT {select_list}\nFROM {source}\nORDER BY {pk_ident} ASC",
            )

        if TableFunction.PAGINATE.value in enabled:
            add(
                "_PAGE_SQL",
                f"SELECT {select_list}\nFROM {source}\n"
                f"WHERE (%s::uuid IS NULL OR {pk_ident} > %s)\n"
                f"ORDER BY {pk_ident} ASC\nLIMIT %s",
            )
        return out

    def _repository_class(
        self,
        table: Table,
        enabled: Sequence[str],
        record: str,
        create_params: str,
        update_params: str,
        repository: str,
        pk_field: str,
        pk_type: TypeDescriptor,
        imports: Dict[str, Set[str]],
    ) -> List[str]:
        pk_ann: str = pk_type.annotation
        lines: List[str] = [f"class {repository}:"]
        lines.append(f'{_INDENT}"""')
        lines.append(f"{_INDENT}Data access for {_doc_safe(repr(table.name))}.")
        lines.append("")
        lines.append(
            f"{_INDENT}Failures surface as ``runtime.RepositoryError`` subclasses; the"
        )
        lines.append(
            f"{_INDENT}``*_with_retry`` methods retry transient ones using ``retry_config``."
        )
        lines.append(f'{_INDENT}"""')
        lines.append("")
        lines.append(f"{_INDENT}def __init__(")
        lines.append(f"{_DOUBLE_INDENT}self,")
        lines.append(f"{_DOUBLE_INDENT}conn: AsyncConnection[Any],")
        lines.append(f"{_DOUBLE_INDENT}retry_config: runtime.RetryConfig = RETRY_CONFIG,")
        lines.append(f"{_INDENT}) -> None:")
        lines.append(f"{_DOUBLE_INDENT}self._conn = conn")
        lines.append(f"{_DOUBLE_INDENT}self._retry_config = retry_config")

        def call(sql_name: str, args: str, operation: str) -> List[str]:
            return [
                f"{_TRIPLE_INDENT}self._conn,",
                f"{_TRIPLE_INDENT}{sql_name},",
                f"{_TRIPLE_INDENT}{args},",
                f'{_TRIPLE_INDENT}operation="{operation}",',
                f"{_TRIPLE_INDENT}entity=ENTITY,",
            ]

        def retry(method: str, signature: str, returns: str, invocation: str) -> List[str]:
            return [
                "",
                f"{_INDENT}async def {method}_with_retry(self{signature}) -> {returns}:",
                f"{_DOUBLE_INDENT}return await runtime.retry_operation(",
                f'{_TRIPLE_INDENT}"{method}",',
                f"{_TRIPLE_INDENT}lambda: self.{invocation},",
                f"{_TRIPLE_INDENT}self._retry_config,",
                f"{_DOUBLE_INDENT})",
            ]

        def param_tuple(columns: Sequence[Column], trailing: Optional[str] = None) -> str:
            items: List[str] = [
                _bound_value(f"params.{field_identifier(c.name)}", self._column_type(c))
                for c in columns
            ]
            if trailing is not None:
                items.append(trailing)
            if not items:
                return "()"
            if len(items) == 1:
                return f"({items[0]},)"
            return f"({', '.join(items)})"

        if TableFunction.CREATE.value in enabled:
            lines.append("")
            lines.append(
                f"{_INDENT}async def create(self, params: {create_params}) -> {record}:"
            )
            lines.append(f'{_DOUBLE_INDENT}"""Insert a row and return it as stored."""')
            lines.append(f"{_DOUBLE_INDENT}row = await runtime.fetch_one(")
            lines.extend(
                call("_CREATE_SQL", param_tuple(table.insertable_columns), "create")
            )
            lines.append(f"{_DOUBLE_INDENT})")
            lines.append(f"{_DOUBLE_INDENT}if row is None:")
            lines.append(
                f'{_TRIPLE_INDENT}raise runtime.UnclassifiedError("create", ENTITY, "INSERT returned no row")'
            )
            lines.append(f"{_DOUBLE_INDENT}return {record}.model_validate(row)")
            lines.extend(
                retry("create", f", params: {create_params}", record, "create(params)")
            )

        if TableFunction.GET.value in enabled:
            lines.append("")
            lines.append(f"{_INDENT}async def get(self, {pk_field}: {pk_ann}) -> {record}:")
            lines.append(
                f'{_DOUBLE_INDENT}"""Fetch one row by primary key; raises ``runtime.NotFoundError``."""'
            )
            lines.append(f"{_DOUBLE_INDENT}row = await runtime.fetch_one(")
            lines.extend(call("_GET_SQL", f"({pk_field},)", "get"))
            lines.append(f"{_DOUBLE_INDENT})")
            lines.append(f"{_DOUBLE_INDENT}if row is None:")
            lines.append(
                f'{_TRIPLE_INDENT}raise runtime.NotFoundError("get", ENTITY, f"no row with {pk_field}={{{pk_field}}}")'
            )
            lines.append(f"{_DOUBLE_INDENT}return {record}.model_validate(row)")
            lines.extend(
                retry("get", f", {pk_field}: {pk_ann}", record, f"get({pk_field})")
            )

        if TableFunction.UPDATE.value in enabled:
            lines.append("")
            lines.append(
                f"{_INDENT}async def update(self, {pk_field}: {pk_ann}, "
                f"params: {update_params}) -> {record}:"
            )
            lines.append(
                f'{_DOUBLE_INDENT}"""Overwrite every non-key column; raises ``runtime.NotFoundError``."""'
            )
            lines.append(f"{_DOUBLE_INDENT}row = await runtime.fetch_one(")
            lines.extend(
                call(
                    "_UPDATE_SQL",
                    param_tuple(table.updatable_columns, trailing=pk_field),
                    "update",
                )
            )
            lines.append(f"{_DOUBLE_INDENT})")
            lines.append(f"{_DOUBLE_INDENT}if row is None:")
            lines.append(
                f'{_TRIPLE_INDENT}raise runtime.NotFoundError("update", ENTITY, f"no row with {pk_field}={{{pk_field}}}")'
            )
            lines.append(f"{_DOUBLE_INDENT}return {record}.model_validate(row)")
            lines.extend(
                retry(
                    "update",
                    f", {pk_field}: {pk_ann}, params: {update_params}",
                    record,
                    f"update({pk_field}, params)",
                )
            )

        if TableFunction.DELETE.value in enabled:
            lines.append("")
            lines.append(f"{_INDENT}async def delete(self, {pk_field}: {pk_ann}) -> None:")
            lines.append(
                f'{_DOUBLE_INDENT}"""Delete by primary key; raises ``runtime.NotFoundError`` if nothing matched."""'
            )
            lines.append(f"{_DOUBLE_INDENT}affected = await runtime.execute(")
            lines.extend(call("_DELETE_SQL", f"({pk_field},)", "delete"))
            lines.append(f"{_DOUBLE_INDENT})")
            lines.append(f"{_DOUBLE_INDENT}if affected == 0:")
            lines.append(
                f'{_TRIPLE_INDENT}raise runtime.NotFoundError("delete", ENTITY, f"no row with {pk_field}={{{pk_field}}}")'
            )
            lines.extend(
                retry("delete", f", {pk_field}: {pk_ann}", "None", f"delete({pk_field})")
            )

        if TableFunction.LIST.value in enabled:
            merge_imports(imports, [("typing", "List")])
            lines.append("")
            lines.append(f"{_INDENT}async def list(self) -> List[{record}]:")
            lines.append(f'{_DOUBLE_INDENT}"""Every row, ordered by primary key."""')
            lines.append(f"{_DOUBLE_INDENT}rows = await runtime.fetch_all(")
            lines.extend(call("_LIST_SQL", "()", "list"))
            lines.append(f"{_DOUBLE_INDENT})")
            lines.append(f"{_DOUBLE_INDENT}return [{record}.model_validate(row) for row in rows]")
            lines.extend(retry("list", "", f"List[{record}]", "list()"))

        if TableFunction.PAGINATE.value in enabled:
            merge_imports(
                imports, [("typing", "List"), ("typing", "Optional"), ("uuid", "UUID")]
            )
            signature: str = ", params: Optional[runtime.PaginationParams] = None"
            returns: str = f"runtime.Page[{record}]"
            lines.append("")
            lines.append(f"{_INDENT}async def list_paginated(")
            lines.append(f"{_DOUBLE_INDENT}self, params: Optional[runtime.PaginationParams] = None")
            lines.append(f"{_INDENT}) -> {returns}:")
            lines.append(
                f'{_DOUBLE_INDENT}"""One page in primary-key order; raises ``runtime.InvalidCursorError``."""'
            )
            lines.append("")
            lines.append(
                f"{_DOUBLE_INDENT}async def fetch(after: Optional[UUID], limit: int) -> List[{record}]:"
            )
            lines.append(f"{_TRIPLE_INDENT}rows = await runtime.fetch_all(")
            lines.extend(
                f"{_INDENT}{line}"
                for line in call("_PAGE_SQL", "(after, after, limit)", "list_paginated")
            )
            lines.append(f"{_TRIPLE_INDENT})")
            lines.append(f"{_TRIPLE_INDENT}return [{record}.model_validate(row) for row in rows]")
            lines.append("")
            lines.append(
                f"{_DOUBLE_INDENT}return await runtime.paginate(fetch, params, key=lambda item: item.{pk_field})"
            )
            lines.extend(retry("list_paginated", signature, returns, "list_paginated(params)"))

        return lines

    # ===================================================================
    # 2. Query module
    # ===================================================================

    def render_queries(self, source_stem: str, queries: Sequence[Query]) -> GeneratedUnit:
        """
        Render the module for the analyzed *queries* of ``<source_stem>.sql``.

        Queries must already have passed ``validate_query``; they are emitted
        in the order given.
        """
        module: str = query_module_name(source_stem)
        class_name: str = query_class_name(source_stem)

        imports: Dict[str, Set[str]] = {
            "typing": {"Any"},
            "psycopg": {"AsyncConnection"},
        }

        constants: List[str] = []
        models: List[str] = []
        methods: List[str] = []
        operations: List[str] = []
        exported: List[str] = []

        for query in queries:
            method: str = safe_identifier(query.name)
            sql_name: str = f"_{method.upper().rstrip('_')}_SQL"
            row_class: Optional[str] = None
            operations.append(method)

            if query.mode != QueryMode.EXEC:
                row_class = row_class_name(query.name)
                merge_imports(imports, [("pydantic", "BaseModel"), ("pydantic", "ConfigDict")])
                models.append("")
                models.append("")
                models.extend(
                    self._model_class(
                        row_class,
                        f"Result row of {query.name}.",
                        [(c.name, self._result_type(c), False) for c in query.columns],
                        True,
                        imports,
                    )
                )
                exported.append(row_class)

            constants.append("")
            constants.extend(_sql_constant(sql_name, self._query_sql(query)))
            methods.extend(self._query_method(query, method, sql_name, row_class, imports))

        exported.append(class_name)

        lines: List[str] = _module_header(f"Queries from {source_stem}.sql.")
        lines.append(_split_imports(imports))
        lines.append("")
        lines.append(f"ENTITY = {source_stem!r}")
        lines.extend(constants)
        lines.extend(models)
        lines.append("")
        lines.append("")
        lines.append(f"class {class_name}:")
        lines.append(f'{_INDENT}"""Annotated queries of {_doc_safe(source_stem)}.sql, in file order."""')
        lines.append("")
        lines.append(f"{_INDENT}def __init__(self, conn: AsyncConnection[Any]) -> None:")
        lines.append(f"{_DOUBLE_INDENT}self._conn = conn")
        lines.extend(methods)
        content: str = "\n".join(lines) + "\n"

        logger.debug(
            "Rendered %d query(ies) from %s.sql -> %s.py.",
            len(queries),
            source_stem,
            module,
        )
        return GeneratedUnit(
            kind="queries",
            entity_name=f"{source_stem}.sql",
            module_name=module,
            files=[GeneratedFile(path=f"{module}.py", content=content)],
            operations=operations,
            exported_names=exported,
        )

    def _result_type(self, col: ResultColumn) -> TypeDescriptor:
        return self._types.map_type(col.data_type, col.nullable, col.is_array)

    def _query_sql(self, query: Query) -> str:
        sql: str = rewrite_placeholders(query.sql)
        if query.mode != QueryMode.PAGINATED:
            return sql
        key: Optional[ResultColumn] = pagination_key_column(query)
        if key is None:
            raise ValueError(f"Query '{query.name}' has no pagination key column.")
        key_ref: str = f"page_source.{_ident(key.name)}"
        return (
            f"SELECT * FROM (\n{sql}\n) AS page_source\n"
            f"WHERE (%(cursor)s::uuid IS NULL OR {key_ref} > %(cursor)s)\n"
            f"ORDER BY {key_ref} ASC\n"
            f"LIMIT %(limit)s"
        )

    def _query_method(
        self,
        query: Query,
        method: str,
        sql_name: str,
        row_class: Optional[str],
        imports: Dict[str, Set[str]],
    ) -> List[str]:
        params: List[Tuple[str, str]] = []
        bound: List[str] = []
        for index in range(1, query.placeholder_count + 1):
            if index <= len(query.parameters):
                param = query.parameters[index - 1]
                descriptor: TypeDescriptor = self._types.map_type(
                    param.data_type, False, param.is_array
                )
                merge_imports(imports, descriptor.imports)
                params.append((f"arg{index}", descriptor.annotation))
                bound.append(_bound_value(f"arg{index}", descriptor))
            else:
                merge_imports(imports, [("typing", "Any")])
                params.append((f"arg{index}", "Any"))
                bound.append(f"arg{index}")

        arg_items: List[str] = [f'"p{i}": {expr}' for i, expr in enumerate(bound, start=1)]
        signature: str = "".join(f", {name}: {ann}" for name, ann in params)
        location: str = f"{query.source_file}:{query.line}" if query.source_file else query.name
        doc: str = f'{_DOUBLE_INDENT}"""``-- name: {query.name} :{query.mode}`` ({_doc_safe(location)})."""'

        def call_args(args_expr: str, indent: str) -> List[str]:
            return [
                f"{indent}self._conn,",
                f"{indent}{sql_name},",
                f"{indent}{args_expr},",
                f'{indent}operation="{method}",',
                f"{indent}entity=ENTITY,",
            ]

        args_expr: str = "{" + ", ".join(arg_items) + "}"
        lines: List[str] = [""]
        mode: str = query.mode

        if mode == QueryMode.ONE:
            lines.append(f"{_INDENT}async def {method}(self{signature}) -> {row_class}:")
            lines.append(doc)
            lines.append(f"{_DOUBLE_INDENT}row = await runtime.fetch_one(")
            lines.extend(call_args(args_expr, _TRIPLE_INDENT))
            lines.append(f"{_DOUBLE_INDENT})")
            lines.append(f"{_DOUBLE_INDENT}if row is None:")
            lines.append(
                f'{_TRIPLE_INDENT}raise runtime.NotFoundError("{method}", ENTITY, "query returned no rows")'
            )
            lines.append(f"{_DOUBLE_INDENT}return {row_class}.model_validate(row)")

        elif mode == QueryMode.MANY:
            merge_imports(imports, [("typing", "List")])
            lines.append(f"{_INDENT}async def {method}(self{signature}) -> List[{row_class}]:")
            lines.append(doc)
            lines.append(f"{_DOUBLE_INDENT}rows = await runtime.fetch_all(")
            lines.extend(call_args(args_expr, _TRIPLE_INDENT))
            lines.append(f"{_DOUBLE_INDENT})")
            lines.append(f"{_DOUBLE_INDENT}return [{row_class}.model_validate(row) for row in rows]")

        elif mode == QueryMode.EXEC:
            lines.append(f"{_INDENT}async def {method}(self{signature}) -> int:")
            lines.append(doc)
            lines.append(f"{_DOUBLE_INDENT}return await runtime.execute(")
            lines.extend(call_args(args_expr, _TRIPLE_INDENT))
            lines.append(f"{_DOUBLE_INDENT})")

        else:
            key: Optional[ResultColumn] = pagination_key_column(query)
            key_field: str = field_identifier(key.name) if key is not None else "id"
            merge_imports(
                imports, [("typing", "List"), ("typing", "Optional"), ("uuid", "UUID")]
            )
            page_items: List[str] = arg_items + ['"cursor": after', '"limit": limit']
            page_args: str = "{" + ", ".join(page_items) + "}"
            lines.append(f"{_INDENT}async def {method}(")
            lines.append(
                f"{_DOUBLE_INDENT}self{signature}, params: Optional[runtime.PaginationParams] = None"
            )
            lines.append(f"{_INDENT}) -> runtime.Page[{row_class}]:")
            lines.append(doc)
            lines.append("")
            lines.append(
                f"{_DOUBLE_INDENT}async def fetch(after: Optional[UUID], limit: int) -> List[{row_class}]:"
            )
            lines.append(f"{_TRIPLE_INDENT}rows = await runtime.fetch_all(")
            lines.extend(call_args(page_args, _QUAD_INDENT))
            lines.append(f"{_TRIPLE_INDENT})")
            lines.append(
                f"{_TRIPLE_INDENT}return [{row_class}.model_validate(row) for row in rows]"
            )
            lines.append("")
            lines.append(
                f"{_DOUBLE_INDENT}return await runtime.paginate(fetch, params, key=lambda item: item.{key_field})"
            )

        return lines

    # ===================================================================
    # 3. Package __init__ and runtime
    # ===================================================================

    def render_package_init(self, units: Sequence[GeneratedUnit]) -> GeneratedUnit:
        """``__init__.py`` re-exporting the classes of *units*, sorted by module."""
        lines: List[str] = [
            '"""',
            f"Generated repositories ({self._config.output.package}).",
            "",
            GENERATED_NOTICE,
            '"""',
            "",
            f"from . import {RUNTIME_MODULE}",
        ]
        exported: List[str] = []
        for unit in sorted(units, key=lambda u: u.module_name):
            if not unit.module_name or not unit.exported_names:
                continue
            names: List[str] = sorted(unit.exported_names)
            exported.extend(names)
            lines.append(f"from .{unit.module_name} import (")
            lines.extend(f"{_INDENT}{name}," for name in names)
            lines.append(")")

        lines.append("")
        lines.append("__all__ = [")
        lines.extend(f'{_INDENT}"{name}",' for name in sorted(exported + [RUNTIME_MODULE]))
        lines.append("]")
        content: str = "\n".join(lines) + "\n"

        return GeneratedUnit(
            kind="package",
            entity_name=self._config.output.package,
            files=[GeneratedFile(path="__init__.py", content=content)],
            exported_names=[],
        )

    def render_runtime(self) -> GeneratedFile:
        """The shared support module, byte-identical to ``pgforge/runtime.py``."""
        source: str = (
            resources.files("pgforge").joinpath("runtime.py").read_text(encoding="utf-8")
        )
        return GeneratedFile(path=f"{RUNTIME_MODULE}.py", content=source)


__all__: List[str] = [
    "GENERATED_NOTICE",
    "RUNTIME_MODULE",
    "TemplateGenerator",
]

logger.debug("pgforge.templates loaded.")
