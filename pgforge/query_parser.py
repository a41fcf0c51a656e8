# File: pgforge/query_parser.py
"""
pgforge - Annotated Query Parsing & Analysis
=============================================
Turns SQL files made of annotated blocks::

    -- name: GetUserByEmail :one
    SELECT id, name, email FROM users WHERE email = $1;

into ``Query`` models in two stages:

1. **Parsing** (no database): split the file on ``-- name: X :mode``
   annotations, trim each body, and find its ``$n`` placeholders while
   ignoring string literals, quoted identifiers, dollar-quoted bodies and
   comments.  The highest index is the parameter count.
2. **Analysis** (``QueryAnalyzer``): prepare and describe each body on the
   live server, then resolve parameter/result type OIDs through ``pg_type``
   and result nullability through ``pg_attribute``.  No SQL type checking
   happens here; the server is the authority.

The lexer is also used by the renderer to rewrite ``$n`` placeholders into
psycopg's ``%(pn)s`` form.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from pgforge.errors import ConfigError, QuerySyntaxError, UnsupportedModeError
from pgforge.models import Parameter, Query, QueryMode, ResultColumn

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.query_parser")

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

ANNOTATION_RE: re.Pattern[str] = re.compile(
    r"^--\s*name:\s*([A-Za-z_][A-Za-z0-9_]*)\s*:([A-Za-z]+)\s*;?\s*$"
)
# Anything that looks like it is trying to be an annotation.
_ANNOTATION_PREFIX_RE: re.Pattern[str] = re.compile(r"^--\s*name\s*:", re.IGNORECASE)

_PLACEHOLDER_RE: re.Pattern[str] = re.compile(r"(?<![A-Za-z0-9_$])\$(\d+)")
_DOLLAR_TAG_RE: re.Pattern[str] = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")
_FIRST_KEYWORD_RE: re.Pattern[str] = re.compile(r"^[\s(]*([A-Za-z]+)")

_VALID_MODES: Dict[str, QueryMode] = {m.value: m for m in QueryMode}

# ---------------------------------------------------------------------------
# SQL lexing
# ---------------------------------------------------------------------------

CODE: str = "code"
STRING: str = "string"
IDENTIFIER: str = "identifier"
DOLLAR: str = "dollar"
COMMENT: str = "comment"


def _is_word_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def _scan_quoted(sql: str, start: int, quote: str, backslash_escapes: bool) -> int:
    """Index just past the closing *quote* (doubled quotes are escapes)."""
    i: int = start + 1
    n: int = len(sql)
    while i < n:
        ch: str = sql[i]
        if backslash_escapes and ch == "\\":
            i += 2
            continue
        if ch == quote:
            if i + 1 < n and sql[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return n


def _scan_block_comment(sql: str, start: int) -> int:
    depth: int = 0
    i: int = start
    n: int = len(sql)
    while i < n:
        if sql.startswith("/*", i):
            depth += 1
            i += 2
        elif sql.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    return n


def split_sql(sql: str) -> List[Tuple[str, str]]:
    """
    Split SQL text into ``(kind, text)`` segments.

    Kinds: ``code``, ``string`` ('...' and E'...'), ``identifier``
    ("..."), ``dollar`` ($tag$...$tag$) and ``comment`` (-- and /* */).
    Concatenating the texts gives back the input unchanged.
    """
    segments: List[Tuple[str, str]] = []
    n: int = len(sql)
    i: int = 0
    code_start: int = 0

    while i < n:
        ch: str = sql[i]
        kind: Optional[str] = None
        end: int = i

        if ch == "-" and sql.startswith("--", i):
            newline: int = sql.find("\n", i)
            end = n if newline == -1 else newline
            kind = COMMENT
        elif ch == "/" and sql.startswith("/*", i):
            end = _scan_block_comment(sql, i)
            kind = COMMENT
        elif ch == "'":
            escape_string: bool = (
                i > 0
                and sql[i - 1] in "eE"
                and (i < 2 or not _is_word_char(sql[i - 2]))
            )
            end = _scan_quoted(sql, i, "'", escape_string)
            kind = STRING
        elif ch == '"':
            end = _scan_quoted(sql, i, '"', False)
            kind = IDENTIFIER
        elif ch == "$" and (i == 0 or not _is_word_char(sql[i - 1])):
            match = _DOLLAR_TAG_RE.match(sql, i)
            if match is not None:
                tag: str = match.group(0)
                close: int = sql.find(tag, match.end())
                end = n if close == -1 else close + len(tag)
                kind = DOLLAR

        if kind is None:
            i += 1
            continue

        if code_start < i:
            segments.append((CODE, sql[code_start:i]))
        segments.append((kind, sql[i:end]))
        i = end
        code_start = end

    if code_start < n:
        segments.append((CODE, sql[code_start:]))
    return segments


def find_placeholders(sql: str) -> List[int]:
    """Sorted, distinct ``$n`` indexes appearing outside literals and comments."""
    found: Set[int] = set()
    for kind, text in split_sql(sql):
        if kind == CODE:
            found.update(int(m.group(1)) for m in _PLACEHOLDER_RE.finditer(text))
    return sorted(found)


def count_placeholders(sql: str) -> int:
    """The highest placeholder index; gaps still count up to it."""
    indexes: List[int] = find_placeholders(sql)
    return indexes[-1] if indexes else 0


def rewrite_placeholders(
    sql: str,
    name_for: Callable[[int], str] = lambda n: f"p{n}",
) -> str:
    """
    Convert ``$n`` placeholders to psycopg named placeholders ``%(pn)s``.

    Every literal ``%`` is doubled, including inside strings and comments,
    because psycopg scans the whole statement for placeholders.
    """
    parts: List[str] = []
    for kind, text in split_sql(sql):
        escaped: str = text.replace("%", "%%")
        if kind == CODE:
            escaped = _PLACEHOLDER_RE.sub(
                lambda m: f"%({name_for(int(m.group(1)))})s", escaped
            )
        parts.append(escaped)
    return "".join(parts)


def statement_kind(sql: str) -> str:
    """Lower-cased leading keyword (``select``, ``with``, ``insert`` ...)."""
    code: str = "".join(text for kind, text in split_sql(sql) if kind == CODE)
    match = _FIRST_KEYWORD_RE.match(code)
    return match.group(1).lower() if match else ""


# ---------------------------------------------------------------------------
# Annotation parsing
# ---------------------------------------------------------------------------


class _Block:
    __slots__ = ("name", "mode", "line", "lines")

    def __init__(self, name: str, mode: QueryMode, line: int) -> None:
        self.name: str = name
        self.mode: QueryMode = mode
        self.line: int = line
        self.lines: List[str] = []


def _finish_block(block: _Block, source_file: str) -> Query:
    body: str = "\n".join(block.lines).strip()
    body = body.rstrip(";").rstrip()
    if not body:
        raise QuerySyntaxError(
            f"query '{block.name}' has an empty body", source_file, block.line
        )
    return Query(
        name=block.name,
        mode=block.mode,
        sql=body,
        source_file=source_file,
        line=block.line,
        placeholder_count=count_placeholders(body),
    )


def parse_query_text(text: str, source_file: str = "<string>") -> List[Query]:
    """
    Parse every annotated block of *text*, in declaration order.

    Text before the first annotation is ignored, as are comment-only and
    blank lines inside bodies.  No annotations means an empty list.
    """
    queries: List[Query] = []
    current: Optional[_Block] = None

    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped: str = raw.strip()

        if _ANNOTATION_PREFIX_RE.match(stripped):
            match = ANNOTATION_RE.match(stripped)
            if match is None:
                raise QuerySyntaxError(
                    f"malformed annotation {stripped!r}; "
                    "expected '-- name: <Identifier> :<mode>'",
                    source_file,
                    lineno,
                )
            name, mode_token = match.group(1), match.group(2)
            if mode_token not in _VALID_MODES:
                raise UnsupportedModeError(mode_token, name, source_file, lineno)
            if current is not None:
                queries.append(_finish_block(current, source_file))
            current = _Block(name, _VALID_MODES[mode_token], lineno)
            continue

        if current is None or not stripped or stripped.startswith("--"):
            continue
        current.lines.append(raw.rstrip())

    if current is not None:
        queries.append(_finish_block(current, source_file))

    logger.debug("Parsed %d query block(s) from %s.", len(queries), source_file)
    return queries


def parse_query_file(path: Path) -> List[Query]:
    """Parse one ``.sql`` file; ``source_file`` is recorded as the bare file name."""
    try:
        text: str = Path(path).read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise QuerySyntaxError(
            f"file is not valid UTF-8 (byte {exc.start})", Path(path).name
        ) from exc
    return parse_query_text(text, source_file=Path(path).name)


def parse_query_directory(directory: Path) -> List[Tuple[Path, List[Query]]]:
    """Parse every ``*.sql`` file of *directory* in file-name order."""
    root: Path = Path(directory)
    if not root.is_dir():
        raise ConfigError(f"Queries directory not found: {root}")
    results: List[Tuple[Path, List[Query]]] = []
    for path in sorted(root.glob("*.sql")):
        results.append((path, parse_query_file(path)))
    logger.info(
        "Parsed %d query file(s), %d block(s) from %s.",
        len(results),
        sum(len(q) for _, q in results),
        root,
    )
    return results


def parse_query_files(directory: Path, files: Sequence[str]) -> List[Tuple[Path, List[Query]]]:
    """
    Parse only the named *files* of *directory*, in the order given.

    Names are relative to *directory*; a missing file is a ``ConfigError``.
    """
    root: Path = Path(directory)
    results: List[Tuple[Path, List[Query]]] = []
    for name in files:
        path: Path = root / name
        if not path.is_file():
            raise ConfigError(f"Query file not found: {path}")
        results.append((path, parse_query_file(path)))
    logger.info(
        "Parsed %d selected query file(s), %d block(s) from %s.",
        len(results),
        sum(len(q) for _, q in results),
        root,
    )
    return results


# ---------------------------------------------------------------------------
# Analysis (describe round-trip)
# ---------------------------------------------------------------------------

TYPE_LOOKUP_SQL: str = """
SELECT t.oid::int8 AS oid,
       t.typname,
       t.typcategory,
       e.typname AS element_name
FROM pg_catalog.pg_type t
LEFT JOIN pg_catalog.pg_type e
  ON e.oid = t.typelem AND t.typcategory = 'A'
WHERE t.oid::int8 = ANY(%s)
""".strip()

NOT_NULL_SQL: str = """
SELECT attrelid::int8 AS table_oid,
       attnum::int4 AS column_number,
       attnotnull
FROM pg_catalog.pg_attribute
WHERE attrelid::int8 = ANY(%s)
  AND attnum > 0
  AND NOT attisdropped
""".strip()

UNKNOWN_TYPE: str = "unknown"


class QueryAnalyzer:
    """
    Fills in parameter and result shapes of parsed queries.

    *db* must provide ``describe(sql, name)``, ``fetch_all(sql, params)``
    and ``check_cancelled()``.  Type and nullability lookups are cached for
    the analyzer's lifetime (one generation run).
    """

    def __init__(self, db: Any) -> None:
        self._db = db
        self._types: Dict[int, Tuple[str, bool]] = {}
        self._not_null: Dict[int, Set[int]] = {}

    def analyze(self, query: Query) -> Query:
        """
        Describe *query* on the server and return an enriched copy.

        Raises ``QueryPrepareError`` when the server rejects the SQL.
        """
        description = self._db.describe(query.sql, query.name)

        oids: Set[int] = set(description.param_oids)
        oids.update(f.type_oid for f in description.fields)
        self._load_types(oids)
        self._load_not_null({f.table_oid for f in description.fields if f.table_oid})

        parameters: List[Parameter] = []
        for position, oid in enumerate(description.param_oids, start=1):
            type_name, is_array = self._types.get(oid, (UNKNOWN_TYPE, False))
            parameters.append(
                Parameter(position=position, data_type=type_name, is_array=is_array)
            )

        columns: List[ResultColumn] = []
        for field in description.fields:
            type_name, is_array = self._types.get(field.type_oid, (UNKNOWN_TYPE, False))
            not_null: bool = bool(field.table_oid) and field.column_number in self._not_null.get(
                field.table_oid, set()
            )
            columns.append(
                ResultColumn(
                    name=field.name,
                    data_type=type_name,
                    nullable=not not_null,
                    is_array=is_array,
                )
            )

        logger.debug(
            "Analyzed %s: params=%s columns=%s",
            query.name,
            [p.data_type for p in parameters],
            [c.name for c in columns],
        )
        return query.model_copy(
            update={"parameters": parameters, "columns": columns, "analyzed": True}
        )

    def _load_types(self, oids: Iterable[int]) -> None:
        missing: List[int] = sorted(o for o in oids if o not in self._types)
        if not missing:
            return
        rows: List[Dict[str, Any]] = self._db.fetch_all(TYPE_LOOKUP_SQL, (missing,))
        for row in rows:
            if row["typcategory"] == "A" and row.get("element_name"):
                self._types[int(row["oid"])] = (row["element_name"], True)
            else:
                self._types[int(row["oid"])] = (row["typname"], False)
        for oid in missing:
            if oid not in self._types:
                logger.warning("Type OID %d not found in pg_type.", oid)

    def _load_not_null(self, table_oids: Iterable[int]) -> None:
        missing: List[int] = sorted(o for o in table_oids if o not in self._not_null)
        if not missing:
            return
        for oid in missing:
            self._not_null[oid] = set()
        rows: List[Dict[str, Any]] = self._db.fetch_all(NOT_NULL_SQL, (missing,))
        for row in rows:
            if row["attnotnull"]:
                self._not_null[int(row["table_oid"])].add(int(row["column_number"]))


__all__: List[str] = [
    "ANNOTATION_RE",
    "TYPE_LOOKUP_SQL",
    "NOT_NULL_SQL",
    "QueryAnalyzer",
    "split_sql",
    "find_placeholders",
    "count_placeholders",
    "rewrite_placeholders",
    "statement_kind",
    "parse_query_text",
    "parse_query_file",
    "parse_query_directory",
    "parse_query_files",
]

logger.debug("pgforge.query_parser loaded.")
