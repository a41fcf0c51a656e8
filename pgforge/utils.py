# File: pgforge/utils.py
"""
pgforge - Utility Functions & Helpers
======================================
String transformation, identifier safety, SQL quoting, import-block
assembly and file I/O helpers used throughout the generation pipeline.

All string-conversion functions are decorated with
``@lru_cache(maxsize=None)``: the same table and column names are converted
many times while rendering a package.
"""

from __future__ import annotations

import functools
import hashlib
import keyword
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.utils")

# ---------------------------------------------------------------------------
# Pre-compiled regex patterns
# ---------------------------------------------------------------------------

_CAMEL_TO_SNAKE_RE1: re.Pattern[str] = re.compile(r"([A-Z]+)([A-Z][a-z])")
_CAMEL_TO_SNAKE_RE2: re.Pattern[str] = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALPHANUM_RE: re.Pattern[str] = re.compile(r"[^a-zA-Z0-9]")
_MULTI_UNDERSCORE_RE: re.Pattern[str] = re.compile(r"_{2,}")
_LEADING_TRAILING_UNDERSCORE_RE: re.Pattern[str] = re.compile(r"^_+|_+$")
_SPLIT_WORDS_RE: re.Pattern[str] = re.compile(
    r"[A-Z]?[a-z]+|[A-Z]+(?=[A-Z][a-z]|\d|\b)|[A-Z]|\d+"
)

# Names a generated pydantic field must not take: BaseModel attributes and
# the type names imported into every generated module.
_RESERVED_FIELD_NAMES: FrozenSet[str] = frozenset({
    "construct", "copy", "dict", "fields", "from_orm", "json", "parse_file",
    "parse_obj", "parse_raw", "schema", "schema_json", "update_forward_refs",
    "validate",
    "Any", "Decimal", "Field", "List", "Optional", "UUID",
    "date", "datetime", "time", "timedelta",
})

_IRREGULAR_SINGULARS: Dict[str, str] = {
    "people": "person",
    "children": "child",
    "men": "man",
    "women": "woman",
    "indices": "index",
    "statuses": "status",
    "addresses": "address",
    "analyses": "analysis",
}


# ---------------------------------------------------------------------------
# Cached string transformation functions
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=None)
def to_snake_case(name: str) -> str:
    """
    Convert any string to snake_case.

    Examples:
        >>> to_snake_case("GetPostWithAuthor")
        'get_post_with_author'
        >>> to_snake_case("getHTTPResponse")
        'get_http_response'
        >>> to_snake_case("blog-posts")
        'blog_posts'
    """
    if not name:
        return ""
    s: str = _CAMEL_TO_SNAKE_RE1.sub(r"\1_\2", name)
    s = _CAMEL_TO_SNAKE_RE2.sub(r"\1_\2", s)
    s = _NON_ALPHANUM_RE.sub("_", s)
    s = _MULTI_UNDERSCORE_RE.sub("_", s)
    s = _LEADING_TRAILING_UNDERSCORE_RE.sub("", s)
    return s.lower()


@functools.lru_cache(maxsize=None)
def to_pascal_case(name: str) -> str:
    """
    Convert any string to PascalCase.

    Examples:
        >>> to_pascal_case("user_profile")
        'UserProfile'
        >>> to_pascal_case("getUserByID")
        'GetUserById'
    """
    if not name:
        return ""
    words: Tuple[str, ...] = _extract_words(name)
    return "".join(word.capitalize() for word in words)


@functools.lru_cache(maxsize=None)
def to_singular(name: str) -> str:
    """
    Naive English singularisation, good enough for table names.

    Examples:
        >>> to_singular("users")
        'user'
        >>> to_singular("categories")
        'category'
        >>> to_singular("status")
        'status'
    """
    if not name:
        return ""

    lower: str = name.lower()
    if lower in _IRREGULAR_SINGULARS:
        singular: str = _IRREGULAR_SINGULARS[lower]
        if name[0].isupper():
            return singular[0].upper() + singular[1:]
        return singular

    # Only the last word of snake_case names is inflected.
    head, sep, tail = name.rpartition("_")
    if sep:
        return f"{head}_{to_singular(tail)}"

    if lower.endswith("ies") and len(name) > 3:
        return name[:-3] + "y"
    if lower.endswith(("ches", "shes", "sses", "xes", "zes")):
        return name[:-2]
    if lower.endswith(("ss", "us", "is")):
        return name
    if lower.endswith("s") and len(name) > 1:
        return name[:-1]
    return name


@functools.lru_cache(maxsize=None)
def _extract_words(name: str) -> Tuple[str, ...]:
    """Split any casing style into lowercase words (tuple, so it can be cached)."""
    cleaned: str = _NON_ALPHANUM_RE.sub(" ", name)
    words: List[str] = _SPLIT_WORDS_RE.findall(cleaned)
    return tuple(w.lower() for w in words if w)


@functools.lru_cache(maxsize=None)
def safe_identifier(name: str) -> str:
    """
    Turn an arbitrary name into a usable snake_case Python identifier.

    - Prefixes ``_`` when the result starts with a digit
    - Appends ``_`` to Python keywords
    """
    result: str = to_snake_case(name)
    if not result:
        return "_unnamed"
    if result[0].isdigit():
        result = f"_{result}"
    if keyword.iskeyword(result):
        result = f"{result}_"
    return result


@functools.lru_cache(maxsize=None)
def field_identifier(column_name: str) -> str:
    """
    Name of the pydantic field that holds *column_name*.

    Unlike ``safe_identifier`` this may not start with an underscore
    (pydantic treats those as private) or with ``model_`` (reserved by
    pydantic), and must not shadow the names generated modules import.
    """
    result: str = to_snake_case(column_name)
    if not result:
        return "field"
    if result[0].isdigit():
        result = f"col_{result}"
    if result.startswith("model_"):
        result = f"col_{result}"
    if keyword.iskeyword(result) or result in _RESERVED_FIELD_NAMES:
        result = f"{result}_"
    return result


@functools.lru_cache(maxsize=None)
def class_identifier(name: str) -> str:
    """PascalCase class name for *name*; never empty, never starting with a digit."""
    result: str = to_pascal_case(name)
    if not result:
        return "Unnamed"
    if result[0].isdigit():
        result = f"_{result}"
    return result


@functools.lru_cache(maxsize=None)
def record_class_name(table_name: str) -> str:
    """Record model name for a table: singular PascalCase (``blog_posts`` -> ``BlogPost``)."""
    return class_identifier(to_singular(table_name))


@functools.lru_cache(maxsize=None)
def query_class_name(source_stem: str) -> str:
    """Class holding the queries of ``<stem>.sql`` (``blog_posts`` -> ``BlogPostsQueries``)."""
    return f"{class_identifier(source_stem)}Queries"


@functools.lru_cache(maxsize=None)
def row_class_name(query_name: str) -> str:
    return f"{class_identifier(query_name)}Row"


@functools.lru_cache(maxsize=None)
def query_module_name(source_stem: str) -> str:
    """Module holding the queries of ``<stem>.sql``."""
    return f"{safe_identifier(source_stem)}_queries"


@functools.lru_cache(maxsize=None)
def table_module_name(table_name: str) -> str:
    return f"{safe_identifier(table_name)}_repository"


# ---------------------------------------------------------------------------
# SQL & Python literal helpers
# ---------------------------------------------------------------------------


def quote_ident(name: str) -> str:
    """Quote a SQL identifier (``users`` -> ``"users"``)."""
    return '"' + name.replace('"', '""') + '"'


def escape_percent(sql: str) -> str:
    """Double ``%`` so the text survives psycopg's placeholder parsing."""
    return sql.replace("%", "%%")


def python_string_lines(text: str, prefix: str) -> List[str]:
    """
    Render *text* as a parenthesised sequence of adjacent string literals,
    one per source line, each indented with *prefix*.
    """
    parts: List[str] = text.split("\n")
    out: List[str] = []
    for i, part in enumerate(parts):
        piece: str = part + ("\n" if i < len(parts) - 1 else "")
        out.append(f"{prefix}{piece!r}")
    return out


# ---------------------------------------------------------------------------
# File I/O helpers
# ---------------------------------------------------------------------------


def ensure_directory(path: Path) -> None:
    """Create directory (and parents) if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)
    logger.debug("Ensured directory exists: %s", path)


def write_file(path: Path, content: str, atomic: bool = True) -> int:
    """
    Write *content* to *path* and return the number of bytes written.

    With *atomic*, the bytes go to a temporary file in the same directory
    which is then renamed over the target, so readers never see a partial
    file.
    """
    ensure_directory(path.parent)

    encoded: bytes = content.encode("utf-8")

    if not atomic:
        path.write_bytes(encoded)
        logger.debug("Wrote %d bytes to %s", len(encoded), path)
        return len(encoded)

    fd: int = -1
    tmp_path: str = ""
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
        os.write(fd, encoded)
        os.fsync(fd)
        os.close(fd)
        fd = -1
        os.replace(tmp_path, str(path))
    except OSError:
        if fd >= 0:
            os.close(fd)
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise

    logger.debug("Wrote %d bytes to %s", len(encoded), path)
    return len(encoded)


# ---------------------------------------------------------------------------
# Checksum & metrics
# ---------------------------------------------------------------------------


def sha256_hex(content: str) -> str:
    """Return SHA-256 hex digest of a string."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def count_lines(content: str) -> int:
    """Count the number of lines in a string."""
    if not content:
        return 0
    return content.count("\n") + (1 if not content.endswith("\n") else 0)


# ---------------------------------------------------------------------------
# Timer context manager
# ---------------------------------------------------------------------------


class Timer:
    """
    Context-manager timer for profiling pipeline steps.

    Usage:
        with Timer("introspect") as t:
            ...
        print(t.elapsed)
    """

    __slots__ = ("label", "start_time", "end_time", "elapsed")

    def __init__(self, label: str = "operation") -> None:
        self.label: str = label
        self.start_time: float = 0.0
        self.end_time: float = 0.0
        self.elapsed: float = 0.0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[object],
    ) -> None:
        self.end_time = time.perf_counter()
        self.elapsed = self.end_time - self.start_time
        logger.debug("Timer [%s]: %.4f seconds", self.label, self.elapsed)

    def __repr__(self) -> str:
        return f"<Timer {self.label}: {self.elapsed:.4f}s>"


# ---------------------------------------------------------------------------
# Import statement builder
# ---------------------------------------------------------------------------


def build_import_block(imports: Dict[str, Set[str]]) -> str:
    """
    Build a sorted, de-duplicated import block from a mapping of
    module -> set of names.

    Example:
        >>> build_import_block({"typing": {"List", "Optional"}, "uuid": {"UUID"}})
        'from typing import List, Optional\\nfrom uuid import UUID'
    """
    lines: List[str] = []
    for module in sorted(imports.keys()):
        names: List[str] = sorted(imports[module])
        if names:
            lines.append(f"from {module} import {', '.join(names)}")
        else:
            lines.append(f"import {module}")
    return "\n".join(lines)


def merge_imports(
    target: Dict[str, Set[str]],
    pairs: Iterable[Tuple[str, str]],
) -> Dict[str, Set[str]]:
    """Add ``(module, name)`` pairs to an import mapping in place and return it."""
    for module, name in pairs:
        target.setdefault(module, set()).add(name)
    return target


__all__: List[str] = [
    "to_snake_case",
    "to_pascal_case",
    "to_singular",
    "safe_identifier",
    "field_identifier",
    "class_identifier",
    "record_class_name",
    "query_class_name",
    "row_class_name",
    "query_module_name",
    "table_module_name",
    "quote_ident",
    "escape_percent",
    "python_string_lines",
    "ensure_directory",
    "write_file",
    "sha256_hex",
    "count_lines",
    "Timer",
    "build_import_block",
    "merge_imports",
]

logger.debug("pgforge.utils loaded.")
