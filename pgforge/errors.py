# File: pgforge/errors.py
"""
pgforge - Generator Exceptions
===============================
Exception hierarchy raised by the generation pipeline itself.

These are *generation-time* failures.  Failures inside generated repository
code are classified by ``pgforge.runtime`` instead and never surface here.

Two tiers are represented:

- Fatal errors (connection failures, an empty schema, naming collisions,
  broken annotations, invalid configuration) abort ``Generator.generate``
  before any file is written.
- ``QueryPrepareError`` is raised per query by the analyzer; the generator
  catches it, records the query as skipped and carries on.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.errors")


class PgForgeError(Exception):
    """Base class for every error raised by pgforge."""


class ConfigError(PgForgeError):
    """The configuration file is missing, unreadable or invalid."""


class DatabaseConnectionError(PgForgeError):
    """The target database could not be reached (or the link dropped)."""


class DatabaseQueryError(PgForgeError):
    """A catalog query failed for a reason other than connectivity."""


class SchemaNotFoundError(PgForgeError):
    """The requested schema contains no tables matching the filters."""

    def __init__(self, schema: str, detail: str = "") -> None:
        self.schema: str = schema
        message: str = f"Schema '{schema}' has no matching tables"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class QuerySyntaxError(PgForgeError):
    """An annotation line or query block could not be parsed."""

    def __init__(
        self,
        message: str,
        source_file: str = "",
        line: Optional[int] = None,
    ) -> None:
        self.source_file: str = source_file
        self.line: Optional[int] = line
        location: str = source_file
        if line is not None:
            location = f"{source_file}:{line}"
        super().__init__(f"{location}: {message}" if location else message)


class UnsupportedModeError(PgForgeError):
    """An annotation names a mode other than one/many/exec/paginated."""

    def __init__(
        self,
        mode: str,
        query_name: str,
        source_file: str = "",
        line: Optional[int] = None,
    ) -> None:
        self.mode: str = mode
        self.query_name: str = query_name
        self.source_file: str = source_file
        self.line: Optional[int] = line
        location: str = f"{source_file}:{line}" if line is not None else source_file
        super().__init__(
            f"{location}: query '{query_name}' uses unsupported mode ':{mode}' "
            f"(expected one of :one, :many, :exec, :paginated)"
        )


class QueryPrepareError(PgForgeError):
    """The server rejected a query during the describe/prepare round-trip."""

    def __init__(self, query_name: str, driver_message: str) -> None:
        self.query_name: str = query_name
        self.driver_message: str = driver_message
        super().__init__(f"query '{query_name}' failed to prepare: {driver_message}")


class NamingCollisionError(PgForgeError):
    """Two generated artifacts resolve to the same identifier."""

    def __init__(self, collisions: Sequence[str]) -> None:
        self.collisions: List[str] = list(collisions)
        joined: str = "; ".join(self.collisions)
        super().__init__(f"Generated identifier collision(s): {joined}")


class GenerationCancelledError(PgForgeError):
    """The caller cancelled generation before it completed."""


class ExportError(PgForgeError):
    """Writing generated files to disk failed."""


__all__: List[str] = [
    "PgForgeError",
    "ConfigError",
    "DatabaseConnectionError",
    "DatabaseQueryError",
    "SchemaNotFoundError",
    "QuerySyntaxError",
    "UnsupportedModeError",
    "QueryPrepareError",
    "NamingCollisionError",
    "GenerationCancelledError",
    "ExportError",
]

logger.debug("pgforge.errors loaded.")
