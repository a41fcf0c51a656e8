# File: pgforge/__init__.py
"""
pgforge - Schema-First PostgreSQL Repository Generator
=======================================================

Reads a live PostgreSQL catalog plus hand-written, annotated SQL files and
writes typed async repositories (psycopg 3 + pydantic v2): CRUD methods,
custom query methods, cursor pagination, retry wrappers and a structured
error taxonomy.

Architecture overview::

    +--------------+     +---------------+     +-------------------+
    |  CLI / Entry |---->|   Generator   |---->| TemplateGenerator |
    |   (cli.py)   |     | (generator.py)|     |   (templates.py)  |
    +--------------+     +-------+-------+     +-------------------+
                                 |
         +-----------+-----------+-----------+-----------+
         v           v           v           v           v
    introspect  query_parser  validators type_mapping exporters

Usage::

    # As a library
    from pgforge import Generator, load_config
    report = Generator(load_config("pgforge.yaml")).generate()

    # From the command line
    pgforge -c pgforge.yaml -v

Public API:
    - Generator / generate  - pipeline orchestrator
    - load_config           - YAML configuration loader
    - GenerationConfig      - configuration model
    - TypeMapper / map_type - database type -> Python type
    - parse_query_file      - annotation parser
"""

from __future__ import annotations

__version__: str = "0.1.0"

from pgforge.config import load_config, parse_config
from pgforge.errors import (
    ConfigError,
    DatabaseConnectionError,
    ExportError,
    GenerationCancelledError,
    NamingCollisionError,
    PgForgeError,
    QueryPrepareError,
    QuerySyntaxError,
    SchemaNotFoundError,
    UnsupportedModeError,
)
from pgforge.models import (
    Column,
    GeneratedFile,
    GeneratedUnit,
    GenerationConfig,
    Query,
    QueryMode,
    Table,
    TableFunction,
    TypeDescriptor,
)
from pgforge.type_mapping import TypeMapper, map_type
from pgforge.query_parser import QueryAnalyzer, parse_query_directory, parse_query_file
from pgforge.introspect import Introspector
from pgforge.validators import ValidationResult, validate_primary_key, validate_query
from pgforge.templates import TemplateGenerator
from pgforge.exporters import ExportManifest, ExportResult, RepositoryExporter
from pgforge.generator import GenerationReport, Generator, generate

# ---------------------------------------------------------------------------
# Public API surface
# ---------------------------------------------------------------------------

__all__: list[str] = [
    "__version__",
    # Orchestrator
    "Generator",
    "GenerationReport",
    "generate",
    # Configuration
    "GenerationConfig",
    "load_config",
    "parse_config",
    # Models
    "Column",
    "Table",
    "Query",
    "QueryMode",
    "TableFunction",
    "TypeDescriptor",
    "GeneratedFile",
    "GeneratedUnit",
    # Pipeline pieces
    "Introspector",
    "QueryAnalyzer",
    "parse_query_file",
    "parse_query_directory",
    "TypeMapper",
    "map_type",
    "ValidationResult",
    "validate_primary_key",
    "validate_query",
    "TemplateGenerator",
    "RepositoryExporter",
    "ExportManifest",
    "ExportResult",
    # Errors
    "PgForgeError",
    "ConfigError",
    "DatabaseConnectionError",
    "SchemaNotFoundError",
    "QuerySyntaxError",
    "UnsupportedModeError",
    "QueryPrepareError",
    "NamingCollisionError",
    "GenerationCancelledError",
    "ExportError",
]
