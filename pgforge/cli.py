# File: pgforge/cli.py
"""
pgforge - Command-Line Interface
=================================

Built on the standard-library ``argparse`` module.

Usage examples::

    # Use ./pgforge.yaml
    pgforge

    # Explicit config with a few overrides
    python -m pgforge -c config/pgforge.yaml --schema app --package repos

    # No config file at all
    pgforge --dsn postgresql://localhost/blog --queries ./queries -o ./internal

    # Render everything, write nothing
    pgforge --dry-run -v

Exit codes:
    0 - success
    1 - configuration or input error (config file, SQL annotations)
    2 - generation error (database, collisions, cancellation)
    3 - export error
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional, Sequence

from pgforge.config import find_config_file, load_config, parse_config
from pgforge.errors import (
    ConfigError,
    ExportError,
    PgForgeError,
    QuerySyntaxError,
    UnsupportedModeError,
)
from pgforge.generator import GenerationReport, Generator
from pgforge.models import GenerationConfig

# ---------------------------------------------------------------------------
# Logger (configured in _setup_logging)
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge")


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_SUCCESS: int = 0
EXIT_INPUT_ERROR: int = 1
EXIT_GENERATION_ERROR: int = 2
EXIT_EXPORT_ERROR: int = 3


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(verbosity: int) -> None:
    """
    Configure the ``pgforge`` logger.

    Args:
        verbosity: -1 = ERROR, 0 = WARNING, 1 = INFO, 2+ = DEBUG.
    """
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity >= 1:
        level = logging.INFO
    elif verbosity == 0:
        level = logging.WARNING
    else:
        level = logging.ERROR

    handler: logging.StreamHandler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    ))

    root_logger: logging.Logger = logging.getLogger("pgforge")
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.propagate = False


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    from pgforge import __version__

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="pgforge",
        description=(
            "pgforge - schema-first PostgreSQL repository generator.\n\n"
            "Introspects a live database and annotated SQL files and writes "
            "typed async repositories (psycopg 3 + pydantic)."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s\n"
            "  %(prog)s -c pgforge.yaml --dry-run\n"
            "  %(prog)s --dsn postgresql://localhost/blog -o ./internal\n"
        ),
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"pgforge v{__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        type=str,
        default=None,
        metavar="PATH",
        help="Path to pgforge.yaml (default: ./pgforge.yaml if present).",
    )

    config_group = parser.add_argument_group("configuration overrides")
    config_group.add_argument(
        "--dsn",
        type=str,
        default=None,
        metavar="DSN",
        help="Database connection string (default: config, then $DATABASE_URL).",
    )
    config_group.add_argument(
        "--schema",
        type=str,
        default=None,
        metavar="NAME",
        help="Schema to introspect (default: public).",
    )
    config_group.add_argument(
        "-o", "--output",
        type=str,
        default=None,
        metavar="DIR",
        help="Directory that receives the generated package.",
    )
    config_group.add_argument(
        "--package",
        type=str,
        default=None,
        metavar="NAME",
        help="Name of the generated package (default: repositories).",
    )
    config_group.add_argument(
        "--queries",
        type=str,
        default=None,
        metavar="DIR",
        help="Directory of annotated *.sql files.",
    )
    config_group.add_argument(
        "--no-tables",
        action="store_true",
        default=False,
        help="Skip table repositories; generate only the annotated queries.",
    )

    mode_group = parser.add_argument_group("operation modes")
    mode_group.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Run the full pipeline but don't write files to disk.",
    )

    verbosity_group = parser.add_argument_group("verbosity")
    verbosity_group.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v for INFO, -vv for DEBUG).",
    )
    verbosity_group.add_argument(
        "-q", "--quiet",
        action="store_true",
        default=False,
        help="Suppress all output except errors.",
    )

    return parser


# ---------------------------------------------------------------------------
# Config resolution
# ---------------------------------------------------------------------------


def _build_config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Nested override mapping from CLI flags; paths are made absolute."""
    overrides: Dict[str, Any] = {}

    database: Dict[str, Any] = {}
    if args.dsn is not None:
        database["dsn"] = args.dsn
    if args.schema is not None:
        database["schema"] = args.schema
    if database:
        overrides["database"] = database

    output: Dict[str, Any] = {}
    if args.output is not None:
        output["directory"] = str(Path(args.output).resolve())
    if args.package is not None:
        output["package"] = args.package
    if output:
        overrides["output"] = output

    if args.queries is not None:
        overrides["queries"] = {"directory": str(Path(args.queries).resolve())}
    if args.no_tables:
        overrides["generate_tables"] = False

    return overrides


def _resolve_config(args: argparse.Namespace) -> GenerationConfig:
    overrides: Dict[str, Any] = _build_config_overrides(args)

    config_path: Optional[Path]
    if args.config is not None:
        config_path = Path(args.config)
    else:
        config_path = find_config_file()

    if config_path is None:
        logger.info("No config file found; using command-line options only.")
        return parse_config(overrides)
    return load_config(config_path, overrides)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Parse *argv*, run the generator and return the exit code."""
    parser: argparse.ArgumentParser = _build_parser()
    args: argparse.Namespace = parser.parse_args(argv)

    verbosity: int = -1 if args.quiet else args.verbose
    _setup_logging(verbosity)

    try:
        config: GenerationConfig = _resolve_config(args)
        if config.verbose and verbosity == 0:
            _setup_logging(1)
        report: GenerationReport = Generator(config, dry_run=args.dry_run).generate()
    except (ConfigError, QuerySyntaxError, UnsupportedModeError) as exc:
        logger.error("%s", exc)
        return EXIT_INPUT_ERROR
    except ExportError as exc:
        logger.error("Export failed: %s", exc)
        return EXIT_EXPORT_ERROR
    except PgForgeError as exc:
        logger.error("Generation failed: %s", exc)
        return EXIT_GENERATION_ERROR
    except KeyboardInterrupt:
        logger.error("Generation cancelled; nothing was written.")
        return EXIT_GENERATION_ERROR

    if not args.quiet:
        print(report.summary())
    return EXIT_SUCCESS


def cli_main(argv: Optional[Sequence[str]] = None) -> NoReturn:
    """
    Console-script entry point.

    Can be called from ``__main__.py`` or directly for testing.
    """
    sys.exit(run(argv))


__all__: List[str] = [
    "EXIT_SUCCESS",
    "EXIT_INPUT_ERROR",
    "EXIT_GENERATION_ERROR",
    "EXIT_EXPORT_ERROR",
    "run",
    "cli_main",
]

logger.debug("pgforge.cli loaded.")
