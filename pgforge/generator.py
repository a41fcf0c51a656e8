# File: pgforge/generator.py
"""
pgforge - Generation Pipeline (Orchestrator)
=============================================

Connects every phase together:

    Config -> Parse SQL files -> Introspect -> Validate tables
           -> Describe queries -> Render (in memory) -> Collision check
           -> Export

Workflow::

    1. Validate the configuration (``validators.validate_config``).
    2. Parse every ``*.sql`` file of ``queries.directory`` (no database).
    3. Connect and introspect the schema (``introspect.Introspector``).
    4. Split tables by the primary-key rule; rejected tables are skipped.
    5. Describe each query on the server (``query_parser.QueryAnalyzer``);
       rejected or inconsistent queries are skipped.
    6. Render every unit plus the package ``__init__`` and ``runtime.py``.
    7. Check generated identifiers for collisions.
    8. Hand the files to ``RepositoryExporter`` (unless dry-run).

Error handling strategy (three tiers):
    - Fatal: configuration errors, connection failures, an empty schema,
      malformed annotations, naming collisions and cancellation raise out
      of ``Generator.generate`` before a single file is written.
    - Skip-with-warning: a table without a single uuid primary key, or a
      query the server rejects, is recorded in ``report.skipped`` and the
      run carries on.
    - Runtime: errors inside generated code are the business of the
      emitted ``runtime`` module, not of this pipeline.

Cancellation: pass a ``threading.Event``; it is checked before every
database round-trip and between steps.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pgforge.database import Database
from pgforge.errors import (
    ConfigError,
    ExportError,
    GenerationCancelledError,
    NamingCollisionError,
    QueryPrepareError,
)
from pgforge.exporters import ExportManifest, ExportResult, RepositoryExporter, render_manifest
from pgforge.introspect import Introspector
from pgforge.models import GeneratedFile, GeneratedUnit, GenerationConfig, Query, Table
from pgforge.query_parser import QueryAnalyzer, parse_query_directory, parse_query_files
from pgforge.templates import TemplateGenerator
from pgforge.type_mapping import TypeMapper
from pgforge.utils import Timer, count_lines
from pgforge.validators import (
    ValidationResult,
    validate_column_names,
    validate_config,
    validate_naming,
    validate_query,
    validate_tables,
)

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.generator")


# ---------------------------------------------------------------------------
# Generation report
# ---------------------------------------------------------------------------


@dataclass(frozen=False, slots=True)
class GenerationStepMetric:
    """Timing and outcome for a single pipeline step."""

    step_name: str = ""
    success: bool = True
    elapsed_seconds: float = 0.0
    detail: str = ""


@dataclass(frozen=True, slots=True)
class SkippedUnit:
    """A table or query left out of the output, with the reason."""

    kind: str  # "table" | "query"
    name: str
    reason: str

    def __str__(self) -> str:
        return f"{self.kind} {self.name}: {self.reason}"


@dataclass(frozen=False, slots=True)
class GenerationReport:
    """
    Outcome of a successful ``Generator.generate()`` run.

    Fatal problems raise instead, so a report always describes a run that
    produced (or, with ``dry_run``, would have produced) output.
    """

    success: bool = False
    dry_run: bool = False
    package_directory: str = ""

    tables_generated: List[str] = field(default_factory=list)
    query_files_generated: List[str] = field(default_factory=list)
    skipped: List[SkippedUnit] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    files: List[GeneratedFile] = field(default_factory=list)
    total_files: int = 0
    total_bytes: int = 0
    total_lines: int = 0
    total_elapsed_seconds: float = 0.0

    step_metrics: List[GenerationStepMetric] = field(default_factory=list)
    manifest: Optional[ExportManifest] = None
    export_result: Optional[ExportResult] = None

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    def summary(self) -> str:
        lines: List[str] = []
        status: str = "SUCCESS" if self.success else "FAILED"
        if self.dry_run:
            status = f"{status} (dry run, nothing written)"
        lines.append("=" * 60)
        lines.append("  pgforge - Generation Report")
        lines.append("=" * 60)
        lines.append(f"  Status:           {status}")
        lines.append(f"  Package:          {self.package_directory}")
        lines.append(f"  Tables:           {len(self.tables_generated)}")
        lines.append(f"  Query files:      {len(self.query_files_generated)}")
        lines.append(f"  Skipped units:    {self.skipped_count}")
        lines.append(f"  Files:            {self.total_files}")
        lines.append(f"  Total lines:      {self.total_lines:,}")
        lines.append(f"  Total bytes:      {self.total_bytes:,}")
        lines.append(f"  Total time:       {self.total_elapsed_seconds:.3f}s")

        if self.step_metrics:
            lines.append("-" * 60)
            lines.append("  Pipeline Steps:")
            for step in self.step_metrics:
                mark: str = "ok" if step.success else "!!"
                lines.append(
                    f"    [{mark}] {step.step_name:<24s} "
                    f"{step.elapsed_seconds:>7.3f}s  {step.detail}"
                )

        if self.skipped:
            lines.append("-" * 60)
            lines.append(f"  Skipped ({len(self.skipped)}):")
            for unit in self.skipped:
                lines.append(f"    - {unit}")

        if self.warnings:
            lines.append("-" * 60)
            lines.append(f"  Warnings ({len(self.warnings)}):")
            for warning in self.warnings:
                lines.append(f"    - {warning}")

        lines.append("=" * 60)
        return "\n".join(lines)


def _issues_text(result: ValidationResult) -> str:
    return "; ".join(issue.message for issue in result.errors)


# ---------------------------------------------------------------------------
# Generator - pipeline orchestrator
# ---------------------------------------------------------------------------


class Generator:
    """
    Usage::

        config = load_config(Path("pgforge.yaml"))
        report = Generator(config).generate()
        print(report.summary())

    *database* replaces the real connection (anything with ``fetch_all``,
    ``describe`` and ``check_cancelled``); it is used as-is and never
    closed by the generator.
    """

    def __init__(
        self,
        config: GenerationConfig,
        *,
        database: Optional[Any] = None,
        cancel_event: Optional[threading.Event] = None,
        dry_run: bool = False,
    ) -> None:
        self._config: GenerationConfig = config
        self._database: Optional[Any] = database
        self._cancel_event: threading.Event = cancel_event or threading.Event()
        self._dry_run: bool = dry_run
        self._type_mapper: TypeMapper = TypeMapper(config.types.mappings)
        self._templates: TemplateGenerator = TemplateGenerator(config, self._type_mapper)

        logger.debug(
            "Generator initialised: schema=%s, package=%s/%s, dry_run=%s.",
            config.database.schema_name,
            config.output.directory,
            config.output.package,
            dry_run,
        )

    @property
    def package_dir(self) -> Path:
        return Path(self._config.output.directory) / self._config.output.package

    def cancel(self) -> None:
        """Ask a running ``generate()`` to stop at the next checkpoint."""
        self._cancel_event.set()

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise GenerationCancelledError("Generation was cancelled.")

    # -----------------------------------------------------------------
    # Public: per-unit rendering
    # -----------------------------------------------------------------

    def generate_table(self, table: Table) -> GeneratedUnit:
        """Render one (already validated) table with its configured operations."""
        return self._templates.render_table(table, self._config.functions_for(table.name))

    def generate_queries(self, source_stem: str, queries: Sequence[Query]) -> GeneratedUnit:
        """Render the analyzed queries of one SQL file."""
        return self._templates.render_queries(source_stem, queries)

    # -----------------------------------------------------------------
    # Public: full pipeline
    # -----------------------------------------------------------------

    def generate(self) -> GenerationReport:
        """
        Run the whole pipeline.

        Raises ``ConfigError``, ``DatabaseConnectionError``,
        ``SchemaNotFoundError``, ``QuerySyntaxError``,
        ``UnsupportedModeError``, ``NamingCollisionError``,
        ``GenerationCancelledError`` or ``ExportError``; in every case but
        the last nothing has been written.
        """
        pipeline_start: float = time.perf_counter()
        report: GenerationReport = GenerationReport(
            dry_run=self._dry_run,
            package_directory=str(self.package_dir),
        )

        self._step_validate_config(report)
        self._check_cancelled()
        parsed: List[Tuple[Path, List[Query]]] = self._step_parse_queries(report)

        if self._database is not None:
            tables, analyzed = self._gather(self._database, parsed, report)
        else:
            with Database(
                self._config.database.dsn,
                connect_timeout=self._config.database.connect_timeout,
                cancel_event=self._cancel_event,
            ) as db:
                tables, analyzed = self._gather(db, parsed, report)

        self._check_cancelled()
        units: List[GeneratedUnit] = self._step_render(tables, analyzed, report)
        self._step_check_collisions(tables, units, report)

        files: List[GeneratedFile] = [f for unit in units for f in unit.files]
        files.append(self._templates.render_runtime())
        files.sort(key=lambda f: f.path)
        report.files = files

        self._check_cancelled()
        if self._dry_run:
            report.manifest = render_manifest(files, self._config.output.package)
            logger.info("Dry run: %d file(s) rendered, nothing written.", len(files))
        else:
            self._step_export(files, report)

        report.total_files = len(files)
        report.total_bytes = sum(f.size_bytes for f in files)
        report.total_lines = sum(count_lines(f.content) for f in files)
        report.total_elapsed_seconds = time.perf_counter() - pipeline_start
        report.success = True

        if report.skipped:
            logger.warning(
                "Generation finished with %d skipped unit(s).", report.skipped_count
            )
        logger.info(
            "Generation complete: %d table(s), %d query file(s), %d file(s) in %.3fs.",
            len(report.tables_generated),
            len(report.query_files_generated),
            report.total_files,
            report.total_elapsed_seconds,
        )
        return report

    # -----------------------------------------------------------------
    # Pipeline steps
    # -----------------------------------------------------------------

    def _gather(
        self,
        db: Any,
        parsed: List[Tuple[Path, List[Query]]],
        report: GenerationReport,
    ) -> Tuple[List[Table], List[Tuple[str, List[Query]]]]:
        """Every database round-trip of the run happens in here."""
        valid: List[Table] = []
        if self._config.generate_tables:
            tables: List[Table] = self._step_introspect(db, report)
            valid = self._step_validate_tables(tables, report)
        else:
            logger.info("Table generation disabled; skipping introspection.")
        analyzed: List[Tuple[str, List[Query]]] = self._step_analyze(db, parsed, report)
        return valid, analyzed

    def _step_validate_config(self, report: GenerationReport) -> None:
        with Timer("validate_config") as t:
            result: ValidationResult = validate_config(self._config)

        report.warnings.extend(w.message for w in result.warnings)
        report.step_metrics.append(GenerationStepMetric(
            step_name="Validate Config",
            success=result.is_valid,
            elapsed_seconds=t.elapsed,
            detail=f"{len(result.errors)} error(s), {len(result.warnings)} warning(s)",
        ))
        if result.has_errors:
            raise ConfigError(_issues_text(result))

    def _step_parse_queries(self, report: GenerationReport) -> List[Tuple[Path, List[Query]]]:
        directory: Optional[str] = self._config.queries.directory
        if directory is None:
            return []

        files: List[str] = self._config.queries.files
        with Timer("parse_queries") as t:
            parsed: List[Tuple[Path, List[Query]]] = (
                parse_query_files(Path(directory), files)
                if files
                else parse_query_directory(Path(directory))
            )

        total: int = sum(len(queries) for _, queries in parsed)
        report.step_metrics.append(GenerationStepMetric(
            step_name="Parse Queries",
            success=True,
            elapsed_seconds=t.elapsed,
            detail=f"{total} query block(s) in {len(parsed)} file(s)",
        ))
        return parsed

    def _step_introspect(self, db: Any, report: GenerationReport) -> List[Table]:
        self._check_cancelled()
        with Timer("introspect") as t:
            tables: List[Table] = Introspector(db).list_tables(
                self._config.database.schema_name,
                include=self._config.include_patterns,
                exclude=self._config.exclude,
            )

        report.step_metrics.append(GenerationStepMetric(
            step_name="Introspect Schema",
            success=True,
            elapsed_seconds=t.elapsed,
            detail=f"{len(tables)} table(s) in '{self._config.database.schema_name}'",
        ))
        return tables

    def _step_validate_tables(self, tables: List[Table], report: GenerationReport) -> List[Table]:
        with Timer("validate_tables") as t:
            valid, rejected = validate_tables(tables)

        for table, result in rejected:
            reason: str = _issues_text(result)
            report.skipped.append(SkippedUnit("table", table.name, reason))
            logger.warning("Skipping table '%s': %s", table.name, reason)

        for table in valid:
            report.warnings.extend(w.message for w in validate_column_names(table).warnings)
            for col in table.columns:
                if not self._type_mapper.is_known(col.data_type):
                    report.warnings.append(
                        f"Column '{table.name}.{col.name}' has unknown type "
                        f"'{col.data_type}'; generated as bytes."
                    )

        report.step_metrics.append(GenerationStepMetric(
            step_name="Validate Tables",
            success=True,
            elapsed_seconds=t.elapsed,
            detail=f"{len(valid)} valid, {len(rejected)} skipped",
        ))
        return valid

    def _step_analyze(
        self,
        db: Any,
        parsed: List[Tuple[Path, List[Query]]],
        report: GenerationReport,
    ) -> List[Tuple[str, List[Query]]]:
        analyzer: QueryAnalyzer = QueryAnalyzer(db)
        results: List[Tuple[str, List[Query]]] = []
        described: int = 0

        with Timer("analyze_queries") as t:
            for path, queries in parsed:
                kept: List[Query] = []
                for query in queries:
                    self._check_cancelled()
                    label: str = f"{path.name}:{query.name}"
                    try:
                        enriched: Query = analyzer.analyze(query)
                    except QueryPrepareError as exc:
                        report.skipped.append(SkippedUnit("query", label, exc.driver_message))
                        logger.warning("Skipping query %s: %s", label, exc)
                        continue
                    described += 1

                    result: ValidationResult = validate_query(enriched)
                    report.warnings.extend(w.message for w in result.warnings)
                    if result.has_errors:
                        reason: str = _issues_text(result)
                        report.skipped.append(SkippedUnit("query", label, reason))
                        logger.warning("Skipping query %s: %s", label, reason)
                        continue

                    for param in enriched.parameters:
                        if not self._type_mapper.is_known(param.data_type):
                            report.warnings.append(
                                f"Parameter ${param.position} of {label} has unknown "
                                f"type '{param.data_type}'; generated as bytes."
                            )
                    for col in enriched.columns:
                        if not self._type_mapper.is_known(col.data_type):
                            report.warnings.append(
                                f"Column '{col.name}' of {label} has unknown type "
                                f"'{col.data_type}'; generated as bytes."
                            )
                    kept.append(enriched)

                if kept:
                    results.append((path.stem, kept))

        report.step_metrics.append(GenerationStepMetric(
            step_name="Describe Queries",
            success=True,
            elapsed_seconds=t.elapsed,
            detail=f"{described} described, {sum(len(q) for _, q in results)} kept",
        ))
        return results

    def _step_render(
        self,
        tables: List[Table],
        analyzed: List[Tuple[str, List[Query]]],
        report: GenerationReport,
    ) -> List[GeneratedUnit]:
        units: List[GeneratedUnit] = []
        with Timer("render") as t:
            for table in tables:
                units.append(self.generate_table(table))
                report.tables_generated.append(table.name)
            for stem, queries in analyzed:
                units.append(self.generate_queries(stem, queries))
                report.query_files_generated.append(f"{stem}.sql")
            units.append(self._templates.render_package_init(units))

        report.step_metrics.append(GenerationStepMetric(
            step_name="Render",
            success=True,
            elapsed_seconds=t.elapsed,
            detail=f"{len(units)} unit(s)",
        ))
        return units

    def _step_check_collisions(
        self,
        tables: List[Table],
        units: List[GeneratedUnit],
        report: GenerationReport,
    ) -> None:
        with Timer("check_collisions") as t:
            result: ValidationResult = validate_naming(units, tables)
        collisions: List[str] = [issue.message for issue in result.errors]

        report.step_metrics.append(GenerationStepMetric(
            step_name="Check Collisions",
            success=not collisions,
            elapsed_seconds=t.elapsed,
            detail=f"{len(collisions)} collision(s)",
        ))
        if collisions:
            for message in collisions:
                logger.error("Naming collision: %s", message)
            raise NamingCollisionError(collisions)

    def _step_export(self, files: List[GeneratedFile], report: GenerationReport) -> None:
        with Timer("export") as t:
            result: ExportResult = RepositoryExporter(self._config).export(files)

        report.export_result = result
        report.manifest = result.manifest
        report.warnings.extend(result.warnings)
        report.step_metrics.append(GenerationStepMetric(
            step_name="Export to Filesystem",
            success=result.success,
            elapsed_seconds=t.elapsed,
            detail=(
                f"{len(result.written)} written, {len(result.unchanged)} unchanged, "
                f"{len(result.removed)} removed"
            ),
        ))
        if not result.success:
            raise ExportError("; ".join(result.errors))


def generate(
    config: GenerationConfig,
    *,
    database: Optional[Any] = None,
    cancel_event: Optional[threading.Event] = None,
    dry_run: bool = False,
) -> GenerationReport:
    """Functional shortcut for ``Generator(config, ...).generate()``."""
    return Generator(
        config,
        database=database,
        cancel_event=cancel_event,
        dry_run=dry_run,
    ).generate()


__all__: List[str] = [
    "Generator",
    "GenerationReport",
    "GenerationStepMetric",
    "SkippedUnit",
    "generate",
]

logger.debug("pgforge.generator loaded.")
