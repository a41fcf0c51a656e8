# File: pgforge/exporters.py
"""
pgforge - Package Exporter (File-System Manager)
=================================================

Responsible for:
    1. Creating ``<output.directory>/<output.package>/``.
    2. Writing rendered files atomically (write-to-temp then rename),
       leaving byte-identical files untouched.
    3. Removing files a previous run generated that this run no longer
       produces (known from the previous ``manifest.json`` only; files the
       generator never wrote are never touched).
    4. Writing ``manifest.json`` with sizes and checksums.  The manifest
       holds no timestamps or absolute paths, so reruns over the same
       inputs leave it byte-identical too.

Export happens only after everything has been rendered in memory; a
failure here is reported through ``ExportResult.errors``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from pgforge.models import GeneratedFile, GenerationConfig
from pgforge.utils import Timer, count_lines, ensure_directory, sha256_hex, write_file

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.exporters")

MANIFEST_NAME: str = "manifest.json"


# ---------------------------------------------------------------------------
# Data classes for export results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FileRecord:
    """Immutable record of a single exported file."""

    relative_path: str
    size_bytes: int
    line_count: int
    sha256: str


@dataclass(frozen=False, slots=True)
class ExportManifest:
    """Everything one run wrote, in path order."""

    package: str = ""
    generator_version: str = ""
    total_files: int = 0
    total_bytes: int = 0
    total_lines: int = 0
    files: List[FileRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package": self.package,
            "generator_version": self.generator_version,
            "total_files": self.total_files,
            "total_bytes": self.total_bytes,
            "total_lines": self.total_lines,
            "files": [
                {
                    "relative_path": f.relative_path,
                    "size_bytes": f.size_bytes,
                    "line_count": f.line_count,
                    "sha256": f.sha256,
                }
                for f in self.files
            ],
        }

    def to_json(self, indent_size: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent_size, ensure_ascii=False) + "\n"


@dataclass(frozen=True, slots=True)
class ExportResult:
    """Final result returned by ``RepositoryExporter.export()``."""

    success: bool
    manifest: ExportManifest
    errors: Tuple[str, ...]
    warnings: Tuple[str, ...]
    written: Tuple[str, ...]
    unchanged: Tuple[str, ...]
    removed: Tuple[str, ...]
    elapsed_seconds: float


# ---------------------------------------------------------------------------
# RepositoryExporter class
# ---------------------------------------------------------------------------


class RepositoryExporter:
    """
    Writes one output package.

    Usage::

        exporter = RepositoryExporter(config)
        result = exporter.export(files)
        print(result.manifest.to_json())

    Not thread-safe; use one exporter per output package.
    """

    def __init__(
        self,
        config: GenerationConfig,
        *,
        atomic_writes: bool = True,
        remove_stale: bool = True,
    ) -> None:
        self._config: GenerationConfig = config
        self._package_dir: Path = (
            Path(config.output.directory) / config.output.package
        )
        self._atomic_writes: bool = atomic_writes
        self._remove_stale: bool = remove_stale

        self._errors: List[str] = []
        self._warnings: List[str] = []
        self._records: List[FileRecord] = []
        self._written: List[str] = []
        self._unchanged: List[str] = []
        self._removed: List[str] = []

        logger.debug(
            "RepositoryExporter initialised: package_dir=%s, atomic=%s.",
            self._package_dir,
            self._atomic_writes,
        )

    @property
    def package_dir(self) -> Path:
        return self._package_dir

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def export(self, files: Sequence[GeneratedFile]) -> ExportResult:
        """Write *files* (paths relative to the package directory) and the manifest."""
        ordered: List[GeneratedFile] = sorted(files, key=lambda f: f.path)

        with Timer("export") as timer:
            try:
                ensure_directory(self._package_dir)
                previous: Set[str] = self._previous_paths()
                for generated in ordered:
                    self._write_one(generated)
                if self._remove_stale:
                    self._remove_stale_files(previous, {f.path for f in ordered})
                self._write_manifest()
            except OSError as exc:
                error_msg: str = f"Fatal export error: {type(exc).__name__}: {exc}"
                self._errors.append(error_msg)
                logger.error(error_msg)

        manifest: ExportManifest = self._build_manifest()
        success: bool = not self._errors

        if success:
            logger.info(
                "Export complete: %d file(s) in %s (%d written, %d unchanged, %d removed).",
                manifest.total_files,
                self._package_dir,
                len(self._written),
                len(self._unchanged),
                len(self._removed),
            )
        else:
            logger.error("Export finished with %d error(s).", len(self._errors))

        return ExportResult(
            success=success,
            manifest=manifest,
            errors=tuple(self._errors),
            warnings=tuple(self._warnings),
            written=tuple(self._written),
            unchanged=tuple(self._unchanged),
            removed=tuple(self._removed),
            elapsed_seconds=timer.elapsed,
        )

    # -----------------------------------------------------------------
    # Internal: file writing
    # -----------------------------------------------------------------

    def _write_one(self, generated: GeneratedFile) -> None:
        target: Path = self._package_dir / generated.path
        content: str = generated.content
        self._records.append(
            FileRecord(
                relative_path=generated.path,
                size_bytes=generated.size_bytes,
                line_count=count_lines(content),
                sha256=sha256_hex(content),
            )
        )

        if target.is_file() and target.read_bytes() == content.encode("utf-8"):
            self._unchanged.append(generated.path)
            logger.debug("Unchanged: %s", generated.path)
            return

        try:
            write_file(target, content, atomic=self._atomic_writes)
        except OSError as exc:
            error_msg: str = f"Failed to write {generated.path}: {exc}"
            self._errors.append(error_msg)
            logger.error(error_msg)
            return
        self._written.append(generated.path)

    def _previous_paths(self) -> Set[str]:
        manifest_path: Path = self._package_dir / MANIFEST_NAME
        if not manifest_path.is_file():
            return set()
        try:
            data: Any = json.loads(manifest_path.read_text(encoding="utf-8"))
            return {str(f["relative_path"]) for f in data.get("files", [])}
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            warning: str = f"Ignoring unreadable previous manifest: {exc}"
            self._warnings.append(warning)
            logger.warning(warning)
            return set()

    def _remove_stale_files(self, previous: Set[str], current: Set[str]) -> None:
        root: Path = self._package_dir.resolve()
        for rel_path in sorted(previous - current):
            stale: Path = (self._package_dir / rel_path).resolve()
            # Only ever delete inside the package directory.
            if root not in stale.parents or not stale.is_file():
                continue
            try:
                stale.unlink()
            except OSError as exc:
                warning: str = f"Could not remove stale file {rel_path}: {exc}"
                self._warnings.append(warning)
                logger.warning(warning)
                continue
            self._removed.append(rel_path)
            logger.info("Removed stale generated file: %s", rel_path)

    # -----------------------------------------------------------------
    # Internal: manifest
    # -----------------------------------------------------------------

    def _build_manifest(self) -> ExportManifest:
        from pgforge import __version__

        records: List[FileRecord] = sorted(self._records, key=lambda r: r.relative_path)
        return ExportManifest(
            package=self._config.output.package,
            generator_version=__version__,
            total_files=len(records),
            total_bytes=sum(r.size_bytes for r in records),
            total_lines=sum(r.line_count for r in records),
            files=records,
        )

    def _write_manifest(self) -> None:
        content: str = self._build_manifest().to_json()
        target: Path = self._package_dir / MANIFEST_NAME
        if target.is_file() and target.read_bytes() == content.encode("utf-8"):
            return
        write_file(target, content, atomic=self._atomic_writes)
        logger.debug("Wrote manifest to %s.", target)


def render_manifest(
    files: Sequence[GeneratedFile],
    package: str,
    generator_version: Optional[str] = None,
) -> ExportManifest:
    """Manifest for *files* without touching the disk (used by dry runs)."""
    if generator_version is None:
        from pgforge import __version__ as generator_version

    records: List[FileRecord] = [
        FileRecord(
            relative_path=f.path,
            size_bytes=f.size_bytes,
            line_count=count_lines(f.content),
            sha256=sha256_hex(f.content),
        )
        for f in sorted(files, key=lambda f: f.path)
    ]
    return ExportManifest(
        package=package,
        generator_version=generator_version,
        total_files=len(records),
        total_bytes=sum(r.size_bytes for r in records),
        total_lines=sum(r.line_count for r in records),
        files=records,
    )


__all__: List[str] = [
    "MANIFEST_NAME",
    "FileRecord",
    "ExportManifest",
    "ExportResult",
    "RepositoryExporter",
    "render_manifest",
]

logger.debug("pgforge.exporters loaded.")
