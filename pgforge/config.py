# File: pgforge/config.py
"""
pgforge - Configuration Loading
================================
Reads ``pgforge.yaml`` into a validated ``GenerationConfig``.

Example::

    database:
      dsn: postgresql://localhost/blog
      schema: public
    output:
      directory: ./internal
      package: repositories
    tables:
      users:
        functions: [create, get, list, paginate]
      posts:
    exclude: ["schema_migrations"]
    queries:
      directory: ./queries
    types:
      mappings:
        citext: str
    retry:
      max_attempts: 5

An empty ``database.dsn`` falls back to ``$DATABASE_URL`` (then
``$TEST_DATABASE_URL``).  Every failure is raised as ``ConfigError``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from pgforge.errors import ConfigError
from pgforge.models import GenerationConfig

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.config")

DSN_ENV_VARS: tuple = ("DATABASE_URL", "TEST_DATABASE_URL")

DEFAULT_CONFIG_NAMES: tuple = ("pgforge.yaml", "pgforge.yml")


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping; an empty file is an empty mapping."""
    try:
        text: str = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc

    try:
        data: Any = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a YAML mapping at top level of {path}, "
            f"got {type(data).__name__}."
        )
    return data


def _deep_merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_config(
    raw: Mapping[str, Any],
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> GenerationConfig:
    """Validate an already-loaded mapping, applying the DSN environment fallback."""
    env: Mapping[str, str] = os.environ if environ is None else environ
    try:
        config: GenerationConfig = GenerationConfig.model_validate(dict(raw))
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc

    if not config.database.dsn.strip():
        for var in DSN_ENV_VARS:
            value: str = env.get(var, "").strip()
            if value:
                logger.info("database.dsn not set; using $%s.", var)
                config.database.dsn = value
                break
    return config


def _resolve_relative_paths(config: GenerationConfig, base: Path) -> None:
    """Relative directories in a config file are relative to that file."""
    if not Path(config.output.directory).is_absolute():
        config.output.directory = str(base / config.output.directory)
    if config.queries.directory and not Path(config.queries.directory).is_absolute():
        config.queries.directory = str(base / config.queries.directory)


def find_config_file(start: Optional[Path] = None) -> Optional[Path]:
    """First ``pgforge.yaml`` / ``pgforge.yml`` in *start* (default: cwd)."""
    directory: Path = Path(start) if start is not None else Path.cwd()
    for name in DEFAULT_CONFIG_NAMES:
        candidate: Path = directory / name
        if candidate.is_file():
            return candidate
    return None


def load_config(
    path: Path,
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> GenerationConfig:
    """
    Load and validate a configuration file.

    *overrides* (typically from CLI flags) are deep-merged over the file's
    contents before validation.  Relative ``output.directory`` and
    ``queries.directory`` values are resolved against the directory holding
    the config file, so overrides should carry absolute paths.
    """
    config_path: Path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    if not config_path.is_file():
        raise ConfigError(f"Config path is not a file: {config_path}")

    raw: Dict[str, Any] = _load_yaml_file(config_path)
    if overrides:
        raw = _deep_merge(raw, overrides)

    config: GenerationConfig = parse_config(raw, environ=environ)
    _resolve_relative_paths(config, config_path.parent)
    logger.info(
        "Loaded config %s: schema=%s, output=%s/%s.",
        config_path,
        config.database.schema_name,
        config.output.directory,
        config.output.package,
    )
    return config


__all__: List[str] = [
    "DSN_ENV_VARS",
    "load_config",
    "parse_config",
    "find_config_file",
]

logger.debug("pgforge.config loaded.")
