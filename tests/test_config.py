"""
tests/test_config.py
Unit tests for pgforge.config and the configuration models.
"""

from __future__ import annotations

import pathlib
import textwrap

import pytest

from pgforge.config import find_config_file, load_config, parse_config
from pgforge.errors import ConfigError
from pgforge.models import ALL_TABLE_FUNCTIONS, GenerationConfig


def _write(directory: pathlib.Path, text: str, name: str = "pgforge.yaml") -> pathlib.Path:
    path = directory / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


class TestLoadConfig:
    def test_full_file(self, tmp_path: pathlib.Path) -> None:
        path = _write(
            tmp_path,
            """\
            database:
              dsn: postgresql://localhost/blog
              schema: blog
            output:
              directory: /srv/gen
              package: repos
            tables:
              users:
                functions: [create, get]
              posts:
            exclude: ["schema_migrations"]
            types:
              mappings:
                citext: str
            retry:
              max_attempts: 5
            """,
        )
        config = load_config(path, environ={})
        assert config.database.dsn == "postgresql://localhost/blog"
        assert config.database.schema_name == "blog"
        assert config.output.directory == "/srv/gen"
        assert config.output.package == "repos"
        assert config.functions_for("users") == ["create", "get"]
        assert config.functions_for("posts") == list(ALL_TABLE_FUNCTIONS)
        assert config.include_patterns == ["users", "posts"]
        assert config.exclude == ["schema_migrations"]
        assert config.types.mappings == {"citext": "str"}
        assert config.retry.max_attempts == 5

    def test_empty_file_gives_defaults(self, tmp_path: pathlib.Path) -> None:
        config = load_config(_write(tmp_path, ""), environ={})
        assert config.database.dsn == ""
        assert config.database.schema_name == "public"
        assert config.output.package == "repositories"
        assert config.queries.directory is None

    def test_relative_paths_follow_the_file(self, tmp_path: pathlib.Path) -> None:
        project = tmp_path / "project"
        project.mkdir()
        path = _write(
            project,
            """\
            output:
              directory: ./internal
            queries:
              directory: sql
            """,
        )
        config = load_config(path, environ={})
        assert pathlib.Path(config.output.directory) == project / "internal"
        assert pathlib.Path(config.queries.directory) == project / "sql"

    def test_overrides_are_merged(self, tmp_path: pathlib.Path) -> None:
        path = _write(
            tmp_path,
            """\
            database:
              dsn: postgresql://localhost/blog
              schema: blog
            """,
        )
        config = load_config(path, {"database": {"schema": "public"}}, environ={})
        assert config.database.dsn == "postgresql://localhost/blog"
        assert config.database.schema_name == "public"

    def test_queries_only_file(self, tmp_path: pathlib.Path) -> None:
        path = _write(
            tmp_path,
            """\
            tables: false
            queries:
              directory: sql
              files: [users.sql, orders.sql]
            """,
        )
        config = load_config(path, environ={})
        assert config.generate_tables is False
        assert config.tables == {}
        assert config.queries.files == ["users.sql", "orders.sql"]

    def test_tables_on_by_default(self, tmp_path: pathlib.Path) -> None:
        config = load_config(_write(tmp_path, ""), environ={})
        assert config.generate_tables is True
        assert config.queries.files == []

    def test_missing_file(self, tmp_path: pathlib.Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.yaml")

    def test_directory_instead_of_file(self, tmp_path: pathlib.Path) -> None:
        with pytest.raises(ConfigError, match="not a file"):
            load_config(tmp_path)

    def test_invalid_yaml(self, tmp_path: pathlib.Path) -> None:
        path = _write(tmp_path, "database: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path: pathlib.Path) -> None:
        path = _write(tmp_path, "- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_unknown_keys_rejected(self, tmp_path: pathlib.Path) -> None:
        path = _write(tmp_path, "databse:\n  dsn: x\n")
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(path)


class TestParseConfig:
    def test_dsn_falls_back_to_environment(self) -> None:
        config = parse_config({}, environ={"DATABASE_URL": "postgresql://env/db"})
        assert config.database.dsn == "postgresql://env/db"

    def test_second_environment_variable(self) -> None:
        config = parse_config(
            {}, environ={"DATABASE_URL": " ", "TEST_DATABASE_URL": "postgresql://test/db"}
        )
        assert config.database.dsn == "postgresql://test/db"

    def test_explicit_dsn_wins(self) -> None:
        config = parse_config(
            {"database": {"dsn": "postgresql://file/db"}},
            environ={"DATABASE_URL": "postgresql://env/db"},
        )
        assert config.database.dsn == "postgresql://file/db"

    def test_bad_function_name(self) -> None:
        with pytest.raises(ConfigError):
            parse_config({"tables": {"users": {"functions": ["explode"]}}}, environ={})

    def test_bad_package_name(self) -> None:
        with pytest.raises(ConfigError):
            parse_config({"output": {"package": "my-repos"}}, environ={})

    def test_retry_delays_ordered(self) -> None:
        with pytest.raises(ConfigError, match="max_delay"):
            parse_config({"retry": {"base_delay": 2.0, "max_delay": 1.0}}, environ={})


class TestFunctionsFor:
    def test_default_functions_list(self) -> None:
        config = GenerationConfig.model_validate({"default_functions": ["list", "get"]})
        assert config.functions_for("anything") == ["get", "list"]

    def test_table_settings_win(self) -> None:
        config = GenerationConfig.model_validate(
            {"default_functions": ["get"], "tables": {"users": {"functions": ["delete"]}}}
        )
        assert config.functions_for("users") == ["delete"]
        assert config.functions_for("posts") == ["get"]


class TestFindConfigFile:
    def test_yaml_preferred(self, tmp_path: pathlib.Path) -> None:
        _write(tmp_path, "", "pgforge.yml")
        _write(tmp_path, "", "pgforge.yaml")
        assert find_config_file(tmp_path) == tmp_path / "pgforge.yaml"

    def test_yml_fallback(self, tmp_path: pathlib.Path) -> None:
        _write(tmp_path, "", "pgforge.yml")
        assert find_config_file(tmp_path) == tmp_path / "pgforge.yml"

    def test_none(self, tmp_path: pathlib.Path) -> None:
        assert find_config_file(tmp_path) is None
