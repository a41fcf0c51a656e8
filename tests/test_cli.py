"""
tests/test_cli.py
Unit tests for pgforge.cli (argument handling and exit codes).
"""

from __future__ import annotations

import logging
import pathlib
from typing import Any, Iterator, List

import pytest

import pgforge.cli as cli
from conftest import USERS_SQL, FakeDatabase
from pgforge.errors import DatabaseConnectionError, ExportError, GenerationCancelledError
from pgforge.generator import Generator
from pgforge.models import GenerationConfig


@pytest.fixture(autouse=True)
def _restore_pgforge_logger() -> Iterator[None]:
    """``run`` reconfigures the ``pgforge`` logger; put it back afterwards."""
    log = logging.getLogger("pgforge")
    saved = (log.level, list(log.handlers), log.propagate)
    yield
    log.setLevel(saved[0])
    log.handlers[:] = saved[1]
    log.propagate = saved[2]


@pytest.fixture()
def no_dsn_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)


@pytest.fixture()
def captured(monkeypatch: pytest.MonkeyPatch) -> List[GenerationConfig]:
    """Replace the real generator with one backed by the in-memory catalog."""
    configs: List[GenerationConfig] = []

    def factory(config: GenerationConfig, dry_run: bool = False) -> Generator:
        configs.append(config)
        return Generator(config, database=FakeDatabase(), dry_run=dry_run)

    monkeypatch.setattr(cli, "Generator", factory)
    return configs


def _failing(monkeypatch: pytest.MonkeyPatch, exc: BaseException) -> None:
    class _Broken:
        def __init__(self, config: GenerationConfig, dry_run: bool = False) -> None:
            pass

        def generate(self) -> Any:
            raise exc

    monkeypatch.setattr(cli, "Generator", _Broken)


def _project(tmp_path: pathlib.Path, extra: str = "") -> pathlib.Path:
    (tmp_path / "queries").mkdir()
    (tmp_path / "queries" / "users.sql").write_text(USERS_SQL, encoding="utf-8")
    config = tmp_path / "pgforge.yaml"
    config.write_text(
        "database:\n"
        "  dsn: postgresql://fake/db\n"
        "output:\n"
        "  directory: ./internal\n"
        "queries:\n"
        "  directory: ./queries\n" + extra,
        encoding="utf-8",
    )
    return config


class TestArguments:
    def test_version(self, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit) as excinfo:
            cli.run(["--version"])
        assert excinfo.value.code == 0
        assert "pgforge v" in capsys.readouterr().out

    def test_unknown_flag(self) -> None:
        with pytest.raises(SystemExit) as excinfo:
            cli.run(["--frobnicate"])
        assert excinfo.value.code == 2

    def test_cli_main_exits_with_run_code(self, tmp_path: pathlib.Path) -> None:
        with pytest.raises(SystemExit) as excinfo:
            cli.cli_main(["-q", "-c", str(tmp_path / "absent.yaml")])
        assert excinfo.value.code == cli.EXIT_INPUT_ERROR


class TestSuccess:
    def test_generates_from_config_file(
        self,
        tmp_path: pathlib.Path,
        captured: List[GenerationConfig],
        capsys: pytest.CaptureFixture,
    ) -> None:
        config_path = _project(tmp_path)
        assert cli.run(["-c", str(config_path)]) == cli.EXIT_SUCCESS

        package = tmp_path / "internal" / "repositories"
        assert (package / "users_repository.py").is_file()
        assert (package / "users_queries.py").is_file()
        assert "SUCCESS" in capsys.readouterr().out

    def test_overrides(
        self, tmp_path: pathlib.Path, captured: List[GenerationConfig]
    ) -> None:
        config_path = _project(tmp_path)
        out = tmp_path / "elsewhere"
        code = cli.run(
            ["-q", "-c", str(config_path), "-o", str(out), "--package", "repos", "--schema", "public"]
        )
        assert code == cli.EXIT_SUCCESS
        assert captured[0].output.package == "repos"
        assert pathlib.Path(captured[0].output.directory) == out.resolve()
        assert (out / "repos" / "__init__.py").is_file()

    def test_no_tables(
        self, tmp_path: pathlib.Path, captured: List[GenerationConfig]
    ) -> None:
        config_path = _project(tmp_path)
        assert cli.run(["-q", "-c", str(config_path), "--no-tables"]) == cli.EXIT_SUCCESS
        assert captured[0].generate_tables is False
        package = tmp_path / "internal" / "repositories"
        assert (package / "users_queries.py").is_file()
        assert not (package / "users_repository.py").exists()

    def test_config_file_discovered_in_cwd(
        self,
        tmp_path: pathlib.Path,
        monkeypatch: pytest.MonkeyPatch,
        captured: List[GenerationConfig],
    ) -> None:
        _project(tmp_path)
        monkeypatch.chdir(tmp_path)
        assert cli.run(["-q"]) == cli.EXIT_SUCCESS
        assert captured[0].database.dsn == "postgresql://fake/db"

    def test_flags_only(
        self, tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch, captured: List[GenerationConfig]
    ) -> None:
        monkeypatch.chdir(tmp_path)
        code = cli.run(["-q", "--dsn", "postgresql://fake/db", "-o", "out"])
        assert code == cli.EXIT_SUCCESS
        assert (tmp_path / "out" / "repositories" / "runtime.py").is_file()

    def test_dry_run(
        self,
        tmp_path: pathlib.Path,
        captured: List[GenerationConfig],
        capsys: pytest.CaptureFixture,
    ) -> None:
        config_path = _project(tmp_path)
        assert cli.run(["--dry-run", "-c", str(config_path)]) == cli.EXIT_SUCCESS
        assert not (tmp_path / "internal").exists()
        assert "dry run" in capsys.readouterr().out

    def test_quiet_prints_nothing(
        self,
        tmp_path: pathlib.Path,
        captured: List[GenerationConfig],
        capsys: pytest.CaptureFixture,
    ) -> None:
        config_path = _project(tmp_path)
        assert cli.run(["-q", "-c", str(config_path)]) == cli.EXIT_SUCCESS
        assert capsys.readouterr().out == ""


class TestExitCodes:
    def test_missing_config_file(self, tmp_path: pathlib.Path) -> None:
        assert cli.run(["-q", "-c", str(tmp_path / "absent.yaml")]) == cli.EXIT_INPUT_ERROR

    def test_invalid_yaml(self, tmp_path: pathlib.Path) -> None:
        path = tmp_path / "pgforge.yaml"
        path.write_text("database: [oops\n", encoding="utf-8")
        assert cli.run(["-q", "-c", str(path)]) == cli.EXIT_INPUT_ERROR

    def test_query_file_not_utf8(
        self, tmp_path: pathlib.Path, captured: List[GenerationConfig]
    ) -> None:
        config_path = _project(tmp_path)
        (tmp_path / "queries" / "legacy.sql").write_bytes(b"-- name: Caf\xe9 :exec\nSELECT 1\n")
        assert cli.run(["-q", "-c", str(config_path)]) == cli.EXIT_INPUT_ERROR
        assert not (tmp_path / "internal").exists()

    def test_empty_dsn(
        self,
        tmp_path: pathlib.Path,
        monkeypatch: pytest.MonkeyPatch,
        no_dsn_env: None,
        captured: List[GenerationConfig],
    ) -> None:
        monkeypatch.chdir(tmp_path)
        assert cli.run(["-q", "-o", "out"]) == cli.EXIT_INPUT_ERROR
        assert not (tmp_path / "out").exists()

    def test_bad_annotation(
        self, tmp_path: pathlib.Path, captured: List[GenerationConfig]
    ) -> None:
        config_path = _project(tmp_path)
        (tmp_path / "queries" / "bad.sql").write_text("-- name: X :single\nSELECT 1\n", encoding="utf-8")
        assert cli.run(["-q", "-c", str(config_path)]) == cli.EXIT_INPUT_ERROR

    def test_collision(
        self, tmp_path: pathlib.Path, captured: List[GenerationConfig]
    ) -> None:
        config_path = _project(tmp_path)
        # A second CountUsers yields a second CountUsersRow in the package.
        (tmp_path / "queries" / "stats.sql").write_text(
            "-- name: CountUsers :one\nSELECT count(*) AS total FROM users\n", encoding="utf-8"
        )
        assert cli.run(["-q", "-c", str(config_path)]) == cli.EXIT_GENERATION_ERROR

    @pytest.mark.parametrize(
        "exc",
        [
            DatabaseConnectionError("Cannot connect to database: refused"),
            GenerationCancelledError("Generation was cancelled."),
            KeyboardInterrupt(),
        ],
    )
    def test_generation_errors(
        self, tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch, exc: BaseException
    ) -> None:
        _failing(monkeypatch, exc)
        assert cli.run(["-q", "-c", str(_project(tmp_path))]) == cli.EXIT_GENERATION_ERROR

    def test_export_error(self, tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
        _failing(monkeypatch, ExportError("disk full"))
        assert cli.run(["-q", "-c", str(_project(tmp_path))]) == cli.EXIT_EXPORT_ERROR

    def test_errors_are_logged(
        self, tmp_path: pathlib.Path, capsys: pytest.CaptureFixture
    ) -> None:
        cli.run(["-c", str(tmp_path / "absent.yaml")])
        assert "Config file not found" in capsys.readouterr().err
