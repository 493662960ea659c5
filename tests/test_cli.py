"""
Tests for the arcvault command line.
"""

import json

import pytest

from arcvault import cli
from arcvault.config import set_config


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.delenv("SCHEDULER_PERIOD", raising=False)
    monkeypatch.delenv("AUTH_MODE", raising=False)
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)
    yield
    set_config(None)


def _exit_code(argv) -> int:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(argv)
    return exc_info.value.code


class TestArguments:

    def test_defaults(self):
        args = cli.build_parser().parse_args([])
        assert args.output == "arc.json"
        assert not args.export
        assert args.import_file is None

    def test_overrides_applied(self):
        args = cli.build_parser().parse_args(
            ["--no-auth", "--host", "0.0.0.0", "--port", "9999"]
        )
        config = cli.load_config(args)

        assert config.auth.mode == "disabled"
        assert config.server.host == "0.0.0.0"
        assert config.server.port == 9999

    def test_store_requires_export(self):
        assert _exit_code(["--store", "3"]) == 2

    def test_invalid_config_exits_2(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "sqlite")
        assert _exit_code(["--export"]) == 2


class TestTransfer:

    def test_export_writes_snapshot(self, tmp_path):
        output = tmp_path / "backup.json"

        assert _exit_code(["--export", "--output", str(output)]) == 0
        assert json.loads(output.read_text())["stores"] == []

    def test_export_missing_store_fails(self, tmp_path):
        assert _exit_code(["--export", "--store", "5", "--output", "x.json"]) == 1

    def test_export_to_missing_directory_exits_1(self, tmp_path):
        output = tmp_path / "missing" / "backup.json"
        assert _exit_code(["--export", "--output", str(output)]) == 1

    def test_import_then_export(self, tmp_path):
        snapshot = tmp_path / "in.json"
        snapshot.write_text(json.dumps([
            {"id": 4, "title": "Imported", "created_at": "2026-01-01T00:00:00Z"}
        ]))
        output = tmp_path / "out.json"

        code = _exit_code(["--import", str(snapshot), "--export", "--output", str(output)])

        assert code == 0
        stores = json.loads(output.read_text())["stores"]
        assert [(s["id"], s["title"]) for s in stores] == [(4, "Imported")]

    def test_malformed_import_exits_1(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("[{]")
        assert _exit_code(["--import", str(bad)]) == 1
