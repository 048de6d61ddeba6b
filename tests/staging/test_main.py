"""Tests for the command line entry point."""

import logging

import pytest
import yaml

from core.logging.context import clear_log_context
from staging.__main__ import main, parse_args


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    saved_handlers = root.handlers[:]
    saved_level = root.level
    yield
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    clear_log_context()


@pytest.fixture
def config_file(tmp_path):
    staging = {
        "store": {"backend": "json", "path": str(tmp_path / "staging")},
        "logging": {"log_dir": str(tmp_path / "logs")},
        "interfaces": {
            "orders": {
                "source": {"kind": "csv_file"},
                "destinations": {"erp-1": {"kind": "csv_file", "path": str(tmp_path / "erp.csv")}},
            }
        },
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"staging": staging}, allow_unicode=True), encoding="utf-8")
    return path


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.worker == "all"
        assert args.count == 1
        assert args.stage is None
        assert args.log_to_stdout is False

    def test_stage_requires_interface(self, capsys):
        with pytest.raises(SystemExit):
            parse_args(["--stage", "orders.csv"])
        assert "--stage requires --interface" in capsys.readouterr().err

    def test_count_must_be_positive(self):
        with pytest.raises(SystemExit):
            parse_args(["--worker", "delivery", "--count", "0"])

    def test_unknown_worker_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(["--worker", "archiver"])


class TestMain:
    def test_missing_config_returns_1(self, tmp_path, capsys):
        assert main(["--config", str(tmp_path / "absent.yaml"), "--log-to-stdout"]) == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_unknown_interface_returns_1(self, config_file):
        argv = ["--config", str(config_file), "--worker", "delivery", "--interface", "nope", "--log-to-stdout"]
        assert main(argv) == 1

    def test_stage_file(self, config_file, tmp_path, capsys):
        source = tmp_path / "orders.csv"
        source.write_text("id║name\n1║Ann\n2║Bob\n3║Cy\n", encoding="utf-8")

        argv = [
            "--config", str(config_file),
            "--stage", str(source),
            "--interface", "orders",
            "--log-to-stdout",
        ]
        assert main(argv) == 0

        output = capsys.readouterr().out
        assert "Staged 3 messages" in output
        assert "(0 dropped)" in output
        assert any((tmp_path / "staging").rglob("*.json"))
