"""
Tests for the command line entry point
"""

import pytest

from changegate.main import main, parse_args


def test_parse_serve_args():
    args = parse_args(['--config', 'config/changegate.yaml', 'serve', '--port', '9000', '--no-sweeper'])

    assert args.command == 'serve'
    assert args.port == 9000
    assert args.no_sweeper is True


def test_command_required():
    with pytest.raises(SystemExit):
        parse_args([])


def test_init_db(tmp_path):
    db_path = tmp_path / "data" / "changegate.db"

    assert main(['--logging-config', str(tmp_path / "none.yaml"), 'init-db', '--db', str(db_path)]) == 0
    assert db_path.exists()


def test_sweep(tmp_path, monkeypatch):
    monkeypatch.setenv("CHANGEGATE_DATABASE_PATH", str(tmp_path / "changegate.db"))

    assert main(['--logging-config', str(tmp_path / "none.yaml"), 'sweep']) == 0


def test_invalid_config(tmp_path):
    config = tmp_path / "changegate.yaml"
    config.write_text("apply_max_attempts: 0\n")

    assert main(['--config', str(config), '--logging-config', str(tmp_path / "none.yaml"), 'sweep']) == 2


def test_unknown_log_level(tmp_path):
    assert main(['--logging-config', str(tmp_path / "none.yaml"), '--log-level', 'chatty', 'sweep']) == 2
