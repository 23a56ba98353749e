"""Tests for the command-line interface."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from kuna_calsync.cli import cli

CREDENTIALS = {
    "VIKUNJA_URL": "https://tasks.example.com/api/v1",
    "VIKUNJA_TOKEN": "token",
    "CALDAV_URL": "https://caldav.example.com",
    "CALDAV_USERNAME": "user@example.com",
    "CALDAV_PASSWORD": "secret",
}


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    for name in CREDENTIALS:
        monkeypatch.delenv(name, raising=False)
    return CliRunner()


def test_config_create_writes_template(runner):
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["config", "create", "--path", "example.env"])

        assert result.exit_code == 0, result.output
        content = Path("example.env").read_text()
        assert "VIKUNJA_TOKEN=" in content
        assert "SYNC_CONFIG__CALENDAR_TITLE=Kuna" in content


def test_config_validate_reports_missing_fields(runner):
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["config", "validate"])

    assert result.exit_code == 1
    assert "VIKUNJA_TOKEN" in result.output


def test_config_validate_from_file(runner):
    with runner.isolated_filesystem():
        Path("kuna.env").write_text("".join(f"{k}={v}\n" for k, v in CREDENTIALS.items()))
        result = runner.invoke(cli, ["--config", "kuna.env", "config", "validate"])

    assert result.exit_code == 0, result.output
    assert "All required configuration fields are present" in result.output
