"""Unit tests for the safesandbox CLI."""

import json

import pytest
from rich.console import Console
from typer.testing import CliRunner

from safesandbox.cli import main
from safesandbox.cli.main import app


@pytest.fixture
def runner():
    """CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Keep Rich from wrapping URLs and table cells."""
    monkeypatch.setattr(main, "console", Console(width=200))


class TestMainApp:
    def test_app_name(self):
        assert app.info.name == "safesandbox"

    def test_help_lists_commands(self, runner):
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        for command in ("check", "presets", "version"):
            assert command in result.stdout

    def test_version(self, runner):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "SafeSandbox" in result.stdout


class TestCheck:
    def test_default_policy_blocks(self, runner):
        result = runner.invoke(app, ["check", "https://example.com/"])
        assert result.exit_code == 1
        assert "BLOCK" in result.stdout
        assert "domain" in result.stdout

    def test_preset_forwards(self, runner):
        result = runner.invoke(app, ["check", "https://jsonplaceholder.typicode.com/", "--preset", "jsonplaceholder"])
        assert result.exit_code == 0
        assert "FORWARD" in result.stdout
        assert "direct" in result.stdout

    def test_proxy_route(self, runner):
        result = runner.invoke(app, ["check", "https://www.google.com/", "--preset", "google"])
        assert result.exit_code == 0
        assert "proxy" in result.stdout

    def test_virtual_file(self, runner):
        result = runner.invoke(
            app,
            ["check", "/data.txt", "--preset", "virtualfiles", "--method", "DELETE"],
        )
        assert result.exit_code == 0
        assert "SERVE VIRTUAL" in result.stdout

    def test_method_block(self, runner, tmp_path):
        policy_file = tmp_path / "policy.json"
        policy_file.write_text(json.dumps({"allow": ["api.test"], "allowMethods": ["GET"]}))

        result = runner.invoke(app, ["check", "https://api.test/", "-m", "POST", "-p", str(policy_file)])

        assert result.exit_code == 1
        assert "method" in result.stdout

    def test_local_asset(self, runner):
        result = runner.invoke(app, ["check", "http://sandbox.test/app.js", "--origin", "http://sandbox.test"])
        assert result.exit_code == 0
        assert "LOCAL ASSET" in result.stdout

    def test_invalid_policy_file(self, runner, tmp_path):
        policy_file = tmp_path / "policy.json"
        policy_file.write_text(json.dumps({"allow": ["a.test"], "proxy": True}))

        result = runner.invoke(app, ["check", "https://a.test/", "-p", str(policy_file)])

        assert result.exit_code == 2

    def test_unknown_preset(self, runner):
        result = runner.invoke(app, ["check", "https://a.test/", "--preset", "nope"])
        assert result.exit_code == 2

    def test_policy_and_preset_exclusive(self, runner, tmp_path):
        policy_file = tmp_path / "policy.json"
        policy_file.write_text("{}")
        result = runner.invoke(app, ["check", "https://a.test/", "-p", str(policy_file), "--preset", "blocked"])
        assert result.exit_code == 2


def test_presets_table(runner):
    result = runner.invoke(app, ["presets"])
    assert result.exit_code == 0
    assert "jsonplaceholder" in result.stdout
    assert "cache-first" in result.stdout
