"""Tests for the operator CLI dispatch."""

from unittest.mock import patch

import pytest

from perpbot import cli


def test_serve_runs_uvicorn_on_configured_address(monkeypatch):
    monkeypatch.setattr("sys.argv", ["perpbot", "serve"])
    monkeypatch.setattr(cli.settings, "host", "127.0.0.1")
    monkeypatch.setattr(cli.settings, "port", 9001)

    with patch.object(cli.uvicorn, "run") as run:
        cli.main()

    run.assert_called_once_with("perpbot.main:app", host="127.0.0.1", port=9001, log_config=None)


def test_issue_token_prints_jwt(monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", ["perpbot", "issue-token", "ops"])
    cli.main()
    out = capsys.readouterr().out
    assert "Token for 'ops'" in out


def test_unknown_command_exits(monkeypatch):
    monkeypatch.setattr("sys.argv", ["perpbot", "launch"])
    with pytest.raises(SystemExit):
        cli.main()
