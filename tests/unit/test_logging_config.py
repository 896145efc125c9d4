"""Tests for devflow/utils/logging_config.py - structlog setup and redaction."""

import json

import structlog

from devflow.utils.logging_config import configure_logging, redact_sensitive


class TestLogging:
    """Tests for logging setup and redaction."""

    def test_redacts_credentials(self):
        event = {"event": "github_connected", "token": "ghp_abc", "Authorization": "Bearer x", "repository": "a/b"}

        result = redact_sensitive(None, "info", event)

        assert result["token"] == "***"
        assert result["Authorization"] == "***"
        assert result["repository"] == "a/b"

    def test_json_output(self, capsys):
        configure_logging("INFO", json_output=True)
        try:
            structlog.get_logger("test").info("milestone_checked", milestone=3, api_token="secret")
            line = capsys.readouterr().out.strip().splitlines()[-1]
        finally:
            structlog.reset_defaults()

        record = json.loads(line)
        assert record["event"] == "milestone_checked"
        assert record["milestone"] == 3
        assert record["api_token"] == "***"
        assert record["level"] == "info"

    def test_level_filtering(self, capsys):
        configure_logging("WARNING", json_output=True)
        try:
            structlog.get_logger("test").info("hidden")
            assert capsys.readouterr().out == ""
        finally:
            structlog.reset_defaults()
