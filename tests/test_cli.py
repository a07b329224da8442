"""
Tests for the command-line entry points.
"""

from click.testing import CliRunner

from chatrelay import __version__, gateway
from chatrelay.cli import cli
from chatrelay.errors import ErrorCategory, GatewayError


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_config_masks_api_key(monkeypatch):
    monkeypatch.setenv("AI_API_KEY", "sk-abcdefghijkl")
    monkeypatch.setenv("AI_MODEL", "test-model")

    result = CliRunner().invoke(cli, ["config"])

    assert result.exit_code == 0
    assert "sk-abcdefghijkl" not in result.output
    assert "sk-...ijkl" in result.output
    assert "test-model" in result.output


class FakeGateway:
    def __init__(self, settings):
        self.settings = settings
        self.prompts = []

    async def complete(self, messages):
        self.prompts.append(messages)
        if self.settings.api_key == "sk-bad":
            raise GatewayError(category=ErrorCategory.AUTHENTICATION)
        return "pong"


def test_check_prints_model_reply(monkeypatch):
    monkeypatch.setenv("AI_API_KEY", "sk-good")
    monkeypatch.setattr(gateway, "OpenAIGateway", FakeGateway)

    result = CliRunner().invoke(cli, ["check"])

    assert result.exit_code == 0
    assert "pong" in result.output


def test_check_reports_classified_failure(monkeypatch):
    monkeypatch.setenv("AI_API_KEY", "sk-bad")
    monkeypatch.setattr(gateway, "OpenAIGateway", FakeGateway)

    result = CliRunner().invoke(cli, ["check"])

    assert result.exit_code == 1
    assert "authentication" in result.output


def test_chats_reports_unreachable_server():
    result = CliRunner().invoke(cli, ["chats", "--url", "http://127.0.0.1:9"])
    assert result.exit_code == 1
    assert "Cannot reach" in result.output
