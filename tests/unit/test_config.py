"""Unit tests for branchchat.config and the command-line helpers in branchchat.main."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from branchchat.config import Settings
from branchchat.conversation.events import (
    PartialText,
    TextReplaced,
    ThinkingComplete,
    ThinkingPartial,
)
from branchchat.conversation.models import ThoughtsStatus
from branchchat.conversation.thinking import NO_BUDGET, Effort, Tokens
from branchchat.main import print_event


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in ("PROVIDER", "MODEL", "API_KEY", "THINKING_EFFORT", "THINKING_TOKENS", "PORT"):
        monkeypatch.delenv(f"BRANCHCHAT_{name}", raising=False)
    return monkeypatch


def test_defaults(clean_env) -> None:
    settings = Settings(_env_file=None)
    assert settings.provider == "openai"
    assert settings.max_tool_depth == 25
    assert settings.base_url is None
    assert settings.thinking_budget() == NO_BUDGET


def test_environment_overrides(clean_env) -> None:
    clean_env.setenv("BRANCHCHAT_PROVIDER", "anthropic")
    clean_env.setenv("BRANCHCHAT_PORT", "9000")
    clean_env.setenv("BRANCHCHAT_THINKING_EFFORT", "Medium")
    settings = Settings(_env_file=None)
    assert settings.provider == "anthropic"
    assert settings.port == 9000
    assert settings.thinking_budget() == Effort("medium")


def test_env_file(clean_env, tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("BRANCHCHAT_MODEL=gemini-2.5-pro\nBRANCHCHAT_THINKING_TOKENS=4096\n")
    settings = Settings(_env_file=env_file)
    assert settings.model == "gemini-2.5-pro"
    assert settings.thinking_budget() == Tokens(4096)


def test_token_budget_wins_over_effort(clean_env) -> None:
    settings = Settings(_env_file=None, thinking_effort="high", thinking_tokens=0)
    assert settings.thinking_budget() == Tokens(0)


def test_invalid_values_rejected(clean_env) -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, max_tool_depth=0)
    with pytest.raises(ValidationError):
        Settings(_env_file=None, thinking_tokens=-1)


def test_print_event_splits_streams(capsys) -> None:
    print_event(ThinkingPartial("pondering"))
    print_event(ThinkingComplete("pondering", 1.25, ThoughtsStatus.PRESENT))
    print_event(PartialText("answer"))
    captured = capsys.readouterr()
    assert captured.out == "answer"
    assert "pondering" in captured.err
    assert "[thought for 1.2s]" in captured.err or "[thought for 1.3s]" in captured.err


def test_print_event_starts_replaced_answer_on_new_lines(capsys) -> None:
    print_event(PartialText("draft"))
    print_event(TextReplaced("final"))
    assert capsys.readouterr().out == "draft\n\nfinal"
