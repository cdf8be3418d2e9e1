"""Unit tests for branchchat.conversation.thinking."""

from __future__ import annotations

import pytest

from branchchat.conversation.thinking import (
    NO_BUDGET,
    Continuous,
    Discrete,
    Effort,
    Tokens,
    Unsupported,
    default_budget,
    get_budget_type,
    is_thinking_enabled,
    resolve_budget,
    supports_thinking,
)


class TestGetBudgetType:
    @pytest.mark.parametrize("model", ["o1", "o3-mini", "o4-mini"])
    def test_openai_o_series(self, model: str) -> None:
        budget_type = get_budget_type("openai", model)
        assert budget_type == Discrete(options=("low", "medium", "high"), default="medium")

    def test_openai_gpt5_variants(self) -> None:
        assert get_budget_type("openai", "gpt-5").options == ("minimal", "low", "medium", "high")
        assert get_budget_type("openai", "gpt-5-mini").default == "medium"
        assert get_budget_type("openai", "gpt-5.1").default == "none"
        assert "xhigh" in get_budget_type("openai", "gpt-5.2").options

    def test_openai_plain_model_unsupported(self) -> None:
        assert isinstance(get_budget_type("openai", "gpt-4o-mini"), Unsupported)

    def test_anthropic_is_continuous(self) -> None:
        budget_type = get_budget_type("anthropic", "claude-sonnet-4-5")
        assert isinstance(budget_type, Continuous)
        assert (budget_type.minimum, budget_type.maximum, budget_type.default) == (1024, 120_000, 10_000)
        assert budget_type.supports_off

    def test_google_models(self) -> None:
        assert isinstance(get_budget_type("google", "gemini-2.5-flash-lite"), Unsupported)
        assert get_budget_type("google", "gemini-3-pro-preview") == Discrete(("low", "high"), "high")
        pro = get_budget_type("google", "gemini-2.5-pro")
        assert (pro.minimum, pro.maximum, pro.supports_off) == (128, 32_768, False)
        flash = get_budget_type("google", "gemini-2.5-flash")
        assert (flash.minimum, flash.maximum, flash.supports_off) == (0, 24_576, True)

    def test_openrouter_models(self) -> None:
        assert get_budget_type("openrouter", "openai/o3").default == "medium"
        assert get_budget_type("openrouter", "deepseek/deepseek-r1").options == ("low", "medium", "high")
        assert isinstance(get_budget_type("openrouter", "meta-llama/llama-3-70b"), Unsupported)

    @pytest.mark.parametrize("provider", ["cohere", "openai_compatible", "unknown"])
    def test_other_providers_unsupported(self, provider: str) -> None:
        assert not supports_thinking(provider, "anything")


class TestHelpers:
    def test_default_budget(self) -> None:
        assert default_budget("openai", "o3") == Effort("medium")
        assert default_budget("anthropic", "claude-opus-4") == Tokens(10_000)
        assert default_budget("cohere", "command-a") is NO_BUDGET

    def test_is_thinking_enabled(self) -> None:
        assert is_thinking_enabled(Effort("low"))
        assert not is_thinking_enabled(Effort("none"))
        assert is_thinking_enabled(Tokens(1))
        assert not is_thinking_enabled(Tokens(0))
        assert not is_thinking_enabled(NO_BUDGET)


class TestResolveBudget:
    def test_unsupported_model_sends_nothing(self) -> None:
        assert resolve_budget("openai", "gpt-4o", Effort("high")) is NO_BUDGET

    def test_no_preference_sends_nothing(self) -> None:
        assert resolve_budget("anthropic", "claude-sonnet-4-5", NO_BUDGET) is NO_BUDGET

    def test_valid_effort_kept(self) -> None:
        assert resolve_budget("openai", "o3", Effort("high")) == Effort("high")

    def test_invalid_effort_falls_back_to_default(self) -> None:
        assert resolve_budget("openai", "o3", Effort("xhigh")) == Effort("medium")

    def test_tokens_for_discrete_model_use_default(self) -> None:
        assert resolve_budget("google", "gemini-3-pro", Tokens(5000)) == Effort("high")

    def test_tokens_clamped(self) -> None:
        assert resolve_budget("anthropic", "claude", Tokens(500)) == Tokens(1024)
        assert resolve_budget("anthropic", "claude", Tokens(999_999)) == Tokens(120_000)
        assert resolve_budget("anthropic", "claude", Tokens(20_000)) == Tokens(20_000)

    def test_zero_kept_only_when_off_allowed(self) -> None:
        assert resolve_budget("anthropic", "claude", Tokens(0)) == Tokens(0)
        assert resolve_budget("google", "gemini-2.5-pro", Tokens(0)) == Tokens(128)

    def test_effort_for_continuous_model_uses_default(self) -> None:
        assert resolve_budget("anthropic", "claude", Effort("high")) == Tokens(10_000)
