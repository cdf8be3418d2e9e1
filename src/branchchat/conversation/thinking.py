"""
Thinking (reasoning) budget lookup.

Given a provider name and a model identifier, :func:`get_budget_type` answers
what kind of reasoning control the model accepts:

- :class:`Unsupported`: send nothing.
- :class:`Discrete`: a named effort level chosen from ``options``.
- :class:`Continuous`: a token count inside ``[minimum, maximum]``.

The requested value a caller holds is one of :class:`NoBudget`,
:class:`Effort` or :class:`Tokens`.  :func:`resolve_budget` reconciles the two
before a request is issued.

Usage::

    budget = resolve_budget("anthropic", "claude-sonnet-4-5", Tokens(50_000))
    if is_thinking_enabled(budget):
        ...
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Union

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Budget types (what a model accepts)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Unsupported:
    """The model has no reasoning control."""


@dataclass(frozen=True)
class Discrete:
    """The model accepts one of a fixed set of effort levels."""

    options: tuple[str, ...]
    default: str


@dataclass(frozen=True)
class Continuous:
    """The model accepts a reasoning token budget."""

    minimum: int
    maximum: int
    default: int
    step: int = 1
    supports_off: bool = False


BudgetType = Union[Unsupported, Discrete, Continuous]


# ---------------------------------------------------------------------------
# Budget values (what a caller requests)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoBudget:
    """No preference; send nothing."""


@dataclass(frozen=True)
class Effort:
    level: str


@dataclass(frozen=True)
class Tokens:
    count: int


ThinkingBudget = Union[NoBudget, Effort, Tokens]

NO_BUDGET = NoBudget()


# ---------------------------------------------------------------------------
# Lookup table
# ---------------------------------------------------------------------------

_UNSUPPORTED = Unsupported()

_EFFORT_3 = Discrete(options=("low", "medium", "high"), default="medium")

_GPT5_2_PLUS = re.compile(r"gpt-5\.([2-9]|\d{2,})")
_GPT5_1 = re.compile(r"gpt-5\.1")
_GPT5 = re.compile(r"gpt-5($|[^.])")
_O_SERIES = re.compile(r"o\d")


def _openai(model: str) -> BudgetType:
    if _O_SERIES.match(model):
        return _EFFORT_3
    if _GPT5_2_PLUS.match(model):
        return Discrete(options=("none", "low", "medium", "high", "xhigh"), default="medium")
    if _GPT5_1.match(model):
        return Discrete(options=("none", "low", "medium", "high"), default="none")
    if _GPT5.match(model):
        return Discrete(options=("minimal", "low", "medium", "high"), default="medium")
    return _UNSUPPORTED


def _anthropic(model: str) -> BudgetType:
    return Continuous(minimum=1024, maximum=120_000, default=10_000, step=1024, supports_off=True)


def _google(model: str) -> BudgetType:
    if "flash-lite" in model:
        return _UNSUPPORTED
    if "gemini-3" in model:
        return Discrete(options=("low", "high"), default="high")
    if "gemini-2.5-pro" in model:
        return Continuous(minimum=128, maximum=32_768, default=8192, step=128)
    if "gemini" in model:
        return Continuous(minimum=0, maximum=24_576, default=8192, step=256, supports_off=True)
    return _UNSUPPORTED


def _openrouter(model: str) -> BudgetType:
    if model.startswith(("openai/o1", "openai/o3", "openai/o4")):
        return _EFFORT_3
    if model.startswith("openai/gpt-5"):
        return Discrete(
            options=("minimal", "low", "medium", "high", "xhigh"), default="medium"
        )
    if model.startswith("x-ai/grok") or "deepseek-r1" in model or "qwq" in model:
        return _EFFORT_3
    return _UNSUPPORTED


_PROVIDERS = {
    "openai": _openai,
    "anthropic": _anthropic,
    "google": _google,
    "openrouter": _openrouter,
}


def get_budget_type(provider: str, model: str) -> BudgetType:
    """Return the reasoning control accepted by *model* on *provider*."""
    lookup = _PROVIDERS.get(provider.lower())
    if lookup is None:
        return _UNSUPPORTED
    return lookup(model.lower())


def supports_thinking(provider: str, model: str) -> bool:
    return not isinstance(get_budget_type(provider, model), Unsupported)


def default_budget(provider: str, model: str) -> ThinkingBudget:
    """Return the value to send when the caller has no preference."""
    budget_type = get_budget_type(provider, model)
    if isinstance(budget_type, Discrete):
        return Effort(budget_type.default)
    if isinstance(budget_type, Continuous):
        return Tokens(budget_type.default)
    return NO_BUDGET


def is_thinking_enabled(budget: ThinkingBudget) -> bool:
    """Return True if *budget* asks the model to reason."""
    if isinstance(budget, Effort):
        return budget.level != "none"
    if isinstance(budget, Tokens):
        return budget.count > 0
    return False


def resolve_budget(provider: str, model: str, requested: ThinkingBudget) -> ThinkingBudget:
    """Reconcile *requested* with what the model accepts.

    Returns:
        The budget an adapter should actually send: ``NO_BUDGET`` for
        unsupported models or when nothing was requested, a valid effort
        level for discrete models, a clamped token count for continuous ones.
    """
    budget_type = get_budget_type(provider, model)
    if isinstance(budget_type, Unsupported) or isinstance(requested, NoBudget):
        return NO_BUDGET

    if isinstance(budget_type, Discrete):
        if isinstance(requested, Effort) and requested.level in budget_type.options:
            return requested
        logger.warning(
            "Thinking budget %r not valid for %s/%s; using %r",
            requested,
            provider,
            model,
            budget_type.default,
        )
        return Effort(budget_type.default)

    if not isinstance(requested, Tokens):
        logger.warning(
            "Thinking budget %r not valid for %s/%s; using %d tokens",
            requested,
            provider,
            model,
            budget_type.default,
        )
        return Tokens(budget_type.default)
    if requested.count <= 0 and budget_type.supports_off:
        return Tokens(0)
    return Tokens(max(budget_type.minimum, min(budget_type.maximum, requested.count)))
