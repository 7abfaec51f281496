"""Tests for history building and provider dispatch."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from config import ApiKeys
from conversation_state import Message, SYSTEM_AUTHOR, USER_AUTHOR
from dispatcher import (
    LLMResult,
    ProviderDispatcher,
    TurnContext,
    UnsupportedProviderError,
    build_history,
)
from personas import Persona


def _adapter():
    adapter = MagicMock()
    adapter.generate = AsyncMock(return_value=LLMResult(text="hi", internal_monologue="hm"))
    return adapter


def _persona(provider="gemini"):
    return Persona(name="Philosopher", system_prompt="You are a Philosopher.", api_provider=provider)


def test_build_history_filters_and_maps_roles():
    messages = [
        Message(id="1", author=USER_AUTHOR, text="Hello"),
        Message(id="2", author="Philosopher", text="thinking", is_internal_monologue=True),
        Message(id="3", author="Philosopher", text="Greetings"),
        Message(id="4", author=SYSTEM_AUTHOR, text="[SYSTEM ERROR] nope"),
        Message(id="5", author="Scientist", text="Data says hi"),
        Message(id="6", author="Scientist", text="...", is_loading=True),
    ]

    history = build_history(messages, "Philosopher")

    assert [h.to_dict() for h in history] == [
        {"role": "user", "content": "Hello"},
        {"role": "model", "content": "Greetings"},
        {"role": "user", "content": "Data says hi"},
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("provider,name", [
    ("mistral", "Mistral"),
    ("cohere", "Cohere"),
    ("openrouter", "OpenRouter"),
])
async def test_missing_credential_returns_error_without_calling_adapter(provider, name):
    adapter = _adapter()
    dispatcher = ProviderDispatcher({provider: adapter})

    result = await dispatcher.dispatch(_persona(provider), [], "Hello", TurnContext(), ApiKeys())

    assert result.text.startswith(f"ERROR: {name} API key is not set")
    assert result.internal_monologue == "API key missing."
    adapter.generate.assert_not_awaited()


@pytest.mark.asyncio
async def test_stored_credential_is_passed_to_adapter():
    adapter = _adapter()
    dispatcher = ProviderDispatcher({"cohere": adapter})
    persona = _persona("cohere")
    context = TurnContext(long_term_memory=["fact"])

    result = await dispatcher.dispatch(persona, [], "Hello", context, ApiKeys(cohere="secret"))

    assert result.text == "hi"
    adapter.generate.assert_awaited_once_with(persona, [], "Hello", context, "secret")


@pytest.mark.asyncio
@pytest.mark.parametrize("provider", ["gemini", "ollama"])
async def test_providers_without_stored_credentials_are_not_guarded(provider):
    adapter = _adapter()
    dispatcher = ProviderDispatcher({provider: adapter})

    await dispatcher.dispatch(_persona(provider), [], "Hello", TurnContext(), ApiKeys())

    assert adapter.generate.await_args.args[4] is None


@pytest.mark.asyncio
async def test_adapter_errors_pass_through():
    adapter = _adapter()
    adapter.generate.side_effect = RuntimeError("network down")
    dispatcher = ProviderDispatcher({"gemini": adapter})

    with pytest.raises(RuntimeError, match="network down"):
        await dispatcher.dispatch(_persona(), [], "Hello", TurnContext(), ApiKeys())


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected():
    dispatcher = ProviderDispatcher({"gemini": _adapter()})

    with pytest.raises(UnsupportedProviderError, match="Unsupported API provider: grok"):
        await dispatcher.dispatch(_persona("grok"), [], "Hello", TurnContext(), ApiKeys())
