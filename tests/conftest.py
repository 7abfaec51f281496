"""Shared fixtures for the persona duel tests."""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

import pytest

from config import SystemConfig, SUPPORTED_PROVIDERS
from dispatcher import LLMResult
from providers import ProviderAdapter, ProviderError
from session import DuelSession


class ScriptedProvider(ProviderAdapter):
    """
    In-memory adapter returning numbered replies.

    Records every call and the highest number of calls that were in
    flight at the same time. Calls listed in fail_on (1-based) raise a
    ProviderError. When `release` is set to an asyncio.Event, calls block
    until the event is set.
    """

    name = "scripted"

    def __init__(self, fail_on: Iterable[int] = (), delay: float = 0.0):
        super().__init__()
        self.fail_on = set(fail_on)
        self.delay = delay
        self.release: Optional[asyncio.Event] = None
        self.calls: List[Dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def generate(self, persona, history, prompt, context, credential=None):
        self.calls.append({
            "persona": persona.name,
            "history": list(history),
            "prompt": prompt,
            "context": context,
            "credential": credential,
        })
        index = len(self.calls)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.release is not None:
                await self.release.wait()
            else:
                await asyncio.sleep(self.delay)
            if index in self.fail_on:
                raise ProviderError(self.name, f"boom {index}", status=500)
            return LLMResult(
                text=f"{persona.name} reply {index}",
                internal_monologue=f"{persona.name} thought {index}",
                sentiment=0.5,
                influence_score=2.0,
            )
        finally:
            self.active -= 1


async def wait_until(condition, timeout: float = 2.0) -> None:
    """Yield to the event loop until condition() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def make_config(tmp_path):
    def factory(**overrides) -> SystemConfig:
        values = dict(
            storage_dir=str(tmp_path / "conversations"),
            log_dir=str(tmp_path / "logs"),
            turn_delay_seconds=0.0,
            branch_transition_seconds=0.0,
        )
        values.update(overrides)
        return SystemConfig(**values)
    return factory


@pytest.fixture
def make_session(make_config, provider):
    def factory(**overrides) -> DuelSession:
        providers = {name: provider for name in SUPPORTED_PROVIDERS}
        return DuelSession(make_config(**overrides), providers=providers)
    return factory


@pytest.fixture
def session(make_session):
    return make_session()
