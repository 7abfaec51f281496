"""Tests for the turn executor and the duel sequencer."""

import asyncio

import pytest

from config import ApiKeys
from conversation_state import MAIN_BRANCH_ID, SYSTEM_AUTHOR, USER_AUTHOR
from events import ProtocolEvent
from personas import Persona
from protocol import PersonaRoster, TurnGate
from providers import ProviderError

from conftest import wait_until


class TestTurnGate:

    def test_acquire_is_exclusive(self):
        gate = TurnGate()
        assert gate.try_acquire("a") is True
        assert gate.try_acquire("b") is False
        assert gate.holder == "a"
        gate.release()
        assert not gate.is_busy
        assert gate.try_acquire("b") is True


def test_roster_flip():
    p1 = Persona(name="A", system_prompt="a")
    p2 = Persona(name="B", system_prompt="b")
    roster = PersonaRoster(p1, p2)

    assert roster.responders() == (p1, p2)
    roster.flip()
    assert roster.active == "p2"
    assert roster.responders() == (p2, p1)


class TestTurnExecutor:

    @pytest.mark.asyncio
    async def test_successful_turn_finalizes_both_placeholders(self, session, provider):
        reply = await session.executor.run_turn(session.persona_1, "What is mind?")

        messages = session.messages
        assert reply == "Philosopher reply 1"
        assert len(messages) == 2
        monologue, answer = messages
        assert monologue.is_internal_monologue and not monologue.is_loading
        assert monologue.text == "Philosopher thought 1"
        assert not answer.is_internal_monologue and not answer.is_loading
        assert answer.author == "Philosopher"
        assert answer.sentiment == 0.5
        assert answer.influence_score == 2.0

    @pytest.mark.asyncio
    async def test_placeholders_exist_while_in_flight(self, session, provider):
        provider.release = asyncio.Event()
        task = asyncio.create_task(session.executor.run_turn(session.persona_1, "Hi"))
        await wait_until(lambda: provider.active == 1)

        loading = session.messages
        assert len(loading) == 2
        assert all(m.is_loading for m in loading)

        provider.release.set()
        await task

        final = session.messages
        assert [m.id for m in final] == [m.id for m in loading]
        assert not any(m.is_loading for m in final)

    @pytest.mark.asyncio
    async def test_failed_turn_leaves_single_system_message(self, session, provider):
        provider.fail_on = {1}
        before = len(session.messages)

        with pytest.raises(ProviderError):
            await session.executor.run_turn(session.persona_1, "Hi")

        messages = session.messages
        assert len(messages) == before + 1
        assert messages[-1].author == SYSTEM_AUTHOR
        assert messages[-1].text == "[SYSTEM ERROR] Failed to get response: boom 1"
        assert not messages[-1].is_loading
        assert not any(m.is_internal_monologue for m in messages)

    @pytest.mark.asyncio
    async def test_result_lands_in_branch_active_at_turn_start(self, session, provider):
        await session.send_message("Hello")
        first_id = session.messages[0].id
        other = session.store.fork(first_id)

        provider.release = asyncio.Event()
        task = asyncio.create_task(session.executor.run_turn(session.persona_1, "Again"))
        await wait_until(lambda: provider.active == 1)
        session.store.set_active(other)
        provider.release.set()
        await task

        main = session.store.get_messages(MAIN_BRANCH_ID)
        assert len(main) == 7
        assert main[-1].text == f"Philosopher reply {len(provider.calls)}"
        assert [m.id for m in session.store.get_messages(other)] == [first_id]

    @pytest.mark.asyncio
    async def test_history_excludes_placeholders_and_monologues(self, session, provider):
        await session.send_message("Hello")

        second_call = provider.calls[1]
        assert [h.to_dict() for h in second_call["history"]] == [
            {"role": "user", "content": "Hello"},
            {"role": "user", "content": "Philosopher reply 1"},
        ]
        assert second_call["prompt"] == "Philosopher reply 1"
        assert second_call["context"].long_term_memory == ["The conversation is about to start."]

    @pytest.mark.asyncio
    async def test_turn_events(self, session, provider):
        seen = []
        session.subscribe(lambda event, data: seen.append(event))

        await session.executor.run_turn(session.persona_1, "Hi")

        assert seen == [
            ProtocolEvent.MESSAGE_ADDED,
            ProtocolEvent.MESSAGE_ADDED,
            ProtocolEvent.TURN_STARTED,
            ProtocolEvent.MESSAGE_UPDATED,
            ProtocolEvent.MESSAGE_UPDATED,
            ProtocolEvent.TURN_COMPLETED,
        ]


class TestDuelExchange:

    @pytest.mark.asyncio
    async def test_hello_runs_both_personas_and_flips(self, session, provider):
        assert session.roster.active == "p1"

        assert await session.send_message("Hello") is True

        messages = session.messages
        assert [m.author for m in messages] == [
            USER_AUTHOR, "Philosopher", "Philosopher", "Scientist", "Scientist"
        ]
        assert [c["persona"] for c in provider.calls] == ["Philosopher", "Scientist"]
        assert not any(m.is_loading for m in messages)
        assert session.roster.active == "p2"
        assert not session.is_busy

    @pytest.mark.asyncio
    async def test_next_exchange_starts_with_other_persona(self, session, provider):
        await session.send_message("Hello")
        await session.send_message("And now?")

        assert [c["persona"] for c in provider.calls] == [
            "Philosopher", "Scientist", "Scientist", "Philosopher"
        ]
        assert session.roster.active == "p1"

    @pytest.mark.asyncio
    async def test_concurrent_send_is_rejected(self, session, provider):
        provider.release = asyncio.Event()
        first = asyncio.create_task(session.send_message("one"))
        await wait_until(lambda: provider.active == 1)

        assert await session.send_message("two") is False
        assert session.start_simulation(3, 1) is False
        assert session.update_persona("p1", temperature=0.1) is False

        provider.release.set()
        assert await first is True
        assert provider.max_active == 1
        assert [m.text for m in session.messages if m.author == USER_AUTHOR] == ["one"]

    @pytest.mark.asyncio
    async def test_first_failure_aborts_second_turn(self, session, provider):
        provider.fail_on = {1}

        assert await session.send_message("Hello") is True

        messages = session.messages
        assert len(messages) == 2
        assert messages[1].author == SYSTEM_AUTHOR
        assert len(provider.calls) == 1
        assert session.roster.active == "p2"
        assert not session.is_busy

    @pytest.mark.asyncio
    async def test_second_failure_keeps_first_reply(self, session, provider):
        provider.fail_on = {2}

        await session.send_message("Hello")

        authors = [m.author for m in session.messages]
        assert authors == [USER_AUTHOR, "Philosopher", "Philosopher", SYSTEM_AUTHOR]
        assert session.roster.active == "p2"

    @pytest.mark.asyncio
    async def test_missing_mistral_key_is_a_normal_reply(self, session, provider):
        session.update_persona("p1", api_provider="mistral")
        session.set_api_keys(ApiKeys())

        await session.send_message("Hello")

        monologue, reply = session.messages[1], session.messages[2]
        assert reply.author == "Philosopher"
        assert reply.text.startswith("ERROR: Mistral API key is not set")
        assert monologue.text == "API key missing."
        assert [c["persona"] for c in provider.calls] == ["Scientist"]

    @pytest.mark.asyncio
    async def test_unsupported_provider_becomes_system_error(self, session, provider):
        session.roster.set("p1", Persona(name="Oracle", system_prompt="x", api_provider="grok"))

        await session.send_message("Hello")

        messages = session.messages
        assert len(messages) == 2
        assert messages[1].author == SYSTEM_AUTHOR
        assert messages[1].text == (
            "[SYSTEM ERROR] Failed to get response: Unsupported API provider: grok"
        )
        assert provider.calls == []
