"""Tests for the Gemini-backed analysis utilities."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from analysis import (
    AnalysisService,
    FALLBACK_TOPIC,
    KnowledgeEdge,
    KnowledgeGraphData,
    KnowledgeNode,
    conversation_text,
)
from conversation_state import Message, SYSTEM_AUTHOR, USER_AUTHOR
from personas import PersonaFactory
from providers import ProviderError


MESSAGES = [
    Message(id="1", author=USER_AUTHOR, text="Is the mind physical?"),
    Message(id="2", author="Philosopher", text="hmm", is_internal_monologue=True),
    Message(id="3", author="Philosopher", text="Not entirely."),
    Message(id="4", author=SYSTEM_AUTHOR, text="[SYSTEM ERROR] oops"),
    Message(id="5", author="Scientist", text="Entirely."),
]


def _service(result=None, error=None):
    gemini = MagicMock()
    gemini.generate_text = AsyncMock(return_value=result, side_effect=error)
    gemini.generate_image = AsyncMock(return_value="aW1n", side_effect=error)
    return AnalysisService(gemini), gemini


def test_conversation_text_skips_monologues_and_system():
    assert conversation_text(MESSAGES) == (
        "User: Is the mind physical?\n\n"
        "Philosopher: Not entirely.\n\n"
        "Scientist: Entirely."
    )


class TestSummary:

    @pytest.mark.asyncio
    async def test_empty_conversation(self):
        service, gemini = _service("unused")
        assert await service.generate_summary([]) == "The conversation is empty."
        gemini.generate_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_summary_prompt_contains_transcript(self):
        service, gemini = _service("They disagree.")

        assert await service.generate_summary(MESSAGES) == "They disagree."
        prompt = gemini.generate_text.await_args.args[0]
        assert "Philosopher: Not entirely." in prompt
        assert "hmm" not in prompt
        assert "SYSTEM ERROR" not in prompt

    @pytest.mark.asyncio
    async def test_failure_message(self):
        service, _ = _service(error=ProviderError("gemini", "down"))
        assert await service.generate_summary(MESSAGES) == "Failed to generate summary."


class TestArgumentMap:

    @pytest.mark.asyncio
    async def test_short_conversation_gives_empty_map(self):
        service, gemini = _service("{}")
        data = await service.generate_argument_map(MESSAGES[:2], "Philosopher", "Scientist")
        assert data.nodes == [] and data.edges == []
        gemini.generate_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_parses_nodes_and_drops_dangling_edges(self):
        payload = {
            "nodes": [
                {"id": "p1", "text": "Not entirely", "author": "Philosopher", "type": "premise"},
                {"id": "s1", "text": "Entirely", "author": "Scientist", "type": "counter-argument"},
            ],
            "edges": [
                {"source": "s1", "target": "p1", "type": "refutes"},
                {"source": "s1", "target": "ghost", "type": "supports"},
            ],
        }
        service, gemini = _service(json.dumps(payload))

        data = await service.generate_argument_map(MESSAGES, "Philosopher", "Scientist")

        assert [n.id for n in data.nodes] == ["p1", "s1"]
        assert len(data.edges) == 1
        assert data.edges[0].type == "refutes"
        assert gemini.generate_text.await_args.kwargs["json_mode"] is True

    @pytest.mark.asyncio
    async def test_invalid_json_gives_empty_map(self):
        service, _ = _service("not json")
        data = await service.generate_argument_map(MESSAGES, "Philosopher", "Scientist")
        assert data.nodes == []


class TestKnowledgeGraph:

    def test_merge_skips_duplicates(self):
        graph = KnowledgeGraphData(
            nodes=[KnowledgeNode("Mind", "the mind", 1), KnowledgeNode("Brain", "the brain", 2)],
            edges=[KnowledgeEdge("Mind", "Brain", "emerges from")],
        )
        addition = KnowledgeGraphData(
            nodes=[KnowledgeNode("Mind", "duplicate", 6), KnowledgeNode("Qualia", "experience", 7)],
            edges=[
                KnowledgeEdge("Mind", "Brain", "emerges from"),
                KnowledgeEdge("Qualia", "Mind", "colors"),
            ],
        )

        merged = graph.merge(addition)

        assert [n.id for n in merged.nodes] == ["Mind", "Brain", "Qualia"]
        assert merged.nodes[0].summary == "the mind"
        assert len(merged.edges) == 2

    @pytest.mark.asyncio
    async def test_generate_graph(self):
        payload = {
            "nodes": [{"id": "Mind", "summary": "s", "group": 1}],
            "edges": [],
        }
        service, _ = _service(json.dumps(payload))
        graph = await service.generate_knowledge_graph("consciousness")
        assert graph.nodes[0].id == "Mind"

    @pytest.mark.asyncio
    async def test_expand_failure_returns_original_graph(self):
        graph = KnowledgeGraphData(nodes=[KnowledgeNode("Mind", "s", 1)])
        service, _ = _service(error=ProviderError("gemini", "down"))
        assert await service.expand_knowledge_graph(graph, "Mind") is graph


class TestGenerators:

    @pytest.mark.asyncio
    async def test_random_topic_strips_quotes(self):
        service, _ = _service('"Is free will an illusion?"\n')
        assert await service.generate_random_topic() == "Is free will an illusion?"

    @pytest.mark.asyncio
    async def test_empty_random_topic_uses_fallback(self):
        service, _ = _service("   ")
        assert await service.generate_random_topic() == FALLBACK_TOPIC

    @pytest.mark.asyncio
    async def test_persona_prompt_failure_keeps_original(self):
        persona, _ = PersonaFactory.create_default_pair()
        service, _ = _service(error=ProviderError("gemini", "down"))
        assert await service.generate_persona_prompt(persona) == persona.system_prompt

    @pytest.mark.asyncio
    async def test_persona_prompt_lists_traits(self):
        persona, _ = PersonaFactory.create_default_pair()
        service, gemini = _service("I am a thinker.")

        assert await service.generate_persona_prompt(persona) == "I am a thinker."
        prompt = gemini.generate_text.await_args.args[0]
        assert "**Primary Role:** Philosopher" in prompt
        assert "Temperament: Calm" in prompt

    @pytest.mark.asyncio
    async def test_concept_image_failure(self):
        service, _ = _service(error=ProviderError("gemini", "down"))
        assert await service.generate_concept_image("Mind", "the mind") is None
