"""
Analysis Module

On-demand conversation analysis backed by Gemini: summaries, argument
maps, knowledge graphs, topic and persona prompt generation. These run
outside turn orchestration; failures are logged and a fallback value is
returned so the caller can display it.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Sequence
import asyncio
import json
import logging
import re

import aiohttp

from conversation_state import Message
from personas import Persona
from providers import GeminiProvider, ProviderError

logger = logging.getLogger(__name__)

ANALYSIS_MODEL = "gemini-2.5-flash"
FALLBACK_TOPIC = "The nature of reality."

ANALYSIS_ERRORS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ProviderError,
    ValueError,
    KeyError,
    TypeError,
    AttributeError,
)


@dataclass
class ArgumentNode:
    id: str
    text: str
    author: str
    type: str  # premise | argument | counter-argument | conclusion


@dataclass
class ArgumentEdge:
    source: str
    target: str
    type: str  # supports | refutes


@dataclass
class ArgumentMapData:
    nodes: List[ArgumentNode] = field(default_factory=list)
    edges: List[ArgumentEdge] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArgumentMapData":
        nodes = [ArgumentNode(**{k: str(n[k]) for k in ("id", "text", "author", "type")})
                 for n in data.get("nodes", [])]
        node_ids = {n.id for n in nodes}
        edges = [
            ArgumentEdge(source=str(e["source"]), target=str(e["target"]), type=str(e["type"]))
            for e in data.get("edges", [])
            if e.get("source") in node_ids and e.get("target") in node_ids
        ]
        return cls(nodes=nodes, edges=edges)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class KnowledgeNode:
    id: str
    summary: str
    group: int


@dataclass
class KnowledgeEdge:
    source: str
    target: str
    relationship: str


@dataclass
class KnowledgeGraphData:
    nodes: List[KnowledgeNode] = field(default_factory=list)
    edges: List[KnowledgeEdge] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeGraphData":
        return cls(
            nodes=[
                KnowledgeNode(id=str(n["id"]), summary=str(n.get("summary", "")), group=int(n.get("group", 1)))
                for n in data.get("nodes", [])
            ],
            edges=[
                KnowledgeEdge(
                    source=str(e["source"]),
                    target=str(e["target"]),
                    relationship=str(e.get("relationship", "")),
                )
                for e in data.get("edges", [])
            ],
        )

    def merge(self, other: "KnowledgeGraphData") -> "KnowledgeGraphData":
        """
        Union of two graphs; nodes are keyed by id, edges by (source, target, relationship).
        """
        nodes = {n.id: n for n in self.nodes}
        for node in other.nodes:
            nodes.setdefault(node.id, node)

        seen = {(e.source, e.target, e.relationship) for e in self.edges}
        edges = list(self.edges)
        for edge in other.edges:
            key = (edge.source, edge.target, edge.relationship)
            if key not in seen and edge.source in nodes and edge.target in nodes:
                seen.add(key)
                edges.append(edge)

        return KnowledgeGraphData(nodes=list(nodes.values()), edges=edges)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def conversation_text(messages: Sequence[Message]) -> str:
    """Visible turns (including the user's) as "Author: text" paragraphs."""
    return "\n\n".join(
        f"{m.author}: {m.text}"
        for m in messages
        if m.is_visible_turn
    )


class AnalysisService:
    """
    Gemini-backed analysis utilities.
    """

    def __init__(self, gemini: GeminiProvider, model: str = ANALYSIS_MODEL):
        self.gemini = gemini
        self.model = model

    async def _json(self, prompt: str, temperature: float) -> Dict[str, Any]:
        text = await self.gemini.generate_text(
            prompt, model=self.model, temperature=temperature, json_mode=True
        )
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Expected a JSON object")
        return data

    async def generate_summary(self, messages: Sequence[Message]) -> str:
        if not messages:
            return "The conversation is empty."

        prompt = (
            "Please provide a concise summary of the following conversation, "
            "highlighting the key arguments and points of contention. The "
            "conversation is between two AI personas.\n\n---\n\n"
            f"{conversation_text(messages)}"
        )
        try:
            return await self.gemini.generate_text(prompt, model=self.model)
        except ANALYSIS_ERRORS as e:
            logger.error(f"Error generating summary: {e}", exc_info=True)
            return "Failed to generate summary."

    async def generate_argument_map(
        self,
        messages: Sequence[Message],
        persona_1_name: str,
        persona_2_name: str
    ) -> ArgumentMapData:
        """
        Deconstruct the conversation into premises, arguments and conclusions.

        Args:
            messages: Branch messages
            persona_1_name: First speaker
            persona_2_name: Second speaker

        Returns:
            ArgumentMapData (empty for fewer than three messages or on failure)
        """
        if len(messages) < 3:
            return ArgumentMapData()

        prompt = (
            f"Analyze the following conversation between {persona_1_name} and "
            f"{persona_2_name}. Deconstruct it into a logical argument map.\n"
            "Return a JSON object with \"nodes\" (each with \"id\", \"text\", "
            "\"author\" and \"type\" among premise, argument, counter-argument, "
            "conclusion) and \"edges\" (each with \"source\", \"target\" node ids "
            "and \"type\" of supports or refutes). Use short unique ids such as "
            "p1_arg1.\n\nCONVERSATION:\n---\n"
            f"{conversation_text(messages)}\n---"
        )
        try:
            return ArgumentMapData.from_dict(await self._json(prompt, temperature=0.2))
        except ANALYSIS_ERRORS as e:
            logger.error(f"Error generating argument map: {e}", exc_info=True)
            return ArgumentMapData()

    async def generate_knowledge_graph(self, topic: str) -> KnowledgeGraphData:
        prompt = (
            f"Generate a knowledge graph of 8-12 core concepts related to the topic: \"{topic}\".\n"
            "Return a JSON object with \"nodes\" (\"id\": concise noun phrase, "
            "\"summary\": one sentence, \"group\": 1-5) and \"edges\" "
            "(\"source\", \"target\", \"relationship\": short verb phrase)."
        )
        try:
            return KnowledgeGraphData.from_dict(await self._json(prompt, temperature=0.5))
        except ANALYSIS_ERRORS as e:
            logger.error(f"Error generating knowledge graph: {e}", exc_info=True)
            return KnowledgeGraphData()

    async def expand_knowledge_graph(
        self,
        graph: KnowledgeGraphData,
        concept: str
    ) -> KnowledgeGraphData:
        """
        Add 3-5 unexpected connections to a concept.

        Returns:
            The merged graph (the input graph unchanged on failure)
        """
        existing = ", ".join(f'"{n.id}"' for n in graph.nodes)
        prompt = (
            f"I am exploring a knowledge graph. The central topic is \"{concept}\".\n"
            f"Find 3-5 surprising, deep conceptual connections to \"{concept}\". "
            f"Do not include any of these existing concepts: [{existing}].\n"
            f"For each connection create a node (group 6-10) and an edge linking it to \"{concept}\". "
            "Return a JSON object with only the new \"nodes\" and \"edges\"."
        )
        try:
            addition = KnowledgeGraphData.from_dict(await self._json(prompt, temperature=0.8))
        except ANALYSIS_ERRORS as e:
            logger.error(f"Error expanding knowledge graph node: {e}", exc_info=True)
            return graph
        return graph.merge(addition)

    async def generate_random_topic(self) -> str:
        prompt = (
            "Generate a single, interesting, and deeply philosophical conversation "
            "topic. The topic should be a concise question or statement. Do not add "
            "any extra text, quotes, or formatting."
        )
        text = await self.gemini.generate_text(prompt, model=self.model, temperature=1.0)
        return re.sub(r'^"(.*)"$', r"\1", text.strip()) or FALLBACK_TOPIC

    async def generate_persona_prompt(self, persona: Persona) -> str:
        """
        Write a first-person system prompt from a persona's traits.

        Returns:
            The generated prompt, or the persona's current prompt on failure
        """
        traits = [
            f"Influenced by: {persona.supporting_preset_name}" if persona.supporting_preset_name else None,
            f"Creativity (temperature): {persona.temperature:.2f}",
        ]
        for label, value in (
            ("Agreeableness", persona.agreeableness),
            ("Assertiveness", persona.assertiveness),
            ("Openness", persona.openness),
            ("Conscientiousness", persona.conscientiousness),
        ):
            if value is not None:
                traits.append(f"{label}: {value:.2f}")
        for label, value in (
            ("Communication Style", persona.communication_style),
            ("Verbosity", persona.verbosity),
            ("Formality/Tone", persona.formality),
            ("Humor Style", persona.humor_style),
            ("Interrupt Tendency", persona.interrupt_tendency),
            ("Curiosity", persona.curiosity_level),
            ("Outlook", persona.pessimism_optimism),
            ("Self-Correction", persona.self_correction_tendency),
            ("Temperament", persona.temperament),
        ):
            if value:
                traits.append(f"{label}: {value}")

        trait_text = "\n- ".join(t for t in traits if t)
        prompt = (
            "Based on the following characteristics, write a creative, first-person "
            "system prompt for an AI persona describing who it is, its worldview and "
            "how it speaks.\n\n"
            f"**Primary Role:** {persona.name}\n**Traits:**\n- {trait_text}\n\n"
            "**Generated Prompt:**"
        )
        try:
            return await self.gemini.generate_text(prompt, model=self.model, temperature=0.8)
        except ANALYSIS_ERRORS as e:
            logger.error(f"Error generating persona prompt: {e}", exc_info=True)
            return persona.system_prompt

    async def generate_concept_image(self, concept: str, definition: str) -> Optional[str]:
        prompt = (
            f"Create an abstract, artistic representation of the philosophical concept "
            f"of \"{concept}\". Definition: \"{definition}\". The image should be symbolic "
            "and evocative rather than literal."
        )
        try:
            return await self.gemini.generate_image(prompt)
        except ANALYSIS_ERRORS as e:
            logger.error(f"Error generating concept image: {e}", exc_info=True)
            return None
