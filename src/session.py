"""
Session Module

DuelSession owns everything one duel needs: the two personas, the topic
and shared context, the branch store, the in-flight gate and the
orchestration components built on top of them. Front ends talk to the
session only; raw state is never mutated from outside.
"""

from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional
import asyncio
import logging

from analysis import ANALYSIS_ERRORS, AnalysisService, ArgumentMapData, KnowledgeGraphData
from config import (
    ApiKeys,
    CONVERSATION_START_TONES,
    CONVERSATION_TYPES,
    CredentialStore,
    DEFAULT_CONVERSATION_TYPE,
    DEFAULT_MEMORY,
    DEFAULT_MODELS,
    DEFAULT_START_TONE,
    DEFAULT_TOPIC,
    SUPPORTED_PROVIDERS,
    SystemConfig,
)
from conversation_state import (
    BranchStore,
    ConversationMetrics,
    MAIN_BRANCH_ID,
    Message,
    USER_AUTHOR,
    new_id,
)
from dispatcher import ProviderDispatcher, TurnContext
from events import EventBus, EventCallback, ProtocolEvent
from personas import Persona, PersonaFactory
from protocol import DuelSequencer, PersonaRoster, PersonaSlot, TurnExecutor, TurnGate
from providers import GeminiProvider, ProviderAdapter, create_default_providers
from simulation import SimulationLoop
from utils import ConversationPersistence
from workflow import TurnChainWorkflow

logger = logging.getLogger(__name__)

TOPIC_FALLBACK = "Could not generate topic. What is the sound of one hand clapping?"


class DuelSession:
    """
    One persona duel and its branching history.

    Every operation that would start a generation is rejected (returns
    False) while another generation is in flight.
    """

    def __init__(
        self,
        config: SystemConfig,
        providers: Optional[Mapping[str, ProviderAdapter]] = None,
        credential_store: Optional[CredentialStore] = None,
        analysis: Optional[AnalysisService] = None
    ):
        """
        Initialize the session.

        Args:
            config: System configuration
            providers: Adapter per provider id (defaults to the HTTP adapters)
            credential_store: Stored API keys (defaults to config.credentials_file)
            analysis: Analysis service (defaults to one over the Gemini adapter)
        """
        self.config = config
        self.event_bus = EventBus()
        self.store = BranchStore(self.event_bus)
        self.gate = TurnGate()
        self.roster = PersonaRoster(*PersonaFactory.create_default_pair())
        self.credential_store = credential_store or CredentialStore(config.credentials_file)
        self.persistence = ConversationPersistence(config.storage_dir)

        if providers is None:
            providers = create_default_providers(config)
        self.dispatcher = ProviderDispatcher(providers)

        if analysis is None:
            gemini = providers.get("gemini")
            if not isinstance(gemini, GeminiProvider):
                gemini = GeminiProvider(
                    config.gemini_api_key,
                    timeout_seconds=config.request_timeout_seconds
                )
            analysis = AnalysisService(gemini)
        self.analysis = analysis

        self.executor = TurnExecutor(
            self.store,
            self.dispatcher,
            self.credential_store,
            self.turn_context,
            self.event_bus,
        )
        self.workflow = TurnChainWorkflow(self.executor)
        self.sequencer = DuelSequencer(self.workflow, self.roster, self.gate, self.event_bus)
        self.simulation = SimulationLoop(
            self.workflow,
            self.roster,
            self.gate,
            self.store,
            lambda: self.topic,
            self.event_bus,
            turn_delay_seconds=config.turn_delay_seconds,
        )

        self._reset_settings()
        logger.info("Initialized DuelSession")

    def _reset_settings(self) -> None:
        self.topic = DEFAULT_TOPIC
        self.conversation_type = DEFAULT_CONVERSATION_TYPE
        self.conversation_start_tone = DEFAULT_START_TONE
        self.long_term_memory: List[str] = list(DEFAULT_MEMORY)
        self.summary: Optional[str] = None
        self.argument_map: Optional[ArgumentMapData] = None
        self.knowledge_graph: Optional[KnowledgeGraphData] = None
        self.is_randomizing_topic = False

    # ------------------------------------------------------------------ state

    @property
    def is_busy(self) -> bool:
        return self.gate.is_busy

    @property
    def is_simulating(self) -> bool:
        return self.simulation.is_running

    @property
    def persona_1(self) -> Persona:
        return self.roster.get("p1")

    @property
    def persona_2(self) -> Persona:
        return self.roster.get("p2")

    @property
    def active_persona(self) -> Persona:
        return self.roster.active_persona

    @property
    def messages(self) -> List[Message]:
        return self.store.get_messages()

    def turn_context(self) -> TurnContext:
        return TurnContext(
            long_term_memory=list(self.long_term_memory),
            conversation_type=self.conversation_type,
            conversation_start_tone=self.conversation_start_tone,
        )

    def compute_metrics(self, branch_id: Optional[str] = None) -> ConversationMetrics:
        return self.store.compute_metrics(branch_id)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        return self.event_bus.subscribe(callback)

    # ------------------------------------------------------------- generation

    async def send_message(self, text: str) -> bool:
        """
        Post a user message and let both personas answer it.

        Args:
            text: User message

        Returns:
            True if the exchange ran, False if it was rejected
        """
        text = text.strip()
        if not text:
            return False
        if self.is_busy or self.is_simulating:
            logger.warning("Message rejected: a generation is already running")
            return False

        self.store.append_messages(
            self.store.active_branch_id,
            [Message(id=new_id(), author=USER_AUTHOR, text=text)]
        )
        self.simulation.current_turn = 0
        return await self.sequencer.run_exchange(text)

    def start_simulation(
        self,
        max_turns: Optional[int] = None,
        messages_per_turn: Optional[int] = None
    ) -> bool:
        """
        Start the autonomous simulation on the active branch.

        Args:
            max_turns: Number of turns (config default if None)
            messages_per_turn: 1 or 2 (config default if None)

        Returns:
            True if the simulation started
        """
        if max_turns is None:
            max_turns = self.config.default_max_turns
        if messages_per_turn is None:
            messages_per_turn = self.config.default_messages_per_turn
        return self.simulation.start(max_turns, messages_per_turn)

    def stop_simulation(self) -> None:
        self.simulation.stop()

    async def wait_for_simulation(self) -> None:
        await self.simulation.wait()

    # ----------------------------------------------------------- configuration

    def update_persona(self, slot: PersonaSlot, **changes) -> bool:
        """
        Change persona settings.

        Switching provider without naming a model selects the provider's
        default model.

        Args:
            slot: "p1" or "p2"
            **changes: Persona fields to change

        Returns:
            False if a generation is in flight (nothing changed)

        Raises:
            ValueError: On an unsupported provider or invalid field values
        """
        if self.is_busy:
            logger.warning("Persona edit rejected: a generation is in flight")
            return False

        provider = changes.get("api_provider")
        if provider is not None:
            if provider not in SUPPORTED_PROVIDERS:
                raise ValueError(f"Unsupported API provider: {provider}")
            changes.setdefault("model", DEFAULT_MODELS[provider])

        self.roster.set(slot, replace(self.roster.get(slot), **changes))
        logger.info(f"Updated persona {slot}: {sorted(changes)}")
        return True

    def randomize_persona(self, slot: PersonaSlot) -> bool:
        if self.is_busy:
            logger.warning("Persona edit rejected: a generation is in flight")
            return False
        self.roster.set(slot, PersonaFactory.randomize_traits(self.roster.get(slot)))
        return True

    def set_topic(self, topic: str) -> None:
        self.topic = topic.strip() or DEFAULT_TOPIC

    def set_conversation_type(self, conversation_type: str) -> None:
        if conversation_type not in CONVERSATION_TYPES:
            raise ValueError(f"Unknown conversation type: {conversation_type}")
        self.conversation_type = conversation_type

    def set_start_tone(self, tone: str) -> None:
        if tone not in CONVERSATION_START_TONES:
            raise ValueError(f"Unknown start tone: {tone}")
        self.conversation_start_tone = tone

    async def randomize_topic(self) -> str:
        """
        Replace the topic with a generated one.

        Not gated by the in-flight flag, but rejected while a simulation
        runs or another randomization is pending.

        Returns:
            The current topic afterwards
        """
        if self.is_simulating or self.is_randomizing_topic:
            logger.warning("Topic randomization rejected")
            return self.topic

        self.is_randomizing_topic = True
        try:
            self.topic = await self.analysis.generate_random_topic()
        except ANALYSIS_ERRORS as e:
            logger.error(f"Error generating random topic: {e}", exc_info=True)
            self.topic = TOPIC_FALLBACK
        finally:
            self.is_randomizing_topic = False

        logger.info(f"Topic set to: {self.topic}")
        return self.topic

    def add_memory(self, fact: str) -> bool:
        fact = fact.strip()
        if not fact:
            return False
        self.long_term_memory.append(fact)
        return True

    def remove_memory(self, index: int) -> bool:
        if not 0 <= index < len(self.long_term_memory):
            return False
        del self.long_term_memory[index]
        return True

    def get_api_keys(self) -> ApiKeys:
        return self.credential_store.get()

    def set_api_keys(self, keys: ApiKeys) -> None:
        self.credential_store.set(keys)

    # -------------------------------------------------------------- lifecycle

    def clear_session(self) -> bool:
        """Clear the active branch and its derived analysis."""
        if self.is_busy or self.is_simulating:
            logger.warning("Clear rejected: a generation is running")
            return False

        self.store.clear_messages(self.store.active_branch_id)
        self.simulation.current_turn = 0
        self.summary = None
        self.argument_map = None
        return True

    def new_session(self) -> bool:
        """Reset branches, personas and settings to their defaults."""
        if self.is_busy or self.is_simulating:
            logger.warning("New session rejected: a generation is running")
            return False

        self.simulation.current_turn = 0
        self.store.reset()
        persona_1, persona_2 = PersonaFactory.create_default_pair()
        self.roster.set("p1", persona_1)
        self.roster.set("p2", persona_2)
        self.roster.active = "p1"
        self._reset_settings()
        logger.info("Started new session")
        return True

    # --------------------------------------------------------------- branches

    async def fork(self, message_id: str) -> Optional[str]:
        """
        Fork the active branch at a message and switch to the new branch.

        Returns:
            New branch id, or None if the fork was rejected
        """
        if self.is_busy:
            logger.warning("Fork rejected: a generation is in flight")
            return None

        branch_id = self.store.fork(message_id)
        if branch_id is None:
            return None
        await self.select_branch(branch_id)
        return branch_id

    async def select_branch(self, branch_id: str) -> bool:
        """
        Switch the active branch.

        A running simulation is stopped and the cached argument map is
        dropped before the switch, which happens after the transition
        delay. The in-flight gate is held for the whole transition, so
        no exchange or simulation can start on either branch meanwhile.

        Returns:
            True if the active branch changed
        """
        if branch_id == self.store.active_branch_id:
            return False
        if not self.store.has_branch(branch_id):
            logger.warning(f"Unknown branch: {branch_id}")
            return False
        if not self.gate.try_acquire("branch_switch"):
            logger.warning("Branch switch rejected: a generation is in flight")
            return False

        try:
            self.simulation.stop("branch_switch")
            self.argument_map = None

            await asyncio.sleep(self.config.branch_transition_seconds)
            self.store.set_active(branch_id)
        finally:
            self.gate.release()

        logger.info(f"Switched to branch {branch_id}")
        self.event_bus.emit(ProtocolEvent.BRANCH_SELECTED, {"branch_id": branch_id})
        return True

    def delete_branch(self, branch_id: str) -> bool:
        if branch_id == MAIN_BRANCH_ID:
            return False
        if self.is_busy or self.is_simulating:
            logger.warning("Branch delete rejected: a generation is running")
            return False

        was_active = branch_id == self.store.active_branch_id
        if not self.store.delete_branch(branch_id):
            return False

        if was_active:
            self.argument_map = None
            self.event_bus.emit(ProtocolEvent.BRANCH_SELECTED, {"branch_id": MAIN_BRANCH_ID})
        return True

    def vote(self, message_id: str, value: int) -> Optional[Message]:
        return self.store.vote(message_id, value)

    # --------------------------------------------------------------- analysis

    async def generate_summary(self) -> str:
        self.summary = await self.analysis.generate_summary(self.store.get_messages())
        return self.summary

    async def generate_argument_map(self) -> ArgumentMapData:
        self.argument_map = await self.analysis.generate_argument_map(
            self.store.get_messages(),
            self.persona_1.name,
            self.persona_2.name,
        )
        return self.argument_map

    async def generate_knowledge_graph(self) -> KnowledgeGraphData:
        self.knowledge_graph = await self.analysis.generate_knowledge_graph(self.topic)
        return self.knowledge_graph

    async def expand_knowledge_graph(self, concept: str) -> KnowledgeGraphData:
        graph = self.knowledge_graph or KnowledgeGraphData()
        self.knowledge_graph = await self.analysis.expand_knowledge_graph(graph, concept)
        return self.knowledge_graph

    async def generate_persona_prompt(self, slot: PersonaSlot) -> str:
        """
        Generate a system prompt from a persona's traits and apply it.

        If a generation started while the prompt was being written, the
        persona is left unchanged and the prompt is only returned.

        Returns:
            The generated prompt
        """
        prompt = await self.analysis.generate_persona_prompt(self.roster.get(slot))
        if not self.update_persona(slot, system_prompt=prompt):
            logger.warning(f"Generated prompt for {slot} not applied: a generation is in flight")
        return prompt

    async def generate_concept_image(self, concept: str, definition: str) -> Optional[str]:
        return await self.analysis.generate_concept_image(concept, definition)

    # ------------------------------------------------------------ persistence

    def to_dict(self) -> Dict[str, Any]:
        """Export the session (personas, settings and branch forest)."""
        return {
            "topic": self.topic,
            "conversation_type": self.conversation_type,
            "conversation_start_tone": self.conversation_start_tone,
            "long_term_memory": list(self.long_term_memory),
            "personas": {
                "p1": self.persona_1.to_dict(),
                "p2": self.persona_2.to_dict(),
            },
            "active_persona": self.roster.active,
            "conversation": self.store.to_dict(),
        }

    def load_dict(self, data: Dict[str, Any]) -> bool:
        """
        Replace the session with one exported by to_dict().

        Raises:
            ValueError: If the data has no main branch
        """
        if self.is_busy:
            logger.warning("Load rejected: a generation is in flight")
            return False

        self.simulation.stop("loaded")
        self.store.load_dict(data.get("conversation", {}))

        personas = data.get("personas", {})
        for slot in ("p1", "p2"):
            if slot in personas:
                self.roster.set(slot, Persona.from_dict(personas[slot]))
        self.roster.active = "p2" if data.get("active_persona") == "p2" else "p1"

        self._reset_settings()
        self.topic = data.get("topic", DEFAULT_TOPIC)
        self.conversation_type = data.get("conversation_type", DEFAULT_CONVERSATION_TYPE)
        self.conversation_start_tone = data.get("conversation_start_tone", DEFAULT_START_TONE)
        self.long_term_memory = list(data.get("long_term_memory", DEFAULT_MEMORY))
        return True

    def save(self, filename: Optional[str] = None) -> str:
        return self.persistence.save_session(self.to_dict(), self.topic, filename)

    def load(self, filename: str) -> bool:
        return self.load_dict(self.persistence.load_session(filename))

    def list_saved_sessions(self) -> List[str]:
        return self.persistence.list_sessions()

    def export_transcript(self, branch_id: Optional[str] = None) -> Optional[str]:
        """
        Write a branch transcript as text.

        Returns:
            Path to the written file, or None for an empty branch
        """
        branch = self.store.get_branch(branch_id or self.store.active_branch_id)
        return self.persistence.export_transcript(branch.messages, branch.name)
