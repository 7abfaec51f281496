"""
Protocol Module

Defines the turn-taking machinery between the two personas: the
single-flight gate, the persona roster with its active slot, the
TurnExecutor that runs one persona turn against the BranchStore, and the
DuelSequencer that answers a user message with both personas.
"""

from typing import Callable, Dict, Literal, Optional, Tuple, TYPE_CHECKING
import asyncio
import logging

from config import CredentialStore
from conversation_state import BranchStore, Message, SYSTEM_AUTHOR, new_id
from dispatcher import ProviderDispatcher, TurnContext, build_history
from events import EventBus, ProtocolEvent
from personas import Persona

if TYPE_CHECKING:
    from workflow import TurnChainWorkflow

logger = logging.getLogger(__name__)

PersonaSlot = Literal["p1", "p2"]

LOADING_TEXT = "..."


class TurnGate:
    """
    The in-flight flag: at most one generation sequence runs at a time.

    Acquiring while held fails immediately; requests are never queued.
    """

    def __init__(self):
        self._holder: Optional[str] = None

    @property
    def is_busy(self) -> bool:
        return self._holder is not None

    @property
    def holder(self) -> Optional[str]:
        return self._holder

    def try_acquire(self, holder: str) -> bool:
        if self._holder is not None:
            logger.warning(f"Generation already in flight ({self._holder}); {holder} rejected")
            return False
        self._holder = holder
        return True

    def release(self) -> None:
        self._holder = None


class PersonaRoster:
    """
    The two personas of a session and which one responds first.
    """

    def __init__(self, persona_1: Persona, persona_2: Persona):
        self._personas: Dict[PersonaSlot, Persona] = {"p1": persona_1, "p2": persona_2}
        self.active: PersonaSlot = "p1"

    def get(self, slot: PersonaSlot) -> Persona:
        return self._personas[slot]

    def set(self, slot: PersonaSlot, persona: Persona) -> None:
        if slot not in self._personas:
            raise ValueError(f"Unknown persona slot: {slot}")
        self._personas[slot] = persona

    @property
    def active_persona(self) -> Persona:
        return self._personas[self.active]

    def responders(self) -> Tuple[Persona, Persona]:
        """
        Returns:
            Tuple of (first responder, second responder)
        """
        other: PersonaSlot = "p2" if self.active == "p1" else "p1"
        return self._personas[self.active], self._personas[other]

    def flip(self) -> None:
        self.active = "p2" if self.active == "p1" else "p1"


def format_turn_error(error: BaseException) -> str:
    detail = str(error) or type(error).__name__
    return f"[SYSTEM ERROR] Failed to get response: {detail}"


class TurnExecutor:
    """
    Runs one persona turn.

    A turn appends a monologue placeholder and a reply placeholder to the
    branch that is active when the turn starts, awaits the dispatcher, and
    then finalizes both placeholders by id in that same branch.
    """

    def __init__(
        self,
        store: BranchStore,
        dispatcher: ProviderDispatcher,
        credential_store: CredentialStore,
        context_provider: Callable[[], TurnContext],
        event_bus: Optional[EventBus] = None
    ):
        """
        Initialize the turn executor.

        Args:
            store: Branch store receiving the messages
            dispatcher: Provider dispatcher
            credential_store: Source of API keys, read at dispatch time
            context_provider: Returns the current shared turn context
            event_bus: Optional bus for turn events
        """
        self.store = store
        self.dispatcher = dispatcher
        self.credential_store = credential_store
        self.context_provider = context_provider
        self.event_bus = event_bus or store.event_bus

    def _branch_alive(self, branch_id: str) -> bool:
        if self.store.has_branch(branch_id):
            return True
        logger.warning(f"Branch {branch_id} vanished during turn; result discarded")
        return False

    async def run_turn(self, persona: Persona, prompt: str) -> str:
        """
        Execute a single turn for a persona.

        Args:
            persona: Responding persona
            prompt: Message the persona answers

        Returns:
            The reply text

        Raises:
            Exception: Whatever the dispatcher raised, after the reply
                placeholder has been turned into a System error message
        """
        branch_id = self.store.active_branch_id
        history = build_history(self.store.get_messages(branch_id), persona.name)

        monologue = Message(
            id=new_id(),
            author=persona.name,
            text=LOADING_TEXT,
            is_internal_monologue=True,
            is_loading=True,
        )
        reply = Message(
            id=new_id(),
            author=persona.name,
            text=LOADING_TEXT,
            is_loading=True,
        )
        self.store.append_messages(branch_id, [monologue, reply])

        logger.info(f"{persona.name} responding in branch {branch_id} ({persona.api_provider})")
        self.event_bus.emit(
            ProtocolEvent.TURN_STARTED,
            {"persona": persona.name, "branch_id": branch_id}
        )

        try:
            result = await self.dispatcher.dispatch(
                persona,
                history,
                prompt,
                self.context_provider(),
                self.credential_store.get(),
            )
        except (Exception, asyncio.CancelledError) as e:
            logger.error(f"Error during turn for {persona.name}: {e}", exc_info=True)
            if self._branch_alive(branch_id):
                self.store.remove_message(branch_id, monologue.id)
                self.store.update_message(
                    branch_id,
                    reply.id,
                    text=format_turn_error(e),
                    is_loading=False,
                    author=SYSTEM_AUTHOR,
                )
            self.event_bus.emit(
                ProtocolEvent.TURN_FAILED,
                {
                    "persona": persona.name,
                    "branch_id": branch_id,
                    "error": str(e),
                    "error_type": type(e).__name__
                }
            )
            raise

        if self._branch_alive(branch_id):
            self.store.update_message(
                branch_id,
                monologue.id,
                text=result.internal_monologue or "No monologue provided.",
                is_loading=False,
            )
            self.store.update_message(
                branch_id,
                reply.id,
                text=result.text,
                is_loading=False,
                image_base64=result.image_base64,
                sentiment=result.sentiment,
                influence_score=result.influence_score,
            )

        logger.info(f"{persona.name} responded ({len(result.text)} chars)")
        self.event_bus.emit(
            ProtocolEvent.TURN_COMPLETED,
            {"persona": persona.name, "branch_id": branch_id, "reply_id": reply.id}
        )
        return result.text


class DuelSequencer:
    """
    Answers one user message with both personas.

    The active persona responds to the user, the other persona responds
    to that reply. Afterwards the active persona flips and the gate is
    released, whatever happened.
    """

    def __init__(
        self,
        workflow: "TurnChainWorkflow",
        roster: PersonaRoster,
        gate: TurnGate,
        event_bus: EventBus
    ):
        self.workflow = workflow
        self.roster = roster
        self.gate = gate
        self.event_bus = event_bus

    async def run_exchange(self, user_prompt: str) -> bool:
        """
        Run one exchange.

        Turn failures are logged and swallowed here.

        Args:
            user_prompt: The user's message

        Returns:
            False if a generation was already in flight (nothing ran),
            True otherwise
        """
        if not self.gate.try_acquire("exchange"):
            return False

        first, second = self.roster.responders()
        success = False
        try:
            await self.workflow.run(user_prompt, first, second)
            success = True
        except Exception as e:
            logger.error(f"Duel sequence halted due to error: {e}")
        finally:
            self.roster.flip()
            self.gate.release()
            self.event_bus.emit(
                ProtocolEvent.EXCHANGE_COMPLETED,
                {"success": success, "next_active": self.roster.active}
            )

        logger.info(
            f"Exchange finished ({'ok' if success else 'halted'}); "
            f"{self.roster.active_persona.name} responds first next"
        )
        return True
