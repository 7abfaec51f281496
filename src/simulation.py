"""
Simulation Module

Drives an autonomous persona-vs-persona conversation for a fixed number
of turns without user input. The loop owns its scheduler: a single
asyncio task that waits a fixed delay, runs one tick, and repeats while
the loop is running and turns remain.
"""

from typing import Callable, Optional, TYPE_CHECKING
from enum import Enum
import asyncio
import logging

from conversation_state import BranchStore
from events import EventBus, ProtocolEvent
from protocol import PersonaRoster, TurnGate

if TYPE_CHECKING:
    from workflow import TurnChainWorkflow

logger = logging.getLogger(__name__)


class SimulationState(Enum):
    IDLE = "idle"
    RUNNING = "running"


class SimulationLoop:
    """
    Turn-based autonomous simulation.

    Stopping never aborts a provider call already in flight; it only
    prevents the second message of the current tick, the turn counter
    increment and any further ticks.
    """

    def __init__(
        self,
        workflow: "TurnChainWorkflow",
        roster: PersonaRoster,
        gate: TurnGate,
        store: BranchStore,
        topic_provider: Callable[[], str],
        event_bus: Optional[EventBus] = None,
        turn_delay_seconds: float = 0.5
    ):
        """
        Initialize the simulation loop.

        Args:
            workflow: Turn chain used for each tick
            roster: Personas and the active slot
            gate: Shared in-flight gate
            store: Branch store the prompts are read from
            topic_provider: Returns the configured topic
            event_bus: Optional bus for simulation events
            turn_delay_seconds: Delay before every tick
        """
        self.workflow = workflow
        self.roster = roster
        self.gate = gate
        self.store = store
        self.topic_provider = topic_provider
        self.event_bus = event_bus or store.event_bus
        self.turn_delay_seconds = turn_delay_seconds

        self.state = SimulationState.IDLE
        self.current_turn = 0
        self.max_turns = 10
        self.messages_per_turn = 1
        self.stop_reason: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._run_id = 0

    @property
    def is_running(self) -> bool:
        return self.state == SimulationState.RUNNING

    def start(self, max_turns: int, messages_per_turn: int) -> bool:
        """
        Start the loop. Must be called from within a running event loop.

        Args:
            max_turns: Number of ticks to run
            messages_per_turn: 1 (active persona only) or 2 (both personas)

        Returns:
            True if the loop started; False if it was already running or
            a generation is in flight

        Raises:
            ValueError: On invalid max_turns or messages_per_turn
        """
        if messages_per_turn not in (1, 2):
            raise ValueError(f"messages_per_turn must be 1 or 2, got {messages_per_turn}")
        if max_turns < 1:
            raise ValueError(f"max_turns must be at least 1, got {max_turns}")

        if self.is_running:
            logger.warning("Simulation already running")
            return False
        if self.gate.is_busy:
            logger.warning("Cannot start simulation while a generation is in flight")
            return False

        self.max_turns = max_turns
        self.messages_per_turn = messages_per_turn
        self.current_turn = 0
        self.stop_reason = None
        self.state = SimulationState.RUNNING
        self._run_id += 1
        self._task = asyncio.get_running_loop().create_task(self._drive(self._run_id))

        logger.info(
            f"Simulation started: {max_turns} turns, "
            f"{messages_per_turn} message(s) per turn"
        )
        self.event_bus.emit(
            ProtocolEvent.SIMULATION_STARTED,
            {"max_turns": max_turns, "messages_per_turn": messages_per_turn}
        )
        return True

    def stop(self, reason: str = "stopped") -> None:
        """Stop scheduling further ticks."""
        if self.is_running:
            self._halt(reason)

    async def wait(self) -> None:
        """Wait until the loop's task has finished."""
        if self._task is not None:
            await self._task

    def _halt(self, reason: str) -> None:
        self.state = SimulationState.IDLE
        self.stop_reason = reason
        logger.info(
            f"Simulation stopped ({reason}) after "
            f"{self.current_turn}/{self.max_turns} turns"
        )
        self.event_bus.emit(
            ProtocolEvent.SIMULATION_STOPPED,
            {"reason": reason, "current_turn": self.current_turn}
        )

    def next_prompt(self) -> str:
        """
        Text of the latest visible turn in the active branch, or the topic.
        """
        for message in reversed(self.store.get_messages()):
            if message.is_visible_turn:
                return message.text
        return self.topic_provider()

    def _is_current(self, run_id: int) -> bool:
        return self.is_running and run_id == self._run_id

    async def _drive(self, run_id: int) -> None:
        # A driver left sleeping by stop() must not tick for a later run
        while self._is_current(run_id) and self.current_turn < self.max_turns:
            await asyncio.sleep(self.turn_delay_seconds)
            if not self._is_current(run_id):
                break
            await self._run_tick()

        if self._is_current(run_id):
            self._halt("completed")

    async def _run_tick(self) -> None:
        if not self.gate.try_acquire("simulation"):
            return

        prompt = self.next_prompt()
        first, second = self.roster.responders()
        try:
            await self.workflow.run(
                prompt,
                first,
                second if self.messages_per_turn == 2 else None,
                chain_second=lambda: self.is_running,
            )
        except Exception as e:
            logger.error(f"Simulation turn halted due to error: {e}")
            self._halt("error")
        finally:
            if self.messages_per_turn == 1:
                self.roster.flip()
            self.gate.release()
            if self.is_running:
                self.current_turn += 1
