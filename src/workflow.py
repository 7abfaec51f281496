"""
LangGraph Workflow Module

Implements the turn chain shared by duel exchanges and simulation ticks
as a LangGraph StateGraph: the first responder answers the prompt, then,
if the chain is still wanted, the second responder answers the first
reply. The second call starts only after the first has settled.
"""

from typing import Callable, Optional, TypedDict, TYPE_CHECKING
from langgraph.graph import StateGraph, END
from langgraph.graph.state import CompiledStateGraph
import logging

from personas import Persona

if TYPE_CHECKING:
    from protocol import TurnExecutor

logger = logging.getLogger(__name__)


class TurnChainState(TypedDict):
    """
    State schema for one exchange or simulation tick.
    """
    prompt: str
    first_responder: Persona
    second_responder: Optional[Persona]
    chain_second: Callable[[], bool]
    first_reply: Optional[str]
    second_reply: Optional[str]


def _always() -> bool:
    return True


class TurnChainWorkflow:
    """
    LangGraph-based chain of one or two persona turns.

    Turn failures are not caught here: the exception raised by the
    TurnExecutor propagates out of run() and the remaining node never runs.
    """

    def __init__(self, executor: "TurnExecutor"):
        """
        Initialize the workflow.

        Args:
            executor: Turn executor running each persona turn
        """
        self.executor = executor
        self.graph = self.build_graph()

    async def _first_turn_node(self, state: TurnChainState) -> dict:
        reply = await self.executor.run_turn(state["first_responder"], state["prompt"])
        return {"first_reply": reply}

    async def _second_turn_node(self, state: TurnChainState) -> dict:
        reply = await self.executor.run_turn(state["second_responder"], state["first_reply"])
        return {"second_reply": reply}

    def _route_after_first(self, state: TurnChainState) -> str:
        """
        Conditional edge: chain the second responder or stop.

        Returns:
            "second" to run the second turn, "end" otherwise
        """
        if state["second_responder"] is None:
            return "end"
        if not state["chain_second"]():
            logger.info("Second turn skipped: chain no longer wanted")
            return "end"
        return "second"

    def build_graph(self) -> CompiledStateGraph:
        """
        Build the LangGraph StateGraph for the turn chain.

        Returns:
            Compiled state graph
        """
        workflow = StateGraph(TurnChainState)

        workflow.add_node("first_turn", self._first_turn_node)
        workflow.add_node("second_turn", self._second_turn_node)

        workflow.set_entry_point("first_turn")
        workflow.add_conditional_edges(
            "first_turn",
            self._route_after_first,
            {
                "second": "second_turn",
                "end": END
            }
        )
        workflow.add_edge("second_turn", END)

        return workflow.compile()

    async def run(
        self,
        prompt: str,
        first_responder: Persona,
        second_responder: Optional[Persona] = None,
        chain_second: Callable[[], bool] = _always
    ) -> TurnChainState:
        """
        Run the chain.

        Args:
            prompt: Prompt for the first responder
            first_responder: Persona answering first
            second_responder: Persona answering the first reply, or None
            chain_second: Checked after the first turn; False skips the second

        Returns:
            Final chain state with the replies produced
        """
        initial_state = TurnChainState(
            prompt=prompt,
            first_responder=first_responder,
            second_responder=second_responder,
            chain_second=chain_second,
            first_reply=None,
            second_reply=None,
        )
        return await self.graph.ainvoke(initial_state)
