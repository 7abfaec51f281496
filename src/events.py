"""
Events Module

Notification interface emitted by the orchestration core. Consumers
(UI re-render, speech playback, metrics) subscribe to an EventBus; the
core never depends on them.
"""

from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import logging

logger = logging.getLogger(__name__)


class ProtocolEvent(Enum):
    """Events that can occur during a duel session."""
    MESSAGE_ADDED = "message_added"
    MESSAGE_UPDATED = "message_updated"
    MESSAGE_REMOVED = "message_removed"
    MESSAGES_CLEARED = "messages_cleared"
    TURN_STARTED = "turn_started"
    TURN_COMPLETED = "turn_completed"
    TURN_FAILED = "turn_failed"
    EXCHANGE_COMPLETED = "exchange_completed"
    SIMULATION_STARTED = "simulation_started"
    SIMULATION_STOPPED = "simulation_stopped"
    BRANCH_CREATED = "branch_created"
    BRANCH_SELECTED = "branch_selected"
    BRANCH_DELETED = "branch_deleted"


EventCallback = Callable[[ProtocolEvent, Dict[str, Any]], None]


class EventBus:
    """
    Synchronous fan-out of protocol events to subscribers.

    A subscriber that raises is logged and skipped; delivery to the other
    subscribers continues.
    """

    def __init__(self):
        self._subscribers: List[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """
        Register a callback for all events.

        Args:
            callback: Called as callback(event, data)

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: ProtocolEvent, data: Optional[Dict[str, Any]] = None) -> None:
        event_data = dict(data or {})
        event_data["event"] = event.value

        for callback in list(self._subscribers):
            try:
                callback(event, event_data)
            except Exception as e:
                logger.error(f"Error in event callback: {e}", exc_info=True)
