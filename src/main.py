"""
Main Application Module

Console entry point: runs one autonomous persona duel from environment
configuration, prints the transcript and metrics, and saves the results.
"""

import asyncio
import logging
from typing import Optional

from config import ConfigLoader, SystemConfig, get_preset_config
from conversation_state import ConversationMetrics
from events import ProtocolEvent
from session import DuelSession
from utils import (
    setup_logging,
    get_environment_variable,
    DuelFormatter,
    format_duration,
)

logger = logging.getLogger(__name__)


class PersonaDuelSystem:
    """
    Runs autonomous duels between the two personas of a DuelSession.
    """

    def __init__(self, config: SystemConfig):
        """
        Initialize the duel system.

        Args:
            config: System configuration
        """
        setup_logging(log_level=config.log_level, log_file=config.log_file)

        self.config = config
        self.session = DuelSession(config)
        self.session.subscribe(self._protocol_event_handler)

        logger.info("Initialized PersonaDuelSystem")

    def _protocol_event_handler(self, event: ProtocolEvent, data: dict) -> None:
        """
        Log important protocol events.

        Args:
            event: Protocol event type
            data: Event data
        """
        if event == ProtocolEvent.TURN_COMPLETED:
            logger.info(f"Turn completed by {data.get('persona')}")
        elif event == ProtocolEvent.TURN_FAILED:
            logger.warning(f"Turn failed for {data.get('persona')}: {data.get('error')}")
        elif event == ProtocolEvent.SIMULATION_STOPPED:
            logger.info(
                f"Simulation stopped ({data.get('reason')}) at turn {data.get('current_turn')}"
            )

    async def run_duel(
        self,
        topic: str,
        max_turns: Optional[int] = None,
        messages_per_turn: Optional[int] = None,
        save_results: bool = True
    ) -> ConversationMetrics:
        """
        Run an autonomous duel to completion.

        Args:
            topic: Conversation topic
            max_turns: Number of turns (config default if None)
            messages_per_turn: 1 or 2 (config default if None)
            save_results: Whether to save the session and transcript

        Returns:
            Metrics of the finished branch
        """
        logger.info(f"Starting duel - Topic: '{topic}'")
        self.session.set_topic(topic)

        if not self.session.start_simulation(max_turns, messages_per_turn):
            raise RuntimeError("Simulation could not be started")
        await self.session.wait_for_simulation()

        if save_results:
            self.session.save()
            self.session.export_transcript()

        metrics = self.session.compute_metrics()
        logger.info(
            f"Duel finished - {self.session.simulation.current_turn} turns, "
            f"{metrics.reply_count} replies"
        )
        return metrics

    def display_conversation(self, format_type: str = "console") -> None:
        """
        Display the active branch in the specified format.

        Args:
            format_type: Format type ('console', 'markdown' or 'html')
        """
        messages = self.session.messages
        if format_type == "console":
            print(DuelFormatter.format_for_console(
                messages, self.session.topic, self.session.compute_metrics()
            ))
        elif format_type == "markdown":
            print(DuelFormatter.format_for_markdown(messages))
        elif format_type == "html":
            output = DuelFormatter.format_for_html(messages, self.session.topic)
            html_path = self.session.persistence.storage_dir / "latest_duel.html"
            with open(html_path, 'w', encoding='utf-8') as f:
                f.write(output)
            logger.info(f"HTML output saved to: {html_path}")
        else:
            logger.warning(f"Unknown format type: {format_type}")


def main():
    """
    Run one duel using environment configuration.

    DUEL_TOPIC overrides the default topic and DUEL_PRESET selects one of
    the preset simulation settings.
    """
    config = ConfigLoader.load_from_env()

    preset = get_environment_variable("DUEL_PRESET")
    if preset:
        config = get_preset_config(preset, config)

    system = PersonaDuelSystem(config)
    topic = get_environment_variable("DUEL_TOPIC", default=system.session.topic)

    logger.info("=" * 80)
    logger.info("STARTING PERSONA DUEL")
    logger.info("=" * 80)
    logger.info(f"Topic: {topic}")
    logger.info(f"{system.session.persona_1.name} vs {system.session.persona_2.name}")
    logger.info("=" * 80)

    metrics = asyncio.run(system.run_duel(topic))

    print("\n\n")
    system.display_conversation(format_type="console")

    print("\n" + "=" * 80)
    print("DUEL METRICS")
    print("=" * 80)
    for author, count in metrics.replies_by_author.items():
        print(f"{author}: {count} replies")
    print(f"System Messages: {metrics.system_count}")
    print(f"Duration: {format_duration(metrics.conversation_duration_seconds)}")
    print("=" * 80)


if __name__ == "__main__":
    main()
