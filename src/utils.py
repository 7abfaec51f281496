"""
Utilities Module

Provides logging configuration, persistence utilities, and helper functions
for the persona duel system.
"""

import html
import logging
import json
import os
import re
from typing import Optional, Dict, Any, List, Sequence
from datetime import datetime
from pathlib import Path
from conversation_state import ConversationMetrics, Message, SYSTEM_AUTHOR


TRANSCRIPT_SEPARATOR = "\n\n---\n\n"


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None
) -> None:
    """
    Configure logging for the duel system.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        log_format: Optional custom log format
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    format_string = log_format or (
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    handlers = [logging.StreamHandler()]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=format_string,
        handlers=handlers,
        force=True
    )

    # Chatty third-party loggers
    for name in ("aiohttp", "httpx", "httpcore", "gradio"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured - Level: {log_level}")


def sanitize_filename(name: str) -> str:
    """Lowercase name with every non-alphanumeric character replaced by "_"."""
    return re.sub(r"[^a-z0-9]", "_", name, flags=re.IGNORECASE).lower()


def format_transcript(messages: Sequence[Message]) -> str:
    """
    Render messages as a plain-text transcript.

    Loading placeholders are skipped. System messages become director's
    notes and monologues are labelled as the author's inner monologue.

    Args:
        messages: Branch messages in order

    Returns:
        Transcript text
    """
    blocks = []
    for message in messages:
        if message.is_loading:
            continue
        if message.author == SYSTEM_AUTHOR:
            blocks.append(f"[Director's Note]: {message.text}")
        elif message.is_internal_monologue:
            blocks.append(f"[{message.author}'s Inner Monologue]:\n{message.text}")
        else:
            blocks.append(f"{message.author}:\n{message.text}")
    return TRANSCRIPT_SEPARATOR.join(blocks)


class ConversationPersistence:
    """
    Handles persistence of duel sessions to disk.
    """

    def __init__(self, storage_dir: str = "./conversations"):
        """
        Initialize persistence handler.

        Args:
            storage_dir: Directory for storing session and transcript files
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.logger = logging.getLogger(__name__)
        self.logger.info(f"Initialized persistence at: {self.storage_dir}")

    def _generate_filename(self, topic: str, timestamp: datetime) -> str:
        """
        Generate a filename for a saved session.

        Args:
            topic: Conversation topic
            timestamp: Save time

        Returns:
            Filename string
        """
        safe_topic = sanitize_filename(topic)[:50]
        timestamp_str = timestamp.strftime("%Y%m%d_%H%M%S")
        return f"duel_{timestamp_str}_{safe_topic}.json"

    def save_session(
        self,
        session_data: Dict[str, Any],
        topic: str,
        filename: Optional[str] = None
    ) -> str:
        """
        Save an exported session to disk.

        Args:
            session_data: Output of DuelSession.to_dict()
            topic: Topic used to name the file
            filename: Optional custom filename

        Returns:
            Path to saved file
        """
        if filename is None:
            filename = self._generate_filename(topic, datetime.now())

        filepath = self.storage_dir / filename

        data = dict(session_data)
        data["_metadata"] = {
            "saved_at": datetime.now().isoformat(),
            "version": "1.0"
        }

        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        self.logger.info(f"Saved session to: {filepath}")
        return str(filepath)

    def load_session(self, filename: str) -> Dict[str, Any]:
        """
        Load a saved session from disk.

        Args:
            filename: Filename or path to session file

        Returns:
            Session data as dictionary

        Raises:
            FileNotFoundError: If the file does not exist
        """
        filepath = self.storage_dir / filename

        if not filepath.exists():
            raise FileNotFoundError(f"Session file not found: {filepath}")

        with open(filepath, 'r', encoding='utf-8') as f:
            data = json.load(f)

        data.pop("_metadata", None)
        self.logger.info(f"Loaded session from: {filepath}")
        return data

    def export_transcript(
        self,
        messages: Sequence[Message],
        branch_name: str
    ) -> Optional[str]:
        """
        Save a branch transcript as a readable text file.

        Args:
            messages: Branch messages
            branch_name: Branch display name, used in the filename

        Returns:
            Path to saved file, or None if there is nothing to export
        """
        if not messages:
            return None

        filepath = self.storage_dir / f"persona-duel-{sanitize_filename(branch_name)}.txt"

        with open(filepath, 'w', encoding='utf-8') as f:
            f.write(format_transcript(messages))

        self.logger.info(f"Exported transcript to: {filepath}")
        return str(filepath)

    def list_sessions(self) -> List[str]:
        """
        List all saved sessions.

        Returns:
            List of session filenames
        """
        json_files = sorted(self.storage_dir.glob("*.json"))
        return [f.name for f in json_files if f.name != "api_keys.json"]


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
    else:
        hours = seconds / 3600
        return f"{hours:.1f}h"


def truncate_text(text: str, max_length: int = 100) -> str:
    """
    Truncate text to maximum length with ellipsis.

    Args:
        text: Text to truncate
        max_length: Maximum length

    Returns:
        Truncated text
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


def get_environment_variable(
    var_name: str,
    default: Optional[str] = None,
    required: bool = False
) -> Optional[str]:
    """
    Get environment variable with optional default and requirement.

    Args:
        var_name: Environment variable name
        default: Default value if not found
        required: Whether variable is required

    Returns:
        Variable value or default

    Raises:
        ValueError: If required variable is not found
    """
    value = os.environ.get(var_name, default)

    if required and value is None:
        raise ValueError(f"Required environment variable not set: {var_name}")

    return value


class DuelFormatter:
    """
    Formats duel output for various display purposes.
    """

    @staticmethod
    def format_message_markdown(message: Message) -> str:
        if message.is_loading:
            return f"**{message.author}** is thinking..."
        if message.author == SYSTEM_AUTHOR:
            return f"> **Director's Note:** {message.text}"
        if message.is_internal_monologue:
            return f"*{message.author} (thinking): {message.text}*"

        annotations = []
        if message.sentiment is not None:
            annotations.append(f"sentiment {message.sentiment:+.2f}")
        if message.influence_score is not None:
            annotations.append(f"influence {message.influence_score:.1f}")
        if message.vote == 1:
            annotations.append("👍")
        elif message.vote == -1:
            annotations.append("👎")
        suffix = f"  \n<sub>{' · '.join(annotations)}</sub>" if annotations else ""
        return f"**{message.author}:** {message.text}{suffix}"

    @staticmethod
    def format_for_markdown(messages: Sequence[Message], show_monologue: bool = True) -> str:
        """
        Format a branch as Markdown for the web front end.

        Args:
            messages: Branch messages
            show_monologue: Whether inner monologues are included

        Returns:
            Markdown string
        """
        return "\n\n".join(
            DuelFormatter.format_message_markdown(m)
            for m in messages
            if show_monologue or not m.is_internal_monologue
        )

    @staticmethod
    def format_metrics(metrics: ConversationMetrics) -> str:
        """
        Format metrics as Markdown.

        Args:
            metrics: Computed branch metrics

        Returns:
            Markdown string
        """
        lines = [
            f"**Messages:** {metrics.total_messages} "
            f"({metrics.reply_count} replies, {metrics.monologue_count} monologues, "
            f"{metrics.system_count} system)",
            f"**Votes:** 👍 {metrics.upvotes} / 👎 {metrics.downvotes}",
            f"**Duration:** {format_duration(metrics.conversation_duration_seconds)}",
        ]
        for author, count in metrics.replies_by_author.items():
            parts = [f"{count} replies"]
            if author in metrics.average_sentiment:
                parts.append(f"avg sentiment {metrics.average_sentiment[author]:+.2f}")
            if author in metrics.total_influence:
                parts.append(f"influence {metrics.total_influence[author]:.1f}")
            lines.append(f"- **{author}:** {', '.join(parts)}")
        return "\n".join(lines)

    @staticmethod
    def format_for_console(
        messages: Sequence[Message],
        topic: str,
        metrics: ConversationMetrics
    ) -> str:
        """
        Format a branch for console display.

        Args:
            messages: Branch messages
            topic: Conversation topic
            metrics: Computed branch metrics

        Returns:
            Formatted string for console
        """
        lines = []

        # Header
        lines.append("=" * 80)
        lines.append(f"DUEL: {topic}")
        lines.append("=" * 80)
        lines.append("")

        # Transcript
        for message in messages:
            if message.is_loading or message.is_internal_monologue:
                continue
            label = "Director" if message.author == SYSTEM_AUTHOR else message.author
            lines.append(f"{label}:")
            lines.append(f"  {message.text}")
            lines.append("")

        # Footer with metrics
        lines.append("=" * 80)
        lines.append(f"Replies: {metrics.reply_count}")
        lines.append(
            f"Duration: {format_duration(metrics.conversation_duration_seconds)}"
        )
        for author, score in metrics.average_sentiment.items():
            lines.append(f"Average sentiment ({author}): {score:+.2f}")
        lines.append("=" * 80)

        return "\n".join(lines)

    @staticmethod
    def format_for_html(messages: Sequence[Message], topic: str) -> str:
        """
        Format a branch as HTML.

        Args:
            messages: Branch messages
            topic: Conversation topic

        Returns:
            HTML string
        """
        html_parts = [
            "<!DOCTYPE html>",
            "<html>",
            "<head>",
            "<meta charset='utf-8'>",
            f"<title>Persona Duel: {html.escape(topic)}</title>",
            "<style>",
            "body { font-family: Arial, sans-serif; margin: 20px; }",
            ".header { background: #333; color: white; padding: 20px; }",
            ".turn { margin: 20px 0; padding: 15px; border-left: 3px solid #007bff; }",
            ".monologue { font-style: italic; color: #666; border-color: #aaa; }",
            ".system { background: #fff3cd; border-color: #ffc107; }",
            "</style>",
            "</head>",
            "<body>",
            "<div class='header'>",
            f"<h1>Persona Duel: {html.escape(topic)}</h1>",
            "</div>"
        ]

        for message in messages:
            if message.is_loading:
                continue
            if message.author == SYSTEM_AUTHOR:
                css = "turn system"
            elif message.is_internal_monologue:
                css = "turn monologue"
            else:
                css = "turn"
            html_parts.append(f"<div class='{css}'>")
            html_parts.append(f"<strong>{html.escape(message.author)}:</strong>")
            html_parts.append(f"<p>{html.escape(message.text)}</p>")
            html_parts.append("</div>")

        html_parts.append("</body>")
        html_parts.append("</html>")

        return "\n".join(html_parts)
