"""Tests for logging, persistence and formatting helpers."""

import logging
from pathlib import Path

from conversation_state import ConversationMetrics, Message, SYSTEM_AUTHOR, USER_AUTHOR
from utils import (
    ConversationPersistence,
    DuelFormatter,
    format_duration,
    format_transcript,
    sanitize_filename,
    setup_logging,
    truncate_text,
)


MESSAGES = [
    Message(id="1", author=USER_AUTHOR, text="Hello"),
    Message(id="2", author="Philosopher", text="Hmm.", is_internal_monologue=True),
    Message(id="3", author="Philosopher", text="Greetings."),
    Message(id="4", author=SYSTEM_AUTHOR, text="[SYSTEM ERROR] Failed to get response: boom"),
    Message(id="5", author="Scientist", text="...", is_loading=True),
]


def test_format_transcript():
    assert format_transcript(MESSAGES) == (
        "User:\nHello"
        "\n\n---\n\n"
        "[Philosopher's Inner Monologue]:\nHmm."
        "\n\n---\n\n"
        "Philosopher:\nGreetings."
        "\n\n---\n\n"
        "[Director's Note]: [SYSTEM ERROR] Failed to get response: boom"
    )


def test_sanitize_filename():
    assert sanitize_filename('Branch from "Hello wor..."') == "branch_from__hello_wor____"


def test_session_persistence(tmp_path):
    persistence = ConversationPersistence(str(tmp_path))

    filename = Path(persistence.save_session({"topic": "Mind"}, "Mind")).name

    assert persistence.load_session(filename) == {"topic": "Mind"}
    assert persistence.list_sessions() == [filename]


def test_export_transcript(tmp_path):
    persistence = ConversationPersistence(str(tmp_path))

    assert persistence.export_transcript([], "Main") is None

    path = Path(persistence.export_transcript(MESSAGES, "Main"))
    assert path.name == "persona-duel-main.txt"
    assert path.read_text(encoding="utf-8") == format_transcript(MESSAGES)


def test_format_helpers():
    assert format_duration(30) == "30.0s"
    assert format_duration(90) == "1.5m"
    assert format_duration(7200) == "2.0h"
    assert truncate_text("short") == "short"
    assert truncate_text("x" * 20, max_length=10) == "xxxxxxx..."


def test_html_is_escaped():
    messages = [Message(id="1", author="Philosopher", text="<script>alert(1)</script>")]
    output = DuelFormatter.format_for_html(messages, "A & B")
    assert "<script>alert" not in output
    assert "A &amp; B" in output


def test_console_format_hides_monologues():
    output = DuelFormatter.format_for_console(MESSAGES, "Mind", ConversationMetrics(reply_count=1))
    assert "Greetings." in output
    assert "Hmm." not in output
    assert "Replies: 1" in output


def test_markdown_format():
    output = DuelFormatter.format_for_markdown(MESSAGES, show_monologue=False)
    assert "**Philosopher:** Greetings." in output
    assert "Hmm." not in output
    assert "**Scientist** is thinking..." in output


def test_setup_logging_writes_file(tmp_path):
    log_file = tmp_path / "logs" / "duel.log"
    setup_logging(log_level="DEBUG", log_file=str(log_file))

    logging.getLogger("persona_test").info("hello log")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "hello log" in log_file.read_text(encoding="utf-8")
    assert logging.getLogger("aiohttp").level == logging.WARNING
