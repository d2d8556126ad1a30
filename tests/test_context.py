"""
Tests for prompt context assembly.
"""

from datetime import date, timedelta

from picoclaw.agent.context import ContextBuilder
from picoclaw.llm.base import LLMMessage


def test_build_messages_layout(tmp_path):
    builder = ContextBuilder(tmp_path)
    history = [
        LLMMessage(role="user", content="earlier question"),
        LLMMessage(role="assistant", content="earlier answer"),
    ]

    messages = builder.build_messages(
        history,
        "user prefers short answers",
        "new question",
        channel="telegram",
        chat_id="42",
    )

    assert [m.role for m in messages] == ["system", "user", "assistant", "user"]
    system = messages[0].content
    assert "PicoClaw" in system
    assert "Channel: telegram\nChat ID: 42" in system
    assert "## Summary of Previous Conversation\n\nuser prefers short answers" in system
    assert messages[-1].content == "new question"


def test_bootstrap_and_memory_files_are_included(tmp_path):
    (tmp_path / "SOUL.md").write_text("Be kind.\n")
    (tmp_path / "memory").mkdir()
    (tmp_path / "memory" / "MEMORY.md").write_text("User lives in Lisbon.")

    system = ContextBuilder(tmp_path).build_system_prompt()

    assert "## SOUL.md\n\nBe kind." in system
    assert "# Memory\n\nUser lives in Lisbon." in system


def test_recent_daily_notes_are_included(tmp_path):
    """Notes from the last three days appear newest first; older ones do not."""
    notes = tmp_path / "memory"
    notes.mkdir()
    today = date.today()
    for offset, text in [(0, "today note"), (2, "two days ago"), (3, "too old")]:
        (notes / f"{(today - timedelta(days=offset)).isoformat()}.md").write_text(text)

    system = ContextBuilder(tmp_path).build_system_prompt()

    assert "# Memory\n\n## Recent Daily Notes\n\ntoday note\n\n---\n\ntwo days ago" in system
    assert "too old" not in system


def test_load_recent_notes_with_explicit_day(tmp_path):
    (tmp_path / "memory").mkdir()
    (tmp_path / "memory" / "2026-01-01.md").write_text("new year\n")
    builder = ContextBuilder(tmp_path)

    assert builder.load_recent_notes(today=date(2026, 1, 2)) == "new year"
    assert builder.load_recent_notes(days=1, today=date(2026, 1, 2)) == ""


def test_long_term_memory_comes_before_daily_notes(tmp_path):
    (tmp_path / "memory").mkdir()
    (tmp_path / "memory" / "MEMORY.md").write_text("User lives in Lisbon.")
    (tmp_path / "memory" / f"{date.today().isoformat()}.md").write_text("Booked a flight.")

    system = ContextBuilder(tmp_path).build_system_prompt()

    assert "User lives in Lisbon.\n\n## Recent Daily Notes\n\nBooked a flight." in system


def test_no_summary_section_when_empty(tmp_path):
    messages = ContextBuilder(tmp_path).build_messages([], "", "hi")

    assert "Summary of Previous Conversation" not in messages[0].content
    assert len(messages) == 2


def test_media_is_listed_in_user_message(tmp_path):
    messages = ContextBuilder(tmp_path).build_messages([], "", "look", media=["photo.jpg"])

    assert messages[-1].content == "look\n\n[Attachment: photo.jpg]"
