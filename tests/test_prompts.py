"""Tests for prompt construction."""

from __future__ import annotations

import pytest

from linguachat.ai import prompts
from linguachat.chat.message_model import ChatMessage, Sender

from tests.helpers import FakeCompletionEndpoint, request_kind


def test_conversation_prompt_mentions_topics_words_and_summary() -> None:
    text = prompts.conversation_prompt(
        language="Italian",
        conversation_topic="Planning a trip",
        study_topics=["subjunctive", "articles"],
        study_words=["treno"],
        summary="Abbiamo parlato di Roma.",
    )

    assert "native speaker of the Italian language" in text
    assert "Planning a trip" in text
    assert "subjunctive, articles" in text
    assert "treno" in text
    assert text.endswith("Abbiamo parlato di Roma.")


def test_conversation_prompt_omits_optional_sections() -> None:
    text = prompts.conversation_prompt(language="Italian", conversation_topic="Weather")

    assert "specific Italian language topics" not in text
    assert "specific Italian language words" not in text
    assert "summary" not in text


def test_correct_mistakes_prompt_defines_reply_format() -> None:
    text = prompts.correct_mistakes_prompt(
        language="German",
        previous_messages=[
            ChatMessage(sender=Sender.ASSISTANT, content="Wie geht's?"),
            ChatMessage(sender=Sender.USER, content="Gut, danke."),
        ],
    )

    for token in (
        prompts.MISTAKE_TOKEN,
        prompts.SEVERITY_TOKEN,
        prompts.ENGLISH_EXPLANATION_TOKEN,
        prompts.LANGUAGE_EXPLANATION_TOKEN,
        prompts.NO_MISTAKES_TOKEN,
    ):
        assert token in text
    assert "scale from 1 to 5" in text
    assert "<ASSISTANT>\nWie geht's?" in text
    assert "<USER>\nGut, danke." in text
    assert text.index("<ASSISTANT>\nWie") < text.index("<USER>\nGut") < text.rindex("<END>")


def test_message_listing_rejects_system_messages() -> None:
    with pytest.raises(ValueError):
        prompts.correct_mistakes_prompt(
            language="German",
            previous_messages=[ChatMessage(sender=Sender.SYSTEM, content="prompt")],
        )


def test_summary_prompt_with_and_without_previous_summary() -> None:
    recent = [ChatMessage(sender=Sender.USER, content="Ciao")]

    first = prompts.summary_prompt(language="Italian", recent_messages=recent)
    later = prompts.summary_prompt(language="Italian", recent_messages=recent, previous_summary="Old summary")

    assert "<summary>" not in first
    assert first.count("We have exchanged") == 1
    assert "<summary>\nOld summary\n</summary>" in later
    assert "Since then, we have exchanged" in later
    assert "under 250 words" in later


def test_topics_prompt_uses_singular_for_one() -> None:
    assert "1 conversation topic " in prompts.conversation_topics_prompt(language="French", count=1)
    assert "5 conversation topics" in prompts.conversation_topics_prompt(language="French", count=5)


@pytest.mark.asyncio
async def test_suggest_conversation_topics_splits_lines() -> None:
    endpoint = FakeCompletionEndpoint(lambda request: "Cooking dinner\n\n  Visiting a museum  \nSports\n")

    topics = await prompts.suggest_conversation_topics(endpoint, "gpt-4o", "French", 3)

    assert topics == ["Cooking dinner", "Visiting a museum", "Sports"]
    assert endpoint.requests[0].temperature == 1.0
    assert request_kind(endpoint.requests[0]) == "topics"


@pytest.mark.asyncio
async def test_suggest_conversation_topics_requires_positive_count() -> None:
    with pytest.raises(ValueError):
        await prompts.suggest_conversation_topics(FakeCompletionEndpoint(), "gpt-4o", "French", 0)
