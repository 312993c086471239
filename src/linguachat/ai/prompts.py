"""Prompt templates for conversation practice.

The mistake-correction prompt defines a sentinel-delimited reply format that
:mod:`linguachat.ai.orchestration.mistakes` parses. Keep the tokens here and
the parser in sync.
"""

from __future__ import annotations

import logging
from typing import Sequence

from ..chat.message_model import ChatMessage, Sender
from .ai_types import ChatRequest, CompletionEndpoint, system_message

LOGGER = logging.getLogger(__name__)

MISTAKE_TOKEN = "$MISTAKE$"
SEVERITY_TOKEN = "$SEVERITY$"
ENGLISH_EXPLANATION_TOKEN = "$EXPL_ENGLISH$"
LANGUAGE_EXPLANATION_TOKEN = "$EXPL_LANGUAGE$"
NO_MISTAKES_TOKEN = "$NO_MISTAKES$"

# Severity scale the model is asked to use. Parsing accepts 1-10
# (mistakes.MAX_SEVERITY), so replies that stray above 5 still count.
PROMPTED_SEVERITY_MAX = 5

SUMMARY_WORD_LIMIT = 250
TOPIC_TEMPERATURE = 1.0


def _intro(language: str) -> str:
    return f"I am learning the {language} language and I am trying to improve my conversation skills."


def _list_messages(messages: Sequence[ChatMessage]) -> str:
    parts = [
        "<USER> marks a message I sent, <ASSISTANT> marks a message you sent, "
        "and <END> marks the current end of our conversation:"
    ]
    for message in messages:
        if message.sender is Sender.USER:
            marker = "<USER>"
        elif message.sender is Sender.ASSISTANT:
            marker = "<ASSISTANT>"
        else:
            raise ValueError(f"Only user and assistant messages can be listed, got {message.sender.value}")
        parts.append(f"{marker}\n{message.content}")
    parts.append("<END>")
    return "\n\n".join(parts)


def conversation_prompt(
    *,
    language: str,
    conversation_topic: str,
    study_topics: Sequence[str] = (),
    study_words: Sequence[str] = (),
    summary: str | None = None,
) -> str:
    """System prompt that opens (or, after summarization, re-opens) a conversation."""

    parts = [
        f"{_intro(language)} Take on the persona of a native speaker of the {language} language and hold a "
        f"conversation with me. The initial topic of this conversation will be: {conversation_topic}. However, "
        "as we continue speaking, it is okay to deviate from this initial topic."
    ]
    if study_topics:
        parts.append(
            f"I am currently focusing on learning these specific {language} language topics: "
            f"{', '.join(study_topics)}. Incorporate these into our conversation when opportunities arise."
        )
    if study_words:
        parts.append(
            f"I am currently focusing on learning these specific {language} language words: "
            f"{', '.join(study_words)}. Incorporate these into our conversation when opportunities arise. "
            "Different forms of these words (other conjugations of a verb, the adjective form of a noun) are fine."
        )
    parts.append("Keep your messages relatively brief. A few sentences is enough.")
    if summary is not None:
        parts.append(
            "The following is a summary of the previous messages in our conversation which have been "
            "removed for brevity:"
        )
        parts.append(summary)
    return "\n\n".join(parts)


def correct_mistakes_prompt(*, language: str, previous_messages: Sequence[ChatMessage] = ()) -> str:
    """System prompt asking the model to review the next user message."""

    parts: list[str] = []
    if previous_messages:
        parts.append(
            f"{_intro(language)} I am currently holding a conversation with you as practice. Following are "
            f"the last few messages from our conversation. {_list_messages(previous_messages)}"
        )
        parts.append(
            "In the next message, correct any grammar, spelling, or conceptual errors. You do not need to "
            "correct mistakes in any of the previous messages, they are only included for context."
        )
    else:
        parts.append(
            f"{_intro(language)} I am currently holding a conversation with you as practice. In the next "
            "message, correct any grammar, spelling, or conceptual errors."
        )
    parts.append(
        f"For each mistake you find, write {MISTAKE_TOKEN} on a new line, followed by a brief 3-8 word "
        "description in English of the mistake I made. The description should be general enough to make sense "
        f"without the message. On the next line, write {SEVERITY_TOKEN} followed by a number rating how bad "
        f"the mistake is on a scale from 1 to {PROMPTED_SEVERITY_MAX}, where 1 is an innocuous, barely "
        f"noticeable mistake and {PROMPTED_SEVERITY_MAX} is a severe, very noticeable one. On the next line, "
        f"write {ENGLISH_EXPLANATION_TOKEN} and explain in English what I did wrong; this explanation can refer "
        f"to the details of the message. Finally, on the next line, write {LANGUAGE_EXPLANATION_TOKEN} and "
        f"explain the mistake again, this time in {language}."
    )
    parts.append(f"If you find no mistakes, reply with the message {NO_MISTAKES_TOKEN}.")
    return "\n\n".join(parts)


def summary_prompt(
    *,
    language: str,
    recent_messages: Sequence[ChatMessage],
    previous_summary: str | None = None,
) -> str:
    """System prompt asking for a rolling summary of the older half of the history."""

    parts = [f"{_intro(language)} We are currently having a conversation which has grown fairly long."]
    if previous_summary is not None:
        parts.append("You previously summarized our conversation as follows (delimited with XML tags):")
        parts.append(f"<summary>\n{previous_summary}\n</summary>")
    lead = "We have" if previous_summary is None else "Since then, we have"
    parts.append(f"{lead} exchanged the following messages. {_list_messages(recent_messages)}")
    basis = "the previous summary and these messages" if previous_summary is not None else "these messages"
    parts.append(
        f"Using {basis}, write a brief summary of our conversation up to this point in time. The summary "
        f"should be in the {language} language. Shorter is better; keep the summary under "
        f"{SUMMARY_WORD_LIMIT} words. Write the summary in plain text; do not surround it with any delimiters."
    )
    return "\n\n".join(parts)


def conversation_topics_prompt(*, language: str, count: int) -> str:
    noun = "topic" if count == 1 else "topics"
    return (
        f"{_intro(language)} Provide me with a non-numbered, non-bulleted list of {count} conversation {noun} "
        "that I could use for practice. List each topic on a new line. Each topic should be a short English "
        "phrase of around 1-8 words. Be creative with these topic ideas. Do not add any text before the list."
    )


async def suggest_conversation_topics(
    endpoint: CompletionEndpoint,
    model: str,
    language: str,
    count: int = 10,
) -> list[str]:
    """Ask the model for ``count`` conversation topics, one per line."""

    if count < 1:
        raise ValueError("count must be at least 1")
    request = ChatRequest.build(
        model,
        [system_message(conversation_topics_prompt(language=language, count=count))],
        TOPIC_TEMPERATURE,
    )
    response = await endpoint.chat(request)
    topics = [line.strip() for line in response.message.split("\n")]
    topics = [topic for topic in topics if topic]
    LOGGER.debug("Model suggested %d topic(s) for %s", len(topics), language)
    return topics


__all__ = [
    "ENGLISH_EXPLANATION_TOKEN",
    "LANGUAGE_EXPLANATION_TOKEN",
    "MISTAKE_TOKEN",
    "NO_MISTAKES_TOKEN",
    "SEVERITY_TOKEN",
    "conversation_prompt",
    "conversation_topics_prompt",
    "correct_mistakes_prompt",
    "suggest_conversation_topics",
    "summary_prompt",
]
