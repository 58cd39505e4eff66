"""Title enrichment for conversations their source left untitled."""

import re
from collections.abc import Callable
from typing import Protocol

import structlog

from convosync.models.conversation import Conversation, Message
from convosync.models.enums import MessageRole
from convosync.models.source import ExtractionProgress
from convosync.services.repository import ChildRepository, ConversationRepository

MAX_TITLE_LENGTH = 80
ELLIPSIS = "…"

_WHITESPACE = re.compile(r"\s+")


class TitleGenerator(Protocol):
    async def generate(self, conversation: Conversation, messages: list[Message]) -> str | None: ...


def truncate_title(text: str, limit: int = MAX_TITLE_LENGTH) -> str:
    """Collapse whitespace and cut at a word boundary, adding an ellipsis when cut."""
    collapsed = _WHITESPACE.sub(" ", text).strip()
    if len(collapsed) <= limit:
        return collapsed
    cut = collapsed[: limit - len(ELLIPSIS)]
    boundary = cut.rfind(" ")
    if boundary > 0:
        cut = cut[:boundary]
    return cut.rstrip() + ELLIPSIS


class FirstPromptTitleGenerator:
    """Titles a conversation after its first user message."""

    def __init__(self, max_length: int = MAX_TITLE_LENGTH) -> None:
        self._max_length = max_length

    async def generate(self, conversation: Conversation, messages: list[Message]) -> str | None:
        for message in messages:
            if message.role == MessageRole.USER and message.content.strip():
                return truncate_title(message.content, self._max_length)
        return None


class TitleEnricher:
    def __init__(
        self,
        conversations: ConversationRepository,
        messages: ChildRepository[Message],
        generator: TitleGenerator,
        batch_limit: int = 100,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._conversations = conversations
        self._messages = messages
        self._generator = generator
        self._batch_limit = batch_limit
        self._logger = logger or structlog.get_logger(__name__)

    async def enrich(self, on_progress: Callable[[ExtractionProgress], None] | None = None) -> int:
        """Generate titles for up to ``batch_limit`` untitled conversations.

        Returns:
            Number of conversations that received a title.
        """
        untitled = await self._conversations.find_untitled(limit=self._batch_limit)
        titled = 0
        for index, conversation in enumerate(untitled, start=1):
            messages = await self._messages.find_by_conversation(conversation.id)
            title = await self._generator.generate(conversation, messages)
            if title:
                await self._conversations.update_title(conversation.id, title)
                titled += 1
            if on_progress is not None:
                on_progress(ExtractionProgress(current=index, total=len(untitled)))

        self._logger.info("titles_enriched", candidates=len(untitled), titled=titled)
        return titled
