"""
Adapter protocols for conversation sources.

An adapter knows how to find and read one assistant tool's native storage and
turn it into normalized records. The sync engine only talks to adapters
through these protocols.
"""

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from convosync.models.conversation import NormalizedConversation, SourceRef
from convosync.models.source import ConversationTimestamp, ExtractionProgress, SourceLocation

ProgressCallback = Callable[[ExtractionProgress], None]


class SourceAdapter(Protocol):
    """
    Protocol every source adapter implements.

    ``detect``, ``discover`` and ``extract`` may raise; the engine isolates
    each call so one broken source never aborts a run.
    """

    name: str

    async def detect(self) -> bool:
        """Return whether this source has data on this machine."""
        ...

    async def discover(self) -> list[SourceLocation]:
        """List every physically distinct data root for this source."""
        ...

    async def extract(
        self,
        location: SourceLocation,
        on_progress: ProgressCallback | None = None,
    ) -> list[Any]:
        """
        Read raw conversation records from one location.

        Args:
            location: A location previously returned by ``discover``.
            on_progress: Optional callback receiving per-location progress.

        Returns:
            Adapter-specific raw records, each accepted by ``normalize``.
        """
        ...

    def normalize(self, raw: Any, location: SourceLocation) -> NormalizedConversation:
        """Convert one raw record into a conversation and its child rows."""
        ...

    def get_deep_link(self, ref: SourceRef) -> str | None:
        """Return a path or URL that opens the conversation in its tool, if any."""
        ...


@runtime_checkable
class SupportsConversationTimestamps(Protocol):
    """
    Optional capability: a probe cheaper than full extraction.

    Adapters that implement it let the planner skip extraction for locations
    whose mtime moved but whose conversations did not.
    """

    async def get_conversation_timestamps(self, location: SourceLocation) -> list[ConversationTimestamp] | None: ...
