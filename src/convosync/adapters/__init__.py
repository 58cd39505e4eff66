from convosync.adapters.base import ProgressCallback, SourceAdapter, SupportsConversationTimestamps
from convosync.adapters.claude_code import ClaudeCodeAdapter, ClaudeSession
from convosync.adapters.registry import AdapterRegistry

__all__ = [
    "AdapterRegistry",
    "ClaudeCodeAdapter",
    "ClaudeSession",
    "ProgressCallback",
    "SourceAdapter",
    "SupportsConversationTimestamps",
]
