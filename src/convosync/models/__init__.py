from convosync.models.conversation import (
    Conversation,
    ConversationFile,
    FileEdit,
    Message,
    MessageFile,
    NormalizedConversation,
    SourceRef,
    ToolCall,
)
from convosync.models.enums import EditType, EmbeddingStatus, FileRole, MessageRole, SourceName, SyncPhase
from convosync.models.progress import (
    EmbeddingProgress,
    StepFailed,
    StepOutcome,
    StepSucceeded,
    SyncProgress,
    SyncStatus,
)
from convosync.models.source import ConversationTimestamp, ExtractionProgress, SourceLocation, SyncState

__all__ = [
    "Conversation",
    "ConversationFile",
    "ConversationTimestamp",
    "EditType",
    "EmbeddingProgress",
    "EmbeddingStatus",
    "ExtractionProgress",
    "FileEdit",
    "FileRole",
    "Message",
    "MessageFile",
    "MessageRole",
    "NormalizedConversation",
    "SourceLocation",
    "SourceName",
    "SourceRef",
    "StepFailed",
    "StepOutcome",
    "StepSucceeded",
    "SyncPhase",
    "SyncProgress",
    "SyncState",
    "SyncStatus",
    "ToolCall",
]
