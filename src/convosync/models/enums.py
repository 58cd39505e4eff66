from enum import StrEnum


class SourceName(StrEnum):
    CLAUDE_CODE = "claude-code"
    CURSOR = "cursor"
    CODEX = "codex"
    OPENCODE = "opencode"


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class FileRole(StrEnum):
    CONTEXT = "context"
    EDITED = "edited"
    MENTIONED = "mentioned"


class EditType(StrEnum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class SyncPhase(StrEnum):
    DETECTING = "detecting"
    DISCOVERING = "discovering"
    EXTRACTING = "extracting"
    SYNCING = "syncing"
    INDEXING = "indexing"
    ENRICHING = "enriching"
    DONE = "done"
    ERROR = "error"


class EmbeddingStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
