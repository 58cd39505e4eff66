from datetime import datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from convosync.models.base import RecordModel, coerce_utc_datetime, ensure_non_empty_text
from convosync.models.enums import EditType, FileRole, MessageRole


class SourceRef(BaseModel):
    """Points back at a conversation inside its tool's native storage."""

    source: str
    original_id: str
    db_path: str
    workspace_path: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


class Conversation(RecordModel):
    SCHEMA_VERSION: ClassVar[str] = "conversation.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    id: str
    source: str
    title: str = ""
    workspace_path: str | None = None
    project_name: str | None = None
    model: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    message_count: int = Field(default=0, ge=0)
    total_input_tokens: int = Field(default=0, ge=0)
    total_output_tokens: int = Field(default=0, ge=0)
    total_lines_added: int = Field(default=0, ge=0)
    total_lines_removed: int = Field(default=0, ge=0)
    source_ref: SourceRef

    @field_validator("id", "source")
    @classmethod
    def _ensure_non_empty(cls, value: str, info: ValidationInfo) -> str:
        return ensure_non_empty_text(value, info.field_name or "value")

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _validate_timestamps(cls, value: Any, info: ValidationInfo) -> datetime | None:
        return coerce_utc_datetime(value, info.field_name or "timestamp")


class Message(RecordModel):
    SCHEMA_VERSION: ClassVar[str] = "message.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    timestamp: datetime | None = None
    message_index: int = Field(ge=0)
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_lines_added: int = Field(default=0, ge=0)
    total_lines_removed: int = Field(default=0, ge=0)

    @field_validator("id", "conversation_id")
    @classmethod
    def _ensure_ids(cls, value: str, info: ValidationInfo) -> str:
        return ensure_non_empty_text(value, info.field_name or "id")

    @field_validator("timestamp", mode="before")
    @classmethod
    def _validate_timestamp(cls, value: Any) -> datetime | None:
        return coerce_utc_datetime(value, "timestamp")


class ToolCall(RecordModel):
    SCHEMA_VERSION: ClassVar[str] = "tool_call.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    id: str
    message_id: str
    conversation_id: str
    type: str
    input: str = ""
    output: str | None = None
    file_path: str | None = None


class ConversationFile(RecordModel):
    SCHEMA_VERSION: ClassVar[str] = "conversation_file.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    id: str
    conversation_id: str
    file_path: str
    role: FileRole


class MessageFile(RecordModel):
    SCHEMA_VERSION: ClassVar[str] = "message_file.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    id: str
    message_id: str
    conversation_id: str
    file_path: str
    role: FileRole


class FileEdit(RecordModel):
    SCHEMA_VERSION: ClassVar[str] = "file_edit.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    id: str
    message_id: str
    conversation_id: str
    file_path: str
    edit_type: EditType
    lines_added: int = Field(default=0, ge=0)
    lines_removed: int = Field(default=0, ge=0)
    new_content: str | None = None


class NormalizedConversation(BaseModel):
    """A conversation plus every child row derived from the same snapshot."""

    conversation: Conversation
    messages: list[Message] = Field(default_factory=list)
    tool_calls: list[ToolCall] = Field(default_factory=list)
    files: list[ConversationFile] = Field(default_factory=list)
    message_files: list[MessageFile] = Field(default_factory=list)
    file_edits: list[FileEdit] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def _validate_back_references(self) -> "NormalizedConversation":
        conversation_id = self.conversation.id
        for rows in (self.messages, self.tool_calls, self.files, self.message_files, self.file_edits):
            for row in rows:
                if row.conversation_id != conversation_id:
                    raise ValueError(f"child row {row.id} does not belong to conversation {conversation_id}")
        return self


__all__ = [
    "Conversation",
    "ConversationFile",
    "FileEdit",
    "Message",
    "MessageFile",
    "NormalizedConversation",
    "SourceRef",
    "ToolCall",
]
