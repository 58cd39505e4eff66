"""SQLModel table definitions for database persistence.

Domain models (Conversation, Message, ...) stay frozen pydantic records with
strict validation; these table classes are the mutable ORM side. Field names
match the domain models so conversion goes through ``model_dump()`` and
``model_validate()``. Enum fields are stored as their string values and
timestamps are stored naive (SQLite drops tzinfo), then restored to UTC by the
domain validators on the way back out.

Child tables carry an indexed ``conversation_id`` so reconciliation can delete
every row of a conversation with one ``IN`` query. There are no foreign key
constraints: child rows are written concurrently with each other after the
parent upsert, and deletes are always issued per conversation.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON
from sqlmodel import Field, SQLModel


class ConversationRecord(SQLModel, table=True):
    __tablename__ = "conversations"

    id: str = Field(primary_key=True)
    schema_version: str
    source: str = Field(index=True)
    title: str = ""
    workspace_path: str | None = Field(default=None, index=True)
    project_name: str | None = None
    model: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    message_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_lines_added: int = 0
    total_lines_removed: int = 0
    source_ref: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)


class MessageRecord(SQLModel, table=True):
    """Message rows; ``content`` is mirrored into the ``messages_fts`` index."""

    __tablename__ = "messages"

    id: str = Field(primary_key=True)
    schema_version: str
    conversation_id: str = Field(index=True)
    role: str
    content: str
    timestamp: datetime | None = None
    message_index: int
    input_tokens: int = 0
    output_tokens: int = 0
    total_lines_added: int = 0
    total_lines_removed: int = 0


class ToolCallRecord(SQLModel, table=True):
    __tablename__ = "tool_calls"

    id: str = Field(primary_key=True)
    schema_version: str
    message_id: str
    conversation_id: str = Field(index=True)
    type: str
    input: str = ""
    output: str | None = None
    file_path: str | None = Field(default=None, index=True)


class ConversationFileRecord(SQLModel, table=True):
    __tablename__ = "conversation_files"

    id: str = Field(primary_key=True)
    schema_version: str
    conversation_id: str = Field(index=True)
    file_path: str = Field(index=True)
    role: str


class MessageFileRecord(SQLModel, table=True):
    __tablename__ = "message_files"

    id: str = Field(primary_key=True)
    schema_version: str
    message_id: str = Field(index=True)
    conversation_id: str = Field(index=True)
    file_path: str
    role: str


class FileEditRecord(SQLModel, table=True):
    __tablename__ = "file_edits"

    id: str = Field(primary_key=True)
    schema_version: str
    message_id: str
    conversation_id: str = Field(index=True)
    file_path: str = Field(index=True)
    edit_type: str
    lines_added: int = 0
    lines_removed: int = 0
    new_content: str | None = None


class SyncStateRecord(SQLModel, table=True):
    """One checkpoint row per (source, db_path)."""

    __tablename__ = "sync_state"

    source: str = Field(primary_key=True)
    db_path: str = Field(primary_key=True)
    workspace_path: str
    last_synced_at: datetime
    last_mtime: float
