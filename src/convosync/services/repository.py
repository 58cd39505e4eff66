"""Entity repositories persisting synced conversations to SQLite via SQLModel.

Uses SQLAlchemy's native async support with aiosqlite. Every bulk call is
chunked to ``batch_size`` ids so ``IN`` clauses stay under SQLite's variable
limit, and every call goes through ``StorageRecovery`` so lock contention and
connection loss are retried instead of failing the sync.
"""

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Generic, NamedTuple, TypeVar

import structlog
from sqlalchemy import delete, func, select, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlmodel import SQLModel, col

from convosync.models.base import RecordModel
from convosync.models.conversation import (
    Conversation,
    ConversationFile,
    FileEdit,
    Message,
    MessageFile,
    SourceRef,
    ToolCall,
)
from convosync.models.tables import (
    ConversationFileRecord,
    ConversationRecord,
    FileEditRecord,
    MessageFileRecord,
    MessageRecord,
    ToolCallRecord,
)
from convosync.services.recovery import StorageRecovery

ModelT = TypeVar("ModelT", bound=RecordModel)

DEFAULT_BATCH_SIZE = 500

FTS_TABLE = "messages_fts"

_CREATE_FTS_TABLE = f"""
CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE}
USING fts5(content, content='messages', content_rowid='rowid')
"""


class ConversationMetadata(NamedTuple):
    message_count: int
    updated_at: datetime | None


def batched(items: Sequence[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def _unique(ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(ids))


class ConversationRepository:
    """Bulk CRUD for conversation rows.

    Conversations are overwritten wholesale on upsert; there is no
    field-by-field merge path.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        recovery: StorageRecovery | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._engine = engine
        self._recovery = recovery or StorageRecovery(engine)
        self._batch_size = batch_size
        self._logger = logger or structlog.get_logger(__name__)

    async def get_existing_ids(self, candidate_ids: Iterable[str]) -> set[str]:
        ids = _unique(candidate_ids)
        if not ids:
            return set()

        async def operation() -> set[str]:
            found: set[str] = set()
            async with AsyncSession(self._engine) as session:
                for batch in batched(ids, self._batch_size):
                    statement = select(ConversationRecord.id).where(col(ConversationRecord.id).in_(batch))
                    result = await session.execute(statement)
                    found.update(result.scalars().all())
            return found

        return await self._recovery.run(operation, "conversations.get_existing_ids")

    async def get_existing_conversation_metadata(
        self, candidate_ids: Iterable[str]
    ) -> dict[str, ConversationMetadata]:
        """Fetch message counts and update times for ids already stored.

        Args:
            candidate_ids: Conversation ids produced by this run's extraction.

        Returns:
            Mapping of stored id to its metadata. Ids not in storage are absent.
        """
        ids = _unique(candidate_ids)
        if not ids:
            return {}

        async def operation() -> dict[str, ConversationMetadata]:
            metadata: dict[str, ConversationMetadata] = {}
            async with AsyncSession(self._engine) as session:
                for batch in batched(ids, self._batch_size):
                    statement = select(
                        ConversationRecord.id,
                        ConversationRecord.message_count,
                        ConversationRecord.updated_at,
                    ).where(col(ConversationRecord.id).in_(batch))
                    result = await session.execute(statement)
                    for conversation_id, message_count, updated_at in result.all():
                        metadata[conversation_id] = ConversationMetadata(
                            message_count=message_count or 0,
                            updated_at=_restore_utc(updated_at),
                        )
            return metadata

        return await self._recovery.run(operation, "conversations.get_existing_metadata")

    async def get_timestamps_by_source(
        self, source: str, db_path: str | None = None
    ) -> dict[str, datetime | None]:
        """Map native conversation ids to their stored ``updated_at``.

        Args:
            source: Adapter name.
            db_path: When given, only conversations whose source ref points at
                this location are returned.
        """

        async def operation() -> dict[str, datetime | None]:
            async with AsyncSession(self._engine) as session:
                statement = select(ConversationRecord.source_ref, ConversationRecord.updated_at).where(
                    ConversationRecord.source == source
                )
                result = await session.execute(statement)
                rows = result.all()

            timestamps: dict[str, datetime | None] = {}
            for source_ref, updated_at in rows:
                original_id = (source_ref or {}).get("original_id")
                if not original_id:
                    continue
                if db_path is not None and source_ref.get("db_path") != db_path:
                    continue
                timestamps[original_id] = _restore_utc(updated_at)
            return timestamps

        return await self._recovery.run(operation, "conversations.get_timestamps_by_source")

    async def bulk_upsert(self, conversations: Sequence[Conversation]) -> None:
        """Replace stored rows for these conversations with the given snapshots."""
        if not conversations:
            return

        latest = {conversation.id: conversation for conversation in conversations}
        ids = list(latest)

        for batch in batched(ids, self._batch_size):
            records = [self._conversation_to_record(latest[conversation_id]) for conversation_id in batch]

            async def operation(batch: list[str] = batch, records: list[ConversationRecord] = records) -> None:
                async with AsyncSession(self._engine) as session:
                    await session.execute(delete(ConversationRecord).where(col(ConversationRecord.id).in_(batch)))
                    session.add_all(records)
                    await session.commit()

            await self._recovery.run(operation, "conversations.bulk_upsert")

        self._logger.debug("conversations_upserted", count=len(ids))

    async def delete_by_source(self, source: str, workspace_path: str | None = None) -> list[str]:
        """Delete conversations for a source, optionally scoped to one workspace.

        Returns:
            Ids of the deleted conversations, so callers can clear their children.
        """

        async def operation() -> list[str]:
            async with AsyncSession(self._engine) as session:
                condition = ConversationRecord.source == source
                if workspace_path is not None:
                    condition = condition & (ConversationRecord.workspace_path == workspace_path)
                result = await session.execute(select(ConversationRecord.id).where(condition))
                deleted_ids = list(result.scalars().all())
                await session.execute(delete(ConversationRecord).where(condition))
                await session.commit()
                return deleted_ids

        deleted = await self._recovery.run(operation, "conversations.delete_by_source")
        self._logger.debug(
            "conversations_deleted_by_source",
            source=source,
            workspace_path=workspace_path,
            count=len(deleted),
        )
        return deleted

    async def find_by_id(self, conversation_id: str) -> Conversation | None:
        async def operation() -> Conversation | None:
            async with AsyncSession(self._engine) as session:
                record = await session.get(ConversationRecord, conversation_id)
                return None if record is None else self._record_to_conversation(record)

        return await self._recovery.run(operation, "conversations.find_by_id")

    async def find_untitled(self, limit: int = 100) -> list[Conversation]:
        async def operation() -> list[Conversation]:
            async with AsyncSession(self._engine) as session:
                statement = (
                    select(ConversationRecord)
                    .where((ConversationRecord.title == "") | (ConversationRecord.title == "Untitled"))
                    .order_by(col(ConversationRecord.updated_at).desc())
                    .limit(limit)
                )
                result = await session.execute(statement)
                return [self._record_to_conversation(r) for r in result.scalars().all()]

        return await self._recovery.run(operation, "conversations.find_untitled")

    async def update_title(self, conversation_id: str, title: str) -> None:
        async def operation() -> None:
            async with AsyncSession(self._engine) as session:
                record = await session.get(ConversationRecord, conversation_id)
                if record is None:
                    return
                record.title = title
                await session.commit()

        await self._recovery.run(operation, "conversations.update_title")

    async def count(self) -> int:
        async def operation() -> int:
            async with AsyncSession(self._engine) as session:
                result = await session.execute(select(func.count()).select_from(ConversationRecord))
                return int(result.scalar_one())

        return await self._recovery.run(operation, "conversations.count")

    def _conversation_to_record(self, conversation: Conversation) -> ConversationRecord:
        return ConversationRecord.model_validate(conversation.model_dump())

    def _record_to_conversation(self, record: ConversationRecord) -> Conversation:
        data = record.model_dump()
        data["source_ref"] = SourceRef.model_validate(data["source_ref"])
        return Conversation.model_validate(data)


class ChildRepository(Generic[ModelT]):
    """Bulk CRUD for one child-entity table keyed by ``conversation_id``.

    The same class backs messages, tool calls, conversation files, message
    files and file edits; only the record and domain types differ.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        record_type: type[SQLModel],
        model_type: type[ModelT],
        recovery: StorageRecovery | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        order_by: str = "id",
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._engine = engine
        self._record_type = record_type
        self._model_type = model_type
        self._recovery = recovery or StorageRecovery(engine)
        self._batch_size = batch_size
        self._order_by = order_by
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def name(self) -> str:
        return str(self._record_type.__tablename__)

    @property
    def _id_column(self):
        return col(getattr(self._record_type, "id"))

    @property
    def _conversation_column(self):
        return col(getattr(self._record_type, "conversation_id"))

    async def get_existing_ids(self, candidate_ids: Iterable[str]) -> set[str]:
        ids = _unique(candidate_ids)
        if not ids:
            return set()

        async def operation() -> set[str]:
            found: set[str] = set()
            async with AsyncSession(self._engine) as session:
                for batch in batched(ids, self._batch_size):
                    result = await session.execute(select(self._id_column).where(self._id_column.in_(batch)))
                    found.update(result.scalars().all())
            return found

        return await self._recovery.run(operation, f"{self.name}.get_existing_ids")

    async def bulk_insert_new(self, rows: Sequence[ModelT], existing_ids: set[str]) -> int:
        """Insert rows whose ids are not in ``existing_ids``.

        Duplicate ids within ``rows`` are collapsed to their first occurrence.

        Returns:
            Number of rows actually inserted.
        """
        pending: dict[str, ModelT] = {}
        for row in rows:
            if row.id in existing_ids or row.id in pending:
                continue
            pending[row.id] = row
        if not pending:
            return 0

        ids = list(pending)
        for batch in batched(ids, self._batch_size):
            records = [self._record_type.model_validate(pending[row_id].model_dump()) for row_id in batch]

            async def operation(records: list[SQLModel] = records) -> None:
                async with AsyncSession(self._engine) as session:
                    session.add_all(records)
                    await session.commit()

            await self._recovery.run(operation, f"{self.name}.bulk_insert")

        self._logger.debug(
            "rows_inserted",
            table=self.name,
            inserted=len(ids),
            skipped_existing=len(rows) - len(ids),
        )
        return len(ids)

    async def delete_by_conversation_ids(self, conversation_ids: Iterable[str]) -> None:
        ids = _unique(conversation_ids)
        if not ids:
            return

        for batch in batched(ids, self._batch_size):

            async def operation(batch: list[str] = batch) -> None:
                async with AsyncSession(self._engine) as session:
                    await session.execute(delete(self._record_type).where(self._conversation_column.in_(batch)))
                    await session.commit()

            await self._recovery.run(operation, f"{self.name}.delete_by_conversation_ids")

        self._logger.debug("rows_deleted_by_conversation", table=self.name, conversations=len(ids))

    async def get_ids_by_conversation_ids(self, conversation_ids: Iterable[str]) -> list[str]:
        ids = _unique(conversation_ids)
        if not ids:
            return []

        async def operation() -> list[str]:
            found: list[str] = []
            async with AsyncSession(self._engine) as session:
                for batch in batched(ids, self._batch_size):
                    statement = select(self._id_column).where(self._conversation_column.in_(batch))
                    result = await session.execute(statement)
                    found.extend(result.scalars().all())
            return found

        return await self._recovery.run(operation, f"{self.name}.get_ids_by_conversation_ids")

    async def find_by_conversation(self, conversation_id: str) -> list[ModelT]:
        async def operation() -> list[ModelT]:
            async with AsyncSession(self._engine) as session:
                statement = (
                    select(self._record_type)
                    .where(self._conversation_column == conversation_id)
                    .order_by(col(getattr(self._record_type, self._order_by)))
                )
                result = await session.execute(statement)
                return [self._record_to_model(r) for r in result.scalars().all()]

        return await self._recovery.run(operation, f"{self.name}.find_by_conversation")

    async def get_by_ids(self, ids: Iterable[str]) -> list[ModelT]:
        unique_ids = _unique(ids)
        if not unique_ids:
            return []

        async def operation() -> list[ModelT]:
            rows: list[ModelT] = []
            async with AsyncSession(self._engine) as session:
                for batch in batched(unique_ids, self._batch_size):
                    result = await session.execute(select(self._record_type).where(self._id_column.in_(batch)))
                    rows.extend(self._record_to_model(r) for r in result.scalars().all())
            return rows

        return await self._recovery.run(operation, f"{self.name}.get_by_ids")

    async def list_ids(self) -> list[str]:
        async def operation() -> list[str]:
            async with AsyncSession(self._engine) as session:
                result = await session.execute(select(self._id_column).order_by(self._id_column))
                return list(result.scalars().all())

        return await self._recovery.run(operation, f"{self.name}.list_ids")

    async def count(self) -> int:
        async def operation() -> int:
            async with AsyncSession(self._engine) as session:
                result = await session.execute(select(func.count()).select_from(self._record_type))
                return int(result.scalar_one())

        return await self._recovery.run(operation, f"{self.name}.count")

    def _record_to_model(self, record: SQLModel) -> ModelT:
        return self._model_type.model_validate(record.model_dump())


def _restore_utc(value: datetime | None) -> datetime | None:
    # SQLite stores naive datetimes
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


async def initialize_schema(engine: AsyncEngine) -> None:
    """Create entity tables and the full-text index if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        await conn.execute(text(_CREATE_FTS_TABLE))


def create_async_engine_from_path(db_path: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine for the given database path.

    Args:
        db_path: Path to SQLite database file, or ":memory:" for in-memory.

    Returns:
        AsyncEngine instance configured for aiosqlite.
    """
    if db_path == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        url = f"sqlite+aiosqlite:///{db_path}"
    # Concurrent table writers wait on SQLite's busy handler before surfacing "database is locked"
    return create_async_engine(url, connect_args={"timeout": 30})


@dataclass(frozen=True)
class ChildRepositories:
    """The five child-entity repositories, named after ``NormalizedConversation`` fields."""

    messages: ChildRepository[Message]
    tool_calls: ChildRepository[ToolCall]
    files: ChildRepository[ConversationFile]
    message_files: ChildRepository[MessageFile]
    file_edits: ChildRepository[FileEdit]

    def items(self) -> list[tuple[str, ChildRepository]]:
        return [
            ("messages", self.messages),
            ("tool_calls", self.tool_calls),
            ("files", self.files),
            ("message_files", self.message_files),
            ("file_edits", self.file_edits),
        ]


def create_child_repositories(
    engine: AsyncEngine,
    recovery: StorageRecovery | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    logger: structlog.stdlib.BoundLogger | None = None,
) -> ChildRepositories:
    def build(record_type: type[SQLModel], model_type: type[ModelT], order_by: str = "id") -> ChildRepository[ModelT]:
        return ChildRepository(
            engine=engine,
            record_type=record_type,
            model_type=model_type,
            recovery=recovery,
            batch_size=batch_size,
            order_by=order_by,
            logger=logger,
        )

    return ChildRepositories(
        messages=build(MessageRecord, Message, order_by="message_index"),
        tool_calls=build(ToolCallRecord, ToolCall),
        files=build(ConversationFileRecord, ConversationFile),
        message_files=build(MessageFileRecord, MessageFile),
        file_edits=build(FileEditRecord, FileEdit),
    )
