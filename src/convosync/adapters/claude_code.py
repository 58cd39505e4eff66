"""
Claude Code session adapter.

Claude Code stores one JSONL file per session under
``~/.claude/projects/<sanitized-workspace>/<session-id>.jsonl``. Each line is
an event: user and assistant turns, ``summary`` records, file snapshots.
Subagent transcripts live beside them in ``agent-*.jsonl`` files tagged with
the parent ``sessionId``.

Extraction only reads and decodes files; all interpretation happens in
``normalize`` so it stays pure.
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from convosync.adapters.base import ProgressCallback
from convosync.models.base import coerce_utc_datetime
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
from convosync.models.enums import EditType, FileRole, MessageRole, SourceName
from convosync.models.ids import create_conversation_id, create_deterministic_id
from convosync.models.source import ConversationTimestamp, ExtractionProgress, SourceLocation

SESSION_SUFFIX = ".jsonl"
AGENT_PREFIX = "agent-"
TAIL_BYTES = 64 * 1024

_CONTEXT_TOOLS = frozenset({"Read", "Glob", "Grep"})
_EDIT_TOOLS = frozenset({"Edit", "Write"})
_WINDOWS_DRIVE = re.compile(r"^([A-Za-z])-")


@dataclass(frozen=True)
class ClaudeSession:
    """Decoded JSONL events for one session, main file plus matching sidecars."""

    session_id: str
    path: Path
    entries: list[dict[str, Any]] = field(default_factory=list)


def desanitize_project_path(name: str) -> str:
    """Turn a project directory name back into the workspace path it encodes.

    ``-Users-me-src-app`` becomes ``/Users/me/src/app``; ``C-Users-me`` becomes
    ``C:/Users/me``. Hyphens inside real directory names are not recoverable.
    """
    drive = _WINDOWS_DRIVE.match(name)
    if drive:
        return f"{drive.group(1)}:/" + name[drive.end() :].replace("-", "/")
    if name.startswith("-"):
        name = "/" + name[1:]
    return name.replace("-", "/")


def count_lines(text: str | None) -> int:
    if not text:
        return 0
    return len(text.split("\n"))


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    with path.open(encoding="utf-8", errors="replace") as handle:
        for line in handle:
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(entry, dict):
                entries.append(entry)
    return entries


def _read_jsonl_tail(path: Path, max_bytes: int = TAIL_BYTES) -> list[dict[str, Any]]:
    with path.open("rb") as handle:
        size = handle.seek(0, 2)
        start = max(0, size - max_bytes)
        handle.seek(start)
        lines = handle.read().decode("utf-8", errors="replace").splitlines()
    if start > 0 and lines:
        # first line was cut mid-record
        lines = lines[1:]
    entries: list[dict[str, Any]] = []
    for line in lines:
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries


def _session_files(directory: Path) -> list[Path]:
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix == SESSION_SUFFIX and not path.name.startswith(AGENT_PREFIX)
    )


def _agent_files(directory: Path) -> list[Path]:
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix == SESSION_SUFFIX and path.name.startswith(AGENT_PREFIX)
    )


def _is_turn(entry: dict[str, Any]) -> bool:
    return entry.get("type") in ("user", "assistant") and isinstance(entry.get("message"), dict)


def _result_output(result: dict[str, Any]) -> str | None:
    file_info = result.get("file") if isinstance(result.get("file"), dict) else {}
    output = result.get("stdout") or file_info.get("content") or result.get("newString")
    if output:
        return str(output)
    content = result.get("content")
    if isinstance(content, str):
        return content or None
    if isinstance(content, list):
        texts = [block.get("text") for block in content if isinstance(block, dict) and block.get("type") == "text"]
        joined = "\n".join(text for text in texts if text)
        return joined or None
    return None


def _result_path(result: dict[str, Any] | None) -> str | None:
    if not result:
        return None
    file_info = result.get("file") if isinstance(result.get("file"), dict) else {}
    return result.get("filePath") or file_info.get("filePath")


def _file_role(tool_name: str) -> FileRole:
    if tool_name in _CONTEXT_TOOLS:
        return FileRole.CONTEXT
    if tool_name in _EDIT_TOOLS:
        return FileRole.EDITED
    return FileRole.MENTIONED


@dataclass
class _Turn:
    uuid: str
    role: MessageRole
    content: str
    timestamp: datetime | None
    tool_calls: list[dict[str, Any]]
    is_sidechain: bool
    input_tokens: int
    output_tokens: int
    api_call_key: str | None


class ClaudeCodeAdapter:
    """Reads Claude Code project directories."""

    name = SourceName.CLAUDE_CODE.value

    def __init__(self, root: Path, logger: structlog.stdlib.BoundLogger | None = None) -> None:
        self._root = root
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def projects_dir(self) -> Path:
        return self._root / "projects"

    async def detect(self) -> bool:
        return await asyncio.to_thread(self.projects_dir.is_dir)

    async def discover(self) -> list[SourceLocation]:
        return await asyncio.to_thread(self._discover_sync)

    def _discover_sync(self) -> list[SourceLocation]:
        if not self.projects_dir.is_dir():
            return []

        locations: list[SourceLocation] = []
        for directory in sorted(self.projects_dir.iterdir()):
            if not directory.is_dir() or directory.name.startswith("."):
                continue
            sessions = _session_files(directory)
            if not sessions:
                continue
            mtimes: list[float] = []
            for session in sessions:
                try:
                    mtimes.append(session.stat().st_mtime)
                except OSError:
                    continue
            locations.append(
                SourceLocation(
                    source=self.name,
                    workspace_path=desanitize_project_path(directory.name),
                    db_path=str(directory),
                    mtime=max(mtimes, default=0.0),
                )
            )
        self._logger.debug("claude_code_discovered", locations=len(locations), root=str(self.projects_dir))
        return locations

    async def get_conversation_timestamps(self, location: SourceLocation) -> list[ConversationTimestamp] | None:
        return await asyncio.to_thread(self._timestamps_sync, Path(location.db_path))

    def _timestamps_sync(self, directory: Path) -> list[ConversationTimestamp] | None:
        """Latest turn time per session, read from the tail of each file only.

        Sessions are append-only, so the newest turns sit in the last
        ``TAIL_BYTES`` of the main file and of each sidecar.
        """
        if not directory.is_dir():
            return None
        sidecar_latest: dict[str, datetime] = {}
        for path in _agent_files(directory):
            for entry in _read_jsonl_tail(path):
                stamp = self._turn_timestamp(entry)
                session_id = entry.get("sessionId")
                if stamp is None or not session_id:
                    continue
                if session_id not in sidecar_latest or stamp > sidecar_latest[session_id]:
                    sidecar_latest[session_id] = stamp

        timestamps: list[ConversationTimestamp] = []
        for path in _session_files(directory):
            entries = _read_jsonl_tail(path)
            if not entries and path.stem not in sidecar_latest:
                continue
            stamps = [self._turn_timestamp(entry) for entry in entries]
            if path.stem in sidecar_latest:
                stamps.append(sidecar_latest[path.stem])
            latest = max((stamp for stamp in stamps if stamp is not None), default=None)
            timestamps.append(ConversationTimestamp(original_id=path.stem, last_updated_at=latest))
        return timestamps

    async def extract(
        self,
        location: SourceLocation,
        on_progress: ProgressCallback | None = None,
    ) -> list[ClaudeSession]:
        directory = Path(location.db_path)
        if not directory.is_dir():
            return []
        return await asyncio.to_thread(self._load_sessions, directory, on_progress)

    def _load_sessions(self, directory: Path, on_progress: ProgressCallback | None = None) -> list[ClaudeSession]:
        session_paths = _session_files(directory)
        sidecar_entries = [entry for path in _agent_files(directory) for entry in _read_jsonl(path)]

        sessions: list[ClaudeSession] = []
        for index, path in enumerate(session_paths, start=1):
            session_id = path.stem
            entries = _read_jsonl(path)
            entries.extend(entry for entry in sidecar_entries if entry.get("sessionId") == session_id)
            if entries:
                sessions.append(ClaudeSession(session_id=session_id, path=path, entries=entries))
            if on_progress is not None:
                on_progress(ExtractionProgress(current=index, total=len(session_paths)))
        return sessions

    def normalize(self, raw: ClaudeSession, location: SourceLocation) -> NormalizedConversation:
        conversation_id = create_conversation_id(self.name, raw.session_id)
        tool_results = self._collect_tool_results(raw.entries)
        turns = self._collect_turns(raw.entries, tool_results)

        main_turns = [turn for turn in turns if not turn.is_sidechain and turn.content.strip()]

        messages: list[Message] = []
        tool_calls: list[ToolCall] = []
        conversation_files: list[ConversationFile] = []
        message_files: list[MessageFile] = []
        file_edits: list[FileEdit] = []
        seen_paths: set[str] = set()
        seen_api_calls: set[str] = set()
        total_input = total_output = 0

        for index, turn in enumerate(main_turns):
            message_id = f"{conversation_id}:{turn.uuid}"
            edits = self._edits_for(turn.tool_calls)
            lines_added = sum(edit["lines_added"] for edit in edits)
            lines_removed = sum(edit["lines_removed"] for edit in edits)

            if turn.api_call_key is None or turn.api_call_key not in seen_api_calls:
                total_input += turn.input_tokens
                total_output += turn.output_tokens
            if turn.api_call_key is not None:
                seen_api_calls.add(turn.api_call_key)

            messages.append(
                Message(
                    id=message_id,
                    conversation_id=conversation_id,
                    role=turn.role,
                    content=turn.content,
                    timestamp=turn.timestamp,
                    message_index=index,
                    input_tokens=turn.input_tokens,
                    output_tokens=turn.output_tokens,
                    total_lines_added=lines_added,
                    total_lines_removed=lines_removed,
                )
            )

            message_paths: list[str] = []
            for call in turn.tool_calls:
                tool_calls.append(
                    ToolCall(
                        id=f"{message_id}:tool:{call['id']}",
                        message_id=message_id,
                        conversation_id=conversation_id,
                        type=call["name"],
                        input=call["input"],
                        output=call["output"],
                        file_path=call["file_path"],
                    )
                )
                path = call["file_path"]
                if not path or path in message_paths:
                    continue
                message_paths.append(path)
                role = _file_role(call["name"])
                message_files.append(
                    MessageFile(
                        id=f"{message_id}:file:{len(message_paths) - 1}",
                        message_id=message_id,
                        conversation_id=conversation_id,
                        file_path=path,
                        role=role,
                    )
                )
                if path not in seen_paths:
                    seen_paths.add(path)
                    conversation_files.append(
                        ConversationFile(
                            id=f"{conversation_id}:file:{len(conversation_files)}",
                            conversation_id=conversation_id,
                            file_path=path,
                            role=role,
                        )
                    )

            for edit_index, edit in enumerate(edits):
                file_edits.append(
                    FileEdit(
                        id=create_deterministic_id(message_id, "edit", edit_index, edit["file_path"]),
                        message_id=message_id,
                        conversation_id=conversation_id,
                        **edit,
                    )
                )

        timestamps = [turn.timestamp for turn in turns if turn.timestamp is not None]
        title = next(
            (str(entry["summary"]) for entry in raw.entries if entry.get("type") == "summary" and entry.get("summary")),
            "",
        )
        model = next(
            (
                entry["message"]["model"]
                for entry in raw.entries
                if entry.get("type") == "assistant" and _is_turn(entry) and entry["message"].get("model")
            ),
            None,
        )
        workspace_path = location.workspace_path

        conversation = Conversation(
            id=conversation_id,
            source=self.name,
            title=title,
            workspace_path=workspace_path,
            project_name=Path(workspace_path).name or None,
            model=model,
            created_at=min(timestamps, default=None),
            updated_at=max(timestamps, default=None),
            message_count=len(messages),
            total_input_tokens=total_input,
            total_output_tokens=total_output,
            total_lines_added=sum(edit.lines_added for edit in file_edits),
            total_lines_removed=sum(edit.lines_removed for edit in file_edits),
            source_ref=SourceRef(
                source=self.name,
                original_id=raw.session_id,
                db_path=location.db_path,
                workspace_path=workspace_path,
            ),
        )
        return NormalizedConversation(
            conversation=conversation,
            messages=messages,
            tool_calls=tool_calls,
            files=conversation_files,
            message_files=message_files,
            file_edits=file_edits,
        )

    def get_deep_link(self, ref: SourceRef) -> str | None:
        path = Path(ref.db_path) / f"{ref.original_id}{SESSION_SUFFIX}"
        return str(path) if path.exists() else None

    def _turn_timestamp(self, entry: dict[str, Any]) -> datetime | None:
        if not _is_turn(entry) or not entry.get("uuid"):
            return None
        return self._parse_timestamp(entry.get("timestamp"))

    def _parse_timestamp(self, value: Any) -> datetime | None:
        try:
            return coerce_utc_datetime(value, "timestamp")
        except (TypeError, ValueError):
            return None

    def _collect_tool_results(self, entries: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        results: dict[str, dict[str, Any]] = {}
        for entry in entries:
            result = entry.get("toolUseResult")
            if entry.get("type") != "user" or not _is_turn(entry) or not isinstance(result, dict):
                continue
            content = entry["message"].get("content")
            if not isinstance(content, list):
                continue
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result" and block.get("tool_use_id"):
                    results[block["tool_use_id"]] = result
        return results

    def _collect_turns(self, entries: list[dict[str, Any]], tool_results: dict[str, dict[str, Any]]) -> list[_Turn]:
        seen: set[str] = set()
        unique: list[dict[str, Any]] = []
        for entry in entries:
            if not _is_turn(entry) or not entry.get("uuid"):
                continue
            if entry["uuid"] in seen:
                continue
            seen.add(entry["uuid"])
            unique.append(entry)
        # ISO-8601 strings sort chronologically
        unique.sort(key=lambda entry: str(entry.get("timestamp") or ""))

        turns: list[_Turn] = []
        for entry in unique:
            message = entry["message"]
            try:
                role = MessageRole(message.get("role") or entry["type"])
            except ValueError:
                continue
            content = message.get("content")
            calls = self._tool_calls_for(content, tool_results)
            usage = message.get("usage") if isinstance(message.get("usage"), dict) else {}
            api_call_key = (
                f"{message['id']}:{entry['requestId']}" if message.get("id") and entry.get("requestId") else None
            )
            turns.append(
                _Turn(
                    uuid=entry["uuid"],
                    role=role,
                    content=self._text_for(content, calls, role is MessageRole.ASSISTANT),
                    timestamp=self._parse_timestamp(entry.get("timestamp")),
                    tool_calls=calls,
                    is_sidechain=bool(entry.get("isSidechain")),
                    input_tokens=int(usage.get("input_tokens") or 0),
                    output_tokens=int(usage.get("output_tokens") or 0),
                    api_call_key=api_call_key,
                )
            )
        return turns

    def _tool_calls_for(self, content: Any, tool_results: dict[str, dict[str, Any]]) -> list[dict[str, Any]]:
        if not isinstance(content, list):
            return []
        calls: list[dict[str, Any]] = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            if not block.get("id") or not block.get("name"):
                continue
            raw_input = block.get("input")
            result = tool_results.get(block["id"])
            input_dict = raw_input if isinstance(raw_input, dict) else {}
            calls.append(
                {
                    "id": block["id"],
                    "name": block["name"],
                    "input": raw_input if isinstance(raw_input, str) else json.dumps(raw_input),
                    "input_dict": input_dict,
                    "output": _result_output(result) if result else None,
                    "file_path": _result_path(result) or input_dict.get("file_path"),
                }
            )
        return calls

    def _text_for(self, content: Any, calls: list[dict[str, Any]], is_assistant: bool) -> str:
        if isinstance(content, str):
            return content
        if not isinstance(content, list):
            return ""

        outputs = {call["id"]: call for call in calls}
        parts: list[str] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                parts.append(block["text"])
            elif is_assistant and block.get("type") == "tool_use" and block.get("id") in outputs:
                call = outputs[block["id"]]
                if not call["output"]:
                    continue
                file_name = Path(call["file_path"]).name if call["file_path"] else ""
                header = f"**{call['name']}**" + (f" `{file_name}`" if file_name else "")
                parts.extend(["", "---", header, "````", call["output"], "````", "---", ""])
        return "\n".join(parts)

    def _edits_for(self, calls: list[dict[str, Any]]) -> list[dict[str, Any]]:
        edits: list[dict[str, Any]] = []
        for call in calls:
            tool_input = call["input_dict"]
            path = tool_input.get("file_path")
            if not path:
                continue
            if call["name"] == "Edit":
                new_string = tool_input.get("new_string") or ""
                edits.append(
                    {
                        "file_path": path,
                        "edit_type": EditType.MODIFY,
                        "lines_added": count_lines(new_string),
                        "lines_removed": count_lines(tool_input.get("old_string") or ""),
                        "new_content": new_string,
                    }
                )
            elif call["name"] == "Write":
                written = tool_input.get("content") or ""
                edits.append(
                    {
                        "file_path": path,
                        "edit_type": EditType.CREATE,
                        "lines_added": count_lines(written),
                        "lines_removed": 0,
                        "new_content": written,
                    }
                )
        return edits
