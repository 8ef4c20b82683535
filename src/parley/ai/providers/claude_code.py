"""Claude Code CLI backend: a conversation driven through ``claude -p`` subprocesses."""

from __future__ import annotations

import asyncio
import json
import os
import platform
import re
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from parley.ai.types import (
    ActivityEvent,
    ChatMessage,
    ContentDelta,
    ErrorEvent,
    MessageEvent,
    StreamEvent,
    TurnComplete,
)
from parley.config import CliProviderConfig
from parley.errors import ConversationNotFoundError, InitializationError
from parley.log import get_logger

logger = get_logger(__name__)

DEFAULT_PROJECTS_DIR = Path.home() / ".claude" / "projects"
INSTALL_HINT = "Install it with: npm install -g @anthropic-ai/claude-code"
CLAUDE_MODEL_ALIASES = ("haiku", "opus", "sonnet")
TOOL_RESULT_PREFIX = "[Tool Result:"

_VERSION_PATTERN = re.compile(r"(\d+\.\d+\.\d+)")


@dataclass(frozen=True)
class ConversationInfo:
    conversation_id: str
    modified_time: datetime
    summary: str = ""


def resolve_cli_path(cli_path: str) -> str:
    """Resolve the claude CLI path, checking common install locations."""
    # If it's an absolute path, use as-is
    if os.path.isabs(cli_path) and os.path.exists(cli_path):
        return cli_path

    found = shutil.which(cli_path)
    if found:
        return found

    # On Windows, check common npm global locations
    if platform.system() == "Windows":
        candidates = []
        for env_var in ("APPDATA", "LOCALAPPDATA"):
            base = os.environ.get(env_var, "")
            if base:
                candidates.append(os.path.join(base, "npm", "claude.cmd"))
                candidates.append(os.path.join(base, "npm", "claude"))
        for candidate in candidates:
            if os.path.exists(candidate):
                return candidate

    return cli_path


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def parse_stream_line(data: dict[str, Any]) -> list[StreamEvent]:
    """Map one ``stream-json`` record to stream events."""
    match data.get("type"):
        case "system":
            if data.get("subtype") == "init":
                return [ActivityEvent("init", data.get("session_id"))]
            return [ActivityEvent("system", data.get("subtype"))]
        case "stream_event":
            event = data.get("event") or {}
            delta = event.get("delta") or {}
            if event.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
                return [ContentDelta(delta.get("text", ""))]
            return [ActivityEvent("stream", event.get("type"))]
        case "assistant":
            blocks = (data.get("message") or {}).get("content") or []
            events: list[StreamEvent] = []
            texts: list[str] = []
            for block in blocks:
                if block.get("type") == "text":
                    texts.append(block.get("text", ""))
                elif block.get("type") == "tool_use":
                    events.append(ActivityEvent("tool_use", block.get("name")))
            if texts:
                events.append(MessageEvent("".join(texts)))
            return events
        case "user":
            # Results of the CLI's own built-in tools
            return [ActivityEvent("tool_result")]
        case "result":
            if data.get("is_error") or data.get("subtype", "success") != "success":
                return [ErrorEvent(str(data.get("result") or data.get("subtype") or "Claude Code error"))]
            return [TurnComplete(data.get("session_id"))]
        case other:
            return [ActivityEvent(str(other))]


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text")
    return ""


def read_transcript(path: Path) -> list[ChatMessage]:
    """Rebuild the visible user/assistant exchange from a CLI transcript file."""
    messages: list[ChatMessage] = []
    with path.open(encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            role = entry.get("type")
            if role not in ("user", "assistant"):
                continue
            text = _text_of((entry.get("message") or {}).get("content"))
            if not text.strip() or text.lstrip().startswith(TOOL_RESULT_PREFIX):
                continue
            if role == "user":
                text = text.strip()
            timestamp = entry.get("timestamp")
            parsed = datetime.fromisoformat(timestamp) if timestamp else datetime.now(timezone.utc)

            # The CLI writes one line per content block; fold them together.
            if role == "assistant" and messages and messages[-1].role == "assistant":
                previous = messages.pop()
                text = previous.content + text
                parsed = previous.timestamp
            messages.append(ChatMessage(role=role, content=text, timestamp=parsed))
    return messages


class ClaudeConversation:
    """A CLI conversation. Each turn runs one ``claude -p`` subprocess."""

    def __init__(self, backend: ClaudeCodeBackend, conversation_id: str, started: bool = False):
        self._backend = backend
        self.conversation_id = conversation_id
        self._started = started
        self._process: Optional[asyncio.subprocess.Process] = None
        self._aborted = False

    @property
    def is_busy(self) -> bool:
        return self._process is not None

    async def send(self, prompt: str, system_prompt: str = "", model: str = "") -> AsyncIterator[StreamEvent]:
        """Run one turn, yielding events as the CLI reports them."""
        args = self._backend.build_command(self.conversation_id, self._started, system_prompt, model)
        logger.info(
            "claude_code_request",
            conversation_id=self.conversation_id,
            resume=self._started,
            prompt_length=len(prompt),
        )
        process = await self._backend.spawn(args)
        self._process = process
        self._aborted = False
        try:
            assert process.stdin is not None and process.stdout is not None
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()

            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("claude_code_non_json", line=line[:200])
                    continue
                for event in parse_stream_line(data):
                    if isinstance(event, ActivityEvent) and event.kind == "init":
                        self._started = True
                    yield event

            returncode = await process.wait()
            if returncode != 0 and not self._aborted:
                stderr = b""
                if process.stderr is not None:
                    stderr = await process.stderr.read()
                detail = stderr.decode("utf-8", errors="replace").strip() or "(no output)"
                logger.error("claude_code_error", returncode=returncode, stderr=detail[:500])
                yield ErrorEvent(f"Claude Code error (exit {returncode}): {detail}")
        finally:
            self._process = None
            if process.returncode is None:
                await self._backend.terminate(process)

    async def abort(self) -> None:
        process = self._process
        if process is None:
            return
        self._aborted = True
        logger.info("claude_code_abort", conversation_id=self.conversation_id)
        await self._backend.terminate(process)


class ClaudeCodeBackend:
    """Owns the CLI binary and every subprocess spawned for it.

    ``start()`` verifies the binary; ``stop()`` terminates whatever is still
    running, escalating to kill after ``stop_timeout`` seconds.
    """

    def __init__(self, config: CliProviderConfig):
        self.config = config
        self._cli_path: Optional[str] = None
        self._processes: set[asyncio.subprocess.Process] = set()

    @property
    def is_running(self) -> bool:
        return self._cli_path is not None

    @property
    def projects_dir(self) -> Path:
        if self.config.projects_dir:
            return Path(self.config.projects_dir).expanduser()
        return DEFAULT_PROJECTS_DIR

    async def start(self) -> None:
        if self._cli_path is not None:
            return
        path = resolve_cli_path(self.config.cli_path)
        if not os.path.exists(path) and shutil.which(path) is None:
            logger.error("claude_code_not_found", cli_path=path)
            raise InitializationError(f"Claude Code CLI not found at '{path}'. {INSTALL_HINT}")
        self._cli_path = path
        logger.info("claude_code_started", cli_path=path)

    async def stop(self) -> None:
        for process in list(self._processes):
            await self.terminate(process)
        self._processes.clear()
        self._cli_path = None
        logger.info("claude_code_stopped")

    def build_command(self, conversation_id: str, resume: bool, system_prompt: str, model: str) -> list[str]:
        if self._cli_path is None:
            raise InitializationError("Claude Code backend is not started")
        # Prompt goes through stdin to avoid Windows encoding issues
        cmd = [
            self._cli_path,
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
        ]
        cmd.extend(["--resume", conversation_id] if resume else ["--session-id", conversation_id])
        if model:
            cmd.extend(["--model", model])
        if system_prompt:
            cmd.extend(["--append-system-prompt", system_prompt])
        if self.config.permission_mode != "default":
            cmd.extend(["--permission-mode", self.config.permission_mode])
        for tool_name in self.config.allowed_tools:
            cmd.extend(["--allowedTools", tool_name])
        return cmd

    async def spawn(self, args: list[str]) -> asyncio.subprocess.Process:
        # Remove ANTHROPIC_API_KEY from subprocess env so CLI uses subscription auth
        env = {k: v for k, v in os.environ.items() if k != "ANTHROPIC_API_KEY"}
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.config.working_dir,
            )
        except FileNotFoundError as e:
            logger.error("claude_code_not_found", cli_path=args[0])
            raise InitializationError(f"Claude Code CLI not found at '{args[0]}'. {INSTALL_HINT}") from e
        self._processes.add(process)
        return process

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        self._processes.discard(process)
        if process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("claude_code_force_kill", pid=process.pid)
            process.kill()
            await process.wait()

    async def check_installed(self) -> tuple[bool, Optional[str]]:
        """Run ``--version``. Returns ``(installed, version_or_error)``."""
        path = resolve_cli_path(self.config.cli_path)
        try:
            process = await asyncio.create_subprocess_exec(
                path,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=10)
        except (FileNotFoundError, asyncio.TimeoutError) as e:
            return False, str(e) or "Claude Code CLI not found"
        output = stdout.decode("utf-8", errors="replace").strip()
        match = _VERSION_PATTERN.search(output)
        return True, match.group(1) if match else output

    # -- conversations -------------------------------------------------------

    def transcript_path(self, conversation_id: str) -> Optional[Path]:
        if not self.projects_dir.is_dir():
            return None
        return next(self.projects_dir.glob(f"*/{conversation_id}.jsonl"), None)

    async def create_conversation(self, conversation_id: Optional[str] = None) -> ClaudeConversation:
        """Start a fresh conversation, reusing *conversation_id* when the CLI accepts it."""
        if conversation_id is None or not _is_uuid(conversation_id) or self.transcript_path(conversation_id):
            conversation_id = str(uuid.uuid4())
        logger.info("conversation_created", conversation_id=conversation_id)
        return ClaudeConversation(self, conversation_id)

    async def resume_conversation(self, conversation_id: str) -> ClaudeConversation:
        if self.transcript_path(conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)
        logger.info("conversation_resumed", conversation_id=conversation_id)
        return ClaudeConversation(self, conversation_id, started=True)

    def get_messages(self, conversation_id: str) -> list[ChatMessage]:
        path = self.transcript_path(conversation_id)
        if path is None:
            raise ConversationNotFoundError(conversation_id)
        return read_transcript(path)

    async def list_conversations(self) -> list[ConversationInfo]:
        """Known conversations, most recently modified first."""
        if not self.projects_dir.is_dir():
            return []
        infos: list[ConversationInfo] = []
        for path in self.projects_dir.glob("*/*.jsonl"):
            if not _is_uuid(path.stem):
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            first_user = next((m.content for m in read_transcript(path) if m.role == "user"), "")
            infos.append(ConversationInfo(path.stem, modified, first_user[:80]))
        infos.sort(key=lambda info: info.modified_time, reverse=True)
        return infos

    async def delete_conversation(self, conversation_id: str) -> None:
        path = self.transcript_path(conversation_id)
        if path is None:
            raise ConversationNotFoundError(conversation_id)
        path.unlink()
        logger.info("conversation_deleted", conversation_id=conversation_id)

    async def list_models(self) -> list[str]:
        return list(CLAUDE_MODEL_ALIASES)
