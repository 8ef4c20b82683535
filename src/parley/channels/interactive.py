"""Interactive terminal channel: a streaming REPL over the shared active session."""

from __future__ import annotations

import asyncio
import sys
import threading
from typing import Any, Callable, Optional, TextIO

from parley.ai.providers.base import ProviderSession, SessionState
from parley.ai.types import ChatMessage
from parley.core.reconciler import ConversationReconciler
from parley.core.session import SessionManager
from parley.core.types import ChannelSource
from parley.log import get_logger
from parley.storage.models import SessionRecord

logger = get_logger(__name__)

PROMPT = "you> "


class StdinReader:
    """Feeds stdin lines into the event loop from a daemon thread.

    A blocked ``input()`` in the default executor would keep the loop from
    shutting down; a daemon thread does not.
    """

    def __init__(self, stream: TextIO = sys.stdin):
        self._stream = stream
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._thread = threading.Thread(target=self._pump, name="parley-stdin", daemon=True)
        self._thread.start()

    def _pump(self) -> None:
        for line in self._stream:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, line.rstrip("\n"))
        self._loop.call_soon_threadsafe(self._queue.put_nowait, None)

    async def readline(self) -> Optional[str]:
        """Next line, or None at end of input."""
        return await self._queue.get()


def terminal_question_callback(
    read_line: Callable[[], Any], write: Callable[[str], None]
) -> Callable[[dict[str, Any]], Any]:
    """Build an ``ask_question`` callback that asks in the terminal."""

    async def _ask(request: dict[str, Any]) -> Optional[dict[str, Any]]:
        write(f"\n? {request['question']}\n")
        if request.get("context"):
            write(f"  {request['context']}\n")
        options = request.get("options") or []
        for number, option in enumerate(options, 1):
            write(f"  {number}. {option}\n")
        write("answer> ")
        answer = await read_line()
        if answer is None or not answer.strip():
            return None

        answer = answer.strip()
        if request["type"] == "text":
            return {"type": "text", "text": answer}

        selected: list[str] = []
        free_text: list[str] = []
        for part in (p.strip() for p in answer.split(",")):
            if part.isdigit() and 1 <= int(part) <= len(options):
                selected.append(options[int(part) - 1])
            elif part:
                free_text.append(part)
        response: dict[str, Any] = {"type": request["type"], "selected": selected}
        if free_text:
            response["text"] = ", ".join(free_text)
        return response

    return _ask


class InteractiveChannel:
    """Terminal REPL that streams responses and writes to the shared session store."""

    def __init__(
        self,
        provider: ProviderSession,
        session_manager: SessionManager,
        reconciler: Optional[ConversationReconciler] = None,
        output: TextIO = sys.stdout,
    ):
        self._provider = provider
        self._session_manager = session_manager
        self._reconciler = reconciler
        self._output = output
        self._remove_listener = session_manager.repo.add_listener(self._on_session_saved)

    @property
    def busy(self) -> bool:
        return self._provider.state in (SessionState.SENDING, SessionState.STREAMING)

    def write(self, text: str) -> None:
        self._output.write(text)
        self._output.flush()

    def _on_session_saved(self, record: SessionRecord) -> None:
        if record.messages and record.messages[-1].source == ChannelSource.BOT:
            self.write(f"\n[{record.name}: new message from the bot channel]\n")

    def close(self) -> None:
        self._remove_listener()

    async def _prepare(self, record: SessionRecord, history: list[ChatMessage]) -> None:
        if self._reconciler is not None:
            await self._reconciler.reconcile(record, history)
        else:
            # Stateless providers replay whatever history they hold.
            self._provider.load_history(history)

    async def _send(self, text: str) -> str:
        if not self._provider.config.streaming:
            response = await self._provider.send_message(text)
            self.write(response)
            return response
        return await self._provider.send_message_streaming(text, on_delta=self.write)

    async def ask(self, text: str) -> str:
        """Send one exchange, writing the reply to the output, and persist it."""
        record = await self._session_manager.get_or_create_active()
        record = await self._session_manager.append(
            record, ChatMessage(role="user", content=text, source=ChannelSource.INTERACTIVE), silent=True
        )

        await self._prepare(record, record.messages[:-1])
        self.write("ai> ")
        response = await self._send(text)
        self.write("\n")

        if self._reconciler is not None:
            await self._reconciler.sync(record)

        # Appended to the stored session, which may have grown meanwhile.
        await self._session_manager.append(
            record, ChatMessage(role="assistant", content=response, source=ChannelSource.INTERACTIVE), silent=True
        )
        return response

    async def run(self, read_line: Callable[[], Any], stop_event: asyncio.Event) -> None:
        """Read prompts until end of input, ``/quit``, or *stop_event*."""
        record = await self._session_manager.get_or_create_active()
        self.write(f"Session: {record.name} ({len(record.messages)} messages). /new starts another, /quit exits.\n")

        stop_waiter = asyncio.ensure_future(stop_event.wait())
        try:
            while not stop_event.is_set():
                self.write(PROMPT)
                line_task = asyncio.ensure_future(read_line())
                done, _ = await asyncio.wait({line_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if line_task not in done:
                    line_task.cancel()
                    break
                line = line_task.result()
                if line is None:
                    break
                text = line.strip()
                if not text:
                    continue
                if text in ("/quit", "/exit"):
                    break
                if text.startswith("/new"):
                    record = await self._session_manager.new_session(text[4:].strip() or None)
                    if self._reconciler is None:
                        self._provider.clear_history()
                    self.write(f"New session: {record.name}\n")
                    continue
                try:
                    await self.ask(text)
                except Exception as e:
                    logger.error("interactive_request_failed", error=str(e))
                    self.write(f"\nError: {e}\n")
        finally:
            stop_waiter.cancel()
            self.write("\n")
