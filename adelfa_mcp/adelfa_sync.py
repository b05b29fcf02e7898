"""Keep an edited document and the assistant's state in step.

Edits undo every accepted command from the earliest change onward, then
re-execute up to the cursor. Cursor moves only ever execute forward.
"""

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from .adelfa_config import AdelfaConfig
from .adelfa_display import DecorationStore, InfoPanel
from .adelfa_errors import AdelfaError, QueueCleared
from .adelfa_parser import ORIGIN, Command, ContentChange, Document, Position, Range, get_commands_in_range
from .adelfa_queue import CommandExecutor
from .adelfa_session import AdelfaSession
from .adelfa_state import SessionState

log = logging.getLogger(__name__)

CURSOR_DELAY = 0.1
TEXT_CHANGE_DELAY = 0.3


@dataclass(frozen=True)
class Selection:
    anchor: Position
    active: Position

    @classmethod
    def at(cls, pos: Position) -> "Selection":
        return cls(pos, pos)

    @property
    def end(self) -> Position:
        """The later of anchor and active."""
        return max(self.anchor, self.active)


class Debouncer:
    """Run only the latest triggered task, once `delay` seconds pass without a trigger."""

    def __init__(self, delay: float):
        self.delay = delay
        self._task_factory: Callable[[], Awaitable] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._running: set[asyncio.Task] = set()

    def trigger(self, task_factory: Callable[[], Awaitable]):
        self._task_factory = task_factory
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.delay, self._fire)

    def _fire(self):
        self._timer = None
        factory, self._task_factory = self._task_factory, None
        if factory is None:
            return
        task = asyncio.create_task(factory())
        self._running.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task):
        self._running.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Debounced task failed", exc_info=task.exception())

    @property
    def is_pending(self) -> bool:
        return self._timer is not None

    @property
    def is_idle(self) -> bool:
        return self._timer is None and not self._running

    def cancel(self):
        """Drop the pending task and cancel running ones."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._task_factory = None
        for task in list(self._running):
            task.cancel()

    async def flush(self):
        """Fire a pending task now and wait for all started tasks to finish."""
        if self._timer is not None:
            self._timer.cancel()
            self._fire()
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)


def _content_hash(content: str) -> str:
    return hashlib.sha256(content.encode()).hexdigest()


class DocumentSync:
    """Drives one assistant session from document edits and cursor moves."""

    def __init__(self, document: Document, config: AdelfaConfig | None = None, *,
                 session: AdelfaSession | None = None,
                 info: InfoPanel | None = None,
                 decorations: DecorationStore | None = None,
                 cursor_delay: float = CURSOR_DELAY,
                 text_delay: float = TEXT_CHANGE_DELAY):
        self.document = document
        self.config = config or AdelfaConfig.from_env()
        self.session = session or AdelfaSession(
            self.config.profile,
            command_timeout=self.config.command_timeout,
            env=self.config.env or None,
        )
        self.state = SessionState()
        self.executor = CommandExecutor(self.session, self.state)
        self.info = info or InfoPanel()
        self.decorations = decorations or DecorationStore()
        self.selection = Selection.at(ORIGIN)

        self._cursor_debouncer = Debouncer(cursor_delay)
        self._text_debouncer = Debouncer(text_delay)
        self._pass_lock = asyncio.Lock()
        self._processing_update = False
        self._pending_change: Position | None = None
        self._content_hash = _content_hash(document.text)

        if self.config.auto_open:
            self.info.open()

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def load(self, selection: Selection | None = None):
        """(Re)start the assistant and execute the document up to the cursor.

        Raises StartupError if the assistant cannot be started.
        """
        if selection is not None:
            self.selection = selection
        self._text_debouncer.cancel()
        self._pending_change = None
        self.executor.clear_queue()
        self.state.reset()
        await self.session.stop()

        self.info.update(message="Loading file")
        path = self.document.path
        workdir = Path(path).parent if path else Path.cwd()
        await self.session.start(workdir)

        self.state.set_file_content(self.document.text)
        self._content_hash = _content_hash(self.document.text)
        await self._run_pass(self._update_file)

    async def dispose(self):
        self._cursor_debouncer.cancel()
        self._text_debouncer.cancel()
        self.executor.clear_queue()
        await self.session.stop()
        self.state.reset()
        self.decorations.clear()
        self.info.close()

    async def flush(self):
        """Run any debounced pass now and wait until no pass is pending."""
        while not (self._text_debouncer.is_idle and self._cursor_debouncer.is_idle):
            await self._text_debouncer.flush()
            await self._cursor_debouncer.flush()

    # =========================================================================
    # Editor events
    # =========================================================================

    def on_text_change(self, changes: list[ContentChange]):
        """Handle edits already applied to `self.document`."""
        earliest = min((c.range.start for c in changes), default=Position(self.document.line_count, 0))
        if self._pending_change is None or earliest < self._pending_change:
            self._pending_change = earliest
        self._text_debouncer.trigger(self._text_change_pass)

    def on_cursor_move(self, selection: Selection):
        self.selection = selection
        self._cursor_debouncer.trigger(self._cursor_pass)

    def apply_edit(self, changes: list[ContentChange]):
        """Apply edits to the document, then handle them as a text change."""
        self.document.apply_changes(changes)
        self._content_hash = _content_hash(self.document.text)
        self.on_text_change(changes)

    def reload(self, text: str) -> bool:
        """Replace the document with `text` (e.g. re-read from disk).

        Returns True if the content changed and a text change was issued.
        """
        if _content_hash(text) == self._content_hash:
            return False

        old = self.document.text
        prefix = len(os.path.commonprefix([old, text]))
        start = self.document.position_at(prefix)
        change = ContentChange(Range(start, self.document.end_position), text[prefix:])
        self.apply_edit([change])
        return True

    async def _text_change_pass(self):
        async def body():
            position, self._pending_change = self._pending_change, None
            if position is not None:
                await self._undo_commands_until_position(position)
            self.state.set_file_content(self.document.text)
            await self._update_file()

        await self._run_pass(body)

    async def _cursor_pass(self):
        await self._run_pass(self._update_file)

    # =========================================================================
    # Synchronization pass
    # =========================================================================

    async def _run_pass(self, body: Callable[[], Awaitable[None]]):
        # A second pass waits here rather than interleaving with the first
        async with self._pass_lock:
            self._processing_update = True
            try:
                await body()
            except QueueCleared:
                log.debug("Synchronization pass dropped: queue cleared")
            except AdelfaError as e:
                log.warning("Synchronization pass failed: %s", e)
                self.info.update(message=f"ERROR: {e}")
            finally:
                self._processing_update = False
                self._refresh_decorations()

    async def _undo_commands_until_position(self, position: Position):
        error = self.state.error_info
        if error is not None and position <= error.span.end:
            self.state.clear_error_info()
        await self.executor.undo_commands_after_position(position)

    def _commands_to_fill(self) -> list[Command]:
        commands = get_commands_in_range(self.document, ORIGIN, self.selection.end)
        evaluated_end = self.state.evaluated_range.end
        error = self.state.error_info
        return [
            c for c in commands
            if c.span.start >= evaluated_end
            # Nothing at or past a rejected command runs until it is edited
            and (error is None or c.span.end <= error.span.start)
        ]

    async def _update_file(self):
        if self._pending_change is not None:
            # History is still in pre-edit coordinates; the queued text change fills
            log.debug("Edit pending; deferring fill to the text change pass")
            return
        await self._fill_commands(self._commands_to_fill())

    async def _fill_commands(self, commands: list[Command]):
        if self.state.error_info is None:
            self.decorations.clear_error()

        if commands:
            try:
                await self.executor.execute_commands(commands)
            except QueueCleared:
                raise
            except AdelfaError as e:
                # Already recorded as the state's error info
                log.debug("Execution stopped early: %s", e)
                if self.state.error_info is not None:
                    self.decorations.show_error(self.state.error_info.span)

        self.show_info_at_position(self.selection.active)

    def show_info_at_position(self, position: Position):
        error = self.state.error_info
        if error is not None and error.span.start <= position:
            self.info.update(code=f">> {error.text}\n\n{error.message}")
            return

        record = self.state.get_last_command_before_position(position)
        if record is not None:
            self.info.update(code=f">> {record.text}\n\n{record.output}")
        else:
            self.info.update(message="No command found")

    def _refresh_decorations(self):
        error = self.state.error_info
        self.decorations.update(
            self.state.evaluated_range,
            error.span if error else None,
            self.state.get_line_statuses(),
        )

    # =========================================================================
    # Introspection
    # =========================================================================

    def is_processing(self) -> bool:
        return self._processing_update or self.executor.is_processing()

    def processing_status(self) -> dict:
        return {
            "is_processing_update": self._processing_update,
            "is_processing_commands": self.executor.is_processing(),
            "queue_size": self.executor.queue_size(),
        }

    @property
    def status(self) -> dict:
        return {
            "file": str(self.document.path) if self.document.path else None,
            "dialect": self.config.profile.name,
            "running": self.session.is_running,
            "cursor": {"line": self.selection.active.line, "character": self.selection.active.character},
            **self.state.to_dict(),
            **self.processing_status(),
        }
