"""Serialize execute/undo operations against the assistant process."""

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from .adelfa_errors import AdelfaError, CommandRejected, QueueCleared, UsageError
from .adelfa_parser import Command, Position
from .adelfa_state import CommandRecord, ErrorInfo, SessionState, last

log = logging.getLogger(__name__)

EXECUTE = "execute"
UNDO = "undo"


@dataclass
class QueuedOperation:
    id: int
    kind: str  # EXECUTE or UNDO
    processor: Callable[[], Awaitable[None]]
    future: asyncio.Future
    commands: tuple[Command, ...] = ()
    position: Position | None = None
    task: asyncio.Task | None = None


class OperationQueue:
    """FIFO queue running one operation processor at a time."""

    def __init__(self):
        self._queue: deque[QueuedOperation] = deque()
        self._current: QueuedOperation | None = None
        self._ids = itertools.count(1)

    async def enqueue(self, kind: str, processor: Callable[[], Awaitable[None]], *,
                      commands: Iterable[Command] = (), position: Position | None = None):
        """Queue `processor` and wait until it has run.

        Raises whatever the processor raised, or QueueCleared if the queue was
        cleared first.
        """
        op = QueuedOperation(
            id=next(self._ids),
            kind=kind,
            processor=processor,
            future=asyncio.get_running_loop().create_future(),
            commands=tuple(commands),
            position=position,
        )
        self._queue.append(op)
        self._process_next()
        return await op.future

    def _process_next(self):
        if self._current is not None or not self._queue:
            return
        op = self._queue.popleft()
        self._current = op
        op.task = asyncio.create_task(self._run(op))

    async def _run(self, op: QueuedOperation):
        try:
            await op.processor()
        except asyncio.CancelledError:
            # Only clear() cancels, and it has already rejected the caller
            raise
        except Exception as e:
            self._finish(op, e)
        else:
            self._finish(op)

    def _finish(self, op: QueuedOperation, error: BaseException | None = None):
        if self._current is op:
            self._current = None
        if not op.future.done():
            if error is None:
                op.future.set_result(None)
            else:
                op.future.set_exception(error)
        self._process_next()

    def clear(self):
        """Reject every queued and in-flight operation and go idle."""
        while self._queue:
            op = self._queue.popleft()
            if not op.future.done():
                op.future.set_exception(QueueCleared())
        op = self._current
        self._current = None
        if op is not None:
            if not op.future.done():
                op.future.set_exception(QueueCleared())
            if op.task is not None:
                op.task.cancel()

    @property
    def current_operation(self) -> QueuedOperation | None:
        return self._current

    def size(self) -> int:
        return len(self._queue) + (1 if self._current else 0)

    def is_processing(self) -> bool:
        return self._current is not None


class CommandExecutor:
    """Runs execute and undo operations through one queue.

    `session` is anything with `profile` and `async send(text)`; normally an
    AdelfaSession.
    """

    def __init__(self, session, state: SessionState):
        self.session = session
        self.state = state
        self.queue = OperationQueue()

    async def execute_commands(self, commands: Iterable[Command]):
        """Send commands in order, stopping at the first rejection.

        The rejection is recorded as the state's error info and re-raised.
        """
        commands = list(commands)

        async def processor():
            for command in commands:
                self.state.add_pending_command(command.text)
                try:
                    output = await self.session.send(command.text)
                except UsageError:
                    self.state.remove_pending_command(command.text)
                    raise
                except AdelfaError as e:
                    self.state.remove_pending_command(command.text)
                    message = e.message if isinstance(e, CommandRejected) else str(e)
                    self.state.set_error_info(ErrorInfo(command.span, command.text, message))
                    raise
                self.state.add_command(CommandRecord.accepted(command, output))

        await self.queue.enqueue(EXECUTE, processor, commands=commands)

    async def undo_last_command(self) -> CommandRecord | None:
        """Undo the newest record in the assistant, then drop it from history.

        If the assistant refuses the undo the record stays, since the process
        still holds it. Must only be called from inside a queued processor.
        """
        record = last(self.state.commands)
        if record is None:
            return None
        self.state.set_loading(True)
        try:
            undo = self.session.profile.undo_command_for(record.text)
            log.debug("Undoing %r with %r", record.text, undo)
            await self.session.send(undo)
            return self.state.remove_last_command()
        finally:
            self.state.set_loading(False)

    async def undo_commands_after_position(self, position: Position):
        """Undo, newest first, every record whose span ends at or after `position`."""
        async def processor():
            count = len(self.state.get_commands_after_position_inclusive(position))
            for _ in range(count):
                await self.undo_last_command()

        await self.queue.enqueue(UNDO, processor, position=position)

    def clear_queue(self):
        self.queue.clear()

    def is_processing(self) -> bool:
        return self.queue.is_processing()

    def queue_size(self) -> int:
        return self.queue.size()
