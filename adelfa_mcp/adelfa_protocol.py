"""Request/reply framing over a proof assistant's stdio pipes.

One reader task per stream lives for the whole process lifetime and hands
output to whichever request is outstanding. Only one request may be
outstanding at a time.
"""

import asyncio
import codecs
import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from .adelfa_errors import ChannelBusy, ChannelDesynced, CommandRejected, ProcessExited, ProtocolTimeout

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_ERROR_GRACE = 0.2
DEFAULT_INTERRUPT_TIMEOUT = 5.0

# ANSI escape sequence pattern (colors, cursor movement, etc.)
_ANSI_ESCAPE_RE = re.compile(r'\x1b\[[0-9;?]*[A-Za-z]')


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes from text."""
    return _ANSI_ESCAPE_RE.sub('', text)


def frame_reply(data: str, terminator: str) -> str:
    """Extract the reply payload from output ending in a prompt.

    Drops the line holding the last terminator (the prompt) and everything
    after it, then removes earlier prompt echoes (`...>>` up to the last
    terminator on a line).
    """
    idx = data.rfind(terminator)
    if idx < 0:
        return data.strip()
    head = data[:data.rfind('\n', 0, idx) + 1]
    echo = re.compile(rf'.*{re.escape(terminator)}')
    return echo.sub('', head).strip()


@dataclass
class _PendingReply:
    command: str
    future: asyncio.Future
    out: list[str] = field(default_factory=list)
    err: list[str] = field(default_factory=list)
    failed: bool = False
    grace_handle: asyncio.TimerHandle | None = None


class ProtocolChannel:
    """Send one command, get one framed reply or a `CommandRejected`."""

    def __init__(self, stdin: asyncio.StreamWriter, stdout: asyncio.StreamReader,
                 stderr: asyncio.StreamReader | None, *, terminator: str,
                 error_pattern: re.Pattern | None = None,
                 timeout: float | None = DEFAULT_TIMEOUT,
                 error_grace: float = DEFAULT_ERROR_GRACE,
                 strip_ansi: bool = True,
                 interrupt: Callable[[], None] | None = None,
                 interrupt_timeout: float = DEFAULT_INTERRUPT_TIMEOUT):
        self._stdin = stdin
        self._stdout = stdout
        self._stderr = stderr
        self.terminator = terminator
        self.error_pattern = error_pattern
        self.timeout = timeout
        self.error_grace = error_grace
        self.strip_ansi = strip_ansi
        self.interrupt_timeout = interrupt_timeout
        self._interrupt = interrupt

        self._pending: _PendingReply | None = None
        self._readers: list[asyncio.Task] = []
        self._ready: asyncio.Future | None = None
        self._closed = False
        self._desynced = False

    def start(self):
        """Spawn the stream reader tasks. Must be called from the event loop."""
        if self._readers:
            return
        self._ready = asyncio.get_running_loop().create_future()
        self._readers.append(asyncio.create_task(self._read_stream(self._stdout, self._on_stdout, "stdout")))
        if self._stderr is not None:
            self._readers.append(asyncio.create_task(self._read_stream(self._stderr, self._on_stderr, "stderr")))

    async def wait_ready(self):
        """Wait for the first stdout chunk (the assistant's banner/prompt).

        Raises ProcessExited if stdout closes first.
        """
        self.start()
        if not await asyncio.shield(self._ready):
            raise ProcessExited("Process exited before producing output")

    @property
    def busy(self) -> bool:
        return self._pending is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def desynced(self) -> bool:
        return self._desynced

    async def send(self, command: str, timeout: float | None = None) -> str:
        """Send one command and wait for its framed reply.

        On timeout the process is interrupted and the reply to the interrupted
        command is consumed here. A command that still completes successfully
        returns its reply; otherwise ProtocolTimeout is raised. If no prompt
        arrives even after the interrupt, the channel is marked out of sync
        and every later send raises ChannelDesynced.
        """
        if self._pending is not None:
            raise ChannelBusy(f"Cannot send {command!r}: {self._pending.command!r} is still outstanding")
        if self._desynced:
            raise ChannelDesynced(f"Reply to an earlier command never arrived; restart before sending {command!r}")
        if self._closed:
            raise ProcessExited("Process output is closed")

        req = _PendingReply(command, asyncio.get_running_loop().create_future())
        self._pending = req
        timeout = self.timeout if timeout is None else timeout
        try:
            try:
                self._stdin.write(command.encode() + b'\r')
                await self._stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise ProcessExited(f"Cannot write to process: {e}") from e

            if not timeout:
                return await req.future
            try:
                return await asyncio.wait_for(asyncio.shield(req.future), timeout=timeout)
            except asyncio.TimeoutError:
                log.warning("No reply to %r after %gs; interrupting", command, timeout)
            return await self._recover(req, timeout)
        finally:
            if req.grace_handle is not None:
                req.grace_handle.cancel()
            if self._pending is req:
                self._pending = None
            if not req.future.done():
                req.future.cancel()

    async def _recover(self, req: _PendingReply, timeout: float) -> str:
        """Interrupt a timed-out command and wait for the prompt that ends it."""
        if self._interrupt is not None:
            self._interrupt()
        try:
            reply = await asyncio.wait_for(asyncio.shield(req.future), timeout=self.interrupt_timeout)
        except asyncio.TimeoutError:
            self._desynced = True
            log.warning("No prompt after interrupting %r; channel is out of sync", req.command)
            raise ProtocolTimeout(req.command, timeout) from None
        except CommandRejected as e:
            log.debug("Interrupted %r: %s", req.command, e.message)
            raise ProtocolTimeout(req.command, timeout) from None
        log.warning("%r finished after its timeout", req.command)
        return reply

    async def _read_stream(self, stream: asyncio.StreamReader, dispatch, name: str):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if name == "stdout" and not self._ready.done():
                self._ready.set_result(True)
            if text:
                dispatch(text)
        self._on_eof(name)

    def _on_stdout(self, text: str):
        req = self._pending
        if req is None or req.future.done():
            log.debug("Discarding stale output: %r", text)
            return
        req.out.append(text)
        data = ''.join(req.out)

        if not req.failed and self.error_pattern is not None and self.error_pattern.search(data):
            req.failed = True

        if self.terminator in data:
            if req.failed:
                self._reject(req)
            else:
                self._resolve(req, data)

    def _on_stderr(self, text: str):
        req = self._pending
        if req is None or req.future.done():
            log.debug("Discarding stale error output: %r", text)
            return
        req.err.append(text)
        if not req.failed:
            req.failed = True
            # Collect the rest of the error and swallow the trailing prompt
            req.grace_handle = asyncio.get_running_loop().call_later(
                self.error_grace, self._reject, req)

    def _clean(self, text: str) -> str:
        return strip_ansi(text) if self.strip_ansi else text

    def _resolve(self, req: _PendingReply, data: str):
        if req.future.done():
            return
        self._pending = None
        req.future.set_result(self._clean(frame_reply(data, self.terminator)))

    def _reject(self, req: _PendingReply):
        if req.future.done():
            return
        self._pending = None
        if req.err:
            message = ''.join(req.err).strip()
        else:
            message = frame_reply(''.join(req.out), self.terminator)
        log.debug("Command %r rejected: %s", req.command, message)
        req.future.set_exception(CommandRejected(req.command, self._clean(message)))

    def _on_eof(self, name: str):
        if name != "stdout":
            return
        self._closed = True
        if not self._ready.done():
            self._ready.set_result(False)
        req = self._pending
        if req is not None and not req.future.done():
            self._pending = None
            req.future.set_exception(ProcessExited(f"Process exited while running {req.command!r}"))

    async def close(self):
        """Stop the reader tasks and fail any outstanding request."""
        self._closed = True
        for task in self._readers:
            task.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._readers = []
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()
        req = self._pending
        if req is not None and not req.future.done():
            self._pending = None
            req.future.set_exception(ProcessExited("Channel closed"))
