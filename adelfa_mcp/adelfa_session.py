"""Adelfa/Abella subprocess lifecycle."""

import asyncio
import logging
import os
import shlex
import signal
from pathlib import Path
from typing import Optional

from .adelfa_config import ADELFA, DialectProfile
from .adelfa_errors import AlreadyRunning, ProcessExited, StartupError
from .adelfa_protocol import DEFAULT_TIMEOUT, ProtocolChannel

log = logging.getLogger(__name__)

NOT_STARTED = "not-started"
STARTING = "starting"
READY = "ready"
STOPPED = "stopped"


class AdelfaSession:
    """Owns one assistant subprocess and the channel over its pipes."""

    def __init__(self, profile: DialectProfile = ADELFA, *, command_timeout: float | None = DEFAULT_TIMEOUT,
                 env: dict | None = None, strip_ansi: bool = True):
        self.profile = profile
        self.command_timeout = command_timeout
        self.env = env  # Extra env vars to merge with os.environ
        self.strip_ansi = strip_ansi
        self.process: Optional[asyncio.subprocess.Process] = None
        self.channel: Optional[ProtocolChannel] = None
        self.workdir: Path | None = None
        self.state = NOT_STARTED

    async def start(self, workdir: str | Path = ".") -> str:
        """Spawn the assistant and wait for its first output."""
        if self.state == STARTING or self.is_running:
            raise AlreadyRunning(f"{self.profile.name} process is already running")
        if self.process is not None:
            # Died on its own; reap before respawning
            await self.stop()

        self.state = STARTING
        self.workdir = Path(workdir)

        proc_env = os.environ.copy()
        if self.env:
            proc_env.update(self.env)

        argv = shlex.split(self.profile.executable)
        try:
            self.process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.workdir,
                env=proc_env,
                start_new_session=True,  # New process group for clean kill
            )
        except OSError as e:
            self.state = STOPPED
            raise StartupError(
                f"Failed to start {self.profile.name}: {e}. "
                f"Is '{self.profile.executable}' installed and in your PATH?"
            ) from e

        self.channel = ProtocolChannel(
            self.process.stdin, self.process.stdout, self.process.stderr,
            terminator=self.profile.terminator,
            error_pattern=self.profile.error_pattern,
            timeout=self.command_timeout,
            strip_ansi=self.strip_ansi,
            interrupt=self.interrupt,
        )

        try:
            await asyncio.wait_for(self.channel.wait_ready(), timeout=self.profile.start_timeout)
        except asyncio.TimeoutError:
            await self.stop()
            raise StartupError(
                f"{self.profile.name} process failed to start within {self.profile.start_timeout:g}s. "
                f"Is '{self.profile.executable}' installed and in your PATH?"
            ) from None
        except ProcessExited:
            returncode = await self.process.wait()
            await self.stop()
            raise StartupError(f"{self.profile.name} process exited with code {returncode}") from None
        except BaseException:
            # Cancelled while waiting; leave the handle stopped, not starting
            await self.stop()
            raise

        self.state = READY
        log.info("%s started (PID %d) in %s", self.profile.name, self.process.pid, self.workdir)
        return f"{self.profile.name} started (PID {self.process.pid})"

    async def send(self, command: str, timeout: float | None = None) -> str:
        """Send one command through the channel."""
        if not self.is_running or self.channel is None:
            raise ProcessExited(f"{self.profile.name} process is not running")
        return await self.channel.send(command, timeout=timeout)

    def interrupt(self):
        """Send SIGINT to the entire process group."""
        if self.process and self.process.returncode is None:
            try:
                os.killpg(os.getpgid(self.process.pid), signal.SIGINT)
            except (ProcessLookupError, PermissionError):
                pass

    async def stop(self):
        """Kill the process group and wait for cleanup. No-op if not running."""
        proc = self.process
        if proc is not None and proc.returncode is None:
            log.info("Ending %s process (PID %d)", self.profile.name, proc.pid)
            try:
                os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
            except (ProcessLookupError, PermissionError):
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=5)
            except asyncio.TimeoutError:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        if self.channel is not None:
            await self.channel.close()
        self.process = None
        self.channel = None
        if self.state != NOT_STARTED:
            self.state = STOPPED

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    async def __aenter__(self):
        await self.start(self.workdir or ".")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
