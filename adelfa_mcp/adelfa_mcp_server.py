#!/usr/bin/env python3
"""Adelfa MCP Server - keeps a proof document in sync with an Adelfa/Abella REPL.

Sessions are in-memory only. Each session owns one document, one assistant
process and its accepted-command history; nothing survives a server restart.
"""

import asyncio
import os
import shlex
import signal
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastmcp import FastMCP, Context

from .adelfa_config import DIALECTS, AdelfaConfig, dialect_for_file
from .adelfa_errors import StartupError
from .adelfa_parser import ContentChange, Document, Position, Range
from .adelfa_sync import DocumentSync, Selection


DEFAULT_MAX_OUTPUT = 4096


def _truncate_output(output: str, max_output: int) -> str:
    """Truncate output to max_output bytes, showing tail."""
    if max_output < 1:
        return f"ERROR: max_output must be positive (got {max_output})"
    if len(output) > max_output:
        return f"[TRUNCATED: {len(output)} bytes, showing last {max_output}]\n\n{output[-max_output:]}"
    return output


@dataclass
class SessionEntry:
    """Registry entry for a synchronized document."""
    sync: DocumentSync
    started: datetime
    file: Path
    last_used: float = 0.0  # time.time() of last activity
    env: Optional[dict] = None  # env vars passed to the assistant process
    dialect: Optional[str] = None

    def __post_init__(self):
        if self.last_used == 0.0:
            self.last_used = time.time()


mcp = FastMCP("adelfa", instructions="""Adelfa/Abella proof assistant - document workflow:

1. adelfa_start: Open a .ath/.lf/.thm file; commands up to the cursor are executed
2. adelfa_edit / adelfa_cursor: Change text or move the cursor; only the affected
   commands are undone and re-executed
3. adelfa_reload: After editing the file on disk, resync from the first change
4. adelfa_output: Output of the last command before the cursor (or the error)

Positions are 1-indexed lines and columns. The cursor position decides how much
of the file is sent to the assistant.
""")
_sessions: dict[str, SessionEntry] = {}


_SESSION_IDLE_TIMEOUT = 7200  # 2 hours
_PRUNE_INTERVAL = 300  # Check every 5 minutes at most
_last_prune_time = 0.0


async def _prune_idle_sessions():
    """Stop and remove sessions idle longer than _SESSION_IDLE_TIMEOUT.

    Throttled to run at most once per _PRUNE_INTERVAL seconds.
    """
    global _last_prune_time
    now = time.time()
    if now - _last_prune_time < _PRUNE_INTERVAL:
        return
    _last_prune_time = now
    to_prune = [
        name for name, entry in _sessions.items()
        if now - entry.last_used > _SESSION_IDLE_TIMEOUT
    ]
    for name in to_prune:
        entry = _sessions.get(name)
        if not entry:
            continue
        # Re-check: session may have been touched during a prior await
        if time.time() - entry.last_used <= _SESSION_IDLE_TIMEOUT:
            continue
        _sessions.pop(name, None)
        await entry.sync.dispose()


async def _get_sync(name: str) -> Optional[DocumentSync]:
    """Get session from registry, or None if not found. Triggers idle pruning."""
    await _prune_idle_sessions()
    entry = _sessions.get(name)
    if entry:
        entry.last_used = time.time()
    return entry.sync if entry else None


def _format_age(secs: int) -> str:
    if secs < 60:
        return f"{secs}s"
    elif secs < 3600:
        return f"{secs // 60}m"
    return f"{secs / 3600:.1f}h"


def _to_position(line: int, col: int) -> Position:
    """1-indexed tool coordinates to a 0-indexed document position."""
    return Position(max(line, 1) - 1, max(col, 1) - 1)


def _loc(pos: Position) -> str:
    return f"{pos.line + 1}:{pos.character + 1}"


def _format_info(sync: DocumentSync) -> str:
    """Evaluated range, error location and the info panel content."""
    lines = []
    evaluated = sync.state.evaluated_range
    if evaluated.is_empty:
        lines.append("Evaluated: nothing")
    else:
        lines.append(f"Evaluated: {_loc(evaluated.start)}-{_loc(evaluated.end)} "
                     f"({len(sync.state.commands)} commands)")
    error = sync.state.error_info
    if error:
        lines.append(f"Error at {_loc(error.span.start)}: {error.text}")
    lines.append("")
    lines.append(sync.info.current_content() or "(no output)")
    return "\n".join(lines)


async def _start_entry(name: str, file_path: Path, pos: Position | None,
                       env: dict | None, dialect: str | None) -> str:
    if dialect and dialect not in DIALECTS:
        return f"ERROR: Unknown dialect '{dialect}' (expected one of {', '.join(sorted(DIALECTS))})"
    if not dialect and not os.environ.get("ADELFA_DIALECT"):
        guessed = dialect_for_file(file_path)
        dialect = guessed.name if guessed else None
    try:
        config = AdelfaConfig.from_env(dialect=dialect).with_env(env)
    except ValueError as e:
        return f"ERROR: {e}"

    document = Document(file_path.read_text(), path=file_path)
    if pos is None:
        pos = document.end_position
    sync = DocumentSync(document, config)

    try:
        await sync.load(Selection.at(document.validate_position(pos)))
    except StartupError as e:
        await sync.dispose()
        return f"ERROR starting {config.profile.name}: {e}"

    # Handle concurrent adelfa_start(name=...) calls
    existing = _sessions.get(name)
    if existing and existing.sync.session.is_running:
        await sync.dispose()
        return f"Session '{name}' already running.\n\n{_format_info(existing.sync)}"

    _sessions[name] = SessionEntry(sync, datetime.now(), file_path, env=env, dialect=dialect)
    return (f"Session '{name}' started ({config.profile.name}, PID {sync.session.pid}).\n"
            f"File: {file_path}\n{_format_info(sync)}")


@mcp.tool()
async def adelfa_start(file: str, name: str = "default", line: int = None, col: int = 1,
                       env: dict = None, dialect: str = None) -> str:
    """Start an Adelfa/Abella session for a file and execute it up to the cursor.

    Idempotent - returns existing session if already running.

    Args:
        file: Path to the proof file (.ath, .lf, .thm)
        name: Session identifier (e.g., "main")
        line: 1-indexed cursor line (default: end of file)
        col: 1-indexed cursor column (default 1)
        env: Optional environment variables for the assistant process
        dialect: "adelfa" or "abella" (default: ADELFA_DIALECT, else guessed from the file suffix)

    Returns: Session status and output at the cursor
    """
    await _prune_idle_sessions()
    if name in _sessions:
        entry = _sessions[name]
        if entry.sync.session.is_running:
            return f"Session '{name}' already running.\n\n{_format_info(entry.sync)}"
        # Dead session - clean up
        del _sessions[name]
        await entry.sync.dispose()

    file_path = Path(file).resolve()
    if not file_path.is_file():
        return f"ERROR: File not found: {file}"

    pos = _to_position(line, col) if line is not None else None
    return await _start_entry(name, file_path, pos, env, dialect)


@mcp.tool()
async def adelfa_sessions() -> str:
    """List all active sessions with their file, age, status and evaluated range."""
    await _prune_idle_sessions()
    if not _sessions:
        return "No active sessions."

    lines = ["SESSION      FILE                                       AGE     IDLE    STATUS   EVALUATED"]
    lines.append("-" * 105)

    now = time.time()
    for name, entry in _sessions.items():
        sync = entry.sync
        status = "running" if sync.session.is_running else "dead"
        age = _format_age(int((datetime.now() - entry.started).total_seconds()))
        idle = _format_age(int(now - entry.last_used))
        file_str = str(entry.file)
        if len(file_str) > 40:
            file_str = "..." + file_str[-37:]
        evaluated = sync.state.evaluated_range
        evaluated_str = "(none)" if evaluated.is_empty else f"to {_loc(evaluated.end)}"
        if sync.state.error_info:
            evaluated_str += " [error]"
        lines.append(f"{name:<12} {file_str:<42} {age:<7} {idle:<7} {status:<8} {evaluated_str}")

    return "\n".join(lines)


@mcp.tool()
async def adelfa_edit(start_line: int, start_col: int, end_line: int, end_col: int, text: str,
                      save: bool = False, max_output: int = DEFAULT_MAX_OUTPUT,
                      session: str = "default") -> str:
    """Replace a range of the document and resynchronize.

    Commands ending at or after the start of the edit are undone in the
    assistant, then everything up to the cursor is executed again.

    Args:
        start_line, start_col: 1-indexed start of the replaced range
        end_line, end_col: 1-indexed end (exclusive) of the replaced range
        text: Replacement text (empty to delete)
        save: Also write the edited document back to the file
        max_output: Max bytes of output to return (default 4096)
        session: Session name (default: "default")

    Returns: Evaluated range and output at the cursor
    """
    sync = await _get_sync(session)
    if not sync:
        return f"ERROR: Session '{session}' not found. Use adelfa_sessions() to list available sessions."
    if not sync.session.is_running:
        return f"ERROR: Session '{session}' died. Use adelfa_restart() to start it again."

    start = _to_position(start_line, start_col)
    end = _to_position(end_line, end_col)
    if end < start:
        return f"ERROR: Edit range ends ({end_line}:{end_col}) before it starts ({start_line}:{start_col})"

    sync.apply_edit([ContentChange(Range(start, end), text)])
    if save and sync.document.path:
        Path(sync.document.path).write_text(sync.document.text)
    await sync.flush()
    return _truncate_output(_format_info(sync), max_output)


@mcp.tool()
async def adelfa_cursor(line: int, col: int = 1, anchor_line: int = None, anchor_col: int = 1,
                        max_output: int = DEFAULT_MAX_OUTPUT, session: str = "default") -> str:
    """Move the cursor. Commands up to the cursor (or selection end) are executed.

    Moving the cursor backwards never undoes anything; it only changes which
    command's output is shown.

    Args:
        line: 1-indexed cursor line
        col: 1-indexed cursor column (default 1)
        anchor_line: 1-indexed selection anchor line (default: same as cursor)
        anchor_col: 1-indexed selection anchor column (default 1)
        max_output: Max bytes of output to return (default 4096)
        session: Session name (default: "default")

    Returns: Evaluated range and output at the cursor
    """
    sync = await _get_sync(session)
    if not sync:
        return f"ERROR: Session '{session}' not found. Use adelfa_sessions() to list available sessions."
    if not sync.session.is_running:
        return f"ERROR: Session '{session}' died. Use adelfa_restart() to start it again."

    active = sync.document.validate_position(_to_position(line, col))
    anchor = active
    if anchor_line is not None:
        anchor = sync.document.validate_position(_to_position(anchor_line, anchor_col))

    sync.on_cursor_move(Selection(anchor, active))
    await sync.flush()
    return _truncate_output(_format_info(sync), max_output)


@mcp.tool()
async def adelfa_reload(max_output: int = DEFAULT_MAX_OUTPUT, session: str = "default") -> str:
    """Re-read the session's file from disk and resync from the first change.

    Use after editing the file directly instead of through adelfa_edit.

    Args:
        max_output: Max bytes of output to return (default 4096)
        session: Session name (default: "default")

    Returns: Whether the file changed, evaluated range and output at the cursor
    """
    sync = await _get_sync(session)
    if not sync:
        return f"ERROR: Session '{session}' not found."
    if not sync.session.is_running:
        return f"ERROR: Session '{session}' died. Use adelfa_restart() to start it again."

    try:
        text = Path(sync.document.path).read_text()
    except FileNotFoundError:
        return f"ERROR: File not found: {sync.document.path}"

    changed = sync.reload(text)
    await sync.flush()
    header = "File changed, resynchronized." if changed else "File unchanged."
    return _truncate_output(f"{header}\n{_format_info(sync)}", max_output)


@mcp.tool()
async def adelfa_output(max_output: int = DEFAULT_MAX_OUTPUT, session: str = "default") -> str:
    """Show the output of the last command before the cursor (or the current error).

    Args:
        max_output: Max bytes of output to return (default 4096)
        session: Session name (default: "default")

    Returns: `>> command` followed by the assistant's reply
    """
    sync = await _get_sync(session)
    if not sync or not sync.session.is_running:
        return f"ERROR: Session '{session}' is not running."

    sync.info.open()
    sync.show_info_at_position(sync.selection.active)
    return _truncate_output(sync.info.current_content() or "(no output)", max_output)


@mcp.tool()
async def adelfa_status(session: str = "default") -> str:
    """Show evaluated range, error, pending commands, queue and per-line status.

    Args:
        session: Session name (default: "default")

    Returns: Session status with a gutter: '#' processed, '~' partially processed, '!' error
    """
    sync = await _get_sync(session)
    if not sync:
        return f"ERROR: Session '{session}' not found."

    status = sync.status
    lines = [
        f"File: {status['file']}",
        f"Dialect: {status['dialect']}",
        f"Process: {'running' if status['running'] else 'stopped'} (PID {sync.session.pid})",
        f"Cursor: {_loc(sync.selection.active)}",
        f"Commands accepted: {status['commands']}",
        f"Queue: {status['queue_size']} operation(s)"
        + (" [processing]" if sync.is_processing() else ""),
    ]
    if status["pending"]:
        lines.append(f"Pending: {', '.join(status['pending'])}")
    error = sync.state.error_info
    if error:
        lines.append(f"Error at {_loc(error.span.start)}-{_loc(error.span.end)}: {error.text}")
        lines.append(f"  {error.message}")

    lines.append("")
    gutter = sync.decorations.render_gutter(sync.document.line_count)
    for i, mark in enumerate(gutter):
        lines.append(f"{mark} {i + 1:>4} | {sync.document.line_at(i)}")
    return "\n".join(lines)


@mcp.tool()
async def adelfa_stop(session: str = "default") -> str:
    """Terminate a session and its assistant process.

    Args:
        session: Session name (default: "default")

    Returns: Confirmation message
    """
    entry = _sessions.pop(session, None)
    if entry:
        await entry.sync.dispose()
        return f"Session '{session}' stopped."
    return f"Session '{session}' not found."


@mcp.tool()
async def adelfa_restart(session: str = "default") -> str:
    """Restart a session (stop + start), re-reading the file from disk.

    History and errors are discarded; everything up to the cursor is executed again.

    Args:
        session: Session name to restart

    Returns: Same as adelfa_start
    """
    entry = _sessions.get(session)
    if not entry:
        return f"Session '{session}' not found."

    file_path = entry.file
    pos = entry.sync.selection.active
    env, dialect = entry.env, entry.dialect
    await adelfa_stop.fn(session)
    if not file_path.is_file():
        return f"ERROR: File not found: {file_path}"
    return await _start_entry(session, file_path, pos, env, dialect)


async def _kill_process_group(proc):
    """Kill process group: SIGTERM, wait, SIGKILL if needed."""
    if proc is None:
        return

    pgid = proc.pid
    try:
        os.killpg(pgid, signal.SIGTERM)
    except OSError:
        return  # Process group doesn't exist

    if proc.returncode is None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            pass

    try:
        os.killpg(pgid, signal.SIGKILL)
    except OSError:
        pass  # Already gone

    if proc.returncode is None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=0.5)
        except asyncio.TimeoutError:
            pass


# Progress reporting interval for long runs (resets MCP client timeout)
_PROGRESS_INTERVAL = 10  # seconds


@mcp.tool()
async def adelfa_run(file: str, timeout: int = 60, dialect: str = None,
                     max_output: int = DEFAULT_MAX_OUTPUT, ctx: Context = None) -> str:
    """Run a whole file through the assistant in batch mode (e.g. `adelfa -i file.ath`).

    Independent of any session; use it to check a finished file end to end.

    Args:
        file: Path to the proof file
        timeout: Max seconds to wait (default 60, max 1800)
        dialect: "adelfa" or "abella" (default: ADELFA_DIALECT, else guessed from the file suffix)
        max_output: Max bytes of output to return (default 4096)

    Returns: Combined stdout/stderr of the run
    """
    timeout = max(1, min(timeout, 1800))
    file_path = Path(file).resolve()
    if not file_path.is_file():
        return f"ERROR: File not found: {file}"

    if dialect and dialect not in DIALECTS:
        return f"ERROR: Unknown dialect '{dialect}'"
    if not dialect and not os.environ.get("ADELFA_DIALECT"):
        guessed = dialect_for_file(file_path)
        dialect = guessed.name if guessed else None
    try:
        profile = AdelfaConfig.from_env(dialect=dialect).profile
    except ValueError as e:
        return f"ERROR: {e}"

    cmd = [*shlex.split(profile.executable), *profile.batch_args, file_path.name]

    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=file_path.parent,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )

        start_time = time.time()
        chunks = []
        timed_out = False

        while True:
            elapsed = time.time() - start_time
            if elapsed >= timeout:
                timed_out = True
                break

            # Report progress to reset client timeout (MCP resetTimeoutOnProgress)
            if ctx:
                try:
                    await ctx.report_progress(
                        progress=elapsed,
                        total=float(timeout),
                        message=f"Running... {int(elapsed)}s / {timeout}s"
                    )
                except Exception:
                    pass  # Don't fail the run if progress reporting fails

            try:
                chunk = await asyncio.wait_for(
                    proc.stdout.read(4096),
                    timeout=min(_PROGRESS_INTERVAL, timeout - elapsed)
                )
            except asyncio.TimeoutError:
                if proc.returncode is not None:
                    break
                continue
            if not chunk:
                try:
                    await asyncio.wait_for(proc.wait(), timeout=5)
                except asyncio.TimeoutError:
                    pass
                break
            chunks.append(chunk)

        output = b''.join(chunks).decode("utf-8", errors="replace")
        if timed_out:
            return _truncate_output(f"ERROR: Run timed out after {timeout}s.\n\n{output}", max_output)
        return _truncate_output(f"Exit code {proc.returncode}.\n\n{output}", max_output)

    except OSError as e:
        return f"ERROR: Cannot run {profile.executable}: {e}"
    finally:
        await _kill_process_group(proc)


def main():
    """CLI entry point for the Adelfa MCP server."""
    import argparse
    import logging

    parser = argparse.ArgumentParser(description="Adelfa/Abella MCP Server")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the MCP server (default)")
    serve_parser.add_argument(
        "--transport",
        choices=["stdio", "http", "sse"],
        default="stdio",
        help="Transport protocol (default: stdio)",
    )
    serve_parser.add_argument("--port", type=int, default=8000, help="Port for HTTP/SSE (default: 8000)")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host for HTTP/SSE (default: 127.0.0.1)")
    serve_parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    # Also allow serve options at top level
    parser.add_argument("--transport", choices=["stdio", "http", "sse"], default="stdio", help=argparse.SUPPRESS)
    parser.add_argument("--port", type=int, default=8000, help=argparse.SUPPRESS)
    parser.add_argument("--host", default="127.0.0.1", help=argparse.SUPPRESS)
    parser.add_argument("-v", "--verbose", action="store_true", help=argparse.SUPPRESS)

    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )
        logging.getLogger("mcp").setLevel(logging.DEBUG)

    if args.transport == "stdio":
        mcp.run(show_banner=False)
    else:
        print(f"Adelfa MCP server starting on {args.host}:{args.port} ({args.transport})", file=sys.stderr)
        mcp.run(transport=args.transport, host=args.host, port=args.port, show_banner=False)


if __name__ == "__main__":
    main()
