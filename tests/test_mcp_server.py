"""Test the Adelfa MCP server tools against the fake REPL."""

import asyncio
import os
import shlex
import subprocess
import sys

import pytest

from adelfa_mcp.adelfa_mcp_server import (
    _sessions,
    _kill_process_group,
    adelfa_cursor as _adelfa_cursor,
    adelfa_edit as _adelfa_edit,
    adelfa_output as _adelfa_output,
    adelfa_reload as _adelfa_reload,
    adelfa_restart as _adelfa_restart,
    adelfa_run as _adelfa_run,
    adelfa_sessions as _adelfa_sessions,
    adelfa_start as _adelfa_start,
    adelfa_status as _adelfa_status,
    adelfa_stop as _adelfa_stop,
)

from conftest import fake_executable

# Unwrap FunctionTool to get actual functions
adelfa_start = _adelfa_start.fn
adelfa_sessions = _adelfa_sessions.fn
adelfa_edit = _adelfa_edit.fn
adelfa_cursor = _adelfa_cursor.fn
adelfa_reload = _adelfa_reload.fn
adelfa_output = _adelfa_output.fn
adelfa_status = _adelfa_status.fn
adelfa_stop = _adelfa_stop.fn
adelfa_restart = _adelfa_restart.fn
adelfa_run = _adelfa_run.fn


@pytest.fixture(autouse=True)
async def stop_all_sessions():
    yield
    for name in list(_sessions):
        await adelfa_stop(session=name)


def accepted(session: str = "default") -> list[str]:
    return [r.text for r in _sessions[session].sync.state.commands]


async def test_session_lifecycle(fake_env, nat_file):
    """Test basic session start/list/stop."""
    result = await adelfa_start(file=str(nat_file), name="test")
    assert "Session 'test' started (adelfa, PID" in result
    assert "Evaluated: 2:1-6:34 (4 commands)" in result
    assert ">> plus : nat -> nat -> nat -> type." in result

    result = await adelfa_sessions()
    assert "test" in result
    assert "running" in result
    assert "to 6:34" in result

    result = await adelfa_stop(session="test")
    assert "Session 'test' stopped" in result
    assert "test" not in _sessions
    assert await adelfa_sessions() == "No active sessions."


async def test_start_is_idempotent(fake_env, nat_file):
    await adelfa_start(file=str(nat_file))
    pid = _sessions["default"].sync.session.pid

    result = await adelfa_start(file=str(nat_file))
    assert "already running" in result
    assert _sessions["default"].sync.session.pid == pid


async def test_start_at_line(fake_env, nat_file):
    result = await adelfa_start(file=str(nat_file), line=2, col=12)
    assert "(1 commands)" in result
    assert accepted() == ["nat : type."]


async def test_start_errors(fake_env, nat_file, monkeypatch):
    result = await adelfa_start(file=str(nat_file.parent / "missing.ath"))
    assert result.startswith("ERROR: File not found")

    result = await adelfa_start(file=str(nat_file), dialect="coq")
    assert "Unknown dialect 'coq'" in result

    monkeypatch.setenv("ADELFA_PATH", fake_executable("--exit"))
    result = await adelfa_start(file=str(nat_file))
    assert result.startswith("ERROR starting adelfa")
    assert "default" not in _sessions


async def test_unknown_session(fake_env):
    assert "not found" in await adelfa_edit(1, 1, 1, 1, "x", session="nope")
    assert "not found" in await adelfa_cursor(1, session="nope")
    assert "not found" in await adelfa_reload(session="nope")
    assert "not running" in await adelfa_output(session="nope")
    assert "not found" in await adelfa_status(session="nope")
    assert "not found" in await adelfa_stop(session="nope")
    assert "not found" in await adelfa_restart(session="nope")


async def test_edit_reexecutes(fake_env, nat_file):
    await adelfa_start(file=str(nat_file))

    # "z : nat." -> "o : nat."
    result = await adelfa_edit(3, 1, 3, 2, "o")
    assert "Evaluated: 2:1-6:34 (4 commands)" in result
    assert accepted() == ["nat : type.", "o : nat.", "s : nat -> nat.", "plus : nat -> nat -> nat -> type."]
    assert "z : nat." in nat_file.read_text()


async def test_edit_save_writes_file(fake_env, nat_file):
    await adelfa_start(file=str(nat_file))
    await adelfa_edit(3, 1, 3, 2, "o", save=True)
    assert "o : nat." in nat_file.read_text()


async def test_edit_invalid_range(fake_env, nat_file):
    await adelfa_start(file=str(nat_file))
    result = await adelfa_edit(3, 5, 3, 1, "x")
    assert result.startswith("ERROR: Edit range ends")


async def test_cursor(fake_env, nat_file):
    await adelfa_start(file=str(nat_file), line=1)
    assert accepted() == []

    result = await adelfa_cursor(line=3, col=9)
    assert ">> z : nat." in result
    assert accepted() == ["nat : type.", "z : nat."]

    # Moving back only changes the output shown
    result = await adelfa_cursor(line=1)
    assert "No command found" in result
    assert accepted() == ["nat : type.", "z : nat."]


async def test_cursor_selection(fake_env, nat_file):
    await adelfa_start(file=str(nat_file), line=1)
    await adelfa_cursor(line=1, anchor_line=4, anchor_col=16)
    assert accepted() == ["nat : type.", "z : nat.", "s : nat -> nat."]


async def test_reload(fake_env, nat_file):
    await adelfa_start(file=str(nat_file))

    result = await adelfa_reload()
    assert result.startswith("File unchanged.")

    nat_file.write_text(nat_file.read_text().replace("s : nat", "succ : nat"))
    result = await adelfa_reload()
    assert result.startswith("File changed, resynchronized.")
    assert "succ : nat -> nat." in accepted()
    assert "s : nat -> nat." not in accepted()


async def test_error_reported(fake_env, tmp_path):
    f = tmp_path / "broken.ath"
    f.write_text("nat : type.\nbad : nat.\nz : nat.\n")

    result = await adelfa_start(file=str(f))
    assert "Error at 2:1: bad : nat." in result
    assert "Unknown constant" in result
    assert accepted() == ["nat : type."]

    result = await adelfa_status()
    assert "Error at 2:1-2:11: bad : nat." in result
    assert "!    2 | bad : nat." in result

    result = await adelfa_edit(2, 1, 2, 4, "one")
    assert "Error at" not in result
    assert accepted() == ["nat : type.", "one : nat.", "z : nat."]


async def test_output_and_status(fake_env, nat_file):
    await adelfa_start(file=str(nat_file), line=3, col=9)

    result = await adelfa_output()
    assert result == ">> z : nat.\n\nok: z : nat."

    result = await adelfa_status()
    assert "Dialect: adelfa" in result
    assert "Process: running" in result
    assert "Cursor: 3:9" in result
    assert "Commands accepted: 2" in result
    assert "#    2 | nat : type." in result
    assert "#    3 | z : nat." in result
    assert "     4 | s : nat -> nat." in result


async def test_output_truncated(fake_env, nat_file):
    await adelfa_start(file=str(nat_file))
    result = await adelfa_output(max_output=5)
    assert result.startswith("[TRUNCATED:")


async def test_restart(fake_env, nat_file):
    await adelfa_start(file=str(nat_file), line=3, col=9)
    old_pid = _sessions["default"].sync.session.pid

    result = await adelfa_restart()
    assert "Session 'default' started" in result
    assert _sessions["default"].sync.session.pid != old_pid
    assert accepted() == ["nat : type.", "z : nat."]


async def test_dialect_guessed_from_suffix(fake_env, monkeypatch, tmp_path):
    monkeypatch.delenv("ADELFA_DIALECT")
    monkeypatch.setenv("ABELLA_PATH", fake_executable("--dialect", "abella"))
    f = tmp_path / "nat.thm"
    f.write_text("Kind nat type.\n")

    result = await adelfa_start(file=str(f))
    assert "(abella, PID" in result
    assert accepted() == ["Kind nat type."]


async def test_run_whole_file(fake_env, nat_file):
    result = await adelfa_run(file=str(nat_file))
    assert result.startswith("Exit code 0.")
    assert "Welcome to Adelfa" in result

    result = await adelfa_run(file=str(nat_file.parent / "missing.ath"))
    assert result.startswith("ERROR: File not found")


# =============================================================================
# Batch run cleanup
# =============================================================================


def _pid_exists(pid: int) -> bool:
    """Check if a process with given PID exists."""
    try:
        os.kill(pid, 0)  # Signal 0 just checks existence
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


async def _wait_for_pid(pidfile) -> int:
    for _ in range(100):
        if pidfile.exists() and pidfile.read_text():
            return int(pidfile.read_text())
        await asyncio.sleep(0.05)
    raise AssertionError("batch process never started")


async def test_run_timeout_kills_process(fake_env, nat_file, monkeypatch, tmp_path):
    pidfile = tmp_path / "run.pid"
    monkeypatch.setenv("ADELFA_PATH", fake_executable("--mute", "--pidfile", str(pidfile)))

    result = await adelfa_run(file=str(nat_file), timeout=1)
    assert result.startswith("ERROR: Run timed out after 1s.")
    assert not _pid_exists(int(pidfile.read_text()))


async def test_cancelled_run_kills_process(fake_env, nat_file, monkeypatch, tmp_path):
    pidfile = tmp_path / "run.pid"
    monkeypatch.setenv("ADELFA_PATH", fake_executable("--mute", "--pidfile", str(pidfile)))

    task = asyncio.create_task(adelfa_run(file=str(nat_file), timeout=60))
    pid = await _wait_for_pid(pidfile)
    assert _pid_exists(pid)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not _pid_exists(pid)


async def test_kill_process_group_after_exit(fake_env):
    proc = await asyncio.create_subprocess_exec(
        *shlex.split(fake_executable("--exit")), start_new_session=True)
    assert await proc.wait() == 3
    await _kill_process_group(proc)
    await _kill_process_group(None)


# =============================================================================
# CLI Tests
# =============================================================================


def test_cli_help():
    """Test that `python -m adelfa_mcp.adelfa_mcp_server --help` works."""
    result = subprocess.run(
        [sys.executable, "-m", "adelfa_mcp.adelfa_mcp_server", "--help"],
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0
    assert "Adelfa/Abella MCP Server" in result.stdout
    assert "serve" in result.stdout


def test_cli_serve_help(monkeypatch, capsys):
    from adelfa_mcp.adelfa_mcp_server import main

    monkeypatch.setattr(sys, "argv", ["adelfa-mcp", "serve", "--help"])
    with pytest.raises(SystemExit) as exc_info:
        main()
    assert exc_info.value.code == 0
    out = capsys.readouterr().out
    assert "--transport" in out
    assert "stdio" in out
