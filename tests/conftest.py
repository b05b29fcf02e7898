"""Pytest fixtures for Adelfa tests."""

import shlex
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from adelfa_mcp.adelfa_config import ABELLA, ADELFA, AdelfaConfig
from adelfa_mcp.adelfa_session import AdelfaSession


FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_ADELFA = FIXTURES_DIR / "fake_adelfa.py"


def fake_executable(*args: str) -> str:
    return shlex.join([sys.executable, str(FAKE_ADELFA), *args])


@pytest.fixture
def adelfa_profile():
    return replace(ADELFA, executable=fake_executable())


@pytest.fixture
def abella_profile():
    return replace(ABELLA, executable=fake_executable("--dialect", "abella"))


@pytest.fixture
def fake_config(adelfa_profile):
    return AdelfaConfig(profile=adelfa_profile, auto_open=True, command_timeout=5.0)


@pytest.fixture
async def adelfa_session(adelfa_profile):
    """Fixture that provides a running fake Adelfa session."""
    session = AdelfaSession(adelfa_profile, command_timeout=5.0)
    await session.start(FIXTURES_DIR)
    yield session
    await session.stop()


@pytest.fixture
def fake_env(monkeypatch):
    """Point the server's configuration at the fake REPL."""
    monkeypatch.setenv("ADELFA_PATH", fake_executable())
    monkeypatch.setenv("ADELFA_DIALECT", "adelfa")
    monkeypatch.setenv("ADELFA_TIMEOUT", "5")


@pytest.fixture
def nat_file(tmp_path: Path) -> Path:
    """A writable copy of the sample document."""
    f = tmp_path / "nat.ath"
    f.write_text((FIXTURES_DIR / "nat.ath").read_text())
    return f
