"""Dialect profiles and environment configuration."""

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path

DEFAULT_COMMAND_TIMEOUT = 30.0


@dataclass(frozen=True)
class DialectProfile:
    """How to talk to one proof assistant REPL."""
    name: str
    executable: str
    terminator: str            # Marker that ends every reply (the next prompt)
    undo_command: str
    abort_command: str
    abort_keywords: tuple[str, ...] = ("Theorem",)
    error_pattern: re.Pattern | None = None  # stdout text that signals a rejected command
    start_timeout: float = 10.0
    suffixes: tuple[str, ...] = ()
    batch_args: tuple[str, ...] = ()  # Arguments before the file name for a whole-file run

    def undo_command_for(self, command_text: str) -> str:
        """Undo for a single accepted command; theorem openers need abort."""
        if command_text.lstrip().startswith(self.abort_keywords):
            return self.abort_command
        return self.undo_command


ADELFA = DialectProfile(
    name="adelfa",
    executable="adelfa",
    terminator=">>",
    undo_command="undo.",
    abort_command="abort.",
    suffixes=(".ath", ".lf"),
    batch_args=("-i",),
)

ABELLA = DialectProfile(
    name="abella",
    executable="abella",
    terminator="<",
    undo_command="undo.",
    abort_command="abort.",
    error_pattern=re.compile(r"error", re.IGNORECASE),
    start_timeout=5.0,
    suffixes=(".thm",),
)

DIALECTS = {p.name: p for p in (ADELFA, ABELLA)}


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


@dataclass
class AdelfaConfig:
    """Settings read once when a session starts."""
    profile: DialectProfile = ADELFA
    auto_open: bool = True
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    env: dict = field(default_factory=dict)  # Extra env vars for the subprocess

    @property
    def executable(self) -> str:
        return self.profile.executable

    @classmethod
    def from_env(cls, environ=None, dialect: str | None = None) -> "AdelfaConfig":
        """Read settings from `environ`. An explicit `dialect` overrides ADELFA_DIALECT."""
        environ = os.environ if environ is None else environ

        dialect = (dialect or environ.get("ADELFA_DIALECT") or "adelfa").strip().lower()
        if dialect not in DIALECTS:
            raise ValueError(f"ADELFA_DIALECT must be one of {sorted(DIALECTS)}, got '{dialect}'")
        profile = DIALECTS[dialect]

        path = environ.get("ADELFA_PATH")
        if dialect == "abella":
            path = environ.get("ABELLA_PATH", path)
        if path:
            profile = replace(profile, executable=path)

        timeout = float(environ.get("ADELFA_TIMEOUT", DEFAULT_COMMAND_TIMEOUT))
        if timeout <= 0:
            raise ValueError(f"ADELFA_TIMEOUT must be positive, got {timeout}")

        return cls(
            profile=profile,
            auto_open=_env_bool(environ.get("ADELFA_AUTO_OPEN"), True),
            command_timeout=timeout,
        )

    def with_env(self, env: dict | None) -> "AdelfaConfig":
        if not env:
            return self
        return replace(self, env={**self.env, **env})


def dialect_for_file(path: Path) -> DialectProfile | None:
    """Guess the dialect from a file suffix."""
    for profile in DIALECTS.values():
        if path.suffix in profile.suffixes:
            return profile
    return None
