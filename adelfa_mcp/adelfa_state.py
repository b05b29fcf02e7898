"""What the assistant has accepted so far, in document order."""

from dataclasses import dataclass
from typing import Literal

from .adelfa_errors import InvariantViolation
from .adelfa_parser import EMPTY_RANGE, ORIGIN, Command, Position, Range

LineStatus = Literal["fully-processed", "partially-processed", "error"]


@dataclass(frozen=True)
class CommandRecord:
    """A command the assistant accepted, with its reply."""
    span: Range
    text: str
    output: str

    @classmethod
    def accepted(cls, command: Command, output: str) -> "CommandRecord":
        return cls(span=command.span, text=command.text, output=output)


@dataclass(frozen=True)
class ErrorInfo:
    """The first command after the evaluated range that the assistant rejected."""
    span: Range
    text: str
    message: str


def last(items):
    """Last element of a sequence, or None if empty."""
    return items[-1] if items else None


class SessionState:
    """Accepted-command history plus the current error.

    Mutated only from inside operation-queue processors; readers treat the
    returned sequences as snapshots.
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self._commands: list[CommandRecord] = []
        self._file_content: str | None = None
        self._error_info: ErrorInfo | None = None
        self._loading = False
        self._last_successful_position = ORIGIN
        self._pending: set[str] = set()

    @property
    def commands(self) -> tuple[CommandRecord, ...]:
        return tuple(self._commands)

    @property
    def file_content(self) -> str | None:
        return self._file_content

    @property
    def error_info(self) -> ErrorInfo | None:
        return self._error_info

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def last_successful_position(self) -> Position:
        return self._last_successful_position

    @property
    def pending_commands(self) -> frozenset[str]:
        return frozenset(self._pending)

    @property
    def evaluated_range(self) -> Range:
        if not self._commands:
            return EMPTY_RANGE
        return Range(self._commands[0].span.start, self._commands[-1].span.end)

    def set_file_content(self, content: str | None):
        self._file_content = content

    def set_error_info(self, error: ErrorInfo | None):
        self._error_info = error

    def clear_error_info(self):
        self._error_info = None

    def set_loading(self, loading: bool):
        self._loading = loading

    def add_pending_command(self, text: str):
        self._pending.add(text)

    def remove_pending_command(self, text: str):
        self._pending.discard(text)

    def add_command(self, record: CommandRecord):
        """Append an accepted command. Its span must follow the current tail."""
        tail = last(self._commands)
        if tail is not None and record.span.start < tail.span.end:
            raise InvariantViolation(
                f"Command at {tuple(record.span.start)} overlaps or precedes "
                f"accepted command ending at {tuple(tail.span.end)}"
            )
        self._commands.append(record)
        self._last_successful_position = record.span.end
        self._pending.discard(record.text)

    def remove_last_command(self) -> CommandRecord | None:
        if not self._commands:
            return None
        record = self._commands.pop()
        tail = last(self._commands)
        self._last_successful_position = tail.span.end if tail else ORIGIN
        return record

    def get_commands_after_position(self, pos: Position) -> list[CommandRecord]:
        """Records starting at or after `pos`."""
        return [c for c in self._commands if c.span.start >= pos]

    def get_commands_after_position_inclusive(self, pos: Position) -> list[CommandRecord]:
        """Records ending at or after `pos`, including one that straddles it."""
        return [c for c in self._commands if c.span.end >= pos]

    def get_last_command_before_position(self, pos: Position) -> CommandRecord | None:
        """Most recent record that ends at or before `pos`."""
        return last([c for c in self._commands if c.span.end <= pos])

    def get_line_statuses(self) -> dict[int, LineStatus]:
        statuses: dict[int, LineStatus] = {}
        if self._error_info is not None:
            statuses[self._error_info.span.start.line] = "error"

        if not self._commands:
            return statuses

        end = self.evaluated_range.end
        lines = (self._file_content or "").split('\n')
        for line in range(end.line + 1):
            if statuses.get(line) == "error":
                continue
            if line == end.line:
                final_column = len(lines[line].rstrip()) if line < len(lines) else 0
                if final_column and end.character < final_column:
                    statuses[line] = "partially-processed"
                else:
                    statuses[line] = "fully-processed"
            else:
                statuses[line] = "fully-processed"
        return statuses

    def to_dict(self) -> dict:
        error = self._error_info
        return {
            "evaluated_range": self.evaluated_range.to_dict(),
            "commands": len(self._commands),
            "pending": sorted(self._pending),
            "loading": self._loading,
            "error": None if error is None else {
                "range": error.span.to_dict(), "command": error.text, "message": error.message,
            },
        }
