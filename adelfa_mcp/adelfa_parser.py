"""Split Adelfa/Abella documents into top-level commands."""

import bisect
from dataclasses import dataclass
from typing import NamedTuple


class Position(NamedTuple):
    """A (line, character) location in a document, both 0-indexed.

    Tuple ordering gives document order.
    """
    line: int
    character: int


ORIGIN = Position(0, 0)


@dataclass(frozen=True)
class Range:
    """Half-open span [start, end) over document positions."""
    start: Position
    end: Position

    @property
    def is_empty(self) -> bool:
        return self.start == self.end

    def contains(self, pos: Position) -> bool:
        return self.start <= pos < self.end

    def overlaps(self, other: "Range") -> bool:
        return self.start < other.end and other.start < self.end

    def to_dict(self) -> dict:
        return {
            "start": {"line": self.start.line, "character": self.start.character},
            "end": {"line": self.end.line, "character": self.end.character},
        }


EMPTY_RANGE = Range(ORIGIN, ORIGIN)


@dataclass(frozen=True)
class Command:
    """One top-level command: its source span (terminator included) and trimmed text."""
    span: Range
    text: str


@dataclass(frozen=True)
class ContentChange:
    """Replace `range` (in pre-edit coordinates) with `text`."""
    range: Range
    text: str


def build_line_starts(content: str) -> list[int]:
    """Build table mapping 0-indexed line numbers to char offsets."""
    starts = [0]
    for i, c in enumerate(content):
        if c == '\n':
            starts.append(i + 1)
    return starts


class Document:
    """In-memory text document with line/character addressing."""

    def __init__(self, text: str = "", path=None):
        self.path = path
        self._set_text(text)

    def _set_text(self, text: str):
        self._text = text
        self._line_starts = build_line_starts(text)
        self._lines = text.split('\n')

    @property
    def text(self) -> str:
        return self._text

    @property
    def line_count(self) -> int:
        return len(self._lines)

    def line_at(self, line: int) -> str:
        """Text of `line` without its line break."""
        return self._lines[line].rstrip('\r')

    @property
    def end_position(self) -> Position:
        last = self.line_count - 1
        return Position(last, len(self.line_at(last)))

    def offset_at(self, pos: Position) -> int:
        """Convert a position to a char offset, clamping to the document."""
        if pos.line < 0:
            return 0
        if pos.line >= self.line_count:
            return len(self._text)
        return self._line_starts[pos.line] + min(max(pos.character, 0), len(self._lines[pos.line]))

    def position_at(self, offset: int) -> Position:
        offset = min(max(offset, 0), len(self._text))
        line = bisect.bisect_right(self._line_starts, offset) - 1
        return Position(line, offset - self._line_starts[line])

    def validate_position(self, pos: Position) -> Position:
        return self.position_at(self.offset_at(pos))

    def apply_changes(self, changes: list[ContentChange]):
        """Apply edits whose ranges all refer to the current (pre-edit) text."""
        text = self._text
        # Later edits first so earlier offsets stay valid
        for change in sorted(changes, key=lambda c: c.range.start, reverse=True):
            start = self.offset_at(change.range.start)
            end = self.offset_at(change.range.end)
            text = text[:start] + change.text + text[end:]
        self._set_text(text)

    def replace_text(self, text: str):
        self._set_text(text)


def parse_commands(document: Document, rng: Range) -> list[Command]:
    """Split the text inside `rng` into terminated top-level commands.

    `%` starts a line comment outside strings, `"` toggles string mode, and `.`
    outside a string ends a command. A trailing fragment with no terminator is
    not returned.
    """
    commands = []
    buf: list[str] = []
    started = False
    in_string = False
    cmd_start = rng.start

    last_line = min(rng.end.line, document.line_count - 1)
    for line_num in range(rng.start.line, last_line + 1):
        line_text = document.line_at(line_num)
        first_char = rng.start.character if line_num == rng.start.line else 0
        end_char = rng.end.character if line_num == rng.end.line else len(line_text)
        end_char = min(end_char, len(line_text))

        if line_num > rng.start.line and buf:
            buf.append('\n')

        for char_num in range(first_char, end_char):
            char = line_text[char_num]

            if char == '%' and not in_string:
                break

            if not started and not char.isspace():
                cmd_start = Position(line_num, char_num)
                started = True

            buf.append(char)

            if char == '"':
                in_string = not in_string

            if char == '.' and not in_string:
                commands.append(Command(
                    span=Range(cmd_start, Position(line_num, char_num + 1)),
                    text=''.join(buf).strip(),
                ))
                buf = []
                started = False

    return commands


def get_commands_in_range(document: Document, start: Position, end: Position) -> list[Command]:
    return parse_commands(document, Range(start, end))


def parse_text(text: str) -> list[Command]:
    """Split a whole string into commands."""
    document = Document(text)
    return parse_commands(document, Range(ORIGIN, document.end_position))
