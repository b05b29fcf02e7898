"""Presentation and decoration sinks for a synchronized document."""

from dataclasses import dataclass, field

from .adelfa_parser import EMPTY_RANGE, Range


class InfoPanel:
    """Holds the latest `{code}` / `{message}` update for the output view."""

    def __init__(self):
        self._open = False
        self._current: dict | None = None

    def open(self):
        self._open = True

    def close(self):
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def update(self, *, code: str | None = None, message: str | None = None) -> bool:
        """Record an update. Returns False (nothing delivered) while closed."""
        if not self._open:
            return False
        self._current = {"code": code} if code is not None else {"message": message}
        return True

    def current_content(self) -> str | None:
        if not self._current:
            return None
        return self._current.get("message") or self._current.get("code")


@dataclass
class DecorationStore:
    """Last evaluated range, error span and per-line statuses pushed by the driver."""
    evaluated_range: Range = EMPTY_RANGE
    error_range: Range | None = None
    line_statuses: dict[int, str] = field(default_factory=dict)

    def update(self, evaluated_range: Range, error_range: Range | None, line_statuses: dict[int, str]):
        self.evaluated_range = evaluated_range
        self.error_range = error_range
        self.line_statuses = dict(line_statuses)

    def show_error(self, error_range: Range):
        self.error_range = error_range

    def clear_error(self):
        self.error_range = None

    def clear(self):
        self.evaluated_range = EMPTY_RANGE
        self.error_range = None
        self.line_statuses = {}

    def render_gutter(self, line_count: int) -> list[str]:
        """One marker per line: '#' fully processed, '~' partial, '!' error, ' ' otherwise."""
        marks = {"fully-processed": "#", "partially-processed": "~", "error": "!"}
        return [marks.get(self.line_statuses.get(i, ""), " ") for i in range(line_count)]
