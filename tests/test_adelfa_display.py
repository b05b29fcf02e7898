"""Tests for the info panel and decoration sinks."""

from adelfa_mcp.adelfa_display import DecorationStore, InfoPanel
from adelfa_mcp.adelfa_parser import EMPTY_RANGE, Position, Range


def test_closed_panel_drops_updates():
    panel = InfoPanel()
    assert not panel.update(message="Loading file")
    assert panel.current_content() is None

    panel.open()
    assert panel.update(message="Loading file")
    assert panel.current_content() == "Loading file"


def test_code_replaces_message():
    panel = InfoPanel()
    panel.open()
    panel.update(message="No command found")
    panel.update(code=">> z : nat.\n\nok")
    assert panel.current_content() == ">> z : nat.\n\nok"

    panel.close()
    assert not panel.is_open
    assert panel.current_content() == ">> z : nat.\n\nok"


def test_decorations_gutter():
    store = DecorationStore()
    error = Range(Position(2, 0), Position(2, 4))
    store.update(Range(Position(0, 0), Position(1, 3)), error,
                 {0: "fully-processed", 1: "partially-processed", 2: "error"})
    assert store.render_gutter(4) == ["#", "~", "!", " "]

    store.clear_error()
    assert store.error_range is None
    store.show_error(error)
    assert store.error_range == error

    store.clear()
    assert store.evaluated_range == EMPTY_RANGE
    assert store.render_gutter(2) == [" ", " "]
