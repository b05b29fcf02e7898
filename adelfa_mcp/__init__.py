"""Adelfa/Abella MCP server and document synchronization engine."""

from .adelfa_parser import Position, Range, Command, Document, parse_commands, parse_text
from .adelfa_session import AdelfaSession
from .adelfa_state import SessionState, CommandRecord, ErrorInfo
from .adelfa_sync import DocumentSync, Selection
from .adelfa_mcp_server import mcp, _sessions, SessionEntry

__all__ = [
    "Position", "Range", "Command", "Document", "parse_commands", "parse_text",
    "AdelfaSession",
    "SessionState", "CommandRecord", "ErrorInfo",
    "DocumentSync", "Selection",
    "mcp", "_sessions", "SessionEntry",
]
