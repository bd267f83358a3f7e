"""Error classification, action parsing and execution helpers."""

from .actions import CommandAction, FileAction, parse_actions, parse_command_actions, parse_file_actions
from .errors import (
    ErrorKind,
    OutputAnalysis,
    ParsedError,
    analyze_output,
    classify,
    group_by_file,
    has_errors,
    sort_by_priority,
    summarize_errors,
)
from .executor import ActionExecutor, CommandResult, ExecutionReport, run_captured
from .fix_logs import FixLogEntry, load_fix_log, write_fix_log

__all__ = [
    "ActionExecutor",
    "CommandAction",
    "CommandResult",
    "ErrorKind",
    "ExecutionReport",
    "FileAction",
    "FixLogEntry",
    "OutputAnalysis",
    "ParsedError",
    "analyze_output",
    "classify",
    "group_by_file",
    "has_errors",
    "load_fix_log",
    "parse_actions",
    "parse_command_actions",
    "parse_file_actions",
    "run_captured",
    "sort_by_priority",
    "summarize_errors",
    "write_fix_log",
]
