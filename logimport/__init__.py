"""Incremental import of HTTP access logs into a relational store."""

from .entry import LogEntry
from .importer import ImportTotals, import_file, import_logs
from .parser import parse_line

__version__ = "0.1.0"

__all__ = [
    "ImportTotals",
    "LogEntry",
    "import_file",
    "import_logs",
    "parse_line",
]
