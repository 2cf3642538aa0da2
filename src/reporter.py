"""Operator-facing progress output.

Collector threads report every query outcome through a single Reporter.
Each message block is written under one lock so output from concurrent
frequency groups never interleaves.
"""

import sys
import threading
from dataclasses import dataclass, field
from typing import List, Optional, TextIO

from config import format_duration


@dataclass(frozen=True)
class QueryInfo:
    """Identifies one query execution within a sample."""
    query_id: str
    promquery: str
    frequency_seconds: float
    sample_number: int
    total_samples: int


@dataclass
class QueryResult:
    """Outcome of one query execution as shown to the operator."""
    success: bool
    error: Optional[Exception] = None
    warnings: List[str] = field(default_factory=list)


class Reporter:
    """Serialized writer for collection progress."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        """Initialize the reporter.

        Args:
            stream: Output stream (defaults to sys.stdout at write time)
        """
        self._stream = stream
        self._lock = threading.Lock()

    def _write(self, lines: List[str]) -> None:
        stream = self._stream or sys.stdout
        with self._lock:
            stream.write("\n".join(lines) + "\n")
            stream.flush()

    def print_startup(self, duration: str, deadline: str) -> None:
        self._write(
            ["", f"KPI Collection Started - Duration: {duration} (until {deadline})", ""]
        )

    def print_query_result(self, info: QueryInfo, result: QueryResult) -> None:
        lines = [
            "",
            f"[{info.query_id}] Sample {info.sample_number}/{info.total_samples} "
            f"(freq: {format_duration(info.frequency_seconds)})",
            f"  Query: {info.promquery}",
        ]

        if result.warnings:
            lines.append(f"  Warnings: {result.warnings}")

        if result.success:
            lines.append("  Status: OK - stored in database")
        else:
            lines.append(f"  Status: FAILED - {result.error}")

        self._write(lines)

    def print_shutdown(self, reason: str) -> None:
        self._write(["", f"KPI Collection Stopped: {reason}"])

    def print_message(self, message: str) -> None:
        self._write([message])
