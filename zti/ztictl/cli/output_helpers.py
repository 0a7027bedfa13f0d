import json
import sys
from collections.abc import Mapping
from collections.abc import Sequence
from typing import Any
from typing import assert_never

from zti.zti_common.pure import pure
from zti.ztictl.primitives import OutputFormat


def _write_json_line(data: Mapping[str, Any]) -> None:
    """Write a JSON object as a line to stdout, bypassing the logger."""
    sys.stdout.write(json.dumps(data, default=str) + "\n")
    sys.stdout.flush()


def write_human_line(message: str, *args: Any) -> None:
    """Write a human-readable output line to stdout.

    Use this for command output (results, tables). Diagnostics go through logger.*.
    Accepts positional format args like loguru: write_human_line("Reached {} targets", count).
    """
    formatted = message.format(*args) if args else message
    sys.stdout.write(formatted + "\n")
    sys.stdout.flush()


def write_block(text: str, stream: Any = None) -> None:
    """Write captured remote output verbatim, ending it with a newline."""
    target = stream if stream is not None else sys.stdout
    if not text:
        return
    target.write(text)
    if not text.endswith("\n"):
        target.write("\n")
    target.flush()


@pure
def format_error_for_cli(error: Exception, user_help_text: str | None) -> str:
    message = str(error.args[0]) if error.args else str(error)
    if user_help_text:
        return f"{message}\n\n{user_help_text}"
    return message


@pure
def format_size(size_bytes: int) -> str:
    """Format bytes into a human-readable size string."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024**2:
        return f"{size_bytes / 1024:.1f} KB"
    if size_bytes < 1024**3:
        return f"{size_bytes / 1024**2:.1f} MB"
    return f"{size_bytes / 1024**3:.2f} GB"


@pure
def format_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> list[str]:
    """Lay out rows as left-aligned columns separated by two spaces."""
    widths = [len(h) for h in headers]
    for row in rows:
        for index, cell in enumerate(row):
            widths[index] = max(widths[index], len(cell))
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip()]
    for row in rows:
        lines.append("  ".join(cell.ljust(w) for cell, w in zip(row, widths)).rstrip())
    return lines


def emit_event(
    # The type of event (e.g., "target_result", "grant_revoked")
    event_type: str,
    # Event data. For HUMAN format, a "message" key is printed if present.
    data: Mapping[str, Any],
    output_format: OutputFormat,
) -> None:
    """Emit an event in the appropriate format."""
    match output_format:
        case OutputFormat.HUMAN:
            if "message" in data:
                write_human_line(str(data["message"]))
        case OutputFormat.JSONL:
            _write_json_line({"event": event_type, **data})
        case OutputFormat.JSON:
            # JSON mode: silent until final output
            pass
        case _ as unreachable:
            assert_never(unreachable)


def emit_final_json(data: Mapping[str, Any]) -> None:
    """Emit final JSON output (for JSON format only)."""
    _write_json_line(data)
