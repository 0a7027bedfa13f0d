import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any
from typing import Final

from loguru import logger

from zti.ztictl.config.data_types import OutputOptions
from zti.ztictl.config.data_types import ZtictlConfig
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.primitives import LogLevel

# 256-color codes, bold for warnings and errors, readable on light and dark backgrounds.
WARNING_COLOR: Final[str] = "\x1b[1;38;5;178m"
ERROR_COLOR: Final[str] = "\x1b[1;38;5;196m"
DEBUG_COLOR: Final[str] = "\x1b[38;5;33m"
TRACE_COLOR: Final[str] = "\x1b[38;5;99m"
RESET_COLOR: Final[str] = "\x1b[0m"

_LEVEL_MAP: Final[dict[LogLevel, str]] = {
    LogLevel.TRACE: "TRACE",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARN: "WARNING",
    LogLevel.ERROR: "ERROR",
    LogLevel.NONE: "CRITICAL",
}


def _dynamic_stderr_sink(message: Any) -> None:
    """Loguru sink that always writes to the current sys.stderr."""
    sys.stderr.write(str(message))
    sys.stderr.flush()


def _format_user_message(record: Any) -> str:
    """Format user-facing log messages, adding colored prefixes for warnings and errors.

    The record parameter is a loguru Record TypedDict, but the type is only available
    in type stubs so we use Any here.
    """
    level_name = record["level"].name
    if level_name == "WARNING":
        return f"{WARNING_COLOR}WARNING: {{message}}{RESET_COLOR}\n"
    if level_name == "ERROR":
        return f"{ERROR_COLOR}ERROR: {{message}}{RESET_COLOR}\n"
    if level_name == "DEBUG":
        return f"{DEBUG_COLOR}{{message}}{RESET_COLOR}\n"
    if level_name == "TRACE":
        return f"{TRACE_COLOR}{{message}}{RESET_COLOR}\n"
    return "{message}\n"


class _BotocoreToLoguruHandler(logging.Handler):
    """Forward botocore and boto3 log records to loguru at TRACE level.

    Retries and credential lookups are logged there through the standard logging
    module; they are useful when debugging with -vv but noise otherwise.
    """

    def emit(self, record: logging.LogRecord) -> None:
        logger.trace("[{}] {}", record.name, record.getMessage())


def redirect_library_logging() -> None:
    handler = _BotocoreToLoguruHandler()
    for name in ("botocore", "boto3", "urllib3"):
        library_logger = logging.getLogger(name)
        library_logger.setLevel(logging.DEBUG)
        library_logger.handlers.clear()
        library_logger.addHandler(handler)
        library_logger.propagate = False


def setup_logging(output_opts: OutputOptions, ztictl_ctx: ZtictlContext) -> None:
    """Configure logging based on output options and the ztictl context.

    Sets up:
    - stderr logging for user-facing messages (clean format)
    - JSON file logging to --log-file, or to <home>/logs/<timestamp>-<pid>.json
    - pruning of old log files (only for the default log directory)

    stdout is left to command output (tables, JSON).
    """
    logger.remove()
    redirect_library_logging()

    if output_opts.console_level != LogLevel.NONE:
        logger.add(
            _dynamic_stderr_sink,
            level=_LEVEL_MAP[output_opts.console_level],
            format=_format_user_message,
            colorize=False,
            diagnose=False,
        )

    config = ztictl_ctx.config
    if output_opts.log_file_path is not None:
        log_file = output_opts.log_file_path.expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        log_dir = None
    else:
        log_dir = resolve_log_dir(config, ztictl_ctx.home_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        log_file = log_dir / f"{timestamp}-{os.getpid()}.json"

    if config.logging.file_level != LogLevel.NONE:
        logger.add(
            log_file,
            level=_LEVEL_MAP[config.logging.file_level],
            format="{message}",
            serialize=True,
            diagnose=False,
            rotation=f"{config.logging.max_log_size_mb} MB",
        )

    # Never prune a user-chosen directory; it may hold unrelated .json files.
    if log_dir is not None:
        rotate_old_logs(log_dir, config.logging.max_log_files)


def resolve_log_dir(config: ZtictlConfig, home_dir: Path) -> Path:
    """A relative log_dir is relative to the ztictl home directory."""
    log_dir = config.logging.log_dir.expanduser()
    if not log_dir.is_absolute():
        log_dir = home_dir / log_dir
    return log_dir


def rotate_old_logs(log_dir: Path, max_files: int) -> None:
    """Remove the least recently modified log files beyond max_files.

    Other ztictl processes may be pruning at the same time, so failures to
    delete are ignored.
    """
    try:
        log_files = sorted(log_dir.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
    except OSError:
        return
    for old_log in log_files[max_files:]:
        try:
            old_log.unlink()
        except OSError:
            pass
