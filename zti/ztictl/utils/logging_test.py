"""Tests for logging utilities."""

import json
import logging
import os
from pathlib import Path

import pytest
from loguru import logger

from zti.ztictl.config.data_types import LoggingConfig
from zti.ztictl.config.data_types import OutputOptions
from zti.ztictl.config.data_types import ZtictlConfig
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.primitives import LogLevel
from zti.ztictl.primitives import OutputFormat
from zti.ztictl.utils.logging import ERROR_COLOR
from zti.ztictl.utils.logging import RESET_COLOR
from zti.ztictl.utils.logging import WARNING_COLOR
from zti.ztictl.utils.logging import _format_user_message
from zti.ztictl.utils.logging import resolve_log_dir
from zti.ztictl.utils.logging import rotate_old_logs
from zti.ztictl.utils.logging import setup_logging


class _FakeLevel:
    def __init__(self, name: str) -> None:
        self.name = name


def _json_log_records(log_file: Path) -> list[dict]:
    return [json.loads(line) for line in log_file.read_text().splitlines() if line.strip()]


def test_resolve_log_dir_uses_absolute_path(tmp_path: Path) -> None:
    """Absolute log_dir should be used as-is."""
    config = ZtictlConfig(logging=LoggingConfig(log_dir=Path("/absolute/path/logs")))

    assert resolve_log_dir(config, tmp_path) == Path("/absolute/path/logs")


def test_resolve_log_dir_is_relative_to_home_dir(tmp_path: Path) -> None:
    """Relative log_dir should be resolved relative to the ztictl home dir."""
    config = ZtictlConfig(logging=LoggingConfig(log_dir=Path("my_logs")))

    assert resolve_log_dir(config, tmp_path) == tmp_path / "my_logs"


def test_rotate_old_logs_removes_oldest_files(tmp_path: Path) -> None:
    """Should remove the least recently modified files when exceeding max_files."""
    for i in range(5):
        log_file = tmp_path / f"log{i}.json"
        log_file.write_text(f"log {i}")
        os.utime(log_file, (1_000_000 + i, 1_000_000 + i))

    rotate_old_logs(tmp_path, max_files=3)

    assert sorted(p.name for p in tmp_path.glob("*.json")) == ["log2.json", "log3.json", "log4.json"]


def test_rotate_old_logs_ignores_other_files(tmp_path: Path) -> None:
    (tmp_path / "notes.txt").write_text("keep me")
    (tmp_path / "only.json").write_text("{}")

    rotate_old_logs(tmp_path, max_files=1)

    assert (tmp_path / "notes.txt").exists()
    assert (tmp_path / "only.json").exists()


def test_rotate_old_logs_handles_nonexistent_dir(tmp_path: Path) -> None:
    """Should not error when log_dir doesn't exist."""
    rotate_old_logs(tmp_path / "nonexistent", max_files=10)


def test_format_user_message_prefixes_warnings_and_errors() -> None:
    warning_format = _format_user_message({"level": _FakeLevel("WARNING")})
    assert warning_format == f"{WARNING_COLOR}WARNING: {{message}}{RESET_COLOR}\n"
    assert _format_user_message({"level": _FakeLevel("ERROR")}) == f"{ERROR_COLOR}ERROR: {{message}}{RESET_COLOR}\n"
    assert _format_user_message({"level": _FakeLevel("INFO")}) == "{message}\n"


def test_setup_logging_writes_json_to_default_log_dir(temp_ztictl_ctx: ZtictlContext) -> None:
    """setup_logging should create the log dir and write structured records there."""
    log_dir = resolve_log_dir(temp_ztictl_ctx.config, temp_ztictl_ctx.home_dir)
    assert not log_dir.exists()

    setup_logging(OutputOptions(output_format=OutputFormat.HUMAN, console_level=LogLevel.NONE), temp_ztictl_ctx)
    logger.info("attached policy {}", "ztiaws-test")
    logger.remove()

    (log_file,) = list(log_dir.glob("*.json"))
    records = _json_log_records(log_file)
    assert any(record["record"]["message"] == "attached policy ztiaws-test" for record in records)


def test_setup_logging_uses_custom_log_file_path(temp_ztictl_ctx: ZtictlContext, tmp_path: Path) -> None:
    """setup_logging should create parent directories for a custom log file path."""
    custom_log_path = tmp_path / "nested" / "dirs" / "custom_log.json"

    setup_logging(
        OutputOptions(console_level=LogLevel.NONE, log_file_path=custom_log_path),
        temp_ztictl_ctx,
    )
    logger.debug("debug goes to the file")
    logger.remove()

    records = _json_log_records(custom_log_path)
    assert [record["record"]["level"]["name"] for record in records] == ["DEBUG"]


def test_setup_logging_sends_user_messages_to_stderr(
    temp_ztictl_ctx: ZtictlContext, capsys: pytest.CaptureFixture[str]
) -> None:
    setup_logging(OutputOptions(console_level=LogLevel.INFO), temp_ztictl_ctx)
    logger.debug("hidden at INFO")
    logger.warning("lock is stale")
    logger.remove()

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "WARNING: lock is stale" in captured.err
    assert "hidden at INFO" not in captured.err


def test_setup_logging_routes_botocore_records_to_trace(
    temp_ztictl_ctx: ZtictlContext, capsys: pytest.CaptureFixture[str]
) -> None:
    setup_logging(OutputOptions(console_level=LogLevel.TRACE), temp_ztictl_ctx)
    logging.getLogger("botocore.retryhandler").debug("retry needed")
    logger.remove()

    assert "[botocore.retryhandler] retry needed" in capsys.readouterr().err
