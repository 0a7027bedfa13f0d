"""Tests for the remote shell script builders."""

import base64
import shlex

import pytest

from zti.ztictl.utils.shell import FILE_NOT_FOUND_SENTINEL
from zti.ztictl.utils.shell import build_command
from zti.ztictl.utils.shell import ensure_parent_dir
from zti.ztictl.utils.shell import file_size_script
from zti.ztictl.utils.shell import read_base64_chunk_script
from zti.ztictl.utils.shell import s3_download_to_instance_script
from zti.ztictl.utils.shell import s3_upload_from_instance_script
from zti.ztictl.utils.shell import write_base64_file_script


def test_build_command_quotes_every_argument() -> None:
    """Hostile text should come back out of shlex.split as a single argument."""
    hostile = "a'b\"c; rm -rf / \n $(whoami)"
    command = build_command(["cat", hostile])
    assert shlex.split(command) == ["cat", hostile]


def test_build_command_rejects_empty_argv() -> None:
    """An empty argv is a programming error."""
    with pytest.raises(ValueError):
        build_command([])


def test_ensure_parent_dir_skips_bare_and_root_paths() -> None:
    """Paths without a meaningful parent need no mkdir."""
    assert ensure_parent_dir("file.txt") is None
    assert ensure_parent_dir("/file.txt") is None
    assert ensure_parent_dir("/opt/app/file.txt") == "mkdir -p /opt/app"


def test_write_base64_file_script_embeds_payload_and_path() -> None:
    """The write script should create the parent dir and decode the payload."""
    payload = base64.b64encode(b"hello").decode()
    script = write_base64_file_script("/opt/my app/f.txt", payload)
    assert script.startswith("mkdir -p '/opt/my app' && ")
    assert f"printf '%s' {payload} | base64 -d > '/opt/my app/f.txt'" in script


def test_size_script_prints_sentinel_for_missing_files() -> None:
    """The size script should fall back to the not-found sentinel."""
    script = file_size_script("/tmp/x")
    assert script.startswith("if [ -f /tmp/x ]; then ")
    assert script.endswith(f"else echo {FILE_NOT_FOUND_SENTINEL}; fi")


def test_s3_scripts_quote_paths_with_spaces() -> None:
    """The aws s3 cp scripts should keep paths with spaces as single arguments."""
    down = s3_download_to_instance_script("bkt", "uploads/k", "/srv/a b/c", "us-east-1")
    assert "aws s3 cp s3://bkt/uploads/k '/srv/a b/c' --region us-east-1" in down

    up = s3_upload_from_instance_script("/srv/a b/c", "bkt", "downloads/k", "us-east-1")
    assert up.startswith("if [ -f '/srv/a b/c' ]; then aws s3 cp '/srv/a b/c' s3://bkt/downloads/k")


def test_write_base64_file_script_appends_when_asked() -> None:
    """Later chunks of a direct upload should be appended, not overwrite the file."""
    assert "| base64 -d >> /tmp/f" in write_base64_file_script("/tmp/f", "aGk=", append=True)
    assert "| base64 -d > /tmp/f" in write_base64_file_script("/tmp/f", "aGk=")


def test_read_base64_chunk_script_uses_one_based_tail_offset() -> None:
    """tail -c +N is one-based, so offset 0 should read from +1."""
    script = read_base64_chunk_script("/var/log/a b", 16384, 4096)
    assert "tail -c +16385 '/var/log/a b' | head -c 4096 | base64" in script


def test_read_base64_chunk_script_rejects_empty_chunks() -> None:
    """A zero-length chunk is a programming error."""
    with pytest.raises(ValueError):
        read_base64_chunk_script("/tmp/x", 0, 0)
