"""Builders for the shell scripts that run on instances.

Every piece of caller-supplied text (paths, bucket keys, payloads) enters a
script through shlex.quote as one argv element; scripts are then combined with
fixed operators only. The finished script is handed to SSM as a single element
of the `commands` parameter, so it reaches the remote shell verbatim.
"""

import posixpath
import shlex
from collections.abc import Sequence
from typing import Final

from zti.zti_common.pure import pure

FILE_NOT_FOUND_SENTINEL: Final[str] = "FILE_NOT_FOUND"


@pure
def build_command(argv: Sequence[str]) -> str:
    """Render an argv list as one shell command with every element quoted."""
    if len(argv) == 0:
        raise ValueError("Cannot build an empty command")
    return " ".join(shlex.quote(str(arg)) for arg in argv)


@pure
def and_then(*commands: str) -> str:
    """Chain already-built commands so each runs only if the previous one succeeded."""
    return " && ".join(commands)


@pure
def if_file_exists(path: str, then_command: str, else_command: str) -> str:
    return f"if [ -f {shlex.quote(path)} ]; then {then_command}; else {else_command}; fi"


@pure
def echo_sentinel() -> str:
    return build_command(["echo", FILE_NOT_FOUND_SENTINEL])


@pure
def ensure_parent_dir(remote_path: str) -> str | None:
    """Return a mkdir -p command for the remote path's parent, or None if it has none."""
    parent = posixpath.dirname(remote_path)
    if parent in ("", "/"):
        return None
    return build_command(["mkdir", "-p", parent])


@pure
def write_base64_file_script(remote_path: str, encoded_payload: str, append: bool = False) -> str:
    """Script that decodes a base64 payload into remote_path, creating parent directories.

    With append, the decoded bytes are added to the end of the file instead of replacing it.
    """
    redirect = ">>" if append else ">"
    write = f"printf '%s' {shlex.quote(encoded_payload)} | base64 -d {redirect} {shlex.quote(remote_path)}"
    mkdir = ensure_parent_dir(remote_path)
    return and_then(mkdir, write) if mkdir is not None else write


@pure
def read_base64_chunk_script(remote_path: str, offset: int, length: int) -> str:
    """Script that prints length bytes of remote_path starting at offset, base64 encoded."""
    if offset < 0 or length <= 0:
        raise ValueError(f"Invalid chunk: offset={offset} length={length}")
    quoted = shlex.quote(remote_path)
    read = f"tail -c +{offset + 1} {quoted} | head -c {length} | base64"
    return if_file_exists(remote_path, read, echo_sentinel())


@pure
def file_size_script(remote_path: str) -> str:
    """Script that prints the size of remote_path in bytes, or the not-found sentinel."""
    quoted = shlex.quote(remote_path)
    # GNU stat first, BSD stat as a fallback.
    size = f"stat -c %s {quoted} 2>/dev/null || stat -f %z {quoted}"
    return if_file_exists(remote_path, size, echo_sentinel())


@pure
def s3_uri(bucket: str, key: str) -> str:
    return f"s3://{bucket}/{key}"


@pure
def s3_download_to_instance_script(bucket: str, key: str, remote_path: str, region: str) -> str:
    """Script run on the instance to pull an object from S3 into remote_path."""
    copy = build_command(["aws", "s3", "cp", s3_uri(bucket, key), remote_path, "--region", region])
    mkdir = ensure_parent_dir(remote_path)
    return and_then(mkdir, copy) if mkdir is not None else copy


@pure
def s3_upload_from_instance_script(remote_path: str, bucket: str, key: str, region: str) -> str:
    """Script run on the instance to push remote_path to S3, or print the not-found sentinel."""
    copy = build_command(["aws", "s3", "cp", remote_path, s3_uri(bucket, key), "--region", region])
    return if_file_exists(remote_path, copy, echo_sentinel())
