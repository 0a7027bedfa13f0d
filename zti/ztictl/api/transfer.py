"""Moving files between this machine and an instance.

Small files travel inside the command text as base64, in chunks sized to fit
the SSM output cap. Larger files go through the transfer bucket, with a
temporary bucket-scoped grant on the instance role that is always revoked.
"""

import base64
import os
import posixpath
import secrets
import time
from contextlib import ExitStack
from pathlib import Path
from typing import Final

from loguru import logger

from zti.zti_common.logging import log_call
from zti.zti_common.logging import log_span
from zti.zti_common.pure import pure
from zti.ztictl.api.bucket import TransferBucket
from zti.ztictl.api.bucket import new_object_key
from zti.ztictl.api.command import CommandExecutor
from zti.ztictl.api.data_types import TransferJob
from zti.ztictl.api.data_types import TransferResult
from zti.ztictl.api.permissions import PermissionManager
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.errors import LocalFileError
from zti.ztictl.errors import RemoteExecutionFailure
from zti.ztictl.errors import RemoteFileNotFoundError
from zti.ztictl.errors import ValidationError
from zti.ztictl.primitives import BucketName
from zti.ztictl.primitives import InstanceId
from zti.ztictl.primitives import TransferDirection
from zti.ztictl.primitives import TransferStrategy
from zti.ztictl.utils.polling import PollingCancelledError
from zti.ztictl.utils.shell import FILE_NOT_FOUND_SENTINEL
from zti.ztictl.utils.shell import file_size_script
from zti.ztictl.utils.shell import read_base64_chunk_script
from zti.ztictl.utils.shell import s3_download_to_instance_script
from zti.ztictl.utils.shell import s3_upload_from_instance_script
from zti.ztictl.utils.shell import write_base64_file_script

TRANSFER_COMMENT: Final[str] = "File transfer via ztictl"


@pure
def select_strategy(size_bytes: int, threshold_bytes: int) -> TransferStrategy:
    """Direct strictly below the threshold, Mediated at or above it."""
    return TransferStrategy.MEDIATED if size_bytes >= threshold_bytes else TransferStrategy.DIRECT


@pure
def decode_base64_output(stdout: str) -> bytes:
    """Decode base64 command output, ignoring the line breaks `base64` inserts."""
    return base64.b64decode("".join(stdout.split()), validate=True)


def _check_remote_path(remote_path: str) -> None:
    if not remote_path.strip():
        raise ValidationError("Remote path cannot be empty")


def _partial_path(local_path: Path) -> Path:
    return local_path.with_name(f".{local_path.name}.{secrets.token_hex(4)}.part")


class TransferEngine:
    """Uploads and downloads files, picking the strategy by size."""

    def __init__(
        self,
        ctx: ZtictlContext,
        command_executor: CommandExecutor | None = None,
        permission_manager: PermissionManager | None = None,
        bucket: TransferBucket | None = None,
    ) -> None:
        self._ctx = ctx
        self._commands = command_executor if command_executor is not None else CommandExecutor(ctx)
        self._permissions = permission_manager if permission_manager is not None else PermissionManager(ctx)
        self._bucket = bucket if bucket is not None else TransferBucket(ctx)

    def _make_job(
        self,
        direction: TransferDirection,
        instance_id: InstanceId,
        local_path: Path,
        remote_path: str,
        size_bytes: int,
    ) -> TransferJob:
        return TransferJob(
            direction=direction,
            local_path=local_path,
            remote_path=remote_path,
            instance_id=instance_id,
            region=self._ctx.region,
            size_bytes=size_bytes,
            strategy=select_strategy(size_bytes, self._ctx.config.transfer_threshold_bytes),
        )

    # --- upload ---

    @log_call
    def upload(self, instance_id: InstanceId, local_path: Path, remote_path: str) -> TransferResult:
        """Copy a local file to remote_path on the instance.

        The local file is checked before anything is sent.
        """
        _check_remote_path(remote_path)
        if not local_path.is_file():
            raise LocalFileError(f"Local file {local_path} does not exist or is not a regular file")
        if not os.access(local_path, os.R_OK):
            raise LocalFileError(f"Local file {local_path} is not readable")

        job = self._make_job(TransferDirection.UPLOAD, instance_id, local_path, remote_path, local_path.stat().st_size)
        logger.info(
            "Uploading {} ({} bytes) to {}:{} via {}",
            local_path,
            job.size_bytes,
            instance_id,
            remote_path,
            job.strategy,
        )
        start_time = time.monotonic()
        bucket_name: BucketName | None = None
        match job.strategy:
            case TransferStrategy.DIRECT:
                self._upload_direct(job)
            case TransferStrategy.MEDIATED:
                bucket_name = self._upload_mediated(job)
        return TransferResult(job=job, duration_seconds=time.monotonic() - start_time, bucket_name=bucket_name)

    def _upload_direct(self, job: TransferJob) -> None:
        chunk_size = self._ctx.config.direct_chunk_bytes
        try:
            content = job.local_path.read_bytes()
        except OSError as e:
            raise LocalFileError(f"Cannot read {job.local_path}: {e}") from e

        # An empty file still gets one write so the remote file is created.
        offsets = range(0, max(len(content), 1), chunk_size)
        with log_span("Writing {} chunks to {}", len(offsets), job.remote_path):
            for offset in offsets:
                encoded = base64.b64encode(content[offset : offset + chunk_size]).decode("ascii")
                self._commands.run_checked(
                    job.instance_id,
                    write_base64_file_script(job.remote_path, encoded, append=offset > 0),
                    step=f"Write {job.remote_path} at byte {offset}",
                    comment=TRANSFER_COMMENT,
                )

    def _upload_mediated(self, job: TransferJob) -> BucketName:
        bucket_name = self._bucket.ensure()
        key = new_object_key(TransferDirection.UPLOAD, job.local_path.name)
        with ExitStack() as cleanup:
            self._grant_access(job.instance_id, bucket_name, cleanup)
            cleanup.callback(self._bucket.delete_object_quietly, bucket_name, key)
            self._bucket.put_file(bucket_name, key, job.local_path)
            self._commands.run_checked(
                job.instance_id,
                s3_download_to_instance_script(bucket_name, key, job.remote_path, self._ctx.region),
                step=f"Copy s3://{bucket_name}/{key} to {job.remote_path}",
                comment=TRANSFER_COMMENT,
            )
        return bucket_name

    # --- download ---

    @log_call
    def download(self, instance_id: InstanceId, remote_path: str, local_path: Path) -> TransferResult:
        """Copy remote_path on the instance to a local file.

        An existing local directory receives the file under its remote name.
        The local file only appears once all bytes have arrived.
        """
        _check_remote_path(remote_path)
        if local_path.is_dir():
            local_path = local_path / (posixpath.basename(remote_path) or "download")
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LocalFileError(f"Cannot create local directory {local_path.parent}: {e}") from e

        size = self._remote_size(instance_id, remote_path)
        job = self._make_job(TransferDirection.DOWNLOAD, instance_id, local_path, remote_path, size)
        logger.info(
            "Downloading {}:{} ({} bytes) to {} via {}", instance_id, remote_path, size, local_path, job.strategy
        )
        start_time = time.monotonic()
        bucket_name: BucketName | None = None
        partial_path = _partial_path(local_path)
        try:
            match job.strategy:
                case TransferStrategy.DIRECT:
                    self._download_direct(job, partial_path)
                case TransferStrategy.MEDIATED:
                    bucket_name = self._download_mediated(job, partial_path)
            os.replace(partial_path, local_path)
        finally:
            partial_path.unlink(missing_ok=True)
        return TransferResult(job=job, duration_seconds=time.monotonic() - start_time, bucket_name=bucket_name)

    def _remote_size(self, instance_id: InstanceId, remote_path: str) -> int:
        step = f"Check size of {remote_path}"
        invocation = self._commands.run_checked(instance_id, file_size_script(remote_path), step, TRANSFER_COMMENT)
        output = invocation.stdout.strip()
        if output == FILE_NOT_FOUND_SENTINEL:
            raise RemoteFileNotFoundError(instance_id, remote_path)
        try:
            return int(output.splitlines()[-1])
        except (IndexError, ValueError):
            detail = f"unexpected output {output!r}"
            raise RemoteExecutionFailure(instance_id, step, invocation.status, detail) from None

    def _download_direct(self, job: TransferJob, partial_path: Path) -> None:
        chunk_size = self._ctx.config.direct_chunk_bytes
        with partial_path.open("wb") as f:
            for offset in range(0, job.size_bytes, chunk_size):
                expected = min(chunk_size, job.size_bytes - offset)
                step = f"Read {job.remote_path} at byte {offset}"
                invocation = self._commands.run_checked(
                    job.instance_id,
                    read_base64_chunk_script(job.remote_path, offset, expected),
                    step=step,
                    comment=TRANSFER_COMMENT,
                )
                if invocation.stdout.strip() == FILE_NOT_FOUND_SENTINEL:
                    raise RemoteFileNotFoundError(job.instance_id, job.remote_path)
                try:
                    data = decode_base64_output(invocation.stdout)
                except ValueError as e:
                    raise RemoteExecutionFailure(job.instance_id, step, invocation.status, f"bad base64: {e}") from e
                if len(data) != expected:
                    # Either the file changed underneath us or the output was truncated.
                    raise RemoteExecutionFailure(
                        job.instance_id, step, invocation.status, f"expected {expected} bytes, got {len(data)}"
                    )
                f.write(data)

    def _download_mediated(self, job: TransferJob, partial_path: Path) -> BucketName:
        bucket_name = self._bucket.ensure()
        key = new_object_key(TransferDirection.DOWNLOAD, posixpath.basename(job.remote_path))
        with ExitStack() as cleanup:
            self._grant_access(job.instance_id, bucket_name, cleanup)
            cleanup.callback(self._bucket.delete_object_quietly, bucket_name, key)
            step = f"Copy {job.remote_path} to s3://{bucket_name}/{key}"
            invocation = self._commands.run_checked(
                job.instance_id,
                s3_upload_from_instance_script(job.remote_path, bucket_name, key, self._ctx.region),
                step=step,
                comment=TRANSFER_COMMENT,
            )
            if invocation.stdout.strip() == FILE_NOT_FOUND_SENTINEL:
                raise RemoteFileNotFoundError(job.instance_id, job.remote_path)
            self._bucket.get_file(bucket_name, key, partial_path)
        return bucket_name

    # --- shared ---

    def _grant_access(self, instance_id: InstanceId, bucket_name: BucketName, cleanup: ExitStack) -> None:
        """Attach a grant, schedule its revocation on cleanup, and wait for IAM to catch up."""
        # Fails before any policy exists if the instance has no role.
        self._permissions.get_instance_role(instance_id)
        self._permissions.attach(instance_id, bucket_name)
        cleanup.callback(self._permissions.detach, instance_id)
        delay = self._ctx.config.propagation_delay_seconds
        if delay > 0:
            logger.debug("Waiting {}s for IAM changes to propagate", delay)
            if self._ctx.concurrency_group.wait(delay):
                raise PollingCancelledError("Transfer was cancelled while waiting for IAM propagation")
