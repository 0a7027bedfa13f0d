from pathlib import Path
from typing import Any
from typing import assert_never

import click
from loguru import logger

from zti.ztictl.api.data_types import TransferResult
from zti.ztictl.api.resolve import resolve_instance
from zti.ztictl.api.transfer import TransferEngine
from zti.ztictl.cli.common_opts import CommonCliOptions
from zti.ztictl.cli.common_opts import add_common_options
from zti.ztictl.cli.common_opts import setup_command_context
from zti.ztictl.cli.output_helpers import emit_event
from zti.ztictl.cli.output_helpers import emit_final_json
from zti.ztictl.cli.output_helpers import format_size
from zti.ztictl.cli.output_helpers import write_human_line
from zti.ztictl.primitives import OutputFormat
from zti.ztictl.primitives import TransferDirection


class UploadCliOptions(CommonCliOptions):
    instance: str
    local_path: str
    remote_path: str


class DownloadCliOptions(CommonCliOptions):
    instance: str
    remote_path: str
    local_path: str


@click.group(name="transfer")
def transfer() -> None:
    """Copy files to and from instances.

    Files under 1 MiB are sent inside the command itself. Larger files go
    through a private S3 bucket, with temporary access for the instance role
    that is revoked as soon as the transfer ends.
    """


@transfer.command(name="upload")
@click.argument("instance")
@click.argument("local_path", type=click.Path(dir_okay=False))
@click.argument("remote_path")
@add_common_options
@click.pass_context
def upload(ctx: click.Context, **kwargs: Any) -> None:
    """Upload LOCAL_PATH to REMOTE_PATH on INSTANCE."""
    ztictl_ctx, output_opts, opts = setup_command_context(
        ctx=ctx,
        command_name="upload",
        command_class=UploadCliOptions,
    )
    logger.debug("Started upload command")
    instance_id = resolve_instance(ztictl_ctx, opts.instance)
    result = TransferEngine(ztictl_ctx).upload(instance_id, Path(opts.local_path), opts.remote_path)
    _emit_output(result, output_opts.output_format)


@transfer.command(name="download")
@click.argument("instance")
@click.argument("remote_path")
@click.argument("local_path", type=click.Path())
@add_common_options
@click.pass_context
def download(ctx: click.Context, **kwargs: Any) -> None:
    """Download REMOTE_PATH on INSTANCE to LOCAL_PATH."""
    ztictl_ctx, output_opts, opts = setup_command_context(
        ctx=ctx,
        command_name="download",
        command_class=DownloadCliOptions,
    )
    logger.debug("Started download command")
    instance_id = resolve_instance(ztictl_ctx, opts.instance)
    result = TransferEngine(ztictl_ctx).download(instance_id, opts.remote_path, Path(opts.local_path))
    _emit_output(result, output_opts.output_format)


def _result_to_dict(result: TransferResult) -> dict[str, Any]:
    job = result.job
    return {
        "direction": job.direction,
        "instance_id": job.instance_id,
        "region": job.region,
        "local_path": str(job.local_path),
        "remote_path": job.remote_path,
        "size_bytes": job.size_bytes,
        "strategy": job.strategy,
        "bucket": result.bucket_name,
        "duration_seconds": round(result.duration_seconds, 3),
    }


def _emit_output(result: TransferResult, output_format: OutputFormat) -> None:
    match output_format:
        case OutputFormat.HUMAN:
            job = result.job
            if job.direction == TransferDirection.UPLOAD:
                source, destination = str(job.local_path), f"{job.instance_id}:{job.remote_path}"
            else:
                source, destination = f"{job.instance_id}:{job.remote_path}", str(job.local_path)
            write_human_line(
                "Transferred {} -> {} ({}, {}) in {:.1f}s",
                source,
                destination,
                format_size(job.size_bytes),
                job.strategy.lower(),
                result.duration_seconds,
            )
        case OutputFormat.JSON:
            emit_final_json(_result_to_dict(result))
        case OutputFormat.JSONL:
            emit_event("transfer_result", _result_to_dict(result), OutputFormat.JSONL)
        case _ as unreachable:
            assert_never(unreachable)
