from typing import Any
from typing import assert_never

import click
from click_option_group import optgroup
from loguru import logger

from zti.ztictl.api.data_types import TaggedExecutionResult
from zti.ztictl.api.data_types import TargetResult
from zti.ztictl.api.resolve import build_target_selector
from zti.ztictl.api.tagged import TaggedCommandExecutor
from zti.ztictl.cli.common_opts import CommonCliOptions
from zti.ztictl.cli.common_opts import add_common_options
from zti.ztictl.cli.common_opts import setup_command_context
from zti.ztictl.cli.output_helpers import emit_event
from zti.ztictl.cli.output_helpers import emit_final_json
from zti.ztictl.cli.output_helpers import format_table
from zti.ztictl.cli.output_helpers import write_block
from zti.ztictl.cli.output_helpers import write_human_line
from zti.ztictl.primitives import OutputFormat


class ExecTaggedCliOptions(CommonCliOptions):
    """Options passed from the CLI to the exec-tagged command."""

    command_arg: str
    tags: str | None
    instances: str | None
    parallel: int | None
    timeout: float | None


@click.command(name="exec-tagged")
@click.argument("command_arg", metavar="COMMAND")
@optgroup.group("Target Selection")
@optgroup.option(
    "--tags",
    default=None,
    help="Run on running instances matching all of these tags, e.g. Environment=prod,Role=web",
)
@optgroup.option(
    "--instances",
    default=None,
    help="Run on these instance ids, comma separated (cannot be combined with --tags)",
)
@optgroup.group("Execution")
@optgroup.option(
    "--parallel",
    type=int,
    default=None,
    help="Maximum number of instances to run on at once [default: number of CPUs]",
)
@optgroup.option(
    "--timeout",
    type=float,
    default=None,
    help="Seconds to wait for each instance [default: command_timeout_seconds from settings]",
)
@add_common_options
@click.pass_context
def exec_tagged(ctx: click.Context, **kwargs: Any) -> None:
    """Run a shell command on every instance matching tags, or on a list of instances.

    A failure on one instance never stops the others. The exit code is 0 only
    if the command succeeded everywhere.
    """
    ztictl_ctx, output_opts, opts = setup_command_context(
        ctx=ctx,
        command_name="exec-tagged",
        command_class=ExecTaggedCliOptions,
    )
    logger.debug("Started exec-tagged command")

    selector = build_target_selector(opts.tags, opts.instances)
    result = TaggedCommandExecutor(ztictl_ctx).execute(
        selector,
        opts.command_arg,
        parallelism=opts.parallel,
        timeout_seconds=opts.timeout,
    )

    _emit_output(result, output_opts.output_format)
    if not result.is_success:
        ctx.exit(1)


def _target_to_dict(target: TargetResult) -> dict[str, Any]:
    return {
        "instance_id": target.instance_id,
        "status": target.status,
        "success": target.is_success,
        "duration_seconds": round(target.duration_seconds, 3),
        "invocation_id": target.invocation_id,
        "stdout": target.stdout,
        "stderr": target.stderr,
        "error": target.error,
    }


def _summary_to_dict(result: TaggedExecutionResult) -> dict[str, Any]:
    summary = result.summary
    return {
        "total": summary.total,
        "succeeded": summary.succeeded,
        "failed": summary.failed,
        "wall_clock_seconds": round(summary.wall_clock_seconds, 3),
        "parallelism": summary.parallelism,
    }


def _emit_output(result: TaggedExecutionResult, output_format: OutputFormat) -> None:
    match output_format:
        case OutputFormat.HUMAN:
            _emit_human_output(result)
        case OutputFormat.JSON:
            emit_final_json(
                {
                    "results": [_target_to_dict(r) for r in result.results],
                    "summary": _summary_to_dict(result),
                }
            )
        case OutputFormat.JSONL:
            for target in result.results:
                emit_event("target_result", _target_to_dict(target), OutputFormat.JSONL)
            emit_event("summary", _summary_to_dict(result), OutputFormat.JSONL)
        case _ as unreachable:
            assert_never(unreachable)


def _emit_human_output(result: TaggedExecutionResult) -> None:
    for target in result.results:
        write_human_line("--- {} ({}) ---", target.instance_id, target.status)
        write_block(target.stdout)
        if target.stderr:
            write_block(target.stderr)
        if target.error:
            write_human_line("error: {}", target.error)

    rows = [
        [
            str(target.instance_id),
            str(target.status),
            f"{target.duration_seconds:.1f}s",
            target.error.splitlines()[0] if target.error else "",
        ]
        for target in result.results
    ]
    write_human_line("")
    for line in format_table(["INSTANCE", "STATUS", "DURATION", "ERROR"], rows):
        write_human_line(line)

    summary = result.summary
    write_human_line(
        "\n{} targets: {} succeeded, {} failed in {:.1f}s (max parallelism {})",
        summary.total,
        summary.succeeded,
        summary.failed,
        summary.wall_clock_seconds,
        summary.parallelism,
    )
