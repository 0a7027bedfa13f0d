import sys
from typing import Any
from typing import assert_never

import click
from click_option_group import optgroup
from loguru import logger

from zti.ztictl.api.command import DEFAULT_COMMENT
from zti.ztictl.api.command import CommandExecutor
from zti.ztictl.api.data_types import CommandInvocation
from zti.ztictl.api.resolve import resolve_instance
from zti.ztictl.cli.common_opts import CommonCliOptions
from zti.ztictl.cli.common_opts import add_common_options
from zti.ztictl.cli.common_opts import setup_command_context
from zti.ztictl.cli.output_helpers import emit_event
from zti.ztictl.cli.output_helpers import emit_final_json
from zti.ztictl.cli.output_helpers import write_block
from zti.ztictl.primitives import OutputFormat


class ExecCliOptions(CommonCliOptions):
    """Options passed from the CLI to the exec command.

    Inherits common options (output_format, quiet, verbose, etc.) from CommonCliOptions.
    """

    instance: str
    command_arg: str
    comment: str
    timeout: float | None


@click.command(name="exec")
@click.argument("instance")
@click.argument("command_arg", metavar="COMMAND")
@optgroup.group("Execution")
@optgroup.option(
    "--comment",
    default=DEFAULT_COMMENT,
    show_default=True,
    help="Comment recorded with the SSM invocation",
)
@optgroup.option(
    "--timeout",
    type=float,
    default=None,
    help="Seconds to wait for the command to finish [default: command_timeout_seconds from settings]",
)
@add_common_options
@click.pass_context
def exec_command(ctx: click.Context, **kwargs: Any) -> None:
    """Run a shell command on one instance through SSM and print its output.

    INSTANCE is an instance id or the Name tag of a running instance. The exit
    code is 0 only if the remote command succeeded.
    """
    ztictl_ctx, output_opts, opts = setup_command_context(
        ctx=ctx,
        command_name="exec",
        command_class=ExecCliOptions,
    )
    logger.debug("Started exec command")

    instance_id = resolve_instance(ztictl_ctx, opts.instance)
    invocation = CommandExecutor(ztictl_ctx).run(
        instance_id,
        opts.command_arg,
        comment=opts.comment,
        timeout_seconds=opts.timeout,
    )

    _emit_output(invocation, output_opts.output_format)
    if not invocation.is_success:
        ctx.exit(1)


def _invocation_to_dict(invocation: CommandInvocation) -> dict[str, Any]:
    return {
        "instance_id": invocation.instance_id,
        "region": invocation.region,
        "invocation_id": invocation.invocation_id,
        "status": invocation.status,
        "response_code": invocation.response_code,
        "stdout": invocation.stdout,
        "stderr": invocation.stderr,
        "success": invocation.is_success,
    }


def _emit_output(invocation: CommandInvocation, output_format: OutputFormat) -> None:
    match output_format:
        case OutputFormat.HUMAN:
            write_block(invocation.stdout)
            write_block(invocation.stderr, sys.stderr)
            if invocation.is_success:
                logger.debug("Command succeeded on {}", invocation.instance_id)
            else:
                logger.error(
                    "Command finished with status {} on {} (invocation {})",
                    invocation.status,
                    invocation.instance_id,
                    invocation.invocation_id,
                )
        case OutputFormat.JSON:
            emit_final_json(_invocation_to_dict(invocation))
        case OutputFormat.JSONL:
            emit_event("exec_result", _invocation_to_dict(invocation), OutputFormat.JSONL)
        case _ as unreachable:
            assert_never(unreachable)

