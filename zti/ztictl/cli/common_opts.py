from collections.abc import Callable
from pathlib import Path
from typing import Any
from typing import Final
from typing import TypeVar

import click
from click_option_group import optgroup

from zti.concurrency_group.concurrency_group import ConcurrencyGroup
from zti.zti_common.frozen_model import FrozenModel
from zti.ztictl.aws.clients import AwsClientFactory
from zti.ztictl.config.data_types import OutputOptions
from zti.ztictl.config.data_types import ZtictlConfig
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.config.loader import build_context
from zti.ztictl.config.loader import get_home_dir
from zti.ztictl.config.loader import load_config
from zti.ztictl.config.loader import resolve_region
from zti.ztictl.primitives import LogLevel
from zti.ztictl.primitives import OutputFormat
from zti.ztictl.primitives import Region
from zti.ztictl.utils.logging import setup_logging

# Constant for the "Common" option group name used across all commands
COMMON_OPTIONS_GROUP_NAME: Final[str] = "Common"

# Key in ctx.obj under which tests inject an AwsClientFactory
CLIENTS_OBJ_KEY: Final[str] = "clients"

FALLBACK_REGION: Final[Region] = Region("us-east-1")

TCommandOptions = TypeVar("TCommandOptions", bound="CommonCliOptions")
TDecorated = TypeVar("TDecorated", bound=Callable[..., Any])


class CommonCliOptions(FrozenModel):
    """Base class for common CLI options shared across all commands.

    This captures the options added by the @add_common_options decorator.
    All command-specific option classes should inherit from this class.

    Defaults and help text live on the click options, not here.
    """

    output_format: str
    quiet: bool
    verbose: int
    log_file: str | None
    region: str | None


def add_common_options(command: TDecorated) -> TDecorated:
    """Decorator to add common options to a command.

    Adds the following options in the "Common" option group:
    - --format: Output format (human/json/jsonl)
    - -q, --quiet: Suppress console output
    - -v, --verbose: Increase verbosity
    - --log-file: Override log file path
    - --region: AWS region to operate in
    """
    # Applied bottom to top
    command = optgroup.option(
        "--region",
        default=None,
        help="AWS region (default: ZTICTL_REGION, AWS_REGION, or default_region in settings.toml)",
    )(command)
    command = optgroup.option(
        "--log-file",
        type=click.Path(),
        default=None,
        help="Path to log file (overrides default ~/.ztictl/logs/<timestamp>-<pid>.json)",
    )(command)
    command = optgroup.option(
        "-v", "--verbose", count=True, help="Increase verbosity (default: INFO); -v for DEBUG, -vv for TRACE"
    )(command)
    command = optgroup.option("-q", "--quiet", is_flag=True, help="Suppress all console output")(command)
    command = optgroup.option(
        "--format",
        "output_format",
        type=click.Choice(["human", "json", "jsonl"], case_sensitive=False),
        default="human",
        show_default=True,
        help="Output format for command results",
    )(command)
    command = optgroup.group(COMMON_OPTIONS_GROUP_NAME)(command)
    return command


def setup_command_context(
    ctx: click.Context,
    command_name: str,
    command_class: type[TCommandOptions],
    # Commands that only touch IAM and local state can run without a configured region
    is_region_required: bool = True,
) -> tuple[ZtictlContext, OutputOptions, TCommandOptions]:
    """Set up config, logging and the ztictl context for a command.

    This is the single entry point for command setup. The concurrency group it
    creates is closed together with the click context.
    """
    opts = command_class(**ctx.params)

    home_dir = get_home_dir()
    config = load_config(home_dir)
    output_opts = parse_output_options(
        output_format=opts.output_format,
        quiet=opts.quiet,
        verbose=opts.verbose,
        log_file=opts.log_file,
        config=config,
    )
    region = resolve_region(config, opts.region, None if is_region_required else FALLBACK_REGION)

    concurrency_group = ctx.with_resource(ConcurrencyGroup(name=f"ztictl-{command_name}"))
    ztictl_ctx = build_context(
        config=config,
        region=region,
        home_dir=home_dir,
        concurrency_group=concurrency_group,
        clients=_injected_clients(ctx),
    )
    setup_logging(output_opts, ztictl_ctx)
    return ztictl_ctx, output_opts, opts


def _injected_clients(ctx: click.Context) -> AwsClientFactory | None:
    root_obj = ctx.find_root().obj
    if isinstance(root_obj, dict):
        clients = root_obj.get(CLIENTS_OBJ_KEY)
        if isinstance(clients, AwsClientFactory):
            return clients
    return None


def parse_output_options(
    output_format: str,
    quiet: bool,
    verbose: int,
    log_file: str | None,
    config: ZtictlConfig,
) -> OutputOptions:
    """Parse output-related CLI options. CLI flags can override config values."""
    parsed_output_format = OutputFormat(output_format.upper())

    if quiet:
        console_level = LogLevel.NONE
    elif verbose >= 2:
        console_level = LogLevel.TRACE
    elif verbose == 1:
        console_level = LogLevel.DEBUG
    else:
        console_level = config.logging.console_level

    return OutputOptions(
        output_format=parsed_output_format,
        console_level=console_level,
        log_file_path=Path(log_file) if log_file else None,
    )
