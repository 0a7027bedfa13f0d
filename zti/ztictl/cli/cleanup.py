from typing import Any
from typing import assert_never

import click
from click_option_group import optgroup
from loguru import logger

from zti.ztictl.api.data_types import PermissionGrant
from zti.ztictl.api.ledger import PermissionLedger
from zti.ztictl.api.permissions import EmergencyCleanupResult
from zti.ztictl.api.permissions import PermissionManager
from zti.ztictl.api.resolve import resolve_instance
from zti.ztictl.cli.common_opts import CommonCliOptions
from zti.ztictl.cli.common_opts import add_common_options
from zti.ztictl.cli.common_opts import setup_command_context
from zti.ztictl.cli.output_helpers import emit_event
from zti.ztictl.cli.output_helpers import emit_final_json
from zti.ztictl.cli.output_helpers import format_table
from zti.ztictl.cli.output_helpers import write_human_line
from zti.ztictl.primitives import ErrorBehavior
from zti.ztictl.primitives import OutputFormat


class CleanupCliOptions(CommonCliOptions):
    instance: str


class EmergencyCleanupCliOptions(CommonCliOptions):
    on_error: str


class ListGrantsCliOptions(CommonCliOptions):
    pass


def _grant_to_dict(grant: PermissionGrant) -> dict[str, Any]:
    return {
        "instance_id": grant.instance_id,
        "region": grant.region,
        "policy_arn": grant.policy_arn,
        "metadata_path": str(grant.metadata_path),
        "created_at": grant.created_at.isoformat(),
    }


@click.command(name="cleanup")
@click.argument("instance")
@add_common_options
@click.pass_context
def cleanup(ctx: click.Context, **kwargs: Any) -> None:
    """Revoke the temporary S3 access recorded for one instance.

    Safe to run at any time; does nothing if no access is recorded.
    """
    ztictl_ctx, output_opts, opts = setup_command_context(
        ctx=ctx,
        command_name="cleanup",
        command_class=CleanupCliOptions,
    )
    instance_id = resolve_instance(ztictl_ctx, opts.instance)
    manager = PermissionManager(ztictl_ctx)
    revoked = manager.detach(instance_id)
    remaining = manager.ledger.read_for_instance(instance_id)

    match output_opts.output_format:
        case OutputFormat.HUMAN:
            write_human_line("Revoked {} grant(s) for {}", revoked, instance_id)
        case OutputFormat.JSON:
            emit_final_json(
                {"instance_id": instance_id, "revoked": revoked, "remaining": [_grant_to_dict(g) for g in remaining]}
            )
        case OutputFormat.JSONL:
            emit_event("cleanup_result", {"instance_id": instance_id, "revoked": revoked}, OutputFormat.JSONL)
        case _ as unreachable:
            assert_never(unreachable)
    if remaining:
        ctx.exit(1)


@click.command(name="emergency-cleanup")
@optgroup.group("Error Handling")
@optgroup.option(
    "--on-error",
    type=click.Choice(["abort", "continue"], case_sensitive=False),
    default="continue",
    show_default=True,
    help="What to do when a grant cannot be revoked: abort (stop immediately) or continue (keep going)",
)
@add_common_options
@click.pass_context
def emergency_cleanup(ctx: click.Context, **kwargs: Any) -> None:
    """Revoke every recorded temporary S3 grant and clear stale locks.

    Use this after a crash or interrupted transfer. Grants are read from the
    registry, or from the per-grant metadata files if the registry is gone.
    """
    ztictl_ctx, output_opts, opts = setup_command_context(
        ctx=ctx,
        command_name="emergency-cleanup",
        command_class=EmergencyCleanupCliOptions,
        is_region_required=False,
    )
    logger.debug("Started emergency-cleanup command")
    result = PermissionManager(ztictl_ctx).emergency_cleanup(ErrorBehavior(opts.on_error.upper()))

    _emit_cleanup_result(result, output_opts.output_format)
    if not result.is_success:
        ctx.exit(1)


def _emit_cleanup_result(result: EmergencyCleanupResult, output_format: OutputFormat) -> None:
    match output_format:
        case OutputFormat.HUMAN:
            for grant in result.failed:
                logger.error("Could not revoke {} for {}", grant.policy_arn, grant.instance_id)
            write_human_line(
                "Emergency cleanup ({}): {} revoked, {} failed, {} pruned, {} stale lock(s) removed",
                result.source,
                len(result.revoked),
                len(result.failed),
                len(result.pruned),
                len(result.reclaimed_locks),
            )
        case OutputFormat.JSON:
            emit_final_json(
                {
                    "source": result.source,
                    "revoked": [_grant_to_dict(g) for g in result.revoked],
                    "failed": [_grant_to_dict(g) for g in result.failed],
                    "pruned": [_grant_to_dict(g) for g in result.pruned],
                    "reclaimed_locks": [str(p) for p in result.reclaimed_locks],
                }
            )
        case OutputFormat.JSONL:
            for grant in result.revoked:
                emit_event("grant_revoked", _grant_to_dict(grant), OutputFormat.JSONL)
            for grant in result.failed:
                emit_event("grant_failed", _grant_to_dict(grant), OutputFormat.JSONL)
            for grant in result.pruned:
                emit_event("grant_pruned", _grant_to_dict(grant), OutputFormat.JSONL)
            for path in result.reclaimed_locks:
                emit_event("lock_reclaimed", {"path": str(path)}, OutputFormat.JSONL)
        case _ as unreachable:
            assert_never(unreachable)


@click.command(name="list-grants")
@add_common_options
@click.pass_context
def list_grants(ctx: click.Context, **kwargs: Any) -> None:
    """Show the temporary S3 grants that are recorded as outstanding."""
    ztictl_ctx, output_opts, _opts = setup_command_context(
        ctx=ctx,
        command_name="list-grants",
        command_class=ListGrantsCliOptions,
        is_region_required=False,
    )
    grants = PermissionLedger.from_context(ztictl_ctx).read_all()

    match output_opts.output_format:
        case OutputFormat.HUMAN:
            if not grants:
                write_human_line("No outstanding grants")
                return
            rows = [
                [str(g.instance_id), str(g.region), str(g.policy_arn), g.created_at.strftime("%Y-%m-%d %H:%M:%S")]
                for g in grants
            ]
            for line in format_table(["INSTANCE", "REGION", "POLICY", "CREATED (UTC)"], rows):
                write_human_line(line)
        case OutputFormat.JSON:
            emit_final_json({"grants": [_grant_to_dict(g) for g in grants]})
        case OutputFormat.JSONL:
            for grant in grants:
                emit_event("grant", _grant_to_dict(grant), OutputFormat.JSONL)
        case _ as unreachable:
            assert_never(unreachable)
