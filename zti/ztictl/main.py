import click

from zti.ztictl.cli.cleanup import cleanup
from zti.ztictl.cli.cleanup import emergency_cleanup
from zti.ztictl.cli.cleanup import list_grants
from zti.ztictl.cli.exec import exec_command
from zti.ztictl.cli.exec_tagged import exec_tagged
from zti.ztictl.cli.transfer import transfer

# Command aliases - maps canonical command names to their aliases
COMMAND_ALIASES: dict[str, list[str]] = {
    "exec": ["x"],
    "emergency-cleanup": ["panic"],
}

# Build reverse mapping: alias -> canonical name
_ALIAS_TO_CANONICAL: dict[str, str] = {}
for canonical, aliases in COMMAND_ALIASES.items():
    for alias in aliases:
        _ALIAS_TO_CANONICAL[alias] = canonical


class AliasAwareGroup(click.Group):
    """click.Group that resolves command aliases and shows them inline in --help."""

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        return super().get_command(ctx, _ALIAS_TO_CANONICAL.get(cmd_name, cmd_name))

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        # Report the canonical name so ctx.info_name is the same for aliases.
        _, command, remaining = super().resolve_command(ctx, args)
        return (command.name if command is not None else None), command, remaining

    def format_commands(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        """Write the command list with aliases shown inline."""
        commands: list[tuple[str, click.Command]] = []
        for subcommand in self.list_commands(ctx):
            cmd = self.get_command(ctx, subcommand)
            if cmd is None or cmd.hidden:
                continue
            commands.append((subcommand, cmd))

        if not commands:
            return

        limit = formatter.width - 6 - max(len(cmd[0]) for cmd in commands)
        rows: list[tuple[str, str]] = []
        for subcommand, cmd in commands:
            help_text = cmd.get_short_help_str(limit=limit)
            aliases = COMMAND_ALIASES.get(subcommand, [])
            if aliases:
                subcommand = ", ".join([subcommand] + aliases)
            rows.append((subcommand, help_text))

        with formatter.section("Commands"):
            formatter.write_dl(rows)


@click.command(cls=AliasAwareGroup)
@click.version_option(package_name="ztictl", prog_name="ztictl", message="%(prog)s %(version)s")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """
    Run commands on and move files to EC2 instances through AWS Systems Manager.
    """
    ctx.ensure_object(dict)


cli.add_command(exec_command)
cli.add_command(exec_tagged)
cli.add_command(transfer)
cli.add_command(cleanup)
cli.add_command(emergency_cleanup)
cli.add_command(list_grants)
