"""Tests for the top-level command group and its aliases."""

import json

from click.testing import CliRunner

from zti.ztictl.cli.common_opts import CLIENTS_OBJ_KEY
from zti.ztictl.conftest import TEST_REGION
from zti.ztictl.main import COMMAND_ALIASES
from zti.ztictl.main import cli
from zti.ztictl.utils.testing import FakeAwsClientFactory


def test_help_lists_commands_with_aliases(cli_runner: CliRunner) -> None:
    result = cli_runner.invoke(cli, ["--help"])

    assert result.exit_code == 0
    assert "exec, x" in result.output
    assert "emergency-cleanup, panic" in result.output
    for name in ("exec-tagged", "transfer", "cleanup", "list-grants"):
        assert name in result.output


def test_every_alias_resolves_to_a_registered_command() -> None:
    for canonical, aliases in COMMAND_ALIASES.items():
        assert canonical in cli.commands
        for alias in aliases:
            assert alias not in cli.commands


def test_exec_alias_runs_the_exec_command(cli_runner: CliRunner, fake_aws: FakeAwsClientFactory) -> None:
    instance_id = fake_aws.add_instance("i-0aaaaaaaaaaaaaaa1")

    result = cli_runner.invoke(
        cli,
        ["x", instance_id, "echo aliased", "--region", TEST_REGION],
        obj={CLIENTS_OBJ_KEY: fake_aws},
    )

    assert result.exit_code == 0, result.output
    assert result.stdout == "aliased\n"


def test_panic_alias_runs_emergency_cleanup(cli_runner: CliRunner, fake_aws: FakeAwsClientFactory) -> None:
    result = cli_runner.invoke(cli, ["panic", "--format", "json"], obj={CLIENTS_OBJ_KEY: fake_aws})

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["revoked"] == []


def test_transfer_help_describes_both_directions(cli_runner: CliRunner) -> None:
    result = cli_runner.invoke(cli, ["transfer", "--help"])

    assert result.exit_code == 0
    assert "upload" in result.output
    assert "download" in result.output


def test_unknown_command_is_a_usage_error(cli_runner: CliRunner) -> None:
    result = cli_runner.invoke(cli, ["frobnicate"])

    assert result.exit_code == 2
    assert "No such command" in result.output
