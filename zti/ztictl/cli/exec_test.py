import json
from typing import Final

from click.testing import CliRunner
from click.testing import Result

from zti.ztictl.cli.common_opts import CLIENTS_OBJ_KEY
from zti.ztictl.cli.exec import exec_command
from zti.ztictl.conftest import TEST_REGION
from zti.ztictl.utils.testing import FakeAwsClientFactory

INSTANCE_ID: Final[str] = "i-0aaaaaaaaaaaaaaa1"


def _invoke(cli_runner: CliRunner, fake_aws: FakeAwsClientFactory, *args: str) -> Result:
    return cli_runner.invoke(
        exec_command,
        [*args, "--region", TEST_REGION],
        obj={CLIENTS_OBJ_KEY: fake_aws},
    )


def test_exec_prints_remote_output(cli_runner: CliRunner, fake_aws: FakeAwsClientFactory) -> None:
    fake_aws.add_instance(INSTANCE_ID)

    result = _invoke(cli_runner, fake_aws, INSTANCE_ID, "echo hello from the instance")

    assert result.exit_code == 0, result.output
    assert result.stdout == "hello from the instance\n"


def test_exec_resolves_name_tag(cli_runner: CliRunner, fake_aws: FakeAwsClientFactory) -> None:
    fake_aws.add_instance(INSTANCE_ID, name="web-1")

    result = _invoke(cli_runner, fake_aws, "web-1", "echo $FAKE_INSTANCE_ID", "--format", "json")

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["instance_id"] == INSTANCE_ID


def test_exec_json_output(cli_runner: CliRunner, fake_aws: FakeAwsClientFactory) -> None:
    fake_aws.add_instance(INSTANCE_ID)

    result = _invoke(cli_runner, fake_aws, INSTANCE_ID, "echo out; echo err >&2", "--format", "json")

    assert result.exit_code == 0, result.output
    output = json.loads(result.stdout)
    assert output["status"] == "SUCCESS"
    assert output["success"] is True
    assert output["response_code"] == 0
    assert output["stdout"] == "out\n"
    assert output["stderr"] == "err\n"
    assert output["region"] == TEST_REGION


def test_exec_failed_command_exits_nonzero(cli_runner: CliRunner, fake_aws: FakeAwsClientFactory) -> None:
    fake_aws.add_instance(INSTANCE_ID)

    result = _invoke(cli_runner, fake_aws, INSTANCE_ID, "echo partial; exit 4", "--format", "jsonl")

    assert result.exit_code == 1
    (line,) = result.stdout.splitlines()
    event = json.loads(line)
    assert event["event"] == "exec_result"
    assert event["status"] == "FAILED"
    assert event["response_code"] == 4
    assert event["stdout"] == "partial\n"


def test_exec_failure_is_reported_on_stderr(cli_runner: CliRunner, fake_aws: FakeAwsClientFactory) -> None:
    fake_aws.add_instance(INSTANCE_ID)

    result = _invoke(cli_runner, fake_aws, INSTANCE_ID, "exit 2")

    assert result.exit_code == 1
    assert result.stdout == ""
    assert "Command finished with status FAILED" in result.stderr


def test_exec_unknown_name_is_an_error(cli_runner: CliRunner, fake_aws: FakeAwsClientFactory) -> None:
    result = _invoke(cli_runner, fake_aws, "no-such-host", "true")

    assert result.exit_code == 1
    assert "no-such-host" in result.stderr
