import pytest

from zti.ztictl.api.command import DEFAULT_COMMENT
from zti.ztictl.api.command import CommandExecutor
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.errors import CommandTimeoutError
from zti.ztictl.errors import RemoteExecutionFailure
from zti.ztictl.errors import TransportError
from zti.ztictl.primitives import InstanceId
from zti.ztictl.primitives import InvocationStatus
from zti.ztictl.utils.testing import FakeAwsClientFactory

INSTANCE_A = InstanceId("i-0aaaaaaaaaaaaaaa1")


def test_run_returns_stdout_and_success(temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory) -> None:
    """A successful command comes back with its output and exit code."""
    fake_aws.add_instance(INSTANCE_A)

    invocation = CommandExecutor(temp_ztictl_ctx).run(INSTANCE_A, "echo hello")

    assert invocation.status == InvocationStatus.SUCCESS
    assert invocation.is_success
    assert invocation.stdout == "hello\n"
    assert invocation.response_code == 0
    assert invocation.region == temp_ztictl_ctx.region


def test_run_reports_failed_command_without_raising(
    temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory
) -> None:
    """A non-zero exit is a FAILED invocation, not an exception."""
    fake_aws.add_instance(INSTANCE_A)

    invocation = CommandExecutor(temp_ztictl_ctx).run(INSTANCE_A, "echo oops >&2; exit 3")

    assert invocation.status == InvocationStatus.FAILED
    assert invocation.response_code == 3
    assert invocation.stderr == "oops\n"


def test_command_text_reaches_instance_unchanged(
    temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory
) -> None:
    """Quotes, dollars and newlines in the command are not re-interpreted on the way."""
    fake_aws.add_instance(INSTANCE_A)
    command = "printf '%s\\n' \"it's $((1 + 1))\"\necho 'second line'"

    invocation = CommandExecutor(temp_ztictl_ctx).run(INSTANCE_A, command)

    assert fake_aws.fake_ssm.scripts_sent_to(INSTANCE_A) == [command]
    assert invocation.stdout == "it's 2\nsecond line\n"


def test_submit_failure_raises_transport_error(temp_ztictl_ctx: ZtictlContext) -> None:
    """Sending to an instance SSM does not know fails immediately."""
    with pytest.raises(TransportError) as exc_info:
        CommandExecutor(temp_ztictl_ctx).submit(INSTANCE_A, "true")

    assert exc_info.value.error_code == "InvalidInstanceId"


def test_comment_is_recorded_and_truncated(temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory) -> None:
    """Comments are passed to SSM and cut to the length it accepts."""
    fake_aws.add_instance(INSTANCE_A)
    executor = CommandExecutor(temp_ztictl_ctx)

    executor.run(INSTANCE_A, "true")
    executor.run(INSTANCE_A, "true", comment="x" * 150)

    comments = [i.comment for i in fake_aws.fake_ssm.sent]
    assert comments == [DEFAULT_COMMENT, "x" * 100]


def test_poll_waits_through_invocation_not_yet_visible(
    temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory
) -> None:
    """InvocationDoesNotExist right after submission is retried silently."""
    fake_aws.add_instance(INSTANCE_A)
    fake_aws.fake_ssm.invisible_polls = 3

    invocation = CommandExecutor(temp_ztictl_ctx).run(INSTANCE_A, "echo ok")

    assert invocation.is_success
    assert fake_aws.fake_ssm.invisible_polls == 0


def test_poll_times_out_with_command_timeout_error(
    temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory
) -> None:
    """An invocation that never finishes raises once the wall-clock budget is spent."""
    fake_aws.add_instance(INSTANCE_A)
    fake_aws.fake_ssm.hanging_instances.add(INSTANCE_A)
    executor = CommandExecutor(temp_ztictl_ctx)
    invocation = executor.submit(INSTANCE_A, "sleep 100")

    with pytest.raises(CommandTimeoutError) as exc_info:
        executor.poll(invocation, timeout_seconds=0.2)

    assert exc_info.value.invocation_id == invocation.invocation_id
    assert "did not finish within 0.2s" in str(exc_info.value)


def test_poll_timeout_names_last_polling_error(temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory) -> None:
    """Transient polling errors are retried, and the last one is reported on timeout."""
    fake_aws.add_instance(INSTANCE_A)
    executor = CommandExecutor(temp_ztictl_ctx)
    invocation = executor.submit(INSTANCE_A, "true")
    fake_aws.fake_ssm.fail("GetCommandInvocation", "ThrottlingException")

    with pytest.raises(CommandTimeoutError) as exc_info:
        executor.poll(invocation, timeout_seconds=0.2)

    assert "ThrottlingException" in str(exc_info.value)


def test_poll_returns_terminal_invocation_without_calling_ssm(
    temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory
) -> None:
    """Polling an already finished invocation returns it unchanged."""
    fake_aws.add_instance(INSTANCE_A)
    executor = CommandExecutor(temp_ztictl_ctx)
    finished = executor.run(INSTANCE_A, "true")
    fake_aws.fake_ssm.fail("GetCommandInvocation", "ThrottlingException")

    assert executor.poll(finished) == finished


def test_run_checked_raises_on_failure(temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory) -> None:
    """run_checked names the step and carries the remote stderr."""
    fake_aws.add_instance(INSTANCE_A)

    with pytest.raises(RemoteExecutionFailure) as exc_info:
        CommandExecutor(temp_ztictl_ctx).run_checked(INSTANCE_A, "echo broken >&2; false", step="Check things")

    assert exc_info.value.step == "Check things"
    assert exc_info.value.stderr == "broken\n"
    assert "Check things on i-0aaaaaaaaaaaaaaa1" in str(exc_info.value)


def test_list_invocations_reports_reached_instances(
    temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory
) -> None:
    """Delivery status is read back per instance."""
    fake_aws.add_instance(INSTANCE_A)
    fake_aws.fake_ssm.hanging_instances.add(INSTANCE_A)
    executor = CommandExecutor(temp_ztictl_ctx)
    invocation = executor.submit(INSTANCE_A, "sleep 100")

    assert executor.list_invocations(invocation.invocation_id) == {INSTANCE_A: InvocationStatus.IN_PROGRESS}
