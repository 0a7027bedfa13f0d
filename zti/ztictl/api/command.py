from typing import Final

from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from loguru import logger

from zti.zti_common.logging import log_call
from zti.zti_common.logging import log_span
from zti.ztictl.api.data_types import CommandInvocation
from zti.ztictl.aws.clients import aws_error_code
from zti.ztictl.aws.clients import aws_error_message
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.errors import CommandTimeoutError
from zti.ztictl.errors import RemoteExecutionFailure
from zti.ztictl.errors import TransportError
from zti.ztictl.primitives import InstanceId
from zti.ztictl.primitives import InvocationId
from zti.ztictl.primitives import InvocationStatus
from zti.ztictl.primitives import parse_invocation_status
from zti.ztictl.utils.polling import poll_for_value

SHELL_DOCUMENT_NAME: Final[str] = "AWS-RunShellScript"
DEFAULT_COMMENT: Final[str] = "Command executed via ztictl"

# SSM rejects comments longer than this.
_MAX_COMMENT_LENGTH: Final[int] = 100

# Returned by get_command_invocation for a short while right after send_command.
_NOT_YET_VISIBLE_CODE: Final[str] = "InvocationDoesNotExist"


class CommandExecutor:
    """Runs one shell command on one instance through SSM Run Command and waits for it.

    The region, timeouts and poll interval all come from the context, so one
    executor serves a whole top-level operation.
    """

    def __init__(self, ctx: ZtictlContext) -> None:
        self._ctx = ctx

    @property
    def ctx(self) -> ZtictlContext:
        return self._ctx

    @log_call
    def submit(self, instance_id: InstanceId, command: str, comment: str = DEFAULT_COMMENT) -> CommandInvocation:
        """Send the command. Never retried here: a failed submission raises TransportError."""
        ssm = self._ctx.clients.ssm(self._ctx.region)
        try:
            response = ssm.send_command(
                InstanceIds=[instance_id],
                DocumentName=SHELL_DOCUMENT_NAME,
                # The command travels as one list element, so quotes and newlines in it stay intact.
                Parameters={"commands": [command]},
                Comment=comment[:_MAX_COMMENT_LENGTH],
            )
        except (BotoCoreError, ClientError) as e:
            raise TransportError("Submit command", instance_id, aws_error_code(e), aws_error_message(e)) from e

        invocation_id = InvocationId(response["Command"]["CommandId"])
        logger.debug("Submitted command {} to {}", invocation_id, instance_id)
        return CommandInvocation(
            instance_id=instance_id,
            region=self._ctx.region,
            command=command,
            invocation_id=invocation_id,
        )

    def poll(self, invocation: CommandInvocation, timeout_seconds: float | None = None) -> CommandInvocation:
        """Block until the invocation reaches a terminal status.

        Transport errors while polling are retried until the wall-clock budget
        runs out; then CommandTimeoutError names the last error seen.
        """
        if invocation.status.is_terminal:
            return invocation
        timeout = timeout_seconds if timeout_seconds is not None else self._ctx.config.command_timeout_seconds
        last_error: list[str] = []
        current = invocation

        def _fetch() -> CommandInvocation | None:
            nonlocal current
            observed = self._fetch_status(current, last_error)
            if observed is None:
                return None
            current = observed
            return observed if observed.status.is_terminal else None

        with log_span("Polling command {}", invocation.invocation_id, instance_id=str(invocation.instance_id)):
            final = poll_for_value(
                _fetch,
                timeout=timeout,
                poll_interval=self._ctx.config.poll_interval_seconds,
                wait=self._ctx.concurrency_group.wait,
            )
        if final is None:
            raise CommandTimeoutError(
                invocation.instance_id,
                invocation.invocation_id,
                timeout,
                last_error[-1] if last_error else None,
            )
        return final

    def _fetch_status(self, invocation: CommandInvocation, last_error: list[str]) -> CommandInvocation | None:
        ssm = self._ctx.clients.ssm(self._ctx.region)
        try:
            response = ssm.get_command_invocation(
                CommandId=invocation.invocation_id,
                InstanceId=invocation.instance_id,
            )
        except (BotoCoreError, ClientError) as e:
            code = aws_error_code(e)
            if code != _NOT_YET_VISIBLE_CODE:
                last_error.append(f"[{code}] {aws_error_message(e)}")
                logger.warning(
                    "Polling {} on {} failed, will retry: [{}]",
                    invocation.invocation_id,
                    invocation.instance_id,
                    code,
                )
            return None

        status = parse_invocation_status(response.get("Status", ""))
        # Statuses only move forward; never report a step back into a non-terminal state.
        if invocation.status == InvocationStatus.IN_PROGRESS and status == InvocationStatus.PENDING:
            status = InvocationStatus.IN_PROGRESS
        response_code = response.get("ResponseCode")
        return invocation.evolve(
            status=status,
            stdout=response.get("StandardOutputContent", ""),
            stderr=response.get("StandardErrorContent", ""),
            response_code=response_code if isinstance(response_code, int) and response_code >= 0 else None,
        )

    def run(
        self,
        instance_id: InstanceId,
        command: str,
        comment: str = DEFAULT_COMMENT,
        timeout_seconds: float | None = None,
    ) -> CommandInvocation:
        """Submit and poll. The returned invocation may have any terminal status."""
        return self.poll(self.submit(instance_id, command, comment), timeout_seconds)

    def run_checked(
        self,
        instance_id: InstanceId,
        command: str,
        # Human-readable name of the step, used in the error message
        step: str,
        comment: str = DEFAULT_COMMENT,
        timeout_seconds: float | None = None,
    ) -> CommandInvocation:
        """Like run, but raise RemoteExecutionFailure unless the command succeeded."""
        invocation = self.run(instance_id, command, comment, timeout_seconds)
        if not invocation.is_success:
            raise RemoteExecutionFailure(instance_id, step, invocation.status, invocation.stderr)
        return invocation

    @log_call
    def list_invocations(self, invocation_id: InvocationId) -> dict[InstanceId, InvocationStatus]:
        """Return the status of every instance the command actually reached."""
        ssm = self._ctx.clients.ssm(self._ctx.region)
        statuses: dict[InstanceId, InvocationStatus] = {}
        try:
            paginator = ssm.get_paginator("list_command_invocations")
            for page in paginator.paginate(CommandId=invocation_id):
                for entry in page.get("CommandInvocations", []):
                    statuses[InstanceId(entry["InstanceId"])] = parse_invocation_status(entry.get("Status", ""))
        except (BotoCoreError, ClientError) as e:
            raise TransportError("List invocations", invocation_id, aws_error_code(e), aws_error_message(e)) from e
        return statuses
