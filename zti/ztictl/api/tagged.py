import time
from concurrent.futures import Future
from typing import Final

from loguru import logger

from zti.concurrency_group.executor import ConcurrencyGroupExecutor
from zti.zti_common.logging import log_call
from zti.zti_common.logging import log_span
from zti.zti_common.primitives import PositiveInt
from zti.ztictl.api.command import CommandExecutor
from zti.ztictl.api.data_types import TaggedExecutionResult
from zti.ztictl.api.data_types import TaggedExecutionSummary
from zti.ztictl.api.data_types import TargetResult
from zti.ztictl.api.data_types import TargetSelector
from zti.ztictl.api.resolve import resolve_targets
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.errors import BaseZtictlError
from zti.ztictl.errors import CommandTimeoutError
from zti.ztictl.errors import ValidationError
from zti.ztictl.primitives import InstanceId
from zti.ztictl.primitives import InvocationStatus

TAGGED_COMMENT: Final[str] = "Tagged execution via ztictl"


class TaggedCommandExecutor:
    """Runs one command on every instance a selector resolves to, with bounded parallelism."""

    def __init__(self, ctx: ZtictlContext, command_executor: CommandExecutor | None = None) -> None:
        self._ctx = ctx
        self._command_executor = command_executor if command_executor is not None else CommandExecutor(ctx)

    @log_call
    def execute(
        self,
        selector: TargetSelector,
        command: str,
        parallelism: int | None = None,
        timeout_seconds: float | None = None,
    ) -> TaggedExecutionResult:
        """Resolve targets once, fan out, and collect results in resolution order.

        A failure on one target never cancels the others. Raises
        NoMatchingTargetsError, before sending anything, if nothing matches.
        """
        try:
            max_parallelism = self._ctx.config.resolve_parallelism(parallelism)
        except ValueError as e:
            raise ValidationError(f"Invalid parallelism: {e}") from e

        targets = resolve_targets(self._ctx, selector)
        logger.info("Executing on {} targets (max parallelism {})", len(targets), max_parallelism)

        start_time = time.monotonic()
        with log_span("Fanning out command to {} targets", len(targets), region=str(self._ctx.region)):
            with ConcurrencyGroupExecutor(
                parent_cg=self._ctx.concurrency_group,
                name="exec-tagged",
                max_workers=min(max_parallelism, len(targets)),
            ) as pool:
                futures = [pool.submit(self._run_on_target, target, command, timeout_seconds) for target in targets]
        results = tuple(_collect_result(target, future) for target, future in zip(targets, futures))
        wall_clock_seconds = time.monotonic() - start_time

        succeeded = sum(1 for r in results if r.is_success)
        summary = TaggedExecutionSummary(
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            wall_clock_seconds=wall_clock_seconds,
            parallelism=PositiveInt(max_parallelism),
        )
        logger.debug("Tagged execution finished: {} succeeded, {} failed", summary.succeeded, summary.failed)
        return TaggedExecutionResult(results=results, summary=summary)

    def _run_on_target(self, instance_id: InstanceId, command: str, timeout_seconds: float | None) -> TargetResult:
        start_time = time.monotonic()
        try:
            invocation = self._command_executor.submit(instance_id, command, TAGGED_COMMENT)
        except BaseZtictlError as e:
            logger.warning("Submission to {} failed: {}", instance_id, e)
            return TargetResult(
                instance_id=instance_id,
                status=InvocationStatus.FAILED,
                duration_seconds=time.monotonic() - start_time,
                error=str(e),
            )

        try:
            final = self._command_executor.poll(invocation, timeout_seconds)
        except CommandTimeoutError as e:
            return TargetResult(
                instance_id=instance_id,
                status=InvocationStatus.TIMED_OUT,
                duration_seconds=time.monotonic() - start_time,
                invocation_id=invocation.invocation_id,
                error=f"{e}; {self._describe_reach(invocation.invocation_id, instance_id)}",
            )

        return TargetResult(
            instance_id=instance_id,
            status=final.status,
            duration_seconds=time.monotonic() - start_time,
            stdout=final.stdout,
            stderr=final.stderr,
            invocation_id=final.invocation_id,
        )

    def _describe_reach(self, invocation_id: str, instance_id: InstanceId) -> str:
        """Ask SSM whether a command that never finished actually reached the instance."""
        try:
            reached = self._command_executor.list_invocations(invocation_id)
        except BaseZtictlError as e:
            return f"could not confirm delivery ({e})"
        if instance_id in reached:
            return f"instance reports status {reached[instance_id]}"
        return "command never reached the instance"


def _collect_result(instance_id: InstanceId, future: "Future[TargetResult]") -> TargetResult:
    try:
        return future.result()
    except Exception as e:
        # Anything unexpected still becomes a failed row rather than a missing one.
        logger.opt(exception=e).error("Unexpected error while running on {}", instance_id)
        return TargetResult(
            instance_id=instance_id,
            status=InvocationStatus.FAILED,
            duration_seconds=0.0,
            error=f"{type(e).__name__}: {e}",
        )
