from datetime import datetime
from pathlib import Path

from pydantic import Field
from pydantic import model_validator

from zti.zti_common.frozen_model import FrozenModel
from zti.zti_common.primitives import NonEmptyStr
from zti.zti_common.primitives import PositiveInt
from zti.ztictl.primitives import InstanceId
from zti.ztictl.primitives import InvocationId
from zti.ztictl.primitives import InvocationStatus
from zti.ztictl.primitives import PolicyArn
from zti.ztictl.primitives import Region
from zti.ztictl.primitives import TransferDirection
from zti.ztictl.primitives import TransferStrategy


class CommandInvocation(FrozenModel):
    """One command sent to one instance, as last observed by polling."""

    instance_id: InstanceId
    region: Region
    command: str
    invocation_id: InvocationId
    status: InvocationStatus = InvocationStatus.PENDING
    stdout: str = ""
    stderr: str = ""
    response_code: int | None = Field(default=None, description="Exit code of the remote script, when known")

    @property
    def is_success(self) -> bool:
        return self.status == InvocationStatus.SUCCESS


class TagFilter(FrozenModel):
    """Equality filter on one EC2 tag."""

    key: NonEmptyStr
    value: NonEmptyStr


class TargetSelector(FrozenModel):
    """Either tag filters (all must match) or an explicit list of instance ids, never both."""

    tag_filters: tuple[TagFilter, ...] = ()
    instance_ids: tuple[InstanceId, ...] = ()

    @model_validator(mode="after")
    def _exactly_one_kind(self) -> "TargetSelector":
        if self.tag_filters and self.instance_ids:
            raise ValueError("tag filters and instance ids are mutually exclusive")
        if not self.tag_filters and not self.instance_ids:
            raise ValueError("either tag filters or instance ids must be given")
        return self

    def describe(self) -> str:
        if self.tag_filters:
            return "tags " + ",".join(f"{f.key}={f.value}" for f in self.tag_filters)
        return "instances " + ",".join(self.instance_ids)


class TargetResult(FrozenModel):
    """Outcome of a tagged run on one instance."""

    instance_id: InstanceId
    status: InvocationStatus
    duration_seconds: float
    stdout: str = ""
    stderr: str = ""
    invocation_id: InvocationId | None = None
    # Set when the failure happened locally (submission or polling) rather than on the instance
    error: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status == InvocationStatus.SUCCESS and self.error is None


class TaggedExecutionSummary(FrozenModel):
    total: int
    succeeded: int
    failed: int
    wall_clock_seconds: float
    parallelism: PositiveInt


class TaggedExecutionResult(FrozenModel):
    """Per-target results in target resolution order, plus a summary."""

    results: tuple[TargetResult, ...]
    summary: TaggedExecutionSummary

    @property
    def is_success(self) -> bool:
        return self.summary.failed == 0


class PermissionGrant(FrozenModel):
    """A temporary S3 policy attached to an instance's role, as recorded in the registry."""

    instance_id: InstanceId
    region: Region
    policy_arn: PolicyArn
    metadata_path: Path
    created_at: datetime
    # Role the policy was attached to, when known; registry lines do not carry it
    role_name: str | None = None


class TransferJob(FrozenModel):
    direction: TransferDirection
    local_path: Path
    remote_path: NonEmptyStr
    instance_id: InstanceId
    region: Region
    size_bytes: int
    strategy: TransferStrategy


class TransferResult(FrozenModel):
    job: TransferJob
    duration_seconds: float
    bucket_name: str | None = None
