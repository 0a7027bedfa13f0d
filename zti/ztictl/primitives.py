import re
from enum import auto
from typing import Final
from typing import Self

from zti.zti_common.primitives import NonEmptyStr
from zti.zti_common.primitives import UpperCaseStrEnum

INSTANCE_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"^i-[0-9a-f]{8,17}$")
REGION_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-z]{2,3}-[a-z]+-[0-9]+$")


class InstanceId(NonEmptyStr):
    """EC2 instance id, e.g. i-0123456789abcdef0."""

    def __new__(cls, value: str) -> Self:
        instance = super().__new__(cls, value)
        if not INSTANCE_ID_PATTERN.match(instance):
            raise ValueError(f"Invalid instance ID format: {value!r} (expected i-xxxxxxxx)")
        return instance


class Region(NonEmptyStr):
    """AWS region name, e.g. ca-central-1."""

    def __new__(cls, value: str) -> Self:
        instance = super().__new__(cls, value)
        if not REGION_PATTERN.match(instance):
            raise ValueError(f"Invalid region format: {value!r} (expected e.g. us-east-1)")
        return instance


class InvocationId(NonEmptyStr):
    """Command id assigned by SSM to one send_command call."""


class BucketName(NonEmptyStr):
    """Name of an S3 bucket."""


class PolicyArn(NonEmptyStr):
    """ARN of a customer-managed IAM policy."""


class InvocationStatus(UpperCaseStrEnum):
    """Status of one command invocation on one instance."""

    PENDING = auto()
    IN_PROGRESS = auto()
    SUCCESS = auto()
    FAILED = auto()
    CANCELLED = auto()
    TIMED_OUT = auto()

    @property
    def is_terminal(self) -> bool:
        return self not in (InvocationStatus.PENDING, InvocationStatus.IN_PROGRESS)


# SSM reports a few transitional statuses that collapse onto our two non-terminal states.
_SSM_STATUS_MAP: Final[dict[str, InvocationStatus]] = {
    "Pending": InvocationStatus.PENDING,
    "InProgress": InvocationStatus.IN_PROGRESS,
    "Delayed": InvocationStatus.IN_PROGRESS,
    "Cancelling": InvocationStatus.IN_PROGRESS,
    "Success": InvocationStatus.SUCCESS,
    "Failed": InvocationStatus.FAILED,
    "Cancelled": InvocationStatus.CANCELLED,
    "TimedOut": InvocationStatus.TIMED_OUT,
}


def parse_invocation_status(raw_status: str) -> InvocationStatus:
    """Map an SSM status string onto InvocationStatus. Unknown values are treated as failures."""
    return _SSM_STATUS_MAP.get(raw_status, InvocationStatus.FAILED)


class TransferStrategy(UpperCaseStrEnum):
    """How file bytes travel between this machine and the instance."""

    # Bytes are base64-encoded into the command text itself.
    DIRECT = auto()
    # Bytes go through an S3 bucket the instance is temporarily allowed to use.
    MEDIATED = auto()


class TransferDirection(UpperCaseStrEnum):
    UPLOAD = auto()
    DOWNLOAD = auto()


class OutputFormat(UpperCaseStrEnum):
    """Output format for command results."""

    HUMAN = auto()
    JSON = auto()
    JSONL = auto()


class ErrorBehavior(UpperCaseStrEnum):
    """What to do when one item of a multi-item operation fails."""

    ABORT = auto()
    CONTINUE = auto()


class LogLevel(UpperCaseStrEnum):
    """Log verbosity levels."""

    TRACE = auto()
    DEBUG = auto()
    INFO = auto()
    WARN = auto()
    ERROR = auto()
    NONE = auto()
