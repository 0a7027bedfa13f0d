import os
import tempfile
from pathlib import Path
from typing import Final

from pydantic import ConfigDict
from pydantic import Field

from zti.concurrency_group.concurrency_group import ConcurrencyGroup
from zti.zti_common.frozen_model import FrozenModel
from zti.zti_common.primitives import NonNegativeFloat
from zti.zti_common.primitives import PositiveFloat
from zti.zti_common.primitives import PositiveInt
from zti.ztictl.aws.clients import AwsClientFactory
from zti.ztictl.primitives import LogLevel
from zti.ztictl.primitives import OutputFormat
from zti.ztictl.primitives import Region

ROOT_CONFIG_FILENAME: Final[str] = "settings.toml"

# Files at or above this size are moved through S3 instead of inside the command text.
DEFAULT_TRANSFER_THRESHOLD_BYTES: Final[int] = 1024 * 1024

# SSM truncates command output at 24000 characters; 16 KiB encodes to under 22 KiB of base64.
DEFAULT_DIRECT_CHUNK_BYTES: Final[int] = 16 * 1024


def default_state_dir() -> Path:
    return Path(tempfile.gettempdir()) / "ztiaws"


class LoggingConfig(FrozenModel):
    """Logging configuration for ztictl."""

    file_level: LogLevel = Field(
        default=LogLevel.DEBUG,
        description="Log level for the JSON log file",
    )
    console_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Log level for user-facing console output",
    )
    log_dir: Path = Field(
        default=Path("logs"),
        description="Directory for log files (relative to the ztictl home dir if relative)",
    )
    max_log_files: PositiveInt = Field(
        default=PositiveInt(200),
        description="Maximum number of log files to keep",
    )
    max_log_size_mb: PositiveInt = Field(
        default=PositiveInt(10),
        description="Maximum size of each log file in MB",
    )


class ZtictlConfig(FrozenModel):
    """Settings for ztictl, merged from defaults, the settings file, and the environment."""

    default_region: Region | None = Field(
        default=None,
        description="Region used when --region is not given",
    )
    state_dir: Path = Field(
        default_factory=default_state_dir,
        description="Owner-only directory holding the grant registry, lock directories and metadata files",
    )
    transfer_threshold_bytes: PositiveInt = Field(
        default=PositiveInt(DEFAULT_TRANSFER_THRESHOLD_BYTES),
        description="Files of at least this many bytes are transferred through S3",
    )
    direct_chunk_bytes: PositiveInt = Field(
        default=PositiveInt(DEFAULT_DIRECT_CHUNK_BYTES),
        description="Raw bytes moved per command on the direct path; base64 output must fit the SSM output cap",
    )
    poll_interval_seconds: PositiveFloat = Field(
        default=PositiveFloat(2.0),
        description="Delay between invocation status checks",
    )
    command_timeout_seconds: PositiveFloat = Field(
        default=PositiveFloat(300.0),
        description="Wall-clock budget for one invocation to reach a terminal status",
    )
    lock_timeout_seconds: PositiveFloat = Field(
        default=PositiveFloat(30.0),
        description="How long to wait for the per-instance permission lock",
    )
    lock_stale_seconds: PositiveFloat = Field(
        default=PositiveFloat(300.0),
        description="A lock older than this is assumed abandoned and reclaimed",
    )
    registry_lock_timeout_seconds: PositiveFloat = Field(
        default=PositiveFloat(10.0),
        description="How long to wait for the short registry lock",
    )
    lock_retry_interval_seconds: PositiveFloat = Field(
        default=PositiveFloat(1.0),
        description="Delay between lock acquisition attempts",
    )
    propagation_delay_seconds: NonNegativeFloat = Field(
        default=NonNegativeFloat(5.0),
        description="Pause after attaching a policy so IAM changes reach the instance",
    )
    default_parallelism: PositiveInt | None = Field(
        default=None,
        description="Worker count for exec-tagged (None means the number of CPUs)",
    )
    registry_max_age_hours: PositiveFloat = Field(
        default=PositiveFloat(24.0),
        description="Registry entries older than this are pruned during emergency cleanup",
    )
    aws_max_attempts: PositiveInt = Field(
        default=PositiveInt(5),
        description="Retry budget handed to botocore for each AWS API call",
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def resolve_parallelism(self, requested: int | None) -> PositiveInt:
        if requested is not None:
            return PositiveInt(requested)
        if self.default_parallelism is not None:
            return self.default_parallelism
        return PositiveInt(os.cpu_count() or 1)


class OutputOptions(FrozenModel):
    """Options for command output and logging, parsed from the common CLI flags."""

    output_format: OutputFormat = Field(default=OutputFormat.HUMAN)
    console_level: LogLevel = Field(default=LogLevel.INFO)
    log_file_path: Path | None = Field(default=None)


class ZtictlContext(FrozenModel):
    """Everything one top-level operation needs, captured once and passed explicitly.

    There is no process-wide region. Crash cleanup and every AWS call read the
    region from here.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    config: ZtictlConfig
    region: Region
    home_dir: Path
    clients: AwsClientFactory
    concurrency_group: ConcurrencyGroup
