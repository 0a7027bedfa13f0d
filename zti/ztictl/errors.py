from click import ClickException

from zti.ztictl.cli.output_helpers import format_error_for_cli


class BaseZtictlError(Exception):
    """Base exception for all ztictl errors."""


class ZtictlError(ClickException, BaseZtictlError):
    """Base exception for all user-facing ztictl errors.

    Subclasses can set user_help_text to explain how to resolve the problem;
    the CLI prints it below the error message.
    """

    user_help_text: str | None = None

    def format_message(self) -> str:
        return format_error_for_cli(self, self.user_help_text)


class UserInputError(ZtictlError):
    """Raised when user input is invalid."""

    user_help_text = "Check the command syntax with 'ztictl --help' or 'ztictl <command> --help'."


class ValidationError(UserInputError, ValueError):
    """Raised when parameters are malformed or conflict with each other."""


class ConfigError(ZtictlError):
    """Base class for configuration errors."""


class ConfigParseError(ConfigError):
    """Raised when a settings file cannot be parsed or has unknown keys."""


class TargetResolutionError(ZtictlError):
    """Raised when an identifier or selector resolves to zero (or too many) instances."""


class NoMatchingTargetsError(TargetResolutionError):
    """Raised when a tagged selector matches no instance."""

    def __init__(self, selector_description: str) -> None:
        self.selector_description = selector_description
        super().__init__(f"no matching targets for {selector_description}")

    user_help_text = "Only running instances are matched. Check the tag keys and values, and the region."


class TransportError(ZtictlError):
    """Raised when an AWS API call made on behalf of an instance fails."""

    def __init__(self, step: str, target: str, error_code: str, detail: str) -> None:
        self.step = step
        self.target = target
        self.error_code = error_code
        super().__init__(f"{step} failed for {target}: [{error_code}] {detail}")


class RemoteExecutionFailure(ZtictlError):
    """Raised when a remote command finished with a status other than success."""

    def __init__(self, instance_id: str, step: str, status: str, stderr: str) -> None:
        self.instance_id = instance_id
        self.step = step
        self.status = status
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"{step} on {instance_id} finished with status {status}{detail}")


class RemoteFileNotFoundError(RemoteExecutionFailure):
    """Raised when a remote path to be downloaded does not exist."""

    def __init__(self, instance_id: str, remote_path: str) -> None:
        self.remote_path = remote_path
        super().__init__(instance_id, "Remote file check", "NOT_FOUND", f"remote file not found: {remote_path}")


class CommandTimeoutError(ZtictlError):
    """Raised when an invocation does not reach a terminal status in time."""

    def __init__(self, instance_id: str, invocation_id: str, timeout_seconds: float, last_error: str | None) -> None:
        self.instance_id = instance_id
        self.invocation_id = invocation_id
        message = f"Command {invocation_id} on {instance_id} did not finish within {timeout_seconds:g}s"
        if last_error is not None:
            message += f" (last polling error: {last_error})"
        super().__init__(message)

    user_help_text = "The command may still be running on the instance. Raise --timeout to wait longer."


class LocalFileError(UserInputError):
    """Raised when a local file cannot be read or a local destination cannot be created."""


class BucketSetupError(ZtictlError):
    """Raised when the transfer bucket cannot be found, created, or configured."""


class PermissionLifecycleError(ZtictlError):
    """Raised when a temporary S3 grant cannot be attached (after rolling back)."""


class NoExecutionRoleError(PermissionLifecycleError):
    """Raised when an instance has no IAM instance profile or role to attach a grant to."""

    def __init__(self, instance_id: str, reason: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id} has no usable execution role: {reason}")

    user_help_text = (
        "Large transfers go through S3 and need an IAM instance profile on the instance. "
        "Attach an instance profile (e.g. with AmazonSSMManagedInstanceCore) and retry, "
        "or transfer a file smaller than 1 MiB."
    )


class LockTimeoutError(ZtictlError):
    """Raised when a cross-process lock cannot be acquired within its bound."""

    def __init__(self, lock_name: str, timeout_seconds: float) -> None:
        self.lock_name = lock_name
        super().__init__(f"Could not acquire {lock_name} within {timeout_seconds:g}s")

    user_help_text = (
        "Another ztictl process is changing permissions for this instance. "
        "Wait for it to finish and retry, or run 'ztictl emergency-cleanup' if it crashed."
    )
