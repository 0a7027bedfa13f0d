"""Cross-process bookkeeping for temporary S3 grants.

Every ztictl invocation is its own process, so coordination goes through the
filesystem only:

- one lock directory per instance (`locks/iam-<instance>.lock`), created with
  mkdir, which is atomic and fails if the directory exists;
- one registry file of pipe-delimited lines
  (`instanceID|region|policyARN|metadataFile|timestamp`), edited only while
  holding a separate short-lived registry lock file created with O_EXCL and
  always rewritten whole through a temp file and os.replace;
- one metadata file per grant holding the policy ARN, used to rebuild the
  registry if it is lost and to find grants that never reached it.

A registry entry is only removed after its policy is gone, so an interrupted
revocation leaves the entry in place for the next cleanup.

Everything lives in an owner-only state directory.
"""

import os
import secrets
import socket
import time
from collections.abc import Callable
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from datetime import timezone
from pathlib import Path
from typing import Final
from typing import TypeVar

from loguru import logger

from zti.zti_common.frozen_model import FrozenModel
from zti.zti_common.logging import log_span
from zti.zti_common.pure import pure
from zti.ztictl.api.data_types import PermissionGrant
from zti.ztictl.config.data_types import ZtictlConfig
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.errors import LockTimeoutError
from zti.ztictl.primitives import InstanceId
from zti.ztictl.primitives import PolicyArn
from zti.ztictl.primitives import Region
from zti.ztictl.utils.polling import poll_for_value

REGISTRY_FILENAME: Final[str] = "ssm-registry.txt"
REGISTRY_LOCK_FILENAME: Final[str] = "ssm-registry.lock"
LOCKS_DIRNAME: Final[str] = "locks"
METADATA_FILE_PREFIX: Final[str] = "ztiaws-s3-policy-"

T = TypeVar("T")

_OWNER_FILENAME: Final[str] = "owner"
_FIELD_SEPARATOR: Final[str] = "|"
_FIELD_COUNT: Final[int] = 5
_REGISTRY_LOCK_RETRY_SECONDS: Final[float] = 0.1
_REGISTRY_LOCK_STALE_FRACTION: Final[float] = 0.5
_RECLAIM_GUARD_STALE_SECONDS: Final[float] = 5.0
_MAX_HOSTNAME_LENGTH: Final[int] = 32


class LockHandle(FrozenModel):
    """Proof of holding the per-instance permission lock."""

    instance_id: InstanceId
    path: Path
    token: str
    acquired_at: datetime


@pure
def generate_unique_id(now: datetime, hostname: str, random_hex: str) -> str:
    """Grant id from timestamp, host and randomness; safe across parallel invocations."""
    # IAM policy names are capped at 128 characters, so the host part is shortened.
    safe_host = "".join(c if c.isalnum() or c in "-." else "-" for c in hostname)[:_MAX_HOSTNAME_LENGTH] or "localhost"
    return f"{int(now.timestamp())}-{safe_host}-{random_hex}"


def new_unique_id() -> str:
    return generate_unique_id(datetime.now(timezone.utc), socket.gethostname(), secrets.token_hex(8))


@pure
def format_registry_line(grant: PermissionGrant) -> str:
    fields = [
        str(grant.instance_id),
        str(grant.region),
        str(grant.policy_arn),
        str(grant.metadata_path),
        str(int(grant.created_at.timestamp())),
    ]
    for field in fields:
        if _FIELD_SEPARATOR in field or "\n" in field:
            raise ValueError(f"Registry field cannot contain '|' or newlines: {field!r}")
    return _FIELD_SEPARATOR.join(fields)


@pure
def parse_registry_line(line: str) -> PermissionGrant | None:
    """Parse one registry line; None for blank or malformed lines."""
    fields = line.strip().split(_FIELD_SEPARATOR)
    if len(fields) != _FIELD_COUNT:
        return None
    instance_id, region, policy_arn, metadata_path, timestamp = fields
    try:
        return PermissionGrant(
            instance_id=InstanceId(instance_id),
            region=Region(region),
            policy_arn=PolicyArn(policy_arn),
            metadata_path=Path(metadata_path),
            created_at=datetime.fromtimestamp(int(timestamp), tz=timezone.utc),
        )
    except ValueError:
        return None


@pure
def parse_metadata_filename(name: str) -> InstanceId | None:
    """Extract the instance id from `ztiaws-s3-policy-<instance>-<unique>`."""
    if not name.startswith(METADATA_FILE_PREFIX):
        return None
    candidate = name[len(METADATA_FILE_PREFIX) :].split("-")
    if len(candidate) < 2:
        return None
    try:
        return InstanceId(f"{candidate[0]}-{candidate[1]}")
    except ValueError:
        return None


def _age_seconds(path: Path) -> float | None:
    try:
        return time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return None


def _write_private_file(path: Path, content: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())


class PermissionLedger:
    """Per-instance locks and the durable registry of outstanding grants."""

    def __init__(
        self,
        state_dir: Path,
        lock_timeout_seconds: float,
        lock_stale_seconds: float,
        lock_retry_interval_seconds: float,
        registry_lock_timeout_seconds: float,
        # Sleeps for the given seconds and returns True if the caller is shutting down
        wait: Callable[[float], bool] | None = None,
    ) -> None:
        self.state_dir = state_dir
        self._lock_timeout_seconds = lock_timeout_seconds
        self._lock_stale_seconds = lock_stale_seconds
        self._lock_retry_interval_seconds = lock_retry_interval_seconds
        self._registry_lock_timeout_seconds = registry_lock_timeout_seconds
        self._wait = wait

    @classmethod
    def from_config(cls, config: ZtictlConfig, wait: Callable[[float], bool] | None = None) -> "PermissionLedger":
        return cls(
            state_dir=config.state_dir,
            lock_timeout_seconds=config.lock_timeout_seconds,
            lock_stale_seconds=config.lock_stale_seconds,
            lock_retry_interval_seconds=config.lock_retry_interval_seconds,
            registry_lock_timeout_seconds=config.registry_lock_timeout_seconds,
            wait=wait,
        )

    @classmethod
    def from_context(cls, ctx: ZtictlContext) -> "PermissionLedger":
        return cls.from_config(ctx.config, wait=ctx.concurrency_group.wait)

    @property
    def registry_path(self) -> Path:
        return self.state_dir / REGISTRY_FILENAME

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / LOCKS_DIRNAME

    def _poll(self, fetch: Callable[[], T | None], timeout: float, interval: float) -> T | None:
        if self._wait is None:
            return poll_for_value(fetch, timeout, interval)
        return poll_for_value(fetch, timeout, interval, wait=self._wait)

    def ensure_state_dir(self) -> None:
        """Create the state and lock directories with owner-only permissions."""
        for directory in (self.state_dir, self.locks_dir):
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            os.chmod(directory, 0o700)

    # --- per-instance lock ---

    def lock_path(self, instance_id: InstanceId) -> Path:
        return self.locks_dir / f"iam-{instance_id}.lock"

    @contextmanager
    def instance_lock(self, instance_id: InstanceId) -> Iterator[LockHandle]:
        """Hold the per-instance lock for the duration of the block.

        Waits at most lock_timeout_seconds, reclaiming a lock that is older
        than lock_stale_seconds. Raises LockTimeoutError otherwise.
        """
        handle = self.acquire(instance_id)
        try:
            yield handle
        finally:
            self.release(handle)

    def acquire(self, instance_id: InstanceId) -> LockHandle:
        self.ensure_state_dir()
        path = self.lock_path(instance_id)
        token = new_unique_id()

        def _try_acquire() -> LockHandle | None:
            handle = self._try_mkdir_lock(instance_id, path, token)
            if handle is not None:
                return handle
            if self._reclaim_if_stale(path, self._lock_stale_seconds):
                return self._try_mkdir_lock(instance_id, path, token)
            return None

        with log_span("Acquiring permission lock for {}", instance_id):
            handle = self._poll(_try_acquire, self._lock_timeout_seconds, self._lock_retry_interval_seconds)
        if handle is None:
            raise LockTimeoutError(f"permission lock for {instance_id}", self._lock_timeout_seconds)
        return handle

    def _try_mkdir_lock(self, instance_id: InstanceId, path: Path, token: str) -> LockHandle | None:
        try:
            os.mkdir(path, 0o700)
        except FileExistsError:
            return None
        _write_private_file(path / _OWNER_FILENAME, f"{token}\n{os.getpid()}\n")
        logger.trace("Acquired lock {}", path)
        return LockHandle(instance_id=instance_id, path=path, token=token, acquired_at=datetime.now(timezone.utc))

    def _reclaim_if_stale(self, path: Path, stale_seconds: float) -> bool:
        """Remove a lock directory or lock file older than stale_seconds. Returns True if the path is now free.

        A short O_EXCL guard file serializes reclaimers, and staleness is
        re-checked while holding it, so a lock taken fresh by another process
        between our check and our removal is never deleted.
        """
        age = _age_seconds(path)
        if age is None:
            return True
        if age < stale_seconds:
            return False

        guard = path.with_name(path.name + ".reclaim")
        if not _create_exclusive_file(guard, f"{os.getpid()}\n"):
            guard_age = _age_seconds(guard)
            # The guard is only held across a stat and a remove.
            if guard_age is not None and guard_age >= _RECLAIM_GUARD_STALE_SECONDS:
                logger.warning("Removing abandoned reclaim guard {}", guard)
                guard.unlink(missing_ok=True)
            return False
        try:
            age = _age_seconds(path)
            if age is None:
                return True
            if age < stale_seconds:
                return False
            logger.warning("Reclaiming stale lock {} (age {:.0f}s)", path, age)
            if path.is_dir():
                _remove_lock_dir(path)
            else:
                path.unlink(missing_ok=True)
            return True
        finally:
            guard.unlink(missing_ok=True)

    def release(self, handle: LockHandle) -> None:
        """Release a lock, but only if it is still ours (it may have been reclaimed as stale)."""
        owner_file = handle.path / _OWNER_FILENAME
        try:
            current_token = owner_file.read_text().split("\n", 1)[0]
        except FileNotFoundError:
            logger.warning("Lock {} disappeared before release", handle.path)
            return
        if current_token != handle.token:
            logger.warning("Lock {} is now held by another process; not releasing it", handle.path)
            return
        _remove_lock_dir(handle.path)
        logger.trace("Released lock {}", handle.path)

    def reclaim_stale_locks(self) -> list[Path]:
        """Remove every per-instance lock older than the stale threshold."""
        if not self.locks_dir.exists():
            return []
        reclaimed: list[Path] = []
        for path in sorted(self.locks_dir.glob("iam-*.lock")):
            if not path.is_dir():
                continue
            age = _age_seconds(path)
            if age is None or age < self._lock_stale_seconds:
                continue
            if self._reclaim_if_stale(path, self._lock_stale_seconds):
                reclaimed.append(path)
        return reclaimed

    # --- registry ---

    @property
    def registry_lock_stale_seconds(self) -> float:
        # A waiter must be able to reclaim an abandoned lock and still acquire it within its own timeout.
        return self._registry_lock_timeout_seconds * _REGISTRY_LOCK_STALE_FRACTION

    @contextmanager
    def _registry_lock(self) -> Iterator[None]:
        self.ensure_state_dir()
        lock_file = self.state_dir / REGISTRY_LOCK_FILENAME
        content = f"{new_unique_id()}\n{os.getpid()}\n"

        def _try() -> bool | None:
            if _create_exclusive_file(lock_file, content):
                return True
            if self._reclaim_if_stale(lock_file, self.registry_lock_stale_seconds):
                return True if _create_exclusive_file(lock_file, content) else None
            return None

        if self._poll(_try, self._registry_lock_timeout_seconds, _REGISTRY_LOCK_RETRY_SECONDS) is None:
            raise LockTimeoutError("grant registry lock", self._registry_lock_timeout_seconds)
        try:
            yield
        finally:
            _remove_file_if_owned(lock_file, content)

    def _read_unlocked(self) -> list[PermissionGrant]:
        try:
            text = self.registry_path.read_text()
        except FileNotFoundError:
            return []
        grants: list[PermissionGrant] = []
        for line in text.splitlines():
            if not line.strip():
                continue
            grant = parse_registry_line(line)
            if grant is None:
                logger.warning("Skipping malformed registry line: {!r}", line)
                continue
            grants.append(grant)
        return grants

    def _write_unlocked(self, grants: list[PermissionGrant]) -> None:
        content = "".join(format_registry_line(g) + "\n" for g in grants)
        temp_path = self.registry_path.with_name(f".{REGISTRY_FILENAME}.{os.getpid()}.{secrets.token_hex(4)}.tmp")
        try:
            _write_private_file(temp_path, content)
            os.replace(temp_path, self.registry_path)
        finally:
            temp_path.unlink(missing_ok=True)

    def registry_exists(self) -> bool:
        return self.registry_path.exists()

    def read_all(self) -> list[PermissionGrant]:
        with self._registry_lock():
            return self._read_unlocked()

    def add(self, grant: PermissionGrant) -> None:
        line = format_registry_line(grant)
        with self._registry_lock():
            grants = self._read_unlocked()
            grants.append(grant)
            self._write_unlocked(grants)
        logger.debug("Recorded grant in registry: {}", line)

    def read_for_instance(self, instance_id: InstanceId) -> list[PermissionGrant]:
        return [g for g in self.read_all() if g.instance_id == instance_id]

    def remove(self, grant: PermissionGrant) -> None:
        """Drop the entry for one revoked grant. Entries stay until their policy is gone."""
        with self._registry_lock():
            grants = self._read_unlocked()
            kept = [g for g in grants if (g.instance_id, g.policy_arn) != (grant.instance_id, grant.policy_arn)]
            if len(kept) != len(grants):
                self._write_unlocked(kept)
        logger.debug("Removed grant from registry: {}", grant.policy_arn)

    # --- metadata files ---

    def metadata_path(self, instance_id: InstanceId, unique_id: str) -> Path:
        return self.state_dir / f"{METADATA_FILE_PREFIX}{instance_id}-{unique_id}"

    def write_metadata(self, path: Path, policy_arn: PolicyArn, region: Region, role_name: str) -> None:
        """Write the policy ARN (first line), then region and role name, owner-only."""
        self.ensure_state_dir()
        _write_private_file(path, f"{policy_arn}\n{region}\n{role_name}\n")

    def remove_metadata(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    def scan_metadata_files(self, default_region: Region) -> list[PermissionGrant]:
        """Rebuild grant records from metadata files, for when the registry is missing."""
        if not self.state_dir.exists():
            return []
        grants: list[PermissionGrant] = []
        for path in sorted(self.state_dir.glob(f"{METADATA_FILE_PREFIX}*")):
            instance_id = parse_metadata_filename(path.name)
            if instance_id is None:
                logger.warning("Cannot parse instance id from metadata file {}", path)
                continue
            try:
                lines = path.read_text().splitlines()
                policy_arn = PolicyArn(lines[0] if lines else "")
                region = Region(lines[1]) if len(lines) > 1 else default_region
                created_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            except (OSError, ValueError) as e:
                logger.warning("Cannot read metadata file {}: {}", path, e)
                continue
            grants.append(
                PermissionGrant(
                    instance_id=instance_id,
                    region=region,
                    policy_arn=policy_arn,
                    metadata_path=path,
                    created_at=created_at,
                    role_name=lines[2] if len(lines) > 2 and lines[2] else None,
                )
            )
        return grants


def _remove_lock_dir(path: Path) -> None:
    (path / _OWNER_FILENAME).unlink(missing_ok=True)
    try:
        path.rmdir()
    except FileNotFoundError:
        pass


def _create_exclusive_file(path: Path, content: str) -> bool:
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w") as f:
        f.write(content)
    return True


def _remove_file_if_owned(path: Path, content: str) -> None:
    try:
        current = path.read_text()
    except FileNotFoundError:
        logger.warning("Lock file {} disappeared before release", path)
        return
    if current != content:
        logger.warning("Lock file {} is now held by another process; not releasing it", path)
        return
    path.unlink(missing_ok=True)
