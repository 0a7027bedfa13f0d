import json
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path
from typing import Any
from typing import Final
from typing import assert_never

from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from loguru import logger

from zti.zti_common.frozen_model import FrozenModel
from zti.zti_common.logging import log_call
from zti.zti_common.logging import log_span
from zti.zti_common.pure import pure
from zti.ztictl.api.data_types import PermissionGrant
from zti.ztictl.api.ledger import PermissionLedger
from zti.ztictl.api.ledger import new_unique_id
from zti.ztictl.aws.clients import aws_error_code
from zti.ztictl.aws.clients import aws_error_message
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.errors import BaseZtictlError
from zti.ztictl.errors import NoExecutionRoleError
from zti.ztictl.errors import PermissionLifecycleError
from zti.ztictl.errors import TargetResolutionError
from zti.ztictl.errors import TransportError
from zti.ztictl.primitives import ErrorBehavior
from zti.ztictl.primitives import InstanceId
from zti.ztictl.primitives import PolicyArn

POLICY_NAME_PREFIX: Final[str] = "ZTIaws-SSM-S3-Access"
POLICY_DESCRIPTION: Final[str] = "Temporary S3 access for ztiaws SSM file transfer"

_NO_SUCH_ENTITY: Final[str] = "NoSuchEntity"


@pure
def build_bucket_policy_document(bucket_name: str) -> dict[str, Any]:
    """Least-privilege policy: object get/put/delete in the bucket, and listing the bucket itself."""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["s3:GetObject", "s3:PutObject", "s3:DeleteObject"],
                "Resource": f"arn:aws:s3:::{bucket_name}/*",
            },
            {
                "Effect": "Allow",
                "Action": ["s3:ListBucket"],
                "Resource": f"arn:aws:s3:::{bucket_name}",
            },
        ],
    }


@pure
def build_policy_name(instance_id: InstanceId, unique_id: str) -> str:
    return f"{POLICY_NAME_PREFIX}-{instance_id}-{unique_id}"


class EmergencyCleanupResult(FrozenModel):
    """What an emergency cleanup found and did."""

    # "registry" (plus metadata files it does not mention) or "metadata" when the registry is missing
    source: str
    revoked: tuple[PermissionGrant, ...] = ()
    failed: tuple[PermissionGrant, ...] = ()
    # Entries older than the registry age limit that failed and were dropped instead of kept
    pruned: tuple[PermissionGrant, ...] = ()
    reclaimed_locks: tuple[Path, ...] = ()

    @property
    def is_success(self) -> bool:
        return len(self.failed) == 0


class PermissionManager:
    """Attaches and revokes temporary, bucket-scoped IAM policies on instance roles.

    Every mutation for an instance happens under that instance's cross-process
    lock, and every live attachment is recorded in the ledger until revoked.
    """

    def __init__(self, ctx: ZtictlContext, ledger: PermissionLedger | None = None) -> None:
        self._ctx = ctx
        self._ledger = ledger if ledger is not None else PermissionLedger.from_context(ctx)

    @property
    def ledger(self) -> PermissionLedger:
        return self._ledger

    def _iam(self) -> Any:
        return self._ctx.clients.iam()

    @log_call
    def get_instance_role(self, instance_id: InstanceId) -> str:
        """Return the name of the IAM role behind the instance's instance profile.

        Raises NoExecutionRoleError if there is no profile or the profile has no role.
        """
        ec2 = self._ctx.clients.ec2(self._ctx.region)
        try:
            response = ec2.describe_instances(InstanceIds=[instance_id])
        except (BotoCoreError, ClientError) as e:
            code = aws_error_code(e)
            if code.startswith("InvalidInstanceID"):
                raise TargetResolutionError(f"Instance {instance_id} not found in {self._ctx.region}") from e
            raise TransportError("Describe instance", instance_id, code, aws_error_message(e)) from e

        reservations = response.get("Reservations", [])
        if not reservations or not reservations[0].get("Instances"):
            raise TargetResolutionError(f"Instance {instance_id} not found in {self._ctx.region}")
        profile = reservations[0]["Instances"][0].get("IamInstanceProfile")
        if not profile or not profile.get("Arn"):
            raise NoExecutionRoleError(instance_id, "no IAM instance profile is attached")
        profile_name = profile["Arn"].rsplit("/", 1)[-1]

        try:
            profile_response = self._iam().get_instance_profile(InstanceProfileName=profile_name)
        except (BotoCoreError, ClientError) as e:
            raise TransportError("Get instance profile", instance_id, aws_error_code(e), aws_error_message(e)) from e
        roles = profile_response.get("InstanceProfile", {}).get("Roles", [])
        if not roles:
            raise NoExecutionRoleError(instance_id, f"instance profile {profile_name} has no role")
        return roles[0]["RoleName"]

    @log_call
    def attach(self, instance_id: InstanceId, bucket_name: str) -> PermissionGrant:
        """Create a policy for the bucket, attach it to the instance's role, and record it.

        Any failure after the policy exists rolls back what was created before
        raising PermissionLifecycleError. Raises LockTimeoutError if another
        process holds the instance lock for too long.
        """
        with self._ledger.instance_lock(instance_id):
            role_name = self.get_instance_role(instance_id)
            unique_id = new_unique_id()
            policy_name = build_policy_name(instance_id, unique_id)
            metadata_path = self._ledger.metadata_path(instance_id, unique_id)

            with log_span("Creating policy {}", policy_name, instance_id=str(instance_id)):
                try:
                    response = self._iam().create_policy(
                        PolicyName=policy_name,
                        PolicyDocument=json.dumps(build_bucket_policy_document(bucket_name)),
                        Description=POLICY_DESCRIPTION,
                    )
                except (BotoCoreError, ClientError) as e:
                    raise PermissionLifecycleError(
                        f"Creating policy {policy_name} for {instance_id} failed: "
                        f"[{aws_error_code(e)}] {aws_error_message(e)}"
                    ) from e
                policy_arn = PolicyArn(response["Policy"]["Arn"])

            try:
                self._ledger.write_metadata(metadata_path, policy_arn, self._ctx.region, role_name)
            except OSError as e:
                self._rollback(policy_arn, None, None)
                raise PermissionLifecycleError(
                    f"Writing grant metadata for {instance_id} failed: {e}; policy {policy_arn} was deleted"
                ) from e

            with log_span("Attaching policy to role {}", role_name, instance_id=str(instance_id)):
                try:
                    self._iam().attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
                except (BotoCoreError, ClientError) as e:
                    self._rollback(policy_arn, None, metadata_path)
                    raise PermissionLifecycleError(
                        f"Attaching policy to role {role_name} of {instance_id} failed: "
                        f"[{aws_error_code(e)}] {aws_error_message(e)}; the new policy was deleted"
                    ) from e

            grant = PermissionGrant(
                instance_id=instance_id,
                region=self._ctx.region,
                policy_arn=policy_arn,
                metadata_path=metadata_path,
                created_at=datetime.now(timezone.utc),
                role_name=role_name,
            )
            try:
                self._ledger.add(grant)
            except BaseZtictlError as e:
                self._rollback(policy_arn, role_name, metadata_path)
                raise PermissionLifecycleError(
                    f"Recording grant for {instance_id} failed: {e}; the policy was detached and deleted"
                ) from e

        logger.info("Granted {} temporary access to bucket {}", instance_id, bucket_name)
        return grant

    def _rollback(self, policy_arn: PolicyArn, role_name: str | None, metadata_path: Path | None) -> None:
        with log_span("Rolling back policy {}", policy_arn):
            if role_name is not None:
                self._detach_from_role(policy_arn, role_name)
            if not self._delete_policy(policy_arn):
                logger.error("Rollback could not delete policy {}; delete it manually", policy_arn)
            if metadata_path is not None:
                self._ledger.remove_metadata(metadata_path)

    def _detach_from_role(self, policy_arn: PolicyArn, role_name: str) -> bool:
        try:
            self._iam().detach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        except (BotoCoreError, ClientError) as e:
            if aws_error_code(e) == _NO_SUCH_ENTITY:
                return True
            logger.warning("Detaching {} from role {} failed: [{}]", policy_arn, role_name, aws_error_code(e))
            return False
        return True

    def _delete_policy(self, policy_arn: PolicyArn) -> bool:
        try:
            self._iam().delete_policy(PolicyArn=policy_arn)
        except (BotoCoreError, ClientError) as e:
            if aws_error_code(e) == _NO_SUCH_ENTITY:
                return True
            logger.warning("Deleting policy {} failed: [{}] {}", policy_arn, aws_error_code(e), aws_error_message(e))
            return False
        return True

    def _attached_roles(self, grant: PermissionGrant) -> set[str] | None:
        """Roles the policy is attached to. None means the policy no longer exists."""
        roles = {grant.role_name} if grant.role_name else set()
        try:
            paginator = self._iam().get_paginator("list_entities_for_policy")
            for page in paginator.paginate(PolicyArn=grant.policy_arn, EntityFilter="Role"):
                roles.update(r["RoleName"] for r in page.get("PolicyRoles", []))
        except (BotoCoreError, ClientError) as e:
            if aws_error_code(e) == _NO_SUCH_ENTITY:
                return None
            logger.warning("Listing roles of {} failed: [{}]", grant.policy_arn, aws_error_code(e))
        return roles

    def revoke(self, grant: PermissionGrant) -> bool:
        """Best-effort detach from every role, then best-effort delete. True if the policy is gone.

        A failed detach does not prevent the delete attempt.
        """
        with log_span("Revoking grant {}", grant.policy_arn, instance_id=str(grant.instance_id)):
            roles = self._attached_roles(grant)
            if roles is None:
                logger.debug("Policy {} already deleted", grant.policy_arn)
                self._ledger.remove_metadata(grant.metadata_path)
                return True
            for role_name in sorted(roles):
                self._detach_from_role(grant.policy_arn, role_name)
            if not self._delete_policy(grant.policy_arn):
                return False
            self._ledger.remove_metadata(grant.metadata_path)
            return True

    @log_call
    def detach(self, instance_id: InstanceId) -> int:
        """Revoke every recorded grant for the instance. Never raises; returns the number revoked.

        Each entry leaves the ledger only once its policy is gone, so grants that
        could not be revoked, or whose revocation was interrupted, stay recorded
        for emergency cleanup.
        """
        grants: list[PermissionGrant] = []
        revoked_count = 0
        try:
            with self._ledger.instance_lock(instance_id):
                grants = self._ledger.read_for_instance(instance_id)
                if not grants:
                    logger.debug("No grants recorded for {}", instance_id)
                    return 0
                for grant in grants:
                    if self.revoke(grant):
                        self._ledger.remove(grant)
                        revoked_count += 1
        except BaseZtictlError as e:
            logger.warning(
                "Could not revoke temporary S3 access for {}: {}. Run 'ztictl emergency-cleanup' later.",
                instance_id,
                e,
            )
            return revoked_count
        except OSError as e:
            logger.warning("Could not update the grant registry for {}: {}", instance_id, e)
            return revoked_count

        failed_count = len(grants) - revoked_count
        if failed_count:
            logger.warning(
                "{} of {} grants for {} could not be revoked and stay recorded for emergency cleanup",
                failed_count,
                len(grants),
                instance_id,
            )
        else:
            logger.info("Revoked temporary S3 access for {}", instance_id)
        return revoked_count

    def _find_grants_for_cleanup(self) -> tuple[str, list[PermissionGrant]]:
        if not self._ledger.registry_exists():
            return "metadata", self._ledger.scan_metadata_files(self._ctx.region)
        grants = self._ledger.read_all()
        recorded = {g.policy_arn for g in grants}
        unrecorded = [g for g in self._ledger.scan_metadata_files(self._ctx.region) if g.policy_arn not in recorded]
        if unrecorded:
            logger.warning("Found {} grant metadata files with no registry entry", len(unrecorded))
        return "registry", grants + unrecorded

    @log_call
    def emergency_cleanup(self, error_behavior: ErrorBehavior = ErrorBehavior.CONTINUE) -> EmergencyCleanupResult:
        """Revoke every recorded grant regardless of age, and reclaim stale locks.

        Reads the registry plus any metadata files it does not mention, or only
        the metadata files if the registry does not exist. Entries are removed one
        by one as their policies are deleted. Failed grants stay recorded unless
        they are older than the age limit, in which case they are forgotten with
        a warning.
        """
        source, grants = self._find_grants_for_cleanup()
        logger.info("Emergency cleanup: {} grants found in {}", len(grants), source)

        max_age = timedelta(hours=self._ctx.config.registry_max_age_hours)
        now = datetime.now(timezone.utc)
        revoked: list[PermissionGrant] = []
        failed: list[PermissionGrant] = []
        pruned: list[PermissionGrant] = []
        for grant in grants:
            if self.revoke(grant):
                self._ledger.remove(grant)
                revoked.append(grant)
                continue
            if now - grant.created_at > max_age:
                logger.warning("Dropping grant {} older than {}", grant.policy_arn, max_age)
                self._ledger.remove(grant)
                self._ledger.remove_metadata(grant.metadata_path)
                pruned.append(grant)
                continue
            failed.append(grant)
            match error_behavior:
                case ErrorBehavior.ABORT:
                    raise PermissionLifecycleError(
                        f"Emergency cleanup stopped: could not revoke {grant.policy_arn} for {grant.instance_id}"
                    )
                case ErrorBehavior.CONTINUE:
                    logger.error("Could not revoke {} for {}", grant.policy_arn, grant.instance_id)
                case _ as unreachable:
                    assert_never(unreachable)

        reclaimed = self._ledger.reclaim_stale_locks()
        return EmergencyCleanupResult(
            source=source,
            revoked=tuple(revoked),
            failed=tuple(failed),
            pruned=tuple(pruned),
            reclaimed_locks=tuple(reclaimed),
        )
