import posixpath
import secrets
import time
from pathlib import Path
from typing import Any
from typing import Final

from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from loguru import logger

from zti.zti_common.logging import log_call
from zti.zti_common.logging import log_span
from zti.zti_common.pure import pure
from zti.ztictl.aws.clients import aws_error_code
from zti.ztictl.aws.clients import aws_error_message
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.errors import BucketSetupError
from zti.ztictl.errors import TransportError
from zti.ztictl.primitives import BucketName
from zti.ztictl.primitives import Region
from zti.ztictl.primitives import TransferDirection

BUCKET_NAME_PREFIX: Final[str] = "ztiaws-ssm-transfer"
LIFECYCLE_RULE_ID: Final[str] = "SSMFileTransferCleanup"

# us-east-1 rejects an explicit LocationConstraint.
_DEFAULT_S3_REGION: Final[str] = "us-east-1"
_MISSING_BUCKET_CODES: Final[frozenset[str]] = frozenset({"404", "NoSuchBucket", "NotFound"})
_NO_LIFECYCLE_CODE: Final[str] = "NoSuchLifecycleConfiguration"


@pure
def build_bucket_name(account_id: str, region: Region) -> BucketName:
    return BucketName(f"{BUCKET_NAME_PREFIX}-{account_id}-{region}")


@pure
def build_lifecycle_configuration() -> dict[str, Any]:
    """Objects expire after a day, and so do incomplete multipart uploads."""
    return {
        "Rules": [
            {
                "ID": LIFECYCLE_RULE_ID,
                "Status": "Enabled",
                "Filter": {"Prefix": ""},
                "Expiration": {"Days": 1},
                "AbortIncompleteMultipartUpload": {"DaysAfterInitiation": 1},
            }
        ]
    }


@pure
def build_object_key(direction: TransferDirection, timestamp: int, random_hex: str, filename: str) -> str:
    """Key under `uploads/` or `downloads/`, unique per transfer."""
    prefix = "uploads" if direction == TransferDirection.UPLOAD else "downloads"
    basename = posixpath.basename(filename.replace("\\", "/")) or "file"
    return f"{prefix}/{timestamp}-{random_hex}-{basename}"


def new_object_key(direction: TransferDirection, filename: str) -> str:
    return build_object_key(direction, int(time.time()), secrets.token_hex(4), filename)


class TransferBucket:
    """The per-account, per-region S3 bucket that mediated transfers pass through."""

    def __init__(self, ctx: ZtictlContext) -> None:
        self._ctx = ctx

    def _s3(self) -> Any:
        return self._ctx.clients.s3(self._ctx.region)

    @log_call
    def get_account_id(self) -> str:
        try:
            response = self._ctx.clients.sts(self._ctx.region).get_caller_identity()
        except (BotoCoreError, ClientError) as e:
            raise TransportError(
                "Get caller identity", str(self._ctx.region), aws_error_code(e), aws_error_message(e)
            ) from e
        return str(response["Account"])

    @log_call
    def ensure(self) -> BucketName:
        """Make sure the transfer bucket exists and is configured; return its name.

        A newly created bucket that cannot be given its lifecycle rule is deleted again.
        """
        bucket_name = build_bucket_name(self.get_account_id(), self._ctx.region)
        with log_span("Ensuring transfer bucket {}", bucket_name):
            is_new = not self._exists(bucket_name)
            if is_new:
                self._create(bucket_name)
            try:
                if not self._has_lifecycle_rule(bucket_name):
                    self._apply_lifecycle(bucket_name)
            except BucketSetupError:
                if is_new:
                    self._delete_bucket(bucket_name)
                raise
            self._apply_encryption(bucket_name)
            self._apply_public_access_block(bucket_name)
        return bucket_name

    def _exists(self, bucket_name: str) -> bool:
        try:
            self._s3().head_bucket(Bucket=bucket_name)
        except (BotoCoreError, ClientError) as e:
            code = aws_error_code(e)
            if code in _MISSING_BUCKET_CODES:
                return False
            raise BucketSetupError(f"Checking bucket {bucket_name} failed: [{code}] {aws_error_message(e)}") from e
        return True

    def _create(self, bucket_name: str) -> None:
        kwargs: dict[str, Any] = {"Bucket": bucket_name}
        if self._ctx.region != _DEFAULT_S3_REGION:
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": str(self._ctx.region)}
        try:
            self._s3().create_bucket(**kwargs)
        except (BotoCoreError, ClientError) as e:
            if aws_error_code(e) == "BucketAlreadyOwnedByYou":
                return
            raise BucketSetupError(
                f"Creating bucket {bucket_name} failed: [{aws_error_code(e)}] {aws_error_message(e)}"
            ) from e
        logger.info("Created transfer bucket {}", bucket_name)

    def _has_lifecycle_rule(self, bucket_name: str) -> bool:
        try:
            response = self._s3().get_bucket_lifecycle_configuration(Bucket=bucket_name)
        except (BotoCoreError, ClientError) as e:
            if aws_error_code(e) == _NO_LIFECYCLE_CODE:
                return False
            raise BucketSetupError(
                f"Reading lifecycle of {bucket_name} failed: [{aws_error_code(e)}] {aws_error_message(e)}"
            ) from e
        return any(rule.get("ID") == LIFECYCLE_RULE_ID for rule in response.get("Rules", []))

    def _apply_lifecycle(self, bucket_name: str) -> None:
        try:
            self._s3().put_bucket_lifecycle_configuration(
                Bucket=bucket_name,
                LifecycleConfiguration=build_lifecycle_configuration(),
            )
        except (BotoCoreError, ClientError) as e:
            raise BucketSetupError(
                f"Applying lifecycle rule to {bucket_name} failed: [{aws_error_code(e)}] {aws_error_message(e)}"
            ) from e

    def _apply_encryption(self, bucket_name: str) -> None:
        try:
            self._s3().put_bucket_encryption(
                Bucket=bucket_name,
                ServerSideEncryptionConfiguration={
                    "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}]
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise BucketSetupError(
                f"Enabling encryption on {bucket_name} failed: [{aws_error_code(e)}] {aws_error_message(e)}"
            ) from e

    def _apply_public_access_block(self, bucket_name: str) -> None:
        try:
            self._s3().put_public_access_block(
                Bucket=bucket_name,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise BucketSetupError(
                f"Blocking public access on {bucket_name} failed: [{aws_error_code(e)}] {aws_error_message(e)}"
            ) from e

    def _delete_bucket(self, bucket_name: str) -> None:
        try:
            self._s3().delete_bucket(Bucket=bucket_name)
        except (BotoCoreError, ClientError) as e:
            logger.error("Could not delete half-configured bucket {}: [{}]", bucket_name, aws_error_code(e))
            return
        logger.warning("Deleted bucket {} after its lifecycle rule could not be applied", bucket_name)

    def put_file(self, bucket_name: str, key: str, local_path: Path) -> None:
        try:
            with local_path.open("rb") as f:
                self._s3().put_object(Bucket=bucket_name, Key=key, Body=f)
        except (BotoCoreError, ClientError) as e:
            raise TransportError(
                "Upload to S3", f"s3://{bucket_name}/{key}", aws_error_code(e), aws_error_message(e)
            ) from e

    def get_file(self, bucket_name: str, key: str, local_path: Path) -> None:
        try:
            response = self._s3().get_object(Bucket=bucket_name, Key=key)
            with local_path.open("wb") as f:
                for chunk in response["Body"].iter_chunks():
                    f.write(chunk)
        except (BotoCoreError, ClientError) as e:
            raise TransportError(
                "Download from S3", f"s3://{bucket_name}/{key}", aws_error_code(e), aws_error_message(e)
            ) from e

    def delete_object_quietly(self, bucket_name: str, key: str) -> None:
        """Delete a transient object. Failure only warns; the lifecycle rule removes it within a day."""
        try:
            self._s3().delete_object(Bucket=bucket_name, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.warning("Could not delete s3://{}/{}: [{}]", bucket_name, key, aws_error_code(e))
