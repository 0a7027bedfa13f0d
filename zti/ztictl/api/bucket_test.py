from pathlib import Path

import pytest

from zti.ztictl.api.bucket import LIFECYCLE_RULE_ID
from zti.ztictl.api.bucket import TransferBucket
from zti.ztictl.api.bucket import build_bucket_name
from zti.ztictl.api.bucket import build_lifecycle_configuration
from zti.ztictl.api.bucket import build_object_key
from zti.ztictl.api.bucket import new_object_key
from zti.ztictl.config.data_types import ZtictlContext
from zti.ztictl.errors import BucketSetupError
from zti.ztictl.errors import TransportError
from zti.ztictl.primitives import Region
from zti.ztictl.primitives import TransferDirection
from zti.ztictl.utils.testing import FAKE_ACCOUNT_ID
from zti.ztictl.utils.testing import FakeAwsClientFactory


def test_build_bucket_name() -> None:
    assert build_bucket_name("123456789012", Region("eu-west-1")) == "ztiaws-ssm-transfer-123456789012-eu-west-1"


def test_lifecycle_expires_objects_and_multipart_uploads_after_a_day() -> None:
    (rule,) = build_lifecycle_configuration()["Rules"]

    assert rule["ID"] == LIFECYCLE_RULE_ID
    assert rule["Status"] == "Enabled"
    assert rule["Expiration"] == {"Days": 1}
    assert rule["AbortIncompleteMultipartUpload"] == {"DaysAfterInitiation": 1}


def test_build_object_key_uses_direction_prefix_and_basename() -> None:
    assert build_object_key(TransferDirection.UPLOAD, 1700000000, "abcd", "/home/me/app.tar") == (
        "uploads/1700000000-abcd-app.tar"
    )
    assert build_object_key(TransferDirection.DOWNLOAD, 1700000000, "abcd", "/var/log/") == (
        "downloads/1700000000-abcd-file"
    )


def test_new_object_keys_are_unique() -> None:
    keys = {new_object_key(TransferDirection.UPLOAD, "same.txt") for _ in range(20)}

    assert len(keys) == 20


def test_ensure_creates_and_configures_bucket(temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory) -> None:
    bucket_name = TransferBucket(temp_ztictl_ctx).ensure()

    assert bucket_name == f"ztiaws-ssm-transfer-{FAKE_ACCOUNT_ID}-{temp_ztictl_ctx.region}"
    bucket = fake_aws.fake_s3.buckets[bucket_name]
    assert bucket.location == temp_ztictl_ctx.region
    assert bucket.lifecycle == build_lifecycle_configuration()
    assert bucket.encryption == {"Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}]}
    assert bucket.public_access_block is not None
    assert all(bucket.public_access_block.values())


def test_ensure_omits_location_in_us_east_1(temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory) -> None:
    ctx = temp_ztictl_ctx.evolve(region=Region("us-east-1"))

    bucket_name = TransferBucket(ctx).ensure()

    assert fake_aws.fake_s3.buckets[bucket_name].location is None


def test_ensure_is_idempotent(temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory) -> None:
    bucket = TransferBucket(temp_ztictl_ctx)
    first = bucket.ensure()
    fake_aws.fake_s3.fail("CreateBucket", "ShouldNotBeCalled")
    fake_aws.fake_s3.fail("PutBucketLifecycleConfiguration", "ShouldNotBeCalled")

    assert bucket.ensure() == first


def test_new_bucket_is_deleted_if_lifecycle_cannot_be_applied(
    temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory
) -> None:
    fake_aws.fake_s3.fail("PutBucketLifecycleConfiguration", "AccessDenied")

    with pytest.raises(BucketSetupError, match="lifecycle"):
        TransferBucket(temp_ztictl_ctx).ensure()

    assert fake_aws.fake_s3.buckets == {}


def test_ensure_reports_head_bucket_errors(temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory) -> None:
    fake_aws.fake_s3.fail("HeadBucket", "403")

    with pytest.raises(BucketSetupError, match="403"):
        TransferBucket(temp_ztictl_ctx).ensure()


def test_put_get_and_delete_object(
    temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory, tmp_path: Path
) -> None:
    bucket = TransferBucket(temp_ztictl_ctx)
    bucket_name = bucket.ensure()
    source = tmp_path / "source.bin"
    source.write_bytes(bytes(range(256)) * 100)

    bucket.put_file(bucket_name, "uploads/key", source)
    bucket.get_file(bucket_name, "uploads/key", tmp_path / "copy.bin")
    bucket.delete_object_quietly(bucket_name, "uploads/key")

    assert (tmp_path / "copy.bin").read_bytes() == source.read_bytes()
    assert fake_aws.fake_s3.object_keys(bucket_name) == []


def test_get_missing_object_raises_transport_error(temp_ztictl_ctx: ZtictlContext, tmp_path: Path) -> None:
    bucket = TransferBucket(temp_ztictl_ctx)
    bucket_name = bucket.ensure()

    with pytest.raises(TransportError) as exc_info:
        bucket.get_file(bucket_name, "missing", tmp_path / "out")

    assert exc_info.value.error_code == "NoSuchKey"


def test_delete_object_failure_only_warns(temp_ztictl_ctx: ZtictlContext, fake_aws: FakeAwsClientFactory) -> None:
    bucket = TransferBucket(temp_ztictl_ctx)
    bucket_name = bucket.ensure()
    fake_aws.fake_s3.fail("DeleteObject", "AccessDenied")

    bucket.delete_object_quietly(bucket_name, "uploads/key")
