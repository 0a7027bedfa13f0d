"""Stand-ins for the AWS services ztictl talks to, for tests.

The fake SSM runs every submitted script locally with bash, so the scripts
that would run on an instance are exercised for real. A stub `aws` executable
on PATH maps `aws s3 cp` onto the directory that backs the fake S3, and only
lets an instance touch buckets its role currently has a policy for.

All failures are raised as real botocore ClientErrors.
"""

import io
import json
import os
import shutil
import subprocess
import threading
from collections.abc import Callable
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from typing import Final
from uuid import uuid4

from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from pydantic import Field

from zti.zti_common.frozen_model import FrozenModel
from zti.zti_common.mutable_model import MutableModel
from zti.ztictl.aws.clients import AwsClientFactory
from zti.ztictl.primitives import InstanceId

FAKE_ACCOUNT_ID: Final[str] = "123456789012"

# SSM cuts StandardOutputContent off after this many characters.
SSM_OUTPUT_LIMIT: Final[int] = 24000

_SCRIPT_TIMEOUT_SECONDS: Final[float] = 60.0

_FAKE_AWS_CLI: Final[str] = """#!/usr/bin/env bash
set -euo pipefail
if [ "$#" -lt 4 ] || [ "$1" != "s3" ] || [ "$2" != "cp" ]; then
    echo "fake aws: unsupported arguments: $*" >&2
    exit 2
fi
src="$3"
dst="$4"

check_access() {
    local bucket="${1#s3://}"
    bucket="${bucket%%/*}"
    case " ${FAKE_S3_ALLOWED_BUCKETS:-} " in
        *" $bucket "*) ;;
        *) echo "fatal error: An error occurred (AccessDenied): Access Denied" >&2; exit 1 ;;
    esac
    if [ ! -d "$FAKE_S3_ROOT/$bucket" ]; then
        echo "fatal error: An error occurred (NoSuchBucket): $bucket" >&2
        exit 1
    fi
}

local_path() {
    case "$1" in
        s3://*) printf '%s\\n' "$FAKE_S3_ROOT/${1#s3://}" ;;
        *) printf '%s\\n' "$1" ;;
    esac
}

for arg in "$src" "$dst"; do
    case "$arg" in
        s3://*) check_access "$arg" ;;
    esac
done

source_file="$(local_path "$src")"
destination_file="$(local_path "$dst")"
if [ ! -f "$source_file" ]; then
    echo "fatal error: $src does not exist" >&2
    exit 1
fi
mkdir -p "$(dirname "$destination_file")"
cp "$source_file" "$destination_file"
echo "copy: $src to $dst"
"""


def make_client_error(code: str, message: str, operation_name: str, http_status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": message}, "ResponseMetadata": {"HTTPStatusCode": http_status}},
        operation_name,
    )


class FakePaginator:
    """Yields the pages computed by a function, raising its errors on iteration like boto3 does."""

    def __init__(self, pages: Callable[..., list[dict[str, Any]]]) -> None:
        self._pages = pages

    def paginate(self, **kwargs: Any) -> Iterator[dict[str, Any]]:
        yield from self._pages(**kwargs)


class _FailureInjector:
    """Per-operation error codes that a fake raises instead of doing the work."""

    def __init__(self) -> None:
        self.failures: dict[str, str] = {}

    def fail(self, operation_name: str, code: str) -> None:
        self.failures[operation_name] = code

    def clear_failures(self) -> None:
        self.failures.clear()

    def _check(self, operation_name: str) -> None:
        code = self.failures.get(operation_name)
        if code is not None:
            raise make_client_error(code, f"Injected failure for {operation_name}", operation_name)


# --- EC2 ---


class FakeInstance(FrozenModel):
    instance_id: InstanceId
    state: str = "running"
    tags: dict[str, str] = Field(default_factory=dict)
    instance_profile_arn: str | None = None


class FakeEc2Client(_FailureInjector):
    def __init__(self) -> None:
        super().__init__()
        self.instances: dict[str, FakeInstance] = {}

    def add_instance(self, instance: FakeInstance) -> None:
        self.instances[instance.instance_id] = instance

    def describe_instances(
        self,
        InstanceIds: list[str] | None = None,
        Filters: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        self._check("DescribeInstances")
        if InstanceIds:
            missing = [i for i in InstanceIds if i not in self.instances]
            if missing:
                raise make_client_error(
                    "InvalidInstanceID.NotFound",
                    f"The instance IDs '{', '.join(missing)}' do not exist",
                    "DescribeInstances",
                )
            candidates = [self.instances[i] for i in InstanceIds]
        else:
            candidates = list(self.instances.values())
        matching = [i for i in candidates if _matches_filters(i, Filters or [])]
        return {"Reservations": [{"Instances": [_describe(i)]} for i in matching]}

    def get_paginator(self, operation_name: str) -> FakePaginator:
        assert operation_name == "describe_instances"
        return FakePaginator(lambda **kwargs: [self.describe_instances(**kwargs)])


def _matches_filters(instance: FakeInstance, filters: list[dict[str, Any]]) -> bool:
    for entry in filters:
        name, values = entry["Name"], entry["Values"]
        if name == "instance-state-name":
            if instance.state not in values:
                return False
        elif name.startswith("tag:"):
            if instance.tags.get(name[len("tag:") :]) not in values:
                return False
        else:
            raise ValueError(f"Unsupported filter {name}")
    return True


def _describe(instance: FakeInstance) -> dict[str, Any]:
    described: dict[str, Any] = {
        "InstanceId": instance.instance_id,
        "State": {"Name": instance.state},
        "Tags": [{"Key": k, "Value": v} for k, v in instance.tags.items()],
    }
    if instance.instance_profile_arn is not None:
        described["IamInstanceProfile"] = {"Arn": instance.instance_profile_arn}
    return described


# --- IAM ---


class FakePolicy(FrozenModel):
    arn: str
    name: str
    document: dict[str, Any]


class FakeIamClient(_FailureInjector):
    def __init__(self) -> None:
        super().__init__()
        self.instance_profiles: dict[str, list[str]] = {}
        self.policies: dict[str, FakePolicy] = {}
        # policy arn -> names of roles it is attached to
        self.attachments: dict[str, set[str]] = {}
        self.create_policy_calls = 0
        self._lock = threading.Lock()

    def add_instance_profile(self, profile_name: str, role_names: list[str]) -> str:
        self.instance_profiles[profile_name] = list(role_names)
        return f"arn:aws:iam::{FAKE_ACCOUNT_ID}:instance-profile/{profile_name}"

    def _known_roles(self) -> set[str]:
        return {role for roles in self.instance_profiles.values() for role in roles}

    def get_instance_profile(self, InstanceProfileName: str) -> dict[str, Any]:
        self._check("GetInstanceProfile")
        roles = self.instance_profiles.get(InstanceProfileName)
        if roles is None:
            raise make_client_error(
                "NoSuchEntity", f"Instance Profile {InstanceProfileName} cannot be found.", "GetInstanceProfile", 404
            )
        return {
            "InstanceProfile": {
                "InstanceProfileName": InstanceProfileName,
                "Roles": [{"RoleName": r} for r in roles],
            }
        }

    def create_policy(self, PolicyName: str, PolicyDocument: str, Description: str = "") -> dict[str, Any]:
        with self._lock:
            self.create_policy_calls += 1
            self._check("CreatePolicy")
            arn = f"arn:aws:iam::{FAKE_ACCOUNT_ID}:policy/{PolicyName}"
            if arn in self.policies:
                raise make_client_error("EntityAlreadyExists", f"Policy {PolicyName} already exists.", "CreatePolicy")
            self.policies[arn] = FakePolicy(arn=arn, name=PolicyName, document=json.loads(PolicyDocument))
            self.attachments[arn] = set()
        return {"Policy": {"PolicyName": PolicyName, "Arn": arn}}

    def attach_role_policy(self, RoleName: str, PolicyArn: str) -> dict[str, Any]:
        with self._lock:
            self._check("AttachRolePolicy")
            if PolicyArn not in self.policies or RoleName not in self._known_roles():
                raise make_client_error(
                    "NoSuchEntity", f"{RoleName} or {PolicyArn} not found.", "AttachRolePolicy", 404
                )
            self.attachments[PolicyArn].add(RoleName)
        return {}

    def detach_role_policy(self, RoleName: str, PolicyArn: str) -> dict[str, Any]:
        with self._lock:
            self._check("DetachRolePolicy")
            if RoleName not in self.attachments.get(PolicyArn, set()):
                raise make_client_error(
                    "NoSuchEntity", f"Policy {PolicyArn} was not found on role {RoleName}.", "DetachRolePolicy", 404
                )
            self.attachments[PolicyArn].discard(RoleName)
        return {}

    def delete_policy(self, PolicyArn: str) -> dict[str, Any]:
        with self._lock:
            self._check("DeletePolicy")
            if PolicyArn not in self.policies:
                raise make_client_error("NoSuchEntity", f"Policy {PolicyArn} was not found.", "DeletePolicy", 404)
            if self.attachments[PolicyArn]:
                raise make_client_error(
                    "DeleteConflict", "Cannot delete a policy attached to entities.", "DeletePolicy", 409
                )
            del self.policies[PolicyArn]
            del self.attachments[PolicyArn]
        return {}

    def _list_entities_pages(self, PolicyArn: str, EntityFilter: str | None = None) -> list[dict[str, Any]]:
        self._check("ListEntitiesForPolicy")
        with self._lock:
            if PolicyArn not in self.policies:
                raise make_client_error(
                    "NoSuchEntity", f"Policy {PolicyArn} was not found.", "ListEntitiesForPolicy", 404
                )
            roles = sorted(self.attachments[PolicyArn])
        return [{"PolicyRoles": [{"RoleName": r} for r in roles], "PolicyGroups": [], "PolicyUsers": []}]

    def get_paginator(self, operation_name: str) -> FakePaginator:
        assert operation_name == "list_entities_for_policy"
        return FakePaginator(self._list_entities_pages)

    def policies_attached_to(self, role_name: str) -> list[FakePolicy]:
        with self._lock:
            return [self.policies[arn] for arn, roles in self.attachments.items() if role_name in roles]

    def buckets_allowed_for(self, role_name: str) -> set[str]:
        """Buckets whose objects the role may read and write through its attached policies."""
        buckets: set[str] = set()
        for policy in self.policies_attached_to(role_name):
            for statement in policy.document.get("Statement", []):
                resource = statement.get("Resource", "")
                if statement.get("Effect") == "Allow" and resource.startswith("arn:aws:s3:::"):
                    buckets.add(resource[len("arn:aws:s3:::") :].split("/", 1)[0])
        return buckets


# --- S3 ---


class FakeBucket(MutableModel):
    name: str
    location: str | None = None
    lifecycle: dict[str, Any] | None = None
    encryption: dict[str, Any] | None = None
    public_access_block: dict[str, Any] | None = None


class FakeS3Client(_FailureInjector):
    """Buckets are directories under root and objects are files inside them."""

    def __init__(self, root: Path) -> None:
        super().__init__()
        self.root = root
        self.buckets: dict[str, FakeBucket] = {}
        self.root.mkdir(parents=True, exist_ok=True)

    def _object_path(self, bucket: str, key: str) -> Path:
        if bucket not in self.buckets:
            raise make_client_error("NoSuchBucket", f"The bucket {bucket} does not exist", "GetObject", 404)
        return self.root / bucket / key

    def head_bucket(self, Bucket: str) -> dict[str, Any]:
        self._check("HeadBucket")
        if Bucket not in self.buckets:
            raise make_client_error("404", "Not Found", "HeadBucket", 404)
        return {}

    def create_bucket(self, Bucket: str, CreateBucketConfiguration: dict[str, Any] | None = None) -> dict[str, Any]:
        self._check("CreateBucket")
        if Bucket in self.buckets:
            raise make_client_error("BucketAlreadyOwnedByYou", f"{Bucket} already exists", "CreateBucket", 409)
        location = (CreateBucketConfiguration or {}).get("LocationConstraint")
        self.buckets[Bucket] = FakeBucket(name=Bucket, location=location)
        (self.root / Bucket).mkdir(parents=True, exist_ok=True)
        return {"Location": f"/{Bucket}"}

    def delete_bucket(self, Bucket: str) -> dict[str, Any]:
        self._check("DeleteBucket")
        if Bucket not in self.buckets:
            raise make_client_error("NoSuchBucket", f"The bucket {Bucket} does not exist", "DeleteBucket", 404)
        del self.buckets[Bucket]
        shutil.rmtree(self.root / Bucket, ignore_errors=True)
        return {}

    def get_bucket_lifecycle_configuration(self, Bucket: str) -> dict[str, Any]:
        self._check("GetBucketLifecycleConfiguration")
        lifecycle = self.buckets[Bucket].lifecycle
        if lifecycle is None:
            raise make_client_error(
                "NoSuchLifecycleConfiguration",
                "The lifecycle configuration does not exist",
                "GetBucketLifecycleConfiguration",
                404,
            )
        return lifecycle

    def put_bucket_lifecycle_configuration(self, Bucket: str, LifecycleConfiguration: dict[str, Any]) -> dict[str, Any]:
        self._check("PutBucketLifecycleConfiguration")
        self.buckets[Bucket].lifecycle = LifecycleConfiguration
        return {}

    def put_bucket_encryption(self, Bucket: str, ServerSideEncryptionConfiguration: dict[str, Any]) -> dict[str, Any]:
        self._check("PutBucketEncryption")
        self.buckets[Bucket].encryption = ServerSideEncryptionConfiguration
        return {}

    def put_public_access_block(self, Bucket: str, PublicAccessBlockConfiguration: dict[str, Any]) -> dict[str, Any]:
        self._check("PutPublicAccessBlock")
        self.buckets[Bucket].public_access_block = PublicAccessBlockConfiguration
        return {}

    def put_object(self, Bucket: str, Key: str, Body: Any) -> dict[str, Any]:
        self._check("PutObject")
        path = self._object_path(Bucket, Key)
        data = Body if isinstance(Body, bytes) else Body.read()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return {"ETag": f'"{uuid4().hex}"'}

    def get_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self._check("GetObject")
        path = self._object_path(Bucket, Key)
        if not path.is_file():
            raise make_client_error("NoSuchKey", "The specified key does not exist.", "GetObject", 404)
        data = path.read_bytes()
        return {"Body": StreamingBody(io.BytesIO(data), len(data)), "ContentLength": len(data)}

    def delete_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self._check("DeleteObject")
        # S3 reports success for keys that do not exist.
        self._object_path(Bucket, Key).unlink(missing_ok=True)
        return {}

    def object_keys(self, bucket: str) -> list[str]:
        bucket_dir = self.root / bucket
        return sorted(str(p.relative_to(bucket_dir)) for p in bucket_dir.rglob("*") if p.is_file())


# --- STS ---


class FakeStsClient(_FailureInjector):
    def get_caller_identity(self) -> dict[str, Any]:
        self._check("GetCallerIdentity")
        return {"Account": FAKE_ACCOUNT_ID, "Arn": f"arn:aws:iam::{FAKE_ACCOUNT_ID}:user/tester", "UserId": "AIDATEST"}


# --- SSM ---


class FakeInvocation(MutableModel):
    command_id: str
    instance_id: str
    script: str
    comment: str
    status: str = "Pending"
    response_code: int = -1
    stdout: str = ""
    stderr: str = ""


class FakeSsmClient(_FailureInjector):
    """Runs each command synchronously with bash when it is sent."""

    def __init__(self, ec2: FakeEc2Client, iam: FakeIamClient, s3_root: Path, bin_dir: Path) -> None:
        super().__init__()
        self._ec2 = ec2
        self._iam = iam
        self._s3_root = s3_root
        self._bin_dir = bin_dir
        self.invocations: dict[tuple[str, str], FakeInvocation] = {}
        self.sent: list[FakeInvocation] = []
        # Instances that accept commands but never finish them
        self.hanging_instances: set[str] = set()
        # get_command_invocation answers InvocationDoesNotExist this many times first
        self.invisible_polls = 0
        self.max_concurrent_sends = 0
        self._in_flight = 0
        self._lock = threading.Lock()

    def send_command(
        self,
        InstanceIds: list[str],
        DocumentName: str,
        Parameters: dict[str, list[str]],
        Comment: str = "",
    ) -> dict[str, Any]:
        self._check("SendCommand")
        assert DocumentName == "AWS-RunShellScript"
        assert len(InstanceIds) == 1
        instance_id = InstanceIds[0]
        instance = self._ec2.instances.get(instance_id)
        if instance is None or instance.state != "running":
            raise make_client_error(
                "InvalidInstanceId", f"Instances [{instance_id}] not in a valid state", "SendCommand"
            )

        invocation = FakeInvocation(
            command_id=str(uuid4()),
            instance_id=instance_id,
            script="\n".join(Parameters["commands"]),
            comment=Comment,
        )
        with self._lock:
            self.invocations[(invocation.command_id, instance_id)] = invocation
            self.sent.append(invocation)
            self._in_flight += 1
            self.max_concurrent_sends = max(self.max_concurrent_sends, self._in_flight)
        try:
            if instance_id in self.hanging_instances:
                invocation.status = "InProgress"
            else:
                self._run(invocation, instance)
        finally:
            with self._lock:
                self._in_flight -= 1
        return {"Command": {"CommandId": invocation.command_id, "Status": "Pending", "Comment": Comment}}

    def _run(self, invocation: FakeInvocation, instance: FakeInstance) -> None:
        env = dict(os.environ)
        env["PATH"] = f"{self._bin_dir}{os.pathsep}{env.get('PATH', '')}"
        env["FAKE_S3_ROOT"] = str(self._s3_root)
        env["FAKE_S3_ALLOWED_BUCKETS"] = " ".join(sorted(self._allowed_buckets(instance)))
        env["FAKE_INSTANCE_ID"] = instance.instance_id
        completed = subprocess.run(
            ["bash", "-c", invocation.script],
            capture_output=True,
            env=env,
            timeout=_SCRIPT_TIMEOUT_SECONDS,
        )
        invocation.stdout = completed.stdout.decode(errors="replace")[:SSM_OUTPUT_LIMIT]
        invocation.stderr = completed.stderr.decode(errors="replace")[:SSM_OUTPUT_LIMIT]
        invocation.response_code = completed.returncode
        invocation.status = "Success" if completed.returncode == 0 else "Failed"

    def _allowed_buckets(self, instance: FakeInstance) -> set[str]:
        if instance.instance_profile_arn is None:
            return set()
        profile_name = instance.instance_profile_arn.rsplit("/", 1)[-1]
        buckets: set[str] = set()
        for role_name in self._iam.instance_profiles.get(profile_name, []):
            buckets |= self._iam.buckets_allowed_for(role_name)
        return buckets

    def get_command_invocation(self, CommandId: str, InstanceId: str) -> dict[str, Any]:
        self._check("GetCommandInvocation")
        with self._lock:
            if self.invisible_polls > 0:
                self.invisible_polls -= 1
                invocation = None
            else:
                invocation = self.invocations.get((CommandId, InstanceId))
        if invocation is None:
            raise make_client_error("InvocationDoesNotExist", "", "GetCommandInvocation")
        return {
            "CommandId": invocation.command_id,
            "InstanceId": invocation.instance_id,
            "Comment": invocation.comment,
            "Status": invocation.status,
            "StatusDetails": invocation.status,
            "ResponseCode": invocation.response_code,
            "StandardOutputContent": invocation.stdout,
            "StandardErrorContent": invocation.stderr,
        }

    def _list_invocation_pages(self, CommandId: str) -> list[dict[str, Any]]:
        self._check("ListCommandInvocations")
        with self._lock:
            matching = [i for (command_id, _), i in self.invocations.items() if command_id == CommandId]
        return [{"CommandInvocations": [{"InstanceId": i.instance_id, "Status": i.status} for i in matching]}]

    def get_paginator(self, operation_name: str) -> FakePaginator:
        assert operation_name == "list_command_invocations"
        return FakePaginator(self._list_invocation_pages)

    def scripts_sent_to(self, instance_id: str) -> list[str]:
        with self._lock:
            return [i.script for i in self.sent if i.instance_id == instance_id]


class FakeAwsClientFactory(AwsClientFactory):
    """Client factory whose clients are the fakes above, one per service for every region."""

    def __init__(self, root_dir: Path) -> None:
        super().__init__(max_attempts=1)
        bin_dir = root_dir / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        aws_cli = bin_dir / "aws"
        aws_cli.write_text(_FAKE_AWS_CLI)
        aws_cli.chmod(0o755)

        self.fake_ec2 = FakeEc2Client()
        self.fake_iam = FakeIamClient()
        self.fake_s3 = FakeS3Client(root_dir / "s3")
        self.fake_sts = FakeStsClient()
        self.fake_ssm = FakeSsmClient(self.fake_ec2, self.fake_iam, self.fake_s3.root, bin_dir)
        self._fakes: dict[str, Any] = {
            "ec2": self.fake_ec2,
            "iam": self.fake_iam,
            "s3": self.fake_s3,
            "sts": self.fake_sts,
            "ssm": self.fake_ssm,
        }

    def _create_client(self, service_name: str, region: str | None) -> Any:
        return self._fakes[service_name]

    def add_instance(
        self,
        instance_id: str,
        name: str | None = None,
        tags: dict[str, str] | None = None,
        state: str = "running",
        # None gives the instance no instance profile at all
        role_name: str | None = "ztictl-test-role",
    ) -> InstanceId:
        all_tags = dict(tags or {})
        if name is not None:
            all_tags["Name"] = name
        profile_arn = None
        if role_name is not None:
            profile_arn = self.fake_iam.add_instance_profile(f"{role_name}-profile", [role_name])
        instance = FakeInstance(
            instance_id=InstanceId(instance_id),
            state=state,
            tags=all_tags,
            instance_profile_arn=profile_arn,
        )
        self.fake_ec2.add_instance(instance)
        return instance.instance_id
