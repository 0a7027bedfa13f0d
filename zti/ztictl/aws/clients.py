import threading
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError

from zti.zti_common.pure import pure


class AwsClientFactory:
    """Creates boto3 clients lazily and reuses one client per (service, region).

    boto3 clients are thread-safe once created, so the tagged fan-out shares
    them across workers; only creation is serialized.
    """

    def __init__(self, max_attempts: int = 5, profile_name: str | None = None) -> None:
        self._config = Config(retries={"max_attempts": max_attempts, "mode": "standard"})
        self._profile_name = profile_name
        self._clients: dict[tuple[str, str | None], Any] = {}
        self._lock = threading.Lock()

    def client(self, service_name: str, region: str | None) -> Any:
        key = (service_name, region)
        with self._lock:
            existing = self._clients.get(key)
            if existing is None:
                existing = self._create_client(service_name, region)
                self._clients[key] = existing
            return existing

    def _create_client(self, service_name: str, region: str | None) -> Any:
        session = boto3.session.Session(profile_name=self._profile_name)
        return session.client(service_name, region_name=region, config=self._config)

    def ssm(self, region: str) -> Any:
        return self.client("ssm", region)

    def ec2(self, region: str) -> Any:
        return self.client("ec2", region)

    def s3(self, region: str) -> Any:
        return self.client("s3", region)

    def sts(self, region: str) -> Any:
        return self.client("sts", region)

    def iam(self) -> Any:
        # IAM is a global service; boto3 routes it without a region.
        return self.client("iam", None)


@pure
def aws_error_code(exc: BotoCoreError | ClientError) -> str:
    """Return the AWS error code of a boto exception, or its class name for client-side failures."""
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", "Unknown"))
    return type(exc).__name__


@pure
def aws_error_message(exc: BotoCoreError | ClientError) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Message", str(exc)))
    return str(exc)
