#!/usr/bin/env python3
"""
AWS Provider Client

Thin wrapper over boto3 shared by every step:
- One session and lazily created clients per service
- Client-side timeouts and retry policy from settings
- Translation of every botocore failure into ProviderError
- Structured extraction of identifiers from responses
- Project tagging conventions
"""

import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import ProviderError
from ..metrics import METRICS

logger = logging.getLogger(__name__)

# Error codes meaning "the thing you asked about is not there"
NOT_FOUND_CODES = {
    "404",
    "NotFound",
    "NoSuchBucket",
    "NoSuchEntity",
    "NoSuchKey",
    "Gateway.NotAttached",
    "InvalidKeyPair.NotFound",
    "InvalidPermission.NotFound",
}


def call(operation: str, fn: Callable[..., Any], **kwargs) -> Any:
    """Invoke a boto3 operation, converting any failure into ProviderError."""
    logger.debug(f"Provider call: {operation} {sorted(kwargs)}")
    try:
        return fn(**kwargs)
    except ClientError as e:
        error = e.response.get("Error", {})
        METRICS["provider_errors"].labels(operation=operation).inc()
        raise ProviderError(
            operation, error.get("Message") or str(e), code=error.get("Code"), cause=e
        ) from e
    except BotoCoreError as e:
        # Covers timeouts, connection failures and exhausted waiters
        METRICS["provider_errors"].labels(operation=operation).inc()
        raise ProviderError(operation, str(e), cause=e) from e


def is_not_found(error: ProviderError) -> bool:
    code = error.code or ""
    return code in NOT_FOUND_CODES or code.endswith(".NotFound")


def extract(response: Any, *path: Any, operation: str = "response") -> Any:
    """
    Walk a response by keys/indexes and return the value.

    A missing or empty value is a provider failure, never a silent blank.
    """
    value = response
    for key in path:
        try:
            value = value[key]
        except (KeyError, IndexError, TypeError):
            value = None
        if value is None:
            break
    if value is None or value == "":
        dotted = ".".join(str(p) for p in path)
        raise ProviderError(operation, f"response has no value at '{dotted}'")
    return value


def poll_until(
    operation: str,
    probe: Callable[[], Any],
    ready: Callable[[Any], bool],
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Call probe() until ready(result) holds or the timeout passes."""
    deadline = time.monotonic() + timeout
    while True:
        result = probe()
        if ready(result):
            return result
        if time.monotonic() >= deadline:
            raise ProviderError(operation, f"not ready after {timeout:g}s (last: {result!r})")
        sleep(interval)


class AwsProvider:
    """Session, clients and naming conventions for one project in one region."""

    def __init__(self, settings, session: Optional[boto3.Session] = None):
        self.settings = settings
        self.session = session or boto3.Session(
            region_name=settings.region, profile_name=settings.profile
        )
        self.client_config = Config(
            connect_timeout=settings.connect_timeout,
            read_timeout=settings.read_timeout,
            retries={"max_attempts": settings.max_attempts, "mode": "standard"},
        )
        self._clients: Dict[str, Any] = {}
        self._account_id: Optional[str] = None

    def client(self, service: str):
        if service not in self._clients:
            kwargs = {"config": self.client_config, "region_name": self.settings.region}
            if self.settings.endpoint_url:
                kwargs["endpoint_url"] = self.settings.endpoint_url
            self._clients[service] = self.session.client(service, **kwargs)
        return self._clients[service]

    @property
    def ec2(self):
        return self.client("ec2")

    @property
    def s3(self):
        return self.client("s3")

    @property
    def iam(self):
        return self.client("iam")

    @property
    def sts(self):
        return self.client("sts")

    def account_id(self) -> str:
        if self._account_id is None:
            identity = call("sts:GetCallerIdentity", self.sts.get_caller_identity)
            self._account_id = extract(identity, "Account", operation="sts:GetCallerIdentity")
        return self._account_id

    def tags(self, suffix: str, **extra: str) -> List[Dict[str, str]]:
        tags = [
            {"Key": "Name", "Value": self.settings.resource_name(suffix)},
            {"Key": "Project", "Value": self.settings.project_name},
            {"Key": "ProjectId", "Value": self.settings.project_id},
        ]
        tags.extend({"Key": k, "Value": v} for k, v in extra.items())
        return tags

    def tag_specifications(self, resource_type: str, suffix: str, **extra: str) -> List[Dict[str, Any]]:
        return [{"ResourceType": resource_type, "Tags": self.tags(suffix, **extra)}]

    def name_filters(self, suffix: str) -> List[Dict[str, Any]]:
        """EC2 describe filters matching a resource this project tagged."""
        return [
            {"Name": "tag:Name", "Values": [self.settings.resource_name(suffix)]},
            {"Name": "tag:ProjectId", "Values": [self.settings.project_id]},
        ]

    def wait(self, operation: str, client, waiter_name: str, **kwargs):
        """Run a boto3 waiter bounded by the configured timeout."""
        delay = max(1, int(self.settings.poll_interval))
        attempts = max(1, math.ceil(self.settings.endpoint_wait_timeout / delay))
        waiter = client.get_waiter(waiter_name)
        call(
            operation,
            waiter.wait,
            WaiterConfig={"Delay": delay, "MaxAttempts": attempts},
            **kwargs,
        )
