#!/usr/bin/env python3
"""
S3 Gateway Endpoint Step

Creates the gateway endpoint on the route tables, with an endpoint policy that
allows the S3 actions the tests need and denies plain-HTTP access.
"""

import json
import logging
from typing import Any, Dict, Optional, Sequence

from ..errors import ProviderError
from ..provider.aws import call, extract, is_not_found, poll_until
from .base import FallbackStep, TaggedEc2Step

logger = logging.getLogger(__name__)

ENDPOINT_ROLE = "s3-endpoint"
ROUTE_TABLE_ROLES = ("public-route-table", "private-route-table")

# Endpoint states that will never turn into "available"
DEAD_STATES = {"deleting", "deleted", "failed", "rejected", "expired"}

ALLOWED_S3_ACTIONS = [
    "s3:GetObject",
    "s3:PutObject",
    "s3:DeleteObject",
    "s3:ListBucket",
    "s3:ListBucketVersions",
    "s3:GetBucketLocation",
    "s3:GetBucketVersioning",
    "s3:GetObjectVersion",
    "s3:DeleteObjectVersion",
    "s3:RestoreObject",
    "s3:ListMultipartUploadParts",
    "s3:AbortMultipartUpload",
    "s3:ListBucketMultipartUploads",
    "s3:GetBucketAcl",
    "s3:GetBucketPolicy",
    "s3:GetBucketTagging",
]


def endpoint_policy() -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "AllowS3Operations",
                "Effect": "Allow",
                "Principal": "*",
                "Action": ALLOWED_S3_ACTIONS,
                "Resource": "*",
            },
            {
                "Sid": "DenyInsecureConnections",
                "Effect": "Deny",
                "Principal": "*",
                "Action": "s3:*",
                "Resource": "*",
                "Condition": {"Bool": {"aws:SecureTransport": "false"}},
            },
        ],
    }


def describe_endpoint(provider, endpoint_id: str) -> Optional[Dict[str, Any]]:
    """The endpoint description, or None when the provider does not know it."""
    try:
        response = call(
            "ec2:DescribeVpcEndpoints",
            provider.ec2.describe_vpc_endpoints,
            VpcEndpointIds=[endpoint_id],
        )
    except ProviderError as e:
        if is_not_found(e):
            return None
        raise
    endpoints = response.get("VpcEndpoints", [])
    return endpoints[0] if endpoints else None


class S3GatewayEndpoint(TaggedEc2Step):
    """Gateway endpoint for S3 attached to the given route tables."""

    name = "s3-gateway-endpoint"
    role = ENDPOINT_ROLE
    suffix = "s3-gateway"
    describe_method = "describe_vpc_endpoints"
    collection = "VpcEndpoints"
    id_field = "VpcEndpointId"
    ids_param = "VpcEndpointIds"

    def __init__(self, provider, route_table_roles: Sequence[str] = ROUTE_TABLE_ROLES):
        super().__init__(provider)
        self.route_table_roles = list(route_table_roles)
        self.depends_on = frozenset({"vpc"} | set(self.route_table_roles))
        if list(route_table_roles) != list(ROUTE_TABLE_ROLES):
            scope = "+".join(r.replace("-route-table", "") for r in self.route_table_roles)
            self.name = f"{S3GatewayEndpoint.name}[{scope}]"

    def is_live(self, item: Dict) -> bool:
        return str(item.get("State", "")).lower() not in DEAD_STATES

    def find(self, state) -> Optional[str]:
        # Any S3 gateway endpoint in the VPC conflicts with a new one, tagged or not
        found = super().find(state)
        if found or not state.has("vpc"):
            return found
        existing = self.describe(
            Filters=[
                {"Name": "vpc-id", "Values": [state.get("vpc")]},
                {"Name": "service-name", "Values": [self.settings.s3_service_name]},
            ]
        )
        return existing[0] if existing else None

    def create(self, state) -> Dict[str, str]:
        ec2 = self.provider.ec2
        route_table_ids = [state.get(role) for role in self.route_table_roles]
        response = call(
            "ec2:CreateVpcEndpoint",
            ec2.create_vpc_endpoint,
            VpcEndpointType="Gateway",
            VpcId=state.get("vpc"),
            ServiceName=self.settings.s3_service_name,
            RouteTableIds=route_table_ids,
            PolicyDocument=json.dumps(endpoint_policy()),
            TagSpecifications=self.provider.tag_specifications(
                "vpc-endpoint", self.suffix, Service="S3", EndpointType="Gateway"
            ),
        )
        endpoint_id = extract(response, "VpcEndpoint", "VpcEndpointId", operation="ec2:CreateVpcEndpoint")
        logger.info(f"Created endpoint {endpoint_id} on {route_table_ids}, waiting for it to become available")
        self.wait_available(endpoint_id)
        return {self.role: endpoint_id}

    def wait_available(self, endpoint_id: str) -> Dict[str, Any]:
        def probe() -> str:
            endpoint = describe_endpoint(self.provider, endpoint_id)
            state = str((endpoint or {}).get("State", "")).lower()
            if state in DEAD_STATES:
                raise ProviderError("ec2:DescribeVpcEndpoints", f"endpoint {endpoint_id} is {state}")
            return state

        return poll_until(
            "wait vpc_endpoint_available",
            probe,
            lambda state: state == "available",
            timeout=self.settings.endpoint_wait_timeout,
            interval=self.settings.poll_interval,
        )

    def delete(self, state):
        endpoint_id = state.get(self.role)
        try:
            response = call(
                "ec2:DeleteVpcEndpoints",
                self.provider.ec2.delete_vpc_endpoints,
                VpcEndpointIds=[endpoint_id],
            )
        except ProviderError as e:
            self.ignore_missing(e)
            return

        for item in response.get("Unsuccessful", []):
            error = item.get("Error", {})
            failure = ProviderError(
                "ec2:DeleteVpcEndpoints", error.get("Message", "not deleted"), code=error.get("Code")
            )
            self.ignore_missing(failure)

        # The route tables and VPC cannot go while the endpoint is still deleting
        self.wait_deleted(endpoint_id)

    def wait_deleted(self, endpoint_id: str) -> str:
        def probe() -> str:
            endpoint = describe_endpoint(self.provider, endpoint_id)
            return str((endpoint or {}).get("State", "deleted")).lower()

        return poll_until(
            "wait vpc_endpoint_deleted",
            probe,
            lambda state: state == "deleted",
            timeout=self.settings.endpoint_wait_timeout,
            interval=self.settings.poll_interval,
        )


def endpoint_step(provider, fallback: bool = True):
    """The endpoint step, optionally retried with one route table at a time."""
    primary = S3GatewayEndpoint(provider)
    if not fallback:
        return primary
    return FallbackStep(
        primary.name,
        [
            primary,
            S3GatewayEndpoint(provider, ["private-route-table"]),
            S3GatewayEndpoint(provider, ["public-route-table"]),
        ],
    )


def endpoint_details(provider, endpoint_id: str) -> Dict[str, Any]:
    """JSON-safe summary of the endpoint for the details document."""
    endpoint = describe_endpoint(provider, endpoint_id)
    if endpoint is None:
        raise ProviderError("ec2:DescribeVpcEndpoints", f"endpoint {endpoint_id} not found")

    policy: Any = endpoint.get("PolicyDocument")
    if isinstance(policy, str):
        try:
            policy = json.loads(policy)
        except ValueError:
            pass

    return {
        "VpcEndpointId": endpoint.get("VpcEndpointId", endpoint_id),
        "VpcId": endpoint.get("VpcId"),
        "ServiceName": endpoint.get("ServiceName"),
        "VpcEndpointType": endpoint.get("VpcEndpointType"),
        "State": endpoint.get("State"),
        "RouteTableIds": endpoint.get("RouteTableIds", []),
        "PolicyDocument": policy,
        "CreationTimestamp": str(endpoint.get("CreationTimestamp", "")) or None,
        "Tags": endpoint.get("Tags", []),
    }
