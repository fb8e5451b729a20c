#!/usr/bin/env python3
"""
Plans

Which steps each subcommand runs. The full catalogue, in declaration order,
is also the teardown plan.
"""

from typing import List

from .access import AccessPolicy, InstanceProfile, InstanceRole
from .compute import BastionInstance, KeyPair, PrivateInstance
from .endpoint import endpoint_step
from .network import (
    BastionSecurityGroup,
    InternetGateway,
    PrivateRouteTable,
    PrivateSecurityGroup,
    PrivateSubnet,
    PublicRouteTable,
    PublicSubnet,
    Vpc,
)
from .storage import TestBucket


def network_plan(provider) -> List:
    return [
        Vpc(provider),
        InternetGateway(provider),
        PublicSubnet(provider),
        PrivateSubnet(provider),
        PublicRouteTable(provider),
        PrivateRouteTable(provider),
        BastionSecurityGroup(provider),
        PrivateSecurityGroup(provider),
        TestBucket(provider),
    ]


def endpoint_plan(provider) -> List:
    return [endpoint_step(provider, fallback=provider.settings.endpoint_fallback)]


def instance_plan(provider) -> List:
    return [
        KeyPair(provider),
        InstanceRole(provider),
        AccessPolicy(provider),
        InstanceProfile(provider),
        BastionInstance(provider),
        PrivateInstance(provider),
    ]


PLANS = {
    "setup-network": network_plan,
    "create-endpoint": endpoint_plan,
    "deploy-test-instances": instance_plan,
}


def build_plan(command: str, provider) -> List:
    return PLANS[command](provider)


def full_plan(provider) -> List:
    """Every step, in the order a fresh environment would be built."""
    steps = []
    for build in PLANS.values():
        steps.extend(build(provider))
    return steps
