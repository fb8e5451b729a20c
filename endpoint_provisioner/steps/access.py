#!/usr/bin/env python3
"""
Access Steps

IAM role, S3 access policy and instance profile for the test instances.
IAM names are derived from the project id, so the name doubles as the
provider id (the policy is identified by its ARN).
"""

import json
import time
import logging
from typing import Dict, List, Optional

from ..errors import ProviderError
from ..provider.aws import call, extract, is_not_found
from .base import ResourceStep

logger = logging.getLogger(__name__)

EC2_TRUST_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}


def s3_access_policy(bucket_name: str) -> Dict:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": [
                    "s3:GetObject",
                    "s3:PutObject",
                    "s3:DeleteObject",
                    "s3:ListBucket",
                    "s3:GetBucketLocation",
                    "s3:ListAllMyBuckets",
                ],
                "Resource": [
                    f"arn:aws:s3:::{bucket_name}",
                    f"arn:aws:s3:::{bucket_name}/*",
                    "arn:aws:s3:::*",
                ],
            },
            {
                "Effect": "Allow",
                "Action": ["ec2:DescribeVpcEndpoints", "ec2:DescribeRouteTables"],
                "Resource": "*",
            },
        ],
    }


class IamStep(ResourceStep):
    """Shared lookups for IAM entities that are addressed by name."""

    role: str = ""
    suffix: str = ""

    def __init__(self, provider):
        super().__init__(provider)
        self.produces = frozenset({self.role})

    def iam_tags(self) -> List[Dict[str, str]]:
        return [t for t in self.provider.tags(self.suffix) if t["Key"] != "Name"]

    def lookup(self, operation: str, fn, **kwargs) -> Optional[Dict]:
        try:
            return call(operation, fn, **kwargs)
        except ProviderError as e:
            if is_not_found(e):
                return None
            raise

    def adopt(self, state) -> Dict[str, str]:
        identifier = self.identifier()
        if self.recorded(state, self.role) == identifier:
            return {}
        return {self.role: identifier}

    def identifier(self) -> str:
        return self.settings.resource_name(self.suffix)


class InstanceRole(IamStep):
    name = "instance-role"
    role = "instance-role"
    suffix = "ec2-role"

    def exists(self, state) -> bool:
        return self.lookup("iam:GetRole", self.provider.iam.get_role, RoleName=self.identifier()) is not None

    def create(self, state) -> Dict[str, str]:
        response = call(
            "iam:CreateRole",
            self.provider.iam.create_role,
            RoleName=self.identifier(),
            AssumeRolePolicyDocument=json.dumps(EC2_TRUST_POLICY),
            Description=f"EC2 role for {self.settings.project_id} endpoint tests",
            Tags=self.iam_tags(),
        )
        return {self.role: extract(response, "Role", "RoleName", operation="iam:CreateRole")}

    def delete(self, state):
        iam = self.provider.iam
        role_name = state.get(self.role)
        try:
            attached = call("iam:ListAttachedRolePolicies", iam.list_attached_role_policies, RoleName=role_name)
            for policy in attached.get("AttachedPolicies", []):
                call(
                    "iam:DetachRolePolicy",
                    iam.detach_role_policy,
                    RoleName=role_name,
                    PolicyArn=policy["PolicyArn"],
                )
            profiles = call(
                "iam:ListInstanceProfilesForRole", iam.list_instance_profiles_for_role, RoleName=role_name
            )
            for profile in profiles.get("InstanceProfiles", []):
                call(
                    "iam:RemoveRoleFromInstanceProfile",
                    iam.remove_role_from_instance_profile,
                    InstanceProfileName=profile["InstanceProfileName"],
                    RoleName=role_name,
                )
            call("iam:DeleteRole", iam.delete_role, RoleName=role_name)
        except ProviderError as e:
            self.ignore_missing(e)


class AccessPolicy(IamStep):
    """Customer-managed policy granting the bucket access, attached to the role."""

    name = "access-policy"
    role = "access-policy"
    suffix = "s3-policy"
    depends_on = frozenset({"instance-role", "test-bucket"})

    def identifier(self) -> str:
        return f"arn:aws:iam::{self.provider.account_id()}:policy/{self.settings.resource_name(self.suffix)}"

    def attached(self, role_name: str, policy_arn: str) -> bool:
        response = self.lookup(
            "iam:ListAttachedRolePolicies",
            self.provider.iam.list_attached_role_policies,
            RoleName=role_name,
        )
        return any(p.get("PolicyArn") == policy_arn for p in (response or {}).get("AttachedPolicies", []))

    def exists(self, state) -> bool:
        policy_arn = self.identifier()
        if self.lookup("iam:GetPolicy", self.provider.iam.get_policy, PolicyArn=policy_arn) is None:
            return False
        # A policy that is not attached yet still needs the attach half of create
        return self.attached(state.get("instance-role"), policy_arn)

    def create(self, state) -> Dict[str, str]:
        iam = self.provider.iam
        policy_arn = self.identifier()
        if self.lookup("iam:GetPolicy", iam.get_policy, PolicyArn=policy_arn) is None:
            response = call(
                "iam:CreatePolicy",
                iam.create_policy,
                PolicyName=self.settings.resource_name(self.suffix),
                PolicyDocument=json.dumps(s3_access_policy(state.get("test-bucket"))),
                Tags=self.iam_tags(),
            )
            policy_arn = extract(response, "Policy", "Arn", operation="iam:CreatePolicy")

        call(
            "iam:AttachRolePolicy",
            iam.attach_role_policy,
            RoleName=state.get("instance-role"),
            PolicyArn=policy_arn,
        )
        return {self.role: policy_arn}

    def delete(self, state):
        iam = self.provider.iam
        policy_arn = state.get(self.role)
        try:
            entities = call("iam:ListEntitiesForPolicy", iam.list_entities_for_policy, PolicyArn=policy_arn)
            for entity in entities.get("PolicyRoles", []):
                call("iam:DetachRolePolicy", iam.detach_role_policy, RoleName=entity["RoleName"], PolicyArn=policy_arn)

            versions = call("iam:ListPolicyVersions", iam.list_policy_versions, PolicyArn=policy_arn)
            for version in versions.get("Versions", []):
                if not version.get("IsDefaultVersion"):
                    call(
                        "iam:DeletePolicyVersion",
                        iam.delete_policy_version,
                        PolicyArn=policy_arn,
                        VersionId=version["VersionId"],
                    )
            call("iam:DeletePolicy", iam.delete_policy, PolicyArn=policy_arn)
        except ProviderError as e:
            self.ignore_missing(e)


class InstanceProfile(IamStep):
    """Instance profile carrying the role; waits for IAM to propagate after creation."""

    name = "instance-profile"
    role = "instance-profile"
    suffix = "instance-profile"
    depends_on = frozenset({"instance-role", "access-policy"})

    def profile(self) -> Optional[Dict]:
        response = self.lookup(
            "iam:GetInstanceProfile",
            self.provider.iam.get_instance_profile,
            InstanceProfileName=self.identifier(),
        )
        return response.get("InstanceProfile") if response else None

    def exists(self, state) -> bool:
        profile = self.profile()
        if profile is None:
            return False
        role_name = state.get("instance-role")
        return any(r.get("RoleName") == role_name for r in profile.get("Roles", []))

    def create(self, state) -> Dict[str, str]:
        iam = self.provider.iam
        name = self.identifier()
        profile = self.profile()
        if profile is None:
            response = call(
                "iam:CreateInstanceProfile",
                iam.create_instance_profile,
                InstanceProfileName=name,
                Tags=self.iam_tags(),
            )
            profile = extract(response, "InstanceProfile", operation="iam:CreateInstanceProfile")

        role_name = state.get("instance-role")
        if not any(r.get("RoleName") == role_name for r in profile.get("Roles", [])):
            call(
                "iam:AddRoleToInstanceProfile",
                iam.add_role_to_instance_profile,
                InstanceProfileName=name,
                RoleName=role_name,
            )

        if self.settings.iam_propagation_seconds:
            logger.info(f"Waiting {self.settings.iam_propagation_seconds:g}s for IAM propagation")
            time.sleep(self.settings.iam_propagation_seconds)
        return {self.role: extract(profile, "InstanceProfileName", operation="iam:CreateInstanceProfile")}

    def delete(self, state):
        iam = self.provider.iam
        name = state.get(self.role)
        try:
            response = call("iam:GetInstanceProfile", iam.get_instance_profile, InstanceProfileName=name)
            for role in response.get("InstanceProfile", {}).get("Roles", []):
                call(
                    "iam:RemoveRoleFromInstanceProfile",
                    iam.remove_role_from_instance_profile,
                    InstanceProfileName=name,
                    RoleName=role["RoleName"],
                )
            call("iam:DeleteInstanceProfile", iam.delete_instance_profile, InstanceProfileName=name)
        except ProviderError as e:
            self.ignore_missing(e)
