#!/usr/bin/env python3
"""
Compute Steps

Key pair and the two test instances: a bastion in the public subnet and a
test host in the private subnet that reaches S3 only through the endpoint.
"""

import os
import logging
from pathlib import Path
from typing import Dict, List

from jinja2 import Template

from ..errors import ProviderError
from ..provider.aws import call, extract, is_not_found
from .base import ResourceStep, TaggedEc2Step

logger = logging.getLogger(__name__)

LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]

USER_DATA_TEMPLATE = """#!/bin/bash
yum update -y
yum install -y aws-cli jq htop

cat > /home/ec2-user/test-s3-endpoint.sh << 'SCRIPT'
#!/bin/bash
REGION=$(curl -s http://169.254.169.254/latest/meta-data/placement/region)
aws s3 ls --region $REGION
aws s3 ls s3://{{ bucket_name }} --region $REGION
echo "Test from $(hostname) at $(date)" > /tmp/test-file.txt
aws s3 cp /tmp/test-file.txt s3://{{ bucket_name }}/test-from-$(hostname).txt --region $REGION
SCRIPT

cat > /home/ec2-user/check-endpoint.sh << 'SCRIPT'
#!/bin/bash
REGION=$(curl -s http://169.254.169.254/latest/meta-data/placement/region)
aws ec2 describe-vpc-endpoints --region $REGION --filters Name=service-name,Values={{ service_name }}
SCRIPT

{% for script in ["test-s3-endpoint.sh", "check-endpoint.sh"] %}
chmod +x /home/ec2-user/{{ script }}
chown ec2-user:ec2-user /home/ec2-user/{{ script }}
{% endfor %}
"""


def render_user_data(settings) -> str:
    return Template(USER_DATA_TEMPLATE).render(
        bucket_name=settings.bucket_name,
        service_name=settings.s3_service_name,
    )


class KeyPair(ResourceStep):
    """SSH key pair; the private key is written once, readable only by the owner."""

    name = "key-pair"
    role = "key-pair"
    produces = frozenset({"key-pair"})

    @property
    def key_name(self) -> str:
        return self.settings.resource_name("keypair")

    @property
    def key_path(self) -> Path:
        return Path(self.settings.key_dir) / f"{self.key_name}.pem"

    def exists(self, state) -> bool:
        try:
            call("ec2:DescribeKeyPairs", self.provider.ec2.describe_key_pairs, KeyNames=[self.key_name])
        except ProviderError as e:
            if is_not_found(e):
                return False
            raise
        return True

    def adopt(self, state) -> Dict[str, str]:
        if not self.key_path.exists():
            logger.warning(f"Key pair {self.key_name} exists but {self.key_path} is missing locally")
        if state.has(self.role):
            return {}
        return {self.role: self.key_name}

    def create(self, state) -> Dict[str, str]:
        response = call(
            "ec2:CreateKeyPair",
            self.provider.ec2.create_key_pair,
            KeyName=self.key_name,
            TagSpecifications=self.provider.tag_specifications("key-pair", "keypair"),
        )
        material = extract(response, "KeyMaterial", operation="ec2:CreateKeyPair")
        self.write_private_key(material)
        return {self.role: extract(response, "KeyName", operation="ec2:CreateKeyPair")}

    def write_private_key(self, material: str):
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        if self.key_path.exists():
            self.key_path.unlink()
        fd = os.open(str(self.key_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(material)
            if not material.endswith("\n"):
                f.write("\n")
        os.chmod(self.key_path, 0o400)
        logger.info(f"Private key saved to {self.key_path}")

    def delete(self, state):
        try:
            call("ec2:DeleteKeyPair", self.provider.ec2.delete_key_pair, KeyName=state.get(self.role))
        except ProviderError as e:
            self.ignore_missing(e)
        if self.key_path.exists():
            self.key_path.unlink()


class Instance(TaggedEc2Step):
    """A single EC2 instance launched from the newest matching AMI."""

    describe_method = "describe_instances"
    id_field = "InstanceId"
    ids_param = "InstanceIds"
    subnet_role = ""
    security_group_role = ""
    instance_type_tag = ""
    subnet_tag = ""

    def items(self, response) -> List[Dict]:
        return [
            instance
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]

    def is_live(self, item: Dict) -> bool:
        return item.get("State", {}).get("Name") in LIVE_INSTANCE_STATES

    def scope_filters(self, state) -> List[Dict]:
        return [{"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES}]

    def latest_image(self) -> str:
        response = call(
            "ec2:DescribeImages",
            self.provider.ec2.describe_images,
            Owners=[self.settings.ami_owner],
            Filters=[
                {"Name": "name", "Values": [self.settings.ami_name_pattern]},
                {"Name": "state", "Values": ["available"]},
            ],
        )
        images = sorted(response.get("Images", []), key=lambda image: image.get("CreationDate", ""))
        if not images:
            raise ProviderError(
                "ec2:DescribeImages", f"no available image matches {self.settings.ami_name_pattern!r}"
            )
        return extract(images[-1], "ImageId", operation="ec2:DescribeImages")

    def create(self, state) -> Dict[str, str]:
        ec2 = self.provider.ec2
        response = call(
            "ec2:RunInstances",
            ec2.run_instances,
            ImageId=self.latest_image(),
            InstanceType=self.settings.instance_type,
            KeyName=state.get("key-pair"),
            MinCount=1,
            MaxCount=1,
            SubnetId=state.get(self.subnet_role),
            SecurityGroupIds=[state.get(self.security_group_role)],
            IamInstanceProfile={"Name": state.get("instance-profile")},
            UserData=render_user_data(self.settings),
            TagSpecifications=self.provider.tag_specifications(
                "instance", self.suffix, Type=self.instance_type_tag, Subnet=self.subnet_tag
            ),
        )
        instance_id = extract(response, "Instances", 0, "InstanceId", operation="ec2:RunInstances")
        logger.info(f"Launched {instance_id}, waiting for it to run")
        self.provider.wait("ec2:wait instance_running", ec2, "instance_running", InstanceIds=[instance_id])
        return {self.role: instance_id}

    def delete(self, state):
        ec2 = self.provider.ec2
        instance_id = state.get(self.role)
        try:
            call("ec2:TerminateInstances", ec2.terminate_instances, InstanceIds=[instance_id])
        except ProviderError as e:
            self.ignore_missing(e)
            return
        # Subnets and security groups cannot go while the instance still holds them
        self.provider.wait(
            "ec2:wait instance_terminated", ec2, "instance_terminated", InstanceIds=[instance_id]
        )


class BastionInstance(Instance):
    name = "bastion-instance"
    role = "bastion-instance"
    suffix = "bastion"
    depends_on = frozenset({"public-subnet", "bastion-security-group", "key-pair", "instance-profile", "test-bucket"})
    subnet_role = "public-subnet"
    security_group_role = "bastion-security-group"
    instance_type_tag = "Bastion"
    subnet_tag = "Public"


class PrivateInstance(Instance):
    name = "private-instance"
    role = "private-instance"
    suffix = "private-test"
    depends_on = frozenset({"private-subnet", "private-security-group", "key-pair", "instance-profile", "test-bucket"})
    subnet_role = "private-subnet"
    security_group_role = "private-security-group"
    instance_type_tag = "TestInstance"
    subnet_tag = "Private"


def instance_addresses(provider, instance_id: str) -> Dict[str, str]:
    """Public and private IPs of an instance, for the status output."""
    response = call("ec2:DescribeInstances", provider.ec2.describe_instances, InstanceIds=[instance_id])
    instance = extract(response, "Reservations", 0, "Instances", 0, operation="ec2:DescribeInstances")
    addresses = {"private_ip": instance.get("PrivateIpAddress")}
    if instance.get("PublicIpAddress"):
        addresses["public_ip"] = instance["PublicIpAddress"]
    return addresses
