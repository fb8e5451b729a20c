# file: config.py

import ipaddress
import logging
import os
import re
import time
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

PROJECT_ID_REGEX = re.compile(r"^[a-z0-9][a-z0-9-]{2,49}$")

# Environment variables honoured on top of the YAML file
ENV_OVERRIDES = {
    "PROJECT_ID": "project_id",
    "AWS_REGION": "region",
    "AWS_PROFILE": "profile",
    "AWS_ENDPOINT_URL": "endpoint_url",
}

# Values pinned by the state document once resources exist
RECORDED_FIELDS = ("project_id", "project_name", "region")


def default_project_id() -> str:
    return f"s3-vpc-endpoint-{int(time.time())}"


class ProvisionerSettings(BaseModel):
    """Everything a run needs to know about the target account and local files."""

    project_name: str = "s3-vpc-endpoint"
    project_id: str = Field(default_factory=default_project_id)
    region: str = "us-east-1"
    profile: Optional[str] = None
    endpoint_url: Optional[str] = None

    vpc_cidr: str = "10.0.0.0/16"
    public_subnet_cidr: str = "10.0.1.0/24"
    private_subnet_cidr: str = "10.0.2.0/24"
    ssh_ingress_cidr: str = "0.0.0.0/0"

    instance_type: str = "t3.micro"
    ami_owner: str = "amazon"
    ami_name_pattern: str = "amzn2-ami-hvm-*-x86_64-gp2"

    state_path: str = "configs/vpc-parameters.json"
    report_dir: str = "outputs"
    key_dir: str = "."

    endpoint_fallback: bool = True
    endpoint_wait_timeout: float = Field(default=300, gt=0)
    poll_interval: float = Field(default=5, ge=0)
    iam_propagation_seconds: float = Field(default=10, ge=0)

    connect_timeout: int = Field(default=10, gt=0)
    read_timeout: int = Field(default=60, gt=0)
    max_attempts: int = Field(default=5, ge=1)

    log_level: str = "WARNING"
    log_file: Optional[str] = None
    metrics_textfile: Optional[str] = None

    @field_validator("project_id")
    @classmethod
    def _check_project_id(cls, value: str) -> str:
        # The id prefixes bucket, role and key pair names
        if not PROJECT_ID_REGEX.match(value):
            raise ValueError(
                "project_id must be 3-50 lowercase letters, digits or hyphens"
            )
        return value

    @field_validator("vpc_cidr", "public_subnet_cidr", "private_subnet_cidr", "ssh_ingress_cidr")
    @classmethod
    def _check_cidr(cls, value: str) -> str:
        try:
            ipaddress.ip_network(value, strict=True)
        except ValueError as e:
            raise ValueError(f"invalid CIDR block {value!r}: {e}") from e
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @model_validator(mode="after")
    def _check_subnets(self) -> "ProvisionerSettings":
        vpc = ipaddress.ip_network(self.vpc_cidr)
        public = ipaddress.ip_network(self.public_subnet_cidr)
        private = ipaddress.ip_network(self.private_subnet_cidr)

        for name, subnet in (("public", public), ("private", private)):
            if not subnet.subnet_of(vpc):
                raise ValueError(f"{name} subnet {subnet} is outside VPC {vpc}")
        if public.overlaps(private):
            raise ValueError(f"public subnet {public} overlaps private subnet {private}")
        return self

    @property
    def bucket_name(self) -> str:
        return f"{self.project_id}-test-bucket"

    @property
    def s3_service_name(self) -> str:
        return f"com.amazonaws.{self.region}.s3"

    def resource_name(self, suffix: str) -> str:
        return f"{self.project_id}-{suffix}"

    def reconcile_with_state(self, metadata: Dict[str, Any]) -> "ProvisionerSettings":
        """
        Pin project identity to what the state document recorded.

        Resources already exist under the recorded names, so a freshly
        generated project id or a different region would address nothing.
        """
        updates = {}
        for key in RECORDED_FIELDS:
            recorded = metadata.get(key)
            if recorded and recorded != getattr(self, key):
                logger.warning(
                    f"Using recorded {key}={recorded!r} instead of {getattr(self, key)!r}"
                )
                updates[key] = recorded
        return self.model_copy(update=updates) if updates else self


def load_settings(
    config_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> ProvisionerSettings:
    """
    Build settings from, in increasing precedence:
    defaults, YAML file, environment variables, explicit overrides.
    """
    data: Dict[str, Any] = {}

    if config_path:
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{config_path}: expected a mapping at the top level")
        data.update(loaded)

    env = os.environ if environ is None else environ
    for var, key in ENV_OVERRIDES.items():
        if env.get(var):
            data[key] = env[var]

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    return ProvisionerSettings(**data)
