"""Idempotent provisioning of an S3 gateway VPC endpoint test environment."""

__version__ = "0.1.0"
