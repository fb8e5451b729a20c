#!/usr/bin/env python3
"""
Storage Steps

The S3 bucket the connectivity checks read and write, locked to the VPC.
"""

import json
import logging
from typing import Dict, List

from ..errors import ProviderError
from ..provider.aws import call, is_not_found
from .base import ResourceStep

logger = logging.getLogger(__name__)

# delete_objects accepts at most this many keys per request
DELETE_BATCH_SIZE = 1000


def bucket_policy(bucket_name: str, vpc_id: str) -> Dict:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "VPCEndpointAccess",
                "Effect": "Allow",
                "Principal": "*",
                "Action": "s3:*",
                "Resource": [
                    f"arn:aws:s3:::{bucket_name}",
                    f"arn:aws:s3:::{bucket_name}/*",
                ],
                "Condition": {"StringEquals": {"aws:sourceVpc": vpc_id}},
            }
        ],
    }


class TestBucket(ResourceStep):
    """Bucket named after the project; the bucket name is its provider id."""

    name = "test-bucket"
    role = "test-bucket"
    depends_on = frozenset({"vpc"})
    produces = frozenset({"test-bucket"})

    # Not a pytest test class despite the name
    __test__ = False

    @property
    def bucket_name(self) -> str:
        return self.settings.bucket_name

    def exists(self, state) -> bool:
        try:
            call("s3:HeadBucket", self.provider.s3.head_bucket, Bucket=self.bucket_name)
        except ProviderError as e:
            if is_not_found(e):
                return False
            raise
        return True

    def adopt(self, state) -> Dict[str, str]:
        if state.has(self.role):
            return {}
        return {self.role: self.bucket_name}

    def create(self, state) -> Dict[str, str]:
        s3 = self.provider.s3
        kwargs = {"Bucket": self.bucket_name}
        # us-east-1 rejects an explicit location constraint
        if self.settings.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.settings.region}
        call("s3:CreateBucket", s3.create_bucket, **kwargs)

        call(
            "s3:PutBucketPolicy",
            s3.put_bucket_policy,
            Bucket=self.bucket_name,
            Policy=json.dumps(bucket_policy(self.bucket_name, state.get("vpc"))),
        )
        call(
            "s3:PutBucketTagging",
            s3.put_bucket_tagging,
            Bucket=self.bucket_name,
            Tagging={"TagSet": self.provider.tags("test-bucket", Purpose="endpoint-testing")},
        )
        return {self.role: self.bucket_name}

    def delete(self, state):
        bucket = state.get(self.role)
        try:
            self.empty(bucket)
            call("s3:DeleteBucket", self.provider.s3.delete_bucket, Bucket=bucket)
        except ProviderError as e:
            self.ignore_missing(e)

    def empty(self, bucket: str):
        """Remove every object version and delete marker so the bucket can go."""
        s3 = self.provider.s3
        paginator = s3.get_paginator("list_object_versions")
        pending: List[Dict[str, str]] = []

        # Pages are fetched lazily, so collect them inside the call wrapper
        pages = call(
            "s3:ListObjectVersions", lambda **kwargs: list(paginator.paginate(**kwargs)), Bucket=bucket
        )
        for page in pages:
            for entry in page.get("Versions", []) + page.get("DeleteMarkers", []):
                pending.append({"Key": entry["Key"], "VersionId": entry["VersionId"]})

        for start in range(0, len(pending), DELETE_BATCH_SIZE):
            batch = pending[start:start + DELETE_BATCH_SIZE]
            response = call(
                "s3:DeleteObjects",
                s3.delete_objects,
                Bucket=bucket,
                Delete={"Objects": batch, "Quiet": True},
            )
            errors = response.get("Errors", [])
            if errors:
                first = errors[0]
                raise ProviderError(
                    "s3:DeleteObjects",
                    f"{len(errors)} objects not deleted, first {first.get('Key')}: {first.get('Message')}",
                    code=first.get("Code"),
                )
        if pending:
            logger.info(f"Emptied {len(pending)} object versions from {bucket}")
