#!/usr/bin/env python3
"""
Connectivity Checks

Post-deployment validation of the S3 gateway endpoint:
- Endpoint state
- Endpoint routes in both route tables
- S3 list / upload / download round trip
- Endpoint policy presence
- S3 prefix list behind the routes
"""

import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import ProvisionerError
from ..provider.aws import call, extract
from ..state.store import utc_timestamp
from ..steps.endpoint import ENDPOINT_ROLE, ROUTE_TABLE_ROLES, describe_endpoint

logger = logging.getLogger(__name__)


class CheckStatus(Enum):
    PASS = "PASS"
    PARTIAL = "PARTIAL"
    FAIL = "FAIL"
    SKIP = "SKIP"


class OverallStatus(Enum):
    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILURE = "FAILURE"


EXIT_CODES = {
    OverallStatus.SUCCESS: 0,
    OverallStatus.PARTIAL_SUCCESS: 1,
    OverallStatus.FAILURE: 2,
}

MARKS = {
    CheckStatus.PASS: "✓",
    CheckStatus.PARTIAL: "~",
    CheckStatus.FAIL: "✗",
    CheckStatus.SKIP: "-",
}


@dataclass
class CheckResult:
    """Result of a single check; some checks carry named sub-results."""

    result: CheckStatus
    details: Dict[str, Any] = field(default_factory=dict)
    sub_results: Dict[str, CheckStatus] = field(default_factory=dict)
    name: str = ""
    title: str = ""

    def statuses(self) -> List[CheckStatus]:
        return list(self.sub_results.values()) if self.sub_results else [self.result]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.title, "result": self.result.value}
        for key, status in self.sub_results.items():
            data[key] = status.value
        if self.details:
            data["details"] = self.details
        return data


@dataclass
class ConnectivityReport:
    """All check results for one run."""

    results: List[CheckResult]
    context: Dict[str, Optional[str]] = field(default_factory=dict)
    tested_at: str = field(default_factory=utc_timestamp)

    def summary(self) -> Dict[str, int]:
        statuses = [s for r in self.results for s in r.statuses()]
        return {
            "total_tests": len(self.results),
            "passed": statuses.count(CheckStatus.PASS),
            "failed": statuses.count(CheckStatus.FAIL),
            "partial": statuses.count(CheckStatus.PARTIAL),
            "skipped": statuses.count(CheckStatus.SKIP),
        }

    @property
    def overall(self) -> OverallStatus:
        summary = self.summary()
        if summary["failed"] == 0:
            return OverallStatus.SUCCESS
        if summary["passed"] > summary["failed"]:
            return OverallStatus.PARTIAL_SUCCESS
        return OverallStatus.FAILURE

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.overall]

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {"test_timestamp": self.tested_at}
        document.update(self.context)
        document["tests"] = {r.name: r.to_dict() for r in self.results}
        document["summary"] = self.summary()
        document["overall_status"] = self.overall.value
        return document

    def render(self) -> str:
        summary = self.summary()
        lines = [
            "=" * 60,
            "S3 Endpoint Connectivity Report",
            "=" * 60,
            f"Status: {self.overall.value}",
            f"Passed: {summary['passed']}  Failed: {summary['failed']}  "
            f"Partial: {summary['partial']}  Skipped: {summary['skipped']}",
            "",
            "Details:",
        ]
        for result in self.results:
            lines.append(f"  {MARKS[result.result]} {result.name}: {result.result.value}")
            for key, status in result.sub_results.items():
                lines.append(f"      {MARKS[status]} {key}: {status.value}")
            if result.details.get("error"):
                lines.append(f"      {result.details['error']}")
        return "\n".join(lines) + "\n"


def combine(statuses: List[CheckStatus]) -> CheckStatus:
    """Roll sub-results up into one status for the parent check."""
    counted = [s for s in statuses if s != CheckStatus.SKIP]
    if not counted or all(s == CheckStatus.PASS for s in counted):
        return CheckStatus.PASS
    if all(s == CheckStatus.FAIL for s in counted):
        return CheckStatus.FAIL
    return CheckStatus.PARTIAL


class ConnectivityChecker:
    """
    Runs every check against the recorded endpoint.

    A check that cannot reach the provider, or finds a role missing from
    state, fails on its own without stopping the rest.
    """

    def __init__(self, provider, state):
        self.provider = provider
        self.state = state
        self.checks = [
            ("endpoint_status", "S3 Gateway Endpoint Status", self._check_endpoint_status),
            ("route_configuration", "Route Table Configuration", self._check_route_configuration),
            ("s3_connectivity", "S3 Connectivity Tests", self._check_s3_connectivity),
            ("endpoint_policy", "VPC Endpoint Policy", self._check_endpoint_policy),
            ("prefix_list", "S3 Prefix List Verification", self._check_prefix_list),
        ]
        self._endpoint: Optional[Dict[str, Any]] = None
        self._prefix_lists: Optional[Dict[str, Optional[str]]] = None

    def run_all(self) -> ConnectivityReport:
        results = []
        for name, title, check in self.checks:
            try:
                result = check()
            except ProvisionerError as e:
                logger.error(f"Check {name} errored: {e}")
                result = CheckResult(CheckStatus.FAIL, details={"error": str(e)})
            result.name, result.title = name, title
            results.append(result)

        return ConnectivityReport(results=results, context=self._context())

    def _context(self) -> Dict[str, Optional[str]]:
        settings = self.provider.settings
        recorded = self.state.snapshot()
        return {
            "project_id": settings.project_id,
            "region": settings.region,
            "s3_bucket": recorded.get("test-bucket"),
            "endpoint_id": recorded.get(ENDPOINT_ROLE),
            "vpc_id": recorded.get("vpc"),
        }

    def endpoint(self) -> Dict[str, Any]:
        if self._endpoint is None:
            endpoint_id = self.state.get(ENDPOINT_ROLE)
            self._endpoint = describe_endpoint(self.provider, endpoint_id) or {}
        return self._endpoint

    def prefix_lists(self) -> Dict[str, Optional[str]]:
        """Route table role -> prefix list routed through the endpoint, if any."""
        if self._prefix_lists is None:
            endpoint_id = self.state.get(ENDPOINT_ROLE)
            found: Dict[str, Optional[str]] = {}
            for role in ROUTE_TABLE_ROLES:
                route_table_id = self.state.get(role)
                response = call(
                    "ec2:DescribeRouteTables",
                    self.provider.ec2.describe_route_tables,
                    RouteTableIds=[route_table_id],
                )
                routes = extract(response, "RouteTables", 0, operation="ec2:DescribeRouteTables").get("Routes", [])
                found[role] = next(
                    (
                        r["DestinationPrefixListId"]
                        for r in routes
                        if r.get("GatewayId") == endpoint_id and r.get("DestinationPrefixListId")
                    ),
                    None,
                )
            self._prefix_lists = found
        return self._prefix_lists

    def _check_endpoint_status(self) -> CheckResult:
        state = self.endpoint().get("State", "unknown")
        status = CheckStatus.PASS if str(state).lower() == "available" else CheckStatus.FAIL
        return CheckResult(status, details={"state": state})

    def _check_route_configuration(self) -> CheckResult:
        prefix_lists = self.prefix_lists()
        routed = [role for role, pl in prefix_lists.items() if pl]
        if len(routed) == len(ROUTE_TABLE_ROLES):
            status = CheckStatus.PASS
        elif routed:
            status = CheckStatus.PARTIAL
        else:
            status = CheckStatus.FAIL

        details = {}
        for role, prefix_list in prefix_lists.items():
            details[role.replace("-", "_")] = self.state.get(role)
            details[role.replace("-route-table", "_prefix_list")] = prefix_list
        return CheckResult(status, details=details)

    def _check_s3_connectivity(self) -> CheckResult:
        s3 = self.provider.s3
        bucket = self.state.get("test-bucket")
        key = f"endpoint-test-{int(time.time())}.txt"
        body = f"Test file created at {utc_timestamp()} for S3 VPC endpoint testing\n".encode()
        sub: Dict[str, CheckStatus] = {}
        details: Dict[str, Any] = {"test_object": key}

        def attempt(label: str, operation: str, fn, **kwargs):
            try:
                response = call(operation, fn, **kwargs)
            except ProvisionerError as e:
                sub[label] = CheckStatus.FAIL
                details[f"{label}_error"] = str(e)
                return None
            sub[label] = CheckStatus.PASS
            return response

        attempt("list_buckets", "s3:ListBuckets", s3.list_buckets)
        attempt("bucket_access", "s3:ListObjectsV2", s3.list_objects_v2, Bucket=bucket, MaxKeys=10)
        uploaded = attempt("file_upload", "s3:PutObject", s3.put_object, Bucket=bucket, Key=key, Body=body)

        if uploaded is None:
            sub["file_download"] = CheckStatus.SKIP
        else:
            try:
                downloaded = attempt(
                    "file_download",
                    "s3:GetObject",
                    lambda **kwargs: s3.get_object(**kwargs)["Body"].read(),
                    Bucket=bucket,
                    Key=key,
                )
                if downloaded is not None and downloaded != body:
                    sub["file_download"] = CheckStatus.FAIL
                    details["file_download_error"] = "downloaded content differs from upload"
            finally:
                try:
                    call("s3:DeleteObject", s3.delete_object, Bucket=bucket, Key=key)
                except ProvisionerError as e:
                    logger.warning(f"Could not remove test object {key}: {e}")

        return CheckResult(combine(list(sub.values())), details=details, sub_results=sub)

    def _check_endpoint_policy(self) -> CheckResult:
        policy = self.endpoint().get("PolicyDocument")
        status = CheckStatus.PASS if policy else CheckStatus.PARTIAL
        return CheckResult(status, details={"configured": bool(policy)})

    def _check_prefix_list(self) -> CheckResult:
        prefix_lists = self.prefix_lists()
        prefix_list_id = prefix_lists.get("private-route-table") or prefix_lists.get("public-route-table")
        if not prefix_list_id:
            return CheckResult(CheckStatus.FAIL, details={"prefix_list_id": None})

        response = call(
            "ec2:DescribePrefixLists",
            self.provider.ec2.describe_prefix_lists,
            PrefixListIds=[prefix_list_id],
        )
        lists = response.get("PrefixLists", [])
        name = lists[0].get("PrefixListName", "") if lists else ""
        status = CheckStatus.PASS if "s3" in name.lower() else CheckStatus.PARTIAL
        return CheckResult(
            status, details={"prefix_list_id": prefix_list_id, "prefix_list_name": name or None}
        )
