"""Tests for the S3 gateway endpoint step and reduced-scope fallback"""

import json

import pytest

from endpoint_provisioner.errors import ProviderError
from endpoint_provisioner.steps.base import FallbackStep
from endpoint_provisioner.steps.endpoint import (
    S3GatewayEndpoint,
    endpoint_details,
    endpoint_policy,
    endpoint_step,
)


@pytest.fixture
def network_state(state):
    state.put("vpc", "vpc-1")
    state.put("public-route-table", "rtb-pub")
    state.put("private-route-table", "rtb-priv")
    return state


class TestEndpointPolicy:
    """Test suite for the endpoint policy document"""

    def test_denies_insecure_transport(self):
        """Test that plain HTTP is denied for every S3 action"""
        deny = [s for s in endpoint_policy()["Statement"] if s["Effect"] == "Deny"][0]
        assert deny["Action"] == "s3:*"
        assert deny["Condition"] == {"Bool": {"aws:SecureTransport": "false"}}


class TestS3GatewayEndpoint:
    """Test suite for S3GatewayEndpoint"""

    def test_create_on_both_route_tables(self, provider, clients, network_state):
        """Test creation, the attached policy and waiting for availability"""
        ec2 = clients["ec2"]
        ec2.create_vpc_endpoint.return_value = {"VpcEndpoint": {"VpcEndpointId": "vpce-1"}}
        ec2.describe_vpc_endpoints.return_value = {"VpcEndpoints": [{"VpcEndpointId": "vpce-1", "State": "available"}]}

        assert S3GatewayEndpoint(provider).create(network_state) == {"s3-endpoint": "vpce-1"}

        kwargs = ec2.create_vpc_endpoint.call_args.kwargs
        assert kwargs["VpcEndpointType"] == "Gateway"
        assert kwargs["ServiceName"] == "com.amazonaws.us-west-2.s3"
        assert kwargs["RouteTableIds"] == ["rtb-pub", "rtb-priv"]
        assert json.loads(kwargs["PolicyDocument"]) == endpoint_policy()

    def test_wait_fails_on_dead_state(self, provider, clients, network_state):
        """Test that a failed endpoint stops the wait immediately"""
        ec2 = clients["ec2"]
        ec2.create_vpc_endpoint.return_value = {"VpcEndpoint": {"VpcEndpointId": "vpce-1"}}
        ec2.describe_vpc_endpoints.return_value = {"VpcEndpoints": [{"VpcEndpointId": "vpce-1", "State": "Failed"}]}

        with pytest.raises(ProviderError) as excinfo:
            S3GatewayEndpoint(provider).create(network_state)
        assert "failed" in str(excinfo.value)

    def test_existing_untagged_endpoint_is_adopted(self, provider, clients, network_state):
        """Test that any S3 endpoint already in the VPC is reused"""
        ec2 = clients["ec2"]
        ec2.describe_vpc_endpoints.side_effect = [
            {"VpcEndpoints": []},
            {"VpcEndpoints": [{"VpcEndpointId": "vpce-old", "State": "available"}]},
        ]
        step = S3GatewayEndpoint(provider)

        assert step.exists(network_state) is True
        assert step.adopt(network_state) == {"s3-endpoint": "vpce-old"}
        service_filter = ec2.describe_vpc_endpoints.call_args.kwargs["Filters"][1]
        assert service_filter == {"Name": "service-name", "Values": ["com.amazonaws.us-west-2.s3"]}

    def test_deleted_endpoint_does_not_count(self, provider, clients, network_state):
        """Test that endpoints being deleted are ignored"""
        clients["ec2"].describe_vpc_endpoints.return_value = {
            "VpcEndpoints": [{"VpcEndpointId": "vpce-old", "State": "deleted"}]
        }
        assert S3GatewayEndpoint(provider).exists(network_state) is False

    def test_delete_reports_unsuccessful_items(self, provider, clients, network_state):
        """Test that per-item delete errors are raised unless the endpoint is gone"""
        network_state.put("s3-endpoint", "vpce-1")
        clients["ec2"].describe_vpc_endpoints.return_value = {"VpcEndpoints": []}
        clients["ec2"].delete_vpc_endpoints.return_value = {
            "Unsuccessful": [{"Error": {"Code": "InvalidVpcEndpointId.NotFound", "Message": "gone"}}]
        }
        S3GatewayEndpoint(provider).delete(network_state)

        clients["ec2"].delete_vpc_endpoints.return_value = {
            "Unsuccessful": [{"Error": {"Code": "OperationNotPermitted", "Message": "no"}}]
        }
        with pytest.raises(ProviderError):
            S3GatewayEndpoint(provider).delete(network_state)

    def test_delete_waits_until_gone(self, provider, clients, network_state):
        """Test that deletion returns only once the endpoint stops deleting"""
        network_state.put("s3-endpoint", "vpce-1")
        ec2 = clients["ec2"]
        ec2.delete_vpc_endpoints.return_value = {"Unsuccessful": []}
        ec2.describe_vpc_endpoints.side_effect = [
            {"VpcEndpoints": [{"VpcEndpointId": "vpce-1", "State": "deleting"}]},
            {"VpcEndpoints": [{"VpcEndpointId": "vpce-1", "State": "Deleted"}]},
        ]

        S3GatewayEndpoint(provider).delete(network_state)

        assert ec2.describe_vpc_endpoints.call_count == 2
        ec2.describe_vpc_endpoints.assert_called_with(VpcEndpointIds=["vpce-1"])

    def test_delete_times_out(self, provider, clients, network_state):
        """Test that an endpoint stuck in deleting fails the delete"""
        network_state.put("s3-endpoint", "vpce-1")
        clients["ec2"].delete_vpc_endpoints.return_value = {"Unsuccessful": []}
        clients["ec2"].describe_vpc_endpoints.return_value = {
            "VpcEndpoints": [{"VpcEndpointId": "vpce-1", "State": "deleting"}]
        }
        provider.settings = provider.settings.model_copy(update={"endpoint_wait_timeout": 0.01})

        with pytest.raises(ProviderError) as excinfo:
            S3GatewayEndpoint(provider).delete(network_state)
        assert excinfo.value.operation == "wait vpc_endpoint_deleted"

    def test_details(self, provider, clients):
        """Test the endpoint details document"""
        clients["ec2"].describe_vpc_endpoints.return_value = {"VpcEndpoints": [{
            "VpcEndpointId": "vpce-1",
            "State": "available",
            "ServiceName": "com.amazonaws.us-west-2.s3",
            "VpcEndpointType": "Gateway",
            "PolicyDocument": json.dumps(endpoint_policy()),
        }]}
        details = endpoint_details(provider, "vpce-1")
        assert details["State"] == "available"
        assert details["PolicyDocument"]["Version"] == "2012-10-17"


class TestFallback:
    """Test suite for reduced-scope endpoint creation"""

    def test_fallback_switch(self, provider):
        """Test that the fallback wrapper is only used when enabled"""
        assert isinstance(endpoint_step(provider, fallback=True), FallbackStep)
        assert isinstance(endpoint_step(provider, fallback=False), S3GatewayEndpoint)

    def test_route_conflict_retries_private_only(self, provider, clients, network_state, client_error):
        """Test that a rejected two-table create is retried on the private table alone"""
        ec2 = clients["ec2"]
        ec2.create_vpc_endpoint.side_effect = [
            client_error("RouteAlreadyExists", "CreateVpcEndpoint"),
            {"VpcEndpoint": {"VpcEndpointId": "vpce-2"}},
        ]
        ec2.describe_vpc_endpoints.return_value = {"VpcEndpoints": [{"VpcEndpointId": "vpce-2", "State": "available"}]}

        step = endpoint_step(provider)
        assert step.name == "s3-gateway-endpoint"
        assert step.depends_on == {"vpc", "public-route-table", "private-route-table"}
        assert step.create(network_state) == {"s3-endpoint": "vpce-2"}

        scopes = [c.kwargs["RouteTableIds"] for c in ec2.create_vpc_endpoint.call_args_list]
        assert scopes == [["rtb-pub", "rtb-priv"], ["rtb-priv"]]

    def test_all_alternates_rejected(self, provider, clients, network_state, client_error):
        """Test that the last rejection is raised when every scope fails"""
        clients["ec2"].create_vpc_endpoint.side_effect = client_error("RouteAlreadyExists", "CreateVpcEndpoint")
        with pytest.raises(ProviderError) as excinfo:
            endpoint_step(provider).create(network_state)
        assert excinfo.value.code == "RouteAlreadyExists"
        assert clients["ec2"].create_vpc_endpoint.call_count == 3

    def test_timeout_is_not_retried(self, provider, network_state):
        """Test that errors without a provider code are raised at once"""
        class Flaky:
            name = "flaky"
            produces = frozenset({"s3-endpoint"})
            depends_on = frozenset()
            calls = 0

            def __init__(self):
                self.provider = provider
                self.settings = provider.settings

            def create(self, state):
                Flaky.calls += 1
                raise ProviderError("ec2:CreateVpcEndpoint", "read timeout")

        step = FallbackStep("endpoint", [Flaky(), Flaky()])
        with pytest.raises(ProviderError):
            step.create(network_state)
        assert Flaky.calls == 1

    def test_alternates_must_agree(self, provider):
        """Test that alternates producing different roles are rejected"""
        other = S3GatewayEndpoint(provider)
        other.produces = frozenset({"something-else"})
        with pytest.raises(ValueError):
            FallbackStep("endpoint", [S3GatewayEndpoint(provider), other])
