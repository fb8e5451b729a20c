#!/usr/bin/env python3
"""
Network Steps

VPC, internet gateway, subnets, route tables and security groups for the
endpoint test environment.
"""

import logging
from typing import Dict, List

from ..errors import ProviderError
from ..provider.aws import call, extract
from .base import TaggedEc2Step

logger = logging.getLogger(__name__)

SSH_PORT = 22

# (DescribeVpcAttribute name, response and ModifyVpcAttribute key)
DNS_ATTRIBUTES = (
    ("enableDnsSupport", "EnableDnsSupport"),
    ("enableDnsHostnames", "EnableDnsHostnames"),
)

ATTACHED_STATES = {"attached", "available"}
DEFAULT_ROUTE = "0.0.0.0/0"


class Vpc(TaggedEc2Step):
    name = "vpc"
    role = "vpc"
    suffix = "vpc"
    describe_method = "describe_vpcs"
    collection = "Vpcs"
    id_field = "VpcId"
    ids_param = "VpcIds"

    def dns_enabled(self, vpc_id: str, attribute: str, key: str) -> bool:
        response = call(
            "ec2:DescribeVpcAttribute",
            self.provider.ec2.describe_vpc_attribute,
            VpcId=vpc_id,
            Attribute=attribute,
        )
        return response.get(key, {}).get("Value") is True

    def is_complete(self, vpc_id: str, state) -> bool:
        return all(self.dns_enabled(vpc_id, attribute, key) for attribute, key in DNS_ATTRIBUTES)

    def create(self, state) -> Dict[str, str]:
        ec2 = self.provider.ec2
        vpc_id = self._found
        if vpc_id is None:
            response = call(
                "ec2:CreateVpc",
                ec2.create_vpc,
                CidrBlock=self.settings.vpc_cidr,
                TagSpecifications=self.provider.tag_specifications(
                    "vpc", self.suffix, Environment="development", Purpose="s3-endpoint-demo"
                ),
            )
            vpc_id = extract(response, "Vpc", "VpcId", operation="ec2:CreateVpc")
            self.provider.wait("ec2:wait vpc_available", ec2, "vpc_available", VpcIds=[vpc_id])

        # One attribute per call; gateway endpoints need DNS on the VPC
        for _, key in DNS_ATTRIBUTES:
            call("ec2:ModifyVpcAttribute", ec2.modify_vpc_attribute, VpcId=vpc_id, **{key: {"Value": True}})
        return {self.role: vpc_id}

    def delete(self, state):
        try:
            call("ec2:DeleteVpc", self.provider.ec2.delete_vpc, VpcId=state.get(self.role))
        except ProviderError as e:
            self.ignore_missing(e)


class InternetGateway(TaggedEc2Step):
    name = "internet-gateway"
    role = "internet-gateway"
    suffix = "igw"
    depends_on = frozenset({"vpc"})
    describe_method = "describe_internet_gateways"
    collection = "InternetGateways"
    id_field = "InternetGatewayId"
    ids_param = "InternetGatewayIds"

    def is_complete(self, igw_id: str, state) -> bool:
        vpc_id = self.recorded(state, "vpc")
        return any(
            attachment.get("VpcId") == vpc_id and attachment.get("State") in ATTACHED_STATES
            for attachment in self.lookup(igw_id).get("Attachments", [])
        )

    def create(self, state) -> Dict[str, str]:
        ec2 = self.provider.ec2
        igw_id = self._found
        if igw_id is None:
            response = call(
                "ec2:CreateInternetGateway",
                ec2.create_internet_gateway,
                TagSpecifications=self.provider.tag_specifications("internet-gateway", self.suffix),
            )
            igw_id = extract(
                response, "InternetGateway", "InternetGatewayId", operation="ec2:CreateInternetGateway"
            )
        call(
            "ec2:AttachInternetGateway",
            ec2.attach_internet_gateway,
            InternetGatewayId=igw_id,
            VpcId=state.get("vpc"),
        )
        return {self.role: igw_id}

    def delete(self, state):
        ec2 = self.provider.ec2
        igw_id = state.get(self.role)
        if state.has("vpc"):
            try:
                call(
                    "ec2:DetachInternetGateway",
                    ec2.detach_internet_gateway,
                    InternetGatewayId=igw_id,
                    VpcId=state.get("vpc"),
                )
            except ProviderError as e:
                self.ignore_missing(e)
        try:
            call("ec2:DeleteInternetGateway", ec2.delete_internet_gateway, InternetGatewayId=igw_id)
        except ProviderError as e:
            self.ignore_missing(e)


class Subnet(TaggedEc2Step):
    """A subnet in the first available zone of the region."""

    depends_on = frozenset({"vpc"})
    describe_method = "describe_subnets"
    collection = "Subnets"
    id_field = "SubnetId"
    ids_param = "SubnetIds"
    subnet_type = ""
    map_public_ip = False

    @property
    def cidr(self) -> str:
        raise NotImplementedError

    def scope_filters(self, state) -> List[Dict]:
        if state.has("vpc"):
            return [{"Name": "vpc-id", "Values": [state.get("vpc")]}]
        return []

    def availability_zone(self) -> str:
        response = call(
            "ec2:DescribeAvailabilityZones",
            self.provider.ec2.describe_availability_zones,
            Filters=[{"Name": "state", "Values": ["available"]}],
        )
        return extract(response, "AvailabilityZones", 0, "ZoneName", operation="ec2:DescribeAvailabilityZones")

    def is_complete(self, subnet_id: str, state) -> bool:
        return not self.map_public_ip or bool(self.lookup(subnet_id).get("MapPublicIpOnLaunch"))

    def create(self, state) -> Dict[str, str]:
        ec2 = self.provider.ec2
        subnet_id = self._found
        if subnet_id is None:
            response = call(
                "ec2:CreateSubnet",
                ec2.create_subnet,
                VpcId=state.get("vpc"),
                CidrBlock=self.cidr,
                AvailabilityZone=self.availability_zone(),
                TagSpecifications=self.provider.tag_specifications("subnet", self.suffix, Type=self.subnet_type),
            )
            subnet_id = extract(response, "Subnet", "SubnetId", operation="ec2:CreateSubnet")
        if self.map_public_ip:
            call(
                "ec2:ModifySubnetAttribute",
                ec2.modify_subnet_attribute,
                SubnetId=subnet_id,
                MapPublicIpOnLaunch={"Value": True},
            )
        return {self.role: subnet_id}

    def delete(self, state):
        try:
            call("ec2:DeleteSubnet", self.provider.ec2.delete_subnet, SubnetId=state.get(self.role))
        except ProviderError as e:
            self.ignore_missing(e)


class PublicSubnet(Subnet):
    name = "public-subnet"
    role = "public-subnet"
    suffix = "public-subnet"
    subnet_type = "Public"
    map_public_ip = True

    @property
    def cidr(self) -> str:
        return self.settings.public_subnet_cidr


class PrivateSubnet(Subnet):
    name = "private-subnet"
    role = "private-subnet"
    suffix = "private-subnet"
    subnet_type = "Private"

    @property
    def cidr(self) -> str:
        return self.settings.private_subnet_cidr


class RouteTable(TaggedEc2Step):
    """A route table associated with one subnet."""

    describe_method = "describe_route_tables"
    collection = "RouteTables"
    id_field = "RouteTableId"
    ids_param = "RouteTableIds"
    subnet_role = ""
    route_type = ""

    def scope_filters(self, state) -> List[Dict]:
        if state.has("vpc"):
            return [{"Name": "vpc-id", "Values": [state.get("vpc")]}]
        return []

    def has_routes(self, table: Dict, state) -> bool:
        return True

    def add_routes(self, state, route_table_id: str):
        pass

    def associated(self, table: Dict, state) -> bool:
        subnet_id = self.recorded(state, self.subnet_role)
        return any(a.get("SubnetId") == subnet_id for a in table.get("Associations", []))

    def is_complete(self, route_table_id: str, state) -> bool:
        table = self.lookup(route_table_id)
        return self.has_routes(table, state) and self.associated(table, state)

    def create(self, state) -> Dict[str, str]:
        ec2 = self.provider.ec2
        route_table_id = self._found
        table: Dict = {}
        if route_table_id is None:
            response = call(
                "ec2:CreateRouteTable",
                ec2.create_route_table,
                VpcId=state.get("vpc"),
                TagSpecifications=self.provider.tag_specifications("route-table", self.suffix, Type=self.route_type),
            )
            route_table_id = extract(response, "RouteTable", "RouteTableId", operation="ec2:CreateRouteTable")
        else:
            table = self.lookup(route_table_id)

        # Only the missing pieces; repeating either call is rejected
        if not self.has_routes(table, state):
            self.add_routes(state, route_table_id)
        if not self.associated(table, state):
            call(
                "ec2:AssociateRouteTable",
                ec2.associate_route_table,
                SubnetId=state.get(self.subnet_role),
                RouteTableId=route_table_id,
            )
        return {self.role: route_table_id}

    def delete(self, state):
        ec2 = self.provider.ec2
        route_table_id = state.get(self.role)
        try:
            response = call(
                "ec2:DescribeRouteTables", ec2.describe_route_tables, RouteTableIds=[route_table_id]
            )
            for table in response.get("RouteTables", []):
                for association in table.get("Associations", []):
                    if association.get("Main"):
                        continue
                    call(
                        "ec2:DisassociateRouteTable",
                        ec2.disassociate_route_table,
                        AssociationId=association["RouteTableAssociationId"],
                    )
            call("ec2:DeleteRouteTable", ec2.delete_route_table, RouteTableId=route_table_id)
        except ProviderError as e:
            self.ignore_missing(e)


class PublicRouteTable(RouteTable):
    name = "public-route-table"
    role = "public-route-table"
    suffix = "public-rt"
    depends_on = frozenset({"vpc", "internet-gateway", "public-subnet"})
    subnet_role = "public-subnet"
    route_type = "Public"

    def has_routes(self, table: Dict, state) -> bool:
        igw_id = self.recorded(state, "internet-gateway")
        return any(
            route.get("DestinationCidrBlock") == DEFAULT_ROUTE and route.get("GatewayId") == igw_id
            for route in table.get("Routes", [])
        )

    def add_routes(self, state, route_table_id: str):
        call(
            "ec2:CreateRoute",
            self.provider.ec2.create_route,
            RouteTableId=route_table_id,
            DestinationCidrBlock=DEFAULT_ROUTE,
            GatewayId=state.get("internet-gateway"),
        )


class PrivateRouteTable(RouteTable):
    name = "private-route-table"
    role = "private-route-table"
    suffix = "private-rt"
    depends_on = frozenset({"vpc", "private-subnet"})
    subnet_role = "private-subnet"
    route_type = "Private"


class SecurityGroup(TaggedEc2Step):
    """A security group admitting SSH from a single source."""

    describe_method = "describe_security_groups"
    collection = "SecurityGroups"
    id_field = "GroupId"
    ids_param = "GroupIds"
    description = ""

    def scope_filters(self, state) -> List[Dict]:
        filters = [{"Name": "group-name", "Values": [self.settings.resource_name(self.suffix)]}]
        if state.has("vpc"):
            filters.append({"Name": "vpc-id", "Values": [state.get("vpc")]})
        return filters

    def ssh_permission(self, state) -> Dict:
        raise NotImplementedError

    def is_complete(self, group_id: str, state) -> bool:
        return any(
            permission.get("FromPort") == SSH_PORT and permission.get("ToPort") == SSH_PORT
            for permission in self.lookup(group_id).get("IpPermissions", [])
        )

    def create(self, state) -> Dict[str, str]:
        ec2 = self.provider.ec2
        group_id = self._found
        if group_id is None:
            response = call(
                "ec2:CreateSecurityGroup",
                ec2.create_security_group,
                GroupName=self.settings.resource_name(self.suffix),
                Description=self.description,
                VpcId=state.get("vpc"),
                TagSpecifications=self.provider.tag_specifications("security-group", self.suffix),
            )
            group_id = extract(response, "GroupId", operation="ec2:CreateSecurityGroup")
        permission = {"IpProtocol": "tcp", "FromPort": SSH_PORT, "ToPort": SSH_PORT}
        permission.update(self.ssh_permission(state))
        call(
            "ec2:AuthorizeSecurityGroupIngress",
            ec2.authorize_security_group_ingress,
            GroupId=group_id,
            IpPermissions=[permission],
        )
        return {self.role: group_id}

    def delete(self, state):
        try:
            call(
                "ec2:DeleteSecurityGroup",
                self.provider.ec2.delete_security_group,
                GroupId=state.get(self.role),
            )
        except ProviderError as e:
            self.ignore_missing(e)


class BastionSecurityGroup(SecurityGroup):
    name = "bastion-security-group"
    role = "bastion-security-group"
    suffix = "bastion-sg"
    depends_on = frozenset({"vpc"})
    description = "Security group for bastion host"

    def ssh_permission(self, state) -> Dict:
        return {"IpRanges": [{"CidrIp": self.settings.ssh_ingress_cidr, "Description": "SSH"}]}


class PrivateSecurityGroup(SecurityGroup):
    name = "private-security-group"
    role = "private-security-group"
    suffix = "private-sg"
    depends_on = frozenset({"vpc", "bastion-security-group"})
    description = "Security group for private instances"

    def ssh_permission(self, state) -> Dict:
        return {"UserIdGroupPairs": [{"GroupId": state.get("bastion-security-group")}]}
