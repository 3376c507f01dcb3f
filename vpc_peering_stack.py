#!/usr/bin/env python3
"""
CDK Stack for Cross-Account / Cross-Region VPC Peering

Deploy in the local (requester) account and region. The stack creates:
1. The VPC peering connection, requested from the local VPC
2. An accepter on the remote side that auto-accepts the connection
3. A route in each VPC's route table sending the peer CIDR over the peering
4. An ingress rule in each side's security group allowing all peer traffic

Remote-side resources and main route table lookups are custom resources backed
by one Lambda function. It acts in the remote region and, when a role ARN is
given, assumes that role in the remote account (see PeeringAccepterRoleStack).

Usage:
    VpcPeeringStack(
        app, "VpcPeeringStack",
        descriptor=descriptor,  # vpc_peering_intents.PeeringDescriptor
        env=Environment(account="111111111111", region="us-east-1")  # Local account
    )
"""

import os

from aws_cdk import (
    Stack,
    CfnTag,
    CustomResource,
    Duration,
    aws_ec2 as ec2,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_logs as logs,
    custom_resources as cr,
)
from constructs import Construct

from vpc_peering_intents import (
    LOCAL,
    AccepterRecord,
    IngressRule,
    NetworkRef,
    PeeringDescriptor,
    PeeringLink,
    ProviderContext,
    RouteIntent,
)

HANDLER_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "peering_handler")


def context_properties(context: ProviderContext) -> dict:
    """Custom resource properties telling the handler where to act."""
    properties = {"Region": context.region}
    if context.role_arn:
        properties["RoleArn"] = context.role_arn
    if context.external_id:
        properties["ExternalId"] = context.external_id
    return properties


class VpcPeeringStack(Stack):
    """
    Stack that peers a local VPC with a remote VPC, possibly in another
    account and region.

    Routes and the accepter reference the peering connection's id, so
    CloudFormation orders them after the connection on its own.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        descriptor: PeeringDescriptor,
        **kwargs
    ) -> None:
        """
        Args:
            scope: Parent construct
            construct_id: Unique identifier for this stack
            descriptor: Desired state of the peering (both sides and tags)
        """
        super().__init__(scope, construct_id, **kwargs)

        self.descriptor = descriptor
        self.main_route_tables = {}

        # Lambda-backed provider for everything on the remote side
        self.provider = self.create_provider()

        self.peering_connection = self.create_peering_connection(descriptor.peering_link())

        self.intents = descriptor.render(
            self.peering_connection.ref,
            discover_local=lambda: self.discover_main_route_table("Local", descriptor.local),
            discover_remote=lambda: self.discover_main_route_table("Remote", descriptor.remote),
        )

        self.accepter = self.create_accepter(self.intents.accepter)

        self.local_route = self.create_local_route(self.intents.local_route)
        self.remote_route = self.create_remote_route(self.intents.remote_route)

        self.local_ingress = self.create_local_ingress(self.intents.local_ingress)
        self.remote_ingress = self.create_remote_ingress(self.intents.remote_ingress)

    def create_provider(self) -> cr.Provider:
        """Create the Lambda function and provider serving all custom resources"""

        handler = _lambda.Function(
            self,
            "PeeringHandlerFunction",
            runtime=_lambda.Runtime.PYTHON_3_11,
            handler="index.on_event",
            code=_lambda.Code.from_asset(HANDLER_DIR, exclude=["__pycache__", "*.pyc"]),
            timeout=Duration.minutes(5),
            log_retention=logs.RetentionDays.ONE_WEEK,
            description="Accepts VPC peering and manages peer routes and ingress rules",
        )

        handler.add_to_role_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=[
                    "ec2:DescribeRouteTables",
                    "ec2:DescribeVpcPeeringConnections",
                    "ec2:AcceptVpcPeeringConnection",
                    "ec2:CreateTags",
                    "ec2:DeleteTags",
                    "ec2:CreateRoute",
                    "ec2:ReplaceRoute",
                    "ec2:DeleteRoute",
                    "ec2:AuthorizeSecurityGroupIngress",
                    "ec2:RevokeSecurityGroupIngress",
                    "ec2:UpdateSecurityGroupRuleDescriptionsIngress",
                ],
                # Route table and group ids may only be known at deploy time
                resources=["*"],
            )
        )

        role_arns = sorted({
            side.context.role_arn
            for side in (self.descriptor.local, self.descriptor.remote)
            if side.context.role_arn
        })
        if role_arns:
            handler.add_to_role_policy(
                iam.PolicyStatement(
                    effect=iam.Effect.ALLOW,
                    actions=["sts:AssumeRole"],
                    resources=role_arns,
                )
            )

        return cr.Provider(
            self,
            "PeeringProvider",
            on_event_handler=handler,
        )

    def peering_resource(self, construct_id: str, resource_type: str, kind: str,
                         context: ProviderContext, properties: dict) -> CustomResource:
        return CustomResource(
            self,
            construct_id,
            service_token=self.provider.service_token,
            resource_type=resource_type,
            properties={
                "Kind": kind,
                **context_properties(context),
                **properties,
            },
        )

    def discover_main_route_table(self, prefix: str, network: NetworkRef) -> str:
        """Look up the VPC's main route table at deploy time"""
        lookup = self.peering_resource(
            f"{prefix}MainRouteTable",
            "Custom::MainRouteTable",
            "MainRouteTable",
            network.context,
            {"VpcId": network.vpc_id},
        )
        self.main_route_tables[prefix] = lookup
        return lookup.get_att_string("RouteTableId")

    def create_peering_connection(self, link: PeeringLink) -> ec2.CfnVPCPeeringConnection:
        return ec2.CfnVPCPeeringConnection(
            self,
            "PeeringConnection",
            vpc_id=link.requester_vpc_id,
            peer_vpc_id=link.accepter_vpc_id,
            peer_region=link.peer_region,
            peer_owner_id=link.peer_owner_id,
            tags=[CfnTag(key=key, value=value) for key, value in link.tags],
        )

    def create_accepter(self, accepter: AccepterRecord) -> CustomResource:
        return self.peering_resource(
            "PeeringAccepter",
            "Custom::VpcPeeringAccepter",
            "PeeringAccepter",
            self.descriptor.remote.context,
            {
                "VpcPeeringConnectionId": accepter.link_id,
                "AutoAccept": "true" if accepter.auto_accept else "false",
                "Tags": [{"Key": key, "Value": value} for key, value in accepter.tags],
            },
        )

    def create_local_route(self, route: RouteIntent) -> ec2.CfnRoute:
        return ec2.CfnRoute(
            self,
            "LocalRoute",
            route_table_id=route.route_table_id,
            destination_cidr_block=route.destination_cidr_block,
            vpc_peering_connection_id=route.link_id,
        )

    def create_remote_route(self, route: RouteIntent) -> CustomResource:
        return self.peering_resource(
            "RemoteRoute",
            "Custom::PeeringRoute",
            "Route",
            self.descriptor.remote.context,
            {
                "RouteTableId": route.route_table_id,
                "DestinationCidrBlock": route.destination_cidr_block,
                "VpcPeeringConnectionId": route.link_id,
            },
        )

    def ingress_description(self, rule: IngressRule) -> str:
        peer = self.descriptor.remote if rule.side == LOCAL else self.descriptor.local
        return f"All traffic from peer VPC {peer.name}"

    def create_local_ingress(self, rule: IngressRule) -> ec2.CfnSecurityGroupIngress:
        return ec2.CfnSecurityGroupIngress(
            self,
            "LocalIngressRule",
            group_id=rule.security_group_id,
            ip_protocol=rule.protocol,
            from_port=rule.from_port,
            to_port=rule.to_port,
            cidr_ip=rule.source_cidr,
            description=self.ingress_description(rule),
        )

    def create_remote_ingress(self, rule: IngressRule) -> CustomResource:
        return self.peering_resource(
            "RemoteIngressRule",
            "Custom::PeeringIngressRule",
            "IngressRule",
            self.descriptor.remote.context,
            {
                "GroupId": rule.security_group_id,
                "IpProtocol": rule.protocol,
                "FromPort": str(rule.from_port),
                "ToPort": str(rule.to_port),
                "CidrIp": rule.source_cidr,
                "Description": self.ingress_description(rule),
            },
        )
