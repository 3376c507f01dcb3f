#!/usr/bin/env python3
"""
CDK Stack to create the cross-account IAM role in the remote (accepter) account

This stack should be deployed in the account that owns the remote VPC.
It creates an IAM role that the peering Lambda function in the local account
assumes to accept the peering connection and manage the remote route and
security group rule.

Usage:
    Deploy this stack in the remote account first, then pass the role ARN
    to the local stack via the remoteRoleArn context value.
"""

from aws_cdk import (
    Stack,
    CfnOutput,
    aws_iam as iam,
)
from constructs import Construct

DEFAULT_ROLE_NAME = "VpcPeeringAccepterRole"


class PeeringAccepterRoleStack(Stack):
    """
    Creates an IAM role in the remote account that can be assumed by
    the requester account to finish its half of the peering.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        requester_account_id: str,
        external_id: str = None,
        role_name: str = DEFAULT_ROLE_NAME,
        **kwargs
    ) -> None:
        """
        Args:
            scope: Parent construct
            construct_id: Unique identifier for this stack
            requester_account_id: AWS Account ID where VpcPeeringStack is deployed
            external_id: Optional external ID required when assuming the role
            role_name: Physical name of the role
        """
        super().__init__(scope, construct_id, **kwargs)

        self.accepter_role = iam.Role(
            self,
            "VpcPeeringAccepterRole",
            assumed_by=iam.AccountPrincipal(requester_account_id),
            external_ids=[external_id] if external_id else None,
            description="Role for accepting VPC peering and managing peer routes and ingress rules",
            role_name=role_name,
        )

        self.accepter_role.add_to_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=[
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
                resources=["*"],
            )
        )

        # Describe calls don't support resource-level permissions
        self.accepter_role.add_to_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=[
                    "ec2:DescribeRouteTables",
                    "ec2:DescribeVpcPeeringConnections",
                ],
                resources=["*"],
            )
        )

        CfnOutput(
            self,
            "AccepterRoleArn",
            value=self.accepter_role.role_arn,
            description="ARN of the role to pass as remoteRoleArn to VpcPeeringStack",
        )
