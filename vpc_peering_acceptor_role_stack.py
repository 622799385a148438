#!/usr/bin/env python3
"""
CDK Stack to create the VPC peering acceptor role in a peer account

This stack should be deployed in every account that owns a peer VPC.
It creates an IAM role that the peering Lambda in the requester account assumes
to accept the peering connection and add the return routes.

Usage:
    Deploy this stack in the peer account first,
    then use the role ARN as role_arn of the peer in VpcPeeringStack
"""

from typing import Optional

from aws_cdk import (
    Stack,
    CfnOutput,
    Duration,
    aws_iam as iam,
)
from constructs import Construct


class VpcPeeringAcceptorRoleStack(Stack):
    """
    Creates an IAM role in the peer account that can be assumed by
    the peering Lambda in the requester account.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        requester_account_id: str,
        env_name: str,
        external_id: Optional[str] = None,
        **kwargs
    ) -> None:
        """
        Args:
            scope: Parent construct
            construct_id: Unique identifier for this stack
            requester_account_id: AWS Account ID where the peering Lambda runs
            env_name: Environment name, used in the role name
            external_id: Optional external ID the requester must present
        """
        super().__init__(scope, construct_id, **kwargs)

        self.role_name = f"{env_name}-VpcPeeringAcceptorRole"

        self.acceptor_role = iam.Role(
            self,
            "VpcPeeringAcceptorRole",
            assumed_by=iam.AccountPrincipal(requester_account_id),
            external_ids=[external_id] if external_id else None,
            description=f"Accepts VPC peering connections from account {requester_account_id}",
            role_name=self.role_name,
            max_session_duration=Duration.hours(1),
        )

        self.acceptor_role.add_to_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=[
                    "ec2:AcceptVpcPeeringConnection",
                    "ec2:DescribeVpcPeeringConnections",
                    "ec2:CreateRoute",
                    "ec2:DeleteRoute",
                    "ec2:DescribeRouteTables",
                    "ec2:DescribeVpcs",
                    "ec2:DescribeSubnets",
                ],
                resources=["*"],  # Describe calls do not support resource-level permissions
            )
        )

        CfnOutput(
            self,
            "AcceptorRoleArn",
            value=self.acceptor_role.role_arn,
            description="ARN of the acceptor role to use as the peer role_arn in VpcPeeringStack",
        )

        CfnOutput(
            self,
            "RequesterAccountId",
            value=requester_account_id,
            description="Account allowed to assume the acceptor role",
        )
