#!/usr/bin/env python3
"""
CDK Stack for Cross-Account VPC Peering

Deploys one orchestrator Lambda in the requester account and one custom resource
per peer VPC. Each custom resource creates the peering connection, accepts it in
the peer account through that account's acceptor role, and adds the routes on
both sides. The connection ID is published to SSM Parameter Store.

Usage:
    Deploy VpcPeeringAcceptorRoleStack in every peer account first, then:

        VpcPeeringStack(
            app, "VpcPeeringStack",
            vpc_id="vpc-0a1b2c3d",
            vpc_cidr="10.0.0.0/16",
            route_table_ids=["rtb-0a1b2c3d"],
            peers=[{
                "env_name": "staging",
                "account_id": "222222222222",
                "vpc_id": "vpc-0d4e5f6a",
                "vpc_cidr": "10.1.0.0/16",
                "role_arn": "arn:aws:iam::222222222222:role/staging-VpcPeeringAcceptorRole",
            }],
            env=Environment(account="111111111111", region="us-east-1")
        )
"""

import os
from typing import Any, Dict, List, Optional

from aws_cdk import (
    Stack,
    CfnOutput,
    CustomResource,
    Duration,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_logs as logs,
    aws_ssm as ssm,
)
from constructs import Construct

ASSET_PATH = os.path.dirname(os.path.abspath(__file__))

# Everything next to this file except the runtime package stays out of the Lambda asset
ASSET_EXCLUDES = [
    "*",
    "!vpc_peering",
    "!vpc_peering/**",
    "**/__pycache__",
    "**/*.pyc",
]


class VpcPeeringStack(Stack):
    """
    Stack that peers one local VPC with VPCs in other accounts.

    Uses a custom resource backed by the vpc_peering Lambda. The Lambda answers
    CloudFormation itself, so its ARN is the service token (no Provider framework).
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        vpc_id: str,
        vpc_cidr: str,
        peers: List[Dict[str, Any]],
        route_table_ids: Optional[List[str]] = None,
        env_name: str = "dev",
        max_acceptance_wait_seconds: int = 300,
        **kwargs
    ) -> None:
        """
        Args:
            scope: Parent construct
            construct_id: Unique identifier for this stack
            vpc_id: Local (requester) VPC ID
            vpc_cidr: CIDR block of the local VPC
            peers: Peer definitions with env_name, account_id, vpc_id, vpc_cidr, role_arn
                and optionally region, route_table_ids, external_id
            route_table_ids: Local route tables that get routes to every peer
                (all tables of the VPC when omitted)
            env_name: Environment name of the local side, used for tags
            max_acceptance_wait_seconds: How long to wait for the peer to see the connection
        """
        super().__init__(scope, construct_id, **kwargs)

        if not peers:
            raise ValueError("At least one peer is required")

        self.vpc_id = vpc_id
        self.vpc_cidr = vpc_cidr
        self.peers = peers
        # Subnets often share a route table
        self.route_table_ids = list(dict.fromkeys(route_table_ids or []))
        self.env_name = env_name

        self.peering_function = self.create_peering_function(max_acceptance_wait_seconds)

        self.connections = {}
        for peer in peers:
            self.connections[peer["env_name"]] = self.create_peering_connection(peer)

        self.create_outputs()

    def create_peering_function(self, max_acceptance_wait_seconds: int) -> _lambda.Function:
        """Create the orchestrator Lambda and grant it EC2 and cross-account permissions"""

        peering_function = _lambda.Function(
            self,
            "VpcPeeringFunction",
            runtime=_lambda.Runtime.PYTHON_3_11,
            handler="vpc_peering.handler.lambda_handler",
            code=_lambda.Code.from_asset(ASSET_PATH, exclude=ASSET_EXCLUDES),
            timeout=Duration.minutes(15),
            log_retention=logs.RetentionDays.ONE_WEEK,
            description="Creates, accepts and routes cross-account VPC peering connections",
            environment={
                "MAX_ACCEPTANCE_WAIT_SECONDS": str(max_acceptance_wait_seconds),
                "MANAGED_BY_TAG": "CDK",
                "LOG_LEVEL": "INFO",
            },
        )

        peering_function.add_to_role_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=[
                    "ec2:CreateVpcPeeringConnection",
                    "ec2:DeleteVpcPeeringConnection",
                    "ec2:DescribeVpcPeeringConnections",
                    "ec2:CreateTags",
                    "ec2:CreateRoute",
                    "ec2:DeleteRoute",
                    "ec2:DescribeRouteTables",
                    "ec2:DescribeVpcs",
                ],
                resources=["*"],  # Describe calls do not support resource-level permissions
            )
        )

        peering_function.add_to_role_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=["sts:AssumeRole"],
                resources=[peer["role_arn"] for peer in self.peers],
            )
        )

        return peering_function

    def create_peering_connection(self, peer: Dict[str, Any]) -> CustomResource:
        """Create the peering custom resource for one peer and publish its connection ID"""
        peer_env = peer["env_name"]

        properties = {
            "VpcId": self.vpc_id,
            "AccountId": self.account,
            "Region": self.region,
            "VpcCidr": self.vpc_cidr,
            "RouteTableIds": self.route_table_ids,
            "PeerVpcId": peer["vpc_id"],
            "PeerOwnerId": peer["account_id"],
            "PeerRegion": peer.get("region") or self.region,
            "PeerVpcCidr": peer["vpc_cidr"],
            "PeerRoleArn": peer["role_arn"],
            "PeerRouteTableIds": list(dict.fromkeys(peer.get("route_table_ids") or [])),
            "PeeringName": f"{self.env_name}-to-{peer_env}",
            "EnvName": peer_env,
        }
        if peer.get("external_id"):
            properties["ExternalId"] = peer["external_id"]

        connection = CustomResource(
            self,
            f"VpcPeering-{peer_env}",
            service_token=self.peering_function.function_arn,
            resource_type="Custom::VpcPeering",
            properties=properties,
        )

        ssm.StringParameter(
            self,
            f"VpcPeeringConnectionIdParameter-{peer_env}",
            parameter_name=f"/vpc-peering/{peer_env}/connection-id",
            string_value=connection.get_att_string("ConnectionId"),
            description=f"VPC peering connection ID for {peer_env}",
        )

        return connection

    def create_outputs(self) -> None:
        """Create CloudFormation outputs"""
        for peer_env, connection in self.connections.items():
            CfnOutput(
                self,
                f"VpcPeeringConnectionId-{peer_env}",
                value=connection.get_att_string("ConnectionId"),
                description=f"VPC peering connection ID for {peer_env}",
            )

            CfnOutput(
                self,
                f"RoutesReconciled-{peer_env}",
                value=connection.get_att_string("RoutesReconciled"),
                description=f"Number of route tables routed for {peer_env}",
            )

        CfnOutput(
            self,
            "PeeringFunctionName",
            value=self.peering_function.function_name,
            description="Orchestrator Lambda function (see its log group for details)",
        )
