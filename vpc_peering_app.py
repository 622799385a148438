#!/usr/bin/env python3
"""
CDK App for Cross-Account VPC Peering

Scenario:
- Requester Account (111111111111): Contains the local VPC and the peering Lambda
- Peer Accounts: Each contains a peer VPC and an acceptor role

Steps:
1. Deploy VpcPeeringAcceptorRoleStack in every peer account
2. Deploy VpcPeeringStack in the requester account

Usage:
    # Deploy with peering.json from the current directory
    cdk deploy --all

    # Deploy with a different configuration file
    cdk deploy --all --context peeringConfig=config/prod-peering.json
"""

import json

from aws_cdk import App, Environment
from vpc_peering_acceptor_role_stack import VpcPeeringAcceptorRoleStack
from vpc_peering_stack import VpcPeeringStack

DEFAULT_CONFIG_PATH = "peering.json"
REQUIRED_REQUESTER_KEYS = ("account_id", "vpc_id", "vpc_cidr")
REQUIRED_PEER_KEYS = ("env_name", "account_id", "vpc_id", "vpc_cidr")


def acceptor_role_arn(account_id: str, env_name: str) -> str:
    """ARN of the role VpcPeeringAcceptorRoleStack creates"""
    return f"arn:aws:iam::{account_id}:role/{env_name}-VpcPeeringAcceptorRole"


def load_peering_config(path: str) -> dict:
    """Read the peering configuration and fill in defaults"""
    with open(path) as f:
        config = json.load(f)

    requester = config.get("requester") or {}
    missing = [key for key in REQUIRED_REQUESTER_KEYS if not requester.get(key)]
    if missing:
        raise ValueError(f"{path}: requester is missing {', '.join(missing)}")
    requester.setdefault("region", "us-east-1")
    requester.setdefault("env_name", "dev")

    peers = config.get("peers") or []
    if not peers:
        raise ValueError(f"{path}: at least one peer is required")
    for peer in peers:
        missing = [key for key in REQUIRED_PEER_KEYS if not peer.get(key)]
        if missing:
            raise ValueError(f"{path}: peer {peer.get('env_name', '?')} is missing {', '.join(missing)}")
        peer.setdefault("region", requester["region"])
        peer.setdefault("role_arn", acceptor_role_arn(peer["account_id"], peer["env_name"]))

    return {"requester": requester, "peers": peers}


def main():
    """Main application entry point"""
    app = App()

    config_path = app.node.try_get_context("peeringConfig") or DEFAULT_CONFIG_PATH
    config = load_peering_config(config_path)
    requester = config["requester"]

    role_stacks = []
    for peer in config["peers"]:
        role_stacks.append(
            VpcPeeringAcceptorRoleStack(
                app,
                f"VpcPeeringAcceptorRole-{peer['env_name']}",
                requester_account_id=requester["account_id"],
                env_name=peer["env_name"],
                external_id=peer.get("external_id"),
                env=Environment(
                    account=peer["account_id"],  # Deploy in the peer account
                    region=peer["region"]
                )
            )
        )

    peering_stack = VpcPeeringStack(
        app,
        f"VpcPeering-{requester['env_name']}",
        vpc_id=requester["vpc_id"],
        vpc_cidr=requester["vpc_cidr"],
        route_table_ids=requester.get("route_table_ids"),
        peers=config["peers"],
        env_name=requester["env_name"],
        env=Environment(
            account=requester["account_id"],  # Deploy in the requester account
            region=requester["region"]
        )
    )

    # The acceptor roles must exist before the peering Lambda assumes them
    for role_stack in role_stacks:
        peering_stack.add_dependency(role_stack)

    app.synth()


if __name__ == "__main__":
    main()
