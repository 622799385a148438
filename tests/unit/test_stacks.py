"""Synthesis tests for the CDK stacks and app configuration."""

import json
import shutil

import pytest

from vpc_peering_app import acceptor_role_arn, load_peering_config

PEER = {
    "env_name": "staging",
    "account_id": "222222222222",
    "vpc_id": "vpc-0b0000000000000b1",
    "vpc_cidr": "10.1.0.0/16",
    "role_arn": "arn:aws:iam::222222222222:role/staging-VpcPeeringAcceptorRole",
    "route_table_ids": ["rtb-0b0000000000000b1", "rtb-0b0000000000000b1"],
}


class TestPeeringConfig:
    """Test loading of peering.json."""

    def write(self, tmp_path, config):
        path = tmp_path / "peering.json"
        path.write_text(json.dumps(config))
        return str(path)

    def test_defaults_filled_in(self, tmp_path):
        """Peer region and role ARN default from the requester and naming convention."""
        path = self.write(tmp_path, {
            "requester": {"account_id": "111111111111", "vpc_id": "vpc-0a", "vpc_cidr": "10.0.0.0/16",
                          "region": "eu-west-1"},
            "peers": [{"env_name": "prod", "account_id": "333333333333", "vpc_id": "vpc-0c",
                       "vpc_cidr": "10.2.0.0/16"}],
        })

        config = load_peering_config(path)

        peer = config["peers"][0]
        assert peer["region"] == "eu-west-1"
        assert peer["role_arn"] == acceptor_role_arn("333333333333", "prod")
        assert config["requester"]["env_name"] == "dev"

    def test_missing_peer_field(self, tmp_path):
        """A peer without a CIDR is rejected."""
        path = self.write(tmp_path, {
            "requester": {"account_id": "111111111111", "vpc_id": "vpc-0a", "vpc_cidr": "10.0.0.0/16"},
            "peers": [{"env_name": "prod", "account_id": "333333333333", "vpc_id": "vpc-0c"}],
        })

        with pytest.raises(ValueError, match="vpc_cidr"):
            load_peering_config(path)

    def test_no_peers(self, tmp_path):
        """At least one peer is required."""
        path = self.write(tmp_path, {
            "requester": {"account_id": "111111111111", "vpc_id": "vpc-0a", "vpc_cidr": "10.0.0.0/16"},
            "peers": [],
        })

        with pytest.raises(ValueError, match="peer"):
            load_peering_config(path)


@pytest.mark.skipif(shutil.which("node") is None, reason="CDK synthesis needs a Node.js runtime")
class TestStacks:
    """Test the synthesized CloudFormation templates."""

    @pytest.fixture
    def assertions(self):
        return pytest.importorskip("aws_cdk.assertions")

    def test_peering_stack(self, assertions):
        """One custom resource and SSM parameter per peer, least-privilege assume role."""
        from aws_cdk import App, Environment
        from vpc_peering_stack import VpcPeeringStack

        app = App()
        stack = VpcPeeringStack(
            app, "VpcPeering-shared",
            vpc_id="vpc-0a0000000000000a1",
            vpc_cidr="10.0.0.0/16",
            route_table_ids=["rtb-0a0000000000000a1"],
            peers=[PEER],
            env_name="shared",
            env=Environment(account="111111111111", region="us-east-1"),
        )
        template = assertions.Template.from_stack(stack)

        template.resource_count_is("Custom::VpcPeering", 1)
        template.has_resource_properties("Custom::VpcPeering", {
            "VpcId": "vpc-0a0000000000000a1",
            "PeerOwnerId": "222222222222",
            "PeerRoleArn": PEER["role_arn"],
            "PeerRouteTableIds": ["rtb-0b0000000000000b1"],
        })
        template.has_resource_properties("AWS::SSM::Parameter", {
            "Name": "/vpc-peering/staging/connection-id",
        })
        template.has_resource_properties("AWS::Lambda::Function", {
            "Handler": "vpc_peering.handler.lambda_handler",
            "Runtime": "python3.11",
            "Timeout": 900,
        })
        template.has_resource_properties("AWS::IAM::Policy", {
            "PolicyDocument": {
                "Statement": assertions.Match.array_with([
                    assertions.Match.object_like({"Action": "sts:AssumeRole", "Resource": PEER["role_arn"]}),
                ]),
            },
        })

    def test_acceptor_role_stack(self, assertions):
        """The acceptor role is named per environment and requires the external ID."""
        from aws_cdk import App, Environment
        from vpc_peering_acceptor_role_stack import VpcPeeringAcceptorRoleStack

        app = App()
        stack = VpcPeeringAcceptorRoleStack(
            app, "VpcPeeringAcceptorRole-staging",
            requester_account_id="111111111111",
            env_name="staging",
            external_id="vpc-peering-staging",
            env=Environment(account="222222222222", region="us-east-1"),
        )
        template = assertions.Template.from_stack(stack)

        template.has_resource_properties("AWS::IAM::Role", {
            "RoleName": "staging-VpcPeeringAcceptorRole",
            "MaxSessionDuration": 3600,
            "AssumeRolePolicyDocument": {
                "Statement": [assertions.Match.object_like({
                    "Condition": {"StringEquals": {"sts:ExternalId": "vpc-peering-staging"}},
                })],
            },
        })
