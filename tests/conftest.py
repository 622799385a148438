"""
Pytest Configuration and Shared Fixtures.

This module provides common fixtures for all tests:

- network: in-memory EC2 shared by the requester and peer accounts
- clients: ClientFactory stand-in handing out per-account views of the network
- broker: CredentialBroker stand-in that never calls STS
- clock: fake monotonic clock, so backoff sleeps cost nothing
- properties: ResourceProperties for a valid cross-account peering
"""

from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError

from vpc_peering.config import OrchestratorConfig
from vpc_peering.credentials import DelegatedCredential
from vpc_peering.errors import TrustDeniedError
from vpc_peering.retry import Deadline

LOCAL_ACCOUNT = "111111111111"
PEER_ACCOUNT = "222222222222"
REGION = "us-east-1"
LOCAL_VPC = "vpc-0a0000000000000a1"
PEER_VPC = "vpc-0b0000000000000b1"
LOCAL_CIDR = "10.0.0.0/16"
PEER_CIDR = "10.1.0.0/16"
LOCAL_RTB = "rtb-0a0000000000000a1"
PEER_RTB = "rtb-0b0000000000000b1"
PEER_ROLE_ARN = f"arn:aws:iam::{PEER_ACCOUNT}:role/staging-VpcPeeringAcceptorRole"


def client_error(code, message="", operation="Operation"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakePaginator:
    def __init__(self, method):
        self.method = method

    def paginate(self, **kwargs):
        yield self.method(**kwargs)


class FakeNetwork:
    """EC2 state shared by every account; clients are per-account views."""

    def __init__(self):
        self.vpcs = {}
        self.route_tables = {}
        self.connections = {}
        self.calls = []
        self.errors = {}
        # Describes of a connection from a non-owner account that come back NotFound
        self.hidden_from_peer = 0
        self.accept_status = "active"
        # Seconds each call of a method takes on the attached clock
        self.latency = {}
        self.clock = None
        self._counter = 0

    def add_vpc(self, vpc_id, cidr, account_id, route_table_ids=()):
        self.vpcs[vpc_id] = {"cidr": cidr, "account_id": account_id}
        for route_table_id in route_table_ids:
            self.route_tables[route_table_id] = {
                "vpc_id": vpc_id,
                "routes": [{"DestinationCidrBlock": cidr, "GatewayId": "local", "State": "active"}],
            }

    def fail_next(self, method, code, message="", times=1):
        """Make the next ``times`` calls of ``method`` raise a ClientError."""
        self.errors.setdefault(method, []).extend([client_error(code, message, method)] * times)

    def slow_down(self, method, seconds, clock):
        """Make every call of ``method`` advance ``clock`` by ``seconds``."""
        self.latency[method] = seconds
        self.clock = clock

    def client(self, account_id):
        return FakeEc2(self, account_id)

    def next_connection_id(self):
        self._counter += 1
        return f"pcx-{self._counter:017x}"

    def count(self, method, account_id=None):
        return len([
            call for call in self.calls
            if call[1] == method and (account_id is None or call[0] == account_id)
        ])

    def routes(self, route_table_id):
        return self.route_tables[route_table_id]["routes"]

    @property
    def mutations(self):
        mutating = {
            "create_vpc_peering_connection",
            "accept_vpc_peering_connection",
            "delete_vpc_peering_connection",
            "create_route",
            "delete_route",
        }
        return [call for call in self.calls if call[1] in mutating]


class FakeEc2:
    """Just enough of the EC2 client for the orchestrator."""

    def __init__(self, network, account_id):
        self.network = network
        self.account_id = account_id

    def _record(self, method, **kwargs):
        self.network.calls.append((self.account_id, method, kwargs))
        if method in self.network.latency:
            self.network.clock.now += self.network.latency[method]
        pending = self.network.errors.get(method)
        if pending:
            raise pending.pop(0)

    def get_paginator(self, name):
        return FakePaginator(getattr(self, name))

    def _connection_view(self, connection):
        return {
            "VpcPeeringConnectionId": connection["id"],
            "Status": {"Code": connection["status"]},
            "RequesterVpcInfo": {
                "VpcId": connection["vpc_id"],
                "OwnerId": connection["owner_id"],
                "CidrBlock": self.network.vpcs.get(connection["vpc_id"], {}).get("cidr"),
            },
            "AccepterVpcInfo": {
                "VpcId": connection["peer_vpc_id"],
                "OwnerId": connection["peer_owner_id"],
            },
            "Tags": [dict(tag) for tag in connection["tags"]],
        }

    def describe_vpcs(self, VpcIds):
        self._record("describe_vpcs", VpcIds=VpcIds)
        vpcs = []
        for vpc_id in VpcIds:
            if vpc_id not in self.network.vpcs:
                raise client_error("InvalidVpcID.NotFound", f"The vpc ID '{vpc_id}' does not exist")
            cidr = self.network.vpcs[vpc_id]["cidr"]
            vpcs.append({
                "VpcId": vpc_id,
                "CidrBlock": cidr,
                "CidrBlockAssociationSet": [{"CidrBlock": cidr, "CidrBlockState": {"State": "associated"}}],
            })
        return {"Vpcs": vpcs}

    def create_vpc_peering_connection(self, VpcId, PeerVpcId, PeerOwnerId, PeerRegion, TagSpecifications):
        self._record(
            "create_vpc_peering_connection",
            VpcId=VpcId, PeerVpcId=PeerVpcId, PeerOwnerId=PeerOwnerId, PeerRegion=PeerRegion,
            TagSpecifications=TagSpecifications,
        )
        if VpcId not in self.network.vpcs:
            raise client_error("InvalidVpcID.NotFound", f"The vpc ID '{VpcId}' does not exist")
        connection = {
            "id": self.network.next_connection_id(),
            "status": "pending-acceptance",
            "vpc_id": VpcId,
            "owner_id": self.account_id,
            "peer_vpc_id": PeerVpcId,
            "peer_owner_id": PeerOwnerId,
            "tags": TagSpecifications[0]["Tags"],
        }
        self.network.connections[connection["id"]] = connection
        return {"VpcPeeringConnection": self._connection_view(connection)}

    def describe_vpc_peering_connections(self, VpcPeeringConnectionIds=None, Filters=None):
        self._record(
            "describe_vpc_peering_connections",
            VpcPeeringConnectionIds=VpcPeeringConnectionIds, Filters=Filters,
        )
        if VpcPeeringConnectionIds:
            found = []
            for connection_id in VpcPeeringConnectionIds:
                connection = self.network.connections.get(connection_id)
                hidden = (
                    connection is not None
                    and connection["owner_id"] != self.account_id
                    and self.network.hidden_from_peer > 0
                )
                if hidden:
                    self.network.hidden_from_peer -= 1
                if connection is None or hidden:
                    raise client_error(
                        "InvalidVpcPeeringConnectionID.NotFound",
                        f"The vpcPeeringConnection ID '{connection_id}' does not exist",
                    )
                found.append(self._connection_view(connection))
            return {"VpcPeeringConnections": found}

        found = []
        for connection in self.network.connections.values():
            if all(self._matches(connection, f) for f in Filters or []):
                found.append(self._connection_view(connection))
        return {"VpcPeeringConnections": found}

    @staticmethod
    def _matches(connection, peering_filter):
        name = peering_filter["Name"]
        if name.startswith("tag:"):
            key = name[len("tag:"):]
            return any(t["Key"] == key and t["Value"] in peering_filter["Values"] for t in connection["tags"])
        raise NotImplementedError(name)

    def accept_vpc_peering_connection(self, VpcPeeringConnectionId):
        self._record("accept_vpc_peering_connection", VpcPeeringConnectionId=VpcPeeringConnectionId)
        connection = self.network.connections.get(VpcPeeringConnectionId)
        if connection is None:
            raise client_error("InvalidVpcPeeringConnectionID.NotFound")
        if connection["status"] != "pending-acceptance":
            raise client_error("InvalidStateTransition")
        connection["status"] = self.network.accept_status
        return {"VpcPeeringConnection": self._connection_view(connection)}

    def delete_vpc_peering_connection(self, VpcPeeringConnectionId):
        self._record("delete_vpc_peering_connection", VpcPeeringConnectionId=VpcPeeringConnectionId)
        connection = self.network.connections.get(VpcPeeringConnectionId)
        if connection is None:
            raise client_error("InvalidVpcPeeringConnectionID.NotFound")
        if connection["status"] in ("deleted", "rejected", "expired"):
            raise client_error("InvalidStateTransition")
        connection["status"] = "deleted"
        for table in self.network.route_tables.values():
            for route in table["routes"]:
                if route.get("VpcPeeringConnectionId") == VpcPeeringConnectionId:
                    route["State"] = "blackhole"
        return {"Return": True}

    def describe_route_tables(self, RouteTableIds=None, Filters=None):
        self._record("describe_route_tables", RouteTableIds=RouteTableIds, Filters=Filters)
        if RouteTableIds:
            for route_table_id in RouteTableIds:
                if route_table_id not in self.network.route_tables:
                    raise client_error(
                        "InvalidRouteTableID.NotFound",
                        f"The routeTable ID '{route_table_id}' does not exist",
                    )
            ids = RouteTableIds
        else:
            vpc_ids = next(f["Values"] for f in Filters if f["Name"] == "vpc-id")
            ids = [rtb for rtb, table in self.network.route_tables.items() if table["vpc_id"] in vpc_ids]
        return {
            "RouteTables": [
                {
                    "RouteTableId": rtb,
                    "VpcId": self.network.route_tables[rtb]["vpc_id"],
                    "Routes": [dict(route) for route in self.network.route_tables[rtb]["routes"]],
                }
                for rtb in ids
            ]
        }

    def create_route(self, RouteTableId, DestinationCidrBlock, VpcPeeringConnectionId):
        self._record(
            "create_route",
            RouteTableId=RouteTableId, DestinationCidrBlock=DestinationCidrBlock,
            VpcPeeringConnectionId=VpcPeeringConnectionId,
        )
        routes = self.network.routes(RouteTableId)
        if any(route["DestinationCidrBlock"] == DestinationCidrBlock for route in routes):
            raise client_error("RouteAlreadyExists")
        routes.append({
            "DestinationCidrBlock": DestinationCidrBlock,
            "VpcPeeringConnectionId": VpcPeeringConnectionId,
            "State": "active",
        })
        return {"Return": True}

    def delete_route(self, RouteTableId, DestinationCidrBlock):
        self._record("delete_route", RouteTableId=RouteTableId, DestinationCidrBlock=DestinationCidrBlock)
        if RouteTableId not in self.network.route_tables:
            raise client_error("InvalidRouteTableID.NotFound")
        routes = self.network.routes(RouteTableId)
        for route in routes:
            if route["DestinationCidrBlock"] == DestinationCidrBlock:
                routes.remove(route)
                return {}
        raise client_error("InvalidRoute.NotFound")


class FakeClientFactory:
    """Hands out EC2 views: the requester account for local, the credential's account otherwise."""

    def __init__(self, network, local_account=LOCAL_ACCOUNT):
        self.network = network
        self.local_account = local_account
        self.delegated_accounts = []

    def local(self, service, region):
        assert service == "ec2"
        return self.network.client(self.local_account)

    def delegated(self, credential, service, region):
        assert service == "ec2"
        self.delegated_accounts.append(credential.account_id)
        return self.network.client(credential.account_id)


class FakeBroker:
    """Issues credentials for the referenced account without calling STS."""

    def __init__(self, error=None):
        self.error = error
        self.requests = []

    def obtain(self, ref, session_name, deadline=None):
        self.requests.append((ref, session_name))
        if self.error is not None:
            raise self.error
        return DelegatedCredential(
            account_id=ref.account_id,
            role_arn=ref.role_arn,
            expiration=datetime.now(timezone.utc) + timedelta(minutes=15),
            access_key_id="ASIAEXAMPLEEXAMPLE",
            secret_access_key="secret",
            session_token="token",
        )


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def deadline(self, seconds):
        return Deadline(seconds, clock=self, sleeper=self.sleep)


@pytest.fixture
def network() -> FakeNetwork:
    """Requester and peer VPC, one route table each."""
    network = FakeNetwork()
    network.add_vpc(LOCAL_VPC, LOCAL_CIDR, LOCAL_ACCOUNT, [LOCAL_RTB])
    network.add_vpc(PEER_VPC, PEER_CIDR, PEER_ACCOUNT, [PEER_RTB])
    return network


@pytest.fixture
def clients(network) -> FakeClientFactory:
    return FakeClientFactory(network)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> OrchestratorConfig:
    return OrchestratorConfig()


@pytest.fixture
def properties() -> dict:
    """ResourceProperties for a valid cross-account peering."""
    return {
        "VpcId": LOCAL_VPC,
        "AccountId": LOCAL_ACCOUNT,
        "Region": REGION,
        "VpcCidr": LOCAL_CIDR,
        "RouteTableIds": [LOCAL_RTB],
        "PeerVpcId": PEER_VPC,
        "PeerOwnerId": PEER_ACCOUNT,
        "PeerRegion": REGION,
        "PeerVpcCidr": PEER_CIDR,
        "PeerRoleArn": PEER_ROLE_ARN,
        "PeerRouteTableIds": [PEER_RTB],
        "PeeringName": "shared-to-staging",
        "EnvName": "staging",
    }


@pytest.fixture
def trust_denied_broker() -> FakeBroker:
    return FakeBroker(error=TrustDeniedError("Trust policy does not allow this caller: AccessDenied"))
