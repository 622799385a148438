"""
Peering connection manager: create, describe and delete the peering object
in the local (requester) account. No cross-account logic lives here.
"""

import logging
from typing import List, Optional

from botocore.exceptions import ClientError

from vpc_peering.errors import (
    InvalidTopologyError,
    ProviderError,
    error_code,
    translate_client_error,
)
from vpc_peering.models import (
    ConnectionStatus,
    PeeringConnection,
    PeeringRequest,
    cidrs_overlap,
)

logger = logging.getLogger(__name__)

PHYSICAL_ID_TAG = "vpc-peering:physical-resource-id"

NOT_FOUND_CODES = {
    "InvalidVpcPeeringConnectionID.NotFound",
    "InvalidVpcPeeringConnectionId.NotFound",
}


class PeeringConnectionManager:
    """Owns the lifecycle of the peering object itself."""

    def __init__(self, ec2_client, managed_by: str = "CDK"):
        self.ec2 = ec2_client
        self.managed_by = managed_by

    def local_cidrs(self, request: PeeringRequest) -> List[str]:
        """CIDR blocks of the local VPC: the declared one, or primary plus associated."""
        if request.vpc_cidr:
            return [request.vpc_cidr]
        try:
            response = self.ec2.describe_vpcs(VpcIds=[request.vpc_id])
        except ClientError as e:
            if error_code(e) == "InvalidVpcID.NotFound":
                raise InvalidTopologyError(f"Local VPC {request.vpc_id} does not exist")
            raise translate_client_error(e, f"DescribeVpcs {request.vpc_id}")

        vpcs = response.get("Vpcs", [])
        if not vpcs:
            raise InvalidTopologyError(f"Local VPC {request.vpc_id} does not exist")

        vpc = vpcs[0]
        cidrs = [vpc["CidrBlock"]] if vpc.get("CidrBlock") else []
        for association in vpc.get("CidrBlockAssociationSet", []):
            state = association.get("CidrBlockState", {}).get("State", "associated")
            block = association.get("CidrBlock")
            if block and state == "associated" and block not in cidrs:
                cidrs.append(block)
        return cidrs

    def check_topology(self, request: PeeringRequest) -> List[str]:
        """Fail before touching the provider if the two address ranges overlap."""
        local_cidrs = self.local_cidrs(request)
        for cidr in local_cidrs:
            if cidrs_overlap(cidr, request.peer_cidr):
                raise InvalidTopologyError(
                    f"Address ranges overlap: local {request.vpc_id} {cidr} "
                    f"and peer {request.peer_vpc_id} {request.peer_cidr}"
                )
        return local_cidrs

    def create(self, request: PeeringRequest, physical_id: str) -> PeeringConnection:
        """
        Request a new peering connection, tagged with the owning physical identity.

        Raises:
            InvalidTopologyError: address ranges overlap (nothing is created)
            ProviderThrottledError: the provider throttled the request
        """
        self.check_topology(request)

        tags = [
            {"Key": "Name", "Value": request.peering_name or physical_id},
            {"Key": "ManagedBy", "Value": self.managed_by},
            {"Key": PHYSICAL_ID_TAG, "Value": physical_id},
        ]
        if request.env_name:
            tags.append({"Key": "Environment", "Value": request.env_name})

        logger.info(
            f"Creating VPC peering connection from {request.vpc_id} to {request.peer_vpc_id} "
            f"in account {request.peer_account_id} ({request.peer_region})"
        )
        try:
            response = self.ec2.create_vpc_peering_connection(
                VpcId=request.vpc_id,
                PeerVpcId=request.peer_vpc_id,
                PeerOwnerId=request.peer_account_id,
                PeerRegion=request.peer_region,
                TagSpecifications=[{"ResourceType": "vpc-peering-connection", "Tags": tags}],
            )
        except ClientError as e:
            code = error_code(e)
            message = e.response.get("Error", {}).get("Message", "")
            if "overlap" in message.lower():
                raise InvalidTopologyError(f"Provider rejected overlapping address ranges: {message}")
            if code == "InvalidVpcID.NotFound":
                raise InvalidTopologyError(f"VPC not found: {message}")
            raise translate_client_error(e, "CreateVpcPeeringConnection")

        data = response.get("VpcPeeringConnection")
        if not data or not data.get("VpcPeeringConnectionId"):
            raise ProviderError("Failed to create VPC peering connection - no ID returned")

        connection = PeeringConnection.from_api(data)
        logger.info(f"Created peering connection: {connection.connection_id} ({connection.status_code})")
        return connection

    def describe(self, connection_id: str) -> Optional[PeeringConnection]:
        """Current state of a connection, or None if the provider does not know it."""
        try:
            response = self.ec2.describe_vpc_peering_connections(
                VpcPeeringConnectionIds=[connection_id]
            )
        except ClientError as e:
            if error_code(e) in NOT_FOUND_CODES:
                return None
            raise translate_client_error(e, f"DescribeVpcPeeringConnections {connection_id}")

        connections = response.get("VpcPeeringConnections", [])
        if not connections:
            return None
        return PeeringConnection.from_api(connections[0])

    def find_by_physical_id(
        self, physical_id: str, include_terminal: bool = False
    ) -> Optional[PeeringConnection]:
        """
        Look up the connection owned by a physical identity through its tag.

        Connections that were rejected, expired or deleted are skipped unless
        ``include_terminal`` is set; the most useful live one wins.
        """
        try:
            paginator = self.ec2.get_paginator("describe_vpc_peering_connections")
            pages = paginator.paginate(
                Filters=[{"Name": f"tag:{PHYSICAL_ID_TAG}", "Values": [physical_id]}]
            )
            found = [
                PeeringConnection.from_api(item)
                for page in pages
                for item in page.get("VpcPeeringConnections", [])
            ]
        except ClientError as e:
            raise translate_client_error(e, f"DescribeVpcPeeringConnections tag {physical_id}")

        live = [c for c in found if not c.status.is_terminal]
        if len(live) > 1:
            logger.warning(
                f"Multiple live peering connections tagged {physical_id}: "
                f"{', '.join(c.connection_id for c in live)}"
            )
        preference = [
            ConnectionStatus.ACTIVE,
            ConnectionStatus.PROVISIONING,
            ConnectionStatus.PENDING_ACCEPTANCE,
            ConnectionStatus.INITIATED,
        ]
        for status in preference:
            for connection in live:
                if connection.status == status:
                    return connection
        if include_terminal and found:
            return found[0]
        return None

    def delete(self, connection_id: str) -> bool:
        """
        Delete a connection. Returns False when it was already gone, which is
        the desired end state and therefore not an error.
        """
        current = self.describe(connection_id)
        if current is None or current.status == ConnectionStatus.DELETED:
            logger.info(f"Peering connection already deleted or deleting: {connection_id}")
            return False

        logger.info(f"Deleting peering connection: {connection_id} ({current.status_code})")
        try:
            self.ec2.delete_vpc_peering_connection(VpcPeeringConnectionId=connection_id)
        except ClientError as e:
            code = error_code(e)
            if code in NOT_FOUND_CODES:
                logger.info(f"Peering connection vanished before delete: {connection_id}")
                return False
            if code == "InvalidStateTransition":
                # Already deleting, or rejected/expired which cannot be deleted
                logger.info(f"Peering connection {connection_id} cannot transition to deleted: {e}")
                return False
            raise translate_client_error(e, f"DeleteVpcPeeringConnection {connection_id}")

        logger.info(f"Deleted peering connection: {connection_id}")
        return True
