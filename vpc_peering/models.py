"""
Value types for the VPC peering orchestrator.

These carry only the fields the orchestrator needs; EC2 and STS response
shapes are converted here and never passed further up.
"""

import hashlib
import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from vpc_peering.errors import RequestDecodeError


ACCOUNT_ID_PATTERN = re.compile(r"^\d{12}$")
ROLE_ARN_PATTERN = re.compile(r"^arn:aws[a-z-]*:iam::(\d{12}):role/[\w+=,.@/-]+$")
VPC_ID_PATTERN = re.compile(r"^vpc-[0-9a-f]+$")
ROUTE_TABLE_ID_PATTERN = re.compile(r"^rtb-[0-9a-f]+$")


class RequestType(Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"

    @classmethod
    def decode(cls, value: Any) -> "RequestType":
        """Closed decoding: anything but Create/Update/Delete is rejected."""
        for member in cls:
            if member.value == value:
                return member
        raise RequestDecodeError(f"Unsupported RequestType: {value!r}")


class ConnectionStatus(Enum):
    INITIATED = "initiated"
    PENDING_ACCEPTANCE = "pending-acceptance"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"
    DELETED = "deleted"

    @classmethod
    def from_code(cls, code: str) -> "ConnectionStatus":
        """Map an EC2 peering status code onto the orchestrator's status set."""
        mapping = {
            "initiating-request": cls.INITIATED,
            "pending-acceptance": cls.PENDING_ACCEPTANCE,
            "provisioning": cls.PROVISIONING,
            "active": cls.ACTIVE,
            "rejected": cls.FAILED,
            "failed": cls.FAILED,
            "expired": cls.FAILED,
            "deleting": cls.DELETED,
            "deleted": cls.DELETED,
        }
        try:
            return mapping[code]
        except KeyError:
            raise ValueError(f"Unknown VPC peering status code: {code!r}")

    @property
    def is_terminal(self) -> bool:
        return self in (ConnectionStatus.FAILED, ConnectionStatus.DELETED)


def normalize_cidr(value: Any, name: str) -> str:
    """Parse an IPv4 CIDR block and return its canonical form."""
    if not isinstance(value, str) or not value.strip():
        raise RequestDecodeError(f"{name} must be an IPv4 CIDR block")
    try:
        network = ipaddress.IPv4Network(value.strip(), strict=True)
    except ValueError as e:
        raise RequestDecodeError(f"{name} is not a valid IPv4 CIDR block: {e}")
    return str(network)


def cidrs_overlap(first: str, second: str) -> bool:
    return ipaddress.IPv4Network(first).overlaps(ipaddress.IPv4Network(second))


def _required(properties: Dict[str, Any], key: str) -> str:
    value = properties.get(key)
    if not isinstance(value, str) or not value.strip():
        raise RequestDecodeError(f"Missing required property: {key}")
    return value.strip()


def _optional(properties: Dict[str, Any], key: str) -> Optional[str]:
    value = properties.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RequestDecodeError(f"Property {key} must be a string")
    return value.strip() or None


def _id_list(properties: Dict[str, Any], key: str) -> Tuple[str, ...]:
    """Accept a list or a comma-separated string; keep order, drop duplicates."""
    value = properties.get(key)
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        raise RequestDecodeError(f"Property {key} must be a list of route table IDs")

    result = []
    for item in items:
        if not isinstance(item, str):
            raise RequestDecodeError(f"Property {key} must contain strings")
        item = item.strip()
        if not item:
            continue
        if not ROUTE_TABLE_ID_PATTERN.match(item):
            raise RequestDecodeError(f"Invalid route table ID in {key}: {item}")
        if item not in result:
            result.append(item)
    return tuple(result)


@dataclass(frozen=True)
class CredentialRef:
    """Reference to the delegated trust usable to act in another account."""
    account_id: str
    role_arn: str
    external_id: Optional[str] = None


@dataclass(frozen=True)
class PeeringRequest:
    """The declared intent for one peering connection."""
    vpc_id: str
    account_id: str
    region: str
    peer_vpc_id: str
    peer_account_id: str
    peer_region: str
    peer_cidr: str
    peer_role_arn: str
    vpc_cidr: Optional[str] = None
    route_table_ids: Tuple[str, ...] = ()
    peer_route_table_ids: Tuple[str, ...] = ()
    external_id: Optional[str] = field(default=None, repr=False)
    peering_name: Optional[str] = None
    env_name: Optional[str] = None

    @classmethod
    def from_properties(
        cls,
        properties: Dict[str, Any],
        default_region: Optional[str] = None,
        default_account_id: Optional[str] = None,
    ) -> "PeeringRequest":
        """
        Decode CloudFormation ResourceProperties.

        Args:
            properties: ResourceProperties (or OldResourceProperties) of the event
            default_region: region used when Region is not given
            default_account_id: account used when AccountId is not given
        """
        if not isinstance(properties, dict):
            raise RequestDecodeError("ResourceProperties must be an object")

        vpc_id = _required(properties, "VpcId")
        peer_vpc_id = _required(properties, "PeerVpcId")
        for name, value in (("VpcId", vpc_id), ("PeerVpcId", peer_vpc_id)):
            if not VPC_ID_PATTERN.match(value):
                raise RequestDecodeError(f"{name} is not a VPC ID: {value}")

        region = _optional(properties, "Region") or default_region
        if not region:
            raise RequestDecodeError("Region is not set and no default region is available")
        peer_region = _optional(properties, "PeerRegion") or region

        account_id = _optional(properties, "AccountId") or default_account_id or ""
        if account_id and not ACCOUNT_ID_PATTERN.match(account_id):
            raise RequestDecodeError(f"AccountId is not a 12-digit account ID: {account_id}")

        peer_account_id = _required(properties, "PeerOwnerId")
        if not ACCOUNT_ID_PATTERN.match(peer_account_id):
            raise RequestDecodeError(f"PeerOwnerId is not a 12-digit account ID: {peer_account_id}")

        # The role must live in the peer account, or we would accept and route in the wrong account
        peer_role_arn = _required(properties, "PeerRoleArn")
        match = ROLE_ARN_PATTERN.match(peer_role_arn)
        if not match:
            raise RequestDecodeError(f"PeerRoleArn is not an IAM role ARN: {peer_role_arn}")
        if match.group(1) != peer_account_id:
            raise RequestDecodeError(
                f"PeerRoleArn belongs to account {match.group(1)}, not PeerOwnerId {peer_account_id}"
            )

        vpc_cidr = _optional(properties, "VpcCidr")
        if vpc_id == peer_vpc_id and region == peer_region:
            raise RequestDecodeError("A VPC cannot be peered with itself")

        return cls(
            vpc_id=vpc_id,
            account_id=account_id,
            region=region,
            peer_vpc_id=peer_vpc_id,
            peer_account_id=peer_account_id,
            peer_region=peer_region,
            peer_cidr=normalize_cidr(properties.get("PeerVpcCidr"), "PeerVpcCidr"),
            peer_role_arn=peer_role_arn,
            vpc_cidr=normalize_cidr(vpc_cidr, "VpcCidr") if vpc_cidr else None,
            route_table_ids=_id_list(properties, "RouteTableIds"),
            peer_route_table_ids=_id_list(properties, "PeerRouteTableIds"),
            external_id=_optional(properties, "ExternalId"),
            peering_name=_optional(properties, "PeeringName"),
            env_name=_optional(properties, "EnvName"),
        )

    @property
    def peer_credential_ref(self) -> CredentialRef:
        return CredentialRef(
            account_id=self.peer_account_id,
            role_arn=self.peer_role_arn,
            external_id=self.external_id,
        )

    def identity_fields(self) -> Tuple[str, ...]:
        """Fields whose change makes this a different resource (tags excluded)."""
        return (
            self.vpc_id,
            self.account_id,
            self.region,
            self.vpc_cidr or "",
            ",".join(self.route_table_ids),
            self.peer_vpc_id,
            self.peer_account_id,
            self.peer_region,
            self.peer_cidr,
            self.peer_role_arn,
            ",".join(self.peer_route_table_ids),
        )

    def fingerprint(self) -> str:
        return hashlib.sha256("|".join(self.identity_fields()).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class PeeringConnection:
    """The provider-side peering object."""
    connection_id: str
    status: ConnectionStatus
    status_code: str = ""
    requester_vpc_id: Optional[str] = None
    requester_cidr: Optional[str] = None
    accepter_vpc_id: Optional[str] = None
    accepter_owner_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PeeringConnection":
        code = data.get("Status", {}).get("Code", "")
        return cls(
            connection_id=data["VpcPeeringConnectionId"],
            status=ConnectionStatus.from_code(code),
            status_code=code,
            requester_vpc_id=data.get("RequesterVpcInfo", {}).get("VpcId"),
            requester_cidr=data.get("RequesterVpcInfo", {}).get("CidrBlock"),
            accepter_vpc_id=data.get("AccepterVpcInfo", {}).get("VpcId"),
            accepter_owner_id=data.get("AccepterVpcInfo", {}).get("OwnerId"),
        )


ROUTE_TARGET_KEYS = (
    "VpcPeeringConnectionId",
    "GatewayId",
    "NatGatewayId",
    "TransitGatewayId",
    "NetworkInterfaceId",
    "InstanceId",
    "LocalGatewayId",
    "CarrierGatewayId",
    "EgressOnlyInternetGatewayId",
    "CoreNetworkArn",
)


@dataclass(frozen=True)
class RouteEntry:
    """A single IPv4 routing-table row."""
    route_table_id: str
    destination: str
    target: Optional[str]
    state: str = "active"

    @classmethod
    def from_api(cls, route_table_id: str, route: Dict[str, Any]) -> Optional["RouteEntry"]:
        """Convert an EC2 route; IPv6 and prefix-list routes are ignored."""
        destination = route.get("DestinationCidrBlock")
        if not destination:
            return None
        target = next((route[key] for key in ROUTE_TARGET_KEYS if route.get(key)), None)
        return cls(
            route_table_id=route_table_id,
            destination=str(ipaddress.IPv4Network(destination, strict=False)),
            target=target,
            state=route.get("State", "active"),
        )

    @property
    def is_peering_route(self) -> bool:
        return bool(self.target and self.target.startswith("pcx-"))


@dataclass(frozen=True)
class AcceptedStatus:
    connection_id: str
    status: ConnectionStatus
    accepted_at: datetime
    already_active: bool = False
    accept_calls: int = 0


@dataclass
class ReconciliationResult:
    destination: str
    target: Optional[str]
    created: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    absent: List[str] = field(default_factory=list)

    @property
    def routes_reconciled(self) -> int:
        """Number of route tables holding the owned route after reconciliation."""
        return len(self.created) + len(self.unchanged)

    @property
    def mutations(self) -> int:
        return len(self.created) + len(self.removed)


@dataclass(frozen=True)
class InvocationRecord:
    """One lifecycle notification, decoded once and never mutated."""
    request_type: RequestType
    physical_resource_id: Optional[str]
    request: Optional[PeeringRequest]
    response_deadline_seconds: float
    old_request: Optional[PeeringRequest] = None
    stack_id: str = ""
    request_id: str = ""
    logical_resource_id: str = ""
    response_url: Optional[str] = field(default=None, repr=False)
    decode_error: Optional[str] = None


@dataclass
class LifecycleResponse:
    """The single terminal response of an invocation."""
    status: str
    physical_resource_id: str
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def succeeded(self) -> bool:
        return self.status == self.SUCCESS

    @classmethod
    def success(cls, physical_resource_id: str, data: Optional[Dict[str, Any]] = None,
                reason: Optional[str] = None) -> "LifecycleResponse":
        return cls(cls.SUCCESS, physical_resource_id, reason, data or {})

    @classmethod
    def failure(cls, physical_resource_id: str, reason: str) -> "LifecycleResponse":
        return cls(cls.FAILED, physical_resource_id, reason, {})
