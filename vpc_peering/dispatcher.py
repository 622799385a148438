"""
Lifecycle dispatcher for the VPC peering custom resource.

Turns one CloudFormation Create/Update/Delete notification into calls on the
connection manager, acceptor and route reconciler, in dependency order, and
produces exactly one response. Every decision is made from the provider's
current state, so a retried or replayed invocation converges instead of
duplicating work.
"""

import hashlib
import logging
from enum import Enum
from typing import Any, Dict, Optional

from vpc_peering.acceptor import CrossAccountAcceptor
from vpc_peering.clients import ClientFactory
from vpc_peering.config import OrchestratorConfig
from vpc_peering.connections import PeeringConnectionManager
from vpc_peering.credentials import CredentialBroker
from vpc_peering.errors import (
    DeadlineExceededError,
    IllegalTransitionError,
    InvalidTopologyError,
    PeeringError,
    RequestDecodeError,
)
from vpc_peering.models import (
    AcceptedStatus,
    ConnectionStatus,
    InvocationRecord,
    LifecycleResponse,
    PeeringConnection,
    PeeringRequest,
    RequestType,
)
from vpc_peering.retry import Deadline
from vpc_peering.routes import RouteReconciler

logger = logging.getLogger(__name__)


class PeeringState(Enum):
    REQUESTED = "Requested"
    CONNECTION_CREATED = "ConnectionCreated"
    AWAITING_ACCEPTANCE = "AwaitingAcceptance"
    ACCEPTED = "Accepted"
    LOCAL_ROUTES_RECONCILED = "LocalRoutesReconciled"
    ACTIVE = "PeerRoutesReconciled"
    FAILED = "Failed"
    ROUTES_REMOVED = "RoutesRemoved"
    DELETED = "ConnectionDeleted"


TRANSITIONS = {
    PeeringState.REQUESTED: {PeeringState.CONNECTION_CREATED, PeeringState.ROUTES_REMOVED},
    PeeringState.CONNECTION_CREATED: {PeeringState.AWAITING_ACCEPTANCE},
    PeeringState.AWAITING_ACCEPTANCE: {PeeringState.ACCEPTED},
    PeeringState.ACCEPTED: {PeeringState.LOCAL_ROUTES_RECONCILED},
    PeeringState.LOCAL_ROUTES_RECONCILED: {PeeringState.ACTIVE},
    PeeringState.ACTIVE: {PeeringState.ROUTES_REMOVED},
    PeeringState.FAILED: {PeeringState.ROUTES_REMOVED},
    PeeringState.ROUTES_REMOVED: {PeeringState.DELETED},
    PeeringState.DELETED: set(),
}

TERMINAL_STATES = {PeeringState.ACTIVE, PeeringState.DELETED}


class StateTracker:
    """Per-invocation view of where a physical identity is in its lifecycle."""

    def __init__(self, physical_id: str, state: PeeringState = PeeringState.REQUESTED):
        self.physical_id = physical_id
        self.state = state

    def advance(self, new_state: PeeringState) -> None:
        if new_state == PeeringState.FAILED:
            if self.state in TERMINAL_STATES:
                raise IllegalTransitionError(f"{self.physical_id}: {self.state.value} is terminal")
        elif new_state not in TRANSITIONS[self.state]:
            raise IllegalTransitionError(
                f"{self.physical_id}: cannot move from {self.state.value} to {new_state.value}"
            )
        logger.info(f"{self.physical_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state


def physical_identity(stack_id: str, logical_resource_id: str, request: PeeringRequest) -> str:
    """
    Deterministic physical ID from the resource's placement and identity fields.

    Retried Creates and no-op Updates map to the same ID; changing an identity
    field yields a new one, which CloudFormation treats as a replacement.
    """
    digest = hashlib.sha256(
        f"{stack_id}|{logical_resource_id}|{request.fingerprint()}".encode("utf-8")
    ).hexdigest()[:16]
    prefix = (logical_resource_id or "vpc-peering")[:64]
    return f"{prefix}-{digest}"


def _context_account(context: Any) -> Optional[str]:
    arn = getattr(context, "invoked_function_arn", None) or ""
    parts = arn.split(":")
    return parts[4] if len(parts) > 4 and parts[4] else None


def decode_event(event: Dict[str, Any], context: Any, config: OrchestratorConfig,
                 default_region: Optional[str] = None) -> InvocationRecord:
    """
    Decode a CloudFormation custom resource event into an InvocationRecord.

    An unknown RequestType raises RequestDecodeError. Bad ResourceProperties
    do not raise: they are recorded in ``decode_error`` so the dispatcher can
    still answer (Delete of something that never decoded is a no-op). An
    unparseable ResponseDeadlineSeconds is recorded the same way and the
    invocation keeps the Lambda's own deadline.
    """
    if not isinstance(event, dict):
        raise RequestDecodeError("Event must be an object")

    request_type = RequestType.decode(event.get("RequestType"))

    remaining = config.default_response_deadline_seconds
    if context is not None and hasattr(context, "get_remaining_time_in_millis"):
        remaining = context.get_remaining_time_in_millis() / 1000.0

    errors = []
    properties = event.get("ResourceProperties") or {}
    requested = properties.get("ResponseDeadlineSeconds") if isinstance(properties, dict) else None
    if requested not in (None, ""):
        try:
            remaining = min(remaining, float(requested))
        except (TypeError, ValueError):
            errors.append(f"ResponseDeadlineSeconds is not a number: {requested!r}")

    account = _context_account(context)
    request = None
    try:
        request = PeeringRequest.from_properties(properties, default_region, account)
    except RequestDecodeError as e:
        errors.append(str(e))

    old_request = None
    if request_type == RequestType.UPDATE and event.get("OldResourceProperties"):
        try:
            old_request = PeeringRequest.from_properties(
                event["OldResourceProperties"], default_region, account
            )
        except RequestDecodeError as e:
            logger.warning(f"Old resource properties do not decode, treating as absent: {e}")

    return InvocationRecord(
        request_type=request_type,
        physical_resource_id=event.get("PhysicalResourceId") or None,
        request=request,
        response_deadline_seconds=remaining,
        old_request=old_request,
        stack_id=event.get("StackId", ""),
        request_id=event.get("RequestId", ""),
        logical_resource_id=event.get("LogicalResourceId", ""),
        response_url=event.get("ResponseURL"),
        decode_error="; ".join(errors) or None,
    )


class LifecycleDispatcher:
    """Runs one invocation end to end and returns its single response."""

    def __init__(
        self,
        clients: ClientFactory,
        broker: CredentialBroker,
        config: OrchestratorConfig,
        deadline_factory=Deadline,
    ):
        self.clients = clients
        self.broker = broker
        self.config = config
        self.deadline_factory = deadline_factory
        self.acceptor = CrossAccountAcceptor(broker, clients, config)
        self.routes = RouteReconciler(broker, clients, config)

    def dispatch(self, record: InvocationRecord) -> LifecycleResponse:
        """
        Handle one invocation. Never raises: every outcome, including an
        unexpected bug, becomes exactly one LifecycleResponse.
        """
        # The response itself needs time to be delivered
        deadline = self.deadline_factory(
            record.response_deadline_seconds - self.config.deadline_safety_margin_seconds
        )
        fallback_id = record.physical_resource_id or f"{record.logical_resource_id or 'vpc-peering'}-unresolved"

        try:
            if record.request_type == RequestType.DELETE:
                return self._delete(record, deadline)

            if record.request is None or record.decode_error:
                return LifecycleResponse.failure(
                    self._response_id(record, fallback_id), f"Invalid resource properties: {record.decode_error}"
                )

            if record.request_type == RequestType.CREATE:
                return self._create(record, record.request, deadline)
            return self._update(record, deadline)
        except DeadlineExceededError as e:
            logger.error(f"{record.request_type.value} ran out of time: {e}")
            return LifecycleResponse.failure(
                self._response_id(record, fallback_id), f"Deadline exceeded: {e}"
            )
        except PeeringError as e:
            logger.error(f"{record.request_type.value} failed: {type(e).__name__}: {e}")
            return LifecycleResponse.failure(self._response_id(record, fallback_id), f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error handling {record.request_type.value}")
            return LifecycleResponse.failure(
                self._response_id(record, fallback_id), f"Unexpected error: {type(e).__name__}: {e}"
            )

    def _response_id(self, record: InvocationRecord, fallback_id: str) -> str:
        # Updates that fail keep the old ID so CloudFormation does not treat them as a replacement
        if record.request_type in (RequestType.UPDATE, RequestType.DELETE) and record.physical_resource_id:
            return record.physical_resource_id
        if record.request is not None:
            return physical_identity(record.stack_id, record.logical_resource_id, record.request)
        return fallback_id

    def _connection_manager(self, request: PeeringRequest) -> PeeringConnectionManager:
        return PeeringConnectionManager(self.clients.local("ec2", request.region), self.config.managed_by_tag)

    def _create(self, record: InvocationRecord, request: PeeringRequest, deadline: Deadline) -> LifecycleResponse:
        physical_id = physical_identity(record.stack_id, record.logical_resource_id, request)
        tracker = StateTracker(physical_id)
        manager = self._connection_manager(request)

        try:
            deadline.check("creating peering connection")
            connection = manager.find_by_physical_id(physical_id)
            if connection is None:
                connection = manager.create(request, physical_id)
            else:
                logger.info(
                    f"Resuming {physical_id}: found {connection.connection_id} ({connection.status_code})"
                )
            deadline.check_after("creating peering connection")
            tracker.advance(PeeringState.CONNECTION_CREATED)

            tracker.advance(PeeringState.AWAITING_ACCEPTANCE)
            accepted = self._accept(request, connection, deadline)
            deadline.check_after("acceptance")
            tracker.advance(PeeringState.ACCEPTED)

            local = self.routes.reconcile(
                request.route_table_ids,
                request.peer_cidr,
                connection.connection_id,
                region=request.region,
                deadline=deadline,
                vpc_id=request.vpc_id,
            )
            deadline.check_after("local route reconciliation")
            tracker.advance(PeeringState.LOCAL_ROUTES_RECONCILED)

            local_cidr = request.vpc_cidr or manager.local_cidrs(request)[0]
            peer = self.routes.reconcile(
                request.peer_route_table_ids,
                local_cidr,
                connection.connection_id,
                region=request.peer_region,
                deadline=deadline,
                vpc_id=request.peer_vpc_id,
                credential_ref=request.peer_credential_ref,
            )
            deadline.check_after("peer route reconciliation")
            tracker.advance(PeeringState.ACTIVE)
        except PeeringError:
            tracker.advance(PeeringState.FAILED)
            raise

        data = {
            "ConnectionId": connection.connection_id,
            "AcceptedAt": accepted.accepted_at.isoformat(),
            "RoutesReconciled": local.routes_reconciled + peer.routes_reconciled,
            "LocalRoutesReconciled": local.routes_reconciled,
            "PeerRoutesReconciled": peer.routes_reconciled,
            "Status": accepted.status.value,
        }
        logger.info(f"{physical_id} is active: {data}")
        return LifecycleResponse.success(physical_id, data)

    def _accept(self, request: PeeringRequest, connection: PeeringConnection,
                deadline: Deadline) -> AcceptedStatus:
        return self.acceptor.accept(
            connection.connection_id,
            request.peer_account_id,
            request.peer_credential_ref,
            request.peer_region,
            deadline,
        )

    def _update(self, record: InvocationRecord, deadline: Deadline) -> LifecycleResponse:
        request = record.request
        new_id = physical_identity(record.stack_id, record.logical_resource_id, request)
        old_id = record.physical_resource_id

        if old_id and old_id != new_id:
            # Peering objects cannot be re-parented: tear down the old one, then build the new one.
            # Returning a new physical ID tells CloudFormation this was a replacement.
            logger.info(f"Replacement required: {old_id} -> {new_id}")
            if record.old_request is not None:
                self._teardown(old_id, record.old_request, deadline)
            else:
                logger.warning(f"No decodable old properties for {old_id}; skipping teardown")
        return self._create(record, request, deadline)

    def _delete(self, record: InvocationRecord, deadline: Deadline) -> LifecycleResponse:
        physical_id = record.physical_resource_id
        if record.request is None:
            # Nothing can have been created from properties that never decoded
            logger.info(f"Delete with undecodable properties ({record.decode_error}); nothing to remove")
            return LifecycleResponse.success(
                physical_id or f"{record.logical_resource_id or 'vpc-peering'}-unresolved",
                reason="Nothing to remove",
            )
        if not physical_id:
            physical_id = physical_identity(record.stack_id, record.logical_resource_id, record.request)

        summary = self._teardown(physical_id, record.request, deadline)
        return LifecycleResponse.success(physical_id, summary)

    def _teardown(self, physical_id: str, request: PeeringRequest, deadline: Deadline) -> Dict[str, Any]:
        """Routes on both sides first (a referenced connection may refuse deletion), then the connection."""
        manager = self._connection_manager(request)
        deadline.check(f"deleting {physical_id}")

        connection = manager.find_by_physical_id(physical_id, include_terminal=True)
        if connection is None:
            logger.info(f"{physical_id}: no peering connection found, it was already removed")
            state = PeeringState.FAILED
        else:
            logger.info(f"{physical_id}: tearing down {connection.connection_id} ({connection.status_code})")
            state = PeeringState.ACTIVE if connection.status == ConnectionStatus.ACTIVE else PeeringState.FAILED
        tracker = StateTracker(physical_id, state)
        target = connection.connection_id if connection is not None else None

        local = self.routes.remove(
            request.route_table_ids,
            request.peer_cidr,
            target,
            region=request.region,
            deadline=deadline,
            vpc_id=request.vpc_id,
        )

        peer_removed = 0
        local_cidr = self._teardown_local_cidr(manager, request, connection)
        if local_cidr is not None:
            peer = self.routes.remove(
                request.peer_route_table_ids,
                local_cidr,
                target,
                region=request.peer_region,
                deadline=deadline,
                vpc_id=request.peer_vpc_id,
                credential_ref=request.peer_credential_ref,
            )
            peer_removed = len(peer.removed)
        else:
            logger.info(f"{physical_id}: local CIDR unknown; no peer routes to match")
        deadline.check_after("route removal")
        tracker.advance(PeeringState.ROUTES_REMOVED)

        deleted = False
        if target:
            deadline.check(f"deleting {target}")
            deleted = manager.delete(target)
            deadline.check_after(f"deleting {target}")
        tracker.advance(PeeringState.DELETED)

        return {
            "ConnectionId": target or "",
            "ConnectionDeleted": deleted,
            "RoutesRemoved": len(local.removed) + peer_removed,
        }

    def _teardown_local_cidr(self, manager: PeeringConnectionManager, request: PeeringRequest,
                             connection: Optional[PeeringConnection]) -> Optional[str]:
        """The destination owned in the peer's tables; the local VPC may already be gone."""
        if request.vpc_cidr:
            return request.vpc_cidr
        if connection is not None and connection.requester_cidr:
            return connection.requester_cidr
        try:
            cidrs = manager.local_cidrs(request)
        except InvalidTopologyError:
            return None
        return cidrs[0] if cidrs else None
