"""
Route reconciler: make sure every route table on one side of the peering has
exactly the owned route (peer CIDR -> peering connection), and nothing else
is touched.
"""

import logging
from typing import Dict, List, Optional, Sequence

from botocore.exceptions import ClientError

from vpc_peering.clients import ClientFactory
from vpc_peering.config import OrchestratorConfig
from vpc_peering.credentials import CredentialBroker
from vpc_peering.errors import (
    BrokerUnavailableError,
    ProviderError,
    ProviderThrottledError,
    RouteConflictError,
    error_code,
    translate_client_error,
)
from vpc_peering.models import CredentialRef, ReconciliationResult, RouteEntry, normalize_cidr
from vpc_peering.retry import BackoffPolicy, Deadline, retry_with_backoff

logger = logging.getLogger(__name__)

SESSION_NAME = "VpcPeeringRoutes"

ROUTE_NOT_FOUND_CODES = {"InvalidRoute.NotFound"}
TABLE_NOT_FOUND_CODES = {"InvalidRouteTableID.NotFound", "InvalidRouteTableId.NotFound"}


def dedupe(route_table_ids: Sequence[str]) -> List[str]:
    """Drop repeated route tables, keeping first-seen order (subnets often share one)."""
    seen = []
    for route_table_id in route_table_ids:
        if route_table_id not in seen:
            seen.append(route_table_id)
    return seen


class RouteReconciler:
    """Creates and removes the single route the orchestrator owns per table."""

    def __init__(self, broker: CredentialBroker, clients: ClientFactory, config: OrchestratorConfig):
        self.broker = broker
        self.clients = clients
        self.policy = BackoffPolicy(config.backoff_base_seconds, config.backoff_cap_seconds)

    def _client(self, region: str, credential_ref: Optional[CredentialRef], deadline: Deadline):
        if credential_ref is None:
            return self.clients.local("ec2", region)
        credential = retry_with_backoff(
            lambda: self.broker.obtain(credential_ref, SESSION_NAME, deadline=deadline),
            deadline=deadline,
            policy=self.policy,
            retry_on=(BrokerUnavailableError,),
            description=f"assume {credential_ref.role_arn}",
        )
        return self.clients.delegated(credential, "ec2", region)

    def _call(self, deadline: Deadline, description: str, operation):
        """Run one provider call, retrying throttling within the deadline."""

        def wrapped():
            try:
                return operation()
            except ClientError as e:
                error = translate_client_error(e, description)
                if isinstance(error, ProviderThrottledError):
                    raise error
                raise

        return retry_with_backoff(
            wrapped,
            deadline=deadline,
            policy=self.policy,
            retry_on=(ProviderThrottledError,),
            description=description,
        )

    def route_tables_for(self, ec2, vpc_id: str, deadline: Deadline) -> List[str]:
        """All route tables attached to a VPC."""
        paginator = ec2.get_paginator("describe_route_tables")

        def fetch():
            return [
                table["RouteTableId"]
                for page in paginator.paginate(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])
                for table in page.get("RouteTables", [])
            ]

        try:
            tables = self._call(deadline, f"DescribeRouteTables vpc {vpc_id}", fetch)
        except ClientError as e:
            raise translate_client_error(e, f"DescribeRouteTables vpc {vpc_id}")
        logger.info(f"Found {len(tables)} route tables in VPC {vpc_id}")
        return tables

    def describe_entries(self, ec2, route_table_ids: List[str], destination: str,
                         deadline: Deadline, tolerate_missing: bool = False) -> Dict[str, Optional[RouteEntry]]:
        """
        Map each table to its entry for ``destination`` (None when absent).

        Tables that no longer exist are left out when ``tolerate_missing``.
        """
        entries: Dict[str, Optional[RouteEntry]] = {}
        for route_table_id in route_table_ids:
            try:
                response = self._call(
                    deadline,
                    f"DescribeRouteTables {route_table_id}",
                    lambda: ec2.describe_route_tables(RouteTableIds=[route_table_id]),
                )
            except ClientError as e:
                if tolerate_missing and error_code(e) in TABLE_NOT_FOUND_CODES:
                    logger.info(f"Route table {route_table_id} no longer exists")
                    continue
                raise translate_client_error(e, f"DescribeRouteTables {route_table_id}")

            tables = response.get("RouteTables", [])
            if not tables:
                if tolerate_missing:
                    continue
                raise ProviderError(f"Route table {route_table_id} not found")

            entries[route_table_id] = None
            for route in tables[0].get("Routes", []):
                entry = RouteEntry.from_api(route_table_id, route)
                if entry is not None and entry.destination == destination:
                    entries[route_table_id] = entry
                    break
        return entries

    def reconcile(
        self,
        route_table_ids: Sequence[str],
        destination_range: str,
        target: str,
        region: str,
        deadline: Deadline,
        vpc_id: Optional[str] = None,
        credential_ref: Optional[CredentialRef] = None,
    ) -> ReconciliationResult:
        """
        Ensure ``destination_range -> target`` exists in every route table.

        ``credential_ref`` is given only for the peer network. When no tables
        are listed, every table of ``vpc_id`` is used.

        Raises:
            RouteConflictError: a table already routes the destination
                elsewhere; that route is left untouched.
        """
        destination = normalize_cidr(destination_range, "destination range")
        result = ReconciliationResult(destination=destination, target=target)
        deadline.check(f"reconciling routes to {destination}")

        ec2 = self._client(region, credential_ref, deadline)
        tables = dedupe(route_table_ids) or (self.route_tables_for(ec2, vpc_id, deadline) if vpc_id else [])
        if not tables:
            logger.warning(f"No route tables to reconcile for {destination} -> {target}")
            return result

        entries = self.describe_entries(ec2, tables, destination, deadline)

        conflicts = [
            entry for entry in entries.values()
            if entry is not None and entry.target != target
        ]
        if conflicts:
            details = ", ".join(f"{e.route_table_id} -> {e.target}" for e in conflicts)
            raise RouteConflictError(
                f"Route to {destination} already exists with a different target ({details}); "
                f"refusing to overwrite a route this stack does not own"
            )

        for route_table_id in tables:
            if entries.get(route_table_id) is not None:
                logger.info(f"Route {destination} -> {target} already present in {route_table_id}")
                result.unchanged.append(route_table_id)
                continue
            self._create_route(ec2, route_table_id, destination, target, deadline)
            result.created.append(route_table_id)

        logger.info(
            f"Reconciled {destination} -> {target}: {len(result.created)} created, "
            f"{len(result.unchanged)} unchanged"
        )
        return result

    def _create_route(self, ec2, route_table_id: str, destination: str, target: str,
                      deadline: Deadline) -> None:
        try:
            self._call(
                deadline,
                f"CreateRoute {route_table_id} {destination}",
                lambda: ec2.create_route(
                    RouteTableId=route_table_id,
                    DestinationCidrBlock=destination,
                    VpcPeeringConnectionId=target,
                ),
            )
        except ClientError as e:
            if error_code(e) != "RouteAlreadyExists":
                raise translate_client_error(e, f"CreateRoute {route_table_id}")
            # Someone created it between describe and create; only ours is acceptable
            current = self.describe_entries(ec2, [route_table_id], destination, deadline)
            entry = current.get(route_table_id)
            if entry is None or entry.target != target:
                raise RouteConflictError(
                    f"Route to {destination} in {route_table_id} was created concurrently "
                    f"with target {entry.target if entry else 'unknown'}"
                )
            logger.info(f"Route already exists in {route_table_id}")
            return
        logger.info(f"Added route {destination} -> {target} to {route_table_id}")

    def remove(
        self,
        route_table_ids: Sequence[str],
        destination_range: str,
        target: Optional[str],
        region: str,
        deadline: Deadline,
        vpc_id: Optional[str] = None,
        credential_ref: Optional[CredentialRef] = None,
    ) -> ReconciliationResult:
        """
        Delete the owned route from every table, treating "not there" as success.

        Only the entry whose destination equals the owned range is removed,
        and only if it points at ``target``. With no known target (connection
        already gone) a blackholed peering route for the destination is removed.
        Routes that point elsewhere are left alone.
        """
        destination = normalize_cidr(destination_range, "destination range")
        result = ReconciliationResult(destination=destination, target=target)
        deadline.check(f"removing routes to {destination}")

        ec2 = self._client(region, credential_ref, deadline)
        tables = dedupe(route_table_ids) or (self.route_tables_for(ec2, vpc_id, deadline) if vpc_id else [])
        entries = self.describe_entries(ec2, tables, destination, deadline, tolerate_missing=True)

        for route_table_id in tables:
            entry = entries.get(route_table_id)
            if entry is None:
                result.absent.append(route_table_id)
                continue
            owned = entry.target == target if target else (entry.is_peering_route and entry.state == "blackhole")
            if not owned:
                logger.warning(
                    f"Leaving route {destination} -> {entry.target} in {route_table_id}: not owned by "
                    f"{target or 'this resource'}"
                )
                result.absent.append(route_table_id)
                continue

            try:
                self._call(
                    deadline,
                    f"DeleteRoute {route_table_id} {destination}",
                    lambda: ec2.delete_route(RouteTableId=route_table_id, DestinationCidrBlock=destination),
                )
            except ClientError as e:
                if error_code(e) in ROUTE_NOT_FOUND_CODES | TABLE_NOT_FOUND_CODES:
                    logger.info(f"Route {destination} already absent from {route_table_id}")
                    result.absent.append(route_table_id)
                    continue
                raise translate_client_error(e, f"DeleteRoute {route_table_id}")
            logger.info(f"Deleted route {destination} from {route_table_id}")
            result.removed.append(route_table_id)

        return result
