"""
Cross-account acceptor: move a peering connection from pending-acceptance to
active inside the peer account, using delegated credentials.
"""

import logging
from datetime import datetime, timezone

from botocore.exceptions import ClientError

from vpc_peering.clients import ClientFactory
from vpc_peering.config import OrchestratorConfig
from vpc_peering.connections import NOT_FOUND_CODES, PeeringConnectionManager
from vpc_peering.credentials import CredentialBroker
from vpc_peering.errors import (
    AcceptanceFailedError,
    AcceptanceTimeoutError,
    BrokerUnavailableError,
    ConnectionNotVisibleError,
    DeadlineExceededError,
    ProviderThrottledError,
    error_code,
    translate_client_error,
)
from vpc_peering.models import AcceptedStatus, ConnectionStatus, CredentialRef
from vpc_peering.retry import BackoffPolicy, Deadline, retry_with_backoff

logger = logging.getLogger(__name__)

SESSION_NAME = "VpcPeeringAccept"


class CrossAccountAcceptor:
    """Accepts peering connections on behalf of the peer account."""

    def __init__(self, broker: CredentialBroker, clients: ClientFactory, config: OrchestratorConfig):
        self.broker = broker
        self.clients = clients
        self.config = config
        self.policy = BackoffPolicy(config.backoff_base_seconds, config.backoff_cap_seconds)

    def accept(
        self,
        connection_id: str,
        peer_account: str,
        credential_ref: CredentialRef,
        peer_region: str,
        deadline: Deadline,
    ) -> AcceptedStatus:
        """
        Accept ``connection_id`` in ``peer_account``.

        Already-active connections are reported as accepted without calling
        the accept API again. Visibility lag is retried with backoff until
        the acceptance budget (bounded by the deadline minus a safety margin)
        runs out.

        Raises:
            TrustDeniedError: the peer role cannot be assumed (fatal)
            AcceptanceFailedError: the connection was rejected, expired or deleted
            AcceptanceTimeoutError: the connection never became acceptable in time
        """
        if credential_ref.account_id != peer_account:
            raise AcceptanceFailedError(
                f"Credential for account {credential_ref.account_id} cannot accept in {peer_account}"
            )

        budget = deadline.child(
            min(
                self.config.max_acceptance_wait_seconds,
                deadline.remaining() - self.config.deadline_safety_margin_seconds,
            )
        )
        budget_seconds = budget.remaining()

        def timed_out(error: Exception) -> AcceptanceTimeoutError:
            return AcceptanceTimeoutError(
                f"Peering connection {connection_id} was not accepted in account {peer_account} "
                f"within {budget_seconds:.0f}s budget: {error}"
            )

        try:
            credential = retry_with_backoff(
                lambda: self.broker.obtain(credential_ref, SESSION_NAME, deadline=budget),
                deadline=budget,
                policy=self.policy,
                retry_on=(BrokerUnavailableError,),
                description=f"assume {credential_ref.role_arn}",
            )
        except DeadlineExceededError as e:
            raise timed_out(e)

        peer_ec2 = self.clients.delegated(credential, "ec2", peer_region)
        peer_connections = PeeringConnectionManager(peer_ec2)
        accept_calls = []

        def attempt() -> AcceptedStatus:
            connection = peer_connections.describe(connection_id)
            if connection is None:
                raise ConnectionNotVisibleError(
                    f"{connection_id} not yet visible from account {peer_account}"
                )

            if connection.status == ConnectionStatus.ACTIVE:
                already = not accept_calls
                if already:
                    logger.info(f"Peering connection {connection_id} is already active")
                return AcceptedStatus(
                    connection_id=connection_id,
                    status=connection.status,
                    accepted_at=datetime.now(timezone.utc),
                    already_active=already,
                    accept_calls=len(accept_calls),
                )

            if connection.status.is_terminal:
                raise AcceptanceFailedError(
                    f"Peering connection {connection_id} is {connection.status_code}; it cannot be accepted"
                )

            if connection.status == ConnectionStatus.PENDING_ACCEPTANCE:
                status = self._accept_once(peer_ec2, connection_id)
                accept_calls.append(status)
                if status == ConnectionStatus.ACTIVE:
                    return AcceptedStatus(
                        connection_id=connection_id,
                        status=status,
                        accepted_at=datetime.now(timezone.utc),
                        accept_calls=len(accept_calls),
                    )
                raise ConnectionNotVisibleError(f"{connection_id} accepted, now {status.value}")

            # initiated or provisioning: the provider is still working
            raise ConnectionNotVisibleError(f"{connection_id} is {connection.status_code}")

        try:
            accepted = retry_with_backoff(
                attempt,
                deadline=budget,
                policy=self.policy,
                retry_on=(ConnectionNotVisibleError, ProviderThrottledError),
                description=f"accept {connection_id}",
                on_exhausted=timed_out,
            )
        except DeadlineExceededError as e:
            raise timed_out(e)

        logger.info(
            f"Peering connection {connection_id} active in account {peer_account} "
            f"({accepted.accept_calls} accept call(s))"
        )
        return accepted

    def _accept_once(self, peer_ec2, connection_id: str) -> ConnectionStatus:
        logger.info(f"Accepting peering connection: {connection_id}")
        try:
            response = peer_ec2.accept_vpc_peering_connection(VpcPeeringConnectionId=connection_id)
        except ClientError as e:
            code = error_code(e)
            if code in NOT_FOUND_CODES:
                raise ConnectionNotVisibleError(f"{connection_id} disappeared during accept")
            if code == "InvalidStateTransition":
                # Raced with another acceptance; describe again to find out where it is
                raise ConnectionNotVisibleError(f"{connection_id} changed state during accept")
            raise translate_client_error(e, f"AcceptVpcPeeringConnection {connection_id}")

        code = response.get("VpcPeeringConnection", {}).get("Status", {}).get("Code", "provisioning")
        logger.info(f"Accepted peering connection. Status: {code}")
        return ConnectionStatus.from_code(code)
