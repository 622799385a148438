"""
Error taxonomy for the VPC peering orchestrator.

Components raise these typed errors; only the lifecycle dispatcher turns them
into a CloudFormation response. ``retryable`` marks transient conditions that
the components themselves retry with backoff.
"""

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "RequestThrottled",
    "SlowDown",
}

UNAVAILABLE_CODES = {
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "Unavailable",
    "RequestTimeout",
    "RequestExpired",
}

# Network-level failures botocore raises instead of a ClientError
TRANSPORT_ERRORS = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)


class PeeringError(Exception):
    """Base class for every orchestration failure."""

    retryable = False


class RequestDecodeError(PeeringError):
    """The lifecycle notification or its properties could not be decoded."""


class TrustDeniedError(PeeringError):
    """The peer account's trust policy does not authorize this caller."""


class BrokerUnavailableError(PeeringError):
    retryable = True


class InvalidTopologyError(PeeringError):
    """The two networks cannot be peered (overlapping address ranges)."""


class ProviderThrottledError(PeeringError):
    retryable = True


class ProviderError(PeeringError):
    """Any other provider failure, surfaced verbatim."""


class ConnectionNotVisibleError(PeeringError):
    """The peer account cannot see the connection yet (propagation lag)."""

    retryable = True


class AcceptanceTimeoutError(PeeringError):
    pass


class AcceptanceFailedError(PeeringError):
    """The connection was rejected, expired or deleted before acceptance."""


class RouteConflictError(PeeringError):
    """A route for the owned destination already points somewhere else."""


class DeadlineExceededError(PeeringError):
    pass


class IllegalTransitionError(PeeringError):
    pass


def error_code(error: ClientError) -> str:
    """Return the AWS error code carried by a ClientError."""
    return error.response.get("Error", {}).get("Code", "")


def translate_client_error(error: ClientError, action: str) -> PeeringError:
    """
    Map a botocore ClientError to the orchestrator taxonomy.

    Callers handle the codes that carry meaning for them (NotFound and
    friends) before falling back to this.
    """
    code = error_code(error)
    message = error.response.get("Error", {}).get("Message", str(error))

    if code in THROTTLING_CODES:
        return ProviderThrottledError(f"{action} throttled by provider: {code}")
    if code in UNAVAILABLE_CODES:
        return ProviderThrottledError(f"{action} failed transiently: {code}: {message}")
    if code in ("UnauthorizedOperation", "AccessDenied", "AccessDeniedException", "AuthFailure"):
        return TrustDeniedError(f"{action} not authorized: {code}: {message}")
    return ProviderError(f"{action} failed: {code}: {message}")
