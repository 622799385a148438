"""
Credential broker: exchange a peer account's role for short-lived credentials.

A DelegatedCredential is passed explicitly to whatever needs to act in the
peer account. Nothing here falls back to the Lambda's own credentials, and
nothing is cached between calls.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import boto3
from botocore.exceptions import ClientError

from vpc_peering.errors import (
    THROTTLING_CODES,
    TRANSPORT_ERRORS,
    UNAVAILABLE_CODES,
    BrokerUnavailableError,
    TrustDeniedError,
    error_code,
)
from vpc_peering.models import CredentialRef
from vpc_peering.retry import Deadline

logger = logging.getLogger(__name__)

# STS refuses sessions shorter than this
MIN_SESSION_SECONDS = 900

DENIED_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "InvalidClientTokenId",
    "ExpiredToken",
    "RegionDisabledException",
    "MalformedPolicyDocument",
}


@dataclass(frozen=True)
class DelegatedCredential:
    """Temporary credentials scoped to one account and one operation."""
    account_id: str
    role_arn: str
    expiration: datetime
    access_key_id: str = field(repr=False)
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)

    def session(self, region: str) -> boto3.Session:
        return boto3.Session(
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            aws_session_token=self.session_token,
            region_name=region,
        )


class CredentialBroker:
    """Obtains DelegatedCredentials through STS AssumeRole."""

    def __init__(self, sts_client, duration_seconds: int = MIN_SESSION_SECONDS):
        self.sts = sts_client
        self.duration_seconds = duration_seconds

    def _session_duration(self, deadline: Optional[Deadline]) -> int:
        # Never ask for more than the invocation can use, but STS has a floor
        if deadline is None:
            return max(self.duration_seconds, MIN_SESSION_SECONDS)
        wanted = min(self.duration_seconds, math.ceil(deadline.remaining()))
        return max(wanted, MIN_SESSION_SECONDS)

    def obtain(
        self,
        ref: CredentialRef,
        session_name: str,
        deadline: Optional[Deadline] = None,
    ) -> DelegatedCredential:
        """
        Assume ``ref.role_arn`` and return credentials for ``ref.account_id``.

        Raises:
            TrustDeniedError: the role's trust policy rejects us, or STS handed
                back credentials for a different account. Not retried.
            BrokerUnavailableError: STS throttled or was unreachable. Retryable.
        """
        if deadline is not None:
            deadline.check(f"assuming role {ref.role_arn}")

        params = {
            "RoleArn": ref.role_arn,
            "RoleSessionName": session_name,
            "DurationSeconds": self._session_duration(deadline),
        }
        if ref.external_id:
            params["ExternalId"] = ref.external_id

        logger.info(f"Assuming role {ref.role_arn} for account {ref.account_id} ({session_name})")
        try:
            response = self.sts.assume_role(**params)
        except ClientError as e:
            code = error_code(e)
            if code in THROTTLING_CODES or code in UNAVAILABLE_CODES:
                raise BrokerUnavailableError(f"STS unavailable while assuming {ref.role_arn}: {code}")
            if code in DENIED_CODES:
                raise TrustDeniedError(
                    f"Trust policy of {ref.role_arn} does not allow this caller: {code}"
                )
            raise TrustDeniedError(f"Could not assume {ref.role_arn}: {code}: {e}")
        except TRANSPORT_ERRORS as e:
            raise BrokerUnavailableError(f"STS unreachable while assuming {ref.role_arn}: {e}")

        credentials = response.get("Credentials")
        if not credentials:
            raise BrokerUnavailableError(f"AssumeRole for {ref.role_arn} returned no credentials")

        # arn:aws:sts::<account>:assumed-role/<role>/<session>
        assumed_arn = response.get("AssumedRoleUser", {}).get("Arn", "")
        assumed_account = assumed_arn.split(":")[4] if assumed_arn.count(":") >= 5 else None
        if assumed_account and assumed_account != ref.account_id:
            raise TrustDeniedError(
                f"Role {ref.role_arn} resolved to account {assumed_account}, expected {ref.account_id}"
            )

        logger.info(f"Obtained credentials for account {ref.account_id}, expiring {credentials['Expiration']}")
        return DelegatedCredential(
            account_id=ref.account_id,
            role_arn=ref.role_arn,
            expiration=credentials["Expiration"],
            access_key_id=credentials["AccessKeyId"],
            secret_access_key=credentials["SecretAccessKey"],
            session_token=credentials["SessionToken"],
        )
