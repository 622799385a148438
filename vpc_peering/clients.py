"""boto3 client construction for the local account and for delegated credentials."""

from typing import Optional

import boto3

from vpc_peering.config import OrchestratorConfig
from vpc_peering.credentials import DelegatedCredential


class ClientFactory:
    """
    Builds provider clients with per-call timeouts.

    ``local`` uses the Lambda's own identity; ``delegated`` only ever uses the
    credential it is handed, so a peer-side call cannot silently run with the
    local account's permissions.
    """

    def __init__(self, config: OrchestratorConfig, session: Optional[boto3.Session] = None):
        self.config = config
        self.session = session or boto3.Session()

    def local(self, service: str, region: str):
        return self.session.client(service, region_name=region, config=self.config.client_config())

    def delegated(self, credential: DelegatedCredential, service: str, region: str):
        return credential.session(region).client(service, config=self.config.client_config())
