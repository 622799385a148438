"""
Lambda entry point for the VPC peering custom resource.

Decodes the CloudFormation event, runs the lifecycle dispatcher and delivers
exactly one response to the ResponseURL.
"""

import json
import logging
import os

import boto3

from vpc_peering.cfn_response import send_response
from vpc_peering.clients import ClientFactory
from vpc_peering.config import OrchestratorConfig
from vpc_peering.credentials import CredentialBroker
from vpc_peering.dispatcher import LifecycleDispatcher, decode_event
from vpc_peering.errors import RequestDecodeError
from vpc_peering.models import InvocationRecord, LifecycleResponse, RequestType

logger = logging.getLogger()
logger.setLevel(logging.INFO)

REDACTED_KEYS = {'ResponseURL'}


def redact(event):
    """Copy of the event that is safe to log."""
    if not isinstance(event, dict):
        return event
    return {key: ('<redacted>' if key in REDACTED_KEYS else value) for key, value in event.items()}


def build_dispatcher(config: OrchestratorConfig, region: str) -> LifecycleDispatcher:
    session = boto3.Session()
    clients = ClientFactory(config, session=session)
    broker = CredentialBroker(clients.local('sts', region), config.credential_duration_seconds)
    return LifecycleDispatcher(clients, broker, config)


def _undecodable(event, reason: str) -> InvocationRecord:
    """Minimal record for events whose RequestType itself is unusable, so they still get an answer."""
    event = event if isinstance(event, dict) else {}
    return InvocationRecord(
        request_type=RequestType.CREATE,
        physical_resource_id=event.get('PhysicalResourceId') or None,
        request=None,
        response_deadline_seconds=0,
        stack_id=event.get('StackId', ''),
        request_id=event.get('RequestId', ''),
        logical_resource_id=event.get('LogicalResourceId', ''),
        response_url=event.get('ResponseURL'),
        decode_error=reason,
    )


def load_config() -> OrchestratorConfig:
    """Config from the environment; a bad value must not stop the response from being sent."""
    try:
        return OrchestratorConfig.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration, using defaults: {e}")
        return OrchestratorConfig()


def lambda_handler(event, context):
    config = load_config()
    logger.setLevel(config.log_level.upper())
    logger.info(f"Event: {json.dumps(redact(event), default=str)}")

    region = os.environ.get('AWS_REGION') or os.environ.get('AWS_DEFAULT_REGION') or 'us-east-1'

    try:
        record = decode_event(event, context, config, default_region=region)
    except RequestDecodeError as e:
        logger.error(f"Cannot decode event: {e}")
        record = _undecodable(event, str(e))
        fallback_id = record.physical_resource_id or f"{record.logical_resource_id or 'vpc-peering'}-unresolved"
        response = LifecycleResponse.failure(fallback_id, f"RequestDecodeError: {e}")
    else:
        response = build_dispatcher(config, region).dispatch(record)

    logger.info(
        f"{record.request_type.value} finished: {response.status} "
        f"PhysicalResourceId={response.physical_resource_id} Reason={response.reason}"
    )

    # A failed delivery propagates so Lambda reports the error; CloudFormation would otherwise hang
    body = send_response(record, response, timeout=config.response_timeout_seconds)
    return body
