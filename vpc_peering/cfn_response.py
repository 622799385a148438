"""
Deliver the custom resource result to CloudFormation's pre-signed ResponseURL.
"""

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Dict

from vpc_peering.models import InvocationRecord, LifecycleResponse

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 4096
TRUNCATION_MARKER = " [truncated]"


def build_body(record: InvocationRecord, response: LifecycleResponse) -> Dict[str, Any]:
    """Response body, with Reason shortened so the whole body fits in 4096 bytes."""
    body = {
        'Status': response.status,
        'Reason': response.reason or f"See the details in CloudWatch Log Stream for {record.logical_resource_id}",
        'PhysicalResourceId': response.physical_resource_id,
        'StackId': record.stack_id,
        'RequestId': record.request_id,
        'LogicalResourceId': record.logical_resource_id,
        'NoEcho': False,
        'Data': response.data,
    }

    size = len(json.dumps(body).encode('utf-8'))
    if size > MAX_BODY_BYTES:
        reason = body['Reason']
        overflow = size - MAX_BODY_BYTES + len(TRUNCATION_MARKER)
        # json escaping can make a character cost more than one byte, so shrink until it fits
        while size > MAX_BODY_BYTES and reason:
            reason = reason[:max(0, len(reason) - overflow)]
            body['Reason'] = reason + TRUNCATION_MARKER
            size = len(json.dumps(body).encode('utf-8'))
            overflow = max(1, size - MAX_BODY_BYTES)
        if size > MAX_BODY_BYTES:
            # Data alone is too large; keep the status and drop the attributes
            logger.warning("Response data exceeds the response size limit, sending without Data")
            body['Data'] = {}
    return body


def send_response(record: InvocationRecord, response: LifecycleResponse, timeout: float = 10) -> Dict[str, Any]:
    """
    PUT the response to CloudFormation.

    Raises:
        ValueError: the event carried no ResponseURL
        urllib.error.URLError: the response could not be delivered
    """
    if not record.response_url:
        raise ValueError("Event has no ResponseURL; cannot deliver the response")

    body = build_body(record, response)
    json_response_body = json.dumps(body).encode('utf-8')

    req = urllib.request.Request(
        record.response_url,
        data=json_response_body,
        headers={'Content-Type': '', 'Content-Length': str(len(json_response_body))},
        method='PUT'
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as http_response:
            logger.info(f"Response sent: {body['Status']} ({http_response.status})")
    except urllib.error.URLError as e:
        logger.error(f"Failed to send response: {str(e)}")
        raise
    return body
