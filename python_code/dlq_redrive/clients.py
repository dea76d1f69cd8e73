"""
A factory module for creating and providing the boto3 SQS client.

The redrive engine never talks to SQS through anything but the client returned
here, which keeps the business logic in `core` testable with a mocked client
or with `moto` intercepting the real one.
"""

import logging
import os

import boto3
import botocore.config

from mypy_boto3_sqs import SQSClient

logger = logging.getLogger(__name__)

# Transport-level retries live in the client, not in the redrive logic: a
# per-entry batch failure is never retried, a throttled or dropped request is.
BOTO_CONFIG_RETRYABLE = botocore.config.Config(
    retries={"max_attempts": 5, "mode": "adaptive"}
)


def get_sqs_client() -> SQSClient:
    """
    Returns an SQS client configured with the shared retry policy.

    The AWS region is explicitly read from the environment to ensure consistent
    and predictable behavior. If `USE_MOTO` is set, the client is expected to be
    intercepted by an active `moto` mock.
    """
    aws_region = os.environ.get("AWS_REGION")
    if not aws_region:
        logger.warning("AWS_REGION not set, boto3 will attempt to resolve it.")

    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked SQS client.")

    sqs_client: SQSClient = boto3.client(
        "sqs", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE
    )
    return sqs_client


def resolve_queue_url(sqs_client: SQSClient, queue: str) -> str:
    """
    Returns a queue URL for either a queue URL or a bare queue name.

    Raises:
        ValueError: If `queue` is empty.
        botocore.exceptions.ClientError: If the named queue does not exist.
    """
    if not queue:
        raise ValueError("Queue reference is empty; cannot resolve a queue URL.")
    if queue.startswith("https://") or queue.startswith("http://"):
        return queue
    return sqs_client.get_queue_url(QueueName=queue)["QueueUrl"]
