"""
Main AWS Lambda handler for the DLQ redrive engine.

This module serves as the operator-facing entry point. Its responsibilities include:
  - Loading and validating configuration from environment variables.
  - Initializing and caching the SQS client.
  - Dispatching one of a fixed set of operations (list, purge, retry, send).
  - Calling the pure, testable business logic functions from the 'core' module.
  - Rendering the outcome as human-readable report lines and emitting metrics.
"""

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from aws_lambda_powertools import Logger
from mypy_boto3_sqs import SQSClient

from . import clients, core
from .model import Message, RedriveStatus, RedriveSummary

# --- 1. SETUP: Configuration, Validation, and Clients ---


def get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Gets an environment variable or raises a ValueError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.

    Returns:
        The value of the environment variable.

    Raises:
        ValueError: If the required environment variable is not set.
    """
    value = os.environ.get(name, default)
    if value is None:
        raise ValueError(f"FATAL: Environment variable '{name}' is not set.")
    return value


LOG_LEVEL = get_env_var("LOG_LEVEL", "INFO").upper()
logger = Logger(service="dlq-redrive", level=LOG_LEVEL)

SQS: Optional[SQSClient] = None


class Operation(str, Enum):
    LIST = "failed"
    PURGE = "failed:purge"
    RETRY = "failed:retry"
    SEND = "send"


@dataclass(frozen=True)
class Config:
    """
    Runtime settings, read from the environment on every invocation.

    The queues are optional here because each operation needs a different
    subset. Each may be a queue URL or a bare queue name; the operation checks
    and resolves the ones it needs before it touches a queue.
    """

    queue_url: Optional[str]
    dlq_url: Optional[str]
    environment: str
    inspect_visibility_timeout: int
    redrive_visibility_timeout: int
    receive_wait_seconds: int
    purge_settle_seconds: float
    max_rounds: Optional[int]


def load_config() -> Config:
    """
    Reads the runtime settings from the environment.

    Raises:
        ValueError: If a numeric setting is malformed or MAX_REDRIVE_ROUNDS is
                    lower than 1.
    """
    max_rounds_value = os.environ.get("MAX_REDRIVE_ROUNDS")
    max_rounds = int(max_rounds_value) if max_rounds_value else None
    if max_rounds is not None and max_rounds < 1:
        raise ValueError(f"MAX_REDRIVE_ROUNDS must be at least 1, got {max_rounds}.")

    return Config(
        queue_url=os.environ.get("QUEUE_URL") or None,
        dlq_url=os.environ.get("DLQ_URL") or None,
        environment=get_env_var("ENVIRONMENT", "dev"),
        inspect_visibility_timeout=int(
            get_env_var(
                "INSPECT_VISIBILITY_TIMEOUT", str(core.INSPECT_VISIBILITY_TIMEOUT)
            )
        ),
        redrive_visibility_timeout=int(
            get_env_var(
                "REDRIVE_VISIBILITY_TIMEOUT", str(core.REDRIVE_VISIBILITY_TIMEOUT)
            )
        ),
        receive_wait_seconds=int(
            get_env_var("RECEIVE_WAIT_SECONDS", str(core.RECEIVE_WAIT_SECONDS))
        ),
        purge_settle_seconds=float(
            get_env_var("PURGE_SETTLE_SECONDS", str(core.PURGE_SETTLE_SECONDS))
        ),
        max_rounds=max_rounds,
    )


def get_sqs_client() -> SQSClient:
    """Returns the cached SQS client, creating it on first use."""
    global SQS
    if SQS is None:
        SQS = clients.get_sqs_client()
    return SQS


def _resolve_queue(
    sqs: SQSClient, queue: Optional[str], description: str, env_name: str
) -> str:
    """Turns a configured queue URL or queue name into a queue URL."""
    if not queue:
        raise ValueError(
            f"Could not find the {description} ({env_name} is not set). "
            "Was the queue deployed?"
        )
    return clients.resolve_queue_url(sqs, queue)


# --- 2. OPERATIONS ---


def list_failed_messages(config: Config) -> Dict[str, Any]:
    sqs = get_sqs_client()
    dlq_url = _resolve_queue(sqs, config.dlq_url, "dead letter queue", "DLQ_URL")

    def _progress(found: int) -> None:
        logger.info(
            f"Polling failed messages from the dead letter queue ({found} found)"
        )

    messages = core.list_failed(
        sqs,
        dlq_url,
        logger,
        progress_callback=_progress,
        visibility_timeout=config.inspect_visibility_timeout,
        wait_time_seconds=config.receive_wait_seconds,
    )
    return {
        "total_found": len(messages),
        "messages": [{"messageId": m.message_id, "body": m.body} for m in messages],
        "report": render_listing(messages),
    }


def purge_failed_messages(config: Config) -> Dict[str, Any]:
    sqs = get_sqs_client()
    dlq_url = _resolve_queue(sqs, config.dlq_url, "dead letter queue", "DLQ_URL")
    core.purge_all(sqs, dlq_url, logger, settle_seconds=config.purge_settle_seconds)
    return {
        "report": ["The dead letter queue has been purged, failed messages are gone."]
    }


def retry_failed_messages(config: Config) -> Dict[str, Any]:
    sqs = get_sqs_client()
    queue_url = _resolve_queue(sqs, config.queue_url, "queue", "QUEUE_URL")
    dlq_url = _resolve_queue(sqs, config.dlq_url, "dead letter queue", "DLQ_URL")

    def _progress(retried: int, found: int) -> None:
        logger.info(
            "Moving failed messages from DLQ to the main queue to be retried "
            f"({retried}/{found})"
        )

    summary = core.redrive_all(
        sqs,
        queue_url,
        dlq_url,
        logger,
        progress_callback=_progress,
        visibility_timeout=config.redrive_visibility_timeout,
        max_rounds=config.max_rounds,
        wait_time_seconds=config.receive_wait_seconds,
    )
    return {
        "status": summary.status.value,
        "total_found": summary.total_found,
        "total_retried": summary.total_retried,
        "rounds": summary.rounds,
        "not_retried": summary.last_outcome.not_retried,
        "retried_not_deleted": summary.last_outcome.retried_not_deleted,
        "report": render_summary(summary),
    }


def send_one_message(config: Config, body: Optional[str]) -> Dict[str, Any]:
    sqs = get_sqs_client()
    queue_url = _resolve_queue(sqs, config.queue_url, "queue", "QUEUE_URL")
    message_id = core.send_message(sqs, queue_url, body or "", logger)
    return {
        "messageId": message_id,
        "report": [f"Message {message_id} sent to the queue."],
    }


# --- 3. RENDERING ---


def render_listing(messages: List[Message]) -> List[str]:
    if not messages:
        return ["No failed messages found in the dead letter queue."]
    lines = [f"{len(messages)} messages found in the dead letter queue:"]
    for message in messages:
        lines.append(f"Message #{message.message_id or '?'}")
        lines.append(core.format_message_body(message.body))
        lines.append("")
    lines.append(
        f"Run '{Operation.RETRY.value}' to retry all messages, "
        f"or '{Operation.PURGE.value}' to delete those messages forever."
    )
    return lines


def render_summary(summary: RedriveSummary) -> List[str]:
    """Renders the redrive result the way an operator needs to read it."""
    outcome = summary.last_outcome
    if summary.status is RedriveStatus.ABORTED:
        lines = ["There were some errors:"]
        if summary.total_retried > 0:
            lines.append(
                f"{summary.total_retried} failed messages have been successfully "
                "moved to the main queue to be retried."
            )
        if outcome.not_retried > 0:
            lines.append(
                f"{outcome.not_retried} failed messages could not be retried "
                "(SQS refused to move them). These messages are still in the "
                "dead letter queue. Maybe try again?"
            )
        if outcome.retried_not_deleted > 0:
            lines.append(
                f"{outcome.retried_not_deleted} failed messages were moved to the "
                "main queue, but were not successfully deleted from the dead letter "
                "queue. That means that these messages will be retried in the main "
                "queue, but they will also still be present in the dead letter queue."
            )
        lines.append(
            "Stopping now because of the error above. Not all messages have been "
            "retried, run the command again to continue."
        )
        return lines

    if summary.status is RedriveStatus.EXHAUSTED:
        return [
            f"{summary.total_retried} failed message(s) moved to the main queue "
            "to be retried.",
            "Stopped before the dead letter queue appeared empty. Some messages "
            "may still be there, run the command again to continue.",
        ]

    if summary.total_found == 0:
        return ["No failed messages found in the dead letter queue."]

    return [
        f"{summary.total_retried} failed message(s) moved to the main queue "
        "to be retried."
    ]


def _build_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """Centralized helper to build the final Lambda response."""
    return {"statusCode": status_code, "body": json.dumps(body)}


# --- 4. LAMBDA HANDLER ---


def handler(event: Dict, context: Any):
    """
    Main Lambda entry point. Runs one operation against the queues.

    The event selects the operation with `operation` (one of the `Operation`
    values, default `failed`) and, for `send`, carries the message `body`.
    Finding zero messages is a success for every operation. An aborted redrive
    also returns 200: its body carries the status and the failure counts.

    Configuration and SQS errors are logged, reported as a failure metric and
    re-raised.
    """
    start_time = datetime.now(timezone.utc)

    try:
        config = load_config()
        operation = Operation(event.get("operation", Operation.LIST.value))
        logger.info(f"Running operation '{operation.value}'.")

        if operation is Operation.LIST:
            body = list_failed_messages(config)
        elif operation is Operation.PURGE:
            body = purge_failed_messages(config)
        elif operation is Operation.RETRY:
            body = retry_failed_messages(config)
        else:
            body = send_one_message(config, event.get("body"))

        latency_ms = int(
            (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
        )
        metrics_payload = {
            k: v
            for k, v in body.items()
            if isinstance(v, int) and not isinstance(v, bool)
        }
        metrics_payload["latency_ms"] = latency_ms
        aborted = body.get("status") == RedriveStatus.ABORTED.value
        status = "PartialFailure" if aborted else "Success"
        core.emit_metrics(config.environment, status, metrics_payload, logger)

        for line in body["report"]:
            logger.info(line)
        return _build_response(200, {"operation": operation.value, **body})

    except Exception as e:
        latency_ms = int(
            (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
        )
        error_payload = {
            "error_type": type(e).__name__,
            "error_message": str(e),
            "latency_ms": latency_ms,
        }
        environment = os.environ.get("ENVIRONMENT", "dev")
        core.emit_metrics(environment, "Failure", error_payload, logger)
        logger.exception(f"Operation failed: {json.dumps(error_payload)}")
        raise
