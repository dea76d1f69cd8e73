"""
Core business logic for the DLQ redrive engine.

These functions are designed to be "pure" and testable: they make no AWS calls
except through the SQS client passed in as an argument, and hold no global
state. They receive all dependencies, including the Powertools logger, from the
handler in app.py, allowing them to be unit-tested in isolation.

Delivery semantics are at-least-once. A message that was sent to the main queue
but could not be deleted from the DLQ is reprocessed *and* stays in the DLQ;
re-running a redrive afterwards sends it again. That duplication is reported,
never hidden.
"""

import json
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    cast,
)

from aws_lambda_powertools import Logger

# Import boto3 stubs for full type-safety in function signatures
from mypy_boto3_sqs.client import SQSClient

# Import the specific TypeDefs required by the batch API calls.
from mypy_boto3_sqs.type_defs import (
    DeleteMessageBatchRequestEntryTypeDef,
    SendMessageBatchRequestEntryTypeDef,
)

from .model import Message, RedriveOutcome, RedriveStatus, RedriveSummary

# A single receive call is not guaranteed to return every visible message, so
# several are issued in parallel to hit more SQS servers at once.
POLL_BRANCHES = 3
POLL_STAGGER_SECONDS = 0.2
# 10 is the SQS maximum for receive, send batch and delete batch alike.
SQS_BATCH_LIMIT = 10
RECEIVE_WAIT_SECONDS = 3
# Only hide messages for 1 second when inspecting, to avoid disrupting the queue.
INSPECT_VISIBILITY_TIMEOUT = 1
# When redriving, reserve messages long enough that they do not reappear in the
# next round while SQS is still settling their deletion.
REDRIVE_VISIBILITY_TIMEOUT = 10
PURGE_SETTLE_SECONDS = 0.5

PollProgress = Callable[[int], None]
RedriveProgress = Callable[[int, int], None]


def _chunked(items: Sequence[Message], size: int) -> Iterator[Sequence[Message]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def poll_messages(
    sqs_client: SQSClient,
    queue_url: str,
    logger: Logger,
    visibility_timeout: int = INSPECT_VISIBILITY_TIMEOUT,
    progress_callback: Optional[PollProgress] = None,
    wait_time_seconds: int = RECEIVE_WAIT_SECONDS,
    branches: int = POLL_BRANCHES,
    stagger_seconds: float = POLL_STAGGER_SECONDS,
) -> Dict[str, Message]:
    """
    Polls a queue with several concurrent receive calls and merges the results.

    Each branch returns its own list of messages; the merge into the shared
    dictionary happens only in the calling thread, one completed branch at a
    time, so no locking is needed. Branch launches are staggered to spread the
    load across SQS servers.

    Args:
        sqs_client: The boto3 SQS client.
        queue_url: The URL of the queue to poll.
        logger: The Powertools Logger instance for structured logging.
        visibility_timeout: Seconds received messages stay hidden from other consumers.
        progress_callback: Called with the running unique-message count after
                           each branch is merged.
        wait_time_seconds: Server-side long-poll duration per receive call.
        branches: The number of concurrent receive calls.
        stagger_seconds: The delay between successive branch launches.

    Returns:
        A dictionary of messages keyed by message id. The first copy seen of an
        id wins. An empty dictionary only means nothing was visible at poll time.

    Raises:
        botocore.exceptions.ClientError: If any receive call fails. Outstanding
            branches are allowed to finish before the error propagates.
    """

    def _receive() -> List[Message]:
        response = sqs_client.receive_message(
            QueueUrl=queue_url,
            MaxNumberOfMessages=SQS_BATCH_LIMIT,
            WaitTimeSeconds=wait_time_seconds,
            VisibilityTimeout=visibility_timeout,
            MessageAttributeNames=["All"],
        )
        return [Message.from_sqs(raw) for raw in response.get("Messages", [])]

    messages: Dict[str, Message] = {}
    duplicates = 0
    with ThreadPoolExecutor(max_workers=branches) as executor:
        futures = []
        for i in range(branches):
            if i > 0:
                time.sleep(stagger_seconds)
            futures.append(executor.submit(_receive))

        for future in as_completed(futures):
            for message in future.result():
                if message.message_id in messages:
                    duplicates += 1
                    continue
                messages[message.message_id] = message
            if progress_callback:
                progress_callback(len(messages))

    logger.debug(
        "Polled queue.",
        extra={
            "queue_url": queue_url,
            "unique_messages": len(messages),
            "duplicates_dropped": duplicates,
        },
    )
    return messages


def redrive_messages(
    sqs_client: SQSClient,
    queue_url: str,
    dlq_url: str,
    messages: Mapping[str, Message],
    logger: Logger,
) -> RedriveOutcome:
    """
    Moves messages from the DLQ back to the main queue and classifies the result.

    All messages are first sent to the main queue. Only the ones SQS did not
    report as failed are then deleted from the DLQ, using their receipt handles.
    Batches are chunked by the SQS limit of 10 entries, and every send completes
    before the first delete is issued.

    Per-entry failures are never raised; they are folded into the outcome:
      - `not_retried`: the send was rejected, the message is untouched in the DLQ.
      - `retried_not_deleted`: sent, but the delete failed, was not reported, or
        the message had no receipt handle. It is now in both queues.
      - `retried`: sent and deleted.

    Args:
        sqs_client: The boto3 SQS client.
        queue_url: The URL of the main queue.
        dlq_url: The URL of the dead letter queue.
        messages: The deduplicated messages to redrive, keyed by message id.
        logger: The Powertools Logger instance for structured logging.

    Returns:
        A RedriveOutcome whose counts add up to `len(messages)`.

    Raises:
        ValueError: If a message has no id. Raised before any network call.
        botocore.exceptions.ClientError: If a batch call fails as a whole. No
            partial outcome is produced in that case.
    """
    if not messages:
        return RedriveOutcome()

    ordered = list(messages.values())
    if any(not message.message_id for message in ordered):
        raise ValueError("Found a message with no ID; refusing to redrive the batch.")

    # Step 1: send everything to the main queue.
    send_failed_ids: Set[str] = set()
    for batch in _chunked(ordered, SQS_BATCH_LIMIT):
        send_entries = cast(
            List[SendMessageBatchRequestEntryTypeDef],
            [_send_entry(message) for message in batch],
        )
        response = sqs_client.send_message_batch(
            QueueUrl=queue_url, Entries=send_entries
        )
        if failed_batch := response.get("Failed"):
            logger.warning(
                "Partial failure in SQS send batch.",
                extra={"failed_messages": failed_batch},
            )
            send_failed_ids.update(f["Id"] for f in failed_batch)

    sent = [m for m in ordered if m.message_id not in send_failed_ids]

    # Step 2: delete from the DLQ only what reached the main queue.
    deletable = [m for m in sent if m.receipt_handle]
    if len(deletable) < len(sent):
        logger.warning(
            "Messages without a receipt handle cannot be deleted from the DLQ.",
            extra={"message_ids": [m.message_id for m in sent if not m.receipt_handle]},
        )

    deleted_ids: Set[str] = set()
    for batch in _chunked(deletable, SQS_BATCH_LIMIT):
        delete_entries = cast(
            List[DeleteMessageBatchRequestEntryTypeDef],
            [{"Id": m.message_id, "ReceiptHandle": m.receipt_handle} for m in batch],
        )
        response = sqs_client.delete_message_batch(
            QueueUrl=dlq_url, Entries=delete_entries
        )
        deleted_ids.update(s["Id"] for s in response.get("Successful", []))
        if failed_batch := response.get("Failed"):
            logger.warning(
                "Partial failure in SQS delete batch.",
                extra={"failed_messages": failed_batch},
            )

    # Step 3: classify every input message exactly once.
    retried = sum(1 for m in sent if m.message_id in deleted_ids)
    outcome = RedriveOutcome(
        retried=retried,
        retried_not_deleted=len(sent) - retried,
        not_retried=len(ordered) - len(sent),
    )

    if outcome.retried_not_deleted:
        logger.warning(
            f"{outcome.retried_not_deleted} failed messages were not successfully "
            "deleted from the dead letter queue. These messages will be retried in "
            "the main queue, but they will also still be present in the dead letter "
            "queue."
        )
    logger.info(
        "Redrive batch classified.",
        extra={
            "retried": outcome.retried,
            "retried_not_deleted": outcome.retried_not_deleted,
            "not_retried": outcome.not_retried,
        },
    )
    return outcome


def _send_entry(message: Message) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"Id": message.message_id, "MessageBody": message.body}
    if message.attributes:
        entry["MessageAttributes"] = message.attributes
    return entry


def redrive_all(
    sqs_client: SQSClient,
    queue_url: str,
    dlq_url: str,
    logger: Logger,
    progress_callback: Optional[RedriveProgress] = None,
    visibility_timeout: int = REDRIVE_VISIBILITY_TIMEOUT,
    max_rounds: Optional[int] = None,
    wait_time_seconds: int = RECEIVE_WAIT_SECONDS,
    stagger_seconds: float = POLL_STAGGER_SECONDS,
) -> RedriveSummary:
    """
    Repeatedly polls the DLQ and redrives what it finds until it looks empty.

    Rounds are strictly sequential: the next poll only starts once the previous
    round has been classified. The loop stops:
      - with CONVERGED as soon as a poll returns no messages;
      - with ABORTED as soon as a round has any not-retried or
        retried-but-not-deleted message. Further automatic retries on top of a
        known partial failure could hide lost or duplicated work;
      - with EXHAUSTED if a round found messages but retried none, or if
        `max_rounds` polls have been made. Messages may remain in the DLQ.

    Args:
        sqs_client: The boto3 SQS client.
        queue_url: The URL of the main queue.
        dlq_url: The URL of the dead letter queue.
        logger: The Powertools Logger instance for structured logging.
        progress_callback: Called with `(total_retried, total_found)` after the
                           poll and after the redrive of each round.
        visibility_timeout: Seconds polled messages are reserved for this run.
        max_rounds: An optional cap on the number of poll rounds.
        wait_time_seconds: Server-side long-poll duration per receive call.
        stagger_seconds: The delay between successive poll branch launches.

    Returns:
        A RedriveSummary with the totals and, for an aborted run, the failure
        counts of the round that stopped it.
    """
    summary = RedriveSummary()

    while True:
        if max_rounds is not None and summary.rounds >= max_rounds:
            summary.status = RedriveStatus.EXHAUSTED
            logger.warning(
                "Stopping redrive: round limit reached.",
                extra={"max_rounds": max_rounds},
            )
            break

        messages = poll_messages(
            sqs_client,
            dlq_url,
            logger,
            visibility_timeout=visibility_timeout,
            wait_time_seconds=wait_time_seconds,
            stagger_seconds=stagger_seconds,
        )
        summary.rounds += 1
        if not messages:
            summary.status = RedriveStatus.CONVERGED
            break

        summary.total_found += len(messages)
        if progress_callback:
            progress_callback(summary.total_retried, summary.total_found)

        outcome = redrive_messages(sqs_client, queue_url, dlq_url, messages, logger)
        summary.total_retried += outcome.retried
        summary.last_outcome = outcome
        if progress_callback:
            progress_callback(summary.total_retried, summary.total_found)

        if outcome.has_failures:
            summary.status = RedriveStatus.ABORTED
            logger.error(
                "Stopping redrive because of failed messages.",
                extra={
                    "total_retried": summary.total_retried,
                    "not_retried": outcome.not_retried,
                    "retried_not_deleted": outcome.retried_not_deleted,
                },
            )
            break

        # The three counts cover every polled message, so a round that retried
        # nothing has already aborted above unless that invariant is broken.
        if outcome.retried == 0:
            summary.status = RedriveStatus.EXHAUSTED
            logger.warning(
                "Stopping redrive: a round found messages but retried none.",
                extra={"found": len(messages)},
            )
            break

    logger.info(
        "Redrive finished.",
        extra={
            "status": summary.status.value,
            "total_found": summary.total_found,
            "total_retried": summary.total_retried,
            "rounds": summary.rounds,
        },
    )
    return summary


def list_failed(
    sqs_client: SQSClient,
    dlq_url: str,
    logger: Logger,
    progress_callback: Optional[PollProgress] = None,
    visibility_timeout: int = INSPECT_VISIBILITY_TIMEOUT,
    wait_time_seconds: int = RECEIVE_WAIT_SECONDS,
    stagger_seconds: float = POLL_STAGGER_SECONDS,
) -> List[Message]:
    """
    Returns the messages currently visible in the DLQ, without redriving them.

    Safe to call repeatedly; successive calls can return different results
    since SQS only offers a best-effort snapshot.
    """
    messages = poll_messages(
        sqs_client,
        dlq_url,
        logger,
        visibility_timeout=visibility_timeout,
        progress_callback=progress_callback,
        wait_time_seconds=wait_time_seconds,
        stagger_seconds=stagger_seconds,
    )
    return list(messages.values())


def purge_all(
    sqs_client: SQSClient,
    dlq_url: str,
    logger: Logger,
    settle_seconds: float = PURGE_SETTLE_SECONDS,
) -> None:
    """
    Purges the DLQ, then waits briefly.

    SQS sometimes still returns messages right after a purge is issued. The
    short wait makes it less likely that an immediate listing shows them, but
    purge completion is not verified.
    """
    sqs_client.purge_queue(QueueUrl=dlq_url)
    logger.info("Purge issued.", extra={"queue_url": dlq_url})
    time.sleep(settle_seconds)


def send_message(
    sqs_client: SQSClient, queue_url: str, body: str, logger: Logger
) -> str:
    """Sends a single message to the main queue and returns its message id."""
    if not body:
        raise ValueError("The message body cannot be empty.")
    response = sqs_client.send_message(QueueUrl=queue_url, MessageBody=body)
    message_id = response.get("MessageId", "")
    logger.info(
        "Message sent.", extra={"queue_url": queue_url, "message_id": message_id}
    )
    return message_id


def format_message_body(body: str) -> str:
    """Pretty-prints a JSON body; any other body is returned as-is."""
    try:
        return json.dumps(json.loads(body), indent=2)
    except ValueError:
        return body


def emit_metrics(
    environment: str, status: str, payload: Dict[str, Any], logger: Logger
) -> None:
    """
    Formats and logs metrics in CloudWatch Embedded Metric Format (EMF).

    Dashboards and alarms should filter/group by the 'Environment' dimension.
    """
    base_metrics = {
        "MessagesFound": payload.get("total_found", 0),
        "MessagesRetried": payload.get("total_retried", 0),
        "MessagesNotRetried": payload.get("not_retried", 0),
        "MessagesRetriedNotDeleted": payload.get("retried_not_deleted", 0),
    }
    if "latency_ms" in payload:
        base_metrics["LatencyMs"] = payload["latency_ms"]

    emf_payload = {
        "_aws": {
            "Timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
            "CloudWatchMetrics": [
                {
                    "Namespace": "DlqRedrive",
                    "Dimensions": [["Environment"]],
                    "Metrics": [
                        {
                            "Name": k,
                            "Unit": "Milliseconds" if "Latency" in k else "Count",
                        }
                        for k in base_metrics
                    ],
                }
            ],
        },
        "Environment": environment,
        "Status": status,
        **payload,
        **base_metrics,
    }
    logger.info(json.dumps(emf_payload))
