"""
Data models for the DLQ redrive engine.

This module defines the value objects passed between the poller, the redrive
conductor and the convergence loop. Using dataclasses keeps the data contracts
explicit, statically checked by mypy, and self-documenting. None of these
objects are persisted; the two SQS queues own all durable state.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from mypy_boto3_sqs.type_defs import MessageAttributeValueTypeDef, MessageTypeDef


@dataclass(frozen=True)
class Message:
    """
    A single message copy received from a queue.

    The identifier is unique per received copy, not per logical message: under
    at-least-once delivery the same payload can show up again with a new id.

    Attributes:
        message_id: The SQS MessageId. Used as the deduplication key and as the
                    correlation key (`Id`) of batch entries.
        body: The raw message body.
        attributes: The SQS MessageAttributes, propagated verbatim on redrive.
        receipt_handle: The per-delivery token required to delete the message.
                        Invalidated once the visibility timeout lapses.
    """

    message_id: str
    body: str
    attributes: Dict[str, MessageAttributeValueTypeDef] = field(default_factory=dict)
    receipt_handle: Optional[str] = None

    @classmethod
    def from_sqs(cls, raw: MessageTypeDef) -> "Message":
        """Builds a Message from an entry of a boto3 `receive_message` response."""
        return cls(
            message_id=raw.get("MessageId", ""),
            body=raw.get("Body", ""),
            attributes=dict(raw.get("MessageAttributes", {})),
            receipt_handle=raw.get("ReceiptHandle"),
        )


@dataclass(frozen=True)
class RedriveOutcome:
    """
    The classification of one redrive round over its input messages.

    The three counts are mutually exclusive and together cover every input
    message, so `total` always equals the size of the redriven set.

    Attributes:
        retried: Sent to the main queue and deleted from the DLQ.
        retried_not_deleted: Sent to the main queue, but the DLQ delete failed.
                             These messages now exist in both queues.
        not_retried: The send was rejected; the message is still only in the DLQ.
    """

    retried: int = 0
    retried_not_deleted: int = 0
    not_retried: int = 0

    @property
    def total(self) -> int:
        return self.retried + self.retried_not_deleted + self.not_retried

    @property
    def has_failures(self) -> bool:
        return self.retried_not_deleted > 0 or self.not_retried > 0


class RedriveStatus(str, Enum):
    """Terminal states of the convergence loop."""

    # The last round found no messages and no round reported a failure.
    CONVERGED = "converged"
    # Stopped without a failure while messages may remain in the DLQ.
    EXHAUSTED = "exhausted"
    # A round reported messages that were not retried or not deleted.
    ABORTED = "aborted"


@dataclass
class RedriveSummary:
    """
    The aggregated result of a redrive-all run.

    Attributes:
        status: How the loop ended.
        total_found: Messages polled from the DLQ across all rounds.
        total_retried: Messages confirmed moved (sent and deleted) across all rounds.
        rounds: The number of poll rounds executed.
        last_outcome: The outcome of the final redrive round. For an aborted run
                      this carries the failure counts the operator must act on.
    """

    status: RedriveStatus = RedriveStatus.CONVERGED
    total_found: int = 0
    total_retried: int = 0
    rounds: int = 0
    last_outcome: RedriveOutcome = field(default_factory=RedriveOutcome)
