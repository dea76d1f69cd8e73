"""Unit tests for the parallel poller and the inspection/purge operations."""

from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from conftest import DLQ_URL, QUEUE_URL, raw_message, receive_response
from dlq_redrive import core


class TestPollMessages:
    def test_empty_queue_returns_empty_set(self, mock_sqs, logger):
        messages = core.poll_messages(mock_sqs, DLQ_URL, logger, stagger_seconds=0)

        assert messages == {}
        assert mock_sqs.receive_message.call_count == core.POLL_BRANCHES

    def test_overlapping_branches_are_deduplicated(self, mock_sqs, logger):
        """Two branches both return M plus one unique message each."""
        shared = raw_message("M")
        mock_sqs.receive_message.side_effect = [
            receive_response([shared, raw_message("A")]),
            receive_response([dict(shared), raw_message("B")]),
            receive_response([]),
        ]

        messages = core.poll_messages(mock_sqs, DLQ_URL, logger, stagger_seconds=0)

        assert sorted(messages) == ["msg-A", "msg-B", "msg-M"]

    def test_same_id_in_every_branch_is_kept_once(self, mock_sqs, logger):
        mock_sqs.receive_message.return_value = receive_response(
            [raw_message(1), raw_message(1)]
        )

        messages = core.poll_messages(mock_sqs, DLQ_URL, logger, stagger_seconds=0)

        assert list(messages) == ["msg-1"]
        assert messages["msg-1"].receipt_handle == "receipt-1"

    def test_receive_parameters(self, mock_sqs, logger):
        core.poll_messages(
            mock_sqs, DLQ_URL, logger, visibility_timeout=7, wait_time_seconds=2, stagger_seconds=0
        )

        mock_sqs.receive_message.assert_called_with(
            QueueUrl=DLQ_URL,
            MaxNumberOfMessages=10,
            WaitTimeSeconds=2,
            VisibilityTimeout=7,
            MessageAttributeNames=["All"],
        )

    def test_default_visibility_timeout_is_short(self, mock_sqs, logger):
        core.poll_messages(mock_sqs, DLQ_URL, logger, stagger_seconds=0)

        _, kwargs = mock_sqs.receive_message.call_args
        assert kwargs["VisibilityTimeout"] == 1
        assert kwargs["WaitTimeSeconds"] == 3

    def test_branch_launches_are_staggered(self, mock_sqs, logger):
        with patch("dlq_redrive.core.time.sleep") as mock_sleep:
            core.poll_messages(mock_sqs, DLQ_URL, logger)

        assert mock_sleep.call_count == core.POLL_BRANCHES - 1
        mock_sleep.assert_called_with(0.2)

    def test_progress_reports_running_unique_count(self, mock_sqs, logger):
        mock_sqs.receive_message.side_effect = [
            receive_response([raw_message(1), raw_message(2)]),
            receive_response([raw_message(2), raw_message(3)]),
            receive_response([raw_message(1)]),
        ]
        counts = []

        core.poll_messages(
            mock_sqs, DLQ_URL, logger, progress_callback=counts.append, stagger_seconds=0
        )

        assert len(counts) == core.POLL_BRANCHES
        assert counts == sorted(counts)
        assert counts[-1] == 3

    def test_message_attributes_are_kept(self, mock_sqs, logger):
        attributes = {"Tenant": {"StringValue": "acme", "DataType": "String"}}
        mock_sqs.receive_message.side_effect = [
            receive_response([raw_message(1, MessageAttributes=attributes)]),
            receive_response([]),
            receive_response([]),
        ]

        messages = core.poll_messages(mock_sqs, DLQ_URL, logger, stagger_seconds=0)

        assert messages["msg-1"].attributes == attributes
        assert messages["msg-1"].body == '{"index": "1"}'

    def test_transport_error_propagates(self, mock_sqs, logger):
        mock_sqs.receive_message.side_effect = ClientError(
            {"Error": {"Code": "AWS.SimpleQueueService.NonExistentQueue", "Message": "gone"}},
            "ReceiveMessage",
        )

        with pytest.raises(ClientError):
            core.poll_messages(mock_sqs, DLQ_URL, logger, stagger_seconds=0)


class TestInspectionAndPurge:
    def test_list_failed_returns_messages_without_mutating(self, mock_sqs, logger):
        mock_sqs.receive_message.side_effect = [
            receive_response([raw_message(1), raw_message(2)]),
            receive_response([raw_message(2)]),
            receive_response([]),
        ]

        messages = core.list_failed(mock_sqs, DLQ_URL, logger, stagger_seconds=0)

        assert sorted(m.message_id for m in messages) == ["msg-1", "msg-2"]
        mock_sqs.send_message_batch.assert_not_called()
        mock_sqs.delete_message_batch.assert_not_called()
        mock_sqs.purge_queue.assert_not_called()

    def test_list_failed_on_empty_queue(self, mock_sqs, logger):
        assert core.list_failed(mock_sqs, DLQ_URL, logger, stagger_seconds=0) == []

    def test_purge_all_waits_to_settle(self, mock_sqs, logger):
        with patch("dlq_redrive.core.time.sleep") as mock_sleep:
            core.purge_all(mock_sqs, DLQ_URL, logger)

        mock_sqs.purge_queue.assert_called_once_with(QueueUrl=DLQ_URL)
        mock_sleep.assert_called_once_with(0.5)

    def test_listing_after_purge_tolerates_stale_entries(self, mock_sqs, logger):
        """A listing right after a purge may still see messages; a later one does not."""
        mock_sqs.receive_message.side_effect = [
            receive_response([raw_message(1)]),
            receive_response([]),
            receive_response([]),
            receive_response([]),
            receive_response([]),
            receive_response([]),
        ]

        core.purge_all(mock_sqs, DLQ_URL, logger, settle_seconds=0)
        stale = core.list_failed(mock_sqs, DLQ_URL, logger, stagger_seconds=0)
        settled = core.list_failed(mock_sqs, DLQ_URL, logger, stagger_seconds=0)

        assert [m.message_id for m in stale] == ["msg-1"]
        assert settled == []

    def test_send_message(self, mock_sqs, logger):
        message_id = core.send_message(mock_sqs, QUEUE_URL, '{"hello": "world"}', logger)

        assert message_id == "sent-1"
        mock_sqs.send_message.assert_called_once_with(
            QueueUrl=QUEUE_URL, MessageBody='{"hello": "world"}'
        )

    def test_send_message_rejects_empty_body(self, mock_sqs, logger):
        with pytest.raises(ValueError, match="cannot be empty"):
            core.send_message(mock_sqs, QUEUE_URL, "", logger)

        mock_sqs.send_message.assert_not_called()

    @pytest.mark.parametrize(
        "body, expected",
        [
            ('{"a":1}', '{\n  "a": 1\n}'),
            ("plain text", "plain text"),
            ("", ""),
        ],
    )
    def test_format_message_body(self, body, expected):
        assert core.format_message_body(body) == expected
