"""Shared fixtures for the DLQ redrive tests."""

import os
from typing import Any, Dict, List
from unittest.mock import MagicMock

import pytest
from aws_lambda_powertools import Logger

QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/123456789012/jobs"
DLQ_URL = "https://sqs.us-east-1.amazonaws.com/123456789012/jobs-dlq"


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so no test can ever reach a real AWS account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.setenv("AWS_REGION", "us-east-1")


@pytest.fixture
def logger():
    return Logger(service="dlq-redrive-test")


def raw_message(index: Any, receipt: bool = True, **extra) -> Dict[str, Any]:
    """A receive_message entry as boto3 returns it."""
    message: Dict[str, Any] = {"MessageId": f"msg-{index}", "Body": f'{{"index": "{index}"}}'}
    if receipt:
        message["ReceiptHandle"] = f"receipt-{index}"
    message.update(extra)
    return message


def receive_response(messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"Messages": messages} if messages else {}


def poll_rounds(*rounds: List[Dict[str, Any]], branches: int = 3) -> List[Dict[str, Any]]:
    """
    Receive responses for consecutive polls: each round's messages come back
    from one branch, the other branches see nothing.
    """
    responses = []
    for messages in rounds:
        responses.append(receive_response(messages))
        responses.extend(receive_response([]) for _ in range(branches - 1))
    return responses


def all_successful(QueueUrl: str, Entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"Successful": [{"Id": e["Id"]} for e in Entries], "Failed": []}


def fail_ids(*ids: str):
    """A batch side effect that rejects the given entry ids and accepts the rest."""

    def _side_effect(QueueUrl: str, Entries: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "Successful": [{"Id": e["Id"]} for e in Entries if e["Id"] not in ids],
            "Failed": [
                {"Id": e["Id"], "Code": "InternalError", "SenderFault": False}
                for e in Entries
                if e["Id"] in ids
            ],
        }

    return _side_effect


@pytest.fixture
def mock_sqs():
    """An SQS client mock whose batch calls succeed unless a test says otherwise."""
    client = MagicMock()
    client.receive_message.return_value = {}
    client.send_message_batch.side_effect = all_successful
    client.delete_message_batch.side_effect = all_successful
    client.send_message.return_value = {"MessageId": "sent-1"}
    return client
