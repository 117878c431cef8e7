"""Builders for signed WhatsApp webhook deliveries used across the test suite."""

import hashlib
import hmac
import json
from typing import Optional

from conftest import TEST_APP_SECRET


def compute_signature(body: str, secret: str) -> str:
    """Compute the X-Hub-Signature-256 header value for a request body."""
    digest = hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()
    return f"sha256={digest}"


def make_payload(*messages) -> dict:
    """One entry -> one change -> the given messages."""
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "102290129340398",
                "changes": [
                    {
                        "field": "messages",
                        "value": {"messaging_product": "whatsapp", "messages": list(messages)},
                    }
                ],
            }
        ],
    }


def text_message(sender: str, body: str, timestamp: str = "1700000000", message_id: Optional[str] = None) -> dict:
    message = {"from": sender, "timestamp": timestamp, "type": "text", "text": {"body": body}}
    if message_id is not None:
        message["id"] = message_id
    return message


def post_webhook(client, payload, secret: str = TEST_APP_SECRET):
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return client.post(
        "/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Hub-Signature-256": compute_signature(body, secret),
        },
    )
