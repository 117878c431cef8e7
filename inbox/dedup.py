"""
Dedup key resolution for inbound messages.

Retried webhook deliveries of the same message must fold into one record.
The provider message id is the natural key; envelopes without one fall back
to a composite of sender, receipt time and text.
"""

from datetime import datetime, timezone
from typing import Optional


def format_received_at(received_at: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)
    utc = received_at.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def resolve_dedup_key(
    provider_message_id: Optional[str],
    sender: str,
    received_at: datetime,
    text: str,
) -> str:
    if provider_message_id:
        return provider_message_id
    return f"{sender}:{format_received_at(received_at)}:{text}"
