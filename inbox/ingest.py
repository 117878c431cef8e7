"""
Webhook ingestion: payload -> envelopes -> idempotent insert -> fanout.

A provider delivery may batch several entries, changes and messages. Bad
envelopes are skipped one at a time; a delivery is never rejected because
of its contents, otherwise the provider keeps retrying it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from pydantic import ValidationError

from inbox.dedup import resolve_dedup_key
from inbox.fanout import EventBroadcaster, MessageEvent
from inbox.mode import ModeController
from inbox.schemas import InboundEnvelope, MessageRecord
from inbox.storage import utcnow

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    created: int = 0
    duplicates: int = 0
    skipped: int = 0
    records: list[MessageRecord] = field(default_factory=list)


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def iter_envelopes(payload: Any) -> Iterator[Any]:
    """Walk entry[].changes[].value.messages[], ignoring any level that is absent or not a list."""
    if not isinstance(payload, dict):
        return
    for entry in _as_list(payload.get("entry")):
        if not isinstance(entry, dict):
            continue
        for change in _as_list(entry.get("changes")):
            if not isinstance(change, dict):
                continue
            value = change.get("value")
            if not isinstance(value, dict):
                continue
            yield from _as_list(value.get("messages"))


class IngestionPipeline:
    def __init__(
        self,
        mode: ModeController,
        broadcaster: EventBroadcaster,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._mode = mode
        self._broadcaster = broadcaster
        self._clock = clock

    async def ingest(self, payload: Any) -> IngestResult:
        """
        Store every valid envelope of a webhook payload exactly once.

        Returns:
            IngestResult; ``created`` counts records that did not exist before
            this call and therefore produced a creation event
        """
        backend = self._mode.backend()
        result = IngestResult()

        for raw in iter_envelopes(payload):
            candidate = self._to_candidate(raw)
            if candidate is None:
                result.skipped += 1
                continue

            record, created = backend.upsert_if_absent(candidate.dedup_key, candidate)
            if not created:
                logger.info(f"Duplicate delivery for message: {record.id}")
                result.duplicates += 1
                continue

            logger.info(f"Message stored: {record.id} from {record.sender}")
            result.created += 1
            result.records.append(record)
            await self._broadcaster.publish(MessageEvent.created(record))

        logger.info(
            f"Ingested delivery: created={result.created}, "
            f"duplicates={result.duplicates}, skipped={result.skipped}"
        )
        return result

    def _to_candidate(self, raw: Any) -> Optional[MessageRecord]:
        if not isinstance(raw, dict):
            logger.warning("Skipping envelope that is not an object")
            return None

        try:
            envelope = InboundEnvelope.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Skipping malformed envelope ({e.error_count()} error(s)): {e}")
            return None

        if not envelope.sender:
            logger.debug("Skipping envelope without sender")
            return None

        received_at = envelope.timestamp or self._clock()
        text = envelope.body
        return MessageRecord(
            dedup_key=resolve_dedup_key(envelope.id, envelope.sender, received_at, text),
            provider_message_id=envelope.id or None,
            sender=envelope.sender,
            text=text,
            received_at=received_at,
            raw=raw,
        )
