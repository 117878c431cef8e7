"""
Operator replies: send through the provider, then mark records replied.
"""

import logging
from datetime import datetime
from typing import Callable, Sequence

from inbox.errors import InvalidRequest, NotFound, UpstreamSendFailure
from inbox.fanout import EventBroadcaster, MessageEvent
from inbox.metrics import record_reply_outcome
from inbox.mode import ModeController
from inbox.schemas import ReplyResult
from inbox.sender import OutboundSender
from inbox.storage import utcnow

logger = logging.getLogger(__name__)


class ReplyPipeline:
    """
    Replies are sent one record at a time. The first send failure aborts the
    batch; records replied before it keep their new status.
    """

    def __init__(
        self,
        mode: ModeController,
        broadcaster: EventBroadcaster,
        sender: OutboundSender,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._mode = mode
        self._broadcaster = broadcaster
        self._sender = sender
        self._clock = clock

    async def reply(self, message_ids: Sequence[str], text: str) -> list[ReplyResult]:
        """
        Reply to every stored message in ``message_ids`` with ``text``.

        Raises:
            InvalidRequest: no ids or blank text
            NotFound: none of the ids resolved
            UpstreamSendFailure: the provider rejected a send
        """
        if not message_ids or not text or not text.strip():
            raise InvalidRequest("Required: { message_ids: string[], text: string }")

        backend = self._mode.backend()
        records = backend.find_by_ids(message_ids)
        if not records:
            raise NotFound("No messages found")
        logger.info(f"Replying to {len(records)} of {len(message_ids)} requested message(s)")

        results: list[ReplyResult] = []
        for record in records:
            try:
                provider_response = await self._sender.send_text(
                    to=record.sender,
                    text=text,
                    reply_to_message_id=record.provider_message_id,
                )
            except UpstreamSendFailure:
                record_reply_outcome("failed")
                logger.error(f"Reply to {record.id} failed, aborting after {len(results)} sent")
                raise
            record_reply_outcome("sent")

            record.mark_replied(text, self._clock())
            updated = backend.update(record)
            await self._broadcaster.publish(MessageEvent.updated(updated))
            results.append(ReplyResult(id=updated.id, ok=True, provider_response=provider_response))

        return results
