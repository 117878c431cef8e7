"""
Storage mode controller.

The service always starts serving from the volatile store. When a durable
database is configured, one background connection attempt is raced against a
timeout; success switches every later request to the durable store, failure
leaves the service in volatile mode with the error kept for the health probe.
"""

import asyncio
import logging
from contextlib import suppress
from enum import Enum
from typing import Optional, Tuple

from inbox.errors import BackendUnavailable
from inbox.metrics import record_storage_mode
from inbox.storage import DurableStore, MessageStore

logger = logging.getLogger(__name__)


class StorageMode(str, Enum):
    DURABLE = "durable"
    VOLATILE = "volatile"


class ModeController:
    def __init__(
        self,
        volatile: MessageStore,
        durable: Optional[DurableStore] = None,
        connect_timeout: float = 8.0,
    ):
        self._volatile = volatile
        self._durable = durable
        self.connect_timeout = connect_timeout
        # (mode, backend) swapped as one reference so readers never see a half switch
        self._active: Tuple[StorageMode, MessageStore] = (StorageMode.VOLATILE, volatile)
        self.last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        record_storage_mode(StorageMode.VOLATILE.value)

    @property
    def want_durable(self) -> bool:
        return self._durable is not None

    @property
    def mode(self) -> StorageMode:
        return self._active[0]

    def backend(self) -> MessageStore:
        """The store new work should use. Callers capture it once per request."""
        return self._active[1]

    def start(self) -> Optional[asyncio.Task]:
        """
        Kick off the background durable connection, if one is configured.
        Must be called from a running event loop; never blocks.
        """
        if self._durable is None:
            logger.warning(
                "DATABASE_URL is empty. Running in volatile mode (no persistence)."
            )
            return None

        if self._task is None:
            self._task = asyncio.create_task(self.connect_durable())
        return self._task

    async def connect_durable(self) -> bool:
        """
        Race the durable connection against ``connect_timeout``.

        Returns:
            True if the controller switched to durable mode
        """
        if self._durable is None:
            return False

        logger.info(f"Connecting durable store (timeout {self.connect_timeout}s)")
        try:
            # A timed-out connect keeps running in its thread; its result is ignored
            await asyncio.wait_for(
                asyncio.to_thread(self._durable.connect),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            self.last_error = f"Durable store connect timeout after {self.connect_timeout}s"
            logger.warning(f"Durable store not connected. Staying in volatile mode. Reason: {self.last_error}")
            return False
        except BackendUnavailable as e:
            self.last_error = e.message or repr(e)
            logger.warning(f"Durable store not connected. Staying in volatile mode. Reason: {self.last_error}")
            return False
        except Exception as e:
            # Malformed DATABASE_URL and the like fail before the driver is reached
            self.last_error = str(e) or repr(e)
            logger.exception(f"Unexpected durable store connect failure. Staying in volatile mode: {self.last_error}")
            return False

        self._activate_durable()
        return True

    def _activate_durable(self) -> None:
        self.last_error = None
        self._active = (StorageMode.DURABLE, self._durable)
        record_storage_mode(StorageMode.DURABLE.value)
        logger.info("Durable store connected. Switching to durable mode.")

    def health(self) -> dict:
        return {
            "mode": self.mode.value,
            "want_durable": self.want_durable,
            "last_error": self.last_error,
        }

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        if self._durable is not None:
            self._durable.close()
