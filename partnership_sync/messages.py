import logging
import uuid
from typing import Callable, Optional

from partnership_sync.config import get_settings
from partnership_sync.errors import PanelNotOpenError, ValidationFailure, WriteFailure
from partnership_sync.metrics import record_refresh, record_write
from partnership_sync.remote import PartnershipService
from partnership_sync.schemas import (
    CollectionState,
    Message,
    MessageView,
    PendingMessage,
    utcnow,
)
from partnership_sync.utils import index_by_id

logger = logging.getLogger(__name__)


class MessageSynchronizer:
    """
    Deduped, time-ordered message list for one partnership.

    Polled records and send responses are merged by ``id``, so the same
    message can never appear twice. The list is always read in ascending
    ``(created_at, id)`` order.

    A send in flight is tracked as a PendingMessage, separate from the
    confirmed list, and collapses into the confirmed message returned by the
    remote service once the send resolves.
    """

    collection = "messages"

    def __init__(
        self,
        service: PartnershipService,
        partnership_id: str,
        viewer_user_id: str,
        limit: Optional[int] = None,
        clock: Callable = utcnow,
    ):
        self.service = service
        self.partnership_id = str(partnership_id)
        self.viewer_user_id = str(viewer_user_id)
        self.limit = limit or get_settings().MESSAGE_PAGE_SIZE
        self.clock = clock

        self.state = CollectionState()
        self.last_failed_text: Optional[str] = None

        self._messages: dict[str, Message] = {}
        self._pending: dict[str, PendingMessage] = {}
        # Ids confirmed by a send response that no poll has returned yet
        self._unconfirmed: set[str] = set()
        self._live = True

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        return sorted(self._messages.values(), key=lambda m: m.sort_key)

    @property
    def pending(self) -> list[PendingMessage]:
        return sorted(self._pending.values(), key=lambda p: p.created_at)

    @property
    def is_live(self) -> bool:
        return self._live

    def is_own(self, message: Message) -> bool:
        return message.sender_id is not None and message.sender_id == self.viewer_user_id

    def views(self) -> list[MessageView]:
        return [
            MessageView(**message.model_dump(), is_own=self.is_own(message))
            for message in self.messages
        ]

    def detach(self) -> None:
        """Stop accepting results; any response arriving later is discarded."""
        self._live = False

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def refresh(self) -> bool:
        """
        Fetch the latest page of messages and merge it into the local list.

        Failures are not raised: the previous list is kept and ``state.error``
        records the failure until the next successful poll.

        Returns:
            True if a fetched page was applied, False otherwise
        """
        if not self._live:
            return False

        first_load = not self.state.loaded
        if first_load:
            self.state.loading = True

        try:
            fetched = await self.service.list_messages(self.partnership_id, self.limit)
        except Exception as e:
            if not self._live:
                return False
            self.state.error = getattr(e, "message", None) or str(e) or "Failed to load messages"
            record_refresh(self.collection, "error")
            logger.warning(f"Message refresh failed, keeping {len(self._messages)} cached: {self.state.error}")
            return False
        finally:
            if first_load and self._live:
                self.state.loading = False

        if not self._live:
            logger.debug("Discarding message page that arrived after close")
            return False

        self._apply_page(fetched)
        self.state.loaded = True
        self.state.error = None
        record_refresh(self.collection, "ok")
        logger.debug(f"Message refresh applied: fetched={len(fetched)}, total={len(self._messages)}")
        return True

    def _apply_page(self, fetched: list[Message]) -> None:
        incoming = index_by_id(fetched)

        if len(fetched) < self.limit:
            # The page holds the whole thread, so it is authoritative for
            # removal. Sends the poll has not caught up with yet are kept.
            merged = dict(incoming)
            for message_id in self._unconfirmed - incoming.keys():
                if message_id in self._messages:
                    merged[message_id] = self._messages[message_id]
        else:
            # Full page: older history may lie outside the window, never drop it
            merged = dict(self._messages)
            merged.update(incoming)

        self._unconfirmed -= incoming.keys()
        self._messages = merged

    # -------------------------------------------------------------------------
    # Send
    # -------------------------------------------------------------------------

    async def send(self, text: str) -> Optional[Message]:
        """
        Submit a message and merge the confirmed record returned by the service.

        Args:
            text: Text as typed by the user

        Returns:
            The confirmed Message, or None if the service acknowledged without
            echoing the record (the next refresh will pick it up)

        Raises:
            ValidationFailure: text is empty or whitespace; no request is made
            WriteFailure: the service rejected the send; the local list is
                untouched and ``last_failed_text`` holds the original input
        """
        trimmed = (text or "").strip()
        if not trimmed:
            record_write("send", "invalid")
            raise ValidationFailure("text", "Message text cannot be empty")
        if not self._live:
            raise PanelNotOpenError(self.partnership_id)

        pending = PendingMessage(
            local_id=f"local-{uuid.uuid4().hex}",
            text=trimmed,
            created_at=self.clock(),
        )
        self._pending[pending.local_id] = pending
        logger.info(f"Sending message ({len(trimmed)} chars), local_id={pending.local_id}")

        try:
            message = await self.service.send_message(self.partnership_id, trimmed)
        except Exception as e:
            record_write("send", "error")
            failure = WriteFailure("send", {"text": text}, e)
            logger.error(f"Send failed: {failure.message}")
            if self._live:
                self.state.error = failure.message
                self.last_failed_text = text
            raise failure from e
        finally:
            if self._live:
                self._pending.pop(pending.local_id, None)

        record_write("send", "ok")
        if not self._live:
            return message

        if message is not None:
            self._messages[message.id] = message
            self._unconfirmed.add(message.id)
            logger.info(f"Message confirmed: id={message.id}")
        else:
            logger.warning("Send acknowledged without a message record; waiting for refresh")

        self.last_failed_text = None
        self.state.error = None
        return message
