import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from partnership_sync.config import get_settings
from partnership_sync.errors import PanelError, PanelNotOpenError, WriteFailure
from partnership_sync.logging_utils import partnership_id_ctx
from partnership_sync.meetings import MeetingTracker, needs_ticking
from partnership_sync.messages import MessageSynchronizer
from partnership_sync.metrics import record_refresh_skipped
from partnership_sync.schemas import Meeting, Message, utcnow

logger = logging.getLogger(__name__)

MESSAGES = "messages"
MEETINGS = "meetings"
COUNTDOWNS = "countdowns"


class PollingOrchestrator:
    """
    Keeps a MessageSynchronizer and a MeetingTracker fresh while a panel is open.

    - Two fixed-rate loops, one per collection. A tick that finds a refresh
      for its collection still in flight is skipped, so at most one request
      per collection is ever outstanding and responses apply in order.
    - Writes (send, propose, accept) trigger an immediate refresh of the
      affected collections. If one is already in flight, a single follow-up
      runs after it instead.
    - One countdown task per meeting whose label can still change.
    - close() cancels every task and detaches both components, so a response
      that arrives late cannot touch state.

    Usable as ``async with orchestrator:``, which closes on any exit path.
    """

    def __init__(
        self,
        synchronizer: MessageSynchronizer,
        tracker: MeetingTracker,
        message_interval: Optional[float] = None,
        meeting_interval: Optional[float] = None,
        tick_interval: Optional[float] = None,
        on_change: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.synchronizer = synchronizer
        self.tracker = tracker
        self.message_interval = message_interval or settings.MESSAGE_POLL_INTERVAL_SECONDS
        self.meeting_interval = meeting_interval or settings.MEETING_POLL_INTERVAL_SECONDS
        self.tick_interval = tick_interval or settings.COUNTDOWN_TICK_SECONDS
        self.on_change = on_change
        self.clock = clock

        if self.message_interval > self.meeting_interval:
            raise ValueError("messages must be polled at least as often as meetings")

        self._refreshers = {
            MESSAGES: synchronizer.refresh,
            MEETINGS: tracker.refresh,
        }
        self._loops: list[asyncio.Task] = []
        self._inflight: dict[str, asyncio.Task] = {}
        self._followups: set[str] = set()
        self._countdown_tasks: dict[str, asyncio.Task] = {}
        self._open = False
        self._closed = False

    @property
    def partnership_id(self) -> str:
        return self.synchronizer.partnership_id

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def countdown_ids(self) -> set[str]:
        return set(self._countdown_tasks)

    def is_refreshing(self, collection: str) -> bool:
        return collection in self._inflight

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def open(self) -> None:
        """Start both poll loops with an immediate first refresh. Must run inside the event loop."""
        if self._open:
            return
        if self._closed:
            raise PanelError("A closed panel cannot be reopened; create a new one")

        self._open = True
        token = partnership_id_ctx.set(self.partnership_id)
        try:
            logger.info(
                f"Opening panel: message_interval={self.message_interval}s, "
                f"meeting_interval={self.meeting_interval}s"
            )
            self._spawn_refresh(MESSAGES)
            self._spawn_refresh(MEETINGS)
            self._loops = [
                asyncio.create_task(self._poll_loop(MESSAGES, self.message_interval)),
                asyncio.create_task(self._poll_loop(MEETINGS, self.meeting_interval)),
            ]
        finally:
            partnership_id_ctx.reset(token)

    async def close(self) -> None:
        """Cancel all timers and in-flight refreshes. Safe to call more than once."""
        if self._closed:
            return
        self._open = False
        self._closed = True
        self.synchronizer.detach()
        self.tracker.detach()

        current = asyncio.current_task()
        tasks = [
            task
            for task in (*self._loops, *self._inflight.values(), *self._countdown_tasks.values())
            if task is not current
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._loops = []
        self._inflight.clear()
        self._followups.clear()
        self._countdown_tasks.clear()
        logger.info(f"Closed panel for partnership {self.partnership_id}: cancelled {len(tasks)} task(s)")

    async def __aenter__(self) -> "PollingOrchestrator":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def settle(self) -> None:
        """Wait until no refresh is in flight (including queued follow-ups)."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def _poll_loop(self, collection: str, interval: float) -> None:
        while self._open:
            await asyncio.sleep(interval)
            self._tick(collection)

    def _tick(self, collection: str) -> None:
        if not self._open:
            return
        if collection in self._inflight:
            record_refresh_skipped(collection)
            logger.debug(f"Skipping {collection} tick: refresh already in flight")
            return
        self._spawn_refresh(collection)

    def request_refresh(self, collection: str) -> None:
        """Refresh a collection now, or right after the refresh currently in flight."""
        if not self._open:
            return
        if collection in self._inflight:
            self._followups.add(collection)
            return
        self._spawn_refresh(collection)

    def _spawn_refresh(self, collection: str) -> None:
        self._inflight[collection] = asyncio.create_task(self._run_refresh(collection))

    async def _run_refresh(self, collection: str) -> None:
        partnership_id_ctx.set(self.partnership_id)
        try:
            while True:
                await self._refreshers[collection]()
                if not self._open:
                    return
                if collection == MEETINGS:
                    self._sync_countdowns()
                self._notify(collection)
                if collection not in self._followups:
                    return
                self._followups.discard(collection)
        finally:
            if self._inflight.get(collection) is asyncio.current_task():
                del self._inflight[collection]

    # -------------------------------------------------------------------------
    # Countdowns
    # -------------------------------------------------------------------------

    def _sync_countdowns(self) -> None:
        now = self.clock()
        active = {m.id for m in self.tracker.meetings if needs_ticking(m, now)}

        for meeting_id in list(self._countdown_tasks):
            if meeting_id not in active:
                self._countdown_tasks.pop(meeting_id).cancel()

        for meeting_id in active - self._countdown_tasks.keys():
            self._countdown_tasks[meeting_id] = asyncio.create_task(self._countdown_loop(meeting_id))

    async def _countdown_loop(self, meeting_id: str) -> None:
        partnership_id_ctx.set(self.partnership_id)
        try:
            while self._open:
                result = self.tracker.tick(meeting_id, self.clock())
                if result.changed:
                    self._notify(COUNTDOWNS)
                if not result.active:
                    logger.debug(f"Countdown for meeting {meeting_id} finished: {result.label}")
                    return
                await asyncio.sleep(self.tick_interval)
        finally:
            if self._countdown_tasks.get(meeting_id) is asyncio.current_task():
                del self._countdown_tasks[meeting_id]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if not self._open:
            raise PanelNotOpenError(self.partnership_id)

    async def send(self, text: str) -> Optional[Message]:
        self._ensure_open()
        try:
            message = await self.synchronizer.send(text)
        except WriteFailure:
            self._notify(MESSAGES)
            raise
        self._notify(MESSAGES)
        self.request_refresh(MESSAGES)
        return message

    async def propose(self, scheduled_time: datetime) -> Optional[Meeting]:
        self._ensure_open()
        try:
            meeting = await self.tracker.propose(scheduled_time, now=self.clock())
        except WriteFailure:
            self._notify(MEETINGS)
            raise
        self._after_meeting_write()
        return meeting

    async def accept(self, meeting_id: str) -> Optional[Meeting]:
        self._ensure_open()
        try:
            meeting = await self.tracker.accept(meeting_id)
        except WriteFailure:
            self._notify(MEETINGS)
            raise
        self._after_meeting_write()
        return meeting

    def _after_meeting_write(self) -> None:
        if not self._open:
            return
        self._sync_countdowns()
        self._notify(MEETINGS)
        # Meeting notices are posted into the thread as well
        self.request_refresh(MEETINGS)
        self.request_refresh(MESSAGES)

    def _notify(self, collection: str) -> None:
        if not self._open or self.on_change is None:
            return
        try:
            self.on_change(collection)
        except Exception:
            logger.exception(f"on_change callback failed for {collection}")
