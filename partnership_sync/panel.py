import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from partnership_sync.config import Settings, get_settings
from partnership_sync.errors import PanelNotOpenError
from partnership_sync.meetings import MeetingTracker
from partnership_sync.messages import MessageSynchronizer
from partnership_sync.metrics import panel_open_panels
from partnership_sync.orchestrator import PollingOrchestrator
from partnership_sync.remote import PartnershipService
from partnership_sync.schemas import (
    Meeting,
    Message,
    PanelSnapshot,
    ensure_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


class PanelController:
    """
    One partnership's communication panel as seen by one viewer.

    Composes the message synchronizer, the meeting tracker and the polling
    orchestrator, and renders their combined state as a PanelSnapshot.
    """

    def __init__(
        self,
        service: PartnershipService,
        partnership_id: str,
        viewer_user_id: str,
        settings: Optional[Settings] = None,
        on_change: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.partnership_id = str(partnership_id)
        self.viewer_user_id = str(viewer_user_id)
        self.clock = clock

        self.messages = MessageSynchronizer(
            service,
            self.partnership_id,
            self.viewer_user_id,
            limit=settings.MESSAGE_PAGE_SIZE,
            clock=clock,
        )
        self.meetings = MeetingTracker(
            service,
            self.partnership_id,
            self.viewer_user_id,
            clock=clock,
        )
        self.orchestrator = PollingOrchestrator(
            self.messages,
            self.meetings,
            message_interval=settings.MESSAGE_POLL_INTERVAL_SECONDS,
            meeting_interval=settings.MEETING_POLL_INTERVAL_SECONDS,
            tick_interval=settings.COUNTDOWN_TICK_SECONDS,
            on_change=on_change,
            clock=clock,
        )

    @property
    def is_open(self) -> bool:
        return self.orchestrator.is_open

    def open(self) -> None:
        self.orchestrator.open()

    async def close(self) -> None:
        await self.orchestrator.close()

    async def __aenter__(self) -> "PanelController":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def send(self, text: str) -> Optional[Message]:
        return await self.orchestrator.send(text)

    async def propose(self, scheduled_time: datetime) -> Optional[Meeting]:
        return await self.orchestrator.propose(scheduled_time)

    async def accept(self, meeting_id: str) -> Optional[Meeting]:
        return await self.orchestrator.accept(meeting_id)

    def snapshot(self, now: Optional[datetime] = None) -> PanelSnapshot:
        now = ensure_utc(now or self.clock())
        messages = self.messages.views()
        meetings = self.meetings.views(now)
        return PanelSnapshot(
            partnership_id=self.partnership_id,
            viewer_user_id=self.viewer_user_id,
            messages=messages,
            pending_messages=self.messages.pending,
            meetings=meetings,
            message_state=self.messages.state.model_copy(),
            meeting_state=self.meetings.state.model_copy(),
            last_failed_text=self.messages.last_failed_text,
            is_empty=not messages and not meetings and not self.messages.pending,
            generated_at=now,
        )


class PanelRegistry:
    """Open panels keyed by partnership id; at most one per partnership."""

    def __init__(
        self,
        service: PartnershipService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.service = service
        self.settings = settings or get_settings()
        self.clock = clock
        self._panels: dict[str, PanelController] = {}
        # Serializes open/close so a replaced panel is always closed before its successor is stored
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._panels)

    def __contains__(self, partnership_id: str) -> bool:
        return str(partnership_id) in self._panels

    async def open(self, partnership_id: str, viewer_user_id: str) -> PanelController:
        """
        Open the panel for a partnership, or return it if already open.

        A panel already open for a different viewer is closed and replaced.
        """
        partnership_id = str(partnership_id)
        viewer_user_id = str(viewer_user_id)
        async with self._lock:
            existing = self._panels.get(partnership_id)
            if existing is not None:
                if existing.viewer_user_id == viewer_user_id:
                    return existing
                logger.info(f"Replacing panel for partnership {partnership_id}: viewer changed")
                await self._close(partnership_id)

            panel = PanelController(
                self.service,
                partnership_id,
                viewer_user_id,
                settings=self.settings,
                clock=self.clock,
            )
            panel.open()
            self._panels[partnership_id] = panel
            panel_open_panels.set(len(self._panels))
            return panel

    def get(self, partnership_id: str) -> PanelController:
        try:
            return self._panels[str(partnership_id)]
        except KeyError:
            raise PanelNotOpenError(str(partnership_id)) from None

    async def close(self, partnership_id: str) -> None:
        async with self._lock:
            await self._close(str(partnership_id))

    async def _close(self, partnership_id: str) -> None:
        panel = self._panels.pop(partnership_id, None)
        if panel is None:
            raise PanelNotOpenError(partnership_id)
        await panel.close()
        panel_open_panels.set(len(self._panels))

    async def close_all(self) -> None:
        async with self._lock:
            for partnership_id in list(self._panels):
                await self._close(partnership_id)
        logger.info("All panels closed")
