"""
Meeting lifecycle: pending -> accepted -> ended.

``pending`` is set by a proposal and ``accepted`` by the invitee. ``ended`` is
never written by this module: it is derived from the scheduled time plus a
fixed grace period and the viewer's clock, so it is advisory and only drives
what the panel displays.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, NamedTuple, Optional

from partnership_sync.errors import (
    PanelNotOpenError,
    RemoteServiceError,
    ValidationFailure,
    WriteFailure,
)
from partnership_sync.metrics import record_refresh, record_write
from partnership_sync.remote import PartnershipService
from partnership_sync.schemas import (
    CollectionState,
    Meeting,
    MeetingStatus,
    MeetingView,
    ensure_utc,
    utcnow,
)
from partnership_sync.utils import format_remaining

logger = logging.getLogger(__name__)

GRACE_PERIOD = timedelta(minutes=10)

COUNTDOWN_STARTED = "started"
COUNTDOWN_ENDED = "ended"


# =============================================================================
# Pure state functions
# =============================================================================

def compute_display_status(meeting: Meeting, now: datetime) -> MeetingStatus:
    """
    Derive the status to display for a meeting at ``now``.

    An accepted meeting is shown as ended once the grace period after its
    scheduled time has passed. The meeting itself is never modified.
    """
    if meeting.status is MeetingStatus.ENDED:
        return MeetingStatus.ENDED
    if meeting.status is MeetingStatus.ACCEPTED and ensure_utc(now) > meeting.scheduled_time + GRACE_PERIOD:
        return MeetingStatus.ENDED
    return meeting.status


def format_countdown(scheduled_time: datetime, now: datetime) -> str:
    """
    Human-readable time until ``scheduled_time``.

    Returns the remaining time ("59m 12s"), then "started" once the
    scheduled time is reached, then "ended" after the grace period.
    """
    scheduled_time = ensure_utc(scheduled_time)
    now = ensure_utc(now)
    if now > scheduled_time + GRACE_PERIOD:
        return COUNTDOWN_ENDED
    remaining = scheduled_time - now
    if remaining <= timedelta(0):
        return COUNTDOWN_STARTED
    return format_remaining(remaining)


def needs_ticking(meeting: Meeting, now: datetime) -> bool:
    """Whether the meeting's countdown label can still change."""
    if compute_display_status(meeting, now) is MeetingStatus.ENDED:
        return False
    return ensure_utc(now) <= meeting.scheduled_time + GRACE_PERIOD


def reconcile(local: Optional[Meeting], incoming: Meeting) -> Meeting:
    """
    Merge an incoming record over the local one without regressing status.

    A stale poll that still reports ``pending`` for a meeting this client has
    already seen accepted keeps the accepted status and its link.
    """
    if local is None or incoming.status.rank >= local.status.rank:
        return incoming
    logger.debug(
        f"Ignoring status regression for meeting {incoming.id}: "
        f"{local.status.value} -> {incoming.status.value}"
    )
    return incoming.model_copy(update={
        "status": local.status,
        "meeting_link": incoming.meeting_link or local.meeting_link,
    })


class TickResult(NamedTuple):
    label: Optional[str]
    changed: bool
    active: bool


# =============================================================================
# Tracker
# =============================================================================

class MeetingTracker:
    """Meeting records for one partnership and the actions that move them forward."""

    collection = "meetings"

    def __init__(
        self,
        service: PartnershipService,
        partnership_id: str,
        viewer_user_id: str,
        clock: Callable = utcnow,
    ):
        self.service = service
        self.partnership_id = str(partnership_id)
        self.viewer_user_id = str(viewer_user_id)
        self.clock = clock

        self.state = CollectionState()
        # Last label tick() produced per meeting, used only to report whether
        # a tick changed it. Views compute their own label from the clock.
        self.countdowns: dict[str, str] = {}

        self._meetings: dict[str, Meeting] = {}
        # Ids returned by propose that no poll has returned yet
        self._unconfirmed: set[str] = set()
        self._live = True

    @property
    def meetings(self) -> list[Meeting]:
        return sorted(self._meetings.values(), key=lambda m: (m.scheduled_time, m.id))

    @property
    def is_live(self) -> bool:
        return self._live

    def get(self, meeting_id: str) -> Optional[Meeting]:
        return self._meetings.get(str(meeting_id))

    def is_organizer(self, meeting: Meeting) -> bool:
        return meeting.organizer_user_id is not None and meeting.organizer_user_id == self.viewer_user_id

    def detach(self) -> None:
        self._live = False

    def _store(self, meeting: Meeting) -> Meeting:
        merged = reconcile(self._meetings.get(meeting.id), meeting)
        self._meetings[meeting.id] = merged
        return merged

    # -------------------------------------------------------------------------
    # Views and countdowns
    # -------------------------------------------------------------------------

    def view(self, meeting: Meeting, now: Optional[datetime] = None) -> MeetingView:
        now = ensure_utc(now or self.clock())
        display_status = compute_display_status(meeting, now)
        ended = display_status is MeetingStatus.ENDED
        is_organizer = self.is_organizer(meeting)
        return MeetingView(
            id=meeting.id,
            partnership_id=meeting.partnership_id,
            organizer_user_id=meeting.organizer_user_id,
            scheduled_time=meeting.scheduled_time,
            status=meeting.status,
            display_status=display_status,
            countdown=None if ended else format_countdown(meeting.scheduled_time, now),
            is_organizer=is_organizer,
            can_accept=display_status is MeetingStatus.PENDING and not is_organizer,
            meeting_link=meeting.meeting_link if display_status is MeetingStatus.ACCEPTED else None,
        )

    def views(self, now: Optional[datetime] = None) -> list[MeetingView]:
        now = ensure_utc(now or self.clock())
        return [self.view(meeting, now) for meeting in self.meetings]

    def tick(self, meeting_id: str, now: Optional[datetime] = None) -> TickResult:
        """
        Recompute one meeting's countdown label.

        Returns:
            TickResult with the new label, whether it differs from the last
            tick, and whether the meeting still needs ticking
        """
        if not self._live:
            return TickResult(None, False, False)

        meeting = self.get(meeting_id)
        if meeting is None:
            self.countdowns.pop(str(meeting_id), None)
            return TickResult(None, False, False)

        now = ensure_utc(now or self.clock())
        if compute_display_status(meeting, now) is MeetingStatus.ENDED:
            label = COUNTDOWN_ENDED
        else:
            label = format_countdown(meeting.scheduled_time, now)

        changed = self.countdowns.get(meeting.id) != label
        self.countdowns[meeting.id] = label
        return TickResult(label, changed, needs_ticking(meeting, now))

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def refresh(self) -> bool:
        """
        Fetch all meetings and merge them without regressing any status.

        Failures keep the current list and set ``state.error``.
        """
        if not self._live:
            return False

        first_load = not self.state.loaded
        if first_load:
            self.state.loading = True

        try:
            fetched = await self.service.list_meetings(self.partnership_id)
        except Exception as e:
            if not self._live:
                return False
            self.state.error = getattr(e, "message", None) or str(e) or "Failed to load meetings"
            record_refresh(self.collection, "error")
            logger.warning(f"Meeting refresh failed, keeping {len(self._meetings)} cached: {self.state.error}")
            return False
        finally:
            if first_load and self._live:
                self.state.loading = False

        if not self._live:
            logger.debug("Discarding meeting list that arrived after close")
            return False

        merged: dict[str, Meeting] = {}
        for meeting in fetched:
            merged[meeting.id] = reconcile(self._meetings.get(meeting.id), meeting)
        for meeting_id in self._unconfirmed - merged.keys():
            if meeting_id in self._meetings:
                merged[meeting_id] = self._meetings[meeting_id]

        self._unconfirmed -= {m.id for m in fetched}
        self._meetings = merged
        for meeting_id in set(self.countdowns) - merged.keys():
            del self.countdowns[meeting_id]

        self.state.loaded = True
        self.state.error = None
        record_refresh(self.collection, "ok")
        logger.debug(f"Meeting refresh applied: {len(merged)} meetings")
        return True

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def propose(self, scheduled_time: datetime, now: Optional[datetime] = None) -> Optional[Meeting]:
        """
        Propose a meeting; it starts out ``pending``.

        Raises:
            ValidationFailure: scheduled_time is not in the future; no request is made
            WriteFailure: the service rejected the proposal
        """
        scheduled_time = ensure_utc(scheduled_time)
        now = ensure_utc(now or self.clock())
        if scheduled_time <= now:
            record_write("propose", "invalid")
            raise ValidationFailure("scheduled_time", "Meeting time must be in the future")
        if not self._live:
            raise PanelNotOpenError(self.partnership_id)

        logger.info(f"Proposing meeting at {scheduled_time.isoformat()}")
        try:
            meeting = await self.service.create_meeting(self.partnership_id, scheduled_time)
        except Exception as e:
            record_write("propose", "error")
            failure = WriteFailure("propose", {"scheduled_time": scheduled_time.isoformat()}, e)
            logger.error(f"Meeting proposal failed: {failure.message}")
            if self._live:
                self.state.error = failure.message
            raise failure from e

        record_write("propose", "ok")
        if meeting is not None and self._live:
            meeting = self._store(meeting)
            self._unconfirmed.add(meeting.id)
            logger.info(f"Meeting proposed: id={meeting.id}")
        return meeting

    async def accept(self, meeting_id: str) -> Optional[Meeting]:
        """
        Accept a pending meeting as the invitee.

        Accepting a meeting that is already past ``pending`` is a no-op, both
        locally and when the service answers 409 Conflict.

        Raises:
            ValidationFailure: the viewer organized the meeting
            WriteFailure: the service rejected the accept
        """
        meeting_id = str(meeting_id)
        local = self.get(meeting_id)

        if local is not None and local.status is not MeetingStatus.PENDING:
            record_write("accept", "noop")
            logger.info(f"Meeting {meeting_id} already {local.status.value}; accept is a no-op")
            return local
        if local is not None and self.is_organizer(local):
            record_write("accept", "invalid")
            raise ValidationFailure("meeting_id", "Organizers cannot accept their own meeting")
        if not self._live:
            raise PanelNotOpenError(self.partnership_id)

        logger.info(f"Accepting meeting {meeting_id}")
        try:
            accepted = await self.service.accept_meeting(self.partnership_id, meeting_id)
        except Exception as e:
            if isinstance(e, RemoteServiceError) and e.is_conflict:
                record_write("accept", "noop")
                logger.info(f"Meeting {meeting_id} was already accepted remotely")
                return self.get(meeting_id)
            record_write("accept", "error")
            failure = WriteFailure("accept", {"meeting_id": meeting_id}, e)
            logger.error(f"Accept failed: {failure.message}")
            if self._live:
                self.state.error = failure.message
            raise failure from e

        record_write("accept", "ok")
        if accepted is not None and self._live:
            return self._store(accepted)
        return self.get(meeting_id)
