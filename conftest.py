"""
Pytest configuration and shared fixtures.

Provides an in-memory Remote Partnership Service with failure injection,
response gates for holding requests in flight, and call/in-flight counters.
"""

import asyncio
import itertools
from collections import Counter, defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

# Clear settings cache before any test builds components from it
from partnership_sync.config import Settings, get_settings
get_settings.cache_clear()

from partnership_sync.errors import RemoteServiceError
from partnership_sync.schemas import Meeting, MeetingStatus, Message


VIEWER_ID = "u-ngo"
PARTNER_ID = "u-corp"
PARTNERSHIP_ID = "p-1"

T0 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePartnershipService:
    """In-memory stand-in for the REST backend, authenticated as ``user_id``."""

    def __init__(self, clock: Optional[FrozenClock] = None, user_id: str = VIEWER_ID):
        self.clock = clock or FrozenClock()
        self.user_id = user_id
        self.messages: dict[str, list[Message]] = defaultdict(list)
        self.meetings: dict[str, dict[str, Meeting]] = defaultdict(dict)
        self.calls: list[tuple] = []
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.in_flight: Counter = Counter()
        self.max_in_flight: Counter = Counter()
        self.echo_writes = True
        self.conflict_on_reaccept = True
        self._ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------------

    def call_count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def fail(self, op: str, exc: Optional[Exception] = None) -> None:
        self.failures[op] = exc or RemoteServiceError(500, "Internal Server Error")

    def recover(self, op: str) -> None:
        self.failures.pop(op, None)

    def hold(self, op: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[op] = gate
        return gate

    def release(self, op: str) -> None:
        gate = self.gates.pop(op, None)
        if gate is not None:
            gate.set()

    def add_message(self, partnership_id: str, message_id: str, text: str,
                    sender_id: str = PARTNER_ID, created_at: Optional[datetime] = None) -> Message:
        message = Message(
            id=message_id,
            text=text,
            created_at=created_at or self.clock(),
            sender_id=sender_id,
            sender_name="Asha" if sender_id == VIEWER_ID else "Acme CSR",
            sender_role="ngo" if sender_id == VIEWER_ID else "corporate",
        )
        self.messages[partnership_id].append(message)
        return message

    def add_meeting(self, partnership_id: str, meeting_id: str, scheduled_time: datetime,
                    organizer_user_id: str = PARTNER_ID,
                    status: MeetingStatus = MeetingStatus.PENDING) -> Meeting:
        meeting = Meeting(
            id=meeting_id,
            partnership_id=partnership_id,
            organizer_user_id=organizer_user_id,
            scheduled_time=scheduled_time,
            status=status,
            meeting_link=f"https://meet.example.com/{meeting_id}" if status is not MeetingStatus.PENDING else None,
        )
        self.meetings[partnership_id][meeting_id] = meeting
        return meeting

    @asynccontextmanager
    async def _call(self, op: str, *args):
        self.calls.append((op, *args))
        self.in_flight[op] += 1
        self.max_in_flight[op] = max(self.max_in_flight[op], self.in_flight[op])
        try:
            gate = self.gates.get(op)
            if gate is not None:
                await gate.wait()
            failure = self.failures.get(op)
            if failure is not None:
                raise failure
            yield
        finally:
            self.in_flight[op] -= 1

    # -------------------------------------------------------------------------
    # PartnershipService
    # -------------------------------------------------------------------------

    async def list_messages(self, partnership_id: str, limit: int) -> list[Message]:
        async with self._call("list_messages", partnership_id, limit):
            ordered = sorted(self.messages[partnership_id], key=lambda m: m.sort_key)
            return ordered[-limit:]

    async def send_message(self, partnership_id: str, text: str) -> Optional[Message]:
        async with self._call("send_message", partnership_id, text):
            message = self.add_message(partnership_id, f"sent-{next(self._ids)}", text, sender_id=self.user_id)
            return message if self.echo_writes else None

    async def list_meetings(self, partnership_id: str) -> list[Meeting]:
        async with self._call("list_meetings", partnership_id):
            return list(self.meetings[partnership_id].values())

    async def create_meeting(self, partnership_id: str, scheduled_time: datetime) -> Optional[Meeting]:
        async with self._call("create_meeting", partnership_id, scheduled_time):
            meeting = self.add_meeting(
                partnership_id,
                f"meeting-{next(self._ids)}",
                scheduled_time,
                organizer_user_id=self.user_id,
            )
            return meeting if self.echo_writes else None

    async def accept_meeting(self, partnership_id: str, meeting_id: str) -> Optional[Meeting]:
        async with self._call("accept_meeting", partnership_id, meeting_id):
            meeting = self.meetings[partnership_id].get(meeting_id)
            if meeting is None:
                raise RemoteServiceError(404, "Meeting not found")
            if meeting.status is not MeetingStatus.PENDING:
                if self.conflict_on_reaccept:
                    raise RemoteServiceError(409, "Meeting already accepted")
                return meeting
            accepted = meeting.model_copy(update={
                "status": MeetingStatus.ACCEPTED,
                "meeting_link": f"https://meet.example.com/{meeting_id}",
            })
            self.meetings[partnership_id][meeting_id] = accepted
            return accepted if self.echo_writes else None


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def service(clock) -> FakePartnershipService:
    return FakePartnershipService(clock=clock)


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with poll and tick intervals short enough for real-time tests."""
    return Settings(
        MESSAGE_POLL_INTERVAL_SECONDS=0.05,
        MEETING_POLL_INTERVAL_SECONDS=0.1,
        COUNTDOWN_TICK_SECONDS=0.02,
        MESSAGE_PAGE_SIZE=200,
    )


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it is truthy or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
