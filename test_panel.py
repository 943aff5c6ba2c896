"""
Tests for PanelController snapshots and the PanelRegistry.

Tests cover:
- Empty state accounting for sends still in flight
- Concurrent opens for the same partnership leave exactly one live panel
- close_all stops every poll loop
"""

import asyncio

import pytest
from prometheus_client import REGISTRY

from conftest import PARTNERSHIP_ID, VIEWER_ID
from partnership_sync.errors import PanelNotOpenError
from partnership_sync.panel import PanelController, PanelRegistry


def open_panels_gauge() -> float:
    return REGISTRY.get_sample_value("panel_open_panels")


class TestSnapshot:
    """Test PanelController.snapshot()."""

    @pytest.mark.asyncio
    async def test_pending_send_is_not_empty(self, service, clock, fast_settings):
        """The first message of a thread is not hidden behind the empty state while in flight."""
        panel = PanelController(service, PARTNERSHIP_ID, VIEWER_ID, settings=fast_settings, clock=clock)
        assert panel.snapshot().is_empty is True

        gate = service.hold("send_message")
        send = asyncio.create_task(panel.messages.send("First hello"))
        await asyncio.sleep(0)

        snapshot = panel.snapshot()
        assert snapshot.messages == []
        assert [p.text for p in snapshot.pending_messages] == ["First hello"]
        assert snapshot.is_empty is False

        gate.set()
        await send
        assert panel.snapshot().is_empty is False


class TestRegistry:
    """Test opening and closing panels through the registry."""

    @pytest.mark.asyncio
    async def test_concurrent_replacing_opens_keep_one_panel(self, service, clock, fast_settings):
        """Two viewers replacing the same panel at once never leave an orphaned panel running."""
        registry = PanelRegistry(service, settings=fast_settings, clock=clock)
        first = await registry.open(PARTNERSHIP_ID, "viewer-a")

        second, third = await asyncio.gather(
            registry.open(PARTNERSHIP_ID, "viewer-b"),
            registry.open(PARTNERSHIP_ID, "viewer-c"),
        )

        assert len(registry) == 1
        assert registry.get(PARTNERSHIP_ID) is third
        assert first.is_open is False
        assert second.is_open is False
        assert third.is_open is True
        assert open_panels_gauge() == 1

        await registry.close_all()

        assert len(registry) == 0
        assert third.is_open is False
        assert open_panels_gauge() == 0

        calls = len(service.calls)
        await asyncio.sleep(0.3)
        assert len(service.calls) == calls

    @pytest.mark.asyncio
    async def test_same_viewer_reuses_panel(self, service, clock, fast_settings):
        registry = PanelRegistry(service, settings=fast_settings, clock=clock)

        first, again = await asyncio.gather(
            registry.open(PARTNERSHIP_ID, VIEWER_ID),
            registry.open(PARTNERSHIP_ID, VIEWER_ID),
        )

        assert first is again
        await registry.close_all()

    @pytest.mark.asyncio
    async def test_close_unknown_partnership(self, service, fast_settings):
        registry = PanelRegistry(service, settings=fast_settings)

        with pytest.raises(PanelNotOpenError):
            await registry.close("missing")
