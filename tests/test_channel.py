from __future__ import annotations

import asyncio

import pytest

from a11y_bot.browser.channel import Capabilities
from a11y_bot.errors import PermissionDenied, SessionLost, SessionUnavailable

from conftest import FakeControlChannel, FakeElement, nav_page


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_connect_negotiates_capabilities_once(self):
        channel = FakeControlChannel(nav_page())
        session = await channel.connect(0)

        assert channel.is_attached
        assert session.tab_id == 0
        assert channel.capabilities == session.capabilities
        assert channel.capabilities.can_inject_style

    @pytest.mark.asyncio
    async def test_unknown_tab_is_unavailable(self):
        channel = FakeControlChannel(nav_page())
        with pytest.raises(SessionUnavailable):
            await channel.connect(7)
        assert not channel.is_attached

    @pytest.mark.asyncio
    async def test_second_attach_to_same_tab_fails(self):
        registry: set = set()
        first = FakeControlChannel(nav_page(), registry=registry)
        second = FakeControlChannel(nav_page(), registry=registry)
        await first.connect(0)

        with pytest.raises(SessionUnavailable):
            await second.connect(0)

        await first.disconnect()
        await second.connect(0)
        assert second.is_attached

    @pytest.mark.asyncio
    async def test_operations_without_session_fail(self):
        channel = FakeControlChannel(nav_page())
        with pytest.raises(SessionUnavailable):
            await channel.active_element()

    @pytest.mark.asyncio
    async def test_lost_session_fails_every_operation(self, channel):
        channel.lose("Target navigated away")

        assert not channel.is_attached
        with pytest.raises(SessionLost):
            await channel.current_url()
        with pytest.raises(SessionLost):
            await channel.press_key("Tab")

    @pytest.mark.asyncio
    async def test_session_lost_mid_operation(self, channel):
        def lose_on_focus(name):
            if name == "focus":
                channel.lose("Target closed")

        channel.on_operation = lose_on_focus
        with pytest.raises(SessionLost):
            await channel.focus("#save")


class TestCapabilities:
    @pytest.mark.asyncio
    async def test_missing_capability_is_denied(self, channel_factory):
        channel = await channel_factory(nav_page(), capabilities=Capabilities(can_simulate_input=True))

        with pytest.raises(PermissionDenied) as exc:
            await channel.add_style_sheet("#save { color: red; }")
        assert exc.value.capability == "can_inject_style"

        # Input is still allowed
        await channel.press_key("Tab")
        assert await channel.active_element() == "#home"


class TestSerialisation:
    @pytest.mark.asyncio
    async def test_one_operation_in_flight_at_a_time(self, channel):
        channel.op_delay = 0.01

        await asyncio.gather(
            channel.active_element(),
            channel.bounding_rect("#save"),
            channel.computed_style("#save", ["color"]),
            channel.current_url(),
        )

        assert channel.max_in_flight == 1
        assert len(channel.operations) == 4


class TestInput:
    @pytest.mark.asyncio
    async def test_key_sequence_parses_modifiers(self, channel):
        await channel.key_sequence(["Tab", "Tab", "Shift+Tab"], delay=0)

        assert channel.keys == ["Tab", "Tab", "Shift+Tab"]
        assert await channel.active_element() == "#home"

    @pytest.mark.asyncio
    async def test_query_selector_returns_first_match(self, channel_factory):
        channel = await channel_factory([
            FakeElement("#a", text="A"),
            FakeElement("#b", text="B"),
        ])
        assert await channel.query_selector("button") == "#a"
        assert await channel.query_selector("select") is None
