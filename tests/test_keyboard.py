from __future__ import annotations

import pytest

from a11y_bot.browser.keyboard import KeyboardSimulator, classify_trap

from conftest import FakeElement


def row(count: int) -> list[FakeElement]:
    return [FakeElement(f"#b{i}", text=f"B{i}") for i in range(count)]


class TestFocusWalk:
    @pytest.mark.asyncio
    async def test_walk_visits_whole_tab_order(self, channel, keyboard):
        result = await keyboard.walk_focus_order(max_steps=20)

        assert result.success
        assert result.completed
        assert result.selectors == ["#home", "#save", "#cancel", "#email"]
        assert result.focus_traps == []
        # The mouse-only div is never reached
        assert "#menu" not in result.selectors

    @pytest.mark.asyncio
    async def test_focus_ring_recorded_per_stop(self, channel, keyboard):
        result = await keyboard.walk_focus_order(max_steps=20)

        rings = {state.selector: state.focus_ring_visible for state in result.focus_path}
        assert rings["#home"] is True
        assert rings["#email"] is True
        assert rings["#save"] is False

    @pytest.mark.asyncio
    async def test_backward_walk(self, channel, keyboard):
        result = await keyboard.walk_focus_order(max_steps=20, direction="backward")

        assert result.selectors == ["#email", "#cancel", "#save", "#home"]
        assert channel.keys[0] == "Shift+Tab"

    @pytest.mark.asyncio
    async def test_invalid_direction(self, keyboard):
        with pytest.raises(ValueError):
            await keyboard.walk_focus_order(direction="sideways")


class TestFocusTraps:
    @pytest.mark.asyncio
    async def test_two_element_cycle_is_a_trap(self, channel_factory):
        channel = await channel_factory(row(5))
        channel.next_focus = {"#b2": "#b1"}
        keyboard = KeyboardSimulator(channel, key_delay=0)

        result = await keyboard.walk_focus_order(max_steps=20)

        assert len(result.focus_traps) == 1
        trap = result.focus_traps[0]
        assert trap.elements == ("#b1", "#b2")
        assert trap.trap_type == "infinite-loop"
        assert trap.severity == "critical"
        assert not result.completed
        # Stops once the trap is confirmed instead of burning every step
        assert len(channel.keys) < 20

    @pytest.mark.asyncio
    async def test_element_that_keeps_focus(self, channel_factory):
        channel = await channel_factory(row(3))
        channel.next_focus = {"#b1": "#b1"}
        keyboard = KeyboardSimulator(channel, key_delay=0)

        result = await keyboard.walk_focus_order(max_steps=10)

        assert [t.trap_type for t in result.focus_traps] == ["no-escape"]
        assert result.focus_traps[0].start_selector == "#b1"

    @pytest.mark.asyncio
    async def test_wrapping_page_is_not_a_trap(self, channel_factory):
        channel = await channel_factory(row(6))
        # Focus wraps from the last element back to the first
        channel.next_focus = {"#b5": "#b0"}
        keyboard = KeyboardSimulator(channel, key_delay=0)

        result = await keyboard.walk_focus_order(max_steps=30)

        assert result.focus_traps == []
        assert result.completed
        assert len(result.focus_path) == 6

    @pytest.mark.asyncio
    async def test_large_cycle_outside_window(self, channel_factory):
        channel = await channel_factory(row(8))
        # Cycle of six elements: longer than the trailing window
        channel.next_focus = {"#b7": "#b2"}
        keyboard = KeyboardSimulator(channel, key_delay=0, trap_window=4)

        result = await keyboard.walk_focus_order(max_steps=30)

        assert not result.completed
        assert [t.trap_type for t in result.focus_traps] == ["skip-content"]

    def test_classify_trap(self):
        assert classify_trap(1) == "no-escape"
        assert classify_trap(2) == "infinite-loop"
        assert classify_trap(3) == "infinite-loop"
        assert classify_trap(6) == "no-escape"
        assert classify_trap(11) == "skip-content"


class TestSeek:
    @pytest.mark.asyncio
    async def test_seek_reaches_target(self, channel, keyboard):
        assert await keyboard.seek("#cancel")
        assert channel.active == "#cancel"
        assert channel.keys == ["Tab", "Tab", "Tab"]

    @pytest.mark.asyncio
    async def test_seek_unreachable_target(self, channel, keyboard):
        assert not await keyboard.seek("#menu")

    @pytest.mark.asyncio
    async def test_simulate_key_sequence(self, channel, keyboard):
        await keyboard.simulate_key_sequence(["Tab", "Tab", "Enter"])

        assert channel.keys == ["Tab", "Tab", "Enter"]
        assert channel.activations == ["#save"]
