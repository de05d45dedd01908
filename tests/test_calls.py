import asyncio

import pytest

from frontdesk.calls import CallRegistry


class TestCallRegistry:
    @pytest.mark.asyncio
    async def test_turns_of_one_call_are_sequential(self):
        registry = CallRegistry()
        log = []

        async def turn(name):
            async with registry.turn("call_1"):
                log.append(f"{name}:start")
                await asyncio.sleep(0.01)
                log.append(f"{name}:end")

        await asyncio.gather(turn("a"), turn("b"))
        assert log == ["a:start", "a:end", "b:start", "b:end"]

    @pytest.mark.asyncio
    async def test_different_calls_overlap(self):
        registry = CallRegistry()
        log = []

        async def turn(call_id):
            async with registry.turn(call_id):
                log.append(f"{call_id}:start")
                await asyncio.sleep(0.01)
                log.append(f"{call_id}:end")

        await asyncio.gather(turn("call_1"), turn("call_2"))
        assert log[:2] == ["call_1:start", "call_2:start"]

    @pytest.mark.asyncio
    async def test_lock_released_after_error(self):
        registry = CallRegistry()
        with pytest.raises(RuntimeError):
            async with registry.turn("call_1"):
                raise RuntimeError("boom")
        assert not registry.lock_for("call_1").locked()

    def test_hangup_drops_lock(self):
        registry = CallRegistry()
        registry.lock_for("call_1")
        assert "call_1" in registry
        registry.hangup("call_1")
        assert "call_1" not in registry
        assert len(registry) == 0
