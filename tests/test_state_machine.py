import asyncio

import pytest

from assistant.services.state_machine import (
    InvalidTransitionError,
    SupportSessionStore,
    SupportState,
    can_transition,
    transition,
)


class TestTransitions:
    def test_idle_to_active(self):
        assert transition(SupportState.IDLE, SupportState.SUPPORT_ACTIVE) == SupportState.SUPPORT_ACTIVE

    def test_active_to_idle(self):
        assert transition(SupportState.SUPPORT_ACTIVE, SupportState.IDLE) == SupportState.IDLE

    def test_same_state_is_invalid(self):
        assert can_transition(SupportState.IDLE, SupportState.IDLE) is False
        with pytest.raises(InvalidTransitionError):
            transition(SupportState.SUPPORT_ACTIVE, SupportState.SUPPORT_ACTIVE)


class TestSupportSessionStore:
    def test_activate_and_deactivate(self):
        store = SupportSessionStore()
        assert store.state("chat") == SupportState.IDLE

        store.activate("chat", "curso")
        assert store.state("chat") == SupportState.SUPPORT_ACTIVE
        assert store.get("chat") == "curso"
        assert len(store) == 1

        store.deactivate("chat")
        assert store.get("chat") is None
        assert len(store) == 0

    def test_double_activation_is_rejected(self):
        store = SupportSessionStore()
        store.activate("chat", "curso")
        with pytest.raises(InvalidTransitionError):
            store.activate("chat", "curso")

    def test_deactivating_idle_chat_is_rejected(self):
        with pytest.raises(InvalidTransitionError):
            SupportSessionStore().deactivate("chat")

    def test_chats_are_independent(self):
        store = SupportSessionStore()
        store.activate("a", "curso")
        assert store.state("b") == SupportState.IDLE

    @pytest.mark.asyncio
    async def test_lock_serializes_same_chat(self):
        store = SupportSessionStore()
        events = []

        async def critical(name):
            async with store.lock("chat"):
                events.append(f"{name}:enter")
                await asyncio.sleep(0.01)
                events.append(f"{name}:exit")

        await asyncio.gather(critical("first"), critical("second"))

        assert events == ["first:enter", "first:exit", "second:enter", "second:exit"]

    @pytest.mark.asyncio
    async def test_lock_does_not_block_other_chats(self):
        store = SupportSessionStore()
        async with store.lock("a"):
            await asyncio.wait_for(_enter(store, "b"), timeout=1)

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self):
        store = SupportSessionStore()
        for i in range(100):
            await _enter(store, f"chat-{i}")
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_lock_kept_while_another_task_waits(self):
        store = SupportSessionStore()
        waiter_entered = asyncio.Event()

        async def waiter():
            async with store.lock("chat"):
                waiter_entered.set()

        async with store.lock("chat"):
            task = asyncio.create_task(waiter())
            await asyncio.sleep(0)
            assert "chat" in store._locks
        await asyncio.wait_for(task, timeout=1)

        assert waiter_entered.is_set()
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        store = SupportSessionStore()
        with pytest.raises(RuntimeError):
            async with store.lock("chat"):
                raise RuntimeError("handler failed")
        assert store._locks == {}
        assert await asyncio.wait_for(_enter(store, "chat"), timeout=1) is True


async def _enter(store, chat_id):
    async with store.lock(chat_id):
        return True
