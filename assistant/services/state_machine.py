import asyncio
from contextlib import asynccontextmanager
from enum import Enum
from typing import Optional


class SupportState(str, Enum):
    IDLE = "idle"
    SUPPORT_ACTIVE = "support_active"


VALID_TRANSITIONS = {
    SupportState.IDLE: [SupportState.SUPPORT_ACTIVE],
    SupportState.SUPPORT_ACTIVE: [SupportState.IDLE],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: SupportState, to_state: SupportState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: SupportState, to_state: SupportState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: SupportState, to_state: SupportState) -> SupportState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


class SupportSessionStore:
    """Per-chat support sessions held in process memory.

    Callers wrap read-decide-write sequences in `lock(chat_id)`. A chat's lock
    exists only while some task holds or awaits it, so distinct chats never
    contend and idle chats cost nothing.
    """

    def __init__(self):
        self._sessions: dict[str, str] = {}
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def lock(self, chat_id: str):
        lock, users = self._locks.get(chat_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[chat_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[chat_id]
            if users == 1:
                del self._locks[chat_id]
            else:
                self._locks[chat_id] = (lock, users - 1)

    def state(self, chat_id: str) -> SupportState:
        return SupportState.SUPPORT_ACTIVE if chat_id in self._sessions else SupportState.IDLE

    def get(self, chat_id: str) -> Optional[str]:
        """Active knowledge category, or None when idle."""
        return self._sessions.get(chat_id)

    def activate(self, chat_id: str, category: str) -> SupportState:
        new_state = transition(self.state(chat_id), SupportState.SUPPORT_ACTIVE)
        self._sessions[chat_id] = category
        return new_state

    def deactivate(self, chat_id: str) -> SupportState:
        new_state = transition(self.state(chat_id), SupportState.IDLE)
        self._sessions.pop(chat_id, None)
        return new_state

    def __len__(self) -> int:
        return len(self._sessions)
