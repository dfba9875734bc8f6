from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)


class CommandMode(enum.Enum):
    NONE = "none"
    ADDING_ONE = "adding_one"
    ADDING_MANY = "adding_many"
    REMOVING = "removing"


@dataclass(frozen=True)
class CommandModeState:
    chat_id: int
    user_id: int
    mode: CommandMode
    entered_at: float


class ModeTracker:
    """Transient per-(chat, user) command modes.

    Entering a mode replaces whatever the user had pending in that chat. Modes
    are kept in memory only and expire after ``timeout`` seconds when one is
    given.
    """

    def __init__(self, *, timeout: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._states: dict[tuple[int, int], CommandModeState] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._clock = clock

    def enter(self, chat_id: int, user_id: int, mode: CommandMode) -> CommandMode:
        if mode is CommandMode.NONE:
            return self.finish(chat_id, user_id)

        state = CommandModeState(chat_id=chat_id, user_id=user_id, mode=mode, entered_at=self._clock())
        with self._lock:
            previous = self._pop_live((chat_id, user_id))
            self._states[(chat_id, user_id)] = state

        LOGGER.info("User %s entered %s mode in chat %s", user_id, mode.value, chat_id)
        return previous

    def current(self, chat_id: int, user_id: int) -> CommandMode:
        with self._lock:
            state = self._states.get((chat_id, user_id))
            if state is None:
                return CommandMode.NONE
            if self._expired(state):
                del self._states[(chat_id, user_id)]
                LOGGER.info("Mode %s of user %s in chat %s expired", state.mode.value, user_id, chat_id)
                return CommandMode.NONE
            return state.mode

    def finish(self, chat_id: int, user_id: int) -> CommandMode:
        with self._lock:
            return self._pop_live((chat_id, user_id))

    def cancel(self, chat_id: int, user_id: int) -> CommandMode:
        previous = self.finish(chat_id, user_id)
        if previous is not CommandMode.NONE:
            LOGGER.info("User %s canceled %s mode in chat %s", user_id, previous.value, chat_id)
        return previous

    def pending(self) -> list[CommandModeState]:
        with self._lock:
            return [state for state in self._states.values() if not self._expired(state)]

    def _pop_live(self, key: tuple[int, int]) -> CommandMode:
        state = self._states.pop(key, None)
        if state is None or self._expired(state):
            return CommandMode.NONE
        return state.mode

    def _expired(self, state: CommandModeState) -> bool:
        if self._timeout is None:
            return False
        return self._clock() - state.entered_at >= self._timeout
