"""Typing indicators from the other side of a conversation.

The controller only knows ``TypingProvider``. Today the sole non-trivial
provider fakes a remote peer; a real transport would be another subclass.
"""

from __future__ import annotations

import logging
import random
from typing import Dict, List, Optional

from mmessenger.model.profile import CHAT_TYPE_PRIVATE
from mmessenger.model.storage import StorageError


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class TimerHandle:
    def cancel(self) -> None:
        raise NotImplementedError


class Scheduler:
    """Runs a callback once after ``delay`` seconds."""

    def call_later(self, delay: float, callback) -> TimerHandle:
        raise NotImplementedError


class TypingListener:
    def remote_typing_started(self, username: str) -> None:
        raise NotImplementedError

    def remote_typing_stopped(self) -> None:
        raise NotImplementedError


class TypingProvider:
    def local_typing(self, chat: Dict, user_key: Optional[str]) -> None:
        """Called once when the local user starts a typing burst in ``chat``."""
        raise NotImplementedError

    def close(self) -> None:
        """Cancel pending indications. The provider may be used again."""
        raise NotImplementedError


class NullTypingProvider(TypingProvider):
    def local_typing(self, chat: Dict, user_key: Optional[str]) -> None:
        return None

    def close(self) -> None:
        return None


class SimulatedTypingProvider(TypingProvider):
    SHOW_DELAY = (1.0, 3.0)
    HIDE_DELAY = (2.0, 5.0)
    SHOW_PROBABILITY = 0.3

    def __init__(self, listener: TypingListener, scheduler: Scheduler, storage, rng: Optional[random.Random] = None):
        self.listener = listener
        self.scheduler = scheduler
        self.storage = storage
        self.rng = rng or random.Random()
        self._handles: List[TimerHandle] = []

    def _later(self, bounds, callback) -> None:
        delay = self.rng.uniform(*bounds)
        handle = None

        def fire():
            if handle in self._handles:
                self._handles.remove(handle)
            callback()

        handle = self.scheduler.call_later(delay, fire)
        self._handles.append(handle)

    def local_typing(self, chat: Dict, user_key: Optional[str]) -> None:
        if not chat or chat.get("type") != CHAT_TYPE_PRIVATE:
            return
        others = [p for p in (chat.get("participants") or []) if p != user_key]
        if not others:
            return

        try:
            other = self.storage.load(others[0])
        except StorageError as e:
            logger.warning(f"Skipping typing simulation for {others[0]}: {str(e)}")
            return
        if not other or not other.get("username"):
            return

        username = other["username"]

        def maybe_show():
            if self.rng.random() >= self.SHOW_PROBABILITY:
                return
            self.listener.remote_typing_started(username)
            self._later(self.HIDE_DELAY, self.listener.remote_typing_stopped)

        self._later(self.SHOW_DELAY, maybe_show)

    def close(self) -> None:
        handles, self._handles = self._handles, []
        for handle in handles:
            handle.cancel()
