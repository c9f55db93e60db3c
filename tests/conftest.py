from __future__ import annotations

from typing import Dict, List, Optional, Union

import pytest

from csvpay.services.dispatcher import BatchDispatcher, InFlightRegistry, PacingPolicy
from csvpay.services.session_manager import SessionManager


class MemoryStore:
    def __init__(self, token: Optional[str] = None) -> None:
        self.token = token

    async def get(self) -> Optional[str]:
        return self.token

    async def set(self, token: str) -> None:
        self.token = token

    async def remove(self) -> None:
        self.token = None


class FakeAgent:
    """Records every command; replies per command or with a default text."""

    def __init__(self, replies: Optional[Dict[str, Union[str, Exception]]] = None, default: str = "Payment sent") -> None:
        self.replies = replies or {}
        self.default = default
        self.calls: List[str] = []
        self.closed = False

    async def ask(self, command: str) -> str:
        self.calls.append(command)
        reply = self.replies.get(command, self.default)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def aclose(self) -> None:
        self.closed = True


class Harness:
    def __init__(self, token: Optional[str] = "tok-123", replies=None, pacing: Optional[PacingPolicy] = None) -> None:
        self.store = MemoryStore(token)
        self.agent = FakeAgent(replies)
        self.factory_calls: List[str] = []
        self.sleeps: List[float] = []
        self.in_flight = InFlightRegistry()
        self.sessions = SessionManager(store=self.store, client_factory=self._factory, ttl_seconds=3600)
        self.dispatcher = BatchDispatcher(
            session_manager=self.sessions,
            in_flight=self.in_flight,
            pacing=pacing or PacingPolicy(delay_seconds=0.5),
            sleep=self._sleep,
        )

    def _factory(self, token: str) -> FakeAgent:
        self.factory_calls.append(token)
        return self.agent

    async def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def make_harness():
    return Harness
