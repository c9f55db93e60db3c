from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from csvpay.config import settings
from csvpay.payman.client import get_client
from csvpay.payman.errors import InvalidCredential, NotAuthenticated
from csvpay.services.credentials import CredentialStore, SettingCredentialStore

logger = logging.getLogger(__name__)


class AgentClient(Protocol):
    async def ask(self, command: str) -> str: ...

    async def aclose(self) -> None: ...


ClientFactory = Callable[[str], AgentClient]


@dataclass
class Session:
    token: str
    client: AgentClient
    # Bookkeeping only; validity is decided by the agent's own responses
    expires_at: datetime


class SessionManager:
    """Owns the single process-wide Payman session.

    The credential store is re-read on every ``ensure_session`` call so that a
    logout done elsewhere (token row removed) is noticed on next use.
    """

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        client_factory: Optional[ClientFactory] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self._store: CredentialStore = store if store is not None else SettingCredentialStore()
        self._client_factory: ClientFactory = client_factory or get_client
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.payman_token_ttl_seconds
        self._session: Optional[Session] = None
        self._lock = asyncio.Lock()

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def is_ready(self) -> bool:
        return self._session is not None

    async def ensure_session(self) -> Session:
        async with self._lock:
            token = await self._store.get()
            if not token:
                if self._session is not None:
                    logger.info("stored credential gone; dropping session")
                await self._drop()
                raise NotAuthenticated()
            if self._session is not None and self._session.token == token:
                return self._session

            await self._drop()
            try:
                client = self._client_factory(token)
            except InvalidCredential:
                logger.warning("stored Payman credential is unusable")
                raise
            self._session = Session(
                token=token,
                client=client,
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=self._ttl_seconds),
            )
            logger.info("Payman session created", extra={"extra": {"expires_at": self._session.expires_at.isoformat()}})
            return self._session

    async def connect(self, token: str) -> Session:
        """Persist a freshly exchanged token and bind a session to it."""
        await self._store.set(token)
        return await self.ensure_session()

    async def teardown(self) -> None:
        async with self._lock:
            await self._store.remove()
            await self._drop()
        logger.info("Payman session torn down")

    async def invalidate(self, reason: str) -> None:
        logger.warning("Payman credential rejected; tearing session down: %s", reason)
        await self.teardown()

    async def aclose(self) -> None:
        """Close the in-memory handle without touching the stored credential."""
        async with self._lock:
            await self._drop()

    async def _drop(self) -> None:
        current, self._session = self._session, None
        if current is None:
            return
        try:
            await current.client.aclose()
        except Exception as e:
            logger.warning("closing Payman client failed: %s", e)


_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    global _manager
    if _manager is None:
        _manager = SessionManager()
    return _manager


def set_session_manager(manager: Optional[SessionManager]) -> None:
    global _manager
    _manager = manager
