from __future__ import annotations

import logging
from typing import Optional, Protocol

from csvpay.db.models import Setting
from csvpay.db.session import session_scope

logger = logging.getLogger(__name__)

TOKEN_KEY = "PAYMAN_TOKEN"


class CredentialStore(Protocol):
    async def get(self) -> Optional[str]: ...

    async def set(self, token: str) -> None: ...

    async def remove(self) -> None: ...


class SettingCredentialStore:
    """Single bearer token kept in the ``settings`` key-value table."""

    def __init__(self, key: str = TOKEN_KEY) -> None:
        self.key = key

    async def get(self) -> Optional[str]:
        async with session_scope() as session:
            row = await session.get(Setting, self.key)
            if not row or not row.value:
                return None
            return row.value

    async def set(self, token: str) -> None:
        async with session_scope() as session:
            row = await session.get(Setting, self.key)
            if not row:
                session.add(Setting(key=self.key, value=token))
            else:
                row.value = token
            await session.commit()
        logger.info("credential stored", extra={"extra": {"key": self.key}})

    async def remove(self) -> None:
        async with session_scope() as session:
            row = await session.get(Setting, self.key)
            if row:
                await session.delete(row)
                await session.commit()
                logger.info("credential removed", extra={"extra": {"key": self.key}})
