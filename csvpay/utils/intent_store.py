from __future__ import annotations

import json
import logging
from typing import Any, List, Optional

from sqlalchemy import delete

from csvpay.db.session import session_scope
from csvpay.db.models import Setting
from csvpay.services.models import PaymentRequest

logger = logging.getLogger(__name__)


def pending_batch_key(uid: int) -> str:
    return f"INTENT:BATCH:{uid}"


async def set_intent_json(key: str, payload: dict) -> None:
    data = json.dumps(payload, ensure_ascii=False)
    async with session_scope() as session:
        row = await session.get(Setting, key)
        if not row:
            session.add(Setting(key=key, value=data))
        else:
            row.value = data
        await session.commit()


async def get_intent_json(key: str) -> Optional[dict[str, Any]]:
    async with session_scope() as session:
        row = await session.get(Setting, key)
        if not row or row.value is None:
            return None
        try:
            return json.loads(row.value)
        except ValueError:
            logger.warning("discarding unreadable intent payload", extra={"extra": {"key": key}})
            return None


async def clear_intent(key: str) -> None:
    async with session_scope() as session:
        row = await session.get(Setting, key)
        if row:
            await session.delete(row)
            await session.commit()


async def save_pending_batch(uid: int, requests: List[PaymentRequest], filename: str = "") -> None:
    await set_intent_json(
        pending_batch_key(uid),
        {"filename": filename, "rows": [r.to_dict() for r in requests]},
    )


async def take_intent_json(key: str) -> Optional[dict[str, Any]]:
    """Read and delete an intent in one step; of two concurrent callers only one gets it.

    The delete is conditional on the value just read, so a caller whose delete
    matches no row lost the race and gets None.
    """
    async with session_scope() as session:
        row = await session.get(Setting, key)
        if not row or row.value is None:
            return None
        raw = row.value
        result = await session.execute(
            delete(Setting)
            .where(Setting.key == key, Setting.value == raw)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    if result.rowcount != 1:
        logger.info("intent already taken", extra={"extra": {"key": key}})
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("discarding unreadable intent payload", extra={"extra": {"key": key}})
        return None


async def pop_pending_batch(uid: int) -> Optional[List[PaymentRequest]]:
    """Take the uploaded batch so that one upload is run at most once, even on a double click."""
    payload = await take_intent_json(pending_batch_key(uid))
    if payload is None:
        return None
    rows = payload.get("rows")
    if not isinstance(rows, list):
        return None
    return [PaymentRequest.from_dict(r) for r in rows if isinstance(r, dict)]
