from __future__ import annotations

import os
from typing import Set


def _admin_ids() -> Set[int]:
    raw = os.getenv("TELEGRAM_ADMIN_IDS", "")
    return {int(x.strip()) for x in raw.split(",") if x.strip().isdigit()}


def is_admin_uid(uid: int | None) -> bool:
    return bool(uid and uid in _admin_ids())


def get_admin_ids() -> Set[int]:
    """Telegram user ids allowed to operate the bot (TELEGRAM_ADMIN_IDS)."""
    return _admin_ids()
