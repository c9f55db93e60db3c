from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

# Task-local id stamped on every log record (bot update or payment batch)
_cid: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    return _cid.get()


@contextmanager
def correlation_scope(value: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id for the enclosed block and restore the outer one afterwards."""
    cid = value or uuid.uuid4().hex[:12]
    token = _cid.set(cid)
    try:
        yield cid
    finally:
        _cid.reset(token)
