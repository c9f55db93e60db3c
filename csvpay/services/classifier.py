from __future__ import annotations

from typing import Optional, Tuple

from csvpay.payman.client import NO_RESPONSE_TEXT
from csvpay.services.models import PaymentStatus

# The agent's wording is not a contract, so these are matched as lower-cased substrings
APPROVAL_MARKERS = ("awaiting approval", "pending approval")


def has_approval_marker(text: Optional[str]) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in APPROVAL_MARKERS)


def error_message(exc: BaseException) -> str:
    msg = str(exc)
    return msg if msg else exc.__class__.__name__


def classify_response(
    text: Optional[str] = None,
    exc: Optional[BaseException] = None,
) -> Tuple[PaymentStatus, str, Optional[str]]:
    """Map one agent call outcome to ``(status, raw_response, error)``.

    An approval marker wins over the delivery path: the agent reports
    approval-pending both as a normal reply and as a raised error.
    """
    if exc is not None:
        raw = error_message(exc)
        if has_approval_marker(raw):
            return PaymentStatus.AWAITING_APPROVAL, raw, None
        return PaymentStatus.ERROR, raw, raw

    raw = text if text else NO_RESPONSE_TEXT
    if has_approval_marker(raw):
        return PaymentStatus.AWAITING_APPROVAL, raw, None
    return PaymentStatus.SUCCESS, raw, None
