from __future__ import annotations

from typing import Iterable, List, Sequence

from csvpay.services.models import PaymentRequest, PaymentResult, PaymentStatus, summarize
from csvpay.utils.money import format_amount

# Telegram rejects messages over 4096 characters
MESSAGE_LIMIT = 3800
DETAIL_LIMIT = 300
PREVIEW_ROWS = 20

STATUS_LABELS = {
    PaymentStatus.SUCCESS: "✅ Success",
    PaymentStatus.AWAITING_APPROVAL: "⏳ Awaiting Approval",
    PaymentStatus.ERROR: "❌ Failed",
}


def _truncate(text: str, limit: int = DETAIL_LIMIT) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _chunk(lines: Iterable[str], limit: int = MESSAGE_LIMIT) -> List[str]:
    chunks: List[str] = []
    current = ""
    for line in lines:
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit and current:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def render_summary(results: Sequence[PaymentResult]) -> str:
    s = summarize(results)
    return (
        f"{s.succeeded} successful, {s.awaiting_approval} awaiting approval, "
        f"{s.failed} failed out of {s.total} payments"
    )


def render_results(results: Sequence[PaymentResult]) -> List[str]:
    """Result table as one or more message texts, rows in upload order."""
    lines = ["💸 Payment Results", render_summary(results), ""]
    for i, r in enumerate(results, start=1):
        lines.append(f"{i}. {r.payee_name} | {format_amount(r.amount)} | {r.source_wallet} | {STATUS_LABELS[r.status]}")
        detail = r.error if r.status is PaymentStatus.ERROR and r.error else r.raw_response
        if detail:
            lines.append(f"   ↳ {_truncate(detail)}")
    return _chunk(lines)


def render_preview(requests: Sequence[PaymentRequest], filename: str = "") -> str:
    title = f"📄 {filename}" if filename else "📄 Uploaded CSV"
    lines = [title, f"{len(requests)} payment(s) ready:", ""]
    for i, r in enumerate(requests[:PREVIEW_ROWS], start=1):
        lines.append(f"{i}. {r.payee_name} | {format_amount(r.amount)} | {r.source_wallet}")
    hidden = len(requests) - PREVIEW_ROWS
    if hidden > 0:
        lines.append(f"… and {hidden} more")
    return "\n".join(lines)
