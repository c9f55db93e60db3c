from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

PaymentIdentity = Tuple[str, str, str]


class InvalidPaymentRow(ValueError):
    pass


class PaymentStatus(str, Enum):
    SUCCESS = "success"
    AWAITING_APPROVAL = "awaiting_approval"
    ERROR = "error"


class ErrorKind(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    INVALID_CREDENTIAL = "invalid_credential"
    DUPLICATE_IN_BATCH = "duplicate_in_batch"
    ALREADY_IN_FLIGHT = "already_in_flight"
    EXTERNAL_CALL = "external_call"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PaymentRequest:
    payee_name: str
    amount: str
    source_wallet: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "payee_name", (self.payee_name or "").strip())
        object.__setattr__(self, "amount", (self.amount or "").strip())
        object.__setattr__(self, "source_wallet", (self.source_wallet or "").strip())

    @classmethod
    def create(cls, payee_name: Any, amount: Any, source_wallet: Any) -> "PaymentRequest":
        """Build a validated request; raises InvalidPaymentRow on bad input."""
        req = cls(str(payee_name or ""), str(amount or ""), str(source_wallet or ""))
        if not req.payee_name:
            raise InvalidPaymentRow("payee name is empty")
        if not req.source_wallet:
            raise InvalidPaymentRow("source wallet is empty")
        try:
            value = Decimal(req.amount)
        except InvalidOperation:
            raise InvalidPaymentRow(f"amount is not a number: {req.amount!r}") from None
        if not value.is_finite() or value <= 0:
            raise InvalidPaymentRow(f"amount must be positive: {req.amount!r}")
        return req

    @property
    def identity(self) -> PaymentIdentity:
        return (self.payee_name, self.amount, self.source_wallet)

    def to_dict(self) -> Dict[str, str]:
        return {
            "payee_name": self.payee_name,
            "amount": self.amount,
            "source_wallet": self.source_wallet,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentRequest":
        return cls(
            str(data.get("payee_name") or ""),
            str(data.get("amount") or ""),
            str(data.get("source_wallet") or ""),
        )


@dataclass(frozen=True)
class PaymentResult:
    request: PaymentRequest
    status: PaymentStatus
    raw_response: str
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def failed(cls, request: PaymentRequest, kind: ErrorKind, error: str, raw_response: Optional[str] = None) -> "PaymentResult":
        return cls(
            request=request,
            status=PaymentStatus.ERROR,
            raw_response=raw_response if raw_response is not None else error,
            error=error,
            error_kind=kind,
        )

    @property
    def payee_name(self) -> str:
        return self.request.payee_name

    @property
    def amount(self) -> str:
        return self.request.amount

    @property
    def source_wallet(self) -> str:
        return self.request.source_wallet

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = self.request.to_dict()
        out["status"] = self.status.value
        out["raw_response"] = self.raw_response
        if self.error is not None:
            out["error"] = self.error
        if self.error_kind is not None:
            out["error_kind"] = self.error_kind.value
        return out


@dataclass(frozen=True)
class BatchSummary:
    succeeded: int
    awaiting_approval: int
    failed: int

    @property
    def total(self) -> int:
        return self.succeeded + self.awaiting_approval + self.failed


def summarize(results: Iterable[PaymentResult]) -> BatchSummary:
    counts = {status: 0 for status in PaymentStatus}
    for r in results:
        counts[r.status] += 1
    return BatchSummary(
        succeeded=counts[PaymentStatus.SUCCESS],
        awaiting_approval=counts[PaymentStatus.AWAITING_APPROVAL],
        failed=counts[PaymentStatus.ERROR],
    )
