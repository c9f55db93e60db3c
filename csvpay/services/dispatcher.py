from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Set

from csvpay.config import settings
from csvpay.payman.errors import InvalidCredential, NotAuthenticated
from csvpay.services.classifier import classify_response
from csvpay.services.models import (
    ErrorKind,
    PaymentIdentity,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    summarize,
)
from csvpay.services.session_manager import Session, SessionManager, get_session_manager
from csvpay.utils.correlation import correlation_scope

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

DUPLICATE_MESSAGE = "Duplicate of an earlier row in this batch; not sent"
IN_FLIGHT_MESSAGE = "This payment is already being processed"
CANCELLED_MESSAGE = "Batch cancelled before this row was sent"


@dataclass(frozen=True)
class PacingPolicy:
    delay_seconds: float = 0.5
    after_last_row: bool = False

    @classmethod
    def from_settings(cls) -> "PacingPolicy":
        return cls(delay_seconds=max(settings.payment_row_delay_ms, 0) / 1000.0)


class InFlightRegistry:
    """Identities of payments whose agent call has not settled yet.

    ``try_acquire`` never suspends, so check-and-insert is atomic on the event loop.
    """

    def __init__(self) -> None:
        self._items: Set[PaymentIdentity] = set()

    def try_acquire(self, identity: PaymentIdentity) -> bool:
        if identity in self._items:
            return False
        self._items.add(identity)
        return True

    def release(self, identity: PaymentIdentity) -> None:
        self._items.discard(identity)

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, identity: object) -> bool:
        return identity in self._items

    def __len__(self) -> int:
        return len(self._items)


class BatchDispatcher:
    """Runs an uploaded batch row by row against the Payman agent.

    Rows are sent strictly one at a time and in upload order. Each admitted row
    gets exactly one ``ask`` call; failures are never retried. The returned list
    always has one result per input row.
    """

    def __init__(
        self,
        session_manager: Optional[SessionManager] = None,
        in_flight: Optional[InFlightRegistry] = None,
        pacing: Optional[PacingPolicy] = None,
        sleep: Optional[SleepFunc] = None,
        command_template: Optional[str] = None,
    ) -> None:
        self._sessions = session_manager
        self.in_flight = in_flight if in_flight is not None else IN_FLIGHT
        self.pacing = pacing if pacing is not None else PacingPolicy.from_settings()
        self._sleep: SleepFunc = sleep or asyncio.sleep
        self._command_template = command_template or settings.payman_command_template
        self._active: Set[asyncio.Event] = set()

    @property
    def sessions(self) -> SessionManager:
        return self._sessions if self._sessions is not None else get_session_manager()

    @property
    def is_running(self) -> bool:
        return bool(self._active)

    def build_command(self, request: PaymentRequest) -> str:
        return self._command_template.format(
            amount=request.amount,
            source_wallet=request.source_wallet,
            payee_name=request.payee_name,
        )

    async def process(
        self,
        batch: Iterable[PaymentRequest],
        cancel: Optional[asyncio.Event] = None,
    ) -> List[PaymentResult]:
        rows = list(batch)
        cancel = cancel if cancel is not None else asyncio.Event()
        self._active.add(cancel)
        try:
            with correlation_scope() as batch_id:
                return await self._process(rows, cancel, batch_id)
        finally:
            self._active.discard(cancel)

    async def _process(
        self,
        rows: List[PaymentRequest],
        cancel: asyncio.Event,
        batch_id: str,
    ) -> List[PaymentResult]:
        logger.info("batch started", extra={"extra": {"batch": batch_id, "rows": len(rows)}})
        try:
            await self.sessions.ensure_session()
        except NotAuthenticated as e:
            logger.warning("batch aborted: not authenticated", extra={"extra": {"batch": batch_id}})
            return [PaymentResult.failed(r, ErrorKind.NOT_AUTHENTICATED, str(e)) for r in rows]
        except InvalidCredential as e:
            logger.warning("batch aborted: invalid credential", extra={"extra": {"batch": batch_id}})
            return [PaymentResult.failed(r, ErrorKind.INVALID_CREDENTIAL, str(e)) for r in rows]

        results = await self._run_rows(rows, cancel, batch_id)
        s = summarize(results)
        logger.info(
            "batch finished",
            extra={"extra": {
                "batch": batch_id,
                "succeeded": s.succeeded,
                "awaiting_approval": s.awaiting_approval,
                "failed": s.failed,
            }},
        )
        return results

    async def _run_rows(
        self,
        rows: List[PaymentRequest],
        cancel: asyncio.Event,
        batch_id: str,
    ) -> List[PaymentResult]:
        results: List[PaymentResult] = []
        processed: Set[PaymentIdentity] = set()
        auth_lost: Optional[str] = None
        last = len(rows) - 1

        for index, request in enumerate(rows):
            if cancel.is_set():
                results.append(PaymentResult.failed(request, ErrorKind.CANCELLED, CANCELLED_MESSAGE))
                continue
            if auth_lost is not None:
                results.append(PaymentResult.failed(request, ErrorKind.NOT_AUTHENTICATED, auth_lost))
                continue

            # Re-read per row: a /code during the batch swaps the client, a logout ends it
            try:
                session = await self.sessions.ensure_session()
            except NotAuthenticated as e:
                auth_lost = str(e)
                results.append(PaymentResult.failed(request, ErrorKind.NOT_AUTHENTICATED, auth_lost))
                continue
            except InvalidCredential as e:
                auth_lost = f"Not authenticated: {e}"
                results.append(PaymentResult.failed(request, ErrorKind.INVALID_CREDENTIAL, str(e)))
                continue

            result = await self._process_row(session, request, processed, batch_id, index)
            results.append(result)

            if result.error_kind is ErrorKind.INVALID_CREDENTIAL:
                auth_lost = f"Not authenticated: {result.error}"
                await self.sessions.invalidate(result.error or "")
                continue

            if index < last or self.pacing.after_last_row:
                if self.pacing.delay_seconds > 0 and not cancel.is_set():
                    await self._sleep(self.pacing.delay_seconds)

        return results

    async def _process_row(
        self,
        session: Session,
        request: PaymentRequest,
        processed: Set[PaymentIdentity],
        batch_id: str,
        index: int,
    ) -> PaymentResult:
        row_ctx = {"batch": batch_id, "row": index + 1, "payee": request.payee_name, "amount": request.amount}
        identity = request.identity
        if identity in processed:
            logger.warning("row skipped: duplicate in batch", extra={"extra": row_ctx})
            return PaymentResult.failed(request, ErrorKind.DUPLICATE_IN_BATCH, DUPLICATE_MESSAGE)
        if not self.in_flight.try_acquire(identity):
            logger.warning("row skipped: already in flight", extra={"extra": row_ctx})
            return PaymentResult.failed(request, ErrorKind.ALREADY_IN_FLIGHT, IN_FLIGHT_MESSAGE)
        processed.add(identity)

        failure: Optional[Exception] = None
        try:
            try:
                text = await session.client.ask(self.build_command(request))
            except Exception as e:
                failure = e
                status, raw, error = classify_response(exc=e)
            else:
                status, raw, error = classify_response(text=text)
        finally:
            self.in_flight.release(identity)

        logger.info("row dispatched", extra={"extra": {**row_ctx, "status": status.value, "response": raw}})
        if status is not PaymentStatus.ERROR:
            return PaymentResult(request=request, status=status, raw_response=raw)
        kind = ErrorKind.INVALID_CREDENTIAL if isinstance(failure, InvalidCredential) else ErrorKind.EXTERNAL_CALL
        return PaymentResult.failed(request, kind, error or raw, raw_response=raw)

    def cancel_all(self) -> int:
        """Signal every running batch to stop at its next row boundary."""
        events = list(self._active)
        for ev in events:
            ev.set()
        return len(events)

    async def disconnect(self) -> None:
        cancelled = self.cancel_all()
        self.in_flight.clear()
        await self.sessions.teardown()
        logger.info("disconnected", extra={"extra": {"cancelled_batches": cancelled}})


IN_FLIGHT = InFlightRegistry()

_dispatcher: Optional[BatchDispatcher] = None


def get_dispatcher() -> BatchDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = BatchDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: Optional[BatchDispatcher]) -> None:
    global _dispatcher
    _dispatcher = dispatcher
