from __future__ import annotations

import asyncio

import pytest

from conftest import FakeAgent, MemoryStore
from csvpay.payman.errors import InvalidCredential, PaymanError
from csvpay.services.dispatcher import (
    BatchDispatcher,
    InFlightRegistry,
    CANCELLED_MESSAGE,
    DUPLICATE_MESSAGE,
    IN_FLIGHT_MESSAGE,
    PacingPolicy,
)
from csvpay.services.models import ErrorKind, PaymentRequest, PaymentStatus
from csvpay.services.session_manager import SessionManager


def _req(payee: str, amount: str, wallet: str) -> PaymentRequest:
    return PaymentRequest(payee, amount, wallet)


@pytest.mark.asyncio
async def test_duplicate_row_is_not_sent_twice(harness) -> None:
    batch = [_req("Alice", "100", "W1"), _req("Alice", "100", "W1"), _req("Bob", "50", "W2")]

    results = await harness.dispatcher.process(batch)

    assert [r.status for r in results] == [PaymentStatus.SUCCESS, PaymentStatus.ERROR, PaymentStatus.SUCCESS]
    assert results[1].error_kind is ErrorKind.DUPLICATE_IN_BATCH
    assert results[1].error == DUPLICATE_MESSAGE
    assert harness.agent.calls == ["Send 100 from W1 to Alice", "Send 50 from W2 to Bob"]
    assert [r.payee_name for r in results] == ["Alice", "Alice", "Bob"]


@pytest.mark.asyncio
async def test_duplicate_detection_ignores_surrounding_whitespace(harness) -> None:
    batch = [_req("Alice ", "100", "W1"), _req("Alice", " 100", " W1 ")]

    results = await harness.dispatcher.process(batch)

    assert results[1].error_kind is ErrorKind.DUPLICATE_IN_BATCH
    assert len(harness.agent.calls) == 1


@pytest.mark.asyncio
async def test_different_amounts_are_different_payments(harness) -> None:
    results = await harness.dispatcher.process([_req("Alice", "100", "W1"), _req("Alice", "100.00", "W1")])

    assert [r.status for r in results] == [PaymentStatus.SUCCESS, PaymentStatus.SUCCESS]
    assert len(harness.agent.calls) == 2


@pytest.mark.asyncio
async def test_approval_signal_in_raised_error(make_harness) -> None:
    h = make_harness(replies={"Send 10 from W1 to Carol": PaymanError("Transaction awaiting approval by admin")})

    results = await h.dispatcher.process([_req("Carol", "10", "W1")])

    assert results[0].status is PaymentStatus.AWAITING_APPROVAL
    assert results[0].raw_response == "Transaction awaiting approval by admin"
    assert results[0].error is None


@pytest.mark.asyncio
async def test_approval_signal_in_reply_text(make_harness) -> None:
    h = make_harness(replies={"Send 10 from W1 to Carol": "Payment is PENDING APPROVAL from the wallet owner"})

    results = await h.dispatcher.process([_req("Carol", "10", "W1")])

    assert results[0].status is PaymentStatus.AWAITING_APPROVAL
    assert results[0].raw_response == "Payment is PENDING APPROVAL from the wallet owner"


@pytest.mark.asyncio
async def test_agent_error_is_captured_verbatim(make_harness) -> None:
    h = make_harness(replies={"Send 10 from W1 to Dave": PaymanError("Insufficient funds in wallet W1")})

    results = await h.dispatcher.process([_req("Dave", "10", "W1"), _req("Erin", "5", "W1")])

    assert results[0].status is PaymentStatus.ERROR
    assert results[0].error_kind is ErrorKind.EXTERNAL_CALL
    assert results[0].error == "Insufficient funds in wallet W1"
    assert results[0].raw_response == "Insufficient funds in wallet W1"
    # The batch keeps going and nothing is retried
    assert results[1].status is PaymentStatus.SUCCESS
    assert h.agent.calls.count("Send 10 from W1 to Dave") == 1


@pytest.mark.asyncio
async def test_success_keeps_raw_response(harness) -> None:
    results = await harness.dispatcher.process([_req("Alice", "100", "W1")])

    assert results[0].raw_response == "Payment sent"
    assert results[0].error is None


@pytest.mark.asyncio
async def test_missing_credential_fails_every_row_without_calls(make_harness) -> None:
    h = make_harness(token=None)
    batch = [_req("Alice", "100", "W1"), _req("Bob", "50", "W2")]

    results = await h.dispatcher.process(batch)

    assert len(results) == 2
    assert all(r.status is PaymentStatus.ERROR for r in results)
    assert all(r.error_kind is ErrorKind.NOT_AUTHENTICATED for r in results)
    assert h.agent.calls == []
    assert h.factory_calls == []
    assert h.sleeps == []


@pytest.mark.asyncio
async def test_malformed_credential_fails_every_row(make_harness) -> None:
    h = make_harness()

    def broken_factory(token: str):
        raise InvalidCredential("Malformed Payman access token")

    h.sessions._client_factory = broken_factory

    results = await h.dispatcher.process([_req("Alice", "100", "W1")])

    assert results[0].error_kind is ErrorKind.INVALID_CREDENTIAL
    assert results[0].error == "Malformed Payman access token"
    assert h.agent.calls == []


@pytest.mark.asyncio
async def test_in_flight_is_empty_after_success_and_error(make_harness) -> None:
    ok = make_harness()
    await ok.dispatcher.process([_req("Alice", "100", "W1"), _req("Bob", "50", "W2")])
    assert len(ok.in_flight) == 0

    failing = make_harness()
    failing.agent.replies = {
        "Send 100 from W1 to Alice": PaymanError("boom"),
        "Send 50 from W2 to Bob": RuntimeError("socket closed"),
    }
    results = await failing.dispatcher.process([_req("Alice", "100", "W1"), _req("Bob", "50", "W2")])
    assert [r.status for r in results] == [PaymentStatus.ERROR, PaymentStatus.ERROR]
    assert len(failing.in_flight) == 0


@pytest.mark.asyncio
async def test_row_already_in_flight_is_rejected(harness) -> None:
    harness.in_flight.try_acquire(("Alice", "100", "W1"))

    results = await harness.dispatcher.process([_req("Alice", "100", "W1"), _req("Bob", "50", "W2")])

    assert results[0].error_kind is ErrorKind.ALREADY_IN_FLIGHT
    assert results[0].error == IN_FLIGHT_MESSAGE
    assert harness.agent.calls == ["Send 50 from W2 to Bob"]


@pytest.mark.asyncio
async def test_overlapping_batches_dispatch_identity_once(harness) -> None:
    gate = asyncio.Event()

    async def slow_ask(command: str) -> str:
        harness.agent.calls.append(command)
        await gate.wait()
        return "Payment sent"

    harness.agent.ask = slow_ask  # type: ignore[assignment]

    async def open_gate() -> None:
        await asyncio.sleep(0.01)
        gate.set()

    first, second, _ = await asyncio.gather(
        harness.dispatcher.process([_req("Alice", "100", "W1")]),
        harness.dispatcher.process([_req("Alice", "100", "W1")]),
        open_gate(),
    )

    statuses = sorted([first[0].status.value, second[0].status.value])
    assert statuses == ["error", "success"]
    rejected = first[0] if first[0].status is PaymentStatus.ERROR else second[0]
    assert rejected.error_kind is ErrorKind.ALREADY_IN_FLIGHT
    assert harness.agent.calls == ["Send 100 from W1 to Alice"]
    assert len(harness.in_flight) == 0


@pytest.mark.asyncio
async def test_pacing_delay_between_rows_only(harness) -> None:
    await harness.dispatcher.process([_req("A", "1", "W"), _req("B", "2", "W"), _req("C", "3", "W")])

    assert harness.sleeps == [0.5, 0.5]


@pytest.mark.asyncio
async def test_pacing_after_last_row_when_configured(make_harness) -> None:
    h = make_harness(pacing=PacingPolicy(delay_seconds=1.0, after_last_row=True))

    await h.dispatcher.process([_req("A", "1", "W"), _req("B", "2", "W")])

    assert h.sleeps == [1.0, 1.0]


@pytest.mark.asyncio
async def test_single_row_has_no_delay(harness) -> None:
    await harness.dispatcher.process([_req("A", "1", "W")])

    assert harness.sleeps == []


@pytest.mark.asyncio
async def test_empty_batch(harness) -> None:
    assert await harness.dispatcher.process([]) == []
    assert harness.agent.calls == []


@pytest.mark.asyncio
async def test_cancel_before_start_sends_nothing(harness) -> None:
    cancel = asyncio.Event()
    cancel.set()

    results = await harness.dispatcher.process([_req("A", "1", "W"), _req("B", "2", "W")], cancel=cancel)

    assert [r.error_kind for r in results] == [ErrorKind.CANCELLED, ErrorKind.CANCELLED]
    assert results[0].error == CANCELLED_MESSAGE
    assert harness.agent.calls == []


@pytest.mark.asyncio
async def test_cancel_all_stops_at_next_row_boundary(harness) -> None:
    async def cancelling_sleep(seconds: float) -> None:
        harness.sleeps.append(seconds)
        harness.dispatcher.cancel_all()

    harness.dispatcher._sleep = cancelling_sleep

    results = await harness.dispatcher.process([_req("A", "1", "W"), _req("B", "2", "W"), _req("C", "3", "W")])

    assert len(results) == 3
    assert results[0].status is PaymentStatus.SUCCESS
    assert [r.error_kind for r in results[1:]] == [ErrorKind.CANCELLED, ErrorKind.CANCELLED]
    assert harness.agent.calls == ["Send 1 from W to A"]
    assert not harness.dispatcher.is_running


@pytest.mark.asyncio
async def test_rejected_token_stops_batch_and_tears_down(make_harness) -> None:
    h = make_harness(replies={"Send 1 from W to A": InvalidCredential("Token expired", status_code=401)})

    results = await h.dispatcher.process([_req("A", "1", "W"), _req("B", "2", "W")])

    assert results[0].error_kind is ErrorKind.INVALID_CREDENTIAL
    assert results[0].error == "Token expired"
    assert results[1].error_kind is ErrorKind.NOT_AUTHENTICATED
    assert h.agent.calls == ["Send 1 from W to A"]
    assert h.store.token is None
    assert not h.sessions.is_ready()
    assert h.agent.closed is True


@pytest.mark.asyncio
async def test_disconnect_clears_process_state(harness) -> None:
    await harness.sessions.ensure_session()
    harness.in_flight.try_acquire(("X", "1", "W"))

    await harness.dispatcher.disconnect()

    assert len(harness.in_flight) == 0
    assert harness.store.token is None
    assert not harness.sessions.is_ready()
    results = await harness.dispatcher.process([_req("A", "1", "W")])
    assert results[0].error_kind is ErrorKind.NOT_AUTHENTICATED


@pytest.mark.asyncio
async def test_custom_command_template(make_harness) -> None:
    h = make_harness()
    h.dispatcher._command_template = "Pay {payee_name} {amount} USD using wallet {source_wallet}"

    await h.dispatcher.process([_req("Alice", "100", "W1")])

    assert h.agent.calls == ["Pay Alice 100 USD using wallet W1"]


@pytest.mark.asyncio
async def test_result_length_matches_input_for_mixed_batch(make_harness) -> None:
    h = make_harness(replies={"Send 2 from W to B": PaymanError("declined")})
    batch = [_req("A", "1", "W"), _req("B", "2", "W"), _req("A", "1", "W"), _req("C", "3", "W")]

    results = await h.dispatcher.process(batch)

    assert len(results) == len(batch)
    assert [r.request for r in results] == batch


@pytest.mark.asyncio
async def test_reconnect_during_batch_moves_remaining_rows_to_new_client() -> None:
    store = MemoryStore("tok-old")
    agents = {}

    def factory(token: str) -> FakeAgent:
        agents[token] = FakeAgent()
        return agents[token]

    sessions = SessionManager(store=store, client_factory=factory, ttl_seconds=3600)
    reconnected = []

    async def sleep_and_reconnect(seconds: float) -> None:
        # Operator runs /code between rows
        if not reconnected:
            reconnected.append(seconds)
            await sessions.connect("tok-new")

    dispatcher = BatchDispatcher(
        session_manager=sessions,
        in_flight=InFlightRegistry(),
        pacing=PacingPolicy(delay_seconds=0.5),
        sleep=sleep_and_reconnect,
    )

    results = await dispatcher.process([_req("A", "1", "W"), _req("B", "2", "W"), _req("C", "3", "W")])

    assert [r.status for r in results] == [PaymentStatus.SUCCESS] * 3
    assert agents["tok-old"].calls == ["Send 1 from W to A"]
    assert agents["tok-old"].closed is True
    assert agents["tok-new"].calls == ["Send 2 from W to B", "Send 3 from W to C"]


@pytest.mark.asyncio
async def test_logout_during_batch_stops_remaining_rows(harness) -> None:
    async def sleep_and_logout(seconds: float) -> None:
        await harness.store.remove()

    harness.dispatcher._sleep = sleep_and_logout

    results = await harness.dispatcher.process([_req("A", "1", "W"), _req("B", "2", "W"), _req("C", "3", "W")])

    assert results[0].status is PaymentStatus.SUCCESS
    assert [r.error_kind for r in results[1:]] == [ErrorKind.NOT_AUTHENTICATED] * 2
    assert harness.agent.calls == ["Send 1 from W to A"]
    assert harness.agent.closed is True


@pytest.mark.asyncio
async def test_forbidden_reply_fails_the_row_but_keeps_the_token(make_harness) -> None:
    h = make_harness(replies={"Send 1 from W to A": PaymanError("Missing scope write_send_payment", status_code=403)})

    results = await h.dispatcher.process([_req("A", "1", "W"), _req("B", "2", "W")])

    assert results[0].error_kind is ErrorKind.EXTERNAL_CALL
    assert results[0].error == "Missing scope write_send_payment"
    assert results[1].status is PaymentStatus.SUCCESS
    assert h.store.token == "tok-123"
    assert h.agent.calls == ["Send 1 from W to A", "Send 2 from W to B"]
