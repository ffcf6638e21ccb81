"""Booking lifecycle through the HTTP API, from request to provider payout"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from booking_escrow.domain.ledger.service import PLATFORM_ACCOUNT_ID, PLATFORM_REVENUE, LedgerService
from booking_escrow.models import Booking
from booking_escrow.models_payment import LedgerEntry, Payment, Payout


def reload(db, model, record_id):
    db.expire_all()
    return db.get(model, record_id)


async def create_booking(api_client, seed, total="500.00", payment_method="ONLINE", provider=None) -> dict:
    client = seed.client()
    provider = provider or seed.provider()
    response = await api_client.post(
        "/bookings",
        json={
            "client_id": client.id,
            "provider_id": provider.id,
            "service_id": "deep-clean",
            "scheduled_date": (datetime.utcnow() + timedelta(days=3)).isoformat(),
            "duration_minutes": 180,
            "total_amount": total,
            "payment_method": payment_method,
            "address": "12 Long Street, Cape Town",
        },
    )
    assert response.status_code == 200, response.text
    return response.json()


async def post_webhook(api_client, signed_webhook, event_id, event_type, data) -> dict:
    body, headers = signed_webhook({"id": event_id, "event": event_type, "data": data})
    response = await api_client.post("/webhooks/gateway", content=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


async def escrowed_booking_via_api(api_client, seed, signed_webhook, total="500.00") -> tuple[str, Payment]:
    """Create, accept, pay and capture a booking; returns its id and payment"""
    booking = await create_booking(api_client, seed, total=total)
    booking_id = booking["id"]
    await api_client.post(f"/bookings/{booking_id}/accept")
    paid = (await api_client.post(f"/bookings/{booking_id}/pay")).json()

    payment = seed.db.get(Payment, paid["payment_id"])
    await post_webhook(
        api_client,
        signed_webhook,
        f"evt_charge_{booking_id}",
        "charge.success",
        {"id": 5551, "reference": paid["gateway_reference"], "status": "success", "amount": int(payment.amount * 100)},
    )
    return booking_id, payment


@pytest.mark.anyio
async def test_online_booking_end_to_end(api_client, db, seed, gateway, signed_webhook):
    booking = await create_booking(api_client, seed)
    booking_id = booking["id"]
    assert booking["status"] == "PENDING"
    assert Decimal(booking["total_amount"]) == Decimal("500.00")
    assert Decimal(booking["platform_fee"]) == Decimal("50.00")

    response = await api_client.post(f"/bookings/{booking_id}/accept")
    assert response.json()["booking_status"] == "CONFIRMED"

    response = await api_client.post(f"/bookings/{booking_id}/pay")
    paid = response.json()
    assert response.status_code == 200
    assert paid["payment_status"] == "PENDING"
    assert paid["already_exists"] is False
    assert paid["authorization_url"] == f"https://checkout.test/{paid['gateway_reference']}"

    payment = db.get(Payment, paid["payment_id"])
    assert payment.amount == Decimal("500.00")
    assert payment.platform_fee == Decimal("50.00")
    assert payment.escrow_amount == Decimal("450.00")

    result = await post_webhook(
        api_client,
        signed_webhook,
        "evt_e2e_charge",
        "charge.success",
        {"id": 9001, "reference": paid["gateway_reference"], "status": "success", "amount": 50000},
    )
    assert result["status"] == "processed"
    status = (await api_client.get(f"/bookings/{booking_id}/status")).json()
    assert status["booking_status"] == "PENDING_EXECUTION"
    assert status["payment_status"] == "ESCROW"

    assert (await api_client.post(f"/bookings/{booking_id}/start")).json()["booking_status"] == "IN_PROGRESS"
    assert (await api_client.post(f"/bookings/{booking_id}/complete")).json()["booking_status"] == "AWAITING_CONFIRMATION"

    response = await api_client.post(f"/bookings/{booking_id}/confirm-completion")
    assert response.json() == {
        "booking_id": booking_id,
        "booking_status": "AWAITING_CONFIRMATION",
        "payment_status": "PROCESSING_RELEASE",
        "payout_status": "PROCESSING",
    }
    payout_reference = f"PO-{payment.id}"
    assert gateway.transfers() == [("create_transfer", payout_reference, Decimal("450.00"))]

    result = await post_webhook(
        api_client,
        signed_webhook,
        "evt_e2e_transfer",
        "transfer.success",
        {"reference": payout_reference, "transfer_code": "TRF_1", "status": "success"},
    )
    assert result["status"] == "processed"

    status = (await api_client.get(f"/bookings/{booking_id}/status")).json()
    assert status["booking_status"] == "COMPLETED"
    assert status["payment_status"] == "RELEASED"
    assert status["payout_status"] == "COMPLETED"

    payout = db.query(Payout).filter(Payout.payment_id == payment.id).one()
    assert payout.amount == Decimal("450.00")
    assert payout.completed_at is not None

    ledger = LedgerService(db)
    provider_id = reload(db, Booking, booking_id).provider_id
    assert ledger.provider_escrow_balance(provider_id) == Decimal("0.00")
    assert ledger.repo.get_balance(db, PLATFORM_REVENUE, PLATFORM_ACCOUNT_ID) == Decimal("50.00")

    # A late redelivery of the original charge changes nothing
    result = await post_webhook(
        api_client,
        signed_webhook,
        "evt_e2e_charge",
        "charge.success",
        {"id": 9001, "reference": paid["gateway_reference"], "status": "success", "amount": 50000},
    )
    assert result == {"status": "duplicate", "event_id": "evt_e2e_charge"}
    assert reload(db, Payment, payment.id).status.value == "RELEASED"
    assert db.query(LedgerEntry).count() == 3


@pytest.mark.anyio
async def test_illegal_action_is_rejected_without_changes(api_client, db, seed):
    booking = await create_booking(api_client, seed)
    before = reload(db, Booking, booking["id"])
    updated_at = before.updated_at

    response = await api_client.post(f"/bookings/{booking['id']}/confirm-completion")

    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_TRANSITION"
    after = reload(db, Booking, booking["id"])
    assert after.status.value == "PENDING"
    assert after.updated_at == updated_at


@pytest.mark.anyio
async def test_paying_twice_returns_the_first_payment(api_client, db, seed, gateway):
    booking = await create_booking(api_client, seed)
    await api_client.post(f"/bookings/{booking['id']}/accept")

    first = (await api_client.post(f"/bookings/{booking['id']}/pay")).json()
    second = (await api_client.post(f"/bookings/{booking['id']}/pay")).json()

    assert second["already_exists"] is True
    assert second["payment_id"] == first["payment_id"]
    assert second["gateway_reference"] == first["gateway_reference"]
    assert gateway.count("initialize_charge") == 1
    assert db.query(Payment).count() == 1


@pytest.mark.anyio
async def test_payment_requires_a_confirmed_booking(api_client, seed):
    booking = await create_booking(api_client, seed)

    response = await api_client.post(f"/bookings/{booking['id']}/pay")

    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_BOOKING_STATUS"


@pytest.mark.anyio
async def test_price_is_locked_once_payment_exists(api_client, db, seed):
    booking = await create_booking(api_client, seed)
    booking_id = booking["id"]

    response = await api_client.put(f"/bookings/{booking_id}/price", json={"total_amount": "600.00"})
    assert response.status_code == 200
    assert Decimal(response.json()["platform_fee"]) == Decimal("60.00")

    await api_client.post(f"/bookings/{booking_id}/accept")
    await api_client.post(f"/bookings/{booking_id}/pay")

    response = await api_client.put(f"/bookings/{booking_id}/price", json={"total_amount": "700.00"})
    assert response.status_code == 409
    assert response.json()["error"] == "AMOUNT_LOCKED"
    assert reload(db, Booking, booking_id).total_amount == Decimal("600.00")


@pytest.mark.anyio
async def test_cash_booking_flow(api_client, db, seed, gateway):
    booking = await create_booking(api_client, seed, payment_method="CASH")
    booking_id = booking["id"]
    await api_client.post(f"/bookings/{booking_id}/accept")

    paid = (await api_client.post(f"/bookings/{booking_id}/pay")).json()
    assert paid["payment_status"] == "CASH_PENDING"
    assert paid["authorization_url"] is None

    assert (await api_client.post(f"/bookings/{booking_id}/start")).json()["booking_status"] == "IN_PROGRESS"
    await api_client.post(f"/bookings/{booking_id}/complete")
    received = (await api_client.post(f"/bookings/{booking_id}/cash-received")).json()
    assert received["payment_status"] == "CASH_RECEIVED"

    confirmed = (await api_client.post(f"/bookings/{booking_id}/confirm-completion")).json()
    assert confirmed["booking_status"] == "COMPLETED"
    assert confirmed["payout_status"] is None

    verified = (await api_client.post(f"/bookings/{booking_id}/verify-cash")).json()
    assert verified == {
        "booking_id": booking_id,
        "booking_status": "COMPLETED",
        "payment_status": "CASH_VERIFIED",
        "payout_status": "COMPLETED",
    }
    assert gateway.count("initialize_charge") == 0
    assert gateway.transfers() == []


@pytest.mark.anyio
async def test_cash_cannot_be_verified_before_it_is_received(api_client, seed):
    booking = await create_booking(api_client, seed, payment_method="CASH")
    await api_client.post(f"/bookings/{booking['id']}/accept")
    await api_client.post(f"/bookings/{booking['id']}/pay")

    response = await api_client.post(f"/bookings/{booking['id']}/verify-cash")

    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_PAYMENT_STATE"


@pytest.mark.anyio
async def test_dispute_refunded_to_client(api_client, db, seed, gateway, signed_webhook):
    booking_id, payment = await escrowed_booking_via_api(api_client, seed, signed_webhook)
    await api_client.post(f"/bookings/{booking_id}/start")

    disputed = (await api_client.post(f"/bookings/{booking_id}/dispute", json={"reason": "Nobody showed up"})).json()
    assert disputed["booking_status"] == "DISPUTED"

    response = await api_client.post(
        f"/bookings/{booking_id}/resolve-dispute",
        json={"resolution": "refund_client", "note": "Provider no-show"},
    )

    assert response.status_code == 200
    assert response.json()["payment_status"] == "REFUNDED"
    assert gateway.calls[-1] == ("create_refund", payment.gateway_reference, Decimal("500.00"))
    booking = reload(db, Booking, booking_id)
    assert booking.dispute_resolution == "refund_client"
    assert booking.dispute_resolved_at is not None
    assert LedgerService(db).provider_escrow_balance(booking.provider_id) == Decimal("0.00")

    # A resolved dispute is final
    again = await api_client.post(f"/bookings/{booking_id}/resolve-dispute", json={"resolution": "release_to_provider"})
    assert again.status_code == 409
    assert gateway.transfers() == []


@pytest.mark.anyio
async def test_dispute_settled_for_provider_releases_escrow(api_client, db, seed, gateway, signed_webhook):
    booking_id, payment = await escrowed_booking_via_api(api_client, seed, signed_webhook)
    await api_client.post(f"/bookings/{booking_id}/start")
    await api_client.post(f"/bookings/{booking_id}/complete")
    await api_client.post(f"/bookings/{booking_id}/dispute", json={"reason": "Missed a room"})

    response = await api_client.post(
        f"/bookings/{booking_id}/resolve-dispute", json={"resolution": "release_to_provider"}
    )

    assert response.json()["payment_status"] == "PROCESSING_RELEASE"
    assert response.json()["payout_status"] == "PROCESSING"
    assert gateway.transfers() == [("create_transfer", f"PO-{payment.id}", Decimal("450.00"))]


@pytest.mark.anyio
async def test_blank_dispute_reason_is_a_validation_error(api_client, seed, signed_webhook):
    booking_id, _ = await escrowed_booking_via_api(api_client, seed, signed_webhook)
    await api_client.post(f"/bookings/{booking_id}/start")

    response = await api_client.post(f"/bookings/{booking_id}/dispute", json={"reason": "   "})

    assert response.status_code == 422
    assert response.json()["error"] == "VALIDATION_ERROR"


@pytest.mark.anyio
async def test_cancel_before_payment(api_client, db, seed):
    booking = await create_booking(api_client, seed)
    await api_client.post(f"/bookings/{booking['id']}/accept")
    paid = (await api_client.post(f"/bookings/{booking['id']}/pay")).json()

    response = await api_client.post(f"/bookings/{booking['id']}/cancel")

    assert response.json()["booking_status"] == "CANCELLED"
    assert response.json()["payment_status"] == "FAILED"
    assert reload(db, Payment, paid["payment_id"]).failure_reason == "Booking cancelled"


@pytest.mark.anyio
async def test_cancel_after_escrow_is_refused(api_client, seed, signed_webhook):
    booking_id, _ = await escrowed_booking_via_api(api_client, seed, signed_webhook)

    response = await api_client.post(f"/bookings/{booking_id}/cancel")

    assert response.status_code == 409


@pytest.mark.anyio
async def test_unknown_booking_is_404(api_client):
    response = await api_client.get("/bookings/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


@pytest.mark.anyio
async def test_payout_and_payment_lookup(api_client, db, seed, signed_webhook):
    booking_id, payment = await escrowed_booking_via_api(api_client, seed, signed_webhook)
    await api_client.post(f"/bookings/{booking_id}/start")
    await api_client.post(f"/bookings/{booking_id}/complete")
    await api_client.post(f"/bookings/{booking_id}/confirm-completion")
    payout = db.query(Payout).filter(Payout.payment_id == payment.id).one()

    payment_response = (await api_client.get(f"/payments/{payment.id}")).json()
    payout_response = (await api_client.get(f"/payouts/{payout.id}")).json()

    assert payment_response["status"] == "PROCESSING_RELEASE"
    assert Decimal(payment_response["escrow_amount"]) == Decimal("450.00")
    assert payout_response["status"] == "PROCESSING"
    assert payout_response["gateway_reference"] == f"PO-{payment.id}"


@pytest.mark.anyio
async def test_health(api_client):
    response = await api_client.get("/health")
    assert response.status_code == 200
