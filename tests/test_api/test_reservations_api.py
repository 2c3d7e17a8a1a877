"""Tests for the reservation, settlement and ledger endpoints."""

import uuid
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from httpx import AsyncClient

from matchpoint.auth.jwt import bearer_headers
from matchpoint.database import get_db
from matchpoint.main import app
from matchpoint.models import Court, User
from matchpoint.services import wallet_service
from conftest import make_user, tomorrow_at

pytestmark = pytest.mark.asyncio


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _book(client: AsyncClient, court: Court, headers: dict, hour: int = 10, **extra) -> dict:
    response = await client.post(
        "/api/v1/reservations",
        json={
            "court_id": str(court.id),
            "starts_at": tomorrow_at(hour).isoformat(),
            "duration_minutes": 90,
            **extra,
        },
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["reservation"]


# ---------------------------------------------------------------------------
# POST /api/v1/reservations
# ---------------------------------------------------------------------------


class TestCreateReservation:
    async def test_create_success(self, client: AsyncClient, court: Court, player: User, player_headers: dict):
        response = await client.post(
            "/api/v1/reservations",
            json={
                "court_id": str(court.id),
                "starts_at": tomorrow_at(10).isoformat(),
                "duration_minutes": 90,
                "payment_method": "CREDITS",
            },
            headers=player_headers,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["reservation"]["user_id"] == str(player.id)
        assert data["reservation"]["status"] == "PENDING"
        assert data["reservation"]["payment_status"] == "PENDING"
        assert data["reservation"]["total_amount_cents"] == 3000
        assert data["price"]["final_cents"] == 3000
        assert data["applied_tariff_segment"] is None

    async def test_conflict_returns_409_body(self, client: AsyncClient, court: Court, player_headers: dict):
        await _book(client, court, player_headers, hour=10)
        response = await client.post(
            "/api/v1/reservations",
            json={
                "court_id": str(court.id),
                "starts_at": tomorrow_at(11).isoformat(),
                "duration_minutes": 60,
            },
            headers=player_headers,
        )
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "slot_conflict"
        assert body["retryable"] is True

    async def test_naive_start_time_rejected(self, client: AsyncClient, court: Court, player_headers: dict):
        response = await client.post(
            "/api/v1/reservations",
            json={
                "court_id": str(court.id),
                "starts_at": tomorrow_at(10).replace(tzinfo=None).isoformat(),
                "duration_minutes": 60,
            },
            headers=player_headers,
        )
        assert response.status_code == 422

    async def test_override_requires_reason(self, client: AsyncClient, court: Court, staff_headers: dict):
        response = await client.post(
            "/api/v1/reservations",
            json={
                "court_id": str(court.id),
                "starts_at": tomorrow_at(10).isoformat(),
                "duration_minutes": 60,
                "override_delta_cents": -500,
            },
            headers=staff_headers,
        )
        assert response.status_code == 422

    async def test_player_cannot_book_for_others(
        self, client: AsyncClient, court: Court, staff: User, player_headers: dict
    ):
        response = await client.post(
            "/api/v1/reservations",
            json={
                "court_id": str(court.id),
                "starts_at": tomorrow_at(10).isoformat(),
                "duration_minutes": 60,
                "user_id": str(staff.id),
            },
            headers=player_headers,
        )
        assert response.status_code == 403
        assert response.json()["error"] == "permission_denied"

    async def test_unknown_court(self, client: AsyncClient, player_headers: dict):
        response = await client.post(
            "/api/v1/reservations",
            json={
                "court_id": str(uuid.uuid4()),
                "starts_at": tomorrow_at(10).isoformat(),
                "duration_minutes": 60,
            },
            headers=player_headers,
        )
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# GET / lifecycle
# ---------------------------------------------------------------------------


class TestReservationAccess:
    async def test_owner_can_read(self, client: AsyncClient, court: Court, player_headers: dict):
        reservation = await _book(client, court, player_headers)
        response = await client.get(f"/api/v1/reservations/{reservation['id']}", headers=player_headers)
        assert response.status_code == 200
        assert response.json()["id"] == reservation["id"]

    async def test_other_player_sees_not_found(
        self, client: AsyncClient, db_session, court: Court, player_headers: dict
    ):
        reservation = await _book(client, court, player_headers)
        other = await make_user(db_session)
        await db_session.commit()

        response = await client.get(
            f"/api/v1/reservations/{reservation['id']}", headers=bearer_headers(str(other.id))
        )
        assert response.status_code == 404

    async def test_staff_can_read_any(
        self, client: AsyncClient, court: Court, player_headers: dict, staff_headers: dict
    ):
        reservation = await _book(client, court, player_headers)
        response = await client.get(f"/api/v1/reservations/{reservation['id']}", headers=staff_headers)
        assert response.status_code == 200

    async def test_cancel(self, client: AsyncClient, court: Court, player_headers: dict):
        reservation = await _book(client, court, player_headers)
        response = await client.post(
            f"/api/v1/reservations/{reservation['id']}/cancel",
            json={"reason": "Rained out"},
            headers=player_headers,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert response.json()["cancellation_reason"] == "Rained out"

        again = await client.post(f"/api/v1/reservations/{reservation['id']}/cancel", headers=player_headers)
        assert again.status_code == 409
        assert again.json()["error"] == "invalid_transition"

    async def test_check_in_outside_window(self, client: AsyncClient, court: Court, player_headers: dict):
        reservation = await _book(client, court, player_headers)
        response = await client.post(f"/api/v1/reservations/{reservation['id']}/check-in", headers=player_headers)
        # Tomorrow's slot is outside the check-in window, which is checked first
        assert response.status_code == 422
        assert response.json()["error"] == "check_in_window_closed"

    async def test_no_show_is_staff_only(self, client: AsyncClient, court: Court, player_headers: dict):
        reservation = await _book(client, court, player_headers)
        response = await client.post(f"/api/v1/reservations/{reservation['id']}/no-show", headers=player_headers)
        assert response.status_code == 403

    async def test_no_show_before_end_rejected(
        self, client: AsyncClient, court: Court, player_headers: dict, staff_headers: dict
    ):
        reservation = await _book(client, court, player_headers)
        response = await client.post(f"/api/v1/reservations/{reservation['id']}/no-show", headers=staff_headers)
        # Still PENDING, so the transition itself is illegal
        assert response.status_code == 409


# ---------------------------------------------------------------------------
# Settlement endpoints
# ---------------------------------------------------------------------------


class TestSettlementEndpoints:
    async def test_charge_with_credits_and_refund(
        self,
        client: AsyncClient,
        db_session,
        court: Court,
        player: User,
        player_headers: dict,
        staff_headers: dict,
    ):
        await wallet_service.credit(db_session, player.id, 3000, reason="Gift")
        await db_session.commit()
        reservation = await _book(client, court, player_headers, payment_method="CREDITS")

        charge = await client.post(
            f"/api/v1/reservations/{reservation['id']}/charge",
            json={"method": "CREDITS", "amount_cents": 3000},
            headers=player_headers,
        )
        assert charge.status_code == 200, charge.text
        assert charge.json()["status"] == "SUCCEEDED"

        duplicate = await client.post(
            f"/api/v1/reservations/{reservation['id']}/charge",
            json={"method": "CREDITS", "amount_cents": 3000},
            headers=player_headers,
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"] == "already_settled"

        player_refund = await client.post(
            f"/api/v1/reservations/{reservation['id']}/refund",
            json={"amount_cents": 1000, "reason": "Please"},
            headers=player_headers,
        )
        assert player_refund.status_code == 403

        refund = await client.post(
            f"/api/v1/reservations/{reservation['id']}/refund",
            json={"amount_cents": 1000, "reason": "Lights failed"},
            headers=staff_headers,
        )
        assert refund.status_code == 200
        assert refund.json()["direction"] == "REFUND"

        ledger = await client.get(f"/api/v1/reservations/{reservation['id']}/ledger", headers=player_headers)
        assert ledger.status_code == 200
        data = ledger.json()
        assert len(data["entries"]) == 2
        assert data["net_paid_cents"] == 2000
        assert data["refundable_cents"] == 2000

    async def test_insufficient_balance_is_402(self, client: AsyncClient, court: Court, player_headers: dict):
        reservation = await _book(client, court, player_headers)
        response = await client.post(
            f"/api/v1/reservations/{reservation['id']}/charge",
            json={"method": "CREDITS", "amount_cents": 3000},
            headers=player_headers,
        )
        assert response.status_code == 402
        assert response.json()["error"] == "insufficient_balance"

    async def test_gateway_calls_run_without_request_transaction(
        self,
        client: AsyncClient,
        session_factory,
        court: Court,
        player_headers: dict,
        staff_headers: dict,
    ):
        reservation = await _book(client, court, player_headers, payment_method="CARD")
        request_sessions = []
        open_during_gateway_call = []

        async def recording_get_db():
            async with session_factory() as session:
                request_sessions.append(session)
                yield session
                await session.commit()

        def gateway_reply(reply):
            async def call(*args, **kwargs):
                open_during_gateway_call.append(any(s.in_transaction() for s in request_sessions))
                return reply

            return call

        app.dependency_overrides[get_db] = recording_get_db
        intent = SimpleNamespace(id="pi_api_1", status="succeeded", client_secret=None)
        with patch("matchpoint.payments.stripe_client.create_payment_intent", gateway_reply(intent)):
            charge = await client.post(
                f"/api/v1/reservations/{reservation['id']}/charge",
                json={"method": "CARD", "amount_cents": 3000},
                headers=player_headers,
            )
        assert charge.status_code == 200, charge.text
        assert charge.json()["status"] == "SUCCEEDED"

        card_refund = SimpleNamespace(id="re_api_1", status="succeeded")
        with patch("matchpoint.payments.stripe_client.create_refund", gateway_reply(card_refund)):
            refund = await client.post(
                f"/api/v1/reservations/{reservation['id']}/refund",
                json={"amount_cents": 3000, "reason": "Court flooded"},
                headers=staff_headers,
            )
        assert refund.status_code == 200, refund.text

        assert open_during_gateway_call == [False, False]

    async def test_transfer_confirmed_by_staff(
        self, client: AsyncClient, court: Court, player_headers: dict, staff_headers: dict
    ):
        reservation = await _book(client, court, player_headers, payment_method="TRANSFER")
        charge = await client.post(
            f"/api/v1/reservations/{reservation['id']}/charge",
            json={"method": "TRANSFER", "amount_cents": 3000},
            headers=player_headers,
        )
        assert charge.json()["status"] == "PENDING"
        entry_id = charge.json()["entry_id"]

        forbidden = await client.post(f"/api/v1/ledger/{entry_id}/confirm", headers=player_headers)
        assert forbidden.status_code == 403

        confirmed = await client.post(f"/api/v1/ledger/{entry_id}/confirm", headers=staff_headers)
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "SUCCEEDED"

        reloaded = await client.get(f"/api/v1/reservations/{reservation['id']}", headers=player_headers)
        assert reloaded.json()["status"] == "PAID"
