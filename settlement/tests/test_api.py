"""
HTTP tests for the settlement API
"""

import pytest
from fastapi.testclient import TestClient

from settlement import api
from settlement.config import SettlementConfig
from settlement.service import LedgerService


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(api, "ledger_service", LedgerService(config=SettlementConfig()))
    return TestClient(api.app)


def _open(client, user_id, role, **extra):
    response = client.post("/accounts", json={"user_id": user_id, "role": role, **extra})
    assert response.status_code == 201
    return response.json()


def _completed_booking(client, cost=60):
    _open(client, "mentee-1", "MENTEE", credits=100)
    _open(client, "mentor-1", "MENTOR")
    booking = client.post("/bookings", json={"mentee_id": "mentee-1", "mentor_id": "mentor-1", "total_cost": cost})
    assert booking.status_code == 201
    booking_id = booking.json()["booking"]["id"]
    assert client.post(f"/bookings/{booking_id}/complete").status_code == 200
    return booking_id


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestBookingEndpoints:
    def test_booking_lifecycle(self, client):
        """Create, complete and dispute a booking over HTTP."""
        booking_id = _completed_booking(client, cost=30)

        ledger = client.get(f"/bookings/{booking_id}/ledger").json()
        assert ledger["status"] == "RELEASED"
        assert client.get("/accounts/mentor-1/balance").json()["payable"] in ("30", "30.0", 30, 30.0)

        dispute = client.post(f"/bookings/{booking_id}/dispute", json={"reason": "Lesson cut short"})
        assert dispute.status_code == 200
        assert [b["id"] for b in client.get("/disputes").json()] == [booking_id]

        resolved = client.post(f"/bookings/{booking_id}/resolve", json={"outcome": "REFUND_MENTEE", "note": "ok"})
        assert resolved.status_code == 200
        assert resolved.json()["booking"]["status"] == "REFUNDED"

    def test_insufficient_credits_is_400(self, client):
        _open(client, "mentee-1", "MENTEE", credits=10)
        _open(client, "mentor-1", "MENTOR")

        response = client.post("/bookings", json={"mentee_id": "mentee-1", "mentor_id": "mentor-1", "total_cost": 30})
        assert response.status_code == 400
        assert "Insufficient credits" in response.json()["detail"]

    def test_unknown_booking_is_404(self, client):
        assert client.get("/bookings/bk_missing").status_code == 404
        assert client.get("/bookings/bk_missing/ledger").status_code == 404

    def test_invalid_transition_is_409(self, client):
        booking_id = _completed_booking(client)
        assert client.post(f"/bookings/{booking_id}/complete").status_code == 409


class TestPayoutEndpoints:
    def test_payout_lifecycle(self, client):
        _completed_booking(client)
        created = client.post("/payouts", json={"user_id": "mentor-1", "amount": 50, "method": "PayPal"})
        assert created.status_code == 201
        payout_id = created.json()["payout"]["id"]

        approved = client.post(f"/payouts/{payout_id}/approve", json={"admin_note": "ok"})
        assert approved.json()["payout"]["status"] == "APPROVED_PENDING_PAYMENT"

        missing = client.post(f"/payouts/{payout_id}/paid", json={"evidence_file": ""})
        assert missing.status_code == 400

        paid = client.post(f"/payouts/{payout_id}/paid", json={"evidence_file": "https://files/r.png"})
        assert paid.status_code == 200
        assert paid.json()["transaction"]["status"] == "SUCCESS"

        again = client.post(f"/payouts/{payout_id}/paid", json={"evidence_file": "https://files/r.png"})
        assert again.status_code == 409

        listed = client.get("/payouts", params={"status": "PAID"}).json()
        assert [p["id"] for p in listed] == [payout_id]

    def test_below_minimum_message(self, client):
        _completed_booking(client)

        response = client.post("/payouts", json={"user_id": "mentor-1", "amount": 20, "method": "PayPal"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Minimum withdrawal is 50 credits"


class TestCommissionEndpoints:
    def test_commission_flow(self, client):
        _open(client, "provider-1", "PROVIDER", level_id="gold")
        _open(client, "mentee-2", "MENTEE", provider_id="provider-1")
        assert client.post("/accounts/mentee-2/topup", json={"amount_usd": 50}).status_code == 201

        commissions = client.get("/commissions", params={"provider_id": "provider-1"}).json()
        assert len(commissions) == 1
        commission_id = commissions[0]["id"]

        assert client.put("/levels/gold/commission", json={"commission_percent": 3}).status_code == 200
        assert client.post(f"/commissions/{commission_id}/paid").status_code == 200
        assert client.post(f"/commissions/{commission_id}/paid").status_code == 409


class TestReportEndpoints:
    def test_reports(self, client):
        _completed_booking(client)

        assert client.get("/reports/credits").status_code == 200
        assert client.get("/reports/solvency").status_code == 200
        assert client.get("/reports/cac").status_code == 200
        assert client.get("/reports/revenue/daily", params={"days": 3}).status_code == 200
        assert client.get("/reports/revenue/monthly", params={"year": 2024, "month": 13}).status_code == 400
        assert client.get("/reports/health").json()["ok"] is True
        assert len(client.get("/logs", params={"limit": 2}).json()) == 2

    def test_price_quote(self, client):
        response = client.get("/pricing/quote", params={"group_id": "expert", "country_id": "VN"})
        assert response.status_code == 200
        assert float(response.json()["price"]) == 10.8


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
