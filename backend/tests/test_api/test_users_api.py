"""Tests for the self-service subscription, refund and history endpoints."""

from datetime import timedelta

from httpx import AsyncClient

from app.database import utcnow

SUBSCRIPTION_URL = "/api/v1/users/subscription"


class TestGetSubscription:
    async def test_no_subscription(self, client: AsyncClient, auth_headers: dict):
        response = await client.get(SUBSCRIPTION_URL, headers=auth_headers)
        assert response.status_code == 200
        assert response.json() is None

    async def test_derived_fields(self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription):
        start = utcnow() - timedelta(days=2)
        await make_subscription(
            test_user,
            plans["premium-monthly"],
            period_start=start,
            period_end=start + timedelta(days=30),
        )

        data = (await client.get(SUBSCRIPTION_URL, headers=auth_headers)).json()
        assert data["plan"]["slug"] == "premium-monthly"
        assert data["has_access"] is True
        assert data["days_remaining"] == 28
        assert data["can_request_refund"] is True
        assert data["days_until_refund_expires"] == 5
        assert data["has_pending_refund"] is False
        assert data["pending_plan"] is None

    async def test_paused_subscription_has_no_access(
        self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription
    ):
        await make_subscription(test_user, plans["premium-monthly"], status="paused")
        data = (await client.get(SUBSCRIPTION_URL, headers=auth_headers)).json()
        assert data["status"] == "paused"
        assert data["has_access"] is False


class TestCancelSubscription:
    async def test_cancel_at_period_end(
        self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription
    ):
        sub = await make_subscription(test_user, plans["premium-monthly"])

        response = await client.post(
            f"{SUBSCRIPTION_URL}/cancel", json={"reason": "Taking a break"}, headers=auth_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["subscription"]["status"] == "active"
        assert data["subscription"]["cancel_at_period_end"] is True
        assert data["subscription"]["cancellation_reason"] == "Taking a break"
        assert data["effective_at"].startswith(sub.current_period_end.isoformat()[:19])
        assert data["can_request_refund"] is True
        assert data["days_until_refund_expires"] == 6

    async def test_cancel_immediately(self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription):
        await make_subscription(test_user, plans["premium-monthly"])

        response = await client.post(f"{SUBSCRIPTION_URL}/cancel", json={"immediate": True}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["subscription"]["status"] == "cancelled"
        assert response.json()["message"] == "Subscription cancelled"

    async def test_second_scheduled_cancel_conflicts(
        self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription
    ):
        await make_subscription(test_user, plans["premium-monthly"], cancel_at_period_end=True)

        response = await client.post(f"{SUBSCRIPTION_URL}/cancel", json={}, headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "InvalidStateTransition"

    async def test_no_live_subscription(self, client: AsyncClient, auth_headers: dict):
        response = await client.post(f"{SUBSCRIPTION_URL}/cancel", json={}, headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "RecordNotFound"


class TestReactivateAndChange:
    async def test_reactivate_clears_schedule(
        self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription
    ):
        await make_subscription(test_user, plans["premium-monthly"], cancel_at_period_end=True)

        response = await client.post(f"{SUBSCRIPTION_URL}/reactivate", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["subscription"]["cancel_at_period_end"] is False

    async def test_reactivate_without_schedule_conflicts(
        self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription
    ):
        await make_subscription(test_user, plans["premium-monthly"])
        response = await client.post(f"{SUBSCRIPTION_URL}/reactivate", headers=auth_headers)
        assert response.status_code == 409

    async def test_change_plan(self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription):
        await make_subscription(test_user, plans["premium-monthly"])

        response = await client.post(
            f"{SUBSCRIPTION_URL}/change",
            json={"plan_id": str(plans["premium-yearly"].id)},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Plan change scheduled for the end of the billing period"
        assert data["subscription"]["status"] == "pending_downgrade"
        assert data["subscription"]["pending_plan_id"] == str(plans["premium-yearly"].id)

        detail = (await client.get(SUBSCRIPTION_URL, headers=auth_headers)).json()
        assert detail["pending_plan"]["slug"] == "premium-yearly"
        assert detail["has_access"] is True

    async def test_change_to_same_plan_rejected(
        self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription
    ):
        await make_subscription(test_user, plans["premium-monthly"])

        response = await client.post(
            f"{SUBSCRIPTION_URL}/change",
            json={"plan_id": str(plans["premium-monthly"].id)},
            headers=auth_headers,
        )
        assert response.status_code == 400


class TestRefundRequests:
    async def test_request_refund(self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription):
        sub = await make_subscription(test_user, plans["premium-monthly"])

        response = await client.post(
            "/api/v1/users/refunds",
            json={"subscription_id": str(sub.id), "reason": "Billed by mistake"},
            headers=auth_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["subscription_id"] == str(sub.id)

        detail = (await client.get(SUBSCRIPTION_URL, headers=auth_headers)).json()
        assert detail["has_pending_refund"] is True
        assert detail["can_request_refund"] is False

    async def test_duplicate_request(self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription):
        sub = await make_subscription(test_user, plans["premium-monthly"])
        body = {"subscription_id": str(sub.id)}

        await client.post("/api/v1/users/refunds", json=body, headers=auth_headers)
        response = await client.post("/api/v1/users/refunds", json=body, headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "DuplicateRefundRequest"

    async def test_window_expired(self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription):
        sub = await make_subscription(test_user, plans["premium-monthly"], paid_at=utcnow() - timedelta(days=8))

        response = await client.post(
            "/api/v1/users/refunds", json={"subscription_id": str(sub.id)}, headers=auth_headers
        )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["kind"] == "RefundWindowExpired"
        assert detail["refund_window_days"] == 7

    async def test_requires_exactly_one_target(self, client: AsyncClient, auth_headers: dict):
        response = await client.post("/api/v1/users/refunds", json={"reason": "?"}, headers=auth_headers)
        assert response.status_code == 422


class TestPaymentHistory:
    async def test_lists_payments_and_refunds(
        self, client: AsyncClient, auth_headers: dict, test_user, plans, make_subscription
    ):
        sub = await make_subscription(test_user, plans["premium-monthly"])
        await client.post("/api/v1/users/refunds", json={"subscription_id": str(sub.id)}, headers=auth_headers)

        response = await client.get("/api/v1/users/payments", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert len(data["payments"]) == 1
        assert data["payments"][0]["status"] == "completed"
        assert len(data["refunds"]) == 1

    async def test_other_users_payments_hidden(
        self, client: AsyncClient, auth_headers: dict, other_user, plans, make_subscription
    ):
        await make_subscription(other_user, plans["premium-monthly"])
        data = (await client.get("/api/v1/users/payments", headers=auth_headers)).json()
        assert data == {"payments": [], "refunds": []}
